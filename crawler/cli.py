"""CLI for the scraping engine."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import click

from crawler.antibot.captcha import TwoCaptchaSolver
from crawler.errors import CaptchaError, ScraperError
from crawler.services import build_sessions, build_store, run_definition_once
from crawler.settings import Settings, configure_logging
from crawler.tasks import TaskExecution, TaskStatus, TriggerType

LOGGER = logging.getLogger(__name__)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """Multi-site scraping engine CLI."""
    settings = Settings.from_env()
    if log_level:
        settings.log_level = log_level.upper()
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.pass_obj
def serve(settings: Settings, host: str, port: int) -> None:
    """Run the control-plane API with the queue and cron scheduler."""
    import uvicorn

    from api.main import create_app

    click.echo(f"🚀 Serving on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


@cli.command()
@click.argument("definition")
@click.option("--timeout", type=float, help="Seconds to wait before giving up")
@click.pass_obj
def run(settings: Settings, definition: str, timeout: Optional[float]) -> None:
    """Run DEFINITION (id or name) once in this process and wait for it.

    With --timeout the execution is cancelled once the time is up.
    """
    try:
        execution = asyncio.run(run_definition_once(definition, settings, timeout=timeout))
    except (ScraperError, asyncio.TimeoutError) as exc:
        raise click.ClickException(str(exc) or f"Timed out after {timeout}s") from exc

    click.echo(json.dumps(execution.to_dict(), indent=2, ensure_ascii=False))
    if execution.status == TaskStatus.CANCELLED and timeout:
        click.echo(f"⏱️ Timed out after {timeout:.0f}s; execution {execution.id} cancelled", err=True)
    if execution.status != TaskStatus.COMPLETED:
        raise SystemExit(1)


@cli.command()
@click.argument("definition")
@click.pass_obj
def enqueue(settings: Settings, definition: str) -> None:
    """Queue DEFINITION for a serving process to pick up."""
    if not settings.database_url:
        raise click.ClickException("enqueue needs DATABASE_URL; use `run` for in-process execution")
    store = build_store(settings)
    found = store.get_definition(definition)
    if found is None:
        raise click.ClickException(f"Task definition {definition!r} not found")
    if not found.enabled:
        raise click.ClickException(f"Task definition {found.name!r} is disabled")

    execution = TaskExecution(definition_id=found.id, trigger_type=TriggerType.MANUAL)
    store.create_execution(execution)
    click.echo(f"✅ Queued execution {execution.id} for {found.name}")


@cli.command("queue-status")
@click.pass_obj
def queue_status(settings: Settings) -> None:
    """Show execution counts per status."""
    store = build_store(settings)
    stats = store.get_stats()

    click.echo("\n📊 Execution Statistics\n" + "=" * 40)
    click.echo(f"Total executions: {sum(stats.values())}")
    for status, count in sorted(stats.items()):
        click.echo(f"  {status:15s}: {count:6d}")
    click.echo()


@cli.command("captcha-balance")
@click.pass_obj
def captcha_balance(settings: Settings) -> None:
    """Show the CAPTCHA provider account balance."""
    try:
        balance = TwoCaptchaSolver(settings.captcha_api_key).get_balance()
    except CaptchaError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"💰 Balance: ${balance:.2f}")


@cli.command()
@click.option("--cleanup", is_flag=True, help="Delete expired sessions")
@click.pass_obj
def sessions(settings: Settings, cleanup: bool) -> None:
    """Show stored browser sessions."""
    manager = build_sessions(settings)
    if cleanup:
        click.echo(f"🧹 Removed {manager.cleanup_expired()} expired session(s)")
    for key, value in manager.get_stats().items():
        click.echo(f"  {key:26s}: {value}")


@cli.command("invalidate-session")
@click.argument("site")
@click.argument("account")
@click.pass_obj
def invalidate_session(settings: Settings, site: str, account: str) -> None:
    """Forget the stored session for SITE and ACCOUNT."""
    if build_sessions(settings).invalidate(site, account):
        click.echo(f"✅ Session for {site}/{account} removed")
    else:
        click.echo(f"No stored session for {site}/{account}")


@cli.command()
@click.option("--days", default=7, type=int, help="Remove executions finished more than N days ago")
@click.confirmation_option(prompt="Are you sure you want to purge finished executions?")
@click.pass_obj
def purge(settings: Settings, days: int) -> None:
    """Remove old finished executions and their logs."""
    count = build_store(settings).purge_finished(days)
    click.echo(f"✅ Purged {count} finished execution(s)")


if __name__ == "__main__":
    cli()
