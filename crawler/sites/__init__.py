"""Site adapters and their registry."""
from __future__ import annotations

from typing import Callable, Dict, List

from crawler.scraper.adapter import SiteAdapter

from .fmtc import FmtcAdapter
from .mytheresa import MytheresaAdapter

ADAPTERS: Dict[str, Callable[[], SiteAdapter]] = {
    "fmtc": FmtcAdapter,
    "mytheresa": MytheresaAdapter,
}


def get_adapter(site_id: str) -> SiteAdapter:
    """Instantiate the adapter registered for ``site_id``.

    Raises
    ------
    ValueError
        If no adapter is registered for the site
    """
    try:
        factory = ADAPTERS[site_id.lower()]
    except KeyError:
        raise ValueError(f"Unknown site {site_id!r}; available: {', '.join(sorted(ADAPTERS))}") from None
    return factory()


def available_sites() -> List[str]:
    return sorted(ADAPTERS)


__all__ = ["ADAPTERS", "FmtcAdapter", "MytheresaAdapter", "available_sites", "get_adapter"]
