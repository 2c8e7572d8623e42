"""Human-like pointer, scroll and typing cadence for async Playwright pages."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import List, Tuple

from playwright.async_api import Page

LOGGER = logging.getLogger(__name__)


@dataclass
class BehaviorConfig:
    """Configuration for behavior simulation."""

    min_action_delay: float = 1.0  # seconds
    max_action_delay: float = 3.0
    enable_mouse_movements: bool = True
    mouse_movements_per_action: int = 2
    enable_scrolling: bool = True
    scroll_steps: int = 3
    scroll_pause: float = 0.3
    min_key_delay_ms: int = 50
    max_key_delay_ms: int = 150


class BehaviorPresets:
    """Pre-configured behavior patterns for different sites."""

    @staticmethod
    def fast() -> BehaviorConfig:
        return BehaviorConfig(
            min_action_delay=0.2,
            max_action_delay=0.8,
            mouse_movements_per_action=1,
            scroll_steps=2,
            min_key_delay_ms=20,
            max_key_delay_ms=60,
        )

    @staticmethod
    def normal() -> BehaviorConfig:
        return BehaviorConfig()

    @staticmethod
    def cautious() -> BehaviorConfig:
        """Slow behavior for sites with aggressive bot detection."""
        return BehaviorConfig(
            min_action_delay=2.0,
            max_action_delay=5.0,
            mouse_movements_per_action=4,
            scroll_steps=6,
            scroll_pause=0.5,
            min_key_delay_ms=80,
            max_key_delay_ms=220,
        )

    @staticmethod
    def instant() -> BehaviorConfig:
        """No delays or movements. Used by tests and debug runs."""
        return BehaviorConfig(
            min_action_delay=0.0,
            max_action_delay=0.0,
            enable_mouse_movements=False,
            enable_scrolling=False,
            scroll_pause=0.0,
            min_key_delay_ms=0,
            max_key_delay_ms=0,
        )

    @classmethod
    def by_name(cls, name: str) -> BehaviorConfig:
        factory = getattr(cls, name, None)
        if factory is None or name.startswith("_") or name == "by_name":
            raise ValueError(f"Unknown behavior preset: {name}")
        return factory()


def bezier_curve(
    start: Tuple[int, int],
    end: Tuple[int, int],
    steps: int,
) -> List[Tuple[int, int]]:
    """Generate cubic Bezier points between ``start`` and ``end``.

    The two control points are jittered so consecutive moves never trace
    the same path. The first and last points are exactly ``start`` and
    ``end``.
    """
    control1_x = start[0] + (end[0] - start[0]) * 0.3 + random.randint(-50, 50)
    control1_y = start[1] + (end[1] - start[1]) * 0.3 + random.randint(-50, 50)
    control2_x = start[0] + (end[0] - start[0]) * 0.7 + random.randint(-50, 50)
    control2_y = start[1] + (end[1] - start[1]) * 0.7 + random.randint(-50, 50)

    points = []
    for i in range(steps + 1):
        t = i / steps
        x = (
            (1 - t) ** 3 * start[0]
            + 3 * (1 - t) ** 2 * t * control1_x
            + 3 * (1 - t) * t ** 2 * control2_x
            + t ** 3 * end[0]
        )
        y = (
            (1 - t) ** 3 * start[1]
            + 3 * (1 - t) ** 2 * t * control1_y
            + 3 * (1 - t) * t ** 2 * control2_y
            + t ** 3 * end[1]
        )
        points.append((int(round(x)), int(round(y))))
    return points


class HumanBehavior:
    """Simulates human-like behavior in browser automation."""

    def __init__(self, config: BehaviorConfig | None = None):
        self.config = config or BehaviorConfig()

    async def random_delay(self, min_delay: float | None = None, max_delay: float | None = None) -> float:
        """Sleep for a random duration and return it."""
        min_d = self.config.min_action_delay if min_delay is None else min_delay
        max_d = self.config.max_action_delay if max_delay is None else max_delay
        delay = random.uniform(min_d, max(min_d, max_d))
        if delay > 0:
            LOGGER.debug("Random delay: %.2fs", delay)
            await asyncio.sleep(delay)
        return delay

    async def move_mouse_smoothly(
        self,
        page: Page,
        start: Tuple[int, int],
        end: Tuple[int, int],
        steps: int = 12,
    ) -> None:
        if not self.config.enable_mouse_movements:
            return
        for x, y in bezier_curve(start, end, steps):
            await page.mouse.move(x, y)
            await asyncio.sleep(random.uniform(0.005, 0.02))

    async def random_mouse_movement(self, page: Page) -> None:
        if not self.config.enable_mouse_movements:
            return
        viewport = page.viewport_size
        if not viewport:
            return
        width, height = viewport["width"], viewport["height"]
        start = (random.randint(100, max(101, width - 100)), random.randint(100, max(101, height - 100)))
        end = (random.randint(100, max(101, width - 100)), random.randint(100, max(101, height - 100)))
        await self.move_mouse_smoothly(page, start, end)

    async def scroll_page(self, page: Page, direction: str = "down", distance: int | None = None) -> None:
        if not self.config.enable_scrolling:
            return
        if distance is None:
            distance = random.randint(200, 600)
        step_distance = max(1, distance // self.config.scroll_steps)
        sign = 1 if direction == "down" else -1
        for _ in range(self.config.scroll_steps):
            step = step_distance + random.randint(-20, 20)
            await page.mouse.wheel(0, step * sign)
            await asyncio.sleep(max(0.0, self.config.scroll_pause + random.uniform(-0.1, 0.1)))

    async def type_like_human(self, page: Page, selector: str, text: str) -> None:
        """Clear ``selector`` and type ``text`` with a per-key random cadence."""
        await page.fill(selector, "")
        await page.click(selector)
        for char in text:
            await page.keyboard.type(char)
            delay_ms = random.randint(self.config.min_key_delay_ms, self.config.max_key_delay_ms)
            if delay_ms:
                await asyncio.sleep(delay_ms / 1000)

    async def interaction_sequence(self, page: Page) -> None:
        """Short burst of pointer moves and scrolls before a risky action."""
        for _ in range(self.config.mouse_movements_per_action):
            await self.random_mouse_movement(page)
        if self.config.enable_scrolling and random.random() < 0.5:
            await self.scroll_page(page, "down")
            if random.random() < 0.3:
                await self.scroll_page(page, "up", distance=150)
        await self.random_delay(self.config.min_action_delay / 2, self.config.max_action_delay / 2)
