"""Screenshot-only verification used when no language model is configured."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from agent import capture_step, elapsed_ms
from browser import SimpleBrowser
from events import EventSink, StepEvent, VerdictEvent
from run_types import RunConfig

SETTLE_DELAY_SECONDS = 0.3

logger = logging.getLogger("ranger.fallback")


@dataclass(frozen=True)
class TourStep:
    action: str
    caption: str
    # Fraction of the scrollable height; None keeps the current position.
    position: Optional[float]


TOUR_STEPS = (
    TourStep("initial-load", "Initial page load", None),
    TourStep("scroll-30", "Scrolled down 30%", 0.3),
    TourStep("scroll-60", "Scrolled down 60%", 0.6),
    TourStep("scroll-bottom", "Scrolled to bottom", 1.0),
    TourStep("scroll-top", "Scrolled back to top", 0.0),
)


async def _scroll(browser: SimpleBrowser, position: Optional[float]) -> None:
    if position is None:
        return
    if position >= 1.0:
        await browser.scroll_to_bottom()
    elif position <= 0.0:
        await browser.scroll_to_top()
    else:
        await browser.scroll_to_fraction(position)


async def run_screenshot_tour(
    browser: SimpleBrowser,
    config: RunConfig,
    emit: EventSink,
    started_at: Optional[float] = None,
) -> VerdictEvent:
    """Capture the page at fixed scroll positions and report a passed verdict."""
    started_at = started_at if started_at is not None else time.monotonic()
    artifacts_dir = Path(config.artifacts_dir)
    summary_parts = []

    for index, step in enumerate(TOUR_STEPS):
        await _scroll(browser, step.position)
        await asyncio.sleep(SETTLE_DELAY_SECONDS)
        screenshot, _ = await capture_step(
            browser, artifacts_dir, f"step-{index:03d}-{step.action}.png", step.caption
        )
        emit(StepEvent(step_index=index, action=step.action, screenshot=screenshot))
        summary_parts.append(f"Step {index}: {step.caption}")
        logger.info(f"Captured {screenshot.filename} ({screenshot.size_bytes} bytes)")

    verdict = VerdictEvent(
        verdict="passed",
        summary=(
            f'Captured {len(TOUR_STEPS)} screenshots of "{config.scenario.title}" '
            f"at {config.target_url}. {'; '.join(summary_parts)}."
        ),
        reasoning=(
            "Screenshot-only verification completed. "
            "All scroll positions were captured successfully."
        ),
        duration_ms=elapsed_ms(started_at),
    )
    emit(verdict)
    return verdict
