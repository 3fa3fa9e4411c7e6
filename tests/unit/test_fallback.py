"""Unit tests for the screenshot-only mode."""
from __future__ import annotations

from pathlib import Path

import pytest

import fallback
from events import StepEvent, VerdictEvent
from fallback import TOUR_STEPS, run_screenshot_tour


@pytest.fixture(autouse=True)
def no_settle_delay(monkeypatch):
    monkeypatch.setattr(fallback, "SETTLE_DELAY_SECONDS", 0)


class TestScreenshotTour:
    """Tests for run_screenshot_tour."""

    @pytest.mark.asyncio
    async def test_five_steps_then_passed(self, mock_browser, run_config, events):
        verdict = await run_screenshot_tour(mock_browser, run_config, events.append)

        steps = [e for e in events if isinstance(e, StepEvent)]
        assert [s.step_index for s in steps] == [0, 1, 2, 3, 4]
        assert [s.action for s in steps] == ["initial-load", "scroll-30", "scroll-60", "scroll-bottom", "scroll-top"]
        assert isinstance(events[-1], VerdictEvent)
        assert events[-1] is verdict
        assert verdict.verdict == "passed"

    @pytest.mark.asyncio
    async def test_screenshots_written(self, mock_browser, run_config, events, png_bytes):
        await run_screenshot_tour(mock_browser, run_config, events.append)

        artifacts_dir = Path(run_config.artifacts_dir)
        for index, step in enumerate(TOUR_STEPS):
            path = artifacts_dir / f"step-{index:03d}-{step.action}.png"
            assert path.read_bytes() == png_bytes
        first = events[0]
        assert first.screenshot.caption == "Initial page load"
        assert first.screenshot.size_bytes == len(png_bytes)

    @pytest.mark.asyncio
    async def test_scroll_positions(self, mock_browser, run_config, events):
        await run_screenshot_tour(mock_browser, run_config, events.append)

        assert [c.args[0] for c in mock_browser.scroll_to_fraction.await_args_list] == [0.3, 0.6]
        mock_browser.scroll_to_bottom.assert_awaited_once()
        mock_browser.scroll_to_top.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_summary(self, mock_browser, run_config, events):
        verdict = await run_screenshot_tour(mock_browser, run_config, events.append)

        assert verdict.summary.startswith('Captured 5 screenshots of "Login form" at https://example.com/login.')
        assert "Step 0: Initial page load" in verdict.summary
        assert verdict.summary.endswith("Step 4: Scrolled back to top.")
        assert "Screenshot-only verification completed" in verdict.reasoning
        assert verdict.duration_ms >= 0
