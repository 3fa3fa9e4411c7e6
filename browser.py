"""Browser controller for verification runs, built on async Playwright."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Literal, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
    TimeoutError as PlaywrightTimeout,
)

from exceptions import (
    ActionError,
    BrowserNotStartedError,
    NavigationError,
    ScreenshotError,
)
from run_types import DEFAULT_VIEWPORT_HEIGHT, DEFAULT_VIEWPORT_WIDTH

BrowserType = Literal["chromium", "firefox", "webkit"]

ACTION_TIMEOUT_MS = 5000
NAVIGATION_TIMEOUT_MS = 30000


def launcher_for_browser(name: Optional[str]) -> BrowserType:
    """Map a profile browser name to a Playwright engine; unknown names use chromium."""
    key = (name or "").strip().lower()
    if key in ("firefox", "webkit"):
        return key  # type: ignore[return-value]
    return "chromium"


class SimpleBrowser:
    """Single-page Playwright session owned by one execution unit."""

    def __init__(
        self,
        browser_type: str = "chromium",
        headless: bool = True,
        viewport_width: int = DEFAULT_VIEWPORT_WIDTH,
        viewport_height: int = DEFAULT_VIEWPORT_HEIGHT,
        logger: Optional[logging.Logger] = None,
    ):
        self.browser_type = launcher_for_browser(browser_type)
        self.headless = headless
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.logger = logger or logging.getLogger("ranger.browser")

        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    def _ensure_started(self) -> None:
        """Raise if browser not started."""
        if self.page is None:
            raise BrowserNotStartedError()

    async def start(self) -> None:
        """Start the browser with the selected engine."""
        self._playwright = await async_playwright().start()

        browser_launcher = getattr(self._playwright, self.browser_type)
        self.browser = await browser_launcher.launch(headless=self.headless)
        self.context = await self.browser.new_context(
            viewport={"width": self.viewport_width, "height": self.viewport_height}
        )
        self.page = await self.context.new_page()

        self.logger.info(
            f"Browser started: {self.browser_type} (headless={self.headless}, "
            f"viewport={self.viewport_width}x{self.viewport_height})"
        )

    async def close(self) -> None:
        """Close the browser and clean up resources."""
        try:
            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
        finally:
            if self._playwright:
                await self._playwright.stop()
            self.page = None
            self.context = None
            self.browser = None
            self._playwright = None
        self.logger.info("Browser closed")

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    async def goto(
        self,
        url: str,
        wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "domcontentloaded",
        timeout: float = NAVIGATION_TIMEOUT_MS,
    ) -> None:
        """Navigate to a URL."""
        self._ensure_started()
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=timeout)
        except PlaywrightTimeout as e:
            raise NavigationError(f"Navigation timed out: {url}", url=url, timeout=timeout) from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation failed: {first_line(e)}", url=url) from e

    async def wait_for_load_state(
        self,
        state: Literal["load", "domcontentloaded", "networkidle"] = "networkidle",
        timeout: float = NAVIGATION_TIMEOUT_MS,
    ) -> None:
        """Wait for page to reach specified load state."""
        self._ensure_started()
        await self.page.wait_for_load_state(state, timeout=timeout)

    async def settle(self, timeout: float = 10000) -> None:
        """Wait for network idle, tolerating pages that never go idle."""
        try:
            await self.wait_for_load_state("networkidle", timeout=timeout)
        except PlaywrightTimeout:
            self.logger.debug("networkidle not reached; continuing")

    # ─────────────────────────────────────────────────────────────────────────
    # Screenshots
    # ─────────────────────────────────────────────────────────────────────────

    async def screenshot(self, path: Optional[Path] = None, full_page: bool = False) -> bytes:
        """Take a viewport screenshot, optionally writing it to ``path``."""
        self._ensure_started()
        try:
            return await self.page.screenshot(path=path, full_page=full_page)
        except PlaywrightError as e:
            raise ScreenshotError(f"Screenshot failed: {first_line(e)}") from e

    # ─────────────────────────────────────────────────────────────────────────
    # Element interaction
    # ─────────────────────────────────────────────────────────────────────────

    async def click(self, selector: str, text: Optional[str] = None, timeout: float = ACTION_TIMEOUT_MS) -> str:
        """Click the element matching ``selector``.

        If the selector cannot be resolved, retry once by visible text
        (``text`` when given, else the selector string itself).
        """
        self._ensure_started()
        try:
            await self.page.click(selector, timeout=timeout)
            return f"Clicked {selector}"
        except PlaywrightError as first:
            fallback = text or selector
            self.logger.info(f"Selector click failed for {selector!r}; retrying by text {fallback!r}")
            try:
                await self.page.get_by_text(fallback).first.click(timeout=timeout)
                return f'Clicked element with text "{fallback}"'
            except PlaywrightError as second:
                raise ActionError(
                    f"Could not click {selector}: {first_line(first)}; "
                    f"text lookup failed: {first_line(second)}",
                    action="click",
                    selector=selector,
                ) from second

    async def fill(self, selector: str, text: str, timeout: float = ACTION_TIMEOUT_MS) -> None:
        """Replace the contents of a form field."""
        self._ensure_started()
        try:
            await self.page.fill(selector, text, timeout=timeout)
        except PlaywrightError as e:
            raise ActionError(f"Could not type into {selector}: {first_line(e)}", action="type", selector=selector) from e

    # ─────────────────────────────────────────────────────────────────────────
    # Scrolling
    # ─────────────────────────────────────────────────────────────────────────

    async def scroll_by(self, pixels: int) -> None:
        """Scroll the viewport vertically (positive = down)."""
        self._ensure_started()
        try:
            await self.page.evaluate("(dy) => window.scrollBy(0, dy)", pixels)
        except PlaywrightError as e:
            raise ActionError(f"Could not scroll: {first_line(e)}", action="scroll") from e

    async def scroll_to_fraction(self, fraction: float) -> None:
        """Scroll to a fraction of the scrollable height."""
        self._ensure_started()
        await self.page.evaluate(
            """(f) => {
                const maxScroll = document.documentElement.scrollHeight - window.innerHeight;
                window.scrollTo({ top: maxScroll * f, behavior: 'instant' });
            }""",
            fraction,
        )

    async def scroll_to_top(self) -> None:
        self._ensure_started()
        await self.page.evaluate("() => window.scrollTo({ top: 0, behavior: 'instant' })")

    async def scroll_to_bottom(self) -> None:
        self._ensure_started()
        await self.page.evaluate(
            "() => window.scrollTo({ top: document.documentElement.scrollHeight, behavior: 'instant' })"
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Page state
    # ─────────────────────────────────────────────────────────────────────────

    async def wait(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000)

    def get_url(self) -> str:
        """Get current page URL."""
        if self.page is None:
            return ""
        return self.page.url

    async def get_title(self) -> str:
        """Get current page title."""
        self._ensure_started()
        try:
            return await self.page.title()
        except PlaywrightError:
            return ""


def first_line(exc: BaseException) -> str:
    """First line of an exception message; Playwright appends multi-line call logs."""
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
