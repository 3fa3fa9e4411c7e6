"""Execution unit: carries out one verification run in its own process.

The unit reads JSON lines on stdin and accepts the first ``start`` message;
anything else is ignored. Events are written to stdout, one JSON object per
line. Logging goes to stderr so it never mixes with the channel.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, TextIO

from agent import VerificationAgent, elapsed_ms
from browser import NAVIGATION_TIMEOUT_MS, SimpleBrowser, first_line
from events import ErrorEvent, VerdictEvent, decode_inbound_message, encode_message
from exceptions import MessageDecodeError, RangerError
from fallback import run_screenshot_tour
from llm import LLMProvider, create_provider
from run_types import RunConfig, Viewport

logger = logging.getLogger("ranger.worker")


class ChannelEmitter:
    """Writes events to the channel; nothing is written after a verdict."""

    def __init__(self, stream: TextIO):
        self.stream = stream
        self.verdict_sent = False

    def __call__(self, message) -> None:
        if self.verdict_sent:
            logger.warning(f"Dropping {message.type} event emitted after the verdict")
            return
        self.stream.write(encode_message(message) + "\n")
        self.stream.flush()
        if isinstance(message, VerdictEvent):
            self.verdict_sent = True


def read_start_command(lines: Iterable[str]) -> Optional[RunConfig]:
    """Return the config of the first valid start message, skipping anything else."""
    for line in lines:
        if not line.strip():
            continue
        try:
            message = decode_inbound_message(line)
        except MessageDecodeError as exc:
            logger.warning(f"Ignoring message: {exc.message}")
            continue
        return message.config
    return None


def describe_error(exc: BaseException) -> str:
    """Single-line, human-readable description of a failure."""
    if isinstance(exc, RangerError):
        return exc.message
    return first_line(exc)


async def execute_run(
    config: RunConfig,
    emit: Callable,
    browser_factory: Callable[..., SimpleBrowser] = SimpleBrowser,
    provider_factory: Callable[..., LLMProvider] = create_provider,
) -> None:
    """Open a browser session, run the agent or the fallback, always close the session."""
    started_at = time.monotonic()
    browser: Optional[SimpleBrowser] = None
    try:
        Path(config.artifacts_dir).mkdir(parents=True, exist_ok=True)

        viewport = config.viewport or Viewport()
        browser = browser_factory(
            browser_type=config.browser,
            headless=True,
            viewport_width=viewport.width,
            viewport_height=viewport.height,
        )
        await browser.start()

        target_url = config.target_url
        logger.info(f"Run {config.run_id}: opening {target_url}")
        await browser.goto(target_url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
        await browser.settle()

        if config.uses_model:
            provider = provider_factory(
                config.llm_provider,
                config.llm_api_key,
                model=config.llm_model,
                base_url=config.llm_base_url,
            )
            logger.info(f"Run {config.run_id}: ReAct mode with {config.llm_provider}")
            agent = VerificationAgent(browser, provider, config, emit, started_at=started_at)
            await agent.run()
        else:
            logger.info(f"Run {config.run_id}: screenshot-only mode")
            await run_screenshot_tour(browser, config, emit, started_at=started_at)
    except Exception as exc:
        message = describe_error(exc)
        logger.error(f"Run {config.run_id} failed: {message}", exc_info=True)
        emit(ErrorEvent(error=message))
        emit(
            VerdictEvent(
                verdict="error",
                summary=f"Worker failed: {message}",
                duration_ms=elapsed_ms(started_at),
            )
        )
    finally:
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                logger.debug(f"Ignoring browser close failure: {exc}")


def main() -> None:
    """Process entry point: ``python -m worker``."""
    channel = sys.stdout
    # Stray prints from libraries must not corrupt the channel.
    sys.stdout = sys.stderr

    logging.basicConfig(
        level=os.getenv("RANGER_LOG_LEVEL", "INFO").upper(),
        stream=sys.stderr,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    config = read_start_command(sys.stdin)
    if config is None:
        logger.info("No start command received; exiting")
        return

    asyncio.run(execute_run(config, ChannelEmitter(channel)))


if __name__ == "__main__":
    main()
