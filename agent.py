"""ReAct verification agent: observe, think, act, check."""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from action_parser import parse_action
from browser import SimpleBrowser
from events import EventSink, ScreenshotInfo, StepEvent, ThinkEvent, VerdictEvent
from exceptions import ActionError, ActionParseError, NavigationError
from llm import LLMProvider
from message_types import AssistantMessage, ImageObj, LLMMessage, UserMessage
from prompts import (
    CORRECTIVE_PROMPT,
    get_action_failure_text,
    get_observation_text,
    get_verification_system_prompt,
)
from run_types import AgentAction, RunConfig, VerdictKind

MAX_ITERATIONS = 20
SETTLE_DELAY_SECONDS = 0.5
# Older screenshots are replaced by a placeholder to bound request size.
MAX_HISTORY_IMAGES = 3
DEFAULT_SCROLL_AMOUNT = 500
DEFAULT_WAIT_MS = 1000
MAX_WAIT_MS = 5000
DEFAULT_DONE_SUMMARY = "Verification completed"
OMITTED_IMAGE_TEXT = "[earlier screenshot omitted]"


def elapsed_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


async def capture_step(
    browser: SimpleBrowser,
    artifacts_dir: Path,
    filename: str,
    caption: str,
) -> Tuple[ScreenshotInfo, bytes]:
    """Save a viewport screenshot into the run's artifacts directory."""
    path = artifacts_dir / filename
    data = await browser.screenshot(path=path)
    info = ScreenshotInfo(filename=filename, caption=caption, size_bytes=path.stat().st_size)
    return info, data


class VerificationAgent:
    """Model-guided agent that drives one scenario to a verdict."""

    def __init__(
        self,
        browser: SimpleBrowser,
        provider: LLMProvider,
        config: RunConfig,
        emit: EventSink,
        started_at: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.browser = browser
        self.provider = provider
        self.config = config
        self.emit = emit
        self.started_at = started_at if started_at is not None else time.monotonic()
        self.logger = logger or logging.getLogger("ranger.agent")
        self.artifacts_dir = Path(config.artifacts_dir)
        self.system_prompt = get_verification_system_prompt(
            config.scenario.title, config.scenario.description
        )
        self.messages: List[LLMMessage] = []

    async def run(self) -> VerdictEvent:
        """Run the loop until the model finishes or the iteration cap is hit."""
        for iteration in range(MAX_ITERATIONS):
            self.logger.info(f"Iteration {iteration + 1}/{MAX_ITERATIONS}")

            # Observe
            screenshot, image = await capture_step(
                self.browser,
                self.artifacts_dir,
                f"step-{iteration:03d}-observe.png",
                f"Step {iteration} observation",
            )
            title = await self.browser.get_title()
            self.messages.append(
                UserMessage(
                    content=[
                        ImageObj.from_png_bytes(image),
                        get_observation_text(self.browser.get_url(), title, iteration + 1, MAX_ITERATIONS),
                    ]
                )
            )
            self._trim_history_images()

            # Think
            action = await self._think()
            if action is None:
                return self._finish("error", "Model response could not be parsed after retry")

            self.emit(
                ThinkEvent(
                    step_index=iteration,
                    observation=action.observation,
                    reasoning=action.reasoning,
                    action=action.kind,
                )
            )

            # Check
            if action.kind == "done":
                verdict: VerdictKind = "passed" if (action.args.get("verdict") or "passed") == "passed" else "failed"
                summary = str(action.args.get("summary") or DEFAULT_DONE_SUMMARY)
                self.emit(StepEvent(step_index=iteration, action="done", detail=summary, screenshot=screenshot))
                return self._finish(verdict, summary, reasoning=action.reasoning or None)

            # Act
            try:
                detail = await self._execute_action(action)
                self.logger.info(f"Action result: {detail}")
            except (ActionError, NavigationError) as exc:
                detail = f"Failed: {exc.message}"
                self.logger.info(f"Action {action.kind} failed: {exc.message}")
                self.messages.append(UserMessage(content=get_action_failure_text(action.kind, exc.message)))

            await asyncio.sleep(SETTLE_DELAY_SECONDS)
            self.emit(StepEvent(step_index=iteration, action=action.kind, detail=detail, screenshot=screenshot))

        return self._finish("error", f"Iteration limit exceeded ({MAX_ITERATIONS}) without a verdict")

    async def _think(self) -> Optional[AgentAction]:
        """Ask the model for the next action: one attempt plus one corrective retry."""
        reply = await self.provider.chat(self.messages, self.system_prompt)
        self.messages.append(AssistantMessage(content=reply))
        try:
            return parse_action(reply)
        except ActionParseError as exc:
            self.logger.warning(f"Unparseable model reply, asking again: {exc.message}")

        self.messages.append(UserMessage(content=CORRECTIVE_PROMPT))
        reply = await self.provider.chat(self.messages, self.system_prompt)
        self.messages.append(AssistantMessage(content=reply))
        try:
            return parse_action(reply)
        except ActionParseError as exc:
            self.logger.error(f"Model reply still unparseable after retry: {exc.message}")
            return None

    async def _execute_action(self, action: AgentAction) -> str:
        """Carry out a non-terminal action and describe what happened."""
        args = action.args

        if action.kind == "click":
            selector = _required_str(args, "selector", "click")
            text = args.get("text")
            return await self.browser.click(selector, text=str(text) if text else None)

        if action.kind == "type":
            selector = _required_str(args, "selector", "type")
            if "text" not in args or args["text"] is None:
                raise ActionError("type requires a 'text' argument", action="type")
            text = str(args["text"])
            await self.browser.fill(selector, text)
            return f"Typed '{text}' into {selector}"

        if action.kind == "scroll":
            direction = str(args.get("direction") or "down").lower()
            amount = _int_arg(args, "amount", DEFAULT_SCROLL_AMOUNT, "scroll")
            await self.browser.scroll_by(-amount if direction == "up" else amount)
            return f"Scrolled {'up' if direction == 'up' else 'down'} {amount}px"

        if action.kind == "navigate":
            url = _required_str(args, "url", "navigate")
            target = self._resolve_url(url)
            await self.browser.goto(target)
            return f"Navigated to {target}"

        if action.kind == "wait":
            ms = min(max(_int_arg(args, "ms", DEFAULT_WAIT_MS, "wait"), 0), MAX_WAIT_MS)
            await self.browser.wait(ms)
            return f"Waited {ms}ms"

        raise ActionError(f"Unknown action: {action.kind}", action=action.kind)

    def _resolve_url(self, url: str) -> str:
        if "://" in url:
            return url
        return self.config.base_url.rstrip("/") + "/" + url.lstrip("/")

    def _trim_history_images(self) -> None:
        seen = 0
        for message in reversed(self.messages):
            if not isinstance(message, UserMessage) or isinstance(message.content, str):
                continue
            parts = []
            for part in message.content:
                if isinstance(part, ImageObj):
                    seen += 1
                    if seen > MAX_HISTORY_IMAGES:
                        part = OMITTED_IMAGE_TEXT
                parts.append(part)
            message.content = parts

    def _finish(self, verdict: VerdictKind, summary: str, reasoning: Optional[str] = None) -> VerdictEvent:
        event = VerdictEvent(
            verdict=verdict,
            summary=summary,
            reasoning=reasoning,
            duration_ms=elapsed_ms(self.started_at),
        )
        self.logger.info(f"Verdict: {verdict} - {summary}")
        self.emit(event)
        return event


def _required_str(args: Dict[str, Any], key: str, action: str) -> str:
    value = args.get(key)
    if value is None or str(value).strip() == "":
        raise ActionError(f"{action} requires a '{key}' argument", action=action)
    return str(value)


def _int_arg(args: Dict[str, Any], key: str, default: int, action: str) -> int:
    value = args.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ActionError(f"{action} '{key}' must be a number, got {value!r}", action=action)
