"""Messages exchanged between the orchestrator, execution units and live subscribers.

Units write one JSON object per line. Every message carries a ``type`` tag so
the unions below are closed: adding a message kind means adding a model here.
"""
from __future__ import annotations

import json
from typing import Annotated, Callable, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from exceptions import MessageDecodeError
from run_types import RunConfig, VerdictKind, WireModel


class StartMessage(WireModel):
    type: Literal["start"] = "start"
    config: RunConfig


class ScreenshotInfo(WireModel):
    filename: str
    caption: str
    size_bytes: int


class ThinkEvent(WireModel):
    type: Literal["think"] = "think"
    step_index: int
    observation: str
    reasoning: str
    action: str


class StepEvent(WireModel):
    type: Literal["step"] = "step"
    step_index: int
    action: str
    detail: Optional[str] = None
    screenshot: Optional[ScreenshotInfo] = None
    # Set by the orchestrator once the screenshot is stored as an artifact.
    screenshot_url: Optional[str] = None


class VerdictEvent(WireModel):
    type: Literal["verdict"] = "verdict"
    verdict: VerdictKind
    summary: str
    reasoning: Optional[str] = None
    duration_ms: int


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    error: str


class KeepaliveEvent(WireModel):
    type: Literal["keepalive"] = "keepalive"


WorkerMessage = Annotated[
    Union[ThinkEvent, StepEvent, VerdictEvent, ErrorEvent],
    Field(discriminator="type"),
]
StreamEvent = Annotated[
    Union[ThinkEvent, StepEvent, VerdictEvent, ErrorEvent, KeepaliveEvent],
    Field(discriminator="type"),
]
# Units accept a single inbound message kind.
InboundMessage = StartMessage

EventSink = Callable[[Union[ThinkEvent, StepEvent, VerdictEvent, ErrorEvent]], None]

_worker_adapter: TypeAdapter = TypeAdapter(WorkerMessage)
_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


def encode_message(message: WireModel) -> str:
    """Serialize a message as a single JSON line (without the newline)."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def _decode(adapter: TypeAdapter, line: str):
    text = line.strip()
    if not text:
        raise MessageDecodeError("Empty message line")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MessageDecodeError(f"Message is not valid JSON: {exc.msg}", line=text) from exc
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise MessageDecodeError(
            f"Unrecognized message: {exc.error_count()} validation error(s)", line=text
        ) from exc


def decode_worker_message(line: str) -> Union[ThinkEvent, StepEvent, VerdictEvent, ErrorEvent]:
    """Decode a line written by an execution unit."""
    return _decode(_worker_adapter, line)


def decode_inbound_message(line: str) -> StartMessage:
    """Decode a line sent to an execution unit."""
    return _decode(_inbound_adapter, line)
