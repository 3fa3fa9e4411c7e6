"""Conversation message types and their provider wire formats."""
from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from PIL import Image

# Screenshots wider than this are downscaled before being sent to a model.
MAX_IMAGE_WIDTH = 1280


@dataclass
class ImageObj:
    """A PNG image attached to a user turn."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_png_bytes(cls, data: bytes, max_width: Optional[int] = MAX_IMAGE_WIDTH) -> "ImageObj":
        """Build an image part, shrinking it to ``max_width`` if needed."""
        if max_width is None:
            return cls(data=data)
        image = Image.open(io.BytesIO(data))
        if image.width <= max_width:
            return cls(data=data)
        height = max(1, round(image.height * max_width / image.width))
        resized = image.resize((max_width, height))
        buf = io.BytesIO()
        resized.save(buf, format="PNG")
        return cls(data=buf.getvalue())

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


ContentPart = Union[str, ImageObj]


@dataclass
class UserMessage:
    content: Union[str, List[ContentPart]]
    role: str = "user"

    def parts(self) -> List[ContentPart]:
        if isinstance(self.content, str):
            return [self.content]
        return list(self.content)


@dataclass
class AssistantMessage:
    content: str
    role: str = "assistant"


LLMMessage = Union[UserMessage, AssistantMessage]


def message_to_openai_format(message: LLMMessage) -> Dict[str, Any]:
    """Convert a message to an OpenAI chat-completions message."""
    if isinstance(message, AssistantMessage):
        return {"role": "assistant", "content": message.content}
    if isinstance(message.content, str):
        return {"role": "user", "content": message.content}
    parts: List[Dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, ImageObj):
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{part.mime_type};base64,{part.to_base64()}"},
                }
            )
        else:
            parts.append({"type": "text", "text": part})
    return {"role": "user", "content": parts}


def _anthropic_blocks(message: LLMMessage) -> List[Dict[str, Any]]:
    if isinstance(message, AssistantMessage):
        return [{"type": "text", "text": message.content}]
    blocks: List[Dict[str, Any]] = []
    for part in message.parts():
        if isinstance(part, ImageObj):
            blocks.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": part.mime_type,
                        "data": part.to_base64(),
                    },
                }
            )
        else:
            blocks.append({"type": "text", "text": part})
    return blocks


def messages_to_anthropic_format(messages: List[LLMMessage]) -> List[Dict[str, Any]]:
    """Convert a conversation to Anthropic messages.

    Consecutive turns of the same role are merged, since the Messages API
    expects user and assistant turns to alternate.
    """
    out: List[Dict[str, Any]] = []
    for message in messages:
        blocks = _anthropic_blocks(message)
        if out and out[-1]["role"] == message.role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": message.role, "content": blocks})
    return out
