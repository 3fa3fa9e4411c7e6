"""Language model providers exposing a single ``chat`` operation."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from exceptions import LLMConnectionError, LLMError, UnknownProviderError
from message_types import LLMMessage, message_to_openai_format, messages_to_anthropic_format

logger = logging.getLogger("ranger.llm")

DEFAULT_MAX_TOKENS = 4096
DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"

_transient_retry = retry(
    retry=retry_if_exception_type(LLMConnectionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=2.0, min=2.0, max=10),
    reraise=True,
)


class LLMProvider(ABC):
    """Abstract chat-capable model."""

    name: str = "base"

    @abstractmethod
    async def chat(self, messages: List[LLMMessage], system_prompt: Optional[str] = None) -> str:
        """
        Send a conversation to the model.

        Args:
            messages: Alternating user/assistant turns, oldest first
            system_prompt: Instructions sent outside the conversation

        Returns:
            The reply text (possibly empty)
        """
        pass


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions, or any compatible endpoint via ``base_url``."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.model = model or DEFAULT_OPENAI_MODEL
        self.max_tokens = max_tokens
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    @_transient_retry
    async def chat(self, messages: List[LLMMessage], system_prompt: Optional[str] = None) -> str:
        openai_messages: List[Dict[str, Any]] = []
        if system_prompt:
            openai_messages.append({"role": "system", "content": system_prompt})
        openai_messages.extend(message_to_openai_format(m) for m in messages)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=openai_messages,
            )
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            logger.warning(f"OpenAI call failed, may retry: {e}")
            raise LLMConnectionError(f"Model call failed: {e}", provider=self.name) from e
        except openai.OpenAIError as e:
            raise LLMError(f"Model call failed: {e}") from e

        if not response.choices:
            logger.warning("OpenAI returned no choices")
            return ""
        return response.choices[0].message.content or ""


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.model = model or DEFAULT_ANTHROPIC_MODEL
        self.max_tokens = max_tokens
        self.client = AsyncAnthropic(api_key=api_key)

    @_transient_retry
    async def chat(self, messages: List[LLMMessage], system_prompt: Optional[str] = None) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system_prompt or "",
                messages=messages_to_anthropic_format(messages),
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as e:
            logger.warning(f"Anthropic call failed, may retry: {e}")
            raise LLMConnectionError(f"Model call failed: {e}", provider=self.name) from e
        except anthropic.AnthropicError as e:
            raise LLMError(f"Model call failed: {e}") from e

        return "".join(block.text for block in response.content if block.type == "text")


def create_provider(
    name: str,
    api_key: str,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> LLMProvider:
    """Build a provider by name (case-insensitive)."""
    key = name.strip().lower()
    if key in ("anthropic", "claude"):
        return AnthropicProvider(api_key, model=model)
    if key in ("openai", "gpt"):
        return OpenAIProvider(api_key, model=model, base_url=base_url)
    raise UnknownProviderError(name)
