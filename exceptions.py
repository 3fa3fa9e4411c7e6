"""Custom exception hierarchy for the Ranger verification engine."""
from __future__ import annotations

from typing import Any, Optional


class RangerError(Exception):
    """Base exception for all Ranger errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Browser-related exceptions
class BrowserError(RangerError):
    """Base exception for browser automation errors."""

    pass


class NavigationError(BrowserError):
    """Raised when page navigation fails."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        details = {}
        if url:
            details["url"] = url
        if timeout:
            details["timeout"] = timeout
        super().__init__(message, details)
        self.url = url
        self.timeout = timeout


class BrowserNotStartedError(BrowserError):
    """Raised when attempting to use browser before starting."""

    def __init__(self):
        super().__init__("Browser has not been started. Call start() first.")


class ScreenshotError(BrowserError):
    """Raised when screenshot capture fails."""

    pass


class ActionError(RangerError):
    """Raised when a single agent action cannot be carried out.

    Action errors are recoverable: the loop reports them back to the model
    instead of ending the run.
    """

    def __init__(self, message: str, action: Optional[str] = None, selector: Optional[str] = None):
        details = {}
        if action:
            details["action"] = action
        if selector:
            details["selector"] = selector
        super().__init__(message, details)
        self.action = action
        self.selector = selector

    def __str__(self) -> str:
        return self.message


# LLM-related exceptions
class LLMError(RangerError):
    """Base exception for LLM/model-related errors."""

    pass


class LLMConnectionError(LLMError):
    """Raised when unable to reach the LLM service."""

    def __init__(self, message: str, provider: Optional[str] = None):
        details = {"provider": provider} if provider else {}
        super().__init__(message, details)
        self.provider = provider


class ActionParseError(LLMError):
    """Raised when no action can be recovered from a model response."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        details = {"raw_response": raw_response[:500] if raw_response else None}
        super().__init__(message, details)
        self.raw_response = raw_response


# Unit <-> orchestrator channel exceptions
class ChannelError(RangerError):
    """Base exception for message channel errors."""

    pass


class MessageDecodeError(ChannelError):
    """Raised when a channel line is not a known message."""

    def __init__(self, message: str, line: Optional[str] = None):
        details = {"line": line[:200]} if line else {}
        super().__init__(message, details)
        self.line = line


class RunNotFoundError(RangerError):
    """Raised when a run id is unknown to the store."""

    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}", {"run_id": run_id})
        self.run_id = run_id


# Configuration exceptions
class ConfigurationError(RangerError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path


class UnknownProviderError(ConfigurationError):
    """Raised when an LLM provider name is not supported."""

    def __init__(self, provider: str):
        super().__init__(
            f'Unknown LLM provider: "{provider}". Supported: anthropic, openai',
            {"provider": provider},
        )
        self.provider = provider
