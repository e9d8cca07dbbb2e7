"""Exceptions raised by the chat transport.

Tool failures are not exceptions: the executor reports them through
``ToolResult.success`` so the model can react to them.
"""

from __future__ import annotations


class LLMError(Exception):
    """Base class for every failure surfaced by the protocol adapter."""


class UserCancelled(LLMError):
    """The caller cancelled the run. Never retried."""

    def __init__(self, message: str = "Request cancelled by user") -> None:
        super().__init__(message)


class RequestTimeout(LLMError):
    """The adapter's own deadline elapsed before a response arrived."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"API request timed out after {timeout:.0f}s")


class APIError(LLMError):
    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error: {status_code} - {body[:500]}")


class ClientError(APIError):
    """4xx other than 429."""


class RateLimited(APIError):
    pass


class ServerError(APIError):
    pass


class NetworkError(LLMError):
    pass


class ToolsUnsupported(LLMError):
    """Native tool calling was rejected; switch to the text protocol."""


class ProviderConfigError(LLMError):
    pass


def classify_status(status_code: int, body: str) -> APIError:
    """Map an HTTP status to the matching APIError subclass."""
    if status_code == 429:
        return RateLimited(status_code, body)
    if status_code >= 500:
        return ServerError(status_code, body)
    return ClientError(status_code, body)


def mentions_tools(body: str) -> bool:
    lowered = body.lower()
    return "tools" in lowered or "function" in lowered


def is_retryable(exc: BaseException) -> bool:
    """Determine if an exception is transient and worth retrying."""
    return isinstance(exc, (RateLimited, ServerError, NetworkError))
