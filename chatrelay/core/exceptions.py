"""Error taxonomy shared by adapters, the selector and the orchestrator."""

from __future__ import annotations

from datetime import datetime


class DispatchError(Exception):
    """Base class for every failure surfaced to the route layer."""

    kind = "dispatch_error"

    def __init__(self, message: str = "Dispatch failed", *, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id


class ServiceUnavailableError(DispatchError):
    """Network failure, timeout, or no usable credential."""

    kind = "service_unavailable"

    def __init__(
        self, message: str = "Provider unavailable", *, provider_id: str | None = None
    ) -> None:
        super().__init__(message, provider_id=provider_id)


class NoAvailableKeyError(ServiceUnavailableError):
    """Raised when no eligible key exists for a provider."""

    kind = "no_available_key"

    def __init__(self, provider_id: str | None = None, message: str | None = None) -> None:
        super().__init__(
            message or "No available API keys for this provider", provider_id=provider_id
        )


class RateLimitedError(DispatchError):
    kind = "rate_limited"

    def __init__(
        self,
        reset_at: datetime,
        message: str = "API rate limit exceeded",
        *,
        provider_id: str | None = None,
    ) -> None:
        super().__init__(message, provider_id=provider_id)
        self.reset_at = reset_at


class ProviderAuthInvalidError(DispatchError):
    kind = "provider_auth_invalid"

    def __init__(self, message: str = "Invalid API key", *, provider_id: str | None = None) -> None:
        super().__init__(message, provider_id=provider_id)


class ProviderError(DispatchError):
    """Non-2xx provider response that is neither a rate limit nor an auth failure."""

    kind = "provider_error"

    def __init__(self, status: int, message: str, *, provider_id: str | None = None) -> None:
        super().__init__(message, provider_id=provider_id)
        self.status = status


class MalformedResponseError(DispatchError):
    """2xx provider response whose body lacks the expected shape."""

    kind = "malformed_response"

    def __init__(
        self, message: str = "Unexpected response format", *, provider_id: str | None = None
    ) -> None:
        super().__init__(message, provider_id=provider_id)


class SessionNotFoundError(DispatchError):
    kind = "session_not_found"

    def __init__(self, session_id: int) -> None:
        super().__init__(f"Chat session {session_id} not found")
        self.session_id = session_id


class UnknownAdapterError(DispatchError):
    """Raised at startup when a provider names an adapter that does not exist."""

    kind = "unknown_adapter"

    def __init__(self, provider_id: str, adapter: str) -> None:
        super().__init__(f"Adapter '{adapter}' is not registered", provider_id=provider_id)
        self.adapter = adapter
