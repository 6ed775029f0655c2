"""Provider adapter interface and normalized outcome types.

Every provider family implements the same four transforms:

* ``build_request`` turns a provider-agnostic transcript into the
  provider's URL, headers, query parameters and JSON body;
* ``extract_text`` pulls the assistant reply out of a 2xx body and raises
  :class:`MalformedResponseError` when the shape is wrong;
* ``extract_token_usage`` reports token usage, or 0 when unknown;
* ``classify_error`` maps a non-2xx response to an :data:`Outcome`.

``send`` wires them together over httpx. Adapters hold no mutable state, so
a fresh instance per exchange is cheap.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from http import HTTPStatus
from typing import Any, Union

import httpx
from pydantic import BaseModel, Field

from chatrelay.core.config import ProviderModel
from chatrelay.core.exceptions import (
    DispatchError,
    MalformedResponseError,
    ProviderAuthInvalidError,
    ProviderError,
    RateLimitedError,
    ServiceUnavailableError,
)
from chatrelay.core.timeutils import utcnow

from .ratelimit import DEFAULT_RATE_LIMIT_COOLDOWN, DEFAULT_RESET_HEADERS, resolve_reset_at
from .utils import extract_error_body, summarize_error

logger = logging.getLogger("chatrelay.providers")

DEFAULT_REQUEST_TIMEOUT = 120.0


class ChatMessage(BaseModel):
    role: str
    content: str


class PreparedRequest(BaseModel):
    url: str
    headers: dict[str, str]
    params: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any]


class Completion(BaseModel):
    text: str
    token_count: int = 0


@dataclass(frozen=True)
class RateLimited:
    reset_at: datetime


@dataclass(frozen=True)
class AuthInvalid:
    message: str = "Invalid API key"


@dataclass(frozen=True)
class ProviderFailure:
    status: int
    message: str


@dataclass(frozen=True)
class Unavailable:
    message: str = "Provider unavailable"


Outcome = Union[RateLimited, AuthInvalid, ProviderFailure, Unavailable]


def outcome_to_error(outcome: Outcome, provider_id: str | None = None) -> DispatchError:
    """Translate a classified outcome into the exception surfaced to callers."""
    if isinstance(outcome, RateLimited):
        return RateLimitedError(outcome.reset_at, provider_id=provider_id)
    if isinstance(outcome, AuthInvalid):
        return ProviderAuthInvalidError(outcome.message, provider_id=provider_id)
    if isinstance(outcome, ProviderFailure):
        return ProviderError(outcome.status, outcome.message, provider_id=provider_id)
    return ServiceUnavailableError(outcome.message, provider_id=provider_id)


class ProviderAdapter:
    """Abstract provider adapter."""

    adapter_id: str
    reset_headers: tuple[str, ...] = DEFAULT_RESET_HEADERS
    auth_failure_statuses: frozenset[int] = frozenset(
        {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}
    )

    def __init__(
        self,
        provider: ProviderModel,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        default_cooldown: timedelta = DEFAULT_RATE_LIMIT_COOLDOWN,
    ) -> None:
        self._provider = provider
        self._timeout = timeout
        self._default_cooldown = default_cooldown

    @property
    def provider_id(self) -> str:
        return self._provider.code

    def build_request(
        self,
        api_key: str,
        model: str,
        messages: Sequence[ChatMessage],
        config: Mapping[str, Any] | None = None,
    ) -> PreparedRequest:
        raise NotImplementedError

    def extract_text(self, body: Any) -> str:
        raise NotImplementedError

    def extract_token_usage(self, body: Any) -> int:
        return 0

    def declared_retry_delay(self, body: Any) -> float | None:
        """Seconds to wait as stated in an error body, for providers that send one."""
        return None

    def classify_error(
        self,
        status: int,
        headers: Mapping[str, str] | None,
        body: Any,
        now: datetime | None = None,
    ) -> Outcome:
        current = now or utcnow()
        if status == HTTPStatus.TOO_MANY_REQUESTS:
            reset_at = resolve_reset_at(
                headers,
                current,
                reset_headers=self.reset_headers,
                declared_delay_seconds=self.declared_retry_delay(body),
                default_cooldown=self._default_cooldown,
            )
            return RateLimited(reset_at=reset_at)
        if status in self.auth_failure_statuses:
            return AuthInvalid()
        message = summarize_error(body) or f"{self._provider.display_name} API error"
        return ProviderFailure(status=status, message=message)

    def _malformed(self, detail: str) -> MalformedResponseError:
        return MalformedResponseError(
            f"Invalid response format from {self._provider.display_name}: {detail}",
            provider_id=self.provider_id,
        )

    async def send(
        self,
        api_key: str,
        messages: Sequence[ChatMessage],
        model: str | None = None,
        *,
        now: datetime | None = None,
    ) -> Completion:
        """Execute one completion call and return the normalized reply."""
        model_name = model or self._provider.default_model
        if not model_name:
            raise ServiceUnavailableError(
                "No default model configured", provider_id=self.provider_id
            )

        prepared = self.build_request(api_key, model_name, messages, self._provider.options)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    prepared.url,
                    json=prepared.body,
                    headers=prepared.headers,
                    params=prepared.params or None,
                )
        except httpx.TimeoutException as exc:
            logger.warning(
                "Provider request timed out",
                extra={"event": "provider_timeout", "provider": self.provider_id},
            )
            raise ServiceUnavailableError(
                "Provider request timed out", provider_id=self.provider_id
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(
                "Provider request failed",
                extra={
                    "event": "provider_network_error",
                    "provider": self.provider_id,
                    "error_message": str(exc),
                },
            )
            raise ServiceUnavailableError(
                "Provider request failed", provider_id=self.provider_id
            ) from exc

        if response.is_error:
            body = extract_error_body(response)
            outcome = self.classify_error(response.status_code, response.headers, body, now=now)
            logger.warning(
                "Provider returned an error",
                extra={
                    "event": "provider_error",
                    "provider": self.provider_id,
                    "status_code": response.status_code,
                    "outcome": type(outcome).__name__,
                },
            )
            raise outcome_to_error(outcome, self.provider_id)

        try:
            data = response.json()
        except ValueError as exc:
            raise self._malformed("body is not JSON") from exc

        text = self.extract_text(data)
        return Completion(text=text, token_count=self.extract_token_usage(data))


__all__ = [
    "AuthInvalid",
    "ChatMessage",
    "Completion",
    "Outcome",
    "PreparedRequest",
    "ProviderAdapter",
    "ProviderFailure",
    "RateLimited",
    "Unavailable",
    "outcome_to_error",
]
