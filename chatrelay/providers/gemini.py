"""Gemini provider adapter.

The key travels as the ``key`` query parameter, never in a header. Gemini
has no system role in ``contents``; system text is prepended to the first
user turn, separated by a blank line.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from http import HTTPStatus
from typing import Any

from .base import AuthInvalid, ChatMessage, Outcome, PreparedRequest, ProviderAdapter
from .utils import merge_consecutive_turns

GENERATE_CONTENT_SUFFIX = ":generateContent"

_RETRY_DELAY = re.compile(r"^(\d+(?:\.\d+)?)s$")

GENERATION_FIELDS = {
    "temperature": "temperature",
    "top_p": "topP",
    "top_k": "topK",
    "max_tokens": "maxOutputTokens",
    "max_output_tokens": "maxOutputTokens",
}


class GeminiAdapter(ProviderAdapter):
    adapter_id = "gemini"

    def build_request(
        self,
        api_key: str,
        model: str,
        messages: Sequence[ChatMessage],
        config: Mapping[str, Any] | None = None,
    ) -> PreparedRequest:
        system_text = "\n\n".join(
            message.content for message in messages if message.role == "system"
        )
        turns = merge_consecutive_turns(
            [
                ("model" if message.role == "assistant" else "user", message.content)
                for message in messages
                if message.role != "system"
            ]
        )

        if system_text:
            for index, (role, text) in enumerate(turns):
                if role == "user":
                    turns[index] = (role, f"{system_text}\n\n{text}")
                    break
            else:
                turns.insert(0, ("user", system_text))

        body: dict[str, Any] = {
            "contents": [{"role": role, "parts": [{"text": text}]} for role, text in turns],
        }

        options = config or {}
        generation_config = {
            target: options[source]
            for source, target in GENERATION_FIELDS.items()
            if options.get(source) is not None
        }
        if generation_config:
            body["generationConfig"] = generation_config

        return PreparedRequest(
            url=self._model_url(model),
            headers={"Content-Type": "application/json"},
            params={"key": api_key},
            body=body,
        )

    def _model_url(self, model: str) -> str:
        slug = model.removeprefix("models/")
        endpoint = self._provider.endpoint.rstrip("/")
        if "{model}" in endpoint:
            endpoint = endpoint.format(model=slug)
        return f"{endpoint}{GENERATE_CONTENT_SUFFIX}"

    def extract_text(self, body: Any) -> str:
        if not isinstance(body, dict):
            raise self._malformed("body is not an object")
        candidates = body.get("candidates")
        if not isinstance(candidates, list):
            raise self._malformed("missing candidates array")
        if not candidates:
            raise self._malformed("empty candidates array")
        candidate = candidates[0]
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not parts:
            raise self._malformed("missing content parts")
        first = parts[0]
        text = first.get("text") if isinstance(first, dict) else None
        if not isinstance(text, str):
            raise self._malformed("missing text in part")
        return text

    def extract_token_usage(self, body: Any) -> int:
        usage = body.get("usageMetadata") if isinstance(body, dict) else None
        if not isinstance(usage, dict):
            return 0
        total = usage.get("totalTokenCount")
        return total if isinstance(total, int) else 0

    def declared_retry_delay(self, body: Any) -> float | None:
        error = body.get("error") if isinstance(body, dict) else None
        details = error.get("details") if isinstance(error, dict) else None
        if not isinstance(details, list):
            return None
        for detail in details:
            if not isinstance(detail, dict):
                continue
            delay = detail.get("retryDelay")
            if isinstance(delay, str):
                match = _RETRY_DELAY.match(delay.strip())
                if match:
                    return float(match.group(1))
        return None

    def classify_error(
        self,
        status: int,
        headers: Mapping[str, str] | None,
        body: Any,
        now: datetime | None = None,
    ) -> Outcome:
        # Gemini reports a bad key as 400 INVALID_ARGUMENT with an API_KEY_INVALID reason.
        if status == HTTPStatus.BAD_REQUEST and _has_invalid_key_reason(body):
            return AuthInvalid()
        return super().classify_error(status, headers, body, now=now)


def _has_invalid_key_reason(body: Any) -> bool:
    error = body.get("error") if isinstance(body, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    if not isinstance(details, list):
        return False
    return any(
        isinstance(detail, dict) and detail.get("reason") == "API_KEY_INVALID"
        for detail in details
    )
