"""Anthropic Messages API adapter.

System messages are hoisted out of the transcript into the top-level
``system`` field; several system messages are joined with a blank line.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from .base import ChatMessage, PreparedRequest, ProviderAdapter
from .ratelimit import DEFAULT_RESET_HEADERS
from .utils import merge_consecutive_turns

API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1024


class AnthropicAdapter(ProviderAdapter):
    adapter_id = "anthropic"
    reset_headers = (
        "anthropic-ratelimit-requests-reset",
        "anthropic-ratelimit-tokens-reset",
        *DEFAULT_RESET_HEADERS,
    )

    def build_request(
        self,
        api_key: str,
        model: str,
        messages: Sequence[ChatMessage],
        config: Mapping[str, Any] | None = None,
    ) -> PreparedRequest:
        options = config or {}
        system_parts = [message.content for message in messages if message.role == "system"]
        turns = merge_consecutive_turns(
            [
                ("assistant" if message.role == "assistant" else "user", message.content)
                for message in messages
                if message.role != "system"
            ]
        )

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": options.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "messages": [{"role": role, "content": text} for role, text in turns],
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        for field in ("temperature", "top_p", "top_k"):
            value = options.get(field)
            if value is not None:
                body[field] = value

        return PreparedRequest(
            url=self._provider.endpoint,
            headers={
                "x-api-key": api_key,
                "anthropic-version": API_VERSION,
                "Content-Type": "application/json",
            },
            body=body,
        )

    def extract_text(self, body: Any) -> str:
        if not isinstance(body, dict):
            raise self._malformed("body is not an object")
        content = body.get("content")
        if not isinstance(content, list) or not content:
            raise self._malformed("missing content array")
        first = content[0]
        if not isinstance(first, dict) or first.get("type") != "text":
            raise self._malformed("first content block is not text")
        text = first.get("text")
        if not isinstance(text, str):
            raise self._malformed("missing text in content block")
        return text

    def extract_token_usage(self, body: Any) -> int:
        usage = body.get("usage") if isinstance(body, dict) else None
        if not isinstance(usage, dict):
            return 0
        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        total = 0
        if isinstance(input_tokens, int):
            total += input_tokens
        if isinstance(output_tokens, int):
            total += output_tokens
        return total
