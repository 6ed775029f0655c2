"""OpenAI-compatible provider adapter.

Serves OpenAI itself and any endpoint speaking the same chat completions
dialect (DeepSeek and other compatible gateways). System messages are
passed through unchanged as ``system`` role entries.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from .base import ChatMessage, PreparedRequest, ProviderAdapter

OPTIONAL_FIELDS = (
    "temperature",
    "max_tokens",
    "top_p",
    "presence_penalty",
    "frequency_penalty",
)


class OpenAICompatibleAdapter(ProviderAdapter):
    adapter_id = "openai"

    def build_request(
        self,
        api_key: str,
        model: str,
        messages: Sequence[ChatMessage],
        config: Mapping[str, Any] | None = None,
    ) -> PreparedRequest:
        body: dict[str, Any] = {
            "model": model,
            "messages": [{"role": message.role, "content": message.content} for message in messages],
        }
        options = config or {}
        for field in OPTIONAL_FIELDS:
            value = options.get(field)
            if value is not None:
                body[field] = value

        return PreparedRequest(
            url=self._provider.endpoint,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            body=body,
        )

    def extract_text(self, body: Any) -> str:
        if not isinstance(body, dict):
            raise self._malformed("body is not an object")
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise self._malformed("missing choices array")
        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(message, dict):
            raise self._malformed("missing message in first choice")
        content = message.get("content")
        if not isinstance(content, str):
            raise self._malformed("missing message content")
        return content

    def extract_token_usage(self, body: Any) -> int:
        usage = body.get("usage") if isinstance(body, dict) else None
        if not isinstance(usage, dict):
            return 0
        total = usage.get("total_tokens")
        if isinstance(total, int):
            return total
        prompt = usage.get("prompt_tokens")
        completion = usage.get("completion_tokens")
        if isinstance(prompt, int) and isinstance(completion, int):
            return prompt + completion
        return 0
