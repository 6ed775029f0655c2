"""Static map from adapter code to adapter implementation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import timedelta
from types import MappingProxyType

from chatrelay.core.config import DispatchSettings, ProviderModel
from chatrelay.core.exceptions import UnknownAdapterError

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .gemini import GeminiAdapter
from .openai import OpenAICompatibleAdapter

logger = logging.getLogger("chatrelay.registry")

ADAPTERS: Mapping[str, type[ProviderAdapter]] = MappingProxyType(
    {
        "openai": OpenAICompatibleAdapter,
        "openai_compatible": OpenAICompatibleAdapter,
        "deepseek": OpenAICompatibleAdapter,
        "anthropic": AnthropicAdapter,
        "gemini": GeminiAdapter,
    }
)


class AdapterRegistry:
    """Read-only resolver from provider records to adapter instances."""

    def __init__(self, adapters: Mapping[str, type[ProviderAdapter]] = ADAPTERS) -> None:
        self._adapters = MappingProxyType(dict(adapters))

    def known_adapters(self) -> list[str]:
        return sorted(self._adapters)

    def validate(self, providers: Iterable[ProviderModel]) -> None:
        """Fail fast when any provider names an unregistered adapter."""
        for provider in providers:
            if provider.adapter not in self._adapters:
                logger.error(
                    "Unknown adapter configured",
                    extra={
                        "event": "unknown_adapter",
                        "provider": provider.code,
                        "adapter": provider.adapter,
                    },
                )
                raise UnknownAdapterError(provider.code, provider.adapter)

    def resolve(
        self, provider: ProviderModel, settings: DispatchSettings | None = None
    ) -> ProviderAdapter:
        adapter_cls = self._adapters.get(provider.adapter)
        if adapter_cls is None:
            raise UnknownAdapterError(provider.code, provider.adapter)
        settings = settings or DispatchSettings()
        return adapter_cls(
            provider,
            timeout=settings.request_timeout_seconds,
            default_cooldown=timedelta(seconds=settings.default_rate_limit_cooldown_seconds),
        )


registry = AdapterRegistry()
