"""
Parley - Provider registry.

Maps provider names to adapters. The active provider is read from the
configuration on every lookup so a configuration change applies to the
next exchange without a restart.
"""

import logging
from typing import Iterable, Optional

from .adapters.base import BaseProviderAdapter
from .config import DEFAULT_PROVIDER, ConfigProvider
from .exceptions import ProviderNotAvailableError

logger = logging.getLogger("parley.registry")


class ProviderRegistry:
    """Registry of provider adapters with a default fallback."""

    def __init__(
        self,
        adapters: Iterable[BaseProviderAdapter] = (),
        config_provider: Optional[ConfigProvider] = None,
        default_provider: str = DEFAULT_PROVIDER,
    ) -> None:
        self._adapters: dict[str, BaseProviderAdapter] = {}
        self._config_provider = config_provider
        self.default_provider = default_provider
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BaseProviderAdapter) -> None:
        if adapter.provider_name in self._adapters:
            raise ValueError(f"Provider already registered: {adapter.provider_name}")
        self._adapters[adapter.provider_name] = adapter

    def available_providers(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def get_adapter(self, provider_name: Optional[str] = None) -> BaseProviderAdapter:
        """Return the adapter for *provider_name*, or for the configured provider.

        Falls back to the default provider when the requested one is not
        registered.

        Raises:
            ProviderNotAvailableError: Neither provider is registered.
        """
        name = provider_name
        if name is None and self._config_provider is not None:
            name = self._config_provider.get_active_provider_name()
        name = name or self.default_provider

        adapter = self._adapters.get(name)
        if adapter is not None:
            return adapter

        fallback = self._adapters.get(self.default_provider)
        if fallback is not None:
            logger.warning(
                "Provider %r is not registered, falling back to %r", name, self.default_provider
            )
            return fallback

        raise ProviderNotAvailableError(
            f"Provider {name!r} is not available. "
            f"Registered providers: {', '.join(self._adapters) or 'none'}",
            available=self.available_providers(),
        )

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()
