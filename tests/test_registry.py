"""
Tests for the provider registry.
"""

import pytest
from conftest import ScriptedAdapter

from parley.adapters.openai_compat import OpenAICompatibleAdapter
from parley.config import StaticConfigProvider
from parley.exceptions import ProviderNotAvailableError


class TestProviderRegistry:
    def test_lookup_by_name(self, make_registry):
        gemini = ScriptedAdapter([], name="gemini")
        openai = ScriptedAdapter([], name="openai")
        registry = make_registry(gemini, openai, default="gemini")

        assert registry.get_adapter("openai") is openai
        assert registry.available_providers() == ["gemini", "openai"]
        assert "gemini" in registry

    def test_duplicate_provider_rejected(self, make_registry):
        registry = make_registry(ScriptedAdapter([]))
        with pytest.raises(ValueError):
            registry.register(ScriptedAdapter([]))

    def test_unknown_provider_falls_back_to_default(self, make_registry, caplog):
        default = ScriptedAdapter([])
        registry = make_registry(default)

        with caplog.at_level("WARNING", logger="parley.registry"):
            assert registry.get_adapter("nope") is default
        assert "nope" in caplog.text

    def test_no_default_raises(self, make_registry):
        registry = make_registry(ScriptedAdapter([], name="openai"), default="gemini")

        with pytest.raises(ProviderNotAvailableError) as exc_info:
            registry.get_adapter("anthropic")
        assert exc_info.value.available == ["openai"]

    def test_empty_registry_raises(self, make_registry):
        with pytest.raises(ProviderNotAvailableError):
            make_registry().get_adapter()

    def test_reads_configured_provider_on_every_lookup(self, make_registry):
        gemini = ScriptedAdapter([], name="gemini")
        openai = ScriptedAdapter([], name="openai")
        config = StaticConfigProvider(provider="openai")
        registry = make_registry(gemini, openai, default="gemini", config_provider=config)

        assert registry.get_adapter() is openai
        config.provider = "gemini"
        assert registry.get_adapter() is gemini

    def test_close_closes_owned_clients(self, make_registry):
        adapter = OpenAICompatibleAdapter()
        client = adapter.client
        make_registry(adapter, default="openai").close()
        assert client.is_closed

    def test_close_leaves_injected_clients_open(self, make_registry):
        adapter = ScriptedAdapter([])
        make_registry(adapter).close()
        assert not adapter.client.is_closed
