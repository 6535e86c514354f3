"""
Parley - Configuration.

The orchestrator never owns configuration; it reads a :class:`ConfigProvider`
once per exchange and works from the resulting :class:`ExchangeConfig`
snapshot, so a configuration change takes effect on the next exchange.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Optional

DEFAULT_PROVIDER = "gemini"


class ConfigProvider(ABC):
    """Source of provider selection, generation parameters and credentials."""

    @abstractmethod
    def get_active_provider_name(self) -> str:
        """Name of the provider that should serve the next exchange."""

    @abstractmethod
    def get_generation_parameters(self) -> dict[str, Any]:
        """Generation parameters (temperature, top_p, max_tokens, stop_sequences, ...)."""

    @abstractmethod
    def get_credentials(self, provider_name: str) -> dict[str, Any]:
        """Credentials for *provider_name* (api_key, endpoint, project_id, ...)."""


@dataclass
class GenerationConfig:
    """Sampling parameters sent with every request."""

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None
    stop_sequences: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenerationConfig":
        stop = data.get("stop_sequences") or data.get("stop") or []
        if isinstance(stop, str):
            stop = [stop]
        return cls(
            temperature=_opt_float(data.get("temperature")),
            top_p=_opt_float(data.get("top_p")),
            top_k=_opt_int(data.get("top_k")),
            max_tokens=_opt_int(data.get("max_tokens")),
            stop_sequences=list(stop),
        )


@dataclass
class ThinkingConfig:
    """Native reasoning settings.

    ``budget`` and ``include_thoughts`` feed parts-style providers,
    ``reasoning_effort`` feeds OpenAI-compatible ones.
    """

    enabled: bool = False
    budget: int = 1024
    include_thoughts: bool = True
    reasoning_effort: str = "medium"

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ThinkingConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            budget=int(data.get("budget", 1024)),
            include_thoughts=bool(data.get("include_thoughts", True)),
            reasoning_effort=str(data.get("reasoning_effort", "medium")),
        )


@dataclass
class SafetyConfig:
    """Content-safety thresholds, keyed by harm category."""

    enabled: bool = False
    thresholds: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SafetyConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            thresholds=dict(data.get("thresholds") or {}),
        )


@dataclass
class ExchangeConfig:
    """Immutable-by-convention snapshot of the configuration for one exchange."""

    provider: str = DEFAULT_PROVIDER
    model: Optional[str] = None
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    thinking: ThinkingConfig = field(default_factory=ThinkingConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    streaming_enabled: bool = True
    debug_mode: bool = False
    credentials: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_provider(cls, source: ConfigProvider) -> "ExchangeConfig":
        """Read *source* once and freeze the result."""
        name = source.get_active_provider_name() or DEFAULT_PROVIDER
        params = dict(source.get_generation_parameters() or {})
        return cls.from_parameters(name, params, source.get_credentials(name) or {})

    @classmethod
    def from_parameters(
        cls,
        provider: str,
        params: dict[str, Any],
        credentials: Optional[dict[str, Any]] = None,
    ) -> "ExchangeConfig":
        return cls(
            provider=provider,
            model=params.get("model"),
            generation=GenerationConfig.from_dict(params),
            thinking=ThinkingConfig.from_dict(params.get("thinking")),
            safety=SafetyConfig.from_dict(params.get("safety")),
            streaming_enabled=bool(params.get("streaming_enabled", True)),
            debug_mode=bool(params.get("debug_mode", False)),
            credentials=dict(credentials or {}),
        )

    def with_credentials(self, provider: str, credentials: dict[str, Any]) -> "ExchangeConfig":
        return replace(self, provider=provider, credentials=dict(credentials or {}))

    def with_overrides(self, overrides: Optional[dict[str, Any]]) -> "ExchangeConfig":
        """Return a copy with a preset applied on top.

        Flat keys (``temperature``, ``model``, ``thinking_enabled`` ...) and
        nested ``thinking`` / ``safety`` mappings are both accepted.
        Unknown keys are ignored.
        """
        if not overrides:
            return self

        generation = replace(self.generation)
        for key in ("temperature", "top_p"):
            if overrides.get(key) is not None:
                setattr(generation, key, float(overrides[key]))
        for key in ("top_k", "max_tokens"):
            if overrides.get(key) is not None:
                setattr(generation, key, int(overrides[key]))
        stop = overrides.get("stop_sequences", overrides.get("stop"))
        if stop is not None:
            generation.stop_sequences = [stop] if isinstance(stop, str) else list(stop)

        thinking = replace(self.thinking)
        for key, value in (overrides.get("thinking") or {}).items():
            if hasattr(thinking, key):
                setattr(thinking, key, value)
        if "thinking_enabled" in overrides:
            thinking.enabled = bool(overrides["thinking_enabled"])
        if "thinking_budget" in overrides:
            thinking.budget = int(overrides["thinking_budget"])
        if "reasoning_effort" in overrides:
            thinking.reasoning_effort = str(overrides["reasoning_effort"])

        safety = replace(self.safety, thresholds=dict(self.safety.thresholds))
        nested_safety = overrides.get("safety") or {}
        if "enabled" in nested_safety:
            safety.enabled = bool(nested_safety["enabled"])
        safety.thresholds.update(nested_safety.get("thresholds") or {})
        if "safety_settings_enabled" in overrides:
            safety.enabled = bool(overrides["safety_settings_enabled"])

        return replace(
            self,
            model=overrides.get("model", self.model),
            generation=generation,
            thinking=thinking,
            safety=safety,
            streaming_enabled=bool(overrides.get("streaming_enabled", self.streaming_enabled)),
            debug_mode=bool(overrides.get("debug_mode", self.debug_mode)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Credential-free view, suitable for traces and logs."""
        return {
            "provider": self.provider,
            "model": self.model,
            "temperature": self.generation.temperature,
            "top_p": self.generation.top_p,
            "top_k": self.generation.top_k,
            "max_tokens": self.generation.max_tokens,
            "stop_sequences": list(self.generation.stop_sequences),
            "thinking_enabled": self.thinking.enabled,
            "thinking_budget": self.thinking.budget,
            "reasoning_effort": self.thinking.reasoning_effort,
            "safety_settings_enabled": self.safety.enabled,
            "streaming_enabled": self.streaming_enabled,
            "debug_mode": self.debug_mode,
        }


@dataclass
class StaticConfigProvider(ConfigProvider):
    """In-process configuration source."""

    provider: str = DEFAULT_PROVIDER
    model: Optional[str] = None
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    thinking: ThinkingConfig = field(default_factory=ThinkingConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    streaming_enabled: bool = True
    debug_mode: bool = False
    credentials: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False)

    def get_active_provider_name(self) -> str:
        return self.provider

    def get_generation_parameters(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.generation.temperature,
            "top_p": self.generation.top_p,
            "top_k": self.generation.top_k,
            "max_tokens": self.generation.max_tokens,
            "stop_sequences": list(self.generation.stop_sequences),
            "thinking": {
                "enabled": self.thinking.enabled,
                "budget": self.thinking.budget,
                "include_thoughts": self.thinking.include_thoughts,
                "reasoning_effort": self.thinking.reasoning_effort,
            },
            "safety": {"enabled": self.safety.enabled, "thresholds": dict(self.safety.thresholds)},
            "streaming_enabled": self.streaming_enabled,
            "debug_mode": self.debug_mode,
        }

    def get_credentials(self, provider_name: str) -> dict[str, Any]:
        return dict(self.credentials.get(provider_name, {}))

    @classmethod
    def from_env(cls) -> "StaticConfigProvider":
        """Create configuration from environment variables."""
        credentials: dict[str, dict[str, Any]] = {
            "openai": _drop_empty(
                {
                    "api_key": os.environ.get("OPENAI_API_KEY"),
                    "endpoint": os.environ.get("OPENAI_BASE_URL"),
                }
            ),
            "gemini": _drop_empty(
                {
                    "api_key": os.environ.get("GEMINI_API_KEY"),
                    "project_id": os.environ.get("GOOGLE_CLOUD_PROJECT"),
                    "region": os.environ.get("GOOGLE_CLOUD_REGION"),
                    "access_token": os.environ.get("GOOGLE_ACCESS_TOKEN"),
                }
            ),
        }
        stop = os.environ.get("PARLEY_STOP_SEQUENCES", "")
        return cls(
            provider=os.environ.get("PARLEY_PROVIDER", DEFAULT_PROVIDER),
            model=os.environ.get("PARLEY_MODEL") or None,
            generation=GenerationConfig(
                temperature=_opt_float(os.environ.get("PARLEY_TEMPERATURE")),
                top_p=_opt_float(os.environ.get("PARLEY_TOP_P")),
                max_tokens=_opt_int(os.environ.get("PARLEY_MAX_TOKENS")),
                stop_sequences=[s for s in stop.split(",") if s],
            ),
            thinking=ThinkingConfig(
                enabled=os.environ.get("PARLEY_THINKING", "").lower() == "true",
            ),
            streaming_enabled=os.environ.get("PARLEY_STREAMING", "true").lower() != "false",
            debug_mode=os.environ.get("PARLEY_DEBUG", "").lower() == "true",
            credentials=credentials,
        )


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _drop_empty(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v}
