"""
Parley - Model capability profiles.

Adapters ask the registry which optional request parameters a model
accepts (thinking, top_k, safety settings, tools, system prompt) so that
a payload never carries a field the backend would reject. Profiles are
YAML files with a top-level ``models:`` mapping::

    models:
      gemini-2.5-flash:
        provider: gemini
        thinking: true
        top_k: true
        safety_settings: true
"""

import logging
from dataclasses import dataclass, fields
from importlib import resources
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

import yaml

from .exceptions import CapabilityConfigError

if TYPE_CHECKING:
    from .models import Usage

logger = logging.getLogger("parley.capabilities")

BUNDLED_PROFILES = "models.yaml"


@dataclass(frozen=True)
class ModelCapabilities:
    """What a given model accepts on the wire."""

    model: str
    provider: str = "unknown"
    thinking: bool = False
    safety_settings: bool = False
    top_k: bool = False
    context_caching: bool = False
    function_calling: bool = True
    streaming: bool = True
    system_prompt: bool = True
    pricing_input: Optional[float] = None
    pricing_output: Optional[float] = None
    model_id: Optional[str] = None

    def supports(self, capability: str) -> bool:
        """Return whether the boolean capability *capability* is enabled."""
        value = getattr(self, capability, False)
        return value is True

    @property
    def wire_model(self) -> str:
        """Identifier actually sent to the provider."""
        return self.model_id or self.model

    def estimate_cost(self, usage: "Usage") -> Optional[float]:
        """Estimated USD cost of *usage*, or ``None`` when the model has no pricing.

        Prices are per million tokens. Everything beyond the prompt in
        ``total_tokens`` (answer and thinking) is billed at the output price.
        """
        if self.pricing_input is None or self.pricing_output is None:
            return None
        if usage.total_tokens:
            output_tokens = max(usage.total_tokens - usage.prompt_tokens, 0)
        else:
            output_tokens = usage.completion_tokens + usage.thinking_tokens
        return (
            usage.prompt_tokens * self.pricing_input + output_tokens * self.pricing_output
        ) / 1_000_000

    @classmethod
    def from_dict(cls, model: str, data: dict[str, Any]) -> "ModelCapabilities":
        known = {f.name for f in fields(cls)} - {"model"}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("pricing_input", "pricing_output"):
            if values.get(key) is not None:
                values[key] = float(values[key])
        return cls(model=model, **values)


class ModelCapabilityRegistry:
    """Registry of capability profiles loaded from YAML."""

    def __init__(
        self,
        paths: Optional[Iterable[Union[str, Path]]] = None,
        include_bundled: bool = True,
    ) -> None:
        self._models: dict[str, dict[str, Any]] = {}
        if include_bundled:
            bundled = resources.files("parley").joinpath("data").joinpath(BUNDLED_PROFILES)
            self._merge(self._parse(bundled.read_text(encoding="utf-8"), BUNDLED_PROFILES))
        for path in paths or ():
            self.load_file(path)

    def load_file(self, path: Union[str, Path]) -> None:
        """Load a profile file; later files override earlier definitions."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise CapabilityConfigError(f"Cannot read capability file {path}: {e}") from e
        self._merge(self._parse(text, str(path)))

    def register(self, model: str, **capabilities: Any) -> None:
        self._models[model] = dict(capabilities)

    def get_capabilities(self, model: str) -> ModelCapabilities:
        """Profile for *model*, or permissive defaults when the model is unknown."""
        data = self._models.get(model)
        if data is None:
            return ModelCapabilities(model=model)
        return ModelCapabilities.from_dict(model, data)

    def supports(self, model: str, capability: str) -> bool:
        return self.get_capabilities(model).supports(capability)

    def known_models(self) -> list[str]:
        return list(self._models)

    def models_for_provider(self, provider: str) -> list[str]:
        return [name for name, data in self._models.items() if data.get("provider") == provider]

    def is_known(self, model: str) -> bool:
        return model in self._models

    @staticmethod
    def _parse(text: str, source: str) -> dict[str, Any]:
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise CapabilityConfigError(f"Invalid YAML in {source}: {e}") from e
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, dict):
            raise CapabilityConfigError(f"{source} has no 'models' mapping")
        return models

    def _merge(self, models: dict[str, Any]) -> None:
        for name, data in models.items():
            if not isinstance(data, dict):
                logger.warning("Ignoring capability profile %s: not a mapping", name)
                continue
            self._models[str(name)] = data
