"""Base class for provider adapters.

An adapter speaks one wire protocol family. It translates canonical
history into a provider payload, sends it over an injected
``httpx.Client`` and normalizes whatever comes back into
:class:`~parley.models.NormalizedChunk` objects. Adapters never mutate
the history they are given and never run tools.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

import httpx

from ..capabilities import ModelCapabilities, ModelCapabilityRegistry
from ..config import ConfigProvider, ExchangeConfig
from ..exceptions import (
    ProviderAuthenticationError,
    ProviderConnectionError,
    ProviderError,
    ProviderQuotaError,
    ProviderUnavailableError,
)
from ..models import CanonicalMessage, MessageRole, NormalizedChunk
from ..text import sanitize_payload, strip_secrets

logger = logging.getLogger("parley.adapters")

DEFAULT_TIMEOUT = 120.0
ERROR_BODY_LIMIT = 2000


@dataclass
class WireCapture:
    """Raw wire payloads of one adapter call.

    Always populated, but only ever read for diagnostics.

    Attributes:
        provider: Adapter that produced the capture.
        model: Model identifier actually sent.
        url: Endpoint the request was sent to.
        request_params: Generation parameters retained after capability filtering.
        request_body: JSON body exactly as sent.
        raw_events: Every decoded stream event, in arrival order.
        raw_response: The JSON document of a synchronous call.
    """

    provider: str
    model: str
    url: Optional[str] = None
    request_params: dict[str, Any] = field(default_factory=dict)
    request_body: dict[str, Any] = field(default_factory=dict)
    raw_events: list[Any] = field(default_factory=list)
    raw_response: Optional[Any] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "url": self.url,
            "request_params": self.request_params,
            "request_body": self.request_body,
            "raw_events": self.raw_events,
            "raw_response": self.raw_response,
        }


class StreamDecoder(ABC):
    """Incremental decoder turning response text into normalized chunks."""

    @abstractmethod
    def feed(self, text: str) -> list[NormalizedChunk]:
        """Consume one network read and return the chunks it completed."""

    @abstractmethod
    def close(self) -> list[NormalizedChunk]:
        """Signal end of stream and return whatever is still pending."""


class BaseProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement the wire mapping while this class owns the HTTP
    round trip, error mapping and wire capture.
    """

    provider_name = "base"
    display_name = "Provider"
    default_model = ""

    def __init__(
        self,
        config_provider: Optional[ConfigProvider] = None,
        http_client: Optional[httpx.Client] = None,
        capabilities: Optional[ModelCapabilityRegistry] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the adapter.

        Args:
            config_provider: Source used when a call is made without an
                explicit :class:`ExchangeConfig`.
            http_client: Injected HTTP client. When omitted the adapter
                creates and owns one.
            capabilities: Model capability registry. Defaults to the
                bundled profiles.
            timeout: Request timeout in seconds for an owned client.
        """
        self._config_provider = config_provider
        self._http_client = http_client
        self._owns_client = http_client is None
        self._capabilities = capabilities or ModelCapabilityRegistry()
        self._timeout = timeout

    @property
    def client(self) -> httpx.Client:
        """The HTTP client, created on first use when none was injected."""
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self._timeout)
        return self._http_client

    @property
    def capabilities(self) -> ModelCapabilityRegistry:
        return self._capabilities

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def __enter__(self) -> "BaseProviderAdapter":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def stream_generate_content(
        self,
        history: list[CanonicalMessage],
        tools: Optional[Iterable[Any]] = None,
        model: Optional[str] = None,
        *,
        system_instruction: Optional[str] = None,
        config: Optional[ExchangeConfig] = None,
    ) -> tuple[Iterator[NormalizedChunk], WireCapture]:
        """Start a streaming generation.

        The payload is built eagerly so the returned capture already holds
        the request. The chunk iterator is lazy and forward only: nothing is
        sent until it is first advanced.
        """
        cfg, caps, body, capture = self._prepare(
            history, tools, model, system_instruction, config, stream=True
        )
        return self._iter_stream(cfg, caps, body, capture), capture

    def generate_content(
        self,
        history: list[CanonicalMessage],
        tools: Optional[Iterable[Any]] = None,
        model: Optional[str] = None,
        *,
        system_instruction: Optional[str] = None,
        config: Optional[ExchangeConfig] = None,
    ) -> tuple[NormalizedChunk, WireCapture]:
        """Run a synchronous generation and return one fully populated chunk."""
        cfg, caps, body, capture = self._prepare(
            history, tools, model, system_instruction, config, stream=False
        )
        url, headers = self.endpoint(cfg, caps, stream=False)
        logger.debug("%s request to %s (model=%s)", self.provider_name, url, caps.wire_model)
        try:
            response = self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise self._connection_error(e, cfg) from e
        self._raise_for_status(response, cfg)
        data = response.json()
        capture.raw_response = data
        return self.normalize_response(data), capture

    # ------------------------------------------------------------------
    # Hooks implemented by each protocol family
    # ------------------------------------------------------------------

    @abstractmethod
    def to_wire_messages(
        self, history: list[CanonicalMessage], system_instruction: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Convert canonical history to the provider's message list."""

    @abstractmethod
    def from_wire_messages(self, wire: list[dict[str, Any]]) -> list[CanonicalMessage]:
        """Convert a provider message list back to canonical history."""

    @abstractmethod
    def build_payload(
        self,
        history: list[CanonicalMessage],
        tool_schemas: list[dict[str, Any]],
        system_instruction: Optional[str],
        config: ExchangeConfig,
        capabilities: ModelCapabilities,
        stream: bool,
    ) -> dict[str, Any]:
        """Build the JSON request body."""

    @abstractmethod
    def endpoint(
        self, config: ExchangeConfig, capabilities: ModelCapabilities, stream: bool
    ) -> tuple[str, dict[str, str]]:
        """Return the request URL and headers."""

    @abstractmethod
    def normalize_response(self, data: dict[str, Any]) -> NormalizedChunk:
        """Normalize one complete synchronous response document."""

    @abstractmethod
    def new_stream_decoder(self, raw_events: list[Any]) -> StreamDecoder:
        """Create a decoder that appends each decoded event to *raw_events*."""

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def resolve_config(self, config: Optional[ExchangeConfig] = None) -> ExchangeConfig:
        if config is not None:
            return config
        if self._config_provider is None:
            return ExchangeConfig(provider=self.provider_name)
        cfg = ExchangeConfig.from_provider(self._config_provider)
        if cfg.provider != self.provider_name:
            cfg = cfg.with_credentials(
                self.provider_name, self._config_provider.get_credentials(self.provider_name)
            )
        return cfg

    def _prepare(
        self,
        history: list[CanonicalMessage],
        tools: Optional[Iterable[Any]],
        model: Optional[str],
        system_instruction: Optional[str],
        config: Optional[ExchangeConfig],
        stream: bool,
    ) -> tuple[ExchangeConfig, ModelCapabilities, dict[str, Any], WireCapture]:
        cfg = self.resolve_config(config)
        caps = self._capabilities.get_capabilities(model or cfg.model or self.default_model)
        schemas = tool_schemas(tools)
        body = sanitize_payload(
            self.build_payload(list(history), schemas, system_instruction, cfg, caps, stream)
        )
        url, _ = self.endpoint(cfg, caps, stream)
        capture = WireCapture(
            provider=self.provider_name,
            model=caps.wire_model,
            url=url,
            request_params=self.request_params(cfg, caps, bool(schemas)),
            request_body=body,
        )
        return cfg, caps, body, capture

    def _iter_stream(
        self,
        cfg: ExchangeConfig,
        caps: ModelCapabilities,
        body: dict[str, Any],
        capture: WireCapture,
    ) -> Iterator[NormalizedChunk]:
        url, headers = self.endpoint(cfg, caps, stream=True)
        decoder = self.new_stream_decoder(capture.raw_events)
        logger.debug("%s stream to %s (model=%s)", self.provider_name, url, caps.wire_model)
        try:
            with self.client.stream("POST", url, json=body, headers=headers) as response:
                if response.status_code >= 400:
                    response.read()
                self._raise_for_status(response, cfg)
                for text in response.iter_text():
                    yield from decoder.feed(text)
        except httpx.HTTPError as e:
            raise self._connection_error(e, cfg) from e
        yield from decoder.close()

    @staticmethod
    def request_params(
        cfg: ExchangeConfig, caps: ModelCapabilities, has_tools: bool
    ) -> dict[str, Any]:
        gen = cfg.generation
        return {
            "model": caps.wire_model,
            "temperature": gen.temperature,
            "top_p": gen.top_p,
            "top_k": gen.top_k if caps.top_k else None,
            "max_tokens": gen.max_tokens,
            "stop_sequences": list(gen.stop_sequences),
            "thinking": cfg.thinking.enabled and caps.thinking,
            "safety_settings": cfg.safety.enabled and caps.safety_settings,
            "tools": has_tools and caps.function_calling,
        }

    def _secrets(self, cfg: ExchangeConfig) -> list[Optional[str]]:
        return [cfg.credentials.get("api_key"), cfg.credentials.get("access_token")]

    def _raise_for_status(self, response: httpx.Response, cfg: ExchangeConfig) -> None:
        """Map an HTTP error status to a :class:`ProviderError` subclass."""
        status = response.status_code
        if status < 400:
            return
        body = strip_secrets(response.text[:ERROR_BODY_LIMIT], self._secrets(cfg))
        message = f"{self.display_name} API error ({status}): {body}"
        if status in (401, 403):
            error_cls: type[ProviderError] = ProviderAuthenticationError
        elif status == 429:
            error_cls = ProviderQuotaError
        elif status >= 500:
            error_cls = ProviderUnavailableError
        else:
            error_cls = ProviderError
        logger.warning("%s request failed with status %s", self.provider_name, status)
        raise error_cls(message, provider=self.provider_name, status_code=status, response=body)

    def _connection_error(self, error: httpx.HTTPError, cfg: ExchangeConfig) -> ProviderError:
        message = strip_secrets(
            f"{self.display_name} request failed: {error}", self._secrets(cfg)
        )
        logger.warning("%s transport failure: %s", self.provider_name, message)
        return ProviderConnectionError(message, provider=self.provider_name)


def tool_schemas(tools: Optional[Iterable[Any]]) -> list[dict[str, Any]]:
    """Normalize tool definitions (``ToolDef`` objects or plain dicts) to schemas."""
    schemas = []
    for tool in tools or ():
        if hasattr(tool, "to_schema"):
            schemas.append(tool.to_schema())
        else:
            schemas.append(
                {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters")
                    or tool.get("json_schema")
                    or {"type": "object", "properties": {}},
                }
            )
    return schemas


def split_system(
    history: list[CanonicalMessage], system_instruction: Optional[str]
) -> tuple[Optional[str], list[CanonicalMessage]]:
    """Lift system messages out of *history* and merge them with *system_instruction*."""
    parts = [system_instruction] if system_instruction else []
    rest = []
    for message in history:
        if message.role == MessageRole.SYSTEM:
            if message.content:
                parts.append(message.content)
        else:
            rest.append(message)
    return ("\n\n".join(parts) if parts else None), rest
