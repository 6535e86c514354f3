"""
Parley - Multi-provider LLM conversation orchestration.

Drives chat exchanges against Gemini-style and OpenAI-compatible backends
through one canonical message protocol, runs model-requested tools over a
bounded number of turns, and records full diagnostic traces on demand.
"""

from .adapters import (
    BaseProviderAdapter,
    GeminiAdapter,
    OpenAICompatibleAdapter,
    WireCapture,
)
from .capabilities import ModelCapabilities, ModelCapabilityRegistry
from .config import (
    ConfigProvider,
    ExchangeConfig,
    GenerationConfig,
    SafetyConfig,
    StaticConfigProvider,
    ThinkingConfig,
)
from .events import ExchangeObserver
from .exceptions import (
    CapabilityConfigError,
    ParleyError,
    ProviderAuthenticationError,
    ProviderConnectionError,
    ProviderError,
    ProviderNotAvailableError,
    ProviderQuotaError,
    ProviderUnavailableError,
)
from .history import HistorySink, InMemoryHistorySink
from .models import (
    CanonicalMessage,
    ExchangeResult,
    ExchangeState,
    ExchangeTrace,
    FunctionCall,
    MessageRole,
    NormalizedChunk,
    ToolCallRequest,
    Usage,
)
from .orchestrator import MAX_TURNS, ChatOrchestrator, ExchangeOptions
from .registry import ProviderRegistry
from .tools import ToolDef, ToolRegistry, define_tool
from .trace import DebugSink, InMemoryDebugSink, LoggingDebugSink, TraceAccumulator

__version__ = "0.1.0"

__all__ = [
    # Adapters
    "BaseProviderAdapter",
    "GeminiAdapter",
    "OpenAICompatibleAdapter",
    "WireCapture",
    # Capabilities
    "ModelCapabilities",
    "ModelCapabilityRegistry",
    # Configuration
    "ConfigProvider",
    "ExchangeConfig",
    "GenerationConfig",
    "SafetyConfig",
    "StaticConfigProvider",
    "ThinkingConfig",
    # Exceptions
    "CapabilityConfigError",
    "ParleyError",
    "ProviderAuthenticationError",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderNotAvailableError",
    "ProviderQuotaError",
    "ProviderUnavailableError",
    # Models
    "CanonicalMessage",
    "ExchangeResult",
    "ExchangeState",
    "ExchangeTrace",
    "FunctionCall",
    "MessageRole",
    "NormalizedChunk",
    "ToolCallRequest",
    "Usage",
    # Orchestration
    "MAX_TURNS",
    "ChatOrchestrator",
    "ExchangeOptions",
    "ProviderRegistry",
    "ExchangeObserver",
    "HistorySink",
    "InMemoryHistorySink",
    # Tools
    "ToolDef",
    "ToolRegistry",
    "define_tool",
    # Tracing
    "DebugSink",
    "InMemoryDebugSink",
    "LoggingDebugSink",
    "TraceAccumulator",
    "__version__",
]
