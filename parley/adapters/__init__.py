"""Provider adapters.

Each adapter speaks one wire protocol family and normalizes its responses
into :class:`~parley.models.NormalizedChunk` objects:

- :class:`GeminiAdapter` - Google Gemini "parts" protocol (Generative
  Language API or Vertex AI), streamed as a JSON array.
- :class:`OpenAICompatibleAdapter` - any ``/chat/completions`` endpoint,
  streamed as Server-Sent Events.

Example::

    import httpx
    from parley.adapters import OpenAICompatibleAdapter
    from parley.config import StaticConfigProvider
    from parley.models import CanonicalMessage

    adapter = OpenAICompatibleAdapter(StaticConfigProvider.from_env(), httpx.Client())
    chunks, capture = adapter.stream_generate_content(
        [CanonicalMessage.user("Hello")], tools=[]
    )
    for chunk in chunks:
        print(chunk.text or "", end="")
"""

from .base import BaseProviderAdapter, StreamDecoder, WireCapture, tool_schemas
from .gemini import GeminiAdapter, JsonArrayStreamDecoder, find_object_end
from .openai_compat import OpenAICompatibleAdapter, SSEStreamDecoder, ToolCallAccumulator

__all__ = [
    "BaseProviderAdapter",
    "StreamDecoder",
    "WireCapture",
    "tool_schemas",
    "GeminiAdapter",
    "JsonArrayStreamDecoder",
    "find_object_end",
    "OpenAICompatibleAdapter",
    "SSEStreamDecoder",
    "ToolCallAccumulator",
]
