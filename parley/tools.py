"""
Parley - Tool registry and dispatcher.

Tools are registered once at startup and resolved by name when the model
asks for them::

    from parley import ToolRegistry, define_tool

    @define_tool(description="Fetch current weather.", parameters={
        "type": "object",
        "properties": {"city": {"type": "string", "description": "City name."}},
        "required": ["city"],
    })
    def get_weather(city: str) -> str:
        return "18°C"

    registry = ToolRegistry([get_weather])
    registry.resolve("get_weather", {"city": "Paris"})  # -> "18°C"
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger("parley.tools")


@dataclass
class ToolDef:
    """Definition for a tool the model can call.

    ``parameters`` is the JSON schema advertised to the model. When the
    model invokes the tool, ``handler`` is called locally with the decoded
    arguments as keyword arguments.

    Example::

        ToolDef(
            name="get_weather",
            description="Current weather for a city.",
            parameters={
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": ["city"],
            },
            handler=lambda city: "18°C",
        )
    """

    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    handler: Optional[Callable] = None

    def to_schema(self) -> dict:
        """Return the tool definition as a JSON-schema dict for the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def execute(self, arguments: dict[str, Any]) -> Any:
        """Run the handler. Exceptions raised by the handler propagate."""
        if self.handler is None:
            raise NotImplementedError(f"Tool '{self.name}' has no handler")
        result = self.handler(**arguments)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
        return result


async def _await(awaitable: Any) -> Any:
    return await awaitable


def define_tool(
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[dict] = None,
) -> Callable[[Callable], ToolDef]:
    """Decorator that turns a function into a :class:`ToolDef`.

    The function's ``__name__`` is used as the tool name unless *name* is
    given, and its docstring as the description unless *description* is.
    """

    def decorator(func: Callable) -> ToolDef:
        tool_name = name or func.__name__
        return ToolDef(
            name=tool_name,
            description=description or inspect.getdoc(func) or f"Tool: {tool_name}",
            parameters=parameters or {"type": "object", "properties": {}, "required": []},
            handler=func,
        )

    return decorator


def coerce_result(result: Any) -> Any:
    """Coerce a tool result into something that can be sent back to a model.

    Strings, mappings and lists pass through; ``None`` becomes an empty
    string and anything else goes through ``str()``.
    """
    if isinstance(result, (str, dict, list)):
        return result
    if result is None:
        return ""
    return str(result)


class ToolRegistry:
    """Named tools available to the orchestrator.

    Populated at startup and read-only afterwards, so one registry can be
    shared by concurrent exchanges.
    """

    def __init__(self, tools: Iterable[ToolDef] = ()) -> None:
        self._tools: dict[str, ToolDef] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDef) -> None:
        if not tool.name:
            raise ValueError("Tool name must not be empty")
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDef]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[ToolDef]:
        return list(self._tools.values())

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """A registry restricted to *names*; unknown names are ignored."""
        selected = []
        for tool_name in names:
            tool = self._tools.get(tool_name)
            if tool is None:
                logger.warning("Tool override references unknown tool %r", tool_name)
                continue
            selected.append(tool)
        return ToolRegistry(selected)

    def resolve(self, name: str, arguments: dict[str, Any]) -> Any:
        """Execute the tool called *name*.

        Returns ``None`` when no such tool exists, otherwise the coerced
        result. Exceptions raised by the tool propagate.
        """
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool %r", name)
            return None
        logger.debug("Executing tool %s", name)
        return coerce_result(tool.execute(arguments))
