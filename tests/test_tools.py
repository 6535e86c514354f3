"""
Tests for the tool registry and dispatcher.
"""

import pytest

from parley.tools import ToolDef, ToolRegistry, coerce_result, define_tool


@define_tool(
    description="Current weather for a city.",
    parameters={
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
    },
)
def get_weather(city: str) -> str:
    return f"18°C in {city}"


@define_tool()
def get_time() -> str:
    """Current time."""
    return "12:00"


class TestDefineTool:
    def test_name_from_function(self):
        assert get_weather.name == "get_weather"
        assert isinstance(get_weather, ToolDef)

    def test_description_from_docstring(self):
        assert get_time.description == "Current time."

    def test_default_parameters(self):
        assert get_time.parameters == {"type": "object", "properties": {}, "required": []}

    def test_explicit_name(self):
        tool = define_tool(name="renamed")(lambda: None)
        assert tool.name == "renamed"

    def test_schema(self):
        assert get_weather.to_schema() == {
            "name": "get_weather",
            "description": "Current weather for a city.",
            "parameters": get_weather.parameters,
        }


class TestToolDef:
    def test_execute_passes_keyword_arguments(self):
        assert get_weather.execute({"city": "Paris"}) == "18°C in Paris"

    def test_execute_without_handler(self):
        with pytest.raises(NotImplementedError):
            ToolDef(name="x", description="x").execute({})

    def test_execute_async_handler(self):
        async def handler(value):
            return value * 2

        assert ToolDef(name="double", description="d", handler=handler).execute({"value": 2}) == 4


class TestCoerceResult:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("text", "text"),
            ({"a": 1}, {"a": 1}),
            ([1, 2], [1, 2]),
            (None, ""),
            (42, "42"),
            (1.5, "1.5"),
        ],
    )
    def test_coercion(self, value, expected):
        assert coerce_result(value) == expected


class TestToolRegistry:
    def test_register_and_lookup(self):
        registry = ToolRegistry([get_weather, get_time])
        assert len(registry) == 2
        assert "get_weather" in registry
        assert registry.has("get_time")
        assert registry.get("missing") is None
        assert registry.names() == ["get_weather", "get_time"]
        assert registry.definitions() == [get_weather, get_time]

    def test_duplicate_name_rejected(self):
        registry = ToolRegistry([get_weather])
        with pytest.raises(ValueError):
            registry.register(get_weather)

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            ToolRegistry([ToolDef(name="", description="x")])

    def test_resolve(self):
        registry = ToolRegistry([get_weather])
        assert registry.resolve("get_weather", {"city": "Lyon"}) == "18°C in Lyon"

    def test_resolve_unknown_returns_none(self, caplog):
        registry = ToolRegistry([get_weather])
        with caplog.at_level("WARNING", logger="parley.tools"):
            assert registry.resolve("missing", {}) is None
        assert "missing" in caplog.text

    def test_resolve_coerces_result(self):
        registry = ToolRegistry([ToolDef(name="n", description="n", handler=lambda: None)])
        assert registry.resolve("n", {}) == ""

    def test_resolve_propagates_exceptions(self):
        def broken():
            raise RuntimeError("boom")

        registry = ToolRegistry([ToolDef(name="broken", description="b", handler=broken)])
        with pytest.raises(RuntimeError, match="boom"):
            registry.resolve("broken", {})

    def test_resolve_bad_arguments_propagate(self):
        registry = ToolRegistry([get_weather])
        with pytest.raises(TypeError):
            registry.resolve("get_weather", {})

    def test_subset(self):
        registry = ToolRegistry([get_weather, get_time])
        subset = registry.subset(["get_time", "unknown"])
        assert subset.names() == ["get_time"]
        assert len(registry) == 2
