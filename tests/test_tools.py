import asyncio
import time

import pytest

from threadloom.domain.errors import ConfigurationError, ToolExecutionError
from threadloom.domain.tool import Tool, ToolExecutor, ToolParameterValidator, ToolRegistry

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool(parameters=ECHO_SCHEMA, category="text")
    def echo(text: str) -> str:
        """Repeat the text back"""
        return text

    @registry.tool(name="shout", category="text")
    async def shout(text: str = "") -> str:
        return text.upper()

    @registry.tool(timeout=0.05)
    def slow() -> str:
        time.sleep(0.5)
        return "late"

    @registry.tool()
    def broken() -> None:
        raise ValueError("no such file")

    return registry


def test_registry_lookup_and_search() -> None:
    registry = _registry()

    assert registry.has("echo")
    assert registry.get("echo").description == "Repeat the text back"
    assert [t.name for t in registry.get_tools_by_category("text")] == ["echo", "shout"]
    assert [t.name for t in registry.search_tools("repeat")] == ["echo"]
    assert {"name": "echo", "description": "Repeat the text back", "parameters": ECHO_SCHEMA} in registry.specs()

    registry.register(Tool(name="echo", handler=lambda text: text, category="misc"))
    assert [t.name for t in registry.get_tools_by_category("text")] == ["shout"]
    assert registry.unregister("echo") is True
    assert registry.unregister("echo") is False


def test_validator_reports_schema_errors() -> None:
    tool = _registry().get("echo")

    assert ToolParameterValidator.validate_tool_call(tool, {"text": "hi"}).is_valid
    result = ToolParameterValidator.validate_tool_call(tool, {"text": 3})
    assert not result.is_valid
    assert result.errors[0].startswith("Schema validation failed")


def test_executor_runs_sync_and_async_handlers() -> None:
    executor = ToolExecutor(_registry())

    assert asyncio.run(executor.execute("echo", {"text": "hi"})) == "hi"
    assert asyncio.run(executor.execute("shout", {"text": "hi"})) == "HI"


def test_executor_wraps_failures() -> None:
    executor = ToolExecutor(_registry())

    with pytest.raises(ToolExecutionError) as broken:
        asyncio.run(executor.execute("broken", {}))
    assert broken.value.tool_name == "broken"
    assert "no such file" in broken.value.message

    with pytest.raises(ToolExecutionError) as invalid:
        asyncio.run(executor.execute("echo", {}))
    assert invalid.value.message.startswith('Invalid arguments for tool "echo"')

    with pytest.raises(ToolExecutionError) as timed_out:
        asyncio.run(executor.execute("slow", {}))
    assert "timed out" in timed_out.value.message

    with pytest.raises(ConfigurationError) as missing:
        asyncio.run(executor.execute("nope", {}))
    assert missing.value.message == 'Tool "nope" not found'
