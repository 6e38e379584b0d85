import pytest

from sitebuilder.errors import DuplicateToolError, StorageError, UnknownToolError
from sitebuilder.models import ToolCall, ToolContext, ToolErr, ToolOk
from sitebuilder.tools import ToolRegistry

SCHEMA = {
    "type": "object",
    "properties": {"name": {"type": "string"}, "shout": {"type": "boolean"}},
    "required": ["name"],
}


def make_registry(calls):
    async def greet(args, ctx):
        calls.append((args, ctx))
        return ToolOk(f"hello {args['name']}")

    async def broken(args, ctx):
        raise StorageError("disk is full")

    async def io_broken(args, ctx):
        raise OSError("permission denied")

    registry = ToolRegistry()
    registry.declare("greet", "Say hello", SCHEMA, greet)
    registry.declare("broken", "Always fails", {"type": "object", "properties": {}}, broken)
    registry.declare("ioBroken", "Fails with an OS error", {"type": "object", "properties": {}}, io_broken)
    return registry


def test_declaring_the_same_name_twice_is_rejected():
    registry = make_registry([])
    with pytest.raises(DuplicateToolError):
        registry.declare("greet", "again", SCHEMA, None)
    assert len(registry) == 3


def test_resolve_unknown_tool_raises():
    registry = make_registry([])
    with pytest.raises(UnknownToolError):
        registry.resolve("missing")


def test_catalog_keeps_declaration_order_and_is_stable():
    registry = make_registry([])
    first = [d.name for d in registry.catalog()]
    second = [d.name for d in registry.catalog()]
    assert first == ["greet", "broken", "ioBroken"]
    assert first == second
    assert "greet" in registry


def test_declared_parameters_are_frozen_copies():
    schema = {"type": "object", "properties": {"a": {"type": "string"}}, "required": ["a"]}
    registry = ToolRegistry()
    registry.declare("t", "d", schema, None)
    schema["required"].append("b")
    schema["properties"]["b"] = {"type": "string"}

    declaration = registry.catalog()[0]
    assert declaration.required == ("a",)
    assert declaration.parameter_names == ("a",)
    with pytest.raises(TypeError):
        declaration.parameters["extra"] = 1


def test_openai_tool_shape():
    registry = make_registry([])
    tool = registry.to_openai_tools()[0]
    assert tool["type"] == "function"
    assert tool["function"]["name"] == "greet"
    assert tool["function"]["parameters"] == SCHEMA


@pytest.mark.asyncio
async def test_invoke_passes_arguments_and_context():
    calls = []
    registry = make_registry(calls)
    ctx = ToolContext(project_id="site", acting_user_id="u1")

    result = await registry.invoke(ToolCall("greet", {"name": "Ada"}), ctx)

    assert result == ToolOk("hello Ada")
    assert calls == [({"name": "Ada"}, ctx)]


@pytest.mark.asyncio
async def test_invoke_reports_missing_arguments_without_calling_handler():
    calls = []
    registry = make_registry(calls)

    result = await registry.invoke(ToolCall("greet", {"shout": True}), ToolContext())

    assert isinstance(result, ToolErr)
    assert result.kind == "invalid_arguments"
    assert "name" in result.message
    assert calls == []


@pytest.mark.asyncio
async def test_invoke_rejects_non_object_arguments():
    registry = make_registry([])
    result = await registry.invoke(ToolCall("greet", ["Ada"]), ToolContext())
    assert result.kind == "invalid_arguments"


@pytest.mark.asyncio
async def test_handler_failures_become_error_results():
    registry = make_registry([])

    storage = await registry.invoke(ToolCall("broken", {}), ToolContext())
    io = await registry.invoke(ToolCall("ioBroken", {}), ToolContext())

    assert storage == ToolErr("storage_error", "disk is full")
    assert storage.render() == "Error: disk is full"
    assert io.kind == "io_error"
    assert not io.ok


@pytest.mark.asyncio
async def test_invoke_unknown_tool_raises():
    registry = make_registry([])
    with pytest.raises(UnknownToolError):
        await registry.invoke(ToolCall("nope", {}), ToolContext())
