from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Tuple

import httpx

from .errors import DuplicateToolError, ToolExecutionError, UnknownToolError
from .models import ToolCall, ToolContext, ToolErr, ToolResult

logger = logging.getLogger(__name__)

# Names the agent loop applies its mode policy to
EXECUTE_COMMAND = "executeCommand"
WRITE_FILE = "writeToFile"
LIST_PROJECTS = "listProjects"
READ_PROJECT_FILES = "readProjectFiles"
UPDATE_PROJECT_FILES = "updateProjectFiles"
DEPLOY_PROJECT = "deployProject"
TRANSLATE_CONTENT = "translateContent"

ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: Mapping[str, Any]

    @property
    def required(self) -> Tuple[str, ...]:
        return tuple(str(x) for x in (self.parameters.get("required") or []))

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        props = self.parameters.get("properties") or {}
        return tuple(props.keys())

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": _thaw(self.parameters),
            },
        }


@dataclass(frozen=True)
class RegisteredTool:
    declaration: ToolDeclaration
    handler: ToolHandler


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class ToolRegistry:
    """Fixed catalog of tools offered to the model, bound to their handlers.

    Declarations are made once at startup; the registry is read-only while
    agent runs are in flight.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, RegisteredTool] = {}

    def declare(
        self,
        name: str,
        description: str,
        parameters: Mapping[str, Any],
        handler: ToolHandler,
    ) -> ToolDeclaration:
        if name in self._tools:
            raise DuplicateToolError(f"tool already declared: {name}")
        declaration = ToolDeclaration(
            name=name, description=description, parameters=_freeze(parameters)
        )
        self._tools[name] = RegisteredTool(declaration=declaration, handler=handler)
        return declaration

    def resolve(self, name: str) -> RegisteredTool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(f"no handler bound for tool: {name}") from None

    def catalog(self) -> List[ToolDeclaration]:
        return [t.declaration for t in self._tools.values()]

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        return [d.to_openai() for d in self.catalog()]

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def invoke(self, call: ToolCall, context: ToolContext) -> ToolResult:
        tool = self.resolve(call.name)

        arguments = call.arguments
        if not isinstance(arguments, dict):
            return ToolErr("invalid_arguments", "tool arguments must be an object")
        missing = [k for k in tool.declaration.required if k not in arguments]
        if missing:
            return ToolErr(
                "invalid_arguments",
                f"missing required argument(s) for {call.name}: {', '.join(missing)}",
            )

        try:
            result = await tool.handler(arguments, context)
        except ToolExecutionError as e:
            logger.warning("[tools] %s failed (%s): %s", call.name, e.kind, e)
            return ToolErr(e.kind, str(e))
        except (OSError, httpx.HTTPError) as e:
            logger.warning("[tools] %s failed: %s", call.name, e)
            return ToolErr("io_error", str(e))
        logger.info("[tools] %s -> %s", call.name, "ok" if result.ok else result.kind)
        return result
