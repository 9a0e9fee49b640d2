"""
The tool descriptor table.

Every tool the gateway can ever expose is registered here once, at process
start, and the table is then frozen. Per-session differences are expressed
only through visibility (see tool_gateway.policy); the table itself is never
mutated per session, so all sessions can read it concurrently without locks.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Union

from tool_gateway.identity import IdentityContext
from tool_gateway.results import HandlerResult
from tool_gateway.schema import ParameterSchema

Handler = Callable[
    [dict[str, Any], IdentityContext],
    Union[HandlerResult, Awaitable[HandlerResult]],
]


class DuplicateNameError(ValueError):
    """Raised when a tool name is registered twice."""


class TableFrozenError(RuntimeError):
    """Raised when registering into a table after startup."""


@dataclass(frozen=True)
class ToolDescriptor:
    """
    A statically declared tool.

    Attributes:
        name: Unique key within the table
        description: Human-readable description shown in tools/list
        schema: Compiled parameter schema
        handler: (validated parameters, identity) -> content blocks or Failure.
                 May be a plain function or a coroutine function.
        guard: Name of the visibility guard gating this tool, or None for
               a tool every identity may see
    """

    name: str
    description: str
    schema: ParameterSchema
    handler: Handler
    guard: str | None = None


class ToolTable:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if self._frozen:
            raise TableFrozenError(
                f"Cannot register '{descriptor.name}': tool table is frozen"
            )
        if descriptor.name in self._tools:
            raise DuplicateNameError(f"Tool '{descriptor.name}' is already registered")
        self._tools[descriptor.name] = descriptor
        return descriptor

    def freeze(self) -> "ToolTable":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
