"""
Invocation requests and the response envelope.

Every tool call ends in exactly one of two shapes:

    Success(content=(TextBlock(...), BinaryBlock(...), ...))
    Failure(kind=FailureKind.UPSTREAM_ERROR, message="...", detail={...})

Handlers return either a sequence of content blocks or a Failure; the
invocation engine wraps the former and passes the latter through. Nothing
else reaches the transport.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence, Union


class FailureKind(str, Enum):
    """Error taxonomy for tool invocations."""

    # Unknown tool name
    NOT_FOUND = "not_found"
    # Tool exists but is not visible to this identity
    UNAUTHORIZED = "unauthorized"
    # Parameters failed schema validation
    INVALID_PARAMETERS = "invalid_parameters"
    # A collaborator call failed, timed out or returned a malformed body
    UPSTREAM_ERROR = "upstream_error"
    # Unexpected handler fault
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class BinaryBlock:
    data: bytes = field(repr=False)
    mime_type: str


ContentBlock = Union[TextBlock, BinaryBlock]


@dataclass(frozen=True)
class Success:
    content: tuple[ContentBlock, ...]

    ok = True


@dataclass(frozen=True)
class Failure:
    """
    A normalized invocation failure.

    Attributes:
        kind: Which branch of the taxonomy this failure belongs to
        message: Caller-facing message
        detail: Structured diagnostics (field errors, upstream status/body)
    """

    kind: FailureKind
    message: str
    detail: Mapping[str, Any] = field(default_factory=dict)

    ok = False


Response = Union[Success, Failure]

# What a handler may produce before the engine normalizes it.
HandlerResult = Union[Sequence[ContentBlock], Failure]


@dataclass(frozen=True)
class InvocationRequest:
    tool_name: str
    raw_parameters: Mapping[str, Any] | None = None
