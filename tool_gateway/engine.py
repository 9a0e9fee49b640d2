"""
The invocation engine: list and call tools on behalf of an identity.

Every tools/call goes through the same pipeline:

    1. Lookup         unknown name              -> Failure(NOT_FOUND)
    2. Authorization  hidden from this identity -> Failure(UNAUTHORIZED)
    3. Validation     schema violation          -> Failure(INVALID_PARAMETERS)
    4. Dispatch       collaborator failure      -> Failure(UPSTREAM_ERROR)
                      anything else             -> Failure(INTERNAL_ERROR)
    5. Success        content blocks            -> Success(content)

Authorization is checked again at call time even though tools/list already
filtered the list, so a client that guesses a hidden tool's name is still
refused. The refusal uses the same message as an unknown name so it does
not confirm the tool exists; only the logged kind differs.

Validation always happens before dispatch: an invalid call never reaches a
handler, so it can't trigger a partial external call.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from tool_gateway.identity import IdentityContext
from tool_gateway.policy import VisibilityPolicy
from tool_gateway.registry import ToolTable
from tool_gateway.results import (
    Failure,
    FailureKind,
    InvocationRequest,
    Response,
    Success,
)
from tool_gateway.schema import InvalidParametersError

logger = logging.getLogger("tool_gateway.engine")


@dataclass(frozen=True)
class ToolSummary:
    """What tools/list publishes for one tool."""

    name: str
    description: str
    parameters: dict[str, Any]


def _unknown_tool(name: str) -> str:
    return f"Unknown tool: {name}"


class InvocationEngine:
    """
    Validates, authorizes and dispatches tool calls against a frozen table.

    Args:
        table: The tool descriptor table (read-only, shared by all sessions)
        policy: Visibility policy deciding what each identity may see/call
        timeout: Upper bound in seconds for one handler run, or None
    """

    def __init__(
        self,
        table: ToolTable,
        policy: VisibilityPolicy,
        timeout: float | None = None,
    ):
        self.table = table
        self.policy = policy
        self.timeout = timeout

    def list_tools(self, identity: IdentityContext) -> list[ToolSummary]:
        return [
            ToolSummary(d.name, d.description, d.schema.json_schema())
            for d in self.policy.visible_tools(identity, self.table)
        ]

    def _log(
        self,
        level: int,
        message: str,
        request_id: str,
        identity: IdentityContext,
        tool: str,
        decision: str,
        **fields: Any,
    ) -> None:
        logger.log(
            level,
            message,
            extra={
                "log_data": {
                    "request_id": request_id,
                    **identity.log_fields(),
                    "tool": tool,
                    "decision": decision,
                    **fields,
                }
            },
        )

    async def invoke(self, request: InvocationRequest, identity: IdentityContext) -> Response:
        request_id = str(uuid.uuid4())[:8]
        name = request.tool_name

        descriptor = self.table.get(name)
        if descriptor is None:
            self._log(
                logging.WARNING,
                "Tool call rejected: unknown tool",
                request_id,
                identity,
                name,
                decision="not_found",
            )
            return Failure(FailureKind.NOT_FOUND, _unknown_tool(name))

        if not self.policy.is_visible(identity, descriptor):
            self._log(
                logging.WARNING,
                "Tool call denied: not visible to identity",
                request_id,
                identity,
                name,
                decision="unauthorized",
                guard=descriptor.guard,
            )
            return Failure(FailureKind.UNAUTHORIZED, _unknown_tool(name))

        try:
            params = descriptor.schema.validate(request.raw_parameters)
        except InvalidParametersError as e:
            self._log(
                logging.INFO,
                "Tool call rejected: invalid parameters",
                request_id,
                identity,
                name,
                decision="invalid_parameters",
                errors=e.errors,
            )
            return Failure(
                FailureKind.INVALID_PARAMETERS,
                f"Invalid parameters for tool '{name}': {e}",
                {"errors": e.errors},
            )

        self._log(
            logging.INFO,
            "Tool call authorized",
            request_id,
            identity,
            name,
            decision="allowed",
        )

        try:
            outcome = descriptor.handler(params, identity)
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=self.timeout)
            if not isinstance(outcome, Failure):
                outcome = Success(tuple(outcome))
        except asyncio.TimeoutError:
            self._log(
                logging.WARNING,
                "Tool call timed out",
                request_id,
                identity,
                name,
                decision="upstream_error",
                timeout=self.timeout,
            )
            return Failure(
                FailureKind.UPSTREAM_ERROR,
                f"Tool '{name}' timed out",
                {"timeout_seconds": self.timeout},
            )
        except httpx.HTTPError as e:
            self._log(
                logging.WARNING,
                "Tool call failed upstream",
                request_id,
                identity,
                name,
                decision="upstream_error",
                error=str(e),
            )
            return Failure(FailureKind.UPSTREAM_ERROR, f"Tool '{name}' upstream call failed")
        except Exception:
            logger.exception(
                "Tool handler raised",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "tool": name,
                    }
                },
            )
            return Failure(FailureKind.INTERNAL_ERROR, f"Internal error in tool '{name}'")

        if isinstance(outcome, Failure):
            self._log(
                logging.WARNING,
                "Tool call failed",
                request_id,
                identity,
                name,
                decision=outcome.kind.value,
                detail=dict(outcome.detail),
            )
        return outcome
