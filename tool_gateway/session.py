"""
Session hosting: one identity per logical connection.

A SessionHost binds an IdentityContext to one MCP session and routes that
session's tools/list and tools/call requests to the shared engine. Requests
within a session run one at a time, in arrival order (asyncio.Lock wakes
waiters first-in, first-out). Different sessions run concurrently and share
nothing but the frozen tool table and the policy.

Each call runs under the identity bound when it arrived. Re-authentication
rebinds the host for later calls but keeps its lock, so a call still in
flight finishes under its own identity and the next one waits for it.

Closing a session cancels the call it has in flight; the external request
is abandoned, never retried. A session closes when the client terminates
it, when it has been idle too long, or when it is evicted.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Mapping

from tool_gateway.engine import InvocationEngine, ToolSummary
from tool_gateway.identity import AuthError, IdentityContext
from tool_gateway.results import InvocationRequest, Response

logger = logging.getLogger("tool_gateway.session")


class SessionClosedError(RuntimeError):
    """Raised when a request arrives for a session that has been closed."""


class SessionHost:
    def __init__(
        self,
        identity: IdentityContext,
        engine: InvocationEngine,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identity = identity
        self._engine = engine
        self._clock = clock
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Task | None = None
        self._closed = False
        self.last_active = clock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def rebind(self, identity: IdentityContext) -> None:
        """Use `identity` for requests arriving from now on."""
        self.identity = identity

    def list_tools(self) -> list[ToolSummary]:
        if self._closed:
            raise SessionClosedError("Session is closed")
        self.last_active = self._clock()
        return self._engine.list_tools(self.identity)

    async def call_tool(self, name: str, parameters: Mapping[str, Any] | None = None) -> Response:
        request = InvocationRequest(tool_name=name, raw_parameters=parameters)
        identity = self.identity
        self.last_active = self._clock()
        async with self._lock:
            if self._closed:
                raise SessionClosedError("Session is closed")
            self._inflight = asyncio.ensure_future(self._engine.invoke(request, identity))
            try:
                return await self._inflight
            finally:
                self._inflight = None
                self.last_active = self._clock()

    def close(self) -> None:
        """Close the session and abandon any in-flight call."""
        self._closed = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()


class SessionRegistry:
    """
    Maps MCP session ids to their SessionHost.

    The first authenticated request on a session binds its identity. Later
    requests must come from the same subject. A token for the same subject
    with changed claims (e.g. a refreshed credential) rebinds the existing
    host; a token for a different subject is rejected.

    Hosts are released when:
    - the client terminates the session (close())
    - they have been idle for longer than `idle_timeout` seconds
    - more than `max_sessions` are live (least recently used first)
    """

    def __init__(
        self,
        engine: InvocationEngine,
        max_sessions: int = 1024,
        idle_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._engine = engine
        self._max_sessions = max_sessions
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._hosts: OrderedDict[str, SessionHost] = OrderedDict()

    def bind(self, session_id: str, identity: IdentityContext) -> SessionHost:
        self.expire_idle()
        host = self._hosts.get(session_id)

        if host is None:
            host = SessionHost(identity, self._engine, clock=self._clock)
            self._hosts[session_id] = host
        elif host.identity.subject_id != identity.subject_id:
            raise AuthError("Session is bound to a different identity", status_code=403)
        elif host.identity != identity:
            host.rebind(identity)
            logger.info(
                "Session identity refreshed",
                extra={"log_data": {"session_id": session_id, **identity.log_fields()}},
            )

        self._hosts.move_to_end(session_id)
        while len(self._hosts) > self._max_sessions:
            evicted_id, evicted = self._hosts.popitem(last=False)
            evicted.close()
            logger.info("Session evicted", extra={"log_data": {"session_id": evicted_id}})

        return host

    def expire_idle(self) -> None:
        """Close hosts with no call in flight that have been idle too long."""
        if self._idle_timeout is None:
            return
        deadline = self._clock() - self._idle_timeout
        for session_id, host in list(self._hosts.items()):
            if not host.busy and host.last_active < deadline:
                del self._hosts[session_id]
                host.close()
                logger.info("Session expired", extra={"log_data": {"session_id": session_id}})

    def close(self, session_id: str) -> None:
        host = self._hosts.pop(session_id, None)
        if host is not None:
            host.close()
            logger.info("Session closed", extra={"log_data": {"session_id": session_id}})

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._hosts

    def __len__(self) -> int:
        return len(self._hosts)
