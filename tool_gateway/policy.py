"""
Visibility policy: which tools a given identity may see and call.

A descriptor either has no guard (visible to everyone) or names a guard.
The policy maps guard names to predicates over IdentityContext:

    GUARD_NAME            PREDICATE
    "image_generation" -> allow_list(settings.image_allowed_subjects)

The policy is a plain value handed to the invocation engine at construction
time, so each deployment (or test) builds its own instead of mutating a
shared global. It is consulted on every tools/list and again on every
tools/call; nothing is cached between requests.
"""

import logging
from typing import Callable, Iterable, Mapping

from tool_gateway.config import Settings
from tool_gateway.identity import IdentityContext
from tool_gateway.registry import ToolDescriptor, ToolTable

logger = logging.getLogger("tool_gateway.policy")

Guard = Callable[[IdentityContext], bool]

IMAGE_GENERATION_GUARD = "image_generation"


def allow_list(subjects: Iterable[str]) -> Guard:
    """
    Build a guard that admits identities whose subject_id is in `subjects`.

    Exact, case-sensitive string membership. An empty collection admits nobody.
    """
    allowed = frozenset(subjects)

    def _guard(identity: IdentityContext) -> bool:
        return identity.subject_id in allowed

    return _guard


class VisibilityPolicy:
    """Guard registry evaluated against an identity on every request."""

    def __init__(self, guards: Mapping[str, Guard] | None = None):
        self._guards: dict[str, Guard] = dict(guards or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "VisibilityPolicy":
        return cls({IMAGE_GENERATION_GUARD: allow_list(settings.image_allowed_subjects)})

    def is_visible(self, identity: IdentityContext, descriptor: ToolDescriptor) -> bool:
        if descriptor.guard is None:
            return True

        guard = self._guards.get(descriptor.guard)
        if guard is None:
            # Fail closed: a tool referencing an unknown guard is hidden
            # from everyone until the policy defines that guard.
            logger.warning(
                "Tool hidden: no guard registered",
                extra={"log_data": {"tool": descriptor.name, "guard": descriptor.guard}},
            )
            return False

        return bool(guard(identity))

    def visible_tools(
        self, identity: IdentityContext, table: ToolTable
    ) -> list[ToolDescriptor]:
        """Descriptors this identity may see, in registration order."""
        return [d for d in table if self.is_visible(identity, d)]
