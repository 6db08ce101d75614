"""Interfaces to collaborators owned by the surrounding platform.

The monitoring engine only consumes these; user, organization and session
management live elsewhere.
"""

from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Operator:
    """A signed-in person acting on alerts or remediation."""

    id: str
    name: str
    roles: tuple[str, ...] = ()


@runtime_checkable
class SessionLookup(Protocol):
    """Read-only resolution of a session token to an operator."""

    async def get_operator(self, token: str) -> Operator | None: ...


@runtime_checkable
class ActivitySink(Protocol):
    """Destination for audit entries; callers never wait on its success."""

    def record(self, entry: Mapping[str, Any]) -> Awaitable[None] | None: ...


class NullSessionLookup:
    """Session lookup used when no platform session service is wired in."""

    async def get_operator(self, token: str) -> Operator | None:
        return None


class StaticSessionLookup:
    """Session lookup backed by a fixed token table."""

    def __init__(self, operators: Mapping[str, Operator]):
        self.operators = dict(operators)

    async def get_operator(self, token: str) -> Operator | None:
        return self.operators.get(token)


class LogActivitySink:
    """Writes audit entries to the structured log."""

    def record(self, entry: Mapping[str, Any]) -> None:
        logger.info("Activity recorded", **dict(entry))
