from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import CommandError


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


HOST_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-_.]{0,252}$")


class HealthStatus(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def parse(cls, raw: str | None) -> "HealthStatus":
        # No healthcheck configured (or an unknown value) never counts as healthy.
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return cls.STARTING


class MembershipState(str, Enum):
    UNKNOWN = "unknown"
    NOT_HEALTHY = "not_healthy"
    PENDING_ADD = "pending_add"
    MEMBER = "member"
    PENDING_REMOVE = "pending_remove"
    GONE = "gone"

    @property
    def pending(self) -> bool:
        return self in {MembershipState.PENDING_ADD, MembershipState.PENDING_REMOVE}


class Operation(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class EventKind(str, Enum):
    STARTED = "started"
    HEALTH_CHANGED = "health_changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class Address:
    host: str
    port: int = 5432

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def valid(self) -> bool:
        return bool(HOST_RE.match(self.host)) and 0 < int(self.port) < 65536


@dataclass(frozen=True)
class Event:
    identity: str
    kind: EventKind
    sequence: int
    address: Address | None = None
    health: HealthStatus = HealthStatus.STARTING


@dataclass(frozen=True)
class CommandIntent:
    identity: str
    operation: Operation
    address: Address
    version: int


@dataclass(frozen=True)
class CommandOutcome:
    ok: bool
    error: CommandError | None = None

    @classmethod
    def success(cls) -> "CommandOutcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: CommandError) -> "CommandOutcome":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class WorkerRecord:
    identity: str
    address: Address
    health: HealthStatus
    state: MembershipState
    last_sequence: int = 0
    version: int = 0
    alarm: str | None = None
    updated_at: str = field(default_factory=utc_now)

    def current_intent(self) -> CommandIntent | None:
        if self.state is MembershipState.PENDING_ADD:
            op = Operation.ADD
        elif self.state is MembershipState.PENDING_REMOVE:
            op = Operation.REMOVE
        else:
            return None
        return CommandIntent(identity=self.identity, operation=op, address=self.address, version=self.version)


@dataclass(frozen=True)
class SweepEntry:
    identity: str
    address: Address
    health: HealthStatus


@dataclass(frozen=True)
class SweepSnapshot:
    """Running workers at one point in time.

    `sequence` is the wall clock in nanoseconds taken before listing, so
    streamed events that predate the listing are discarded. `since` is the
    same instant in whole seconds for the event subscription.
    """

    entries: tuple[SweepEntry, ...]
    sequence: int

    @property
    def since(self) -> int:
        return self.sequence // 1_000_000_000
