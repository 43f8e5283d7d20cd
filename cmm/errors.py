from __future__ import annotations

from enum import Enum


class ScopeResolutionError(Exception):
    """The Compose project of this process cannot be determined. Fatal."""


class StreamFailure(str, Enum):
    DISCONNECTED = "disconnected"
    MALFORMED = "malformed"


class EventStreamError(Exception):
    def __init__(self, kind: StreamFailure, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def disconnected(self) -> bool:
        return self.kind is StreamFailure.DISCONNECTED


class CommandFailure(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class CommandError(Exception):
    def __init__(self, kind: CommandFailure, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind is CommandFailure.TRANSIENT

    @classmethod
    def transient_error(cls, message: str) -> "CommandError":
        return cls(CommandFailure.TRANSIENT, message)

    @classmethod
    def permanent_error(cls, message: str) -> "CommandError":
        return cls(CommandFailure.PERMANENT, message)


class InvalidTransition(Exception):
    """A membership state change outside the allowed edges was attempted."""
