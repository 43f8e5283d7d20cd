"""Pure membership state machine.

Nothing here does I/O. Each function takes the current record (or None for
an identity that is not tracked) and returns the next record plus the
command intent to issue, if any.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

from .errors import InvalidTransition
from .runtime import (
    CommandIntent,
    CommandOutcome,
    Event,
    EventKind,
    HealthStatus,
    MembershipState,
    Operation,
    WorkerRecord,
    utc_now,
)

S = MembershipState

ALLOWED_EDGES: frozenset[tuple[MembershipState, MembershipState]] = frozenset(
    {
        (S.UNKNOWN, S.NOT_HEALTHY),
        (S.UNKNOWN, S.PENDING_REMOVE),
        (S.NOT_HEALTHY, S.PENDING_ADD),
        (S.NOT_HEALTHY, S.PENDING_REMOVE),
        (S.PENDING_ADD, S.MEMBER),
        (S.PENDING_ADD, S.PENDING_REMOVE),
        (S.MEMBER, S.PENDING_REMOVE),
        (S.PENDING_REMOVE, S.GONE),
    }
)


@dataclass(frozen=True)
class Transition:
    record: WorkerRecord | None
    intent: CommandIntent | None = None
    changed: bool = False

    @property
    def state(self) -> MembershipState:
        return self.record.state if self.record else MembershipState.UNKNOWN


def _move(record: WorkerRecord, state: MembershipState) -> WorkerRecord:
    if (record.state, state) not in ALLOWED_EDGES:
        raise InvalidTransition(f"{record.identity}: {record.state.value} -> {state.value}")
    return replace(record, state=state, updated_at=utc_now())


def _issue(record: WorkerRecord, state: MembershipState, op: Operation) -> Transition:
    moved = replace(_move(record, state), version=record.version + 1, alarm=None)
    intent = CommandIntent(identity=moved.identity, operation=op, address=moved.address, version=moved.version)
    return Transition(moved, intent, changed=True)


def _observe(event: Event) -> WorkerRecord | None:
    """First sighting of an identity: Unknown -> NotHealthy."""
    if event.address is None:
        return None
    unknown = WorkerRecord(
        identity=event.identity,
        address=event.address,
        health=HealthStatus.STARTING,
        state=S.UNKNOWN,
        last_sequence=event.sequence,
    )
    return _move(unknown, S.NOT_HEALTHY)


def apply_event(record: WorkerRecord | None, event: Event) -> Transition:
    """Advance one worker by an observed event.

    Events at or below the record's last sequence are discarded. A Removed
    event for an untracked identity that carries an address creates a record
    in PENDING_REMOVE and issues a Remove, so the caller ends up tracking a
    worker it never saw start. Without an address the result has no record.
    """
    if record is not None and event.sequence <= record.last_sequence:
        return Transition(record)

    if event.kind is EventKind.REMOVED:
        return _on_removed(record, event)

    created = record is None
    if record is None:
        record = _observe(event)
        if record is None:
            return Transition(None)
    record = replace(record, last_sequence=event.sequence)

    t = _on_health(record, event.health)
    return Transition(t.record, t.intent, changed=t.changed or created)


def _on_health(record: WorkerRecord, health: HealthStatus) -> Transition:
    changed = record.health is not health
    record = replace(record, health=health)
    if health is HealthStatus.HEALTHY and record.state is S.NOT_HEALTHY:
        return _issue(record, S.PENDING_ADD, Operation.ADD)
    # Members stay members on a health regression; only container removal
    # takes a node out of the cluster.
    return Transition(record, changed=changed)


def _on_removed(record: WorkerRecord | None, event: Event) -> Transition:
    if record is None:
        if event.address is None:
            return Transition(None)
        # Never seen, but the coordinator may still list it from before a
        # restart. Remove is idempotent, so issue it anyway.
        record = WorkerRecord(
            identity=event.identity,
            address=event.address,
            health=HealthStatus.UNHEALTHY,
            state=S.UNKNOWN,
        )
    record = replace(record, last_sequence=event.sequence)
    if record.state is S.PENDING_REMOVE:
        return Transition(record)
    return _issue(record, S.PENDING_REMOVE, Operation.REMOVE)


def apply_ack(record: WorkerRecord | None, intent: CommandIntent, outcome: CommandOutcome) -> Transition:
    """Fold a final command outcome back into the record.

    Outcomes for a superseded version are ignored.
    """
    if record is None or intent.version != record.version:
        return Transition(record)

    if not outcome.ok:
        if outcome.error is not None and not outcome.error.transient:
            return Transition(replace(record, alarm=str(outcome.error)), changed=True)
        return Transition(record)

    if intent.operation is Operation.ADD and record.state is S.PENDING_ADD:
        return Transition(replace(_move(record, S.MEMBER), alarm=None), changed=True)
    if intent.operation is Operation.REMOVE and record.state is S.PENDING_REMOVE:
        return Transition(replace(_move(record, S.GONE), alarm=None), changed=True)
    return Transition(record)
