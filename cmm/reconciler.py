from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Callable

from . import db
from .runtime import CommandIntent, CommandOutcome, Event, EventKind, MembershipState, SweepSnapshot, WorkerRecord
from .transitions import Transition, apply_ack, apply_event


class Reconciler:
    """Owns per-worker membership state for one Compose project.

    Events and sweep results go through the pure transition functions;
    resulting intents are handed to `submit` (the command executor) and
    final command outcomes come back through `acknowledge`.
    """

    def __init__(self, scope: str, submit: Callable[[CommandIntent], bool]):
        self.scope = scope
        self._submit = submit
        self._lock = Lock()
        self._records: dict[str, WorkerRecord] = {}

    def _store(self, identity: str, t: Transition) -> None:
        if t.record is None or t.record.state is MembershipState.GONE:
            self._records.pop(identity, None)
        else:
            self._records[identity] = t.record

    def _dispatch(self, intent: CommandIntent | None) -> None:
        if intent is None:
            return
        db.log_event("INFO", f"Issuing {intent.operation.value} {intent.address} (v{intent.version})", worker=intent.identity)
        self._submit(intent)

    def handle_event(self, event: Event) -> Transition:
        with self._lock:
            before = self._records.get(event.identity)
            t = apply_event(before, event)
            self._store(event.identity, t)
        if t.changed and t.record is not None:
            prev = before.state.value if before else MembershipState.UNKNOWN.value
            db.log_event(
                "INFO",
                f"{event.kind.value} ({t.record.health.value}): {prev} -> {t.record.state.value}",
                worker=event.identity,
            )
        self._dispatch(t.intent)
        return t

    def acknowledge(self, intent: CommandIntent, outcome: CommandOutcome) -> Transition:
        with self._lock:
            t = apply_ack(self._records.get(intent.identity), intent, outcome)
            self._store(intent.identity, t)
        if not t.changed:
            db.log_event("DEBUG", f"Ignoring stale result for {intent.operation.value} v{intent.version}", worker=intent.identity)
        elif t.record is not None and t.record.state is MembershipState.GONE:
            db.log_event("INFO", f"{intent.address} removed from cluster; forgetting worker", worker=intent.identity)
        elif t.record is not None and t.record.state is MembershipState.MEMBER:
            db.log_event("INFO", f"{intent.address} is now a cluster member", worker=intent.identity)
        return t

    def reconcile_sweep(self, snapshot: SweepSnapshot) -> list[CommandIntent]:
        """Fold a sweep into the current state.

        Untracked workers are seeded as if started, tracked ones get the
        observed health, and tracked workers missing from the sweep are
        treated as removed.
        """
        intents: list[CommandIntent] = []
        seen: set[str] = set()
        with self._lock:
            for entry in snapshot.entries:
                if entry.identity in seen:
                    continue
                seen.add(entry.identity)
                rec = self._records.get(entry.identity)
                if rec is None:
                    kind, seq = EventKind.STARTED, snapshot.sequence
                else:
                    kind, seq = EventKind.HEALTH_CHANGED, max(snapshot.sequence, rec.last_sequence + 1)
                ev = Event(identity=entry.identity, kind=kind, sequence=seq, address=entry.address, health=entry.health)
                t = apply_event(rec, ev)
                self._store(entry.identity, t)
                if t.intent:
                    intents.append(t.intent)

            for identity, rec in list(self._records.items()):
                if identity in seen:
                    continue
                ev = Event(
                    identity=identity,
                    kind=EventKind.REMOVED,
                    sequence=max(snapshot.sequence, rec.last_sequence + 1),
                    address=rec.address,
                )
                t = apply_event(rec, ev)
                self._store(identity, t)
                if t.intent:
                    intents.append(t.intent)

        db.log_event("INFO", f"Sweep of '{self.scope}': {len(seen)} running worker(s), {len(intents)} command(s) issued")
        for intent in intents:
            self._dispatch(intent)
        return intents

    def reissue(self, identity: str) -> CommandIntent | None:
        """Re-submit the pending command of a worker, e.g. after a permanent error was fixed."""
        with self._lock:
            rec = self._records.get(identity)
            if rec is None:
                return None
            intent = rec.current_intent()
            if intent is None:
                return None
            if rec.alarm is not None:
                self._records[identity] = replace(rec, alarm=None)
            # Held across submit: intake stores a newer version before it submits.
            queued = self._submit(intent)
        db.log_event("INFO", f"Manual retry of {intent.operation.value} {intent.address}", worker=identity)
        return intent if queued else None

    def get(self, identity: str) -> WorkerRecord | None:
        with self._lock:
            return self._records.get(identity)

    def records(self) -> list[WorkerRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: (r.address.host, r.identity))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
