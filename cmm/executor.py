from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Condition, Thread
from typing import Callable, Protocol

from . import db
from .alerts import raise_alarm
from .errors import CommandError
from .retry import Backoff
from .runtime import CommandIntent, CommandOutcome


class CommandSink(Protocol):
    def execute(self, intent: CommandIntent) -> CommandOutcome: ...


@dataclass
class _Pending:
    intent: CommandIntent
    due: float
    attempts: int = 0


class CommandExecutor:
    """Runs command intents one at a time against the coordinator.

    Pending intents are keyed by worker identity; submitting a newer version
    replaces the older one. The entry whose retry is due soonest runs next,
    so a worker in backoff does not hold up the others. Only final outcomes
    (success or a permanent error) are reported through `on_result`.
    """

    def __init__(
        self,
        sink: CommandSink,
        on_result: Callable[[CommandIntent, CommandOutcome], None],
        backoff: Backoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.on_result = on_result
        self.backoff = backoff or Backoff()
        self._clock = clock
        self._cond = Condition()
        self._pending: dict[str, _Pending] = {}
        self._stop = False
        self._thr: Thread | None = None

    def submit(self, intent: CommandIntent) -> bool:
        """Queue an intent. Returns False if an equal or newer one is queued."""
        with self._cond:
            cur = self._pending.get(intent.identity)
            if cur is not None and cur.intent.version >= intent.version:
                return False
            self._pending[intent.identity] = _Pending(intent=intent, due=self._clock())
            self._cond.notify()
        return True

    def pending(self) -> list[CommandIntent]:
        with self._cond:
            return [p.intent for p in self._pending.values()]

    def is_pending(self, identity: str) -> bool:
        with self._cond:
            return identity in self._pending

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, name="cmm-executor", daemon=True)
        self._thr.start()

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop taking new work. A call already in progress runs to completion."""
        with self._cond:
            self._stop = True
            self._cond.notify_all()
        if wait and self._thr is not None:
            self._thr.join(timeout)

    def _loop(self) -> None:
        while True:
            item = self._next_due()
            if item is None:
                return
            try:
                self._attempt(item)
            except Exception as e:
                db.log_event("ERROR", f"Executor step failed: {type(e).__name__}: {e}", worker=item.intent.identity)

    def _next_due(self) -> _Pending | None:
        with self._cond:
            while not self._stop:
                if not self._pending:
                    self._cond.wait()
                    continue
                item = min(self._pending.values(), key=lambda p: p.due)
                wait = item.due - self._clock()
                if wait <= 0:
                    return item
                self._cond.wait(wait)
            return None

    def run_pending(self) -> int:
        """Drain the queue on the calling thread, sleeping through backoff.

        Used when no executor thread is running. Returns the number of attempts.
        """
        attempts = 0
        while True:
            with self._cond:
                if not self._pending:
                    return attempts
                item = min(self._pending.values(), key=lambda p: p.due)
            wait = item.due - self._clock()
            if wait > 0:
                time.sleep(wait)
            self._attempt(item)
            attempts += 1

    def _attempt(self, item: _Pending) -> None:
        intent = item.intent
        item.attempts += 1
        try:
            outcome = self.sink.execute(intent)
        except Exception as e:
            # Unknown failures are retried; a pending change is never dropped.
            db.log_event("ERROR", f"{intent.operation.value} {intent.address} crashed: {type(e).__name__}: {e}", worker=intent.identity)
            outcome = CommandOutcome.failure(CommandError.transient_error(f"{type(e).__name__}: {e}"))

        if not outcome.ok and outcome.error is not None and outcome.error.transient:
            delay = self.backoff.delay(item.attempts)
            db.log_event(
                "WARN",
                f"{intent.operation.value} {intent.address} failed (attempt {item.attempts}), retrying in {delay:.1f}s: {outcome.error}",
                worker=intent.identity,
            )
            with self._cond:
                if self._pending.get(intent.identity) is item:
                    item.due = self._clock() + delay
            return

        with self._cond:
            if self._pending.get(intent.identity) is item:
                del self._pending[intent.identity]

        self.on_result(intent, outcome)
        if outcome.ok:
            db.log_event("INFO", f"{intent.operation.value} {intent.address} done (v{intent.version}, {item.attempts} attempt(s))", worker=intent.identity)
        else:
            raise_alarm(intent.identity, f"{intent.operation.value} {intent.address} failed permanently", str(outcome.error))
