from __future__ import annotations

from threading import Event as Flag
from threading import Lock, Thread
from typing import Iterator, Protocol

from docker.errors import DockerException
from requests.exceptions import RequestException
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_when_event_set, wait_exponential

from . import db
from .coordinator import CoordinatorClient
from .docker_ops import DockerEventSource
from .errors import EventStreamError, InvalidTransition
from .executor import CommandExecutor, CommandSink
from .health import clear_ready, mark_ready
from .reconciler import Reconciler
from .retry import Backoff
from .runtime import CommandIntent, Event, SweepSnapshot
from .settings import Settings


class Subscription(Protocol):
    def __iter__(self) -> Iterator[Event]: ...

    def close(self) -> None: ...


class EventSource(Protocol):
    def sweep(self, scope: str) -> SweepSnapshot: ...

    def subscribe(self, scope: str, since: int | None = None) -> Subscription: ...


SWEEP_ERRORS = (DockerException, RequestException, OSError)


class MembershipManager:
    """Sweep, subscribe, consume; resweep whenever the stream drops."""

    def __init__(
        self,
        cfg: Settings,
        scope: str,
        source: EventSource,
        sink: CommandSink,
        backoff: Backoff | None = None,
    ):
        self.cfg = cfg
        self.scope = scope
        self.source = source
        self.backoff = backoff or Backoff(initial_s=cfg.backoff_initial_s, max_s=cfg.backoff_max_s)
        self.executor = CommandExecutor(sink, on_result=self._on_result, backoff=self.backoff)
        self.reconciler = Reconciler(scope, submit=self.executor.submit)
        self.ready = False
        self.sweeps = 0
        self._stop = Flag()
        self._lock = Lock()
        self._subscription: Subscription | None = None
        self._thr: Thread | None = None

    def _on_result(self, intent: CommandIntent, outcome) -> None:
        self.reconciler.acknowledge(intent, outcome)

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self.run, name="cmm-intake", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = None) -> None:
        """Tear down the subscription now; let an in-flight command finish."""
        self._stop.set()
        with self._lock:
            sub = self._subscription
        if sub is not None:
            sub.close()
        self.executor.stop(wait=True, timeout=timeout)
        if self._thr is not None:
            self._thr.join(timeout)
        close = getattr(self.executor.sink, "close", None)
        if close is not None:
            close()

    def run(self) -> None:
        clear_ready(self.cfg.healthcheck_file)
        self.executor.start()
        db.log_event("INFO", f"Membership manager started for project '{self.scope}'")
        try:
            while not self._stop.is_set():
                try:
                    snapshot = self._sweep_until_ok()
                    if snapshot is None:
                        break
                    self.reconciler.reconcile_sweep(snapshot)
                    self._consume(snapshot)
                except Exception as e:
                    db.log_event("ERROR", f"Intake pass failed, resweeping: {type(e).__name__}: {e}")
                    self._stop.wait(self.backoff.delay(1))
        finally:
            self.executor.stop(wait=False)
            db.log_event("INFO", "Membership manager stopped")

    def _sweep_once(self) -> SweepSnapshot:
        snapshot = self.source.sweep(self.scope)
        self.sweeps += 1
        return snapshot

    def _log_sweep_retry(self, state: RetryCallState) -> None:
        e = state.outcome.exception()
        db.log_event("WARN", f"Sweep failed, retrying in {state.next_action.sleep:.1f}s: {type(e).__name__}: {e}")

    def _sweep_until_ok(self) -> SweepSnapshot | None:
        """Sweep with backoff until it succeeds. None means we were stopped."""
        if self._stop.is_set():
            return None
        retrying = Retrying(
            retry=retry_if_exception_type(SWEEP_ERRORS),
            wait=wait_exponential(multiplier=self.backoff.initial_s, max=self.backoff.max_s),
            stop=stop_when_event_set(self._stop),
            sleep=self._stop.wait,
            before_sleep=self._log_sweep_retry,
            retry_error_callback=lambda state: None,
        )
        return retrying(self._sweep_once)

    def _consume(self, snapshot: SweepSnapshot) -> None:
        try:
            sub = self.source.subscribe(self.scope, since=snapshot.since)
        except EventStreamError as e:
            db.log_event("WARN", f"Subscribe failed: {e}")
            self._stop.wait(self.backoff.delay(1))
            return

        with self._lock:
            self._subscription = sub
        if self._stop.is_set():
            sub.close()
        elif not self.ready:
            mark_ready(self.cfg.healthcheck_file)
            self.ready = True
            db.log_event("INFO", "Initial sweep and subscription complete; listening for events")

        try:
            for event in sub:
                if self._stop.is_set():
                    break
                try:
                    self.reconciler.handle_event(event)
                except InvalidTransition as e:
                    db.log_event("ERROR", f"Rejected event {event.kind.value}: {e}", worker=event.identity)
        except EventStreamError as e:
            if self._stop.is_set():
                pass
            elif e.disconnected:
                db.log_event("WARN", f"Event stream lost ({e}); resweeping")
            else:
                # The entry may have been a destroy; only a sweep can tell.
                db.log_event("WARN", f"Malformed event ({e}); resweeping")
        finally:
            with self._lock:
                self._subscription = None
            sub.close()

    def retry(self, identity: str) -> CommandIntent | None:
        return self.reconciler.reissue(identity)


def build_manager(cfg: Settings) -> MembershipManager:
    """Resolve the project scope and wire the docker and coordinator adapters.

    Raises ScopeResolutionError if our own container cannot be identified.
    """
    source = DockerEventSource(cfg)
    scope = source.resolve_scope(cfg.own_hostname)
    db.log_event("INFO", f"Found Compose project: {scope}")
    return MembershipManager(cfg, scope, source, CoordinatorClient(cfg))
