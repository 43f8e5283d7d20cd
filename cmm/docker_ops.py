from __future__ import annotations

import time
from typing import Any, Iterator

import docker
import requests
from docker.errors import DockerException, NotFound

from .errors import EventStreamError, ScopeResolutionError, StreamFailure
from .runtime import Address, Event, EventKind, HealthStatus, SweepEntry, SweepSnapshot
from .settings import Settings

HEALTH_PREFIX = "health_status:"

# Actions we subscribe to. Docker reports health changes as
# "health_status: <status>".
WATCHED_ACTIONS = [
    "start",
    "health_status: healthy",
    "health_status: unhealthy",
    "destroy",
]

_STREAM_ERRORS = (DockerException, requests.exceptions.RequestException, OSError, ValueError)


def _client() -> docker.DockerClient:
    return docker.from_env()


def parse_event(raw: dict[str, Any], worker_port: int) -> Event | None:
    """Translate one decoded docker event into an Event.

    Returns None for actions we do not track; raises EventStreamError
    (MALFORMED) when required fields are missing.
    """
    if not isinstance(raw, dict):
        raise EventStreamError(StreamFailure.MALFORMED, f"event is not an object: {raw!r}")
    action = (raw.get("Action") or raw.get("status") or "").strip()
    actor = raw.get("Actor") or {}
    identity = actor.get("ID") or raw.get("id")
    name = (actor.get("Attributes") or {}).get("name")
    seq = raw.get("timeNano")
    if seq is None and raw.get("time") is not None:
        seq = int(raw["time"]) * 1_000_000_000
    if not action or not identity or not name or seq is None:
        raise EventStreamError(StreamFailure.MALFORMED, f"incomplete event: {raw!r}")

    address = Address(host=name, port=worker_port)
    if action == "start":
        return Event(identity=identity, kind=EventKind.STARTED, sequence=int(seq), address=address)
    if action.startswith(HEALTH_PREFIX):
        health = HealthStatus.parse(action[len(HEALTH_PREFIX):])
        return Event(identity=identity, kind=EventKind.HEALTH_CHANGED, sequence=int(seq), address=address, health=health)
    if action == "destroy":
        return Event(identity=identity, kind=EventKind.REMOVED, sequence=int(seq), address=address)
    return None


def container_health(attrs: dict[str, Any]) -> HealthStatus:
    state = attrs.get("State") or {}
    return HealthStatus.parse((state.get("Health") or {}).get("Status"))


class EventSubscription:
    """One pass over the docker event stream. Not restartable.

    Iteration ends by raising EventStreamError: DISCONNECTED when the daemon
    drops the connection or after close(), MALFORMED on an entry that cannot
    be parsed. Either way the caller must resweep before subscribing again.
    """

    def __init__(self, stream: Any, worker_port: int):
        self._stream = stream
        self._worker_port = worker_port
        self._closed = False

    def __iter__(self) -> Iterator[Event]:
        try:
            for raw in self._stream:
                event = parse_event(raw, self._worker_port)
                if event is not None:
                    yield event
        except _STREAM_ERRORS as e:
            raise EventStreamError(StreamFailure.DISCONNECTED, f"event stream failed: {type(e).__name__}: {e}") from e
        reason = "closed" if self._closed else "ended"
        raise EventStreamError(StreamFailure.DISCONNECTED, f"event stream {reason}")

    def close(self) -> None:
        self._closed = True
        close = getattr(self._stream, "close", None)
        if close is None:
            return
        try:
            close()
        except _STREAM_ERRORS:
            pass


class DockerEventSource:
    """Scope discovery, bootstrap sweep and live events from the docker daemon."""

    def __init__(self, cfg: Settings, client: docker.DockerClient | None = None):
        self.cfg = cfg
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = _client()
        return self._client

    def resolve_scope(self, hostname: str | None = None) -> str:
        hostname = hostname or self.cfg.own_hostname
        if not hostname:
            raise ScopeResolutionError("HOSTNAME is not set; cannot find our own container")
        try:
            me = self.client.containers.get(hostname)
        except NotFound as e:
            raise ScopeResolutionError(f"container '{hostname}' not found") from e
        except DockerException as e:
            raise ScopeResolutionError(f"docker unavailable: {e}") from e
        project = (me.labels or {}).get(self.cfg.project_label)
        if not project:
            raise ScopeResolutionError(f"container '{hostname}' has no '{self.cfg.project_label}' label")
        return project

    def _label_filters(self, scope: str) -> list[str]:
        return [
            f"{self.cfg.project_label}={scope}",
            f"{self.cfg.role_label}={self.cfg.role_value}",
        ]

    def sweep(self, scope: str) -> SweepSnapshot:
        """List running workers in scope. Docker errors propagate to the caller."""
        taken = time.time_ns()
        containers = self.client.containers.list(
            filters={"label": self._label_filters(scope), "status": "running"},
        )
        entries = tuple(
            SweepEntry(
                identity=c.id,
                address=Address(host=c.name, port=self.cfg.worker_port),
                health=container_health(c.attrs),
            )
            for c in containers
        )
        return SweepSnapshot(entries=entries, sequence=taken)

    def subscribe(self, scope: str, since: int | None = None) -> EventSubscription:
        filters = {
            "type": "container",
            "event": list(WATCHED_ACTIONS),
            "label": self._label_filters(scope),
        }
        try:
            stream = self.client.events(since=since, filters=filters, decode=True)
        except _STREAM_ERRORS as e:
            raise EventStreamError(StreamFailure.DISCONNECTED, f"cannot subscribe: {type(e).__name__}: {e}") from e
        return EventSubscription(stream, self.cfg.worker_port)
