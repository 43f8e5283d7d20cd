from fastapi.testclient import TestClient

from cmm import db
from cmm.errors import CommandError, ScopeResolutionError
from cmm.manager import MembershipManager
from cmm.retry import Backoff
from cmm.runtime import CommandOutcome, HealthStatus
from main import create_app

import pytest


class IdleSource:
    def sweep(self, scope):
        raise AssertionError("not used")

    def subscribe(self, scope, since=None):
        raise AssertionError("not used")


def _app(cfg, manager):
    # Avoid the background intake thread doing docker work
    manager.start = lambda: None
    return create_app(cfg, factory=lambda c: manager)


@pytest.fixture
def manager(cfg, make_sink):
    perm = CommandOutcome.failure(CommandError.permanent_error("password authentication failed"))
    m = MembershipManager(cfg, "citus", IdleSource(), make_sink([perm]), backoff=Backoff(0.0, max_s=0.0))
    return m


def test_health_reports_scope_and_readiness(cfg, manager):
    with TestClient(_app(cfg, manager)) as client:
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "healthy"
        assert body["scope"] == "citus"
        assert body["ready"] is False


def test_workers_and_retry_flow(cfg, manager, events):
    manager.reconciler.handle_event(events.started(health=HealthStatus.HEALTHY))
    manager.executor.run_pending()

    with TestClient(_app(cfg, manager)) as client:
        r = client.get("/workers")
        assert r.status_code == 200
        [w] = r.json()
        assert w["identity"] == "w1"
        assert w["address"] == "worker-1:5432"
        assert w["state"] == "pending_add"
        assert "password" in w["alarm"]
        assert w["queued"] is False

        r = client.post("/workers/w1/retry")
        assert r.status_code == 200
        assert r.json()["operation"] == "add"

        # already queued now
        r = client.post("/workers/w1/retry")
        assert r.status_code == 409

        manager.executor.run_pending()
        r = client.get("/workers/w1")
        assert r.json()["state"] == "member"

        r = client.post("/workers/w1/retry")
        assert r.status_code == 409

        assert client.get("/workers/nope").status_code == 404
        assert client.post("/workers/nope/retry").status_code == 404


def test_events_endpoint_returns_journal(cfg, manager):
    db.log_event("WARN", "something odd", worker="w9")
    with TestClient(_app(cfg, manager)) as client:
        r = client.get("/events", params={"limit": 5, "level": "warn"})
        assert r.status_code == 200
        rows = r.json()
        assert rows[0]["message"] == "something odd"
        assert rows[0]["worker"] == "w9"


def test_scope_failure_aborts_startup(cfg):
    def factory(c):
        raise ScopeResolutionError("container 'manager-1' has no label")

    with pytest.raises(ScopeResolutionError):
        with TestClient(create_app(cfg, factory=factory)):
            pass
