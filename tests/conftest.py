import sys

import pytest

# Ensure project root is importable (so `import main` / `import cmm` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from cmm import db  # noqa: E402
from cmm.runtime import Address, CommandOutcome, Event, EventKind, HealthStatus  # noqa: E402
from cmm.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the sqlite journal at a per-test file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "journal.db")))
    db.init_db()
    return db


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        own_hostname="manager-1",
        healthcheck_file=str(tmp_path / "healthcheck" / "manager-ready"),
        db_path=str(tmp_path / "journal.db"),
        backoff_initial_s=0.0,
        backoff_max_s=0.0,
    )


class EventFactory:
    """Builds per-identity ordered events with increasing sequence numbers."""

    def __init__(self, start: int = 100):
        self.seq = start

    def _next(self) -> int:
        self.seq += 1
        return self.seq

    def started(self, identity="w1", host="worker-1", health=HealthStatus.STARTING):
        return Event(identity, EventKind.STARTED, self._next(), Address(host), health)

    def health(self, status, identity="w1", host="worker-1"):
        return Event(identity, EventKind.HEALTH_CHANGED, self._next(), Address(host), HealthStatus(status))

    def removed(self, identity="w1", host="worker-1"):
        return Event(identity, EventKind.REMOVED, self._next(), Address(host))


@pytest.fixture
def events():
    return EventFactory()


class FakeSink:
    """Command sink returning scripted outcomes, then success."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def execute(self, intent):
        self.calls.append(intent)
        if self.outcomes:
            return self.outcomes.pop(0)
        return CommandOutcome.success()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def make_sink():
    return FakeSink
