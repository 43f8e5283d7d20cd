import pytest

from cmm import db
from cmm.errors import CommandError
from cmm.executor import CommandExecutor
from cmm.retry import Backoff
from cmm.runtime import Address, CommandIntent, CommandOutcome, Operation

ZERO = Backoff(initial_s=0.0, max_s=0.0)


def _intent(version=1, op=Operation.ADD, identity="w1"):
    return CommandIntent(identity=identity, operation=op, address=Address("worker-1"), version=version)


def _transient(msg="connection refused"):
    return CommandOutcome.failure(CommandError.transient_error(msg))


def test_backoff_grows_and_caps():
    b = Backoff(initial_s=1.0, factor=2.0, max_s=30.0)
    assert [b.delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    assert b.delay(10_000) == 30.0


def test_transient_failures_retry_until_success(make_sink):
    sink = make_sink([_transient(), _transient(), _transient()])
    results = []
    ex = CommandExecutor(sink, on_result=lambda i, o: results.append((i, o)), backoff=ZERO)

    assert ex.submit(_intent())
    assert ex.run_pending() == 4

    assert len(sink.calls) == 4
    assert all(c == _intent() for c in sink.calls)
    assert len(results) == 1
    assert results[0][1].ok
    assert ex.pending() == []
    warns = db.latest_events(level="WARN")
    assert len(warns) == 3


def test_permanent_failure_reported_once_and_not_retried(make_sink):
    sink = make_sink([CommandOutcome.failure(CommandError.permanent_error("password authentication failed"))])
    results = []
    ex = CommandExecutor(sink, on_result=lambda i, o: results.append(o), backoff=ZERO)

    ex.submit(_intent())
    assert ex.run_pending() == 1

    assert len(sink.calls) == 1
    assert len(results) == 1
    assert results[0].error.transient is False
    alarms = [e for e in db.latest_events(level="ERROR") if "ALARM" in e["message"]]
    assert len(alarms) == 1
    assert db.latest_events(level="WARN") == []


def test_newer_intent_replaces_queued_one(make_sink, sink):
    ex = CommandExecutor(sink, on_result=lambda i, o: None, backoff=ZERO)
    assert ex.submit(_intent(version=1))
    assert ex.submit(_intent(version=2, op=Operation.REMOVE))
    assert not ex.submit(_intent(version=1))

    ex.run_pending()
    assert [c.version for c in sink.calls] == [2]
    assert sink.calls[0].operation is Operation.REMOVE


def test_backoff_of_one_worker_does_not_block_another(make_sink):
    now = [0.0]
    sink = make_sink([_transient()])
    ex = CommandExecutor(sink, on_result=lambda i, o: None, backoff=Backoff(initial_s=60.0, max_s=60.0), clock=lambda: now[0])

    ex.submit(_intent(identity="w1"))
    ex.submit(_intent(identity="w2"))
    first = ex._next_due()
    ex._attempt(first)
    assert ex.is_pending("w1")

    second = ex._next_due()
    assert second.intent.identity == "w2"
    ex._attempt(second)
    assert not ex.is_pending("w2")
    assert ex.is_pending("w1")


def test_sink_exception_is_treated_as_transient():
    class Flaky:
        calls = 0

        def execute(self, intent):
            Flaky.calls += 1
            if Flaky.calls == 1:
                raise RuntimeError("boom")
            return CommandOutcome.success()

    results = []
    ex = CommandExecutor(Flaky(), on_result=lambda i, o: results.append(o), backoff=ZERO)
    ex.submit(_intent())
    ex.run_pending()
    assert Flaky.calls == 2
    assert results[0].ok


def test_threaded_executor_runs_and_stops(sink):
    import threading

    done = threading.Event()
    ex = CommandExecutor(sink, on_result=lambda i, o: done.set(), backoff=ZERO)
    ex.start()
    ex.submit(_intent())
    assert done.wait(5)
    ex.stop(wait=True, timeout=5)
    assert len(sink.calls) == 1


@pytest.mark.parametrize("attempt,expected", [(0, 1.0), (1, 1.0), (2, 2.0)])
def test_backoff_attempts_start_at_one(attempt, expected):
    assert Backoff(initial_s=1.0, max_s=30.0).delay(attempt) == expected


def test_result_reported_even_if_journal_write_fails(sink, monkeypatch):
    import threading

    real_log = db.log_event

    def log_event(level, message, worker=None):
        if " done " in message:
            raise RuntimeError("journal unavailable")
        real_log(level, message, worker=worker)

    monkeypatch.setattr(db, "log_event", log_event)
    seen = []
    both = threading.Event()

    def on_result(intent, outcome):
        seen.append(intent.identity)
        if len(seen) == 2:
            both.set()

    ex = CommandExecutor(sink, on_result=on_result, backoff=ZERO)
    ex.start()
    ex.submit(_intent(identity="w1"))
    ex.submit(_intent(identity="w2"))
    assert both.wait(5)
    ex.stop(wait=True, timeout=5)

    assert sorted(seen) == ["w1", "w2"]
    assert ex.pending() == []


def test_permanent_result_reported_before_alarm(make_sink, monkeypatch):
    import cmm.executor

    def broken_alarm(worker, summary, detail):
        raise OSError("smtp relay down")

    monkeypatch.setattr(cmm.executor, "raise_alarm", broken_alarm)
    sink = make_sink([CommandOutcome.failure(CommandError.permanent_error("no such function"))])
    results = []
    ex = CommandExecutor(sink, on_result=lambda i, o: results.append(o), backoff=ZERO)
    ex.submit(_intent())

    with pytest.raises(OSError):
        ex.run_pending()
    assert len(results) == 1
    assert not results[0].ok
    assert ex.pending() == []
