import logging
import sqlite3

from cmm import db


def test_log_event_is_journaled_and_logged(caplog):
    with caplog.at_level(logging.INFO, logger="cmm"):
        db.log_event("warn", "stream lost", worker="w1")

    rows = db.latest_events()
    assert rows[0]["level"] == "WARN"
    assert rows[0]["worker"] == "w1"
    assert "[w1] stream lost" in caplog.text


def test_log_event_survives_journal_failure(monkeypatch, caplog):
    def locked():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "connect", locked)
    with caplog.at_level(logging.WARNING, logger="cmm"):
        db.log_event("INFO", "Issuing add worker-1:5432 (v1)", worker="w1")

    assert "journal write failed: OperationalError: database is locked" in caplog.text


def test_directory_db_path_gets_a_file_inside(tmp_path, monkeypatch):
    from cmm.settings import Settings

    target = tmp_path / "mounted"
    target.mkdir()
    monkeypatch.setattr(db, "settings", Settings(db_path=str(target)))
    db.log_event("INFO", "hello")

    assert (target / "cmm.db").is_file()
    assert db.latest_events(limit=1)[0]["message"] == "hello"
