from __future__ import annotations

from threading import Lock

import psycopg
from psycopg.conninfo import make_conninfo

from .errors import CommandError
from .runtime import Address, CommandIntent, CommandOutcome, Operation
from .settings import Settings

# SQLSTATE classes that retrying cannot fix: data exceptions, invalid
# authorization, syntax error or access rule violation.
PERMANENT_SQLSTATE_CLASSES = {"22", "28", "42"}
PERMANENT_MESSAGES = ("password authentication failed", "no pg_hba.conf entry", "role \"")


def conninfo(cfg: Settings) -> str:
    return make_conninfo(
        host=cfg.coordinator_host,
        port=cfg.coordinator_port,
        user=cfg.db_user,
        password=cfg.db_password or None,
        dbname=cfg.database,
    )


def classify(exc: psycopg.Error) -> CommandError:
    state = getattr(exc, "sqlstate", None) or ""
    text = str(exc)
    if state[:2] in PERMANENT_SQLSTATE_CLASSES:
        return CommandError.permanent_error(f"{type(exc).__name__} [{state}]: {text}")
    if any(m in text for m in PERMANENT_MESSAGES):
        return CommandError.permanent_error(f"{type(exc).__name__}: {text}")
    return CommandError.transient_error(f"{type(exc).__name__}: {text}")


class CoordinatorClient:
    """Issues membership changes against the Citus coordinator.

    Both operations are idempotent: adding a present node and removing an
    absent one succeed without changing anything.
    """

    def __init__(self, cfg: Settings, connect=psycopg.connect):
        self.cfg = cfg
        self._connect = connect
        self._conn: psycopg.Connection | None = None
        self._lock = Lock()

    def _connection(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = self._connect(conninfo(self.cfg), autocommit=True)
        return self._conn

    def _reset(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except psycopg.Error:
                pass

    def close(self) -> None:
        with self._lock:
            self._reset()

    def add_node(self, address: Address) -> None:
        _check_address(address)
        with self._lock:
            self._run(lambda conn: conn.execute("SELECT master_add_node(%s, %s)", (address.host, address.port)))

    def remove_node(self, address: Address) -> None:
        _check_address(address)
        with self._lock:
            self._run(lambda conn: _remove(conn, address))

    def _run(self, fn) -> None:
        try:
            fn(self._connection())
        except psycopg.Error as e:
            err = classify(e)
            if err.transient:
                # Connection state is unknown after an operational error.
                self._reset()
            raise err from e

    def execute(self, intent: CommandIntent) -> CommandOutcome:
        try:
            if intent.operation is Operation.ADD:
                self.add_node(intent.address)
            else:
                self.remove_node(intent.address)
        except CommandError as e:
            return CommandOutcome.failure(e)
        return CommandOutcome.success()


def _check_address(address: Address) -> None:
    if not address.valid:
        raise CommandError.permanent_error(f"malformed worker address {address!s}")


def _remove(conn: psycopg.Connection, address: Address) -> None:
    with conn.transaction():
        row = conn.execute(
            "SELECT groupid FROM pg_dist_node WHERE nodename = %s AND nodeport = %s LIMIT 1",
            (address.host, address.port),
        ).fetchone()
        if row is None:
            return
        # Placements pin the node; the worker container is already gone so
        # they cannot be moved anyway.
        conn.execute("DELETE FROM pg_dist_placement WHERE groupid = %s", (row[0],))
        conn.execute("SELECT master_remove_node(%s, %s)", (address.host, address.port))
