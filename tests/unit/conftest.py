"""Unit test fixtures.

In-memory stand-ins for the psycopg objects the sinks touch: a connection
whose transaction() blocks commit or roll back staged rows, cursors that
record INSERTs, and COPY contexts that record write_row() calls.
"""

from __future__ import annotations

from typing import Any, Callable

import psycopg
import pytest


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn

    def __enter__(self) -> "FakeTransaction":
        self.conn.events.append("begin")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            if self.conn.fail_commit:
                self.conn.staged.clear()
                self.conn.events.append("rollback")
                raise psycopg.OperationalError("commit failed")
            self.conn.committed.extend(self.conn.staged)
            self.conn.staged.clear()
            self.conn.commits += 1
            self.conn.events.append("commit")
            return False
        self.conn.staged.clear()
        self.conn.rollbacks += 1
        self.conn.events.append("rollback")
        return exc_type is psycopg.Rollback


class FakeCopy:
    def __init__(self, conn: "FakeConnection", sql: str) -> None:
        self.conn = conn
        self.sql = sql
        self.rows: list[tuple] = []

    def __enter__(self) -> "FakeCopy":
        self.conn.events.append("copy")
        return self

    def write_row(self, row: Any) -> None:
        if self.conn.fail_row is not None and self.conn.fail_row(row):
            raise psycopg.DataError(f"bad row {row!r}")
        self.rows.append(tuple(row))

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.conn.staged.extend(self.rows)
            self.conn.events.append("copy_end")
        else:
            self.conn.events.append("copy_fail")
        return False


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn
        self.closed = False

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def copy(self, sql: str) -> FakeCopy:
        self.conn.copy_sql.append(sql)
        return FakeCopy(self.conn, sql)

    def execute(self, sql: str, params: Any = None, prepare: bool | None = None) -> "FakeCursor":
        self.conn.executed.append((sql, tuple(params or ()), prepare))
        if self.conn.fail_row is not None and self.conn.fail_row(params):
            raise psycopg.IntegrityError(f"duplicate key {params!r}")
        self.conn.staged.append(tuple(params or ()))
        return self

    def close(self) -> None:
        self.closed = True
        self.conn.cursors_closed += 1


class FakeConnection:
    def __init__(self) -> None:
        self.committed: list[tuple] = []
        self.staged: list[tuple] = []
        self.executed: list[tuple] = []
        self.copy_sql: list[str] = []
        self.events: list[str] = []
        self.commits = 0
        self.rollbacks = 0
        self.cursors_closed = 0
        self.fail_row: Callable[[Any], bool] | None = None
        self.fail_commit = False
        self.closed = False

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()
