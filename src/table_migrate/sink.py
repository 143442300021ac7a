"""table_migrate.sink

Insertion sinks: the write path from mapped rows into one target table.

Two modes share one contract, accept(values) and close():

  InsertSink  row-at-a-time. A prepared parameterized INSERT is built on
              the first accept() and executed once per row, each row in
              its own transaction block. Failures either propagate
              (exit_on_error) or are logged and the row is dropped.

  BulkSink    batched. States IDLE -> OPEN -> CLOSED:
                open()   BEGIN + COPY <table> (<cols>) FROM STDIN
                accept() coerce date columns, write_row, count
                flush()  finish COPY, close cursor, COMMIT, back to IDLE
                close()  flush pending rows once, then CLOSED
              A flush happens when the pending count reaches batch_size
              and once more at close(). Committed batches are never rolled
              back by a later failure; only each batch is atomic.

Both sinks are context managers: a clean exit closes (and flushes), an
exception rolls back whatever batch is still open.
"""

from __future__ import annotations

import enum
import logging
from contextlib import ExitStack
from datetime import date
from typing import Any, Sequence

import psycopg

from table_migrate.normalize import parse_iso_date
from table_migrate.shared import DataCoercionError, SinkOptions, render_sql

log = logging.getLogger(__name__)


class SinkState(enum.Enum):
    IDLE = "idle"
    OPEN = "open"
    CLOSED = "closed"


class Sink:
    """Shared bookkeeping for both sink modes."""

    def __init__(
        self,
        conn: psycopg.Connection,
        table: str,
        columns: Sequence[str],
        options: SinkOptions,
    ) -> None:
        if not columns:
            raise ValueError("a sink needs at least one target column")
        self._conn = conn
        self.table = table
        self.columns = list(columns)
        self.options = options
        self.state = SinkState.IDLE
        self.rows_written = 0
        self.rows_failed = 0
        self.batches_committed = 0

    def accept(self, values: Sequence[Any]) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def abort(self, exc: BaseException | None = None) -> None:
        """Release resources without committing anything still pending."""
        self.close()

    def _check_accept(self, values: Sequence[Any]) -> None:
        if self.state is SinkState.CLOSED:
            raise RuntimeError(f"sink for {self.table} is closed")
        if len(values) != len(self.columns):
            raise ValueError(
                f"expected {len(self.columns)} values for {self.table}, got {len(values)}"
            )

    def __enter__(self) -> "Sink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.close()
        else:
            self.abort(exc)


# ---------------------------------------------------------------------------
# Row-at-a-time
# ---------------------------------------------------------------------------

class InsertSink(Sink):

    def __init__(
        self,
        conn: psycopg.Connection,
        table: str,
        columns: Sequence[str],
        options: SinkOptions,
    ) -> None:
        super().__init__(conn, table, columns, options)
        self.insert_sql = "INSERT INTO {} ({}) VALUES ({})".format(
            table,
            ", ".join(self.columns),
            ", ".join(["%s"] * len(self.columns)),
        )
        self._cursor: psycopg.Cursor | None = None

    def accept(self, values: Sequence[Any]) -> bool:
        """Insert one row. Returns False when a failure was logged and ignored."""
        self._check_accept(values)
        if self._cursor is None:
            self._cursor = self._conn.cursor()
            self.state = SinkState.OPEN

        log.debug(render_sql(self.insert_sql, values))
        try:
            with self._conn.transaction():
                self._cursor.execute(self.insert_sql, values, prepare=True)
        except psycopg.Error as exc:
            if self.options.exit_on_error:
                raise
            log.info(render_sql(self.insert_sql, values))
            log.error("insert into %s failed: %s", self.table, exc)
            self.rows_failed += 1
            return False
        self.rows_written += 1
        return True

    def close(self) -> None:
        if self._cursor is not None:
            self._cursor.close()
            self._cursor = None
        self.state = SinkState.CLOSED


# ---------------------------------------------------------------------------
# Batched (COPY)
# ---------------------------------------------------------------------------

class BulkSink(Sink):

    def __init__(
        self,
        conn: psycopg.Connection,
        table: str,
        columns: Sequence[str],
        options: SinkOptions,
    ) -> None:
        super().__init__(conn, table, columns, options)
        if options.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {options.batch_size}")
        self.copy_sql = "COPY {} ({}) FROM STDIN".format(table, ", ".join(self.columns))
        self._date_columns = [options.is_date_column(c) for c in self.columns]
        self._stack: ExitStack | None = None
        self._copy: psycopg.Copy | None = None
        self.pending = 0

    def coerce_dates(self, values: Sequence[Any]) -> list[Any]:
        """Parse date-column text as YYYY-MM-DD.

        Raises:
            DataCoercionError: A value cannot be parsed; the batch cannot skip it.
        """
        out = list(values)
        for i, value in enumerate(out):
            if value is None or not self._date_columns[i] or isinstance(value, date):
                continue
            column = self.columns[i]
            if not isinstance(value, str):
                raise DataCoercionError(
                    f"column {column!r}: expected YYYY-MM-DD text, got {value!r}"
                )
            try:
                out[i] = parse_iso_date(value)
            except ValueError as exc:
                raise DataCoercionError(
                    f"column {column!r}: cannot parse {value!r} as YYYY-MM-DD"
                ) from exc
        return out

    def open(self) -> None:
        """IDLE -> OPEN: begin a transaction and start COPY."""
        if self.state is not SinkState.IDLE:
            raise RuntimeError(f"cannot open sink in state {self.state.value}")
        with ExitStack() as stack:
            stack.enter_context(self._conn.transaction())
            cursor = stack.enter_context(self._conn.cursor())
            self._copy = stack.enter_context(cursor.copy(self.copy_sql))
            self._stack = stack.pop_all()
        self.state = SinkState.OPEN
        log.debug("opened batch for %s", self.table)

    def accept(self, values: Sequence[Any]) -> bool:
        self._check_accept(values)
        row = self.coerce_dates(values)
        if self.state is SinkState.IDLE:
            self.open()
        try:
            self._copy.write_row(row)
        except Exception as exc:
            self.rollback(exc)
            raise
        self.pending += 1
        if self.pending >= self.options.batch_size:
            self.flush()
        return True

    def flush(self) -> None:
        """OPEN -> IDLE: finish COPY and commit the pending batch."""
        if self.state is not SinkState.OPEN:
            return
        stack, count = self._stack, self.pending
        self._stack = None
        self._copy = None
        self.pending = 0
        self.state = SinkState.IDLE
        stack.close()
        self.rows_written += count
        self.batches_committed += 1
        log.info("committed %d rows into %s", count, self.table)

    def rollback(self, exc: BaseException | None = None) -> int:
        """OPEN -> IDLE without committing. Returns the number of rows dropped."""
        if self.state is not SinkState.OPEN:
            return 0
        stack = self._stack
        self._stack = None
        self._copy = None
        dropped, self.pending = self.pending, 0
        self.state = SinkState.IDLE
        if exc is None:
            exc = psycopg.Rollback()
        stack.__exit__(type(exc), exc, exc.__traceback__)
        if dropped:
            log.warning("rolled back %d uncommitted rows for %s", dropped, self.table)
        return dropped

    def abort(self, exc: BaseException | None = None) -> None:
        self.rollback(exc)
        self.state = SinkState.CLOSED

    def close(self) -> None:
        """Flush pending rows exactly once, then CLOSED. No commit if none."""
        if self.state is SinkState.OPEN:
            if self.pending:
                self.flush()
            else:
                self.rollback()
        self.state = SinkState.CLOSED


def make_sink(
    conn: psycopg.Connection,
    table: str,
    columns: Sequence[str],
    options: SinkOptions,
) -> Sink:
    if options.bulk:
        return BulkSink(conn, table, columns, options)
    return InsertSink(conn, table, columns, options)
