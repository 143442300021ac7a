"""table_migrate.shared

Shared pieces used by every layer of a migration run: the exception
taxonomy, RejectWriter for skipped rows, RunCounters, SQL rendering for
diagnostics, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MigrationError(Exception):
    """Base exception for all migration failures."""


class MigrationConfigError(MigrationError, ValueError):
    """Raised when the migration configuration is invalid. Always fatal."""


class UnknownColumnError(MigrationConfigError):
    """Raised when a mapping references a column missing from the header."""

    def __init__(self, column: str, source_name: str | None = None) -> None:
        self.column = column
        self.source_name = source_name
        where = f" in {source_name}" if source_name else ""
        super().__init__(f"unable to find column {column!r}{where}")


class ExpressionSyntaxError(MigrationConfigError):
    """Raised for a malformed mapping expression or bad function arity."""


class DataCoercionError(MigrationError):
    """Raised when a date column value cannot be parsed. Always fatal."""


class RowShapeError(MigrationError):
    """Raised when a data row's width differs from the header's."""

    def __init__(self, row_number: int, expected: int, actual: int) -> None:
        self.row_number = row_number
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"wrong width at row {row_number}: expected {expected} fields, got {actual}"
        )


class DuplicateHeaderError(MigrationError):
    """Raised when a source header names the same column twice."""


class SourceReadError(MigrationError):
    """Raised when a source cannot be opened or decoded."""


class WriteError(MigrationError):
    """Raised when a statement, copy or commit fails against the target."""

    def __init__(self, source_name: str, row_number: int, cause: BaseException) -> None:
        self.source_name = source_name
        self.row_number = row_number
        self.cause = cause
        super().__init__(f"{source_name}, at row {row_number}: {cause}")


_FATAL_ERRORS = (MigrationConfigError, DataCoercionError)


def is_fatal(exc: BaseException) -> bool:
    """Return True for errors that halt the run regardless of policy."""
    return isinstance(exc, _FATAL_ERRORS)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(
        self,
        source_name: str,
        row_number: int,
        fields: Sequence[str],
        reason: str,
    ) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.writer(self._fh)
            self._writer.writerow(["_source", "_row", "_reject_reason", "_fields"])
        self._writer.writerow([source_name, row_number, reason, *fields])
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    batches_committed: int = 0
    sources_processed: int = 0
    sources_failed: int = 0
    sections_processed: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_rejected": self.rows_rejected,
            "rows_written": self.rows_written,
            "rows_failed": self.rows_failed,
            "batches_committed": self.batches_committed,
            "sources_processed": self.sources_processed,
            "sources_failed": self.sources_failed,
            "sections_processed": self.sections_processed,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# SQL rendering (diagnostics only)
# ---------------------------------------------------------------------------

def render_sql(sql: str, values: Sequence[Any]) -> str:
    """Substitute %s placeholders with quoted values for log output.

    Never execute the result: quoting here is cosmetic.
    """
    rendered = []
    for value in values:
        if value is None:
            rendered.append("NULL")
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            rendered.append(str(value))
        else:
            rendered.append("'" + str(value).replace("'", "''") + "'")
    parts = sql.split("%s")
    if len(parts) != len(rendered) + 1:
        return f"{sql} -- params: {list(values)!r}"
    out = parts[0]
    for value, tail in zip(rendered, parts[1:]):
        out += value + tail
    return out


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    report_dir: Path,
    details: dict[str, Any],
    counters: RunCounters,
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **details,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


# ---------------------------------------------------------------------------
# SinkOptions
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 100000
DEFAULT_MAX_LENGTH_COLUMNS = ("RECALL_LOG_ID", "RECALL_TRACE_ID")


@dataclass(frozen=True)
class SinkOptions:
    """Run-wide switches shared by the row mapper and the sinks.

    date_columns=None means "any target column whose name contains 'date'".
    """

    exit_on_error: bool = False
    bulk: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    date_columns: tuple[str, ...] | None = None
    max_length: bool = False
    max_length_columns: tuple[str, ...] = DEFAULT_MAX_LENGTH_COLUMNS

    @property
    def truncate_columns(self) -> frozenset[str]:
        if not self.max_length:
            return frozenset()
        return frozenset(self.max_length_columns)

    def is_date_column(self, column: str) -> bool:
        if self.date_columns:
            return column in self.date_columns
        return "date" in column
