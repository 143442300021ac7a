"""table_migrate.config

YAML migration configuration.

Responsibilities:
  - Load the migration file (database block, ordered sections, sink block)
  - Validate every section before any database work starts
  - Parse each section's column expressions once, up front
  - Merge command-line overrides into one SinkOptions value

Example:
    database:
      dsn: "postgresql://loader@localhost/warehouse"
    migration:
      wells:
        source: data/wells.csv,data/archive.zip
        target: well
        columns:
          $UWI: uwi
          $hash(UWI, SPUD_DATE): well_key
          legacy: source_system
    sink:
      bulk: true
      batch_size: 50000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from psycopg.conninfo import make_conninfo

from table_migrate.expressions import ColumnMapping, parse_columns
from table_migrate.normalize import split_names
from table_migrate.row_source import STATIC_SOURCE
from table_migrate.shared import ExpressionSyntaxError, MigrationConfigError, SinkOptions

log = logging.getLogger(__name__)

DEFAULT_PORT = "5432"

SECTION_KEYS = frozenset({"source", "target", "columns"})
SINK_KEYS = frozenset({
    "exit_on_error",
    "bulk",
    "batch_size",
    "date_columns",
    "max_length",
    "max_length_columns",
})


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Section:
    """One configured migration: sources -> column mappings -> target table."""

    name: str
    sources: tuple[str, ...]
    target: str
    mappings: tuple[ColumnMapping, ...]

    @property
    def is_static(self) -> bool:
        return self.sources == (STATIC_SOURCE,)

    @property
    def target_columns(self) -> list[str]:
        return [m.target for m in self.mappings]


@dataclass
class MigrationConfig:
    path: Path
    database: dict[str, Any]
    sections: list[Section]
    sink: SinkOptions = field(default_factory=SinkOptions)

    def select(self, names: list[str]) -> list[Section]:
        """Return sections in file order, restricted to names when given."""
        if not names:
            return list(self.sections)
        known = {s.name for s in self.sections}
        unknown = [n for n in names if n not in known]
        if unknown:
            raise MigrationConfigError(f"unknown section(s): {unknown}")
        return [s for s in self.sections if s.name in names]

    def conninfo(self, dsn_override: str | None = None, connect_timeout: int | None = None) -> str:
        """Build a libpq connection string from the database block."""
        extra: dict[str, Any] = {}
        if connect_timeout:
            extra["connect_timeout"] = connect_timeout
        if dsn_override:
            return make_conninfo(dsn_override, **extra)
        db = self.database
        if db.get("dsn"):
            return make_conninfo(str(db["dsn"]), **extra)
        if not db.get("server") or not db.get("database"):
            raise MigrationConfigError(
                f"In {str(self.path)!r}: database needs either dsn or server + database"
            )
        return make_conninfo(
            host=str(db["server"]),
            port=str(db.get("port") or DEFAULT_PORT),
            dbname=str(db["database"]),
            user=db.get("username"),
            password=db.get("password"),
            **extra,
        )


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_config(path: Path) -> MigrationConfig:
    """Load, validate, and return a MigrationConfig from a YAML file.

    Raises:
        MigrationConfigError: If the file is malformed or a section is incomplete.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise MigrationConfigError(f"In {str(path)!r}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise MigrationConfigError(f"In {str(path)!r}: YAML root must be a mapping.")

    migration = data.get("migration")
    if not isinstance(migration, dict) or not migration:
        raise MigrationConfigError(f"In {str(path)!r}: 'migration' must be a non-empty mapping.")

    database = data.get("database") or {}
    if not isinstance(database, dict):
        raise MigrationConfigError(f"In {str(path)!r}: 'database' must be a mapping.")

    sections = [parse_section(path, str(name), body) for name, body in migration.items()]
    return MigrationConfig(
        path=path,
        database=database,
        sections=sections,
        sink=parse_sink_options(path, data.get("sink")),
    )


def is_path_list(source: str) -> bool:
    return "." in source or "/" in source


def parse_section(path: Path, name: str, body: Any) -> Section:
    if not isinstance(body, dict):
        raise MigrationConfigError(f"In {str(path)!r}: {name!r} must be a mapping")

    for key in body:
        if key not in SECTION_KEYS:
            log.warning("In %r: %r has unknown key %r", str(path), name, key)

    source = body.get("source")
    target = body.get("target")
    columns = body.get("columns")
    if not source:
        raise MigrationConfigError(f"In {str(path)!r}: {name!r} source field is empty")
    if not target:
        raise MigrationConfigError(f"In {str(path)!r}: {name!r} target field is empty")
    if not isinstance(columns, dict) or not columns:
        raise MigrationConfigError(f"In {str(path)!r}: {name!r} column field is empty")

    source = str(source).strip()
    if source == STATIC_SOURCE:
        sources: tuple[str, ...] = (STATIC_SOURCE,)
    elif is_path_list(source):
        sources = tuple(split_names(source))
    else:
        raise MigrationConfigError(
            f"In {str(path)!r}: {name!r} source {source!r} is neither a path list nor 'static'"
        )

    try:
        mappings = parse_columns(columns)
    except ExpressionSyntaxError as exc:
        raise ExpressionSyntaxError(f"In {str(path)!r}: {name!r}: {exc}") from exc
    except MigrationConfigError as exc:
        raise MigrationConfigError(f"In {str(path)!r}: {name!r}: {exc}") from exc

    return Section(name=name, sources=sources, target=str(target).strip(), mappings=tuple(mappings))


def _names(value: Any, key: str, path: Path) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(split_names(value))
    if isinstance(value, list):
        return tuple(str(v).strip() for v in value if str(v).strip())
    raise MigrationConfigError(f"In {str(path)!r}: sink.{key} must be a list or comma string")


def parse_sink_options(path: Path, data: Any) -> SinkOptions:
    if data is None:
        return SinkOptions()
    if not isinstance(data, dict):
        raise MigrationConfigError(f"In {str(path)!r}: 'sink' must be a mapping.")
    unknown = set(data) - SINK_KEYS
    if unknown:
        raise MigrationConfigError(f"In {str(path)!r}: unknown sink keys: {sorted(unknown)}")

    options = SinkOptions()
    kwargs: dict[str, Any] = {}
    for key in ("exit_on_error", "bulk", "max_length"):
        if key in data:
            kwargs[key] = bool(data[key])
    if "batch_size" in data:
        try:
            batch_size = int(data["batch_size"])
        except (TypeError, ValueError):
            raise MigrationConfigError(
                f"In {str(path)!r}: sink.batch_size {data['batch_size']!r} is not an integer"
            )
        if batch_size < 1:
            raise MigrationConfigError(f"In {str(path)!r}: sink.batch_size must be >= 1")
        kwargs["batch_size"] = batch_size
    if data.get("date_columns") is not None:
        kwargs["date_columns"] = _names(data["date_columns"], "date_columns", path) or None
    if data.get("max_length_columns") is not None:
        kwargs["max_length_columns"] = _names(data["max_length_columns"], "max_length_columns", path)
    return replace(options, **kwargs)


def apply_overrides(
    options: SinkOptions,
    exit_on_error: bool | None = None,
    bulk: bool | None = None,
    batch_size: int | None = None,
    date_columns: str | None = None,
    max_length: bool | None = None,
) -> SinkOptions:
    """Return options with every non-None command-line value applied."""
    kwargs: dict[str, Any] = {}
    if exit_on_error is not None:
        kwargs["exit_on_error"] = exit_on_error
    if bulk is not None:
        kwargs["bulk"] = bulk
    if batch_size is not None:
        if batch_size < 1:
            raise MigrationConfigError(f"batch size must be >= 1, got {batch_size}")
        kwargs["batch_size"] = batch_size
    if date_columns:
        kwargs["date_columns"] = tuple(split_names(date_columns)) or None
    if max_length is not None:
        kwargs["max_length"] = max_length
    return replace(options, **kwargs)
