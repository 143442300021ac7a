"""table_migrate.migrate

CLI entrypoint and orchestrator for tabular migrations.

For each configured section one sink is built for the target table, then
every source of the section is drained into it in order. The sink is closed
exactly once per section (flushing any pending batch) when the `with` block
ends, including on early abort, where the open batch is rolled back.

Failure policy:
  - configuration and date-coercion errors always stop the run
  - a wrong-width row is skipped and written to the rejects CSV
  - any other source failure (unreadable file, duplicate header, write or
    commit error) stops the run with --exit-on-error, otherwise it is logged
    and the next source runs; the run then exits non-zero

Usage:
    python -m table_migrate.migrate \\
        --config migration.yaml \\
        --db-dsn "$DB_DSN" \\
        --section wells,logs \\
        --bulk --bulk-limit 50000
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable

import click
import psycopg

from table_migrate.config import Section, apply_overrides, load_config
from table_migrate.expressions import RowMapper
from table_migrate.normalize import split_names
from table_migrate.row_source import (
    RowSource,
    SourceSpec,
    StaticRowSource,
    discover_sources,
)
from table_migrate.shared import (
    DataCoercionError,
    MigrationError,
    RejectWriter,
    RowShapeError,
    RunCounters,
    SinkOptions,
    WriteError,
    is_fatal,
    write_run_report,
)
from table_migrate.sink import Sink, make_sink

log = logging.getLogger(__name__)

Echo = Callable[[str], None]

SQL_LOGGERS = ("psycopg", "table_migrate.sink")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SectionMigration:
    """Drives every source of one section into one sink."""

    def __init__(
        self,
        section: Section,
        sink: Sink,
        options: SinkOptions,
        counters: RunCounters,
        rejects: RejectWriter | None = None,
        echo: Echo = log.info,
    ) -> None:
        self.section = section
        self.sink = sink
        self.options = options
        self.counters = counters
        self.rejects = rejects
        self.echo = echo
        self.mapper = RowMapper(section.mappings, options.truncate_columns)
        self.source_name = section.name
        self.row_number = 0

    # -- policy -------------------------------------------------------------

    def fail_source(self, exc: MigrationError) -> None:
        """Re-raise when the run must stop, otherwise record and carry on."""
        if is_fatal(exc) or self.options.exit_on_error:
            raise exc
        log.error("%s", exc)
        self.counters.sources_failed += 1
        self.counters.warnings.append(f"{self.section.name}: {exc}")

    def _skip_row(self, err: RowShapeError, fields: list[str]) -> None:
        self.counters.rows_read += 1
        self.counters.rows_rejected += 1
        if self.rejects is not None:
            self.rejects.write(self.source_name, err.row_number, fields, "wrong_width")

    # -- sources ------------------------------------------------------------

    def migrate_source(self, source: RowSource | StaticRowSource) -> None:
        """Map and write every well-formed row of one source."""
        self.source_name = source.name
        self.row_number = 0
        header = source.header
        if header is None:
            log.warning("%s: empty source, no header", source.name)
            return
        self.mapper.bind(header, source.name)
        blank_to_null = isinstance(source, StaticRowSource)

        for row_number, fields in source.rows(self._skip_row):
            self.row_number = row_number
            self.counters.rows_read += 1
            values = self.mapper.map_row(fields)
            if blank_to_null:
                values = [None if v == "" else v for v in values]
            try:
                self.sink.accept(values)
            except DataCoercionError as exc:
                log.info("File %s, At row %d", source.name, row_number)
                raise DataCoercionError(f"{source.name}, at row {row_number}: {exc}") from exc
            except psycopg.Error as exc:
                log.info("File %s, At row %d", source.name, row_number)
                raise WriteError(source.name, row_number, exc) from exc

    def _run_spec(self, spec: SourceSpec) -> None:
        try:
            with spec.open() as source:
                self.migrate_source(source)
        except MigrationError as exc:
            self.fail_source(exc)
            return
        self.counters.sources_processed += 1
        self.echo(f"Migrating {self.section.name!r} from source {spec.name} successful")

    def run(self) -> None:
        self.echo(f"Migrating {self.section.name!r} into {self.section.target}")
        if self.section.is_static:
            try:
                self.migrate_source(StaticRowSource())
            except MigrationError as exc:
                self.fail_source(exc)
            else:
                self.counters.sources_processed += 1
            return

        for path in self.section.sources:
            try:
                specs = discover_sources([path])
            except MigrationError as exc:
                self.fail_source(exc)
                continue
            for spec in specs:
                self._run_spec(spec)


def run_section(
    conn: psycopg.Connection,
    section: Section,
    options: SinkOptions,
    counters: RunCounters,
    rejects: RejectWriter | None = None,
    echo: Echo = log.info,
) -> None:
    """Build the section's sink, drain its sources, close the sink once."""
    sink = make_sink(conn, section.target, section.target_columns, options)
    migration = SectionMigration(section, sink, options, counters, rejects, echo)
    try:
        try:
            with sink:
                migration.run()
        except psycopg.Error as exc:
            # Only the close-time flush reaches here; accept() errors are wrapped.
            migration.fail_source(
                WriteError(migration.source_name, migration.row_number, exc)
            )
    finally:
        counters.rows_written += sink.rows_written
        counters.rows_failed += sink.rows_failed
        counters.batches_committed += sink.batches_committed
    counters.sections_processed += 1


def run_migration(
    conn: psycopg.Connection,
    sections: list[Section],
    options: SinkOptions,
    counters: RunCounters,
    rejects: RejectWriter | None = None,
    echo: Echo = log.info,
) -> None:
    for section in sections:
        run_section(conn, section, options, counters, rejects, echo)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--config", "config_path", default="./migration.yaml", show_default=True, type=click.Path(), help="Migration YAML file")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (overrides the config database block)")
@click.option("--section", default=None, help="Comma-separated section names to run (default: all)")
@click.option("--exit-on-error", is_flag=True, default=False, help="Abort the run on the first failed source or row")
@click.option("--bulk", is_flag=True, default=False, help="Use batched COPY instead of row-at-a-time INSERT")
@click.option("--bulk-limit", default=None, type=int, help="[bulk] Rows per committed batch (default 100000)")
@click.option("--date-columns", default=None, help="[bulk] Comma-separated date columns; default: any column containing 'date'")
@click.option("--max20", is_flag=True, default=False, help="Keep only the last 20 characters of the max-length columns")
@click.option("--conn-timeout", default=300, type=int, show_default=True, help="Connection timeout in seconds")
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging")
@click.option("--debug-sql", is_flag=True, default=False, help="Log every statement sent to the database")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/migration_rejects.csv",
    show_default=True,
)
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(),
)
def main(
    config_path: str,
    db_dsn: str | None,
    section: str | None,
    exit_on_error: bool,
    bulk: bool,
    bulk_limit: int | None,
    date_columns: str | None,
    max20: bool,
    conn_timeout: int,
    debug: bool,
    debug_sql: bool,
    run_id: str | None,
    rejects_path: str,
    report_dir: str,
) -> None:
    """Migrate delimited files into PostgreSQL tables."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if debug_sql:
        for name in SQL_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()

    def echo(message: str) -> None:
        click.echo(f"[{run_id}] {message}")

    try:
        config = load_config(Path(config_path))
        sections = config.select(split_names(section))
        options = apply_overrides(
            config.sink,
            exit_on_error=True if exit_on_error else None,
            bulk=True if bulk else None,
            batch_size=bulk_limit,
            date_columns=date_columns,
            max_length=True if max20 else None,
        )
        conninfo = config.conninfo(db_dsn, connect_timeout=conn_timeout)
    except (MigrationError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    echo(
        f"Starting run: {len(sections)} section(s), "
        f"mode={'bulk' if options.bulk else 'insert'}, exit_on_error={options.exit_on_error}"
    )

    rejects = RejectWriter(Path(rejects_path))
    failed: Exception | None = None
    try:
        log.debug("Opening PostgreSQL connection...")
        conn = psycopg.connect(conninfo, autocommit=True)
        try:
            run_migration(conn, sections, options, counters, rejects, echo)
        finally:
            conn.close()
    except (MigrationError, psycopg.Error) as exc:
        failed = exc
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        if debug:
            log.exception("run aborted")
    finally:
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, Path(report_dir),
        {
            "config_path": config_path,
            "sections": [s.name for s in sections],
            "bulk": options.bulk,
            "aborted": failed is not None,
        },
        counters,
    )
    echo(
        f"Done: {counters.rows_read} rows read, {counters.rows_rejected} rejected, "
        f"{counters.rows_written} written, {counters.rows_failed} failed, "
        f"{counters.batches_committed} batches committed, "
        f"{counters.sources_failed} source(s) failed"
    )
    echo(f"Run report: {report_path}")

    if failed is not None:
        if counters.rows_written:
            click.echo(
                f"[{run_id}] {counters.rows_written} rows were committed before the failure "
                "and remain in the target",
                err=True,
            )
        sys.exit(1)
    if counters.sources_failed or counters.rows_failed:
        click.echo(
            f"[{run_id}] {counters.sources_failed} source(s) and "
            f"{counters.rows_failed} row(s) failed; exiting non-zero",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
