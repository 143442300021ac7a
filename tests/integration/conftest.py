"""Integration test fixtures.

Creates the target tables used by the migration tests in an ephemeral
PostgreSQL database provided by pytest-postgresql.
"""

from __future__ import annotations

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Target schema
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE well (
    uwi         text PRIMARY KEY,
    well_key    char(20) NOT NULL,
    name        text,
    depth       double precision,
    spud_date   date,
    source_system text
);

CREATE TABLE recall_log (
    recall_log_id text,
    note          text
);
"""

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return an autocommit psycopg connection with the target tables created.

    Each test gets a fresh database via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        conn.execute(SCHEMA)
        yield conn, dsn
    finally:
        conn.close()
