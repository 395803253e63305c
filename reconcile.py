"""
reconcile.py - bring an existing database forward to the current schema.

Runs at startup and from the admin reconcile endpoint. The main job is moving
products from the single legacy ``price_per_unit`` column to the
retail/contractor pair; the rest adds columns and indexes that older
deployments are missing.

Every step runs on its own: a failing ALTER or UPDATE is logged and the
remaining steps still run, and the application starts whatever the outcome.
Steps check the live table first, so a second run finds nothing to do.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from db import jobs_table_sql, table_columns, transaction
from logging_config import get_logger
from schema_compat import (
    CONTRACTOR_COLUMN, CONTRACTOR_RATE, LEGACY_COLUMN, RETAIL_COLUMN,
    ProductSchema, resolve_schema,
)

logger = get_logger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"

PRODUCT_COLUMNS = [
    (RETAIL_COLUMN, "REAL"),
    (CONTRACTOR_COLUMN, "REAL"),
    ("active", "INTEGER DEFAULT 1"),
    ("created_at", "TIMESTAMP"),
    ("updated_at", "TIMESTAMP"),
]

CUSTOMER_COLUMNS = [
    ("contractor", "INTEGER DEFAULT 0"),
    ("addresses", "TEXT DEFAULT '[]'"),
]

JOB_COLUMNS = [
    ("customer_id", "INTEGER REFERENCES customers(id) ON DELETE SET NULL"),
    ("total_amount", "REAL DEFAULT 0"),
    ("contractor_discount", "INTEGER DEFAULT 0"),
    ("payment_received", "REAL DEFAULT 0"),
    ("driver_notes", "TEXT"),
    ("truck", "TEXT"),
]

INDEXES = [
    ("idx_jobs_delivery_date", "jobs", "delivery_date"),
    ("idx_jobs_status", "jobs", "status"),
    ("idx_jobs_assigned_driver", "jobs", "assigned_driver"),
    ("idx_jobs_customer_id", "jobs", "customer_id"),
    ("idx_job_products_job_id", "job_products", "job_id"),
    ("idx_customers_name", "customers", "name"),
    ("idx_products_active", "products", "active"),
]

JOB_STATUSES = ("to_be_scheduled", "scheduled", "in_progress", "completed", "cancelled")


@dataclass
class StepResult:
    name: str
    outcome: str
    detail: str = ""

    def to_dict(self):
        return {"name": self.name, "outcome": self.outcome, "detail": self.detail}


@dataclass
class ReconcileReport:
    """Per-step outcomes of one pass plus the product schema it left behind."""

    steps: List[StepResult] = field(default_factory=list)
    schema: Optional[ProductSchema] = None

    @property
    def failed(self):
        return [s for s in self.steps if s.outcome == FAILED]

    @property
    def applied(self):
        return [s for s in self.steps if s.outcome == APPLIED]

    @property
    def ok(self):
        return not self.failed

    def to_dict(self):
        return {
            "ok": self.ok,
            "steps": [s.to_dict() for s in self.steps],
            "schema": self.schema.to_dict() if self.schema else None,
        }


# ---------------------------------------------------------------------------
# Steps. Each returns a description of what it changed, or None.
# ---------------------------------------------------------------------------

def add_column(conn, table, column, ddl):
    if column in table_columns(conn, table):
        return None
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    return f"added {table}.{column}"


def copy_legacy_prices(conn):
    """Copy numeric legacy prices into retail. Text left behind keeps the legacy column alive."""
    columns = table_columns(conn, "products")
    if LEGACY_COLUMN not in columns or RETAIL_COLUMN not in columns:
        return None
    cur = conn.execute(
        f"UPDATE products SET {RETAIL_COLUMN} = {LEGACY_COLUMN} "
        f"WHERE {RETAIL_COLUMN} IS NULL AND typeof({LEGACY_COLUMN}) IN ('integer', 'real')")
    return f"copied {cur.rowcount} legacy prices" if cur.rowcount else None


def derive_contractor_prices(conn):
    columns = table_columns(conn, "products")
    if RETAIL_COLUMN not in columns or CONTRACTOR_COLUMN not in columns:
        return None
    cur = conn.execute(
        f"UPDATE products SET {CONTRACTOR_COLUMN} = ROUND({RETAIL_COLUMN} * ?, 2) "
        f"WHERE {CONTRACTOR_COLUMN} IS NULL AND {RETAIL_COLUMN} IS NOT NULL",
        [CONTRACTOR_RATE])
    return f"derived {cur.rowcount} contractor prices" if cur.rowcount else None


def count_unmigrated(conn):
    """Products whose only price is still in the legacy column."""
    columns = table_columns(conn, "products")
    if LEGACY_COLUMN not in columns:
        return 0
    condition = f"{LEGACY_COLUMN} IS NOT NULL AND {LEGACY_COLUMN} != ''"
    if RETAIL_COLUMN in columns:
        condition += f" AND {RETAIL_COLUMN} IS NULL"
    return conn.execute(f"SELECT COUNT(*) FROM products WHERE {condition}").fetchone()[0]


def drop_legacy_column(conn):
    columns = table_columns(conn, "products")
    if LEGACY_COLUMN not in columns:
        return None
    if RETAIL_COLUMN not in columns or CONTRACTOR_COLUMN not in columns:
        logger.warning("[reconcile] dual price columns missing; keeping products.%s", LEGACY_COLUMN)
        return None
    remaining = count_unmigrated(conn)
    if remaining:
        logger.warning("[reconcile] %d products still only have a legacy price; keeping products.%s",
                       remaining, LEGACY_COLUMN)
        return None
    conn.execute(f"ALTER TABLE products DROP COLUMN {LEGACY_COLUMN}")
    return f"dropped products.{LEGACY_COLUMN}"


def upgrade_job_status_check(conn):
    """
    Rebuild jobs when its status CHECK predates the current status set.

    SQLite cannot alter a CHECK constraint, so the table is copied into a
    new one with foreign keys switched off for the swap.
    """
    row = conn.execute("SELECT sql FROM sqlite_master WHERE type='table' AND name='jobs'").fetchone()
    if not row or not row["sql"] or "CHECK" not in row["sql"]:
        return None
    if all(f"'{status}'" in row["sql"] for status in JOB_STATUSES):
        return None

    old_columns = table_columns(conn, "jobs")
    conn.execute("PRAGMA foreign_keys = OFF")
    try:
        with transaction(conn):
            conn.execute("DROP TABLE IF EXISTS jobs_rebuild")
            conn.execute(jobs_table_sql("jobs_rebuild"))
            shared = [c for c in table_columns(conn, "jobs_rebuild") if c in old_columns]
            column_list = ", ".join(shared)
            conn.execute(f"INSERT INTO jobs_rebuild ({column_list}) SELECT {column_list} FROM jobs")
            conn.execute("DROP TABLE jobs")
            conn.execute("ALTER TABLE jobs_rebuild RENAME TO jobs")
    finally:
        conn.execute("PRAGMA foreign_keys = ON")
    return "rebuilt jobs with current status values"


def bring_line_prices_forward(conn):
    """Rename the legacy line price column, or add the price columns lines now carry."""
    columns = table_columns(conn, "job_products")
    changes = []
    if "unit_price" not in columns:
        if LEGACY_COLUMN in columns:
            conn.execute(f"ALTER TABLE job_products RENAME COLUMN {LEGACY_COLUMN} TO unit_price")
            changes.append(f"renamed job_products.{LEGACY_COLUMN} to unit_price")
        else:
            conn.execute("ALTER TABLE job_products ADD COLUMN unit_price REAL NOT NULL DEFAULT 0")
            changes.append("added job_products.unit_price")
    if "total_price" not in columns:
        with transaction(conn):
            conn.execute("ALTER TABLE job_products ADD COLUMN total_price REAL NOT NULL DEFAULT 0")
            conn.execute("UPDATE job_products SET total_price = ROUND(unit_price * quantity, 2)")
        changes.append("added job_products.total_price")
    if "price_type" not in columns:
        conn.execute("ALTER TABLE job_products ADD COLUMN price_type TEXT DEFAULT 'retail'")
        changes.append("added job_products.price_type")
    return "; ".join(changes) or None


def create_index(conn, name, table, column):
    exists = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name=?", [name]).fetchone()
    if exists:
        return None
    conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {table}({column})")
    return f"created {name}"


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def _run_step(conn, report, name, func, *args):
    try:
        detail = func(conn, *args)
    except Exception as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        logger.warning("[reconcile] %s failed: %s", name, exc)
        report.steps.append(StepResult(name, FAILED, str(exc)))
        return
    if detail:
        logger.info("[reconcile] %s: %s", name, detail)
        report.steps.append(StepResult(name, APPLIED, detail))
    else:
        logger.debug("[reconcile] %s: nothing to do", name)
        report.steps.append(StepResult(name, SKIPPED))


def reconcile_products(conn):
    """
    Run every reconciliation step against conn and report the outcome.

    Never raises for a failed step. The returned report's schema is the
    product price capability to use until the next pass.
    """
    report = ReconcileReport()

    for column, ddl in PRODUCT_COLUMNS:
        _run_step(conn, report, f"products.add_column.{column}", add_column, "products", column, ddl)
    _run_step(conn, report, "products.copy_legacy_prices", copy_legacy_prices)
    _run_step(conn, report, "products.derive_contractor_prices", derive_contractor_prices)
    _run_step(conn, report, "products.drop_legacy_column", drop_legacy_column)

    for column, ddl in CUSTOMER_COLUMNS:
        _run_step(conn, report, f"customers.add_column.{column}", add_column, "customers", column, ddl)
    _run_step(conn, report, "jobs.status_check", upgrade_job_status_check)
    for column, ddl in JOB_COLUMNS:
        _run_step(conn, report, f"jobs.add_column.{column}", add_column, "jobs", column, ddl)
    _run_step(conn, report, "job_products.line_prices", bring_line_prices_forward)

    for name, table, column in INDEXES:
        _run_step(conn, report, f"index.{name}", create_index, name, table, column)

    try:
        report.schema = resolve_schema(conn)
    except Exception as exc:
        logger.error("[reconcile] could not read products columns: %s", exc)
        report.schema = ProductSchema()

    if report.failed:
        logger.warning("[reconcile] finished with %d failed steps; schema %s",
                       len(report.failed), report.schema.version.name)
    else:
        logger.info("[reconcile] finished: %d changes, schema %s",
                    len(report.applied), report.schema.version.name)
    return report
