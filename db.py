"""
db.py - SQLite connection, schema and transaction helpers.

Connections run in autocommit mode; every multi-statement write goes
through transaction() so a failure anywhere rolls the whole unit back.
"""

import json
import sqlite3
from contextlib import contextmanager

from auth import hash_password
from logging_config import get_logger
from schema_compat import CONTRACTOR_RATE, price_columns_for_write, to_money

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def get_connection(db_path, timeout=5.0):
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def transaction(conn):
    """
    Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on any exception.

    IMMEDIATE takes the write lock up front, so a concurrent writer waits out
    the busy timeout instead of failing a read-then-write block part way.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        # SQLite may already have rolled back on its own (e.g. disk full)
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def row_to_dict(row):
    if row is None:
        return None
    return dict(row)


def rows_to_list(rows):
    return [dict(r) for r in rows]


def table_columns(conn, table):
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def is_foreign_key_error(exc):
    return isinstance(exc, sqlite3.IntegrityError) and "FOREIGN KEY" in str(exc).upper()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

BASE_TABLES = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    full_name TEXT,
    role TEXT NOT NULL DEFAULT 'driver' CHECK(role IN ('office','driver','admin')),
    is_active INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS customers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    phone TEXT,
    email TEXT,
    addresses TEXT DEFAULT '[]',
    notes TEXT,
    contractor INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    unit TEXT NOT NULL,
    retail_price REAL,
    contractor_price REAL,
    active INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS {name} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    customer_id INTEGER REFERENCES customers(id) ON DELETE SET NULL,
    customer_name TEXT NOT NULL,
    customer_phone TEXT,
    address TEXT NOT NULL,
    delivery_date TEXT NOT NULL,
    special_instructions TEXT,
    paid INTEGER DEFAULT 0,
    status TEXT DEFAULT 'scheduled' CHECK(status IN ('to_be_scheduled','scheduled','in_progress','completed','cancelled')),
    driver_notes TEXT,
    payment_received REAL DEFAULT 0,
    total_amount REAL DEFAULT 0,
    contractor_discount INTEGER DEFAULT 0,
    created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    assigned_driver INTEGER REFERENCES users(id) ON DELETE SET NULL,
    truck TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

JOB_PRODUCTS_TABLE = """
CREATE TABLE IF NOT EXISTS job_products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    product_id INTEGER REFERENCES products(id),
    product_name TEXT NOT NULL,
    quantity REAL NOT NULL,
    unit TEXT NOT NULL,
    unit_price REAL NOT NULL DEFAULT 0,
    total_price REAL NOT NULL DEFAULT 0,
    price_type TEXT DEFAULT 'retail' CHECK(price_type IN ('retail','contractor')),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def jobs_table_sql(name="jobs"):
    return JOBS_TABLE.format(name=name)


def init_db(conn):
    """Create any missing tables. Existing tables are left for the reconciler."""
    conn.executescript(BASE_TABLES + jobs_table_sql() + JOB_PRODUCTS_TABLE)


# ---------------------------------------------------------------------------
# Default data
# ---------------------------------------------------------------------------

DEFAULT_ACCOUNTS = [
    ("admin", "admin@delivery.local", "Admin", "admin"),
    ("office", "office@delivery.local", "Office", "office"),
    ("driver1", "driver1@delivery.local", "Driver One", "driver"),
]

DEFAULT_PRODUCTS = [
    ("Premium Bark Mulch", "yards", 45.00),
    ("Screened Topsoil", "yards", 38.00),
    ("Compost Blend", "yards", 42.00),
    ("Play Sand", "yards", 32.00),
]

DEFAULT_PASSWORD = "admin123"


def seed_defaults(conn, schema):
    """Insert demo accounts and products when their tables are empty."""
    if conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 0:
        pw_hash = hash_password(DEFAULT_PASSWORD)
        with transaction(conn):
            for username, email, full_name, role in DEFAULT_ACCOUNTS:
                conn.execute(
                    "INSERT INTO users (username, email, password_hash, full_name, role) VALUES (?,?,?,?,?)",
                    [username, email, pw_hash, full_name, role])
        logger.info("Seeded %d default accounts", len(DEFAULT_ACCOUNTS))

    if conn.execute("SELECT COUNT(*) FROM products").fetchone()[0] == 0:
        with transaction(conn):
            for name, unit, retail in DEFAULT_PRODUCTS:
                price_cols = price_columns_for_write(schema, retail, to_money(retail * CONTRACTOR_RATE))
                cols = ["name", "unit"] + list(price_cols)
                conn.execute(
                    f"INSERT INTO products ({', '.join(cols)}) VALUES ({','.join('?' * len(cols))})",
                    [name, unit] + list(price_cols.values()))
        logger.info("Seeded %d default products", len(DEFAULT_PRODUCTS))

    if conn.execute("SELECT COUNT(*) FROM customers").fetchone()[0] == 0:
        with transaction(conn):
            conn.execute(
                "INSERT INTO customers (name, phone, email, addresses, contractor, notes) VALUES (?,?,?,?,?,?)",
                ["Pioneer Valley Landscaping", "(413) 555-0123", "orders@pvlandscaping.com",
                 json.dumps([{"address": "456 Industrial Dr, Westfield, MA 01085", "notes": "Commercial loading dock"}]),
                 1, "Volume contractor"])
            conn.execute(
                "INSERT INTO customers (name, phone, email, addresses, contractor, notes) VALUES (?,?,?,?,?,?)",
                ["Johnson Residence", "(413) 555-0198", "mjohnson@example.com",
                 json.dumps([{"address": "123 Maple Street, East Longmeadow, MA 01028", "notes": "Side driveway access"}]),
                 0, "Residential customer"])
