"""
Shared fixtures: a throwaway SQLite database per test, users for every
role, catalog/customer factories and a Flask test client.
"""

import json

import pytest

from auth import hash_password, make_token
from config import TestingConfig
from db import get_connection, init_db
from server import create_app

PASSWORD = "secret123"


# Fixtures

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "delivery.db")


@pytest.fixture
def conn(db_path):
    """Connection to a freshly created current-schema database."""
    connection = get_connection(db_path)
    init_db(connection)
    yield connection
    connection.close()


@pytest.fixture
def users(conn):
    """Active users keyed by username: admin, office, driver1, driver2."""
    pw_hash = hash_password(PASSWORD)
    created = {}
    for username, role in [("admin", "admin"), ("office", "office"),
                           ("driver1", "driver"), ("driver2", "driver")]:
        cur = conn.execute(
            "INSERT INTO users (username, email, password_hash, full_name, role) VALUES (?,?,?,?,?)",
            [username, f"{username}@test.local", pw_hash, username.title(), role])
        created[username] = {"id": cur.lastrowid, "username": username, "role": role}
    return created


@pytest.fixture
def make_product(conn):
    """Insert a product straight into the dual-price table and return its id."""
    def _make(name, retail=None, contractor=None, unit="yards", active=1):
        cur = conn.execute(
            "INSERT INTO products (name, unit, retail_price, contractor_price, active) VALUES (?,?,?,?,?)",
            [name, unit, retail, contractor, active])
        return cur.lastrowid
    return _make


@pytest.fixture
def make_customer(conn):
    def _make(name, contractor=False, phone=None, address="1 Main St"):
        cur = conn.execute(
            "INSERT INTO customers (name, phone, addresses, contractor) VALUES (?,?,?,?)",
            [name, phone, json.dumps([{"address": address, "notes": None}]), 1 if contractor else 0])
        return cur.lastrowid
    return _make


@pytest.fixture
def app(conn, db_path):
    return create_app(TestingConfig, DATABASE_PATH=db_path)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(users):
    """Build Authorization headers for one of the fixture users."""
    def _headers(username):
        user = users[username]
        token = make_token(user["id"], user["role"], TestingConfig.SECRET_KEY)
        return {"Authorization": f"Bearer {token}"}
    return _headers
