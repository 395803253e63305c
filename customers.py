"""
customers.py - customer records and the contractor flag that selects the pricing tier.
"""

import json
import re

from catalog import parse_flag
from db import transaction
from errors import NotFoundError, ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_SELECT = """
    SELECT c.*, COUNT(j.id) AS total_deliveries
    FROM customers c LEFT JOIN jobs j ON j.customer_id = c.id
"""


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def customer_view(row):
    customer = dict(row)
    try:
        customer["addresses"] = json.loads(customer.get("addresses") or "[]")
    except ValueError:
        customer["addresses"] = []
    customer["contractor"] = parse_flag(customer.get("contractor"))
    return customer


def list_customers(conn):
    rows = conn.execute(_SELECT + " GROUP BY c.id ORDER BY c.contractor DESC, c.name ASC").fetchall()
    return [customer_view(r) for r in rows]


def search_customers(conn, term, limit=10):
    term = (term or "").strip()
    if not term:
        raise ValidationError("Search query is required", field="q")
    like = f"%{term}%"
    rows = conn.execute(
        _SELECT + " WHERE c.name LIKE ? OR c.phone LIKE ? OR c.email LIKE ?"
                  " GROUP BY c.id ORDER BY c.contractor DESC, c.name ASC LIMIT ?",
        [like, like, like, limit]).fetchall()
    return [customer_view(r) for r in rows]


def get_customer(conn, customer_id):
    row = conn.execute(_SELECT + " WHERE c.id=? GROUP BY c.id", [customer_id]).fetchone()
    if not row:
        raise NotFoundError("Customer", customer_id)
    return customer_view(row)


def _clean_addresses(addresses):
    if not isinstance(addresses, list):
        raise ValidationError("At least one address is required", field="addresses")
    cleaned = []
    for entry in addresses:
        if isinstance(entry, str):
            entry = {"address": entry}
        if not isinstance(entry, dict):
            continue
        address = _clean(entry.get("address"))
        if address:
            cleaned.append({"address": address, "notes": _clean(entry.get("notes"))})
    if not cleaned:
        raise ValidationError("At least one valid address is required", field="addresses")
    return cleaned


def _clean_email(email):
    email = _clean(email)
    if email is None:
        return None
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format", field="email")
    return email.lower()


def create_customer(conn, data):
    name = _clean(data.get("name"))
    if not name:
        raise ValidationError("Customer name is required", field="name")
    phone = _clean(data.get("phone"))
    email = _clean_email(data.get("email"))
    addresses = _clean_addresses(data.get("addresses"))

    if phone:
        dup = conn.execute("SELECT id FROM customers WHERE name=? AND phone=?", [name, phone]).fetchone()
        if dup:
            raise ValidationError("Customer with this name and phone number already exists")

    with transaction(conn):
        cur = conn.execute(
            "INSERT INTO customers (name, phone, email, addresses, notes, contractor) VALUES (?,?,?,?,?,?)",
            [name, phone, email, json.dumps(addresses), _clean(data.get("notes")),
             1 if parse_flag(data.get("contractor", False)) else 0])
    logger.info("Created customer %s (%s)", cur.lastrowid, name)
    return get_customer(conn, cur.lastrowid)


def update_customer(conn, customer_id, data):
    get_customer(conn, customer_id)
    fields, vals = [], []
    if "name" in data:
        name = _clean(data["name"])
        if not name:
            raise ValidationError("Customer name cannot be empty", field="name")
        fields.append("name=?"); vals.append(name)
    if "phone" in data:
        fields.append("phone=?"); vals.append(_clean(data["phone"]))
    if "email" in data:
        fields.append("email=?"); vals.append(_clean_email(data["email"]))
    if "addresses" in data:
        fields.append("addresses=?"); vals.append(json.dumps(_clean_addresses(data["addresses"])))
    if "notes" in data:
        fields.append("notes=?"); vals.append(_clean(data["notes"]))
    if "contractor" in data:
        fields.append("contractor=?"); vals.append(1 if parse_flag(data["contractor"]) else 0)
    if not fields:
        raise ValidationError("No valid fields to update")
    fields.append("updated_at=CURRENT_TIMESTAMP")
    with transaction(conn):
        conn.execute(f"UPDATE customers SET {', '.join(fields)} WHERE id=?", vals + [customer_id])
    return get_customer(conn, customer_id)


def delete_customer(conn, customer_id):
    """Jobs keep their name/phone snapshot; their customer_id is nulled by the store."""
    with transaction(conn):
        cur = conn.execute("DELETE FROM customers WHERE id=?", [customer_id])
    if cur.rowcount == 0:
        raise NotFoundError("Customer", customer_id)
    logger.info("Deleted customer %s", customer_id)


def find_or_create_customer(conn, name, phone=None, address=None, notes=None, contractor=False):
    """
    Id of the customer with this name, creating one if needed.

    Runs inside the caller's transaction so a failed order also discards
    the customer it created.
    """
    row = conn.execute("SELECT id FROM customers WHERE name=? ORDER BY id LIMIT 1", [name]).fetchone()
    if row:
        return row["id"], False
    addresses = [{"address": address, "notes": notes or ""}] if address else []
    cur = conn.execute(
        "INSERT INTO customers (name, phone, addresses, contractor) VALUES (?,?,?,?)",
        [name, phone, json.dumps(addresses), 1 if contractor else 0])
    logger.info("Created customer %s (%s) from new job", cur.lastrowid, name)
    return cur.lastrowid, True
