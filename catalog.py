"""
catalog.py - products and their retail / contractor prices.

Reads and writes go through schema_compat so the same code serves a
legacy single-price table, a dual-price table, or one part-way between.
"""

from logging_config import get_logger
from db import transaction
from errors import NotFoundError, ValidationError
from schema_compat import (
    CONTRACTOR_COLUMN, CONTRACTOR_RATE, LEGACY_COLUMN, RETAIL_COLUMN,
    logical_prices, price_columns_for_write, retail_source, to_money,
)

logger = get_logger(__name__)


def parse_flag(value):
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def parse_price(value, field):
    """None for blank input, a rounded float otherwise."""
    if value is None or value == "":
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return to_money(amount)


def product_view(row, schema):
    product = {k: row[k] for k in row.keys() if k != LEGACY_COLUMN}
    product.update(logical_prices(row, schema))
    product["active"] = parse_flag(product.get("active", 1))
    product["current_price"] = product[RETAIL_COLUMN] or 0.0
    return product


def fetch_products(conn, active_only=False):
    if active_only:
        return conn.execute("SELECT * FROM products WHERE active=1 ORDER BY name ASC").fetchall()
    return conn.execute("SELECT * FROM products ORDER BY active DESC, name ASC").fetchall()


def list_products(conn, schema, active_only=False):
    return [product_view(r, schema) for r in fetch_products(conn, active_only)]


def _fetch_product(conn, product_id):
    row = conn.execute("SELECT * FROM products WHERE id=?", [product_id]).fetchone()
    if not row:
        raise NotFoundError("Product", product_id)
    return row


def get_product(conn, schema, product_id):
    return product_view(_fetch_product(conn, product_id), schema)


def _require_text(data, field, label):
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required", field=field)
    return value.strip()


def _name_taken(conn, name, exclude_id=None):
    row = conn.execute("SELECT id FROM products WHERE name=?", [name]).fetchone()
    return row is not None and row["id"] != exclude_id


def create_product(conn, schema, data):
    name = _require_text(data, "name", "Product name")
    unit = _require_text(data, "unit", "Unit")
    if _name_taken(conn, name):
        raise ValidationError("Product with this name already exists", field="name")

    retail = parse_price(data.get(RETAIL_COLUMN), RETAIL_COLUMN)
    contractor = parse_price(data.get(CONTRACTOR_COLUMN), CONTRACTOR_COLUMN)
    if contractor is None and retail is not None:
        contractor = to_money(retail * CONTRACTOR_RATE)

    fields = {"name": name, "unit": unit, "active": 1 if parse_flag(data.get("active", True)) else 0}
    fields.update(price_columns_for_write(schema, retail, contractor))
    with transaction(conn):
        cur = conn.execute(
            f"INSERT INTO products ({', '.join(fields)}) VALUES ({','.join('?' * len(fields))})",
            list(fields.values()))
    logger.info("Created product %s (%s)", cur.lastrowid, name)
    return get_product(conn, schema, cur.lastrowid)


def update_product(conn, schema, product_id, data):
    """
    Apply an admin edit.

    A retail change without an explicit contractor price re-derives the
    contractor price, but only while it still equals the derived 90% value;
    a hand-set contractor price survives retail edits.
    """
    existing = _fetch_product(conn, product_id)
    fields = {}

    if "name" in data:
        name = _require_text(data, "name", "Product name")
        if _name_taken(conn, name, exclude_id=product_id):
            raise ValidationError("Product with this name already exists", field="name")
        fields["name"] = name
    if "unit" in data:
        fields["unit"] = _require_text(data, "unit", "Unit")

    if RETAIL_COLUMN in data:
        retail = parse_price(data[RETAIL_COLUMN], RETAIL_COLUMN)
        if schema.has_retail:
            fields[RETAIL_COLUMN] = retail
        elif schema.has_legacy:
            fields[LEGACY_COLUMN] = retail

        if CONTRACTOR_COLUMN not in data and schema.has_contractor:
            old_retail = retail_source(existing, schema)
            old_contractor = existing[CONTRACTOR_COLUMN]
            derived = to_money(old_retail * CONTRACTOR_RATE) if old_retail is not None else None
            if old_contractor is None or to_money(old_contractor) == derived:
                fields[CONTRACTOR_COLUMN] = to_money(retail * CONTRACTOR_RATE) if retail is not None else None

    if CONTRACTOR_COLUMN in data and schema.has_contractor:
        fields[CONTRACTOR_COLUMN] = parse_price(data[CONTRACTOR_COLUMN], CONTRACTOR_COLUMN)

    if "active" in data:
        fields["active"] = 1 if parse_flag(data["active"]) else 0

    if not fields:
        raise ValidationError("No valid fields to update")

    assignments = [f"{f}=?" for f in fields] + ["updated_at=CURRENT_TIMESTAMP"]
    with transaction(conn):
        conn.execute(f"UPDATE products SET {', '.join(assignments)} WHERE id=?",
                     list(fields.values()) + [product_id])
    logger.info("Updated product %s: %s", product_id, sorted(fields))
    return get_product(conn, schema, product_id)


def delete_product(conn, product_id):
    """Hard-delete an unused product; deactivate one that order lines still reference."""
    _fetch_product(conn, product_id)
    in_use = conn.execute("SELECT COUNT(*) FROM job_products WHERE product_id=?", [product_id]).fetchone()[0]
    with transaction(conn):
        if in_use:
            conn.execute("UPDATE products SET active=0, updated_at=CURRENT_TIMESTAMP WHERE id=?", [product_id])
        else:
            conn.execute("DELETE FROM products WHERE id=?", [product_id])
    if in_use:
        logger.info("Product %s is referenced by %d order lines; deactivated instead of deleted", product_id, in_use)
        return {"message": "Product deactivated", "deactivated": True}
    return {"message": "Product deleted successfully", "deactivated": False}
