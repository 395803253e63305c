"""
orders.py - jobs (delivery orders) and their product lines.

A job header and all of its lines are written in one transaction: callers
see either the whole order or nothing. Line prices come from the caller;
creating an order never looks prices up in the catalog (the pricing
preview endpoint is where catalog prices are resolved).

Field-level write access on updates is role based:
  driver        status, driver_notes, payment_received (own jobs only)
  office/admin  any header field
Lines are never modified through an update.
"""

import math
import sqlite3
from dataclasses import dataclass, fields
from datetime import date
from typing import Any, Optional

from auth import OFFICE_ROLES, require_roles
from catalog import parse_flag
from customers import find_or_create_customer
from db import is_foreign_key_error, row_to_dict, rows_to_list, transaction
from errors import (
    AuthenticationError, AuthorizationError, DanglingReferenceError,
    NotFoundError, PersistenceError, ValidationError,
)
from logging_config import get_logger
from schema_compat import CONTRACTOR, RETAIL, TIERS, to_money

logger = get_logger(__name__)

STATUS_FLOW = ("to_be_scheduled", "scheduled", "in_progress", "completed")
CANCELLED = "cancelled"
STATUSES = STATUS_FLOW + (CANCELLED,)
TERMINAL_STATUSES = ("completed", CANCELLED)
INITIAL_STATUSES = ("to_be_scheduled", "scheduled")

DRIVER_FIELDS = frozenset({"status", "driver_notes", "payment_received"})
OFFICE_FIELDS = frozenset({
    "customer_id", "customer_name", "customer_phone", "address", "delivery_date",
    "special_instructions", "paid", "status", "driver_notes", "payment_received",
    "total_amount", "contractor_discount", "assigned_driver", "truck",
})


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def _text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _required_text(value, field, label):
    value = _text(value)
    if not value:
        raise ValidationError(f"{label} is required", field=field)
    return value


def _parse_date(value, field="delivery_date"):
    if not value:
        raise ValidationError("Delivery date is required", field=field)
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date", field=field)


def _parse_number(value, field):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number", field=field)
    return number


def _parse_amount(value, field):
    amount = _parse_number(value, field)
    if amount is None:
        return None
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return to_money(amount)


def _parse_id(value, field):
    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an id", field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an id", field=field)


@dataclass
class OrderLine:
    """One product line with its prices settled."""

    product_name: str
    quantity: float
    unit: str
    unit_price: float = 0.0
    total_price: float = 0.0
    price_type: str = RETAIL
    product_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data, index, default_tier=RETAIL):
        """
        Validate a line and settle its prices.

        A non-zero total_price from the caller is kept as an explicit
        override; otherwise a unit_price gives total = unit_price * quantity;
        with neither, both stay zero.
        """
        prefix = f"products[{index}]"
        if not isinstance(data, dict):
            raise ValidationError(f"Line {index + 1} must be an object", field=prefix)

        name = _required_text(data.get("product_name"), f"{prefix}.product_name",
                              f"Line {index + 1}: product name")
        quantity = _parse_number(data.get("quantity"), f"{prefix}.quantity")
        if quantity is None or quantity <= 0:
            raise ValidationError(f"Line {index + 1}: quantity must be a positive number",
                                  field=f"{prefix}.quantity")
        unit = _required_text(data.get("unit"), f"{prefix}.unit", f"Line {index + 1}: unit")

        price_type = data.get("price_type") or default_tier
        if price_type not in TIERS:
            raise ValidationError(f"Line {index + 1}: price_type must be one of {', '.join(TIERS)}",
                                  field=f"{prefix}.price_type")

        unit_price = _parse_amount(data.get("unit_price"), f"{prefix}.unit_price")
        total_price = _parse_amount(data.get("total_price"), f"{prefix}.total_price")
        if total_price:
            unit_price = unit_price or 0.0
        elif unit_price is not None:
            total_price = to_money(unit_price * quantity)
        else:
            unit_price, total_price = 0.0, 0.0

        return cls(
            product_name=name,
            quantity=quantity,
            unit=unit,
            unit_price=unit_price,
            total_price=total_price,
            price_type=price_type,
            product_id=_parse_id(data.get("product_id"), f"{prefix}.product_id"),
        )


_UNSET: Any = object()


@dataclass
class JobPatch:
    """Partial update of a job header. Fields left as _UNSET are not touched."""

    customer_id: Optional[int] = _UNSET
    customer_name: Optional[str] = _UNSET
    customer_phone: Optional[str] = _UNSET
    address: Optional[str] = _UNSET
    delivery_date: Optional[str] = _UNSET
    special_instructions: Optional[str] = _UNSET
    paid: Optional[int] = _UNSET
    status: Optional[str] = _UNSET
    driver_notes: Optional[str] = _UNSET
    payment_received: Optional[float] = _UNSET
    total_amount: Optional[float] = _UNSET
    contractor_discount: Optional[int] = _UNSET
    assigned_driver: Optional[int] = _UNSET
    truck: Optional[str] = _UNSET

    @classmethod
    def from_body(cls, body, allowed):
        """Parse the allowed keys of a request body; other keys are ignored."""
        patch = cls()
        for key in sorted(allowed & set(body)):
            setattr(patch, key, _PARSERS[key](body[key], key))
        return patch

    def changes(self):
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not _UNSET}


def _parse_status(value, field):
    if value not in STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(STATUSES)}", field=field)
    return value


def _parse_flag_value(value, field):
    return 1 if parse_flag(value) else 0


def _parse_money_or_zero(value, field):
    amount = _parse_amount(value, field)
    return 0.0 if amount is None else amount


_PARSERS = {
    "customer_id": _parse_id,
    "customer_name": lambda v, f: _required_text(v, f, "Customer name"),
    "customer_phone": lambda v, f: _text(v),
    "address": lambda v, f: _required_text(v, f, "Delivery address"),
    "delivery_date": _parse_date,
    "special_instructions": lambda v, f: _text(v),
    "paid": _parse_flag_value,
    "status": _parse_status,
    "driver_notes": lambda v, f: _text(v),
    "payment_received": _parse_money_or_zero,
    "total_amount": _parse_money_or_zero,
    "contractor_discount": _parse_flag_value,
    "assigned_driver": _parse_id,
    "truck": lambda v, f: _text(v),
}


def check_transition(current, new, strict=True):
    """
    Reject status moves that go backwards or leave a terminal state.

    Cancelling is allowed from any non-terminal state. In strict mode a
    move may only advance one step; with strict off, forward jumps are
    allowed.
    """
    if new == current:
        return
    if current in TERMINAL_STATUSES:
        raise ValidationError(f"Job is already {current}; its status cannot change", field="status")
    if new == CANCELLED:
        return
    current_step = STATUS_FLOW.index(current) if current in STATUS_FLOW else STATUS_FLOW.index("scheduled")
    new_step = STATUS_FLOW.index(new)
    if new_step < current_step:
        raise ValidationError(f"Cannot move a job back from {current} to {new}", field="status")
    if strict and new_step > current_step + 1:
        raise ValidationError(f"Cannot skip from {current} to {new}", field="status")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

_JOB_SELECT = """
    SELECT j.*,
           COALESCE(cu.full_name, cu.username) AS created_by_name,
           COALESCE(du.full_name, du.username) AS assigned_driver_name
    FROM jobs j
    LEFT JOIN users cu ON cu.id = j.created_by
    LEFT JOIN users du ON du.id = j.assigned_driver
"""


def _job_view(conn, row):
    job = row_to_dict(row)
    job["paid"] = parse_flag(job.get("paid"))
    job["contractor_discount"] = parse_flag(job.get("contractor_discount"))
    job["products"] = rows_to_list(conn.execute(
        "SELECT * FROM job_products WHERE job_id=? ORDER BY id", [job["id"]]).fetchall())
    return job


def _check_driver_access(job, actor):
    if actor and actor.get("role") == "driver" and job["assigned_driver"] != actor.get("id"):
        raise AuthorizationError("Access denied: job is not assigned to you")


def get_order(conn, job_id, actor=None):
    row = conn.execute(_JOB_SELECT + " WHERE j.id=?", [job_id]).fetchone()
    if not row:
        raise NotFoundError("Job", job_id)
    _check_driver_access(row, actor)
    return _job_view(conn, row)


def list_orders(conn, actor, delivery_date=None, status=None):
    """Jobs ordered by delivery date; drivers only see their own."""
    where, vals = ["1=1"], []
    if delivery_date:
        where.append("j.delivery_date=?"); vals.append(_parse_date(delivery_date, "date"))
    if status:
        where.append("j.status=?"); vals.append(_parse_status(status, "status"))
    if actor and actor.get("role") == "driver":
        where.append("j.assigned_driver=?"); vals.append(actor["id"])
    rows = conn.execute(
        _JOB_SELECT + f" WHERE {' AND '.join(where)} ORDER BY j.delivery_date ASC, j.created_at ASC, j.id ASC",
        vals).fetchall()
    return [_job_view(conn, r) for r in rows]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _check_reference(conn, table, record_id, field):
    if record_id is None:
        return
    if not conn.execute(f"SELECT 1 FROM {table} WHERE id=?", [record_id]).fetchone():
        raise DanglingReferenceError(f"{field} {record_id} does not exist", {"field": field, "id": record_id})


def _storage_error(exc, action):
    if is_foreign_key_error(exc):
        return DanglingReferenceError("A referenced customer, driver or product does not exist",
                                      {"reason": str(exc)})
    if isinstance(exc, sqlite3.IntegrityError):
        return ValidationError(f"Could not {action}: {exc}")
    logger.error("Storage failure during %s: %s", action, exc, exc_info=exc)
    return PersistenceError(f"Could not {action}", {"reason": str(exc)})


def _insert_job(conn, values):
    cur = conn.execute(
        f"INSERT INTO jobs ({', '.join(values)}) VALUES ({','.join('?' * len(values))})",
        list(values.values()))
    return cur.lastrowid


def _insert_line(conn, job_id, line):
    conn.execute(
        "INSERT INTO job_products (job_id, product_id, product_name, quantity, unit, unit_price, total_price, price_type) "
        "VALUES (?,?,?,?,?,?,?,?)",
        [job_id, line.product_id, line.product_name, line.quantity, line.unit,
         line.unit_price, line.total_price, line.price_type])


def create_order(conn, header, lines, actor):
    """
    Validate and persist a job with its lines as one unit.

    Without a customer_id the customer is looked up by name, or created,
    inside the same transaction. The header total is the caller's non-zero
    total_amount, or else the sum of the line totals.

    Returns:
        The re-read job with its lines and creator/driver names, plus a
        customer_created flag.
    """
    require_roles(actor, OFFICE_ROLES, "Office or admin role required")

    customer_name = _required_text(header.get("customer_name"), "customer_name", "Customer name")
    address = _required_text(header.get("address"), "address", "Delivery address")
    delivery_date = _parse_date(header.get("delivery_date"))

    if not isinstance(lines, list) or not lines:
        raise ValidationError("At least one product line is required", field="products")
    contractor_discount = parse_flag(header.get("contractor_discount", False))
    default_tier = CONTRACTOR if contractor_discount else RETAIL
    order_lines = [OrderLine.from_dict(line, i, default_tier) for i, line in enumerate(lines)]

    status = header.get("status") or "scheduled"
    if status not in INITIAL_STATUSES:
        raise ValidationError(f"New jobs must start as one of: {', '.join(INITIAL_STATUSES)}", field="status")

    total_amount = _parse_amount(header.get("total_amount"), "total_amount")
    if not total_amount:
        total_amount = to_money(sum(line.total_price for line in order_lines))

    customer_id = _parse_id(header.get("customer_id"), "customer_id")
    assigned_driver = _parse_id(header.get("assigned_driver"), "assigned_driver")
    customer_phone = _text(header.get("customer_phone"))
    special_instructions = _text(header.get("special_instructions"))
    customer_created = False

    try:
        with transaction(conn):
            if customer_id is None:
                customer_id, customer_created = find_or_create_customer(
                    conn, customer_name, customer_phone, address, special_instructions, contractor_discount)
            else:
                _check_reference(conn, "customers", customer_id, "customer_id")
            _check_reference(conn, "users", assigned_driver, "assigned_driver")

            job_id = _insert_job(conn, {
                "customer_id": customer_id,
                "customer_name": customer_name,
                "customer_phone": customer_phone,
                "address": address,
                "delivery_date": delivery_date,
                "special_instructions": special_instructions,
                "paid": 1 if parse_flag(header.get("paid", False)) else 0,
                "status": status,
                "payment_received": _parse_money_or_zero(header.get("payment_received"), "payment_received"),
                "total_amount": total_amount,
                "contractor_discount": 1 if contractor_discount else 0,
                "created_by": actor["id"],
                "assigned_driver": assigned_driver,
                "truck": _text(header.get("truck")),
            })
            for line in order_lines:
                _insert_line(conn, job_id, line)
    except sqlite3.Error as exc:
        raise _storage_error(exc, "create job")

    logger.info("Created job %s for %s with %d lines (total %.2f) by user %s",
                job_id, customer_name, len(order_lines), total_amount, actor["id"])
    order = get_order(conn, job_id)
    order["customer_created"] = customer_created
    return order


def update_order(conn, job_id, body, actor, strict_transitions=True):
    """Apply a role-gated header patch and bump updated_at."""
    if actor is None:
        raise AuthenticationError()
    row = conn.execute("SELECT * FROM jobs WHERE id=?", [job_id]).fetchone()
    if not row:
        raise NotFoundError("Job", job_id)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")

    role = actor.get("role")
    if role == "driver":
        _check_driver_access(row, actor)
        invalid = sorted(set(body) - DRIVER_FIELDS)
        if invalid:
            logger.warning("Driver %s tried to update %s on job %s", actor.get("id"), invalid, job_id)
            raise AuthorizationError("Drivers can only update status, driver notes, and payment received",
                                     {"fields": invalid})
        allowed = DRIVER_FIELDS
    elif role in OFFICE_ROLES:
        allowed = OFFICE_FIELDS
    else:
        raise AuthorizationError("Access denied")

    changes = JobPatch.from_body(body, allowed).changes()
    if not changes:
        raise ValidationError("No valid fields to update")
    if "status" in changes:
        check_transition(row["status"], changes["status"], strict_transitions)

    assignments = [f"{f}=?" for f in changes] + ["updated_at=CURRENT_TIMESTAMP"]
    try:
        with transaction(conn):
            _check_reference(conn, "customers", changes.get("customer_id"), "customer_id")
            _check_reference(conn, "users", changes.get("assigned_driver"), "assigned_driver")
            conn.execute(f"UPDATE jobs SET {', '.join(assignments)} WHERE id=?",
                         list(changes.values()) + [job_id])
    except sqlite3.Error as exc:
        raise _storage_error(exc, "update job")

    logger.info("Updated job %s fields %s by user %s", job_id, sorted(changes), actor.get("id"))
    return get_order(conn, job_id)


def delete_order(conn, job_id, actor):
    """Hard-delete a job; its lines go with it."""
    require_roles(actor, OFFICE_ROLES, "Office or admin role required")
    try:
        with transaction(conn):
            cur = conn.execute("DELETE FROM jobs WHERE id=?", [job_id])
    except sqlite3.Error as exc:
        raise _storage_error(exc, "delete job")
    if cur.rowcount == 0:
        raise NotFoundError("Job", job_id)
    logger.info("Deleted job %s by user %s", job_id, actor.get("id"))
