"""
users.py - staff accounts: listing, admin-managed create/update/delete and
password changes.

Admins manage every account. Other users may view and edit their own
profile and change their own password, which requires the current one.
"""

import re
import sqlite3

from auth import OFFICE_ROLES, ROLES, hash_password, require_roles, verify_password
from catalog import parse_flag
from db import row_to_dict, rows_to_list, transaction
from errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6

_PUBLIC_COLUMNS = "id, username, email, full_name, role, is_active, created_at, updated_at"


def _is_admin(actor):
    return actor.get("role") == "admin"


def _is_self(actor, user_id):
    return actor.get("id") == user_id


def user_view(row):
    user = row_to_dict(row)
    user["is_active"] = bool(user.get("is_active"))
    return user


def list_users(conn, actor):
    require_roles(actor, OFFICE_ROLES)
    rows = conn.execute(f"SELECT {_PUBLIC_COLUMNS} FROM users ORDER BY role, full_name").fetchall()
    return [user_view(r) for r in rows]


def list_drivers(conn):
    rows = conn.execute(
        "SELECT id, username, full_name FROM users WHERE role='driver' AND is_active=1 "
        "ORDER BY full_name").fetchall()
    return rows_to_list(rows)


def _fetch_user(conn, user_id):
    row = conn.execute(f"SELECT {_PUBLIC_COLUMNS} FROM users WHERE id=?", [user_id]).fetchone()
    if not row:
        raise NotFoundError("User", user_id)
    return user_view(row)


def get_user(conn, user_id, actor):
    require_roles(actor, ROLES)
    if not _is_self(actor, user_id) and actor["role"] not in OFFICE_ROLES:
        raise AuthorizationError("Access denied - can only view your own profile")
    return _fetch_user(conn, user_id)


# ---------------------------------------------------------------------------
# Field cleaning
# ---------------------------------------------------------------------------

def _clean_username(value):
    username = str(value or "").strip()
    if len(username) < MIN_USERNAME_LENGTH:
        raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters", field="username")
    return username


def _clean_email(value):
    email = str(value or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Valid email is required", field="email")
    return email


def _clean_role(value):
    if value not in ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(ROLES)}", field="role")
    return value


def _clean_password(value, field="password"):
    if not isinstance(value, str) or len(value) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field=field)
    return value


def _check_unique(conn, column, value, user_id=None):
    row = conn.execute(f"SELECT id FROM users WHERE LOWER({column})=LOWER(?)", [value]).fetchone()
    if row and row["id"] != user_id:
        raise ValidationError(f"{column.capitalize()} already exists", field=column)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create_user(conn, data, actor):
    require_roles(actor, ("admin",), "Admin role required")
    username = _clean_username(data.get("username"))
    email = _clean_email(data.get("email"))
    password = _clean_password(data.get("password"))
    role = _clean_role(data.get("role") or "driver")
    full_name = str(data.get("full_name") or "").strip() or username

    try:
        with transaction(conn):
            _check_unique(conn, "username", username)
            _check_unique(conn, "email", email)
            cur = conn.execute(
                "INSERT INTO users (username, email, password_hash, full_name, role) VALUES (?,?,?,?,?)",
                [username, email, hash_password(password), full_name, role])
    except sqlite3.IntegrityError as exc:
        raise ValidationError(f"Could not create user: {exc}")
    logger.info("User %s created %s account %s (%s)", actor["id"], role, cur.lastrowid, username)
    return _fetch_user(conn, cur.lastrowid)


def update_user(conn, user_id, data, actor):
    """Admins may edit anyone; other users only their own name, username and email."""
    require_roles(actor, ROLES)
    if not _is_self(actor, user_id) and not _is_admin(actor):
        raise AuthorizationError("Access denied - can only update your own profile")
    admin_only = [k for k in ("role", "is_active") if k in data]
    if admin_only and not _is_admin(actor):
        raise AuthorizationError("Only admins can change roles or activation", {"fields": admin_only})
    _fetch_user(conn, user_id)

    fields, vals = [], []
    if "username" in data:
        username = _clean_username(data["username"])
        _check_unique(conn, "username", username, user_id)
        fields.append("username=?"); vals.append(username)
    if "email" in data:
        email = _clean_email(data["email"])
        _check_unique(conn, "email", email, user_id)
        fields.append("email=?"); vals.append(email)
    if "full_name" in data:
        fields.append("full_name=?"); vals.append(str(data["full_name"] or "").strip() or None)
    if "role" in data:
        fields.append("role=?"); vals.append(_clean_role(data["role"]))
    if "is_active" in data:
        active = parse_flag(data["is_active"])
        if not active and _is_self(actor, user_id):
            raise ValidationError("Cannot deactivate your own account", field="is_active")
        fields.append("is_active=?"); vals.append(1 if active else 0)
    if not fields:
        raise ValidationError("No valid fields to update")
    fields.append("updated_at=CURRENT_TIMESTAMP")

    try:
        with transaction(conn):
            conn.execute(f"UPDATE users SET {', '.join(fields)} WHERE id=?", vals + [user_id])
    except sqlite3.IntegrityError as exc:
        raise ValidationError(f"Could not update user: {exc}")
    logger.info("User %s updated account %s", actor["id"], user_id)
    return _fetch_user(conn, user_id)


def change_password(conn, user_id, data, actor):
    """
    Set a new password.

    Users changing their own password must supply the current one. An admin
    resetting someone else's password does not.
    """
    require_roles(actor, ROLES)
    own = _is_self(actor, user_id)
    if not own and not _is_admin(actor):
        raise AuthorizationError("Access denied - can only change your own password")
    new_password = _clean_password(data.get("new_password"), "new_password")

    row = conn.execute("SELECT id, password_hash FROM users WHERE id=?", [user_id]).fetchone()
    if not row:
        raise NotFoundError("User", user_id)
    if own:
        current = data.get("current_password")
        if not current:
            raise ValidationError("Current password is required", field="current_password")
        if not verify_password(row["password_hash"], current):
            logger.warning("Wrong current password for user %s", user_id)
            raise AuthenticationError("Current password is incorrect")

    with transaction(conn):
        conn.execute("UPDATE users SET password_hash=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                     [hash_password(new_password), user_id])
    logger.info("Password changed for user %s by user %s", user_id, actor["id"])
    return {"message": "Password updated successfully"}


def delete_user(conn, user_id, actor):
    """Hard-delete an account with no jobs; deactivate one that jobs still name."""
    require_roles(actor, ("admin",), "Admin role required")
    if _is_self(actor, user_id):
        raise ValidationError("Cannot delete your own account")
    user = _fetch_user(conn, user_id)
    in_use = conn.execute(
        "SELECT COUNT(*) FROM jobs WHERE created_by=? OR assigned_driver=?", [user_id, user_id]).fetchone()[0]
    with transaction(conn):
        if in_use:
            conn.execute("UPDATE users SET is_active=0, updated_at=CURRENT_TIMESTAMP WHERE id=?", [user_id])
        else:
            conn.execute("DELETE FROM users WHERE id=?", [user_id])
    if in_use:
        logger.info("User %s is named on %d jobs; deactivated instead of deleted", user_id, in_use)
        return {"message": "User deactivated", "deactivated": True, "username": user["username"]}
    logger.info("Deleted user %s (%s)", user_id, user["username"])
    return {"message": "User deleted successfully", "deactivated": False, "username": user["username"]}
