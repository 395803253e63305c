"""
auth.py - password hashing, bearer tokens and role checks.

Tokens are base64 JSON payloads ({"user_id", "role", "exp"}) followed by
an HMAC-SHA256 signature over SECRET_KEY.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

from flask import request
from werkzeug.security import check_password_hash, generate_password_hash

from errors import AuthenticationError, AuthorizationError

OFFICE_ROLES = ("office", "admin")
ROLES = ("office", "driver", "admin")


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password_hash, password):
    if not password_hash or not password:
        return False
    return check_password_hash(password_hash, password)


def _sign(payload, secret):
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def make_token(user_id, role, secret, max_age_hours=24):
    expires = datetime.now(timezone.utc) + timedelta(hours=max_age_hours)
    payload = json.dumps({"user_id": user_id, "role": role, "exp": expires.isoformat()})
    encoded = base64.urlsafe_b64encode(payload.encode()).decode()
    return f"{encoded}.{_sign(encoded, secret)}"


def decode_token(token, secret):
    """Payload dict for a valid, unexpired token; None otherwise."""
    try:
        encoded, signature = token.rsplit(".", 1)
    except ValueError:
        return None
    if not hmac.compare_digest(signature, _sign(encoded, secret)):
        return None
    try:
        payload = json.loads(base64.urlsafe_b64decode(encoded.encode()).decode())
        expires = datetime.fromisoformat(payload["exp"])
    except (ValueError, KeyError, TypeError):
        return None
    if expires < datetime.now(timezone.utc):
        return None
    return payload


def bearer_token():
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def public_user(user):
    if user is None:
        return None
    user = dict(user)
    user.pop("password_hash", None)
    return user


def get_current_user(conn, secret):
    token = bearer_token()
    if not token:
        return None
    payload = decode_token(token, secret)
    if not payload:
        return None
    row = conn.execute("SELECT * FROM users WHERE id=? AND is_active=1", [payload.get("user_id")]).fetchone()
    return public_user(row) if row else None


def require_auth(conn, secret):
    user = get_current_user(conn, secret)
    if not user:
        raise AuthenticationError()
    return user


def require_roles(user, roles, message=None):
    if user is None:
        raise AuthenticationError()
    if user.get("role") not in roles:
        raise AuthorizationError(message or f"Requires one of: {', '.join(roles)}",
                                 {"role": user.get("role")})
    return user
