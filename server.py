#!/usr/bin/env python3
"""
server.py - Flask server for the delivery scheduler.

All API traffic goes through one catch-all route that hands the method,
path, query and JSON body to dispatch(). Handlers return
{"status": ..., "body": ...}; domain errors raised anywhere below are turned
into JSON error responses by api_handler().
"""

import os
import re
import traceback
from datetime import datetime, timezone

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS

import catalog
import customers
import orders
import users
from auth import (
    OFFICE_ROLES, get_current_user, make_token, public_user, require_roles,
    verify_password,
)
from config import get_config
from db import get_connection, init_db, seed_defaults
from errors import (
    AuthenticationError, AuthorizationError, DeliveryAppError, ValidationError,
)
from logging_config import get_logger, setup_logging
from pricing import priced_catalog
from reconcile import count_unmigrated, reconcile_products
from schema_compat import describe_product_columns, resolve_schema

logger = get_logger(__name__)

api = Blueprint("api", __name__)


# ---------------------------------------------------------------------------
# Route matching
# ---------------------------------------------------------------------------

def match(pattern, path):
    """Match "/jobs/:id" style patterns; returns the captured params or None."""
    regex = "^" + re.sub(r":([a-zA-Z_]+)", r"(?P<\1>[^/]+)", pattern) + "$"
    m = re.match(regex, path)
    if m:
        return m.groupdict()
    return None


def query_params():
    return {k: v for k, v in request.args.items() if k != "_token"}


def parse_id(value, field="id"):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)


# ---------------------------------------------------------------------------
# API entry point
# ---------------------------------------------------------------------------

@api.route("/<path:route>", methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])
def api_handler(route):
    if request.method == "OPTIONS":
        return "", 204

    path = "/" + route
    if len(path) > 1:
        path = path.rstrip("/")
    method = request.method
    cfg = current_app.config

    conn = get_connection(cfg["DATABASE_PATH"], cfg["DATABASE_TIMEOUT"])
    try:
        body = request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        result = dispatch(method, path, query_params(), body, conn)
        return jsonify(result.get("body", {})), result.get("status", 200)
    except DeliveryAppError as exc:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", method, path, exc)
        elif isinstance(exc, AuthorizationError):
            logger.warning("%s %s denied: %s", method, path, exc.message)
        payload = exc.to_dict()
        if exc.status_code >= 500 and cfg["ENVIRONMENT"] == "production":
            payload = {"error": exc.message}
        return jsonify(payload), exc.status_code
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", method, path)
        payload = {"error": "Internal server error"}
        if cfg["ENVIRONMENT"] != "production":
            payload["detail"] = str(exc)
            payload["traceback"] = traceback.format_exc()
        return jsonify(payload), 500
    finally:
        conn.close()


def dispatch(method, path, params, body, conn):
    """Route dispatcher - returns dict with 'status' and 'body' keys."""
    cfg = current_app.config
    schema = cfg["PRICE_SCHEMA"]

    # ----- HEALTH CHECK -----
    if method == "GET" and path == "/health":
        return {"status": 200, "body": {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": cfg["ENVIRONMENT"],
            "db_ok": conn.execute("SELECT 1").fetchone() is not None,
            "price_schema": schema.to_dict(),
        }}

    # ----- AUTH -----
    if method == "POST" and path == "/auth/login":
        login = str(body.get("email") or body.get("username") or "").strip().lower()
        password = body.get("password") or ""
        if not login or not password:
            raise ValidationError("Email or username and password are required")
        row = conn.execute(
            "SELECT * FROM users WHERE (LOWER(email)=? OR LOWER(username)=?) AND is_active=1",
            [login, login]).fetchone()
        if not row or not verify_password(row["password_hash"], password):
            logger.warning("Failed login for %s", login)
            raise AuthenticationError("Invalid credentials")
        token = make_token(row["id"], row["role"], cfg["SECRET_KEY"], cfg["TOKEN_MAX_AGE_HOURS"])
        logger.info("User %s logged in", row["username"])
        return {"status": 200, "body": {"token": token, "user": public_user(row)}}

    # Everything below requires a signed-in user
    current_user = get_current_user(conn, cfg["SECRET_KEY"])
    if not current_user:
        raise AuthenticationError()

    if method == "GET" and path == "/auth/me":
        return {"status": 200, "body": {"user": current_user}}

    # ----- USERS -----
    if method == "GET" and path == "/users":
        return {"status": 200, "body": users.list_users(conn, current_user)}

    if method == "POST" and path == "/users":
        return {"status": 201, "body": users.create_user(conn, body, current_user)}

    if method == "GET" and path == "/users/drivers":
        return {"status": 200, "body": users.list_drivers(conn)}

    m = match("/users/:id/password", path)
    if m and method == "PUT":
        uid = parse_id(m["id"])
        return {"status": 200, "body": users.change_password(conn, uid, body, current_user)}

    m = match("/users/:id", path)
    if m:
        uid = parse_id(m["id"])
        if method == "GET":
            return {"status": 200, "body": users.get_user(conn, uid, current_user)}
        if method == "PUT":
            return {"status": 200, "body": users.update_user(conn, uid, body, current_user)}
        if method == "DELETE":
            return {"status": 200, "body": users.delete_user(conn, uid, current_user)}

    # ----- CUSTOMERS -----
    if method == "GET" and path == "/customers":
        require_roles(current_user, OFFICE_ROLES)
        return {"status": 200, "body": customers.list_customers(conn)}

    if method == "GET" and path == "/customers/search":
        require_roles(current_user, OFFICE_ROLES)
        return {"status": 200, "body": customers.search_customers(conn, params.get("q"))}

    if method == "POST" and path == "/customers":
        require_roles(current_user, OFFICE_ROLES)
        return {"status": 201, "body": customers.create_customer(conn, body)}

    m = match("/customers/:id", path)
    if m:
        cid = parse_id(m["id"])
        require_roles(current_user, OFFICE_ROLES)
        if method == "GET":
            return {"status": 200, "body": customers.get_customer(conn, cid)}
        if method == "PUT":
            return {"status": 200, "body": customers.update_customer(conn, cid, body)}
        if method == "DELETE":
            customers.delete_customer(conn, cid)
            return {"status": 200, "body": {"message": "Customer deleted successfully"}}

    # ----- PRODUCTS -----
    if method == "GET" and path == "/products":
        return {"status": 200, "body": catalog.list_products(conn, schema)}

    if method == "GET" and path == "/products/active":
        return {"status": 200, "body": catalog.list_products(conn, schema, active_only=True)}

    m = match("/products/pricing/:customer_id", path)
    if m and method == "GET":
        customer_id = parse_id(m["customer_id"], "customer_id")
        return {"status": 200, "body": priced_catalog(conn, customer_id, schema)}

    if method == "POST" and path == "/products":
        require_roles(current_user, OFFICE_ROLES)
        return {"status": 201, "body": catalog.create_product(conn, schema, body)}

    m = match("/products/:id", path)
    if m:
        pid = parse_id(m["id"])
        if method == "GET":
            return {"status": 200, "body": catalog.get_product(conn, schema, pid)}
        if method == "PUT":
            require_roles(current_user, OFFICE_ROLES)
            return {"status": 200, "body": catalog.update_product(conn, schema, pid, body)}
        if method == "DELETE":
            require_roles(current_user, OFFICE_ROLES)
            return {"status": 200, "body": catalog.delete_product(conn, pid)}

    # ----- JOBS -----
    if method == "GET" and path == "/jobs":
        jobs = orders.list_orders(conn, current_user, params.get("date"), params.get("status"))
        return {"status": 200, "body": jobs}

    if method == "POST" and path == "/jobs":
        header = {k: v for k, v in body.items() if k != "products"}
        job = orders.create_order(conn, header, body.get("products"), current_user)
        return {"status": 201, "body": job}

    m = match("/jobs/:id", path)
    if m:
        jid = parse_id(m["id"])
        if method == "GET":
            return {"status": 200, "body": orders.get_order(conn, jid, current_user)}
        if method == "PUT":
            job = orders.update_order(conn, jid, body, current_user,
                                      strict_transitions=cfg["STRICT_STATUS_TRANSITIONS"])
            return {"status": 200, "body": job}
        if method == "DELETE":
            orders.delete_order(conn, jid, current_user)
            return {"status": 200, "body": {"message": "Job deleted successfully"}}

    # ----- SCHEMA -----
    if method == "GET" and path == "/schema/products":
        require_roles(current_user, OFFICE_ROLES)
        live = resolve_schema(conn)
        return {"status": 200, "body": {
            "columns": sorted(describe_product_columns(conn)),
            "live": live.to_dict(),
            "active": schema.to_dict(),
            "unmigrated_products": count_unmigrated(conn),
        }}

    if method == "POST" and path == "/schema/reconcile":
        require_roles(current_user, ("admin",), "Admin role required")
        report = reconcile_products(conn)
        cfg["PRICE_SCHEMA"] = report.schema
        logger.info("Reconcile run by user %s", current_user["id"])
        return {"status": 200, "body": report.to_dict()}

    return {"status": 404, "body": {"error": f"Route not found: {method} {path}"}}


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

def prepare_database(app):
    """Create missing tables, reconcile old ones and record the price schema."""
    conn = get_connection(app.config["DATABASE_PATH"], app.config["DATABASE_TIMEOUT"])
    try:
        init_db(conn)
        report = reconcile_products(conn)
        app.config["PRICE_SCHEMA"] = report.schema
        if app.config["SEED_DEFAULT_DATA"]:
            seed_defaults(conn, report.schema)
    finally:
        conn.close()


def create_app(config=None, **overrides):
    """
    Build the Flask app.

    Args:
        config: a config class, or its name ("production", "testing", ...).
            Defaults to the one selected by APP_ENV.
        **overrides: individual config keys, e.g. DATABASE_PATH for tests.
    """
    if config is None or isinstance(config, str):
        config = get_config(config)

    app = Flask(__name__)
    app.config.from_object(config)
    app.config.update(overrides)

    setup_logging(
        log_level=app.config["LOG_LEVEL"],
        log_dir=app.config["LOG_DIR"],
        enable_file_logging=app.config["ENABLE_FILE_LOGGING"],
    )

    origins = app.config["CORS_ORIGINS"]
    if origins != "*":
        origins = [o.strip() for o in origins.split(",") if o.strip()]
    CORS(app, origins=origins)

    app.register_blueprint(api, url_prefix="/api")
    prepare_database(app)
    logger.info("Delivery scheduler ready (%s, db %s, price schema %s)",
                app.config["ENVIRONMENT"], app.config["DATABASE_PATH"],
                app.config["PRICE_SCHEMA"].version.name)
    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=app.config["DEBUG"])
