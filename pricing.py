"""
pricing.py - which unit price a customer pays for a product.

Tier selection fails open to retail: a missing or unknown customer is never
given the contractor discount.
"""

from catalog import fetch_products, parse_flag, product_view
from db import row_to_dict
from logging_config import get_logger
from schema_compat import CONTRACTOR, RETAIL, read_price

logger = get_logger(__name__)


def tier_for(customer):
    if customer and parse_flag(customer.get("contractor")):
        return CONTRACTOR
    return RETAIL


def resolve_price(customer, product, schema=None):
    """(unit_price, tier) for a customer dict and a product row."""
    return read_price(product, tier_for(customer), schema)


def load_customer(conn, customer_id):
    if customer_id is None:
        return None
    return row_to_dict(conn.execute("SELECT id, name, contractor FROM customers WHERE id=?", [customer_id]).fetchone())


def priced_catalog(conn, customer_id, schema):
    """
    Active products annotated with the price this customer would pay.

    Unknown customers get retail prices across the board.
    """
    customer = load_customer(conn, customer_id)
    if customer is None:
        logger.info("Customer %s not found, defaulting to retail pricing", customer_id)

    products = []
    for row in fetch_products(conn, active_only=True):
        product = product_view(row, schema)
        price, tier = resolve_price(customer, row, schema)
        product["current_price"] = price
        product["price_type"] = tier
        products.append(product)

    is_contractor = tier_for(customer) == CONTRACTOR
    return {"products": products, "is_contractor": is_contractor, "customer_id": customer_id}
