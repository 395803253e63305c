"""
schema_compat.py - map logical product prices onto the physical columns.

The products table has two shapes in the wild: the legacy single
``price_per_unit`` column and the ``retail_price`` / ``contractor_price``
pair. Deployments part-way through the move can carry both. Everything that
reads or writes a price goes through this module with a ProductSchema
describing which columns exist, so callers never probe the table per row.

Missing price data is not an error here: reads degrade to a zero retail
price so an order or a price list never fails because of catalog gaps.
"""

from dataclasses import dataclass
from enum import IntEnum

RETAIL = "retail"
CONTRACTOR = "contractor"
TIERS = (RETAIL, CONTRACTOR)

CONTRACTOR_RATE = 0.9

RETAIL_COLUMN = "retail_price"
CONTRACTOR_COLUMN = "contractor_price"
LEGACY_COLUMN = "price_per_unit"


def to_money(value):
    if value is None:
        return None
    return round(float(value), 2)


class SchemaVersion(IntEnum):
    UNPRICED = 0
    LEGACY = 1
    TRANSITIONAL = 2
    DUAL = 3


@dataclass(frozen=True)
class ProductSchema:
    """Which price columns the products table currently has."""

    has_retail: bool = False
    has_contractor: bool = False
    has_legacy: bool = False

    @classmethod
    def from_columns(cls, columns):
        columns = set(columns)
        return cls(
            has_retail=RETAIL_COLUMN in columns,
            has_contractor=CONTRACTOR_COLUMN in columns,
            has_legacy=LEGACY_COLUMN in columns,
        )

    @property
    def version(self):
        if self.has_retail or self.has_contractor:
            if self.has_legacy or not (self.has_retail and self.has_contractor):
                return SchemaVersion.TRANSITIONAL
            return SchemaVersion.DUAL
        if self.has_legacy:
            return SchemaVersion.LEGACY
        return SchemaVersion.UNPRICED

    @property
    def price_columns(self):
        present = []
        if self.has_retail:
            present.append(RETAIL_COLUMN)
        if self.has_contractor:
            present.append(CONTRACTOR_COLUMN)
        if self.has_legacy:
            present.append(LEGACY_COLUMN)
        return present

    def to_dict(self):
        return {
            "version": self.version.name.lower(),
            "version_number": int(self.version),
            "price_columns": self.price_columns,
        }


DUAL_SCHEMA = ProductSchema(has_retail=True, has_contractor=True, has_legacy=False)


def describe_product_columns(conn):
    """Live column names of the products table. May change between calls."""
    return {row[1] for row in conn.execute("PRAGMA table_info(products)").fetchall()}


def resolve_schema(conn):
    return ProductSchema.from_columns(describe_product_columns(conn))


def _column_value(row, column, present):
    if not present:
        return None
    try:
        value = row[column]
    except (KeyError, IndexError):
        return None
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def retail_source(row, schema):
    """Retail amount from retail_price, else the legacy single price."""
    retail = _column_value(row, RETAIL_COLUMN, schema.has_retail)
    if retail is None:
        retail = _column_value(row, LEGACY_COLUMN, schema.has_legacy)
    return retail


def read_price(row, tier, schema=None):
    """
    Best available unit price for a tier.

    Order of preference:
      1. the requested tier's own column when it is non-null
      2. the retail source (retail_price, then price_per_unit); for the
         contractor tier this is scaled by CONTRACTOR_RATE
      3. (0.0, "retail") when no price is known at all

    Returns:
        (amount, tier_used)
    """
    if schema is None:
        schema = ProductSchema.from_columns(row.keys())
    if tier == CONTRACTOR:
        contractor = _column_value(row, CONTRACTOR_COLUMN, schema.has_contractor)
        if contractor is not None:
            return to_money(contractor), CONTRACTOR
    retail = retail_source(row, schema)
    if retail is None:
        return 0.0, RETAIL
    if tier == CONTRACTOR:
        return to_money(retail * CONTRACTOR_RATE), CONTRACTOR
    return to_money(retail), RETAIL


def logical_prices(row, schema):
    """Retail and contractor prices for display, with the same fallbacks as read_price."""
    retail = retail_source(row, schema)
    contractor = _column_value(row, CONTRACTOR_COLUMN, schema.has_contractor)
    if contractor is None and retail is not None:
        contractor = retail * CONTRACTOR_RATE
    return {
        RETAIL_COLUMN: to_money(retail),
        CONTRACTOR_COLUMN: to_money(contractor),
    }


def price_columns_for_write(schema, retail, contractor):
    """
    Physical column -> value for storing logical prices.

    On a legacy-only table the retail price lands in price_per_unit and the
    contractor price is dropped (it is derived again on read).
    """
    columns = {}
    if schema.has_retail:
        columns[RETAIL_COLUMN] = retail
    if schema.has_contractor:
        columns[CONTRACTOR_COLUMN] = contractor
    if schema.has_legacy and not schema.has_retail:
        columns[LEGACY_COLUMN] = retail
    return columns
