"""
Storage module for GridSync - the single SQLite database and its helpers.

This module handles:
- Connection management and write transactions (BEGIN IMMEDIATE)
- Internal bookkeeping tables (_meta, _audit_log, _presence, _locks, catalog)
- The global row version counter
- Tagged value codec for dynamic cells
- Identifier guards and the snapshot query builder

Invariants:
    - One SQLite file holds all tables
    - Versions are issued inside the transaction that writes the row
    - Client-supplied identifiers are validated before reaching SQL text

How to change safely:
    - Keep internal tables prefixed with '_'
    - Never interpolate values into SQL; bind them
"""

from .database import Database
from .sql import quote_ident, validate_identifier, validate_table_name
from .version_counter import VersionCounter
from .codec import decode, encode, encode_key
from .query import Filter, OrderTerm, RowQuery, parse_order_by

__all__ = [
    "Database",
    "VersionCounter",
    "quote_ident",
    "validate_identifier",
    "validate_table_name",
    "encode",
    "decode",
    "encode_key",
    "Filter",
    "OrderTerm",
    "RowQuery",
    "parse_order_by",
]
