"""
Storage layer for the protocol review engine.

This module provides document persistence using DuckDB behind a single
validated data access layer.

Components:
- Database: Connection management and schema initialization
- DocumentStore: Async get/set/query/watch/commit primitives
- DataAccessLayer: Validated, mapped reads and writes per entity kind
- EntityKind: The collections entities live in

Usage:
    from rec_review.storage import get_database, DocumentStore, DataAccessLayer, EntityKind

    db = get_database("rec_review.duckdb")
    dal = DataAccessLayer(DocumentStore(db))

    protocol = await dal.read(EntityKind.PROTOCOL, "P1")
"""

from .database import Database, get_database, reset_database
from .document_store import (
    ChangeEvent,
    DocumentStore,
    DocumentWatch,
    StoredDocument,
    WriteOp,
    get_store,
    reset_store,
)
from .data_access import DataAccessLayer, EntityKind, WriteBatch, decision_kind

__all__ = [
    "Database",
    "get_database",
    "reset_database",
    "ChangeEvent",
    "DocumentStore",
    "DocumentWatch",
    "StoredDocument",
    "WriteOp",
    "get_store",
    "reset_store",
    "DataAccessLayer",
    "EntityKind",
    "WriteBatch",
    "decision_kind",
]
