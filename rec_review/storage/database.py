"""
Database connection and schema management for the review engine.

This module provides:
- DuckDB connection lifecycle management
- A single document table addressed by (collection, doc_id)
- A process-wide handle with init-once/get-or-create semantics

Design decisions:
- Entities are stored as JSON documents, mirroring a document-oriented
  store; canonicalization happens in the mappers, not here
- ``version`` increments on every write to a document and is the
  confirmed state version delivered to subscribers
- ``created_seq`` preserves creation order for default query ordering
"""
import duckdb
import logging
from typing import Optional


logger = logging.getLogger(__name__)


class Database:
    """
    Manages DuckDB connection and schema initialization.

    This class is responsible for:
    - Creating and maintaining a single database connection
    - Initializing the documents table and its indexes
    """

    def __init__(self, db_path: str = "rec_review.duckdb"):
        """
        Initialize database manager.

        Args:
            db_path: Path to DuckDB database file (created if doesn't exist),
                or ":memory:" for an in-process database
        """
        self.db_path = db_path
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def connect(self) -> duckdb.DuckDBPyConnection:
        """
        Get or create database connection.

        Returns:
            Active DuckDB connection
        """
        if self.conn is None:
            self.conn = duckdb.connect(self.db_path)
        return self.conn

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def initialize_schema(self):
        """
        Create all required objects if they don't exist.

        Objects created:
        - documents_seq: creation-order sequence
        - documents: every entity kind, keyed by (collection, doc_id)
        """
        conn = self.connect()

        conn.execute("CREATE SEQUENCE IF NOT EXISTS documents_seq START 1")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection VARCHAR NOT NULL,
                doc_id VARCHAR NOT NULL,
                data JSON NOT NULL,
                version BIGINT NOT NULL,
                created_seq BIGINT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                PRIMARY KEY (collection, doc_id)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_collection
            ON documents(collection)
        """)

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


_database: Optional[Database] = None


def get_database(db_path: str = "rec_review.duckdb") -> Database:
    """
    Return the process-wide database, creating and initializing it once.

    Later calls return the same handle; a different ``db_path`` after
    initialization is ignored with a warning.
    """
    global _database
    if _database is None:
        _database = Database(db_path)
        _database.initialize_schema()
        logger.info(f"Initialized database at {db_path}")
    elif _database.db_path != db_path:
        logger.warning(
            f"Database already initialized at {_database.db_path}; ignoring {db_path}"
        )
    return _database


def reset_database():
    """Close and forget the process-wide database."""
    global _database
    if _database is not None:
        _database.close()
        _database = None
