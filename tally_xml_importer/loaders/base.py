"""
Base database loader utilities.

Provides connection management and schema setup.
"""
from __future__ import annotations
import psycopg
from psycopg.rows import dict_row
from typing import Optional
from loguru import logger
from tenacity import Retrying, wait_exponential, stop_after_attempt, retry_if_exception_type

from ..config import ImporterConfig
from ..models import get_schema_sql


def get_connection(config: Optional[ImporterConfig] = None):
    """
    Create a database connection.

    Returns an autocommit psycopg connection with dict rows; batches open
    their own transactions. Connecting is retried with exponential backoff
    on OperationalError.
    """
    config = config or ImporterConfig.from_env()

    for attempt in Retrying(
        wait=wait_exponential(multiplier=1, min=1, max=30),
        stop=stop_after_attempt(max(config.connect_attempts, 1)),
        retry=retry_if_exception_type(psycopg.OperationalError),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying database connection (attempt {retry_state.attempt_number})..."
        ),
    ):
        with attempt:
            conn = psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)
    return conn


class DatabaseLoader:
    """
    Base class for database operations.

    Provides common functionality:
    - Connection management
    - Schema creation from the bundled template
    - Row counts
    """

    def __init__(self, config: Optional[ImporterConfig] = None, conn=None):
        self.config = config or ImporterConfig.from_env()
        self.schema = self.config.db_schema
        self._conn = conn

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = get_connection(self.config)
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def initialize_schema(self):
        """Create the import schema and tables if they don't exist."""
        with self.conn.cursor() as cur:
            cur.execute(get_schema_sql(self.schema))
        logger.info(f"Initialized schema {self.schema}")

    def get_row_count(self, table_name: str) -> int:
        """Get row count for a table."""
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) as cnt FROM {self.schema}.{table_name}")
            result = cur.fetchone()
            return result["cnt"] if result else 0
