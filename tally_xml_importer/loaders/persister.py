"""
Batch persister for extracted vouchers and masters.

Writes a batch of StructuredRecords inside one transaction:
- Voucher header, inserted once per GUID
- Child rows for every repeating group, keyed by (voucher_id, position)
- Group and ledger masters, one ``tally_hierarchy`` row per GUID

Each header and child row runs in its own savepoint, so a single bad row is
rolled back on its own and the rest of the batch still commits.
"""
from __future__ import annotations
import psycopg
from typing import Any, Optional
from loguru import logger

from .base import DatabaseLoader
from .hierarchy import HIERARCHY_TABLE, resolve_paths
from ..config import ImporterConfig
from ..errors import PersistenceError, PersistenceErrorKind
from ..models import BatchResult, StructuredRecord

HEADER_TABLE = "vouchers"

# Payload tag -> header table for records that are not vouchers
MASTER_TABLES = {
    "GROUP": HIERARCHY_TABLE,
    "LEDGER": HIERARCHY_TABLE,
}

# Repeating group -> child table
DEFAULT_TABLES = {
    "ledger_entries": "voucher_ledger_entries",
    "bank_allocations": "voucher_bank_allocations",
    "inventory_entries": "voucher_inventory_entries",
    "inventory_allocations": "voucher_inventory_allocations",
    "gst_details": "voucher_gst_details",
    "tds_entries": "voucher_tds_entries",
}

# Failures confined to one row
ROW_ERRORS = (psycopg.IntegrityError, psycopg.DataError)


def _batch_error(e: psycopg.Error, committing: bool, what: str) -> PersistenceError:
    """Classify a psycopg error that ended a whole transaction."""
    if isinstance(e, psycopg.ProgrammingError):
        return PersistenceError(
            PersistenceErrorKind.SCHEMA_ERROR,
            f"Schema mismatch, {what} rolled back: {e} (run with --init-db to create the tables)",
        )
    if committing:
        return PersistenceError(PersistenceErrorKind.COMMIT_FAILED, f"Commit of {what} failed: {e}")
    return PersistenceError(PersistenceErrorKind.CONNECTION_LOST, f"Connection lost, {what} rolled back: {e}")


class BatchPersister(DatabaseLoader):
    """
    Loader for extracted record batches.

    Usage:
        with BatchPersister(config) as persister:
            result = persister.flush(records)

    ``flush`` is idempotent per record: a GUID that is already stored is
    reported as a duplicate and its child rows are left untouched.
    """

    def __init__(
        self,
        config: Optional[ImporterConfig] = None,
        conn=None,
        tables: Optional[dict[str, str]] = None,
        company_id: Optional[int] = None,
        identifier_column: str = "guid",
    ):
        super().__init__(config, conn)
        self.tables = dict(DEFAULT_TABLES if tables is None else tables)
        self.company_id = company_id if company_id is not None else self.config.company_id
        self.identifier_column = identifier_column
        self._unmapped: set[str] = set()

    def flush(self, batch: list[StructuredRecord]) -> BatchResult:
        """
        Persist one batch in a single transaction.

        Returns:
            BatchResult with committed count, duplicate identifiers and
            per-record failures

        Raises:
            PersistenceError: CONNECTION_LOST if the connection fails mid-batch,
                COMMIT_FAILED if the final commit fails, SCHEMA_ERROR if a
                table or column is missing; nothing from the batch is
                committed in any of these cases
        """
        result = BatchResult()
        if not batch:
            return result

        committing = False
        try:
            with self.conn.transaction():
                for record in batch:
                    self._persist_record(record, result)
                committing = True
        except psycopg.Error as e:
            raise _batch_error(e, committing, f"batch of {len(batch)} records") from e

        logger.debug(
            f"Committed batch: {result.committed} new, {len(result.duplicates)} duplicates, "
            f"{len(result.failed)} failed, {result.child_rows} child rows"
        )
        return result

    def _persist_record(self, record: StructuredRecord, result: BatchResult) -> None:
        child_rows = 0
        child_failures = 0
        try:
            with self.conn.transaction():
                voucher_id = self._insert_header(record)
                if voucher_id is None:
                    result.duplicates.append(record.identifier)
                    return

                for group, rows in record.groups.items():
                    table = self._table_for(group)
                    if table is None:
                        continue
                    for position, row in enumerate(rows):
                        if self._insert_child(table, voucher_id, position, row, record.identifier):
                            child_rows += 1
                        else:
                            child_failures += 1
        except ROW_ERRORS as e:
            logger.debug(f"Record {record.identifier} rejected: {e}")
            result.failed.append((record, f"{type(e).__name__}: {e}"))
            return

        result.committed += 1
        result.child_rows += child_rows
        result.child_failures += child_failures

    def _insert_header(self, record: StructuredRecord) -> Optional[int]:
        """Insert the record's header row; returns its id, or None if the GUID already exists."""
        row = dict(record.header)
        row[self.identifier_column] = record.identifier
        if self.company_id is not None:
            row["tally_company_id"] = self.company_id

        table = MASTER_TABLES.get(record.kind, HEADER_TABLE)
        sql = self._insert_sql(table, row, conflict=f"({self.identifier_column})", returning="id")
        with self.conn.cursor() as cur:
            cur.execute(sql, row)
            inserted = cur.fetchone()
        return inserted["id"] if inserted else None

    def _insert_child(
        self,
        table: str,
        voucher_id: int,
        position: int,
        row: dict[str, Any],
        identifier: str,
    ) -> bool:
        params = {"voucher_id": voucher_id, "position": position, **row}
        if self.company_id is not None:
            params["tally_company_id"] = self.company_id

        sql = self._insert_sql(table, params, conflict="(voucher_id, position)")
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.execute(sql, params)
        except ROW_ERRORS as e:
            logger.warning(f"Skipping {table} row {position} of {identifier}: {e}")
            return False
        return True

    def _insert_sql(
        self,
        table: str,
        row: dict[str, Any],
        conflict: str,
        returning: Optional[str] = None,
    ) -> str:
        columns = list(row.keys())
        columns_str = ", ".join(columns)
        placeholders = ", ".join(f"%({c})s" for c in columns)
        sql = (
            f"INSERT INTO {self.schema}.{table} ({columns_str}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT {conflict} DO NOTHING"
        )
        if returning:
            sql += f" RETURNING {returning}"
        return sql

    def _table_for(self, group: str) -> Optional[str]:
        table = self.tables.get(group)
        if table is None and group not in self._unmapped:
            self._unmapped.add(group)
            logger.warning(f"No table configured for group {group}; its rows are not stored")
        return table

    def resolve_hierarchy(self) -> int:
        """
        Fill ``top_parent`` and ``full_path`` for every stored group and ledger.

        Runs in one transaction over the whole hierarchy of the configured
        company; rows whose path is already current are left alone.

        Returns:
            Number of rows updated

        Raises:
            PersistenceError: As for ``flush``
        """
        where, params = "", {}
        if self.company_id is not None:
            where, params = " WHERE tally_company_id = %(company_id)s", {"company_id": self.company_id}

        updated = 0
        committing = False
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.execute(
                        f"SELECT id, name, type, parent_name, top_parent, full_path "
                        f"FROM {self.schema}.{HIERARCHY_TABLE}{where}",
                        params,
                    )
                    rows = cur.fetchall()

                current = {r["id"]: (r["top_parent"], r["full_path"]) for r in rows}
                with self.conn.cursor() as cur:
                    for row_id, path in resolve_paths(rows).items():
                        if current[row_id] == (path[0], path):
                            continue
                        cur.execute(
                            f"UPDATE {self.schema}.{HIERARCHY_TABLE} "
                            f"SET top_parent = %(top_parent)s, full_path = %(full_path)s WHERE id = %(id)s",
                            {"top_parent": path[0], "full_path": path, "id": row_id},
                        )
                        updated += 1
                committing = True
        except psycopg.Error as e:
            raise _batch_error(e, committing, "hierarchy update") from e

        logger.info(f"Resolved hierarchy paths: {updated} of {len(rows)} groups and ledgers updated")
        return updated
