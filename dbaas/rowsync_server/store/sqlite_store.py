"""
SQLite implementation of the authoritative row store.

This module manages a single SQLite database holding:
- One table per resource (identity column + JSON payload)
- The transaction table that issues txids
- The change log (outbox) read by the change feed service

Invariants:
    - Every write runs inside BEGIN IMMEDIATE ... COMMIT
    - The txid row, the row change and its change record commit together
    - AUTOINCREMENT identities and txids are never reused
    - The generation id is created once per database file

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations
    - Keep payload_json a JSON object; predicates use json_extract()

Table schema:
    _meta:
        - key TEXT PRIMARY KEY
        - value TEXT

    _transactions:
        - txid INTEGER PRIMARY KEY AUTOINCREMENT
        - started_at INTEGER (Unix ms)

    _changes:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - table_name TEXT
        - row_key TEXT
        - operation TEXT (insert|update|delete)
        - row_json TEXT
        - old_json TEXT (NULL for inserts)
        - txid INTEGER
        - committed_at INTEGER (Unix ms)
        - INDEX on (table_name, seq)

    <resource table>:
        - <identity> INTEGER PRIMARY KEY AUTOINCREMENT | TEXT PRIMARY KEY
        - payload_json TEXT
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

from ..errors import StoreError
from ..predicate import Predicate
from .base import ChangeOperation, ChangeRecord, IdentityStrategy, TableSpec

logger = logging.getLogger(__name__)


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


def _column_sql(spec: TableSpec) -> Any:
    """Build the column-name -> SQL expression mapper for predicates."""

    def column_sql(column: str) -> str:
        if column == spec.identity:
            return _quote(spec.identity)
        return f"json_extract(payload_json, '$.{column}')"

    return column_sql


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteTransaction:
    """A write transaction on a SqliteStore connection.

    Created by SqliteStore.transaction(); not meant to be built directly.
    """

    def __init__(self, conn: sqlite3.Connection, txid: int) -> None:
        self._conn = conn
        self._txid = txid
        self.change_count = 0

    @property
    def txid(self) -> str:
        return str(self._txid)

    def _row_from_db(self, spec: TableSpec, db_row: sqlite3.Row) -> dict[str, Any]:
        row = json.loads(db_row["payload_json"])
        row[spec.identity] = db_row[spec.identity]
        return row

    def _select(
        self,
        spec: TableSpec,
        row_id: Any,
        where: Predicate | None,
    ) -> dict[str, Any] | None:
        sql = (
            f"SELECT {_quote(spec.identity)}, payload_json FROM {_quote(spec.table)} "
            f"WHERE {_quote(spec.identity)} = ?"
        )
        params: list[Any] = [row_id]
        if where is not None:
            where_sql, where_params = where.to_sql(_column_sql(spec))
            sql += f" AND ({where_sql})"
            params.extend(where_params)

        db_row = self._conn.execute(sql, params).fetchone()
        return self._row_from_db(spec, db_row) if db_row else None

    def _record_change(
        self,
        spec: TableSpec,
        row_id: Any,
        operation: ChangeOperation,
        row: dict[str, Any],
        old_row: dict[str, Any] | None,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO _changes (table_name, row_key, operation, row_json, old_json,
                                  txid, committed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                spec.table,
                spec.row_key(row_id),
                operation.value,
                json.dumps(row),
                json.dumps(old_row) if old_row is not None else None,
                self._txid,
                _now_ms(),
            ),
        )
        self.change_count += 1

    async def insert(self, spec: TableSpec, values: dict[str, Any]) -> dict[str, Any]:
        payload = {k: v for k, v in values.items() if k != spec.identity}
        payload_json = json.dumps(payload)

        if spec.strategy is IdentityStrategy.UUID:
            row_id: Any = str(uuid.uuid4())
            self._conn.execute(
                f"INSERT INTO {_quote(spec.table)} ({_quote(spec.identity)}, payload_json) "
                "VALUES (?, ?)",
                (row_id, payload_json),
            )
        else:
            cursor = self._conn.execute(
                f"INSERT INTO {_quote(spec.table)} (payload_json) VALUES (?)",
                (payload_json,),
            )
            row_id = cursor.lastrowid

        row = {spec.identity: row_id, **payload}
        self._record_change(spec, row_id, ChangeOperation.INSERT, row, None)
        return row

    async def update(
        self,
        spec: TableSpec,
        row_id: Any,
        patch: dict[str, Any],
        where: Predicate | None = None,
    ) -> dict[str, Any] | None:
        old_row = self._select(spec, row_id, where)
        if old_row is None:
            return None

        new_row = {**old_row, **{k: v for k, v in patch.items() if k != spec.identity}}
        payload = {k: v for k, v in new_row.items() if k != spec.identity}
        self._conn.execute(
            f"UPDATE {_quote(spec.table)} SET payload_json = ? WHERE {_quote(spec.identity)} = ?",
            (json.dumps(payload), row_id),
        )
        self._record_change(spec, row_id, ChangeOperation.UPDATE, new_row, old_row)
        return new_row

    async def delete(
        self,
        spec: TableSpec,
        row_id: Any,
        where: Predicate | None = None,
    ) -> dict[str, Any] | None:
        old_row = self._select(spec, row_id, where)
        if old_row is None:
            return None

        self._conn.execute(
            f"DELETE FROM {_quote(spec.table)} WHERE {_quote(spec.identity)} = ?",
            (row_id,),
        )
        self._record_change(spec, row_id, ChangeOperation.DELETE, old_row, old_row)
        return old_row

    async def get(self, spec: TableSpec, row_id: Any) -> dict[str, Any] | None:
        return self._select(spec, row_id, None)

    async def exists(self, spec: TableSpec, where: Predicate) -> bool:
        where_sql, params = where.to_sql(_column_sql(spec))
        cursor = self._conn.execute(
            f"SELECT 1 FROM {_quote(spec.table)} WHERE {where_sql} LIMIT 1",
            params,
        )
        return cursor.fetchone() is not None


class SqliteStore:
    """SQLite-backed authoritative store.

    Thread safety:
        Each operation opens its own connection. Writes are serialized
        by an asyncio lock and SQLite's write lock (BEGIN IMMEDIATE).

    Example:
        >>> store = SqliteStore("/var/lib/rowsync/rows.db")
        >>> store.register_table(TableSpec("todos"))
        >>> await store.initialize()
        >>> async with store.transaction() as tx:
        ...     row = await tx.insert(TableSpec("todos"), {"text": "buy milk"})
        ...     txid = tx.txid
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            path: SQLite database file
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._tables: dict[str, TableSpec] = {}
        self._lock = asyncio.Lock()
        self._commit_condition = asyncio.Condition()
        self._commit_token = 0
        self._generation: str | None = None

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS _meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS _transactions (
                txid INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS _changes (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                table_name TEXT NOT NULL,
                row_key TEXT NOT NULL,
                operation TEXT NOT NULL,
                row_json TEXT NOT NULL,
                old_json TEXT,
                txid INTEGER NOT NULL,
                committed_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_changes_table_seq ON _changes(table_name, seq);
            CREATE INDEX IF NOT EXISTS idx_changes_txid ON _changes(txid);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO _meta (key, value) VALUES ('schema_version', ?)",
            (str(self.SCHEMA_VERSION),),
        )
        conn.execute(
            "INSERT OR IGNORE INTO _meta (key, value) VALUES ('generation', ?)",
            (uuid.uuid4().hex[:16],),
        )

    def _create_table(self, conn: sqlite3.Connection, spec: TableSpec) -> None:
        if spec.strategy is IdentityStrategy.UUID:
            identity_sql = f"{_quote(spec.identity)} TEXT PRIMARY KEY"
        else:
            identity_sql = f"{_quote(spec.identity)} INTEGER PRIMARY KEY AUTOINCREMENT"

        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {_quote(spec.table)} ("
            f"{identity_sql}, payload_json TEXT NOT NULL DEFAULT '{{}}')"
        )

    def register_table(self, spec: TableSpec) -> None:
        existing = self._tables.get(spec.table)
        if existing is not None and existing != spec:
            raise StoreError(f"Table {spec.table} already registered with a different layout")
        self._tables[spec.table] = spec

    async def initialize(self) -> None:
        """Create internal tables and all registered resource tables."""
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
                for spec in self._tables.values():
                    self._create_table(conn, spec)
                row = conn.execute("SELECT value FROM _meta WHERE key = 'generation'").fetchone()
                self._generation = row["value"]

        logger.info(
            f"Initialized store at {self.path} with {len(self._tables)} tables "
            f"(generation={self._generation})"
        )

    @property
    def generation(self) -> str:
        if self._generation is None:
            raise StoreError("Store is not initialized")
        return self._generation

    @property
    def commit_token(self) -> int:
        return self._commit_token

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteTransaction]:
        """Open a write transaction that allocates a txid.

        The txid row is inserted first; if the block raises, the rollback
        discards it together with every row change.
        """
        committed = False
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = conn.execute(
                        "INSERT INTO _transactions (started_at) VALUES (?)",
                        (_now_ms(),),
                    )
                    tx = SqliteTransaction(conn, cursor.lastrowid)
                    yield tx
                    conn.execute("COMMIT")
                    committed = tx.change_count > 0
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise

        if committed:
            async with self._commit_condition:
                self._commit_token += 1
                self._commit_condition.notify_all()

    async def snapshot(
        self,
        spec: TableSpec,
        where: Predicate | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Read matching rows and the change-log position they reflect.

        Both reads run in one read transaction so the rows are exactly the
        state after change ``seq``.
        """
        sql = f"SELECT {_quote(spec.identity)}, payload_json FROM {_quote(spec.table)}"
        params: list[Any] = []
        if where is not None:
            where_sql, params = where.to_sql(_column_sql(spec))
            sql += f" WHERE {where_sql}"
        sql += f" ORDER BY {_quote(spec.identity)}"

        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                seq_row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM _changes").fetchone()
                rows = []
                for db_row in conn.execute(sql, params):
                    row = json.loads(db_row["payload_json"])
                    row[spec.identity] = db_row[spec.identity]
                    rows.append(row)
            finally:
                conn.execute("COMMIT")

        return rows, seq_row["seq"]

    async def changes_since(
        self,
        table: str,
        after_seq: int,
        limit: int = 1000,
    ) -> list[ChangeRecord]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT seq, table_name, row_key, operation, row_json, old_json, txid, committed_at
                FROM _changes
                WHERE table_name = ? AND seq > ?
                ORDER BY seq
                LIMIT ?
                """,
                (table, after_seq, limit),
            )
            return [
                ChangeRecord(
                    seq=r["seq"],
                    table=r["table_name"],
                    row_key=r["row_key"],
                    operation=ChangeOperation(r["operation"]),
                    row=json.loads(r["row_json"]),
                    old_row=json.loads(r["old_json"]) if r["old_json"] else None,
                    txid=str(r["txid"]),
                    committed_at=r["committed_at"],
                )
                for r in cursor.fetchall()
            ]

    async def wait_for_commit(self, token: int, timeout: float) -> bool:
        async with self._commit_condition:
            try:
                await asyncio.wait_for(
                    self._commit_condition.wait_for(lambda: self._commit_token != token),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return False
        return True

    async def close(self) -> None:
        async with self._commit_condition:
            self._commit_condition.notify_all()
        logger.debug(f"Closed store at {self.path}")
