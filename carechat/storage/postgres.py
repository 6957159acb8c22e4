from __future__ import annotations

import time
from typing import Any, List, Optional

from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from carechat.logging import get_logger
from carechat.storage.common import OwnerClock, expiry_epoch
from carechat.storage.models import StoredMessageRecord

# Another process may have issued the same created_at for this owner.
_APPEND_ATTEMPTS = 3


class PostgresMessageStore:
    """Postgres-backed per-owner message log.

    One table keyed by ``(owner_id, created_at)``. ``created_at`` is a
    fixed-width ISO-8601 string, so text ordering is chronological.
    """

    def __init__(self, dsn: str, *, table_name: str = "chat_messages", ttl_days: int = 0) -> None:
        self.dsn = dsn
        self.table_name = table_name
        self.ttl_days = ttl_days
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )
        self._clock = OwnerClock()
        self._table = sql.Identifier(table_name)
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the message table and its conversation index if missing."""

        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {table} (
                        owner_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        conversation_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        ttl BIGINT,
                        PRIMARY KEY (owner_id, created_at)
                    )
                    """
                ).format(table=self._table)
            )
            conn.execute(
                sql.SQL(
                    "CREATE INDEX IF NOT EXISTS {index} ON {table} (owner_id, conversation_id)"
                ).format(
                    index=sql.Identifier(f"{self.table_name}_conversation_idx"),
                    table=self._table,
                )
            )
        self.logger.info("chat_table_ready", table=self.table_name)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def append_message(
        self, owner_id: str, conversation_id: str, role: str, content: str
    ) -> StoredMessageRecord:
        insert = sql.SQL(
            "INSERT INTO {table} (owner_id, created_at, conversation_id, role, content, ttl) "
            "VALUES (%s, %s, %s, %s, %s, %s)"
        ).format(table=self._table)
        attempt = 0
        while True:
            attempt += 1
            record = StoredMessageRecord(
                owner_id=owner_id,
                created_at=self._clock.next(owner_id),
                conversation_id=conversation_id,
                role=role,
                content=content,
                ttl=expiry_epoch(self.ttl_days),
            )
            try:
                with self._connect() as conn:
                    conn.execute(
                        insert,
                        (
                            record.owner_id,
                            record.created_at,
                            record.conversation_id,
                            record.role,
                            record.content,
                            record.ttl,
                        ),
                    )
            except pg_errors.UniqueViolation:
                if attempt >= _APPEND_ATTEMPTS:
                    raise
                self.logger.info("chat_message_key_collision", attempt=attempt)
                continue
            return record

    def query_messages(
        self,
        owner_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessageRecord]:
        clauses = [sql.SQL("owner_id = %s"), sql.SQL("(ttl IS NULL OR ttl > %s)")]
        params: list[Any] = [owner_id, int(time.time())]
        if conversation_id is not None:
            clauses.append(sql.SQL("conversation_id = %s"))
            params.append(conversation_id)
        query = sql.SQL("SELECT * FROM {table} WHERE {where}").format(
            table=self._table, where=sql.SQL(" AND ").join(clauses)
        )
        if limit is not None:
            # newest N, flipped back to ascending below
            query = query + sql.SQL(" ORDER BY created_at DESC LIMIT %s")
            params.append(max(limit, 0))
        else:
            query = query + sql.SQL(" ORDER BY created_at ASC")
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        if limit is not None:
            rows = list(reversed(rows))
        records: List[StoredMessageRecord] = []
        for row in rows:
            if not isinstance(row, dict):
                raise TypeError("query_messages expects mapping rows")
            records.append(
                StoredMessageRecord(
                    owner_id=str(row["owner_id"]),
                    created_at=str(row["created_at"]),
                    conversation_id=str(row["conversation_id"]),
                    role=str(row["role"]),
                    content=str(row["content"]),
                    ttl=row.get("ttl"),
                )
            )
        return records

    def delete_message(self, owner_id: str, created_at: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                sql.SQL("DELETE FROM {table} WHERE owner_id = %s AND created_at = %s").format(
                    table=self._table
                ),
                (owner_id, created_at),
            )
            return cur.rowcount > 0

    def close(self) -> None:
        self.pool.close()
