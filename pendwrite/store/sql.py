from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..config import StoreConfig
from ..errors import StoreError
from ..models import MutationStatus, QueuedMutation, QueueStats, RetentionPolicy
from ..session import DbSession
from ..sql import validate_identifier
from .base import QueueStore

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "type",
    "table_name",
    "payload",
    "filters",
    "on_conflict",
    "select_columns",
    "status",
    "attempts",
    "max_retries",
    "created_at",
    "created_ns",
    "updated_at",
    "next_attempt_at",
    "error",
    "claim_token",
    "lease_expires_at",
    "invalidate_queries",
    "query_key",
)


def mutations_table(name: str, metadata: MetaData) -> Table:
    return Table(
        name,
        metadata,
        Column("id", String(64), primary_key=True),
        Column("type", String(16), nullable=False),
        Column("table_name", String(64), nullable=False),
        Column("payload", Text, nullable=False),
        Column("filters", Text, nullable=False),
        Column("on_conflict", String(255), nullable=True),
        Column("select_columns", String(1024), nullable=True),
        Column("status", String(16), nullable=False),
        Column("attempts", Integer, nullable=False, default=0),
        Column("max_retries", Integer, nullable=False),
        Column("created_at", Float(precision=53), nullable=False),
        Column("created_ns", BigInteger, nullable=False),
        Column("updated_at", Float(precision=53), nullable=False),
        Column("next_attempt_at", Float(precision=53), nullable=False, default=0.0),
        Column("error", Text, nullable=True),
        Column("claim_token", String(64), nullable=True),
        Column("lease_expires_at", Float(precision=53), nullable=True),
        Column("invalidate_queries", Text, nullable=False),
        Column("query_key", Text, nullable=True),
        Index(f"ix_{name}_status_table", "status", "table_name", "created_ns"),
    )


class SqlQueueStore(QueueStore):
    """
    Queue store backed by a SQL database through SQLAlchemy.

    SQLite gives a single-device, restart-surviving queue; PostgreSQL or MySQL
    let several processes share one queue. Status transitions are single
    conditional UPDATE statements (``WHERE status = 'processing' AND
    claim_token = :token``), so concurrent processors cannot double-claim.

    Usage:
        store = SqlQueueStore(create_engine("sqlite:///mutations.db"))
        store.create_schema()
        mutation_id = store.enqueue(QueuedMutation(type="insert", table="programs", payload={...}))
    """

    def __init__(
        self,
        engine: Engine,
        config: Optional[StoreConfig] = None,
        default_max_retries: int = 3,
        lease_ms: int = 30_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(default_max_retries=default_max_retries, lease_ms=lease_ms, clock=clock)
        self.engine = engine
        self.config = config or StoreConfig()
        self.table = validate_identifier(self.config.table_name, "queue table")
        self._metadata = MetaData()
        self._schema = mutations_table(self.table, self._metadata)

    @contextmanager
    def _session(self) -> Iterator[DbSession]:
        try:
            with DbSession(self.engine) as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(f"Mutation queue storage failed: {exc}") from exc

    def create_schema(self) -> None:
        try:
            self._metadata.create_all(self.engine, checkfirst=True)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not create queue table {self.table}: {exc}") from exc

    def close(self) -> None:
        self.engine.dispose()

    def enqueue(self, mutation: QueuedMutation) -> str:
        mutation = self._prepare(mutation)
        record = mutation.to_record()
        cols = ", ".join(_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _COLUMNS)
        with self._session() as session:
            session.execute(f"INSERT INTO {self.table} ({cols}) VALUES ({placeholders})", record)
        logger.debug("Enqueued %s %s on %s", mutation.id, mutation.type.value, mutation.table)
        return mutation.id

    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        with self._session() as session:
            row = session.fetch_one(f"SELECT * FROM {self.table} WHERE id = :id", {"id": mutation_id})
        return QueuedMutation.from_record(row) if row else None

    def next_batch(
        self, table: Optional[str] = None, limit: Optional[int] = None
    ) -> list[QueuedMutation]:
        sql = f"SELECT * FROM {self.table} WHERE status = :status"
        params: dict = {"status": MutationStatus.PENDING.value}
        if table is not None:
            sql += " AND table_name = :table_name"
            params["table_name"] = table
        sql += " ORDER BY created_at, created_ns"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)
        with self._session() as session:
            rows = session.fetch_all(sql, params)
        return [QueuedMutation.from_record(row) for row in rows]

    def pending_tables(self) -> list[str]:
        with self._session() as session:
            rows = session.fetch_all(
                f"SELECT table_name, MIN(created_ns) AS first_ns FROM {self.table} "
                "WHERE status = :status GROUP BY table_name ORDER BY first_ns",
                {"status": MutationStatus.PENDING.value},
            )
        return [row["table_name"] for row in rows]

    def mark_processing(self, mutation_id: str, lease_ms: Optional[int] = None) -> Optional[str]:
        now = self.clock()
        token = uuid.uuid4().hex
        # The derived table keeps MySQL from rejecting a subquery on the
        # table being updated.
        with self._session() as session:
            rc = session.execute(
                f"UPDATE {self.table} SET status = :processing, claim_token = :token, "
                "lease_expires_at = :expires, updated_at = :now "
                "WHERE id = :id AND (status = :pending "
                "OR (status = :processing AND lease_expires_at < :now)) "
                "AND NOT EXISTS (SELECT 1 FROM ("
                f"SELECT table_name, created_ns FROM {self.table} "
                "WHERE status IN (:pending, :processing)) AS ahead "
                f"WHERE ahead.table_name = {self.table}.table_name "
                f"AND ahead.created_ns < {self.table}.created_ns)",
                {
                    "id": mutation_id,
                    "token": token,
                    "expires": self._lease_expiry(now, lease_ms),
                    "now": now,
                    "pending": MutationStatus.PENDING.value,
                    "processing": MutationStatus.PROCESSING.value,
                },
            )
        return token if rc == 1 else None

    def _claim_guard(self, claim_token: Optional[str], params: dict) -> str:
        params["processing"] = MutationStatus.PROCESSING.value
        if claim_token is None:
            return "id = :id AND status = :processing"
        params["token"] = claim_token
        return "id = :id AND status = :processing AND claim_token = :token"

    def mark_completed(self, mutation_id: str, claim_token: Optional[str] = None) -> bool:
        params = {"id": mutation_id, "completed": MutationStatus.COMPLETED.value, "now": self.clock()}
        guard = self._claim_guard(claim_token, params)
        with self._session() as session:
            rc = session.execute(
                f"UPDATE {self.table} SET status = :completed, attempts = attempts + 1, "
                "error = NULL, claim_token = NULL, lease_expires_at = NULL, updated_at = :now "
                f"WHERE {guard}",
                params,
            )
        return rc == 1

    def mark_failed(
        self,
        mutation_id: str,
        error: str,
        permanent: bool = False,
        retry_at: Optional[float] = None,
        claim_token: Optional[str] = None,
    ) -> Optional[MutationStatus]:
        params: dict = {"id": mutation_id}
        guard = self._claim_guard(claim_token, params)
        with self._session() as session:
            row = session.fetch_one(
                f"SELECT attempts, max_retries FROM {self.table} WHERE {guard}", params
            )
            if row is None:
                return None
            attempts = int(row["attempts"]) + 1
            status = self.failure_outcome(attempts, int(row["max_retries"]), permanent)
            rc = session.execute(
                f"UPDATE {self.table} SET status = :status, attempts = :attempts, error = :error, "
                "next_attempt_at = :retry_at, claim_token = NULL, lease_expires_at = NULL, "
                f"updated_at = :now WHERE {guard}",
                {
                    **params,
                    "status": status.value,
                    "attempts": attempts,
                    "error": error,
                    "retry_at": retry_at or 0.0,
                    "now": self.clock(),
                },
            )
        return status if rc == 1 else None

    def get_stats(self) -> QueueStats:
        with self._session() as session:
            rows = session.fetch_all(
                f"SELECT status, COUNT(*) AS n FROM {self.table} GROUP BY status"
            )
        counts = {row["status"]: int(row["n"]) for row in rows}
        return QueueStats(
            pending=counts.get(MutationStatus.PENDING.value, 0),
            processing=counts.get(MutationStatus.PROCESSING.value, 0),
            completed=counts.get(MutationStatus.COMPLETED.value, 0),
            failed=counts.get(MutationStatus.FAILED.value, 0),
        )

    def retry_failed(self) -> int:
        with self._session() as session:
            return session.execute(
                f"UPDATE {self.table} SET status = :pending, attempts = 0, error = NULL, "
                "next_attempt_at = 0, updated_at = :now WHERE status = :failed",
                {
                    "pending": MutationStatus.PENDING.value,
                    "failed": MutationStatus.FAILED.value,
                    "now": self.clock(),
                },
            )

    def recover_stale(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        with self._session() as session:
            rc = session.execute(
                f"UPDATE {self.table} SET status = :pending, claim_token = NULL, "
                "lease_expires_at = NULL, updated_at = :now "
                "WHERE status = :processing AND lease_expires_at < :now",
                {
                    "pending": MutationStatus.PENDING.value,
                    "processing": MutationStatus.PROCESSING.value,
                    "now": now,
                },
            )
        if rc:
            logger.warning("Recovered %d mutation(s) with expired processing leases", rc)
        return rc

    def prune(self, policy: RetentionPolicy) -> int:
        statuses = [MutationStatus.COMPLETED.value]
        if policy.include_failed:
            statuses.append(MutationStatus.FAILED.value)

        removed = 0
        with self._session() as session:
            for status in statuses:
                if policy.max_age_ms is not None:
                    cutoff = self.clock() - policy.max_age_ms / 1000.0
                    removed += session.execute(
                        f"DELETE FROM {self.table} WHERE status = :status AND updated_at < :cutoff",
                        {"status": status, "cutoff": cutoff},
                    )
                if policy.keep_last is not None:
                    rows = session.fetch_all(
                        f"SELECT id FROM {self.table} WHERE status = :status "
                        "ORDER BY updated_at DESC, created_ns DESC",
                        {"status": status},
                    )
                    excess = [{"id": row["id"]} for row in rows[policy.keep_last:]]
                    if excess:
                        session.execute(f"DELETE FROM {self.table} WHERE id = :id", excess)
                        removed += len(excess)
        return removed

    def delete(self, mutation_id: str) -> bool:
        with self._session() as session:
            return session.execute(
                f"DELETE FROM {self.table} WHERE id = :id", {"id": mutation_id}
            ) == 1

    def clear(self) -> int:
        with self._session() as session:
            return session.execute(f"DELETE FROM {self.table}")
