from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from ..errors import PermanentRemoteError, TransientRemoteError
from ..session import DbSession
from ..sql import validate_identifier, where_clause
from .base import RemoteClient, Rows, as_rows

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


def classify_sql_error(exc: SQLAlchemyError, action: str) -> Exception:
    """
    Map a SQLAlchemy failure onto the retry taxonomy.

    Lost connections, pool exhaustion and operational errors (statement and
    lock wait timeouts, busy databases, server gone away) are transient.
    Constraint violations and every other statement error are permanent.
    """
    message = f"{action} failed: {exc}"
    if isinstance(exc, IntegrityError):
        return PermanentRemoteError(message)
    if isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return TransientRemoteError(message)
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientRemoteError(message)
    return PermanentRemoteError(message)


def timeout_statements(dialect: str, timeout_s: float) -> list[str]:
    """
    Statements that bound how long one write may run or wait for locks,
    issued at the start of its transaction.

    PostgreSQL scopes them to the transaction (``SET LOCAL``). MySQL and
    SQLite set them on the connection, which is why they are issued again
    on every checkout.
    """
    ms = max(int(timeout_s * 1000), 1)
    if dialect == "postgresql":
        return [f"SET LOCAL statement_timeout = {ms}", f"SET LOCAL lock_timeout = {ms}"]
    if dialect == "mysql":
        return [
            f"SET SESSION max_execution_time = {ms}",
            f"SET SESSION innodb_lock_wait_timeout = {max(math.ceil(timeout_s), 1)}",
        ]
    if dialect == "sqlite":
        return [f"PRAGMA busy_timeout = {ms}"]
    return []


def column_runs(rows: Rows) -> list[tuple[list[str], Rows]]:
    """
    Split a bulk write into consecutive runs of rows naming the same columns.

    Each run becomes one statement, so a column a row leaves out gets the
    table default instead of NULL. Row order is kept.
    """
    runs: list[tuple[list[str], Rows]] = []
    for row in rows:
        cols = [validate_identifier(c, "column") for c in row]
        if runs and set(runs[-1][0]) == set(cols):
            runs[-1][1].append(row)
        else:
            runs.append((cols, [row]))
    return runs


def project(rows: Rows, select: Optional[Sequence[str]]) -> Rows:
    if not select:
        return rows
    return [{c: row[c] for c in select if c in row} for row in rows]


class SqlRemoteClient(RemoteClient):
    """
    Remote client that writes straight into a SQL database with parametrized
    text SQL.

    Each call runs in its own DbSession (one transaction) bounded by
    ``timeout_s``; a write that runs out of time raises
    TransientRemoteError. Column and table names are validated identifiers;
    values are always bound parameters.

    Bulk inserts and upserts accept rows with different columns. Upsert uses
    ``ON CONFLICT ... DO UPDATE`` on SQLite/PostgreSQL and
    ``ON DUPLICATE KEY UPDATE`` on MySQL, where the conflict key is implied
    by the table's unique indexes. Rows naming only conflict columns leave
    existing rows as they are; where the row is new it is inserted, so the
    table's other columns need defaults.
    """

    def __init__(self, engine: Engine, timeout_s: Optional[float] = DEFAULT_TIMEOUT_S) -> None:
        if timeout_s is not None and timeout_s <= 0:
            raise ValueError("timeout_s must be > 0; remote calls must be bounded")
        self.engine = engine
        self.timeout_s = timeout_s

    @classmethod
    def from_url(
        cls,
        url: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        **engine_kwargs: Any,
    ) -> "SqlRemoteClient":
        """Build the engine too, so that waiting for a pooled connection is bounded as well."""
        if make_url(url).get_backend_name() != "sqlite":
            engine_kwargs.setdefault("pool_timeout", timeout_s)
        return cls(create_engine(url, **engine_kwargs), timeout_s=timeout_s)

    def _run(self, action: str, fn) -> Rows:
        try:
            with DbSession(self.engine) as session:
                if self.timeout_s is not None:
                    for statement in timeout_statements(session.dialect, self.timeout_s):
                        session.execute(statement)
                return fn(session)
        except SQLAlchemyError as exc:
            raise classify_sql_error(exc, action) from exc

    @staticmethod
    def _select_list(select: Optional[Sequence[str]]) -> str:
        if not select:
            return "*"
        return ", ".join(validate_identifier(c, "select column") for c in select)

    def insert(
        self,
        table: str,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        table = validate_identifier(table, "table")
        rows = as_rows(rows)
        runs = column_runs(rows)

        def run(session: DbSession) -> Rows:
            for cols, batch in runs:
                if cols:
                    placeholders = ", ".join(f":{c}" for c in cols)
                    sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})"
                elif session.dialect == "mysql":
                    sql = f"INSERT INTO {table} () VALUES ()"
                else:
                    sql = f"INSERT INTO {table} DEFAULT VALUES"
                session.execute(sql, batch if len(batch) > 1 else batch[0])
            return project(rows, select)

        return self._run(f"INSERT INTO {table}", run)

    def update(
        self,
        table: str,
        payload: Mapping[str, Any],
        filters: Mapping[str, Any],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        table = validate_identifier(table, "table")
        cols = [validate_identifier(c, "column") for c in payload.keys()]
        if not cols:
            return []
        columns = self._select_list(select)
        where_sql, params = where_clause(filters)
        set_clause = ", ".join(f"{c} = :set_{c}" for c in cols)
        params.update({f"set_{c}": payload[c] for c in cols})

        def run(session: DbSession) -> Rows:
            session.execute(f"UPDATE {table} SET {set_clause} WHERE {where_sql}", params)
            # Rows are re-read through the new values so an update that moves a
            # filtered column still reports the written rows.
            after = {**filters, **{c: payload[c] for c in cols if c in filters}}
            read_sql, read_params = where_clause(after)
            return session.fetch_all(f"SELECT {columns} FROM {table} WHERE {read_sql}", read_params)

        return self._run(f"UPDATE {table}", run)

    def delete(
        self,
        table: str,
        filters: Mapping[str, Any],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        table = validate_identifier(table, "table")
        columns = self._select_list(select)
        where_sql, params = where_clause(filters)

        def run(session: DbSession) -> Rows:
            doomed = session.fetch_all(f"SELECT {columns} FROM {table} WHERE {where_sql}", params)
            session.execute(f"DELETE FROM {table} WHERE {where_sql}", params)
            return doomed

        return self._run(f"DELETE FROM {table}", run)

    def upsert(
        self,
        table: str,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        table = validate_identifier(table, "table")
        rows = as_rows(rows)
        runs = column_runs(rows)
        keys = [validate_identifier(c, "conflict column") for c in on_conflict]
        if any(not cols for cols, _ in runs):
            raise PermanentRemoteError(f"Upsert rows on {table} must name their columns")

        def statement(dialect: str, cols: list[str]) -> str:
            placeholders = ", ".join(f":{c}" for c in cols)
            insert_sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})"
            updates = [c for c in cols if c not in keys]
            if dialect == "mysql":
                # A self-assignment keeps the existing row when only key columns are given.
                assignments = ", ".join(f"{c} = VALUES({c})" for c in updates or keys)
                return f"{insert_sql} ON DUPLICATE KEY UPDATE {assignments}"
            if updates:
                assignments = ", ".join(f"{c} = excluded.{c}" for c in updates)
                return f"{insert_sql} ON CONFLICT ({', '.join(keys)}) DO UPDATE SET {assignments}"
            return f"{insert_sql} ON CONFLICT ({', '.join(keys)}) DO NOTHING"

        def run(session: DbSession) -> Rows:
            for cols, batch in runs:
                sql = statement(session.dialect, cols)
                session.execute(sql, batch if len(batch) > 1 else batch[0])
            return project(rows, select)

        return self._run(f"UPSERT INTO {table}", run)

    def close(self) -> None:
        self.engine.dispose()
