from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import TextClause

Params = Mapping[str, Any] | Sequence[Mapping[str, Any]]


class DbSession:
    """
    One connection, one transaction. Commits on clean exit, rolls back when
    the block raises.

    Use as:
        with DbSession(engine) as session:
            session.execute("UPDATE ...", {...})
            row = session.fetch_one("SELECT ...", {...})

    Shared by the SQL queue store and the SQL remote client; neither keeps a
    connection open between operations.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._conn: Connection | None = None
        self._tx = None

    def __enter__(self) -> "DbSession":
        if self._conn is not None:
            raise RuntimeError("DbSession is already active; nested sessions are not allowed")
        self._conn = self.engine.connect()
        self._tx = self._conn.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self._tx is not None:
                if exc_type:
                    self._tx.rollback()
                else:
                    self._tx.commit()
        finally:
            if self._conn is not None:
                self._conn.close()

            self._conn = None
            self._tx = None

        return False

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def _connection(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("DbSession is not active; use within a context manager")
        return self._conn

    def execute(self, sql: str | TextClause, params: Params | None = None) -> int:
        """
        Execute a non-SELECT statement and return the affected row count.

        A sequence of parameter mappings runs as executemany; the count is
        whatever the driver reports for the batch.
        """
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        result = conn.execute(stmt, params if params is not None else {})
        try:
            if result.rowcount is None:
                raise RuntimeError("execute() received None rowcount for statement")
            return int(result.rowcount)
        finally:
            result.close()

    def fetch_one(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Execute a SELECT expected to return 0 or 1 row. Raises if more than one row."""
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        row = conn.execute(stmt, params or {}).mappings().one_or_none()
        if row is None:
            return None
        return dict(row)

    def fetch_all(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        return [dict(row) for row in conn.execute(stmt, params or {}).mappings()]
