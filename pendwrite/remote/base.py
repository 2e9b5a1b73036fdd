from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Sequence

from ..models import MutationType, QueuedMutation

Rows = list[dict[str, Any]]


class RemoteClient(ABC):
    """
    Applies mutations against the remote data service.

    Implementations raise TransientRemoteError for failures worth retrying
    (timeouts, network, server errors) and PermanentRemoteError for rejected
    writes. Anything else that escapes is treated as transient by the
    processor.

    Every verb takes ``select``: the columns to report back for the written
    rows. None reports every column.
    """

    def execute(self, mutation: QueuedMutation) -> Rows:
        """Dispatch on mutation type and return the rows the service reports."""
        select = mutation.select_columns() or None
        if mutation.type == MutationType.INSERT:
            return self.insert(mutation.table, mutation.payload, select=select)
        elif mutation.type == MutationType.UPDATE:
            return self.update(mutation.table, mutation.payload, mutation.filters, select=select)
        elif mutation.type == MutationType.DELETE:
            return self.delete(mutation.table, mutation.filters, select=select)
        elif mutation.type == MutationType.UPSERT:
            return self.upsert(
                mutation.table, mutation.payload, mutation.conflict_columns(), select=select
            )
        raise ValueError(f"Unsupported mutation type: {mutation.type}")

    @abstractmethod
    def insert(
        self,
        table: str,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        ...

    @abstractmethod
    def update(
        self,
        table: str,
        payload: Mapping[str, Any],
        filters: Mapping[str, Any],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        ...

    @abstractmethod
    def delete(
        self,
        table: str,
        filters: Mapping[str, Any],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        ...

    @abstractmethod
    def upsert(
        self,
        table: str,
        rows: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
        select: Optional[Sequence[str]] = None,
    ) -> Rows:
        ...

    def close(self) -> None:
        """Release connections held by the client."""


def as_rows(rows: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> Rows:
    if isinstance(rows, Mapping):
        return [dict(rows)]
    return [dict(row) for row in rows]


def column_union(rows: Rows) -> list[str]:
    """Every column named by any row, in order of first appearance."""
    columns: list[str] = []
    for row in rows:
        for col in row:
            if col not in columns:
                columns.append(col)
    return columns
