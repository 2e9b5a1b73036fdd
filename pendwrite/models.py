from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from .errors import MutationValidationError
from .sql import validate_identifier

QueryKey = tuple


class MutationType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"


class MutationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedMutation:
    """
    A single write destined for the remote data service.

    ``filters`` holds equality predicates for update/delete. For upsert the
    conflict key lives in ``on_conflict`` (comma separated column list).
    ``select`` narrows the columns the remote service reports back for the
    written rows (comma separated, ``"*"`` or None for all of them).
    ``optimistic_update`` is only ever held in memory; stores do not persist it.
    """
    type: MutationType
    table: str
    payload: Any = field(default_factory=dict)
    filters: dict[str, Any] = field(default_factory=dict)
    on_conflict: Optional[str] = None
    select: Optional[str] = None
    max_retries: Optional[int] = None
    invalidate_queries: list[QueryKey] = field(default_factory=list)
    query_key: Optional[QueryKey] = None
    optimistic_update: Optional[Callable[[Any], Any]] = None

    id: Optional[str] = None
    status: MutationStatus = MutationStatus.PENDING
    attempts: int = 0
    created_at: float = 0.0
    created_ns: int = 0
    updated_at: float = 0.0
    next_attempt_at: float = 0.0
    error: Optional[str] = None
    claim_token: Optional[str] = None
    lease_expires_at: Optional[float] = None

    def validate(self) -> None:
        """Raise MutationValidationError unless the mutation can be applied remotely."""
        try:
            self.type = MutationType(self.type)
        except ValueError as exc:
            raise MutationValidationError(f"Unknown mutation type: {self.type!r}") from exc

        try:
            validate_identifier(self.table, "table")
            for col in self.filters:
                validate_identifier(col, "filter column")
            for col in self.conflict_columns():
                validate_identifier(col, "conflict column")
            for col in self.select_columns():
                validate_identifier(col, "select column")
        except (TypeError, ValueError) as exc:
            raise MutationValidationError(str(exc)) from exc

        if self.type in (MutationType.UPDATE, MutationType.DELETE) and not self.filters:
            raise MutationValidationError(
                f"{self.type.value.capitalize()} mutations require filters"
            )
        if self.type == MutationType.INSERT:
            self.filters = {}
            if not _is_rows(self.payload):
                raise MutationValidationError(
                    "Insert payload must be a mapping or a list of mappings"
                )
        elif self.type == MutationType.UPSERT:
            if not self.conflict_columns():
                raise MutationValidationError("Upsert mutations require a conflict key")
            if not _is_rows(self.payload):
                raise MutationValidationError(
                    "Upsert payload must be a mapping or a list of mappings"
                )
        elif self.type == MutationType.UPDATE:
            if not isinstance(self.payload, Mapping) or not self.payload:
                raise MutationValidationError("Update payload must be a non-empty mapping")
        if self.max_retries is not None and self.max_retries < 1:
            raise MutationValidationError("max_retries must be >= 1")

    def conflict_columns(self) -> list[str]:
        if not self.on_conflict:
            return []
        return [c.strip() for c in self.on_conflict.split(",") if c.strip()]

    def select_columns(self) -> list[str]:
        """Projected columns; empty means every column."""
        if not self.select or self.select.strip() == "*":
            return []
        return [c.strip() for c in self.select.split(",") if c.strip()]

    def dependent_queries(self) -> list[QueryKey]:
        """Every cached query to invalidate once this mutation resolves."""
        keys: list[QueryKey] = []
        for key in [*self.invalidate_queries, self.query_key]:
            if key is not None and key not in keys:
                keys.append(key)
        return keys

    def to_record(self) -> dict[str, Any]:
        """Flatten into a JSON-friendly record for persistence."""
        return {
            "id": self.id,
            "type": self.type.value,
            "table_name": self.table,
            "payload": json.dumps(self.payload, default=str),
            "filters": json.dumps(self.filters, default=str),
            "on_conflict": self.on_conflict,
            "select_columns": self.select,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "created_ns": self.created_ns,
            "updated_at": self.updated_at,
            "next_attempt_at": self.next_attempt_at,
            "error": self.error,
            "claim_token": self.claim_token,
            "lease_expires_at": self.lease_expires_at,
            "invalidate_queries": json.dumps([list(k) for k in self.invalidate_queries]),
            "query_key": json.dumps(list(self.query_key)) if self.query_key is not None else None,
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "QueuedMutation":
        query_key = row.get("query_key")
        lease = row.get("lease_expires_at")
        return cls(
            id=row["id"],
            type=MutationType(row["type"]),
            table=row["table_name"],
            payload=json.loads(row["payload"]),
            filters=json.loads(row["filters"] or "{}"),
            on_conflict=row.get("on_conflict"),
            select=row.get("select_columns") or None,
            status=MutationStatus(row["status"]),
            attempts=int(row["attempts"]),
            max_retries=int(row["max_retries"]),
            created_at=float(row["created_at"]),
            created_ns=int(row["created_ns"]),
            updated_at=float(row["updated_at"]),
            next_attempt_at=float(row["next_attempt_at"] or 0.0),
            error=row.get("error"),
            claim_token=row.get("claim_token"),
            lease_expires_at=float(lease) if lease not in (None, "") else None,
            invalidate_queries=[tuple(k) for k in json.loads(row["invalidate_queries"] or "[]")],
            query_key=tuple(json.loads(query_key)) if query_key else None,
        )


def _is_rows(payload: Any) -> bool:
    if isinstance(payload, Mapping):
        return True
    return (
        isinstance(payload, Sequence)
        and not isinstance(payload, (str, bytes))
        and len(payload) > 0
        and all(isinstance(row, Mapping) for row in payload)
    )


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Which terminal entries ``prune`` may drop.

    ``max_age_ms`` removes completed entries last touched longer ago than the
    threshold; ``keep_last`` keeps only the newest N completed entries.
    """
    max_age_ms: Optional[int] = None
    keep_last: Optional[int] = None
    include_failed: bool = False


@dataclass
class ProcessSummary:
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: bool = False

    def merge(self, other: "ProcessSummary") -> "ProcessSummary":
        return ProcessSummary(
            completed=self.completed + other.completed,
            retried=self.retried + other.retried,
            failed=self.failed + other.failed,
            skipped=self.skipped and other.skipped,
        )


@dataclass(frozen=True)
class OptimisticResult:
    """
    What a facade call hands back before the remote write is confirmed.

    ``optimistic`` is False only when the queue was bypassed and ``data``
    already holds the rows returned by the remote service.
    """
    mutation_id: Optional[str]
    data: Any
    optimistic: bool = True
