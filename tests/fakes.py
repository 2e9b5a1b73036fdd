from __future__ import annotations

import threading
from typing import Any

from pendwrite.remote.base import RemoteClient, Rows, as_rows


class FakeClock:
    """Manually advanced clock, injected wherever the code reads time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingRemote(RemoteClient):
    """
    Remote client that records every call in arrival order.

    Exceptions queued with fail_next() are raised by the next calls, one per
    call, before anything is recorded as applied.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.applied: list[tuple[str, str, Any]] = []
        self.selects: list[Any] = []
        self._failures: list[Exception] = []
        self._lock = threading.Lock()

    def fail_next(self, *excs: Exception) -> None:
        with self._lock:
            self._failures.extend(excs)

    def _call(self, op: str, table: str, args: Any, result: Rows) -> Rows:
        with self._lock:
            self.calls.append((op, table, args))
            if self._failures:
                raise self._failures.pop(0)
            self.applied.append((op, table, args))
        return result

    def insert(self, table, rows, select=None) -> Rows:
        self.selects.append(select)
        return self._call("insert", table, rows, as_rows(rows))

    def update(self, table, payload, filters, select=None) -> Rows:
        self.selects.append(select)
        return self._call("update", table, (dict(payload), dict(filters)), [{**filters, **payload}])

    def delete(self, table, filters, select=None) -> Rows:
        self.selects.append(select)
        return self._call("delete", table, dict(filters), [])

    def upsert(self, table, rows, on_conflict, select=None) -> Rows:
        self.selects.append(select)
        return self._call("upsert", table, (rows, list(on_conflict)), as_rows(rows))
