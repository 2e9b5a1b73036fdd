from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from redis import Redis
from redis.client import Pipeline
from redis.exceptions import RedisError

from ..config import StoreConfig
from ..errors import StoreError
from ..models import MutationStatus, QueuedMutation, QueueStats, RetentionPolicy
from .base import QueueStore

logger = logging.getLogger(__name__)

_NULLABLE = (
    "on_conflict",
    "select_columns",
    "error",
    "claim_token",
    "lease_expires_at",
    "query_key",
)


def _decode(raw: dict) -> dict[str, Any]:
    record = {}
    for key, value in raw.items():
        key = key.decode() if isinstance(key, bytes) else key
        value = value.decode() if isinstance(value, bytes) else value
        if key in _NULLABLE and value == "":
            value = None
        record[key] = value
    return record


def _encode(record: dict[str, Any]) -> dict[str, Any]:
    return {key: ("" if value is None else value) for key, value in record.items()}


class RedisQueueStore(QueueStore):
    """
    Queue store backed by Redis, for queues shared between processes.

    Layout (``p`` is the configured key prefix):
        p:m:{id}               hash, one per mutation
        p:pending:{table}      zset of pending ids, scored by enqueue time
        p:inflight:{table}     zset of processing ids, scored by enqueue time
        p:status:{status}      zset of ids per status, scored by last update
                               (lease expiry for processing)
        p:tables               set of tables ever enqueued to

    Every transition runs under WATCH on the mutation hash, so a claim made by
    another process between read and write aborts and re-reads.
    """

    def __init__(
        self,
        redis: Redis,
        config: Optional[StoreConfig] = None,
        default_max_retries: int = 3,
        lease_ms: int = 30_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(default_max_retries=default_max_retries, lease_ms=lease_ms, clock=clock)
        self.redis = redis
        self.config = config or StoreConfig()
        self.prefix = self.config.key_prefix

    def _mkey(self, mutation_id: str) -> str:
        return f"{self.prefix}:m:{mutation_id}"

    def _pending_key(self, table: str) -> str:
        return f"{self.prefix}:pending:{table}"

    def _inflight_key(self, table: str) -> str:
        return f"{self.prefix}:inflight:{table}"

    def _status_key(self, status: MutationStatus | str) -> str:
        return f"{self.prefix}:status:{MutationStatus(status).value}"

    @property
    def _tables_key(self) -> str:
        return f"{self.prefix}:tables"

    @staticmethod
    def _order_score(created_ns: int) -> float:
        # Microseconds stay exact in a double; ties fall back to member order,
        # and ids embed the zero-padded sequence.
        return created_ns / 1_000

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            raise StoreError(f"Mutation queue storage failed: {exc}") from exc

    def _load(self, pipe: Redis | Pipeline, mutation_id: str) -> Optional[dict[str, Any]]:
        raw = pipe.hgetall(self._mkey(mutation_id))
        return _decode(raw) if raw else None

    def _move(
        self,
        pipe: Pipeline,
        record: dict[str, Any],
        status: MutationStatus,
        score: float,
        changes: dict[str, Any],
    ) -> None:
        """Queue the index and hash updates for a transition. Caller has called multi()."""
        mutation_id = record["id"]
        old = MutationStatus(record["status"])
        pipe.hset(self._mkey(mutation_id), mapping=_encode({**changes, "status": status.value}))
        pipe.zrem(self._status_key(old), mutation_id)
        pipe.zadd(self._status_key(status), {mutation_id: score})
        if old == MutationStatus.PENDING:
            pipe.zrem(self._pending_key(record["table_name"]), mutation_id)
        if old == MutationStatus.PROCESSING:
            pipe.zrem(self._inflight_key(record["table_name"]), mutation_id)
        order = {mutation_id: self._order_score(int(record["created_ns"]))}
        if status == MutationStatus.PENDING:
            pipe.zadd(self._pending_key(record["table_name"]), order)
        elif status == MutationStatus.PROCESSING:
            pipe.zadd(self._inflight_key(record["table_name"]), order)

    def _transition(self, mutation_id: str, fn: Callable[[Pipeline, dict[str, Any]], Any]) -> Any:
        """Run ``fn(pipe, record)`` under WATCH; ``fn`` returns None without calling multi() to abort."""

        def run(pipe: Pipeline) -> Any:
            record = self._load(pipe, mutation_id)
            if record is None:
                return None
            return fn(pipe, record)

        with self._guard():
            return self.redis.transaction(run, self._mkey(mutation_id), value_from_callable=True)

    def enqueue(self, mutation: QueuedMutation) -> str:
        mutation = self._prepare(mutation)
        record = mutation.to_record()
        with self._guard():
            pipe = self.redis.pipeline(transaction=True)
            pipe.hset(self._mkey(mutation.id), mapping=_encode(record))
            pipe.zadd(
                self._pending_key(mutation.table),
                {mutation.id: self._order_score(mutation.created_ns)},
            )
            pipe.zadd(self._status_key(MutationStatus.PENDING), {mutation.id: mutation.updated_at})
            pipe.sadd(self._tables_key, mutation.table)
            pipe.execute()
        logger.debug("Enqueued %s %s on %s", mutation.id, mutation.type.value, mutation.table)
        return mutation.id

    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        with self._guard():
            record = self._load(self.redis, mutation_id)
        return QueuedMutation.from_record(record) if record else None

    def _fetch(self, ids: list) -> list[QueuedMutation]:
        pipe = self.redis.pipeline(transaction=False)
        for mutation_id in ids:
            pipe.hgetall(self._mkey(mutation_id.decode() if isinstance(mutation_id, bytes) else mutation_id))
        mutations = []
        for raw in pipe.execute():
            if not raw:
                continue
            record = _decode(raw)
            if record["status"] == MutationStatus.PENDING.value:
                mutations.append(QueuedMutation.from_record(record))
        return mutations

    def next_batch(
        self, table: Optional[str] = None, limit: Optional[int] = None
    ) -> list[QueuedMutation]:
        stop = -1 if limit is None else limit - 1
        with self._guard():
            if table is not None:
                return self._fetch(self.redis.zrange(self._pending_key(table), 0, stop))
            mutations: list[QueuedMutation] = []
            for name in self._tables():
                mutations.extend(self._fetch(self.redis.zrange(self._pending_key(name), 0, stop)))
        mutations.sort(key=lambda m: (m.created_at, m.created_ns))
        return mutations if limit is None else mutations[:limit]

    def _tables(self) -> list[str]:
        return [t.decode() if isinstance(t, bytes) else t for t in self.redis.smembers(self._tables_key)]

    def pending_tables(self) -> list[str]:
        heads = []
        with self._guard():
            for table in self._tables():
                head = self.redis.zrange(self._pending_key(table), 0, 0, withscores=True)
                if head:
                    heads.append((head[0][1], table))
        return [table for _, table in sorted(heads)]

    def _has_older(self, pipe: Pipeline, record: dict[str, Any]) -> bool:
        """True while an older entry of the same table is pending or processing."""
        mutation_id = record["id"]
        score = self._order_score(int(record["created_ns"]))
        table = record["table_name"]
        for key in (self._pending_key(table), self._inflight_key(table)):
            for member, member_score in pipe.zrangebyscore(key, "-inf", score, withscores=True):
                member = member.decode() if isinstance(member, bytes) else member
                if member_score < score or member < mutation_id:
                    return True
        return False

    def mark_processing(self, mutation_id: str, lease_ms: Optional[int] = None) -> Optional[str]:
        now = self.clock()
        token = uuid.uuid4().hex

        def claim(pipe: Pipeline, record: dict[str, Any]) -> Optional[str]:
            status = record["status"]
            lease = float(record["lease_expires_at"]) if record["lease_expires_at"] else None
            claimable = status == MutationStatus.PENDING.value or (
                status == MutationStatus.PROCESSING.value and lease is not None and lease < now
            )
            if not claimable:
                return None
            table = record["table_name"]
            pipe.watch(self._pending_key(table), self._inflight_key(table))
            if self._has_older(pipe, record):
                return None
            expires = self._lease_expiry(now, lease_ms)
            pipe.multi()
            self._move(
                pipe,
                record,
                MutationStatus.PROCESSING,
                expires,
                {"claim_token": token, "lease_expires_at": expires, "updated_at": now},
            )
            return token

        return self._transition(mutation_id, claim)

    @staticmethod
    def _holds_claim(record: dict[str, Any], claim_token: Optional[str]) -> bool:
        if record["status"] != MutationStatus.PROCESSING.value:
            return False
        return claim_token is None or record["claim_token"] == claim_token

    def mark_completed(self, mutation_id: str, claim_token: Optional[str] = None) -> bool:
        now = self.clock()

        def complete(pipe: Pipeline, record: dict[str, Any]) -> Optional[bool]:
            if not self._holds_claim(record, claim_token):
                return None
            pipe.multi()
            self._move(
                pipe,
                record,
                MutationStatus.COMPLETED,
                now,
                {
                    "attempts": int(record["attempts"]) + 1,
                    "error": None,
                    "claim_token": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                },
            )
            return True

        return bool(self._transition(mutation_id, complete))

    def mark_failed(
        self,
        mutation_id: str,
        error: str,
        permanent: bool = False,
        retry_at: Optional[float] = None,
        claim_token: Optional[str] = None,
    ) -> Optional[MutationStatus]:
        now = self.clock()

        def fail(pipe: Pipeline, record: dict[str, Any]) -> Optional[MutationStatus]:
            if not self._holds_claim(record, claim_token):
                return None
            attempts = int(record["attempts"]) + 1
            status = self.failure_outcome(attempts, int(record["max_retries"]), permanent)
            pipe.multi()
            self._move(
                pipe,
                record,
                status,
                now,
                {
                    "attempts": attempts,
                    "error": error,
                    "next_attempt_at": retry_at or 0.0,
                    "claim_token": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                },
            )
            return status

        return self._transition(mutation_id, fail)

    def get_stats(self) -> QueueStats:
        with self._guard():
            pipe = self.redis.pipeline(transaction=False)
            for status in MutationStatus:
                pipe.zcard(self._status_key(status))
            pending, processing, completed, failed = pipe.execute()
        return QueueStats(pending=pending, processing=processing, completed=completed, failed=failed)

    def _ids(self, status: MutationStatus, max_score: Any = "+inf") -> list[str]:
        ids = self.redis.zrangebyscore(self._status_key(status), "-inf", max_score)
        return [i.decode() if isinstance(i, bytes) else i for i in ids]

    def _revert(self, mutation_id: str, from_status: MutationStatus, changes: dict[str, Any]) -> bool:
        now = self.clock()

        def revert(pipe: Pipeline, record: dict[str, Any]) -> Optional[bool]:
            if record["status"] != from_status.value:
                return None
            if from_status == MutationStatus.PROCESSING:
                lease = record["lease_expires_at"]
                if lease is None or float(lease) >= now:
                    return None
            pipe.multi()
            self._move(pipe, record, MutationStatus.PENDING, now, {**changes, "updated_at": now})
            return True

        return bool(self._transition(mutation_id, revert))

    def retry_failed(self) -> int:
        with self._guard():
            ids = self._ids(MutationStatus.FAILED)
        changes = {"attempts": 0, "error": None, "next_attempt_at": 0.0}
        return sum(1 for i in ids if self._revert(i, MutationStatus.FAILED, changes))

    def recover_stale(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        with self._guard():
            ids = self._ids(MutationStatus.PROCESSING, f"({now}")
        changes = {"claim_token": None, "lease_expires_at": None}
        recovered = sum(1 for i in ids if self._revert(i, MutationStatus.PROCESSING, changes))
        if recovered:
            logger.warning("Recovered %d mutation(s) with expired processing leases", recovered)
        return recovered

    def _drop(self, pipe: Pipeline, mutation_id: str, record: dict[str, Any]) -> None:
        pipe.delete(self._mkey(mutation_id))
        pipe.zrem(self._status_key(record["status"]), mutation_id)
        pipe.zrem(self._pending_key(record["table_name"]), mutation_id)
        pipe.zrem(self._inflight_key(record["table_name"]), mutation_id)

    def prune(self, policy: RetentionPolicy) -> int:
        statuses = [MutationStatus.COMPLETED]
        if policy.include_failed:
            statuses.append(MutationStatus.FAILED)

        doomed: set[str] = set()
        with self._guard():
            for status in statuses:
                if policy.max_age_ms is not None:
                    cutoff = self.clock() - policy.max_age_ms / 1000.0
                    doomed.update(self._ids(status, f"({cutoff}"))
                if policy.keep_last is not None:
                    ids = self.redis.zrevrange(self._status_key(status), policy.keep_last, -1)
                    doomed.update(i.decode() if isinstance(i, bytes) else i for i in ids)
        return sum(1 for i in doomed if self._delete_if(i, [s.value for s in statuses]))

    def _delete_if(self, mutation_id: str, statuses: Optional[list[str]] = None) -> bool:
        def drop(pipe: Pipeline, record: dict[str, Any]) -> Optional[bool]:
            if statuses is not None and record["status"] not in statuses:
                return None
            pipe.multi()
            self._drop(pipe, mutation_id, record)
            return True

        return bool(self._transition(mutation_id, drop))

    def delete(self, mutation_id: str) -> bool:
        return self._delete_if(mutation_id)

    def clear(self) -> int:
        removed = 0
        with self._guard():
            keys = list(self.redis.scan_iter(match=f"{self.prefix}:*"))
            for key in keys:
                if (key.decode() if isinstance(key, bytes) else key).startswith(f"{self.prefix}:m:"):
                    removed += 1
            if keys:
                self.redis.delete(*keys)
        return removed

    def close(self) -> None:
        self.redis.close()
