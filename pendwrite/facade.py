from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Iterable, Mapping, Optional

from .cache import QueryCache, normalize_query_key
from .config import QueueConfig
from .connectivity import Connectivity
from .errors import DirectWriteError, StoreError
from .metrics import observe_enqueue, set_queue_depth
from .models import (
    MutationType,
    OptimisticResult,
    QueryKey,
    QueuedMutation,
    QueueStats,
    ProcessSummary,
)
from .processor import QueueProcessor
from .remote.base import RemoteClient
from .store.base import QueueStore

logger = logging.getLogger(__name__)


def _optimistic_data(mutation: QueuedMutation) -> Any:
    """What the row(s) will most likely look like once the write lands."""
    if mutation.type == MutationType.INSERT:
        rows = [mutation.payload] if isinstance(mutation.payload, Mapping) else mutation.payload
        data = [
            dict(row) if "id" in row else {**row, "id": f"temp_{uuid.uuid4().hex}"}
            for row in rows
        ]
        return data[0] if isinstance(mutation.payload, Mapping) else data
    if mutation.type == MutationType.UPDATE:
        return {**mutation.filters, **mutation.payload}
    if mutation.type == MutationType.DELETE:
        return dict(mutation.filters)
    if isinstance(mutation.payload, Mapping):
        return dict(mutation.payload)
    return [dict(row) for row in mutation.payload]


class MutationQueue:
    """
    The write surface application code uses.

    Every write is enqueued in the durable store, optionally patched into the
    read cache, and answered right away with an OptimisticResult. The
    processor applies it remotely later (immediately in the background when
    online) and invalidates the dependent queries once it is confirmed.

    If the store cannot take the write, the call goes straight to the remote
    service instead and only a failure there propagates (DirectWriteError).
    Writes made with ``use_queue=False`` take that same direct path on
    purpose, for callers that need the server rows before going on.

    One instance per process, created at start-up and passed to whoever
    writes:

        with MutationQueue(SqlQueueStore(engine), PostgrestClient(remote_config)) as queue:
            programs = queue.table("programs")
            result = programs.insert({"name": "Strength"})
    """

    def __init__(
        self,
        store: QueueStore,
        remote: RemoteClient,
        config: Optional[QueueConfig] = None,
        cache: Optional[QueryCache] = None,
        connectivity: Optional[Connectivity] = None,
    ) -> None:
        self.config = config or QueueConfig()
        self.store = store
        self.store.default_max_retries = self.config.max_retries
        self.store.lease_ms = self.config.lease_ms
        self.remote = remote
        self.cache = cache if cache is not None else QueryCache()
        self.connectivity = connectivity if connectivity is not None else Connectivity()
        self.processor = QueueProcessor(
            store,
            remote,
            config=self.config,
            cache=self.cache,
            connectivity=self.connectivity,
        )

    def __enter__(self) -> "MutationQueue":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
        return False

    def start(self, auto_process: bool = True) -> None:
        """Create the store schema and start the periodic pass."""
        self.store.create_schema()
        if auto_process:
            self.processor.start_auto_processing()

    def close(self) -> None:
        self.processor.close()

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    def set_online(self, online: bool) -> None:
        self.connectivity.set_online(online)

    def mutate(
        self,
        op_type: MutationType | str,
        table: str,
        payload: Any = None,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        on_conflict: Optional[str] = None,
        query_key: Any = None,
        invalidate_queries: Optional[Iterable[Any]] = None,
        max_retries: Optional[int] = None,
        optimistic_update: Optional[Callable[[Any], Any]] = None,
        select: Optional[str] = None,
        use_queue: bool = True,
    ) -> OptimisticResult:
        """
        Validate one write and queue it, or with ``use_queue=False`` apply it
        right away and return the server rows.

        ``select`` narrows the columns reported back for the written rows
        (comma separated).
        """
        keys: list[QueryKey] = [normalize_query_key(k) for k in (invalidate_queries or [])]
        mutation = QueuedMutation(
            type=MutationType(op_type),
            table=table,
            payload=payload if payload is not None else {},
            filters=dict(filters or {}),
            on_conflict=on_conflict,
            select=select,
            max_retries=max_retries,
            invalidate_queries=keys,
            query_key=normalize_query_key(query_key) if query_key is not None else None,
            optimistic_update=optimistic_update,
        )
        mutation.validate()
        if not use_queue:
            return self._direct(mutation)

        try:
            mutation_id = self.store.enqueue(mutation)
        except StoreError as exc:
            logger.warning(
                "Mutation queue unavailable, writing %s on %s directly: %s",
                mutation.type.value,
                table,
                exc,
            )
            return self._direct(mutation)

        observe_enqueue(table, mutation.type.value)
        logger.info("Queued %s %s on %s", mutation_id, mutation.type.value, table)

        if optimistic_update is not None:
            target = mutation.query_key or (keys[0] if keys else None)
            if target is not None:
                try:
                    self.cache.apply_optimistic(target, optimistic_update)
                except Exception:
                    # The write is already queued; the refetch after it lands
                    # repairs the cache.
                    logger.exception("Optimistic update for %s failed", mutation_id)

        if self.config.process_on_enqueue and self.is_online:
            self.processor.kick()

        return OptimisticResult(mutation_id=mutation_id, data=_optimistic_data(mutation))

    def _direct(self, mutation: QueuedMutation) -> OptimisticResult:
        try:
            rows = self.remote.execute(mutation)
        except Exception as exc:
            raise DirectWriteError(
                f"Direct {mutation.type.value} on {mutation.table} failed: {exc}"
            ) from exc
        self.cache.invalidate_many(mutation.dependent_queries())
        return OptimisticResult(mutation_id=None, data=rows, optimistic=False)

    def table(self, name: str) -> "TableMutations":
        return TableMutations(self, name)

    def process_queue(self) -> ProcessSummary:
        return self.processor.process_queue()

    def retry_failed(self) -> int:
        """Give every failed mutation a fresh set of attempts and start a pass."""
        count = self.store.retry_failed()
        if count:
            logger.info("Retrying %d failed mutation(s)", count)
            if self.config.process_on_enqueue and self.is_online:
                self.processor.kick()
        return count

    def get_stats(self) -> QueueStats:
        stats = self.store.get_stats()
        set_queue_depth(stats)
        return stats


class TableMutations:
    """
    Write verbs scoped to one table.

    Unless told otherwise, each write invalidates ``(table,)`` and so every
    cached query whose key starts with the table name.
    """

    def __init__(self, queue: MutationQueue, table: str) -> None:
        self.queue = queue
        self.table = table

    def _keys(self, invalidate_queries: Optional[Iterable[Any]]) -> list:
        return list(invalidate_queries) if invalidate_queries is not None else [(self.table,)]

    def insert(
        self,
        payload: Any,
        *,
        query_key: Any = None,
        invalidate_queries: Optional[Iterable[Any]] = None,
        optimistic_update: Optional[Callable[[Any], Any]] = None,
        max_retries: Optional[int] = None,
        select: Optional[str] = None,
        use_queue: bool = True,
    ) -> OptimisticResult:
        return self.queue.mutate(
            MutationType.INSERT,
            self.table,
            payload,
            query_key=query_key,
            invalidate_queries=self._keys(invalidate_queries),
            optimistic_update=optimistic_update,
            max_retries=max_retries,
            select=select,
            use_queue=use_queue,
        )

    def update(
        self,
        payload: Mapping[str, Any],
        filters: Mapping[str, Any],
        *,
        query_key: Any = None,
        invalidate_queries: Optional[Iterable[Any]] = None,
        optimistic_update: Optional[Callable[[Any], Any]] = None,
        max_retries: Optional[int] = None,
        select: Optional[str] = None,
        use_queue: bool = True,
    ) -> OptimisticResult:
        return self.queue.mutate(
            MutationType.UPDATE,
            self.table,
            payload,
            filters=filters,
            query_key=query_key,
            invalidate_queries=self._keys(invalidate_queries),
            optimistic_update=optimistic_update,
            max_retries=max_retries,
            select=select,
            use_queue=use_queue,
        )

    def remove(
        self,
        filters: Mapping[str, Any],
        *,
        query_key: Any = None,
        invalidate_queries: Optional[Iterable[Any]] = None,
        optimistic_update: Optional[Callable[[Any], Any]] = None,
        max_retries: Optional[int] = None,
        select: Optional[str] = None,
        use_queue: bool = True,
    ) -> OptimisticResult:
        return self.queue.mutate(
            MutationType.DELETE,
            self.table,
            {},
            filters=filters,
            query_key=query_key,
            invalidate_queries=self._keys(invalidate_queries),
            optimistic_update=optimistic_update,
            max_retries=max_retries,
            select=select,
            use_queue=use_queue,
        )

    def upsert(
        self,
        payload: Any,
        on_conflict: str = "id",
        *,
        query_key: Any = None,
        invalidate_queries: Optional[Iterable[Any]] = None,
        optimistic_update: Optional[Callable[[Any], Any]] = None,
        max_retries: Optional[int] = None,
        select: Optional[str] = None,
        use_queue: bool = True,
    ) -> OptimisticResult:
        return self.queue.mutate(
            MutationType.UPSERT,
            self.table,
            payload,
            on_conflict=on_conflict,
            query_key=query_key,
            invalidate_queries=self._keys(invalidate_queries),
            optimistic_update=optimistic_update,
            max_retries=max_retries,
            select=select,
            use_queue=use_queue,
        )
