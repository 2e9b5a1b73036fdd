from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from .cache import QueryCache
from .config import QueueConfig
from .connectivity import Connectivity
from .errors import PermanentRemoteError
from .metrics import observe_remote_call, observe_transition, set_queue_depth
from .models import MutationStatus, ProcessSummary, QueuedMutation
from .remote.base import RemoteClient
from .store.base import QueueStore

logger = logging.getLogger(__name__)


class QueueProcessor:
    """
    Drains queued mutations against the remote service.

    Per table, entries are applied strictly in enqueue order: entry N+1 is
    not attempted until entry N is completed or failed. A table pass stops
    as soon as its head entry is backing off, was requeued after a transient
    failure, or is claimed by someone else. Different tables are drained in
    parallel.

    Passes are triggered by:
    - ``process_queue()`` called directly
    - ``kick()`` (background pass, used after enqueue while online)
    - the auto-processing timer (``start_auto_processing``)
    - the connectivity flag going from offline to online

    Failure handling:
    - PermanentRemoteError: the entry fails at once, whatever its retries
    - anything else: attempts + 1, requeued with exponential backoff until
      ``max_retries`` attempts have been made, then failed
    Failed entries are never retried automatically; see ``retry_failed``.
    """

    def __init__(
        self,
        store: QueueStore,
        remote: RemoteClient,
        config: Optional[QueueConfig] = None,
        cache: Optional[QueryCache] = None,
        connectivity: Optional[Connectivity] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.remote = remote
        self.config = config or QueueConfig()
        self.cache = cache
        self.connectivity = connectivity
        self.clock = clock

        self._table_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._timer: Optional[threading.Thread] = None
        self._timer_stop = threading.Event()
        self._kicker: Optional[ThreadPoolExecutor] = None
        self._scheduled: Optional[Future] = None
        self._closed = False
        self._unsubscribe = (
            connectivity.subscribe(self._on_connectivity) if connectivity is not None else None
        )

    @property
    def is_online(self) -> bool:
        return self.connectivity is None or self.connectivity.is_online

    def _paused(self) -> bool:
        return not self.is_online and self.config.enable_offline_queue

    def _table_lock(self, table: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._table_locks.get(table)
            if lock is None:
                lock = self._table_locks[table] = threading.Lock()
            return lock

    def process_queue(self) -> ProcessSummary:
        """
        Run one pass over every table with pending work.

        Does nothing while offline. Also returns expired processing leases to
        pending before the pass and prunes terminal entries after it.
        """
        if self._paused():
            logger.debug("Offline; leaving queued mutations for later")
            return ProcessSummary(skipped=True)

        self.store.recover_stale()
        tables = self.store.pending_tables()
        summary = ProcessSummary()
        if len(tables) == 1:
            summary = summary.merge(self.process_table(tables[0]))
        elif tables:
            workers = min(len(tables), self.config.max_parallel_tables)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pendwrite-table") as pool:
                for result in pool.map(self.process_table, tables):
                    summary = summary.merge(result)

        self.store.prune(self.config.retention())
        set_queue_depth(self.store.get_stats())
        return summary

    def process_table(self, table: str) -> ProcessSummary:
        """Drain one table in FIFO order. Skips if a pass for the table is already running."""
        lock = self._table_lock(table)
        if not lock.acquire(blocking=False):
            logger.debug("A pass over %s is already running", table)
            return ProcessSummary(skipped=True)

        summary = ProcessSummary()
        try:
            while not self._paused():
                batch = self.store.next_batch(table, limit=self.config.batch_size)
                if not batch:
                    break
                for mutation in batch:
                    status = self._process_one(mutation)
                    if status == MutationStatus.COMPLETED:
                        summary.completed += 1
                    elif status == MutationStatus.FAILED:
                        summary.failed += 1
                    elif status == MutationStatus.PENDING:
                        summary.retried += 1
                        return summary
                    else:
                        return summary
        finally:
            lock.release()
        return summary

    def _process_one(self, mutation: QueuedMutation) -> Optional[MutationStatus]:
        """
        Attempt one entry. Returns the status it ended in, or None when it
        could not be attempted (backing off, claimed elsewhere, or behind an
        older entry another processor still holds).
        """
        now = self.clock()
        if mutation.next_attempt_at > now:
            logger.debug(
                "%s backing off for %.3fs", mutation.id, mutation.next_attempt_at - now
            )
            return None

        token = self.store.mark_processing(mutation.id, self.config.lease_ms)
        if token is None:
            logger.debug("%s was claimed by another processor", mutation.id)
            return None
        observe_transition(mutation.table, MutationStatus.PROCESSING.value)

        op_type = mutation.type.value
        start_time = time.monotonic()
        try:
            self.remote.execute(mutation)
        except Exception as exc:
            permanent = isinstance(exc, PermanentRemoteError)
            observe_remote_call(
                mutation.table,
                op_type,
                "permanent" if permanent else "transient",
                time.monotonic() - start_time,
            )
            return self._fail(mutation, token, exc, permanent)

        observe_remote_call(mutation.table, op_type, "success", time.monotonic() - start_time)
        if not self.store.mark_completed(mutation.id, token):
            logger.warning(
                "%s was applied remotely but its claim had expired; it may be applied again",
                mutation.id,
            )
        else:
            observe_transition(mutation.table, MutationStatus.COMPLETED.value)
            logger.info("Applied %s %s on %s", mutation.id, op_type, mutation.table)

        if self.cache is not None:
            for key in mutation.dependent_queries():
                self.cache.invalidate(key)
        return MutationStatus.COMPLETED

    def _fail(
        self,
        mutation: QueuedMutation,
        token: str,
        exc: Exception,
        permanent: bool,
    ) -> Optional[MutationStatus]:
        attempts = mutation.attempts + 1
        retry_at = self.clock() + self.config.backoff_ms(attempts) / 1000.0
        status = self.store.mark_failed(
            mutation.id,
            str(exc) or type(exc).__name__,
            permanent=permanent,
            retry_at=retry_at,
            claim_token=token,
        )
        if status is None:
            logger.warning("%s lost its claim before the failure was recorded", mutation.id)
            return None

        observe_transition(mutation.table, status.value)
        if status == MutationStatus.PENDING:
            logger.warning(
                "%s %s on %s failed (attempt %d/%d), retrying in %dms: %s",
                mutation.id,
                mutation.type.value,
                mutation.table,
                attempts,
                mutation.max_retries,
                self.config.backoff_ms(attempts),
                exc,
            )
        else:
            logger.error(
                "%s %s on %s failed permanently after %d attempt(s): %s",
                mutation.id,
                mutation.type.value,
                mutation.table,
                attempts,
                exc,
            )
            if self.cache is not None and mutation.query_key is not None:
                self.cache.discard_optimistic(mutation.query_key)
        return status

    def kick(self) -> Optional[Future]:
        """
        Schedule a pass on the background worker. Returns its future, or None
        once closed.

        Kicks coalesce: while a scheduled pass has not started yet, further
        kicks return that same future, since it will see their entries. At
        most one pass runs and one waits, however many writes arrive.
        """
        if self._closed:
            return None
        with self._locks_guard:
            scheduled = self._scheduled
            if scheduled is not None and not scheduled.running() and not scheduled.done():
                return scheduled
            if self._kicker is None:
                self._kicker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pendwrite-kick")
            self._scheduled = self._kicker.submit(self._run_pass)
            return self._scheduled

    def _run_pass(self) -> ProcessSummary:
        try:
            return self.process_queue()
        except Exception:
            logger.exception("Mutation queue pass failed")
            raise

    def _on_connectivity(self, online: bool) -> None:
        if not online or self._closed:
            return
        logger.info("Back online; draining mutation queue")
        try:
            self.process_queue()
        except Exception:
            # The flag has already flipped; the timer or the next kick retries.
            logger.exception("Mutation queue pass after reconnect failed")

    def start_auto_processing(self, interval_ms: Optional[int] = None) -> None:
        """Run a pass every ``interval_ms`` (default: config.process_interval_ms) on a daemon thread."""
        if self._timer is not None:
            return
        interval_s = (interval_ms or self.config.process_interval_ms) / 1000.0
        self._timer_stop.clear()

        def loop() -> None:
            while not self._timer_stop.wait(interval_s):
                try:
                    self.process_queue()
                except Exception:
                    # Keep the timer alive; the next tick retries the pass.
                    logger.exception("Scheduled mutation queue pass failed")

        self._timer = threading.Thread(target=loop, name="pendwrite-timer", daemon=True)
        self._timer.start()

    def stop_auto_processing(self) -> None:
        if self._timer is None:
            return
        self._timer_stop.set()
        self._timer.join()
        self._timer = None

    def close(self) -> None:
        self._closed = True
        self.stop_auto_processing()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._locks_guard:
            kicker, self._kicker = self._kicker, None
        if kicker is not None:
            kicker.shutdown(wait=True)
