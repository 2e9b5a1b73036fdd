from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..models import (
    MutationStatus,
    QueuedMutation,
    QueueStats,
    RetentionPolicy,
)


class QueueStore(ABC):
    """
    Durable, ordered storage for queued mutations.

    Implementations own persistence only. The state machine is:

        pending -> processing -> completed
                             \\-> pending  (transient failure, attempts < max_retries)
                             \\-> failed   (attempts exhausted or permanent failure)
        failed  -> pending                 (retry_failed)
        processing (lease expired) -> pending  (recover_stale)

    Every transition is atomic per entry. ``mark_processing`` hands out a claim
    token; completing or failing with a token only succeeds for the holder of
    the current claim, so two processors sharing a store cannot both resolve
    the same entry. A claim also fails while an older entry of the same table
    is still pending or processing, so processors sharing a store cannot
    overtake each other within a table.

    Persistence failures raise StoreError. They are never swallowed: a lost
    queue entry is a lost user write.
    """

    def __init__(
        self,
        default_max_retries: int = 3,
        lease_ms: int = 30_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_max_retries = default_max_retries
        self.lease_ms = lease_ms
        self.clock = clock
        self._seq_lock = threading.Lock()
        self._last_ns = 0

    def _next_ns(self) -> int:
        """Strictly increasing enqueue sequence for this client."""
        with self._seq_lock:
            ns = max(int(self.clock() * 1_000_000_000), self._last_ns + 1)
            self._last_ns = ns
            return ns

    def _prepare(self, mutation: QueuedMutation) -> QueuedMutation:
        """Validate and stamp a mutation with id, status and timestamps."""
        mutation.validate()
        created_ns = self._next_ns()
        now = created_ns / 1_000_000_000
        mutation.id = f"mutation_{created_ns:020d}_{uuid.uuid4().hex[:9]}"
        mutation.status = MutationStatus.PENDING
        mutation.attempts = 0
        mutation.max_retries = mutation.max_retries or self.default_max_retries
        mutation.created_at = now
        mutation.created_ns = created_ns
        mutation.updated_at = now
        mutation.next_attempt_at = 0.0
        mutation.error = None
        mutation.claim_token = None
        mutation.lease_expires_at = None
        return mutation

    def _lease_expiry(self, now: float, lease_ms: Optional[int]) -> float:
        return now + (lease_ms if lease_ms is not None else self.lease_ms) / 1000.0

    @staticmethod
    def failure_outcome(attempts: int, max_retries: int, permanent: bool) -> MutationStatus:
        """Status after a failed attempt, given the attempt count including it."""
        if permanent or attempts >= max_retries:
            return MutationStatus.FAILED
        return MutationStatus.PENDING

    def create_schema(self) -> None:
        """Prepare the backing storage. No-op unless the backend needs DDL."""

    def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def enqueue(self, mutation: QueuedMutation) -> str:
        """Persist a new pending mutation and return its id."""
        ...

    @abstractmethod
    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        ...

    @abstractmethod
    def next_batch(
        self, table: Optional[str] = None, limit: Optional[int] = None
    ) -> list[QueuedMutation]:
        """Pending mutations, oldest first, optionally for one table."""
        ...

    @abstractmethod
    def pending_tables(self) -> list[str]:
        """Tables with pending work, the one holding the oldest entry first."""
        ...

    @abstractmethod
    def mark_processing(self, mutation_id: str, lease_ms: Optional[int] = None) -> Optional[str]:
        """
        Claim a pending entry (or one whose lease expired) that heads its table.
        Returns the claim token, or None.
        """
        ...

    @abstractmethod
    def mark_completed(self, mutation_id: str, claim_token: Optional[str] = None) -> bool:
        """Resolve a processing entry. False (and no change) if it is not processing."""
        ...

    @abstractmethod
    def mark_failed(
        self,
        mutation_id: str,
        error: str,
        permanent: bool = False,
        retry_at: Optional[float] = None,
        claim_token: Optional[str] = None,
    ) -> Optional[MutationStatus]:
        """Record a failed attempt. Returns the resulting status, or None if not processing."""
        ...

    @abstractmethod
    def get_stats(self) -> QueueStats:
        ...

    @abstractmethod
    def retry_failed(self) -> int:
        """Move every failed entry back to pending with attempts reset."""
        ...

    @abstractmethod
    def recover_stale(self, now: Optional[float] = None) -> int:
        """Return processing entries with an expired lease to pending."""
        ...

    @abstractmethod
    def prune(self, policy: RetentionPolicy) -> int:
        """Drop terminal entries according to ``policy``. Returns how many went."""
        ...

    @abstractmethod
    def delete(self, mutation_id: str) -> bool:
        ...

    @abstractmethod
    def clear(self) -> int:
        ...
