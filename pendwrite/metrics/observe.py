from __future__ import annotations

from ..models import QueueStats
from .registry import (
    MUTATION_TRANSITIONS_TOTAL,
    MUTATIONS_ENQUEUED_TOTAL,
    QUEUE_DEPTH,
    REMOTE_CALL_LATENCY_SECONDS,
    REMOTE_CALLS_TOTAL,
)


def observe_enqueue(table: str, op_type: str) -> None:
    MUTATIONS_ENQUEUED_TOTAL.labels(table=table, op_type=op_type).inc()


def observe_transition(table: str, status: str) -> None:
    MUTATION_TRANSITIONS_TOTAL.labels(table=table, status=status).inc()


def observe_remote_call(table: str, op_type: str, outcome: str, latency_s: float) -> None:
    """
    Record one remote attempt.

    ``outcome`` is one of "success", "transient" or "permanent".
    """
    REMOTE_CALLS_TOTAL.labels(table=table, op_type=op_type, outcome=outcome).inc()
    REMOTE_CALL_LATENCY_SECONDS.labels(table=table, op_type=op_type).observe(latency_s)


def set_queue_depth(stats: QueueStats) -> None:
    for status, count in stats.as_dict().items():
        if status == "total":
            continue
        QUEUE_DEPTH.labels(status=status).set(count)
