from prometheus_client import Counter, Gauge, Histogram

MUTATIONS_ENQUEUED_TOTAL = Counter(
    "pendwrite_mutations_enqueued_total",
    "Mutations written to the durable queue",
    ["table", "op_type"],
)

MUTATION_TRANSITIONS_TOTAL = Counter(
    "pendwrite_mutation_transitions_total",
    "Queue status transitions",
    ["table", "status"],
)

REMOTE_CALLS_TOTAL = Counter(
    "pendwrite_remote_calls_total",
    "Remote write attempts by outcome",
    ["table", "op_type", "outcome"],
)

REMOTE_CALL_LATENCY_SECONDS = Histogram(
    "pendwrite_remote_call_latency_seconds",
    "Latency of remote write attempts",
    ["table", "op_type"],
)

QUEUE_DEPTH = Gauge(
    "pendwrite_queue_depth",
    "Queued mutations by status as of the last stats read",
    ["status"],
)
