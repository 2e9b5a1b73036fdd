from .observe import (
    observe_enqueue,
    observe_remote_call,
    observe_transition,
    set_queue_depth,
)

__all__ = [
    "observe_enqueue",
    "observe_remote_call",
    "observe_transition",
    "set_queue_depth",
]
