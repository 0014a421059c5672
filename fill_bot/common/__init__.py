from .async_utils import guarded_call, spawn_tracked, wait_with_stop
from .logging import log_event
from .retry import RetryPolicy, retry_with_backoff

__all__ = [
    "RetryPolicy",
    "guarded_call",
    "log_event",
    "retry_with_backoff",
    "spawn_tracked",
    "wait_with_stop",
]
