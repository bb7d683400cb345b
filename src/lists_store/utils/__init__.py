"""Utility exports for concurrency helpers."""

from lists_store.utils.concurrency import QueueClosedError, SerialQueue, wait_with_timeout

__all__ = [
    "QueueClosedError",
    "SerialQueue",
    "wait_with_timeout",
]
