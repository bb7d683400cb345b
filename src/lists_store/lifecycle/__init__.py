"""Lifecycle notifications and the process hooks that post them."""

from lists_store.lifecycle.notifications import (
    LIFECYCLE_NOTIFICATIONS,
    DispatchError,
    Notification,
    NotificationCenter,
    default_notification_center,
)
from lists_store.lifecycle.process import ProcessHooks, install_process_hooks, signal_from_name

__all__ = [
    "LIFECYCLE_NOTIFICATIONS",
    "DispatchError",
    "Notification",
    "NotificationCenter",
    "ProcessHooks",
    "default_notification_center",
    "install_process_hooks",
    "signal_from_name",
]
