"""
Notifications

Post-commit lifecycle events. Delivery failures never roll back a transition.
"""

from .dispatcher import (
    NotificationKind,
    NotificationEvent,
    NotificationDispatcher,
    LoggingNotificationDispatcher,
    RecordingNotificationDispatcher,
    NullNotificationDispatcher,
)

__all__ = [
    "NotificationKind",
    "NotificationEvent",
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "RecordingNotificationDispatcher",
    "NullNotificationDispatcher",
]
