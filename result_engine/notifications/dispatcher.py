"""
Notification Dispatcher

Fire-and-forget delivery of lifecycle events (finalized, critical, amended)
to whatever downstream system cares: clinician paging, LIS interfaces,
billing. Dispatch happens after the transition has committed; a dispatcher
failure is logged and never undoes the transition.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger("result_engine.notifications")


class NotificationKind(str, Enum):
    RESULT_FINALIZED = "result_finalized"
    CRITICAL_RESULT = "critical_result"
    RESULT_AMENDED = "result_amended"


class NotificationEvent(BaseModel):
    kind: NotificationKind
    result_id: str
    patient_id: str
    test_id: str
    status: str
    value: Optional[str] = None
    flag: Optional[str] = None
    actor: str
    occurred_at: datetime
    version: int
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class NotificationDispatcher(ABC):

    @abstractmethod
    def send(self, event: NotificationEvent) -> None:
        ...

    def dispatch(self, event: NotificationEvent) -> bool:
        """Deliver ``event``; returns False (and logs) instead of raising."""
        try:
            self.send(event)
            return True
        except Exception:
            logger.exception(
                f"NOTIFY_FAILED: {event.kind.value} for result {event.result_id} v{event.version}"
            )
            return False


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Default dispatcher: writes each event to the log."""

    def send(self, event: NotificationEvent) -> None:
        logger.info(
            f"NOTIFY: {event.kind.value} result={event.result_id} patient={event.patient_id} "
            f"test={event.test_id} value={event.value} flag={event.flag} by={event.actor}"
        )


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps every delivered event in memory. Used by tests and local runs."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def send(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[NotificationKind]:
        return [event.kind for event in self.events]


class NullNotificationDispatcher(NotificationDispatcher):
    """Drops everything; used when notifications are disabled."""

    def send(self, event: NotificationEvent) -> None:
        return None
