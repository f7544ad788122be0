"""
Notification types delivered by the synchronization layer.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import ReviewEngineError
from ..lifecycle.models import Protocol


class NotificationKind(str, Enum):
    SNAPSHOT = "snapshot"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class SyncNotification:
    """
    One confirmed observation of a protocol.

    A snapshot always carries the complete current entity, never a diff.
    ``loading`` is False on every notification: once anything has been
    observed, the subscriber is no longer waiting.
    """
    kind: NotificationKind
    protocol_id: str
    protocol: Optional[Protocol] = None
    error: Optional[ReviewEngineError] = None
    version: int = 0
    loading: bool = False

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None
