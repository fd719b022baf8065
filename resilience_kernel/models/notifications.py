"""User-visible notifications (toast / native OS)."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class NotificationSeverity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class NotificationAction(BaseModel):
    """A button offered alongside a notification."""

    label: str                              # e.g., "Review", "Retry"
    action_id: str                          # Opaque; the UI maps it to a handler


class Notification(BaseModel):
    id: str
    title: str
    body: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    actions: List[NotificationAction] = []
    subject_id: Optional[str] = None
    event_class: Optional[str] = None
    created_at: datetime
