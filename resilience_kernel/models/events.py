"""Daemon events, cache tags and event-dispatch bookkeeping."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CacheTag(str, Enum):
    """Read-state caches the UI keeps for daemon data."""
    FOLDER_STATUS = "folderStatus"
    CONNECTIONS = "connections"
    CONFIG = "config"
    PENDING_DEVICES = "pendingDevices"
    PENDING_FOLDERS = "pendingFolders"
    PENDING_REQUESTS = "pendingRequests"


class EventClass(str, Enum):
    """Notification-worthy event classes, each with its own cooldown window."""
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    FOLDER_SYNC_COMPLETE = "folder_sync_complete"
    FOLDER_ERRORS = "folder_errors"
    DEVICE_REJECTED = "device_rejected"
    FOLDER_REJECTED = "folder_rejected"


class DomainEvent(BaseModel):
    """One event from the daemon's ordered event stream."""

    id: int
    type: str                               # e.g., "DeviceConnected"
    subject_id: Optional[str] = None        # Folder or device ID, opaque
    payload: Dict[str, Any] = {}
    time: datetime


class CooldownEntry(BaseModel):
    """Last time a notification fired for one (subject, event class) key."""

    subject_id: str
    event_class: EventClass
    last_fired_at: float                    # Dispatcher clock (monotonic seconds)


class DispatcherStatus(BaseModel):
    """Observable counters of the Event Dispatcher."""

    running: bool
    cursor: int
    events_processed: int = 0
    events_replayed: int = 0
    invalidations: int = 0
    notifications_fired: int = 0
    notifications_suppressed: int = 0
    poll_errors: int = 0
    cooldown_entries: int = 0
    last_poll_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    cooldown_windows: Dict[str, float] = Field(default_factory=dict)
