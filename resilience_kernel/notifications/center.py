"""
Notification Center — the single user-visible notification sink.

Toasts and native OS notifications are rendered by the UI; the center
records what was shown, logs it, and pushes it to UI subscribers. The same
title and body are shown at most once per dedupe window, so components that
announce the same outcome (the monitor and auto-recovery both report a
restored connection) produce one toast.
"""

import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from resilience_kernel.models.notifications import (
    Notification,
    NotificationAction,
    NotificationSeverity,
)
from resilience_kernel.observer.topic import Subscription, Topic

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    NotificationSeverity.INFO: logging.INFO,
    NotificationSeverity.SUCCESS: logging.INFO,
    NotificationSeverity.WARNING: logging.WARNING,
    NotificationSeverity.ERROR: logging.ERROR,
    NotificationSeverity.CRITICAL: logging.ERROR,
}


class Notifier(Protocol):
    """Anything that can show a notification to the user."""

    def notify(
        self,
        title: str,
        body: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        actions: Optional[List[NotificationAction]] = None,
        subject_id: Optional[str] = None,
        event_class: Optional[str] = None,
    ) -> Optional[Notification]: ...


class NotificationCenter:
    """In-process Notifier with bounded history and subscriber fan-out."""

    def __init__(
        self,
        history_limit: int = 100,
        enabled: bool = True,
        dedupe_window_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enabled = enabled
        self.dedupe_window_seconds = dedupe_window_seconds
        self._clock = clock
        self._history: Deque[Notification] = deque(maxlen=history_limit)
        self._last_shown: Dict[Tuple[str, str], float] = {}
        self._topic: Topic[Notification] = Topic("notifications")

    def notify(
        self,
        title: str,
        body: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        actions: Optional[List[NotificationAction]] = None,
        subject_id: Optional[str] = None,
        event_class: Optional[str] = None,
    ) -> Optional[Notification]:
        """
        Show a notification. Returns None when notifications are disabled
        or the same title and body were shown within the dedupe window.
        """
        if not self.enabled:
            logger.debug("Notifications disabled, dropping: %s", title)
            return None
        if self._is_duplicate(title, body):
            logger.debug("Suppressing duplicate notification: %s", title)
            return None

        notification = Notification(
            id=f"ntf_{uuid4().hex[:12]}",
            title=title,
            body=body,
            severity=severity,
            actions=actions or [],
            subject_id=subject_id,
            event_class=event_class,
            created_at=datetime.now(timezone.utc),
        )
        self._history.append(notification)
        logger.log(_LOG_LEVELS[severity], "Notification: %s - %s", title, body)
        self._topic.publish(notification)
        return notification

    def _is_duplicate(self, title: str, body: str) -> bool:
        now = self._clock()
        window = self.dedupe_window_seconds
        self._last_shown = {
            key: shown for key, shown in self._last_shown.items() if now - shown < window
        }
        key = (title, body)
        if key in self._last_shown:
            return True
        self._last_shown[key] = now
        return False

    def subscribe(self, listener: Callable[[Notification], None]) -> Subscription[Notification]:
        """Keep the returned handle: dropping it unsubscribes."""
        return self._topic.subscribe(listener)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        items = list(self._history)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        self._history.clear()
        self._last_shown.clear()
