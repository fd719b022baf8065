"""
Event Dispatcher — long-polls the daemon's event stream.

Per event:
  1. Invalidate the cache tags mapped from the event type. Always; cooldowns
     never skip this step, displayed state depends on it.
  2. Derive an optional user notification; fire it unless the same
     (subject, event class) fired within that class's cooldown window.

The cursor is the highest event id consumed; it never moves backwards
except through reset_cursor() after a daemon restart. Ids are remembered in
a bounded window: an id seen there again is a replay that only invalidates.
A late id that was never seen is processed like any other event.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from resilience_kernel.daemon.adapter import DaemonAdapter
from resilience_kernel.errors import EXPECTED_POLL_KINDS, ResilienceError, describe_error
from resilience_kernel.events.cache import CacheInvalidator
from resilience_kernel.models.config import DispatcherConfig
from resilience_kernel.models.events import (
    CacheTag,
    CooldownEntry,
    DispatcherStatus,
    DomainEvent,
    EventClass,
)
from resilience_kernel.models.notifications import NotificationAction, NotificationSeverity
from resilience_kernel.notifications.center import Notifier

logger = logging.getLogger(__name__)

INVALIDATION_MAP: Dict[str, Tuple[CacheTag, ...]] = {
    "StateChanged": (CacheTag.FOLDER_STATUS,),
    "FolderCompletion": (CacheTag.FOLDER_STATUS,),
    "FolderSummary": (CacheTag.FOLDER_STATUS,),
    "FolderErrors": (CacheTag.FOLDER_STATUS,),
    "ItemStarted": (CacheTag.FOLDER_STATUS,),
    "ItemFinished": (CacheTag.FOLDER_STATUS,),
    "DeviceConnected": (CacheTag.CONNECTIONS,),
    "DeviceDisconnected": (CacheTag.CONNECTIONS,),
    "DevicePaused": (CacheTag.CONNECTIONS,),
    "DeviceResumed": (CacheTag.CONNECTIONS,),
    "ConfigSaved": (CacheTag.CONFIG,),
    "DeviceRejected": (CacheTag.PENDING_DEVICES, CacheTag.PENDING_REQUESTS),
    "FolderRejected": (CacheTag.PENDING_FOLDERS, CacheTag.PENDING_REQUESTS),
}

# Consecutive unexpected poll errors logged at warning before dropping to debug.
LOGGED_POLL_ERRORS = 3

_REVIEW = NotificationAction(label="Review", action_id="open-pending-requests")


class EventNotice:
    """A notification derived from one event, before cooldown is applied."""

    def __init__(
        self,
        event_class: EventClass,
        subject_id: str,
        title: str,
        body: str,
        severity: NotificationSeverity,
        actions: Optional[List[NotificationAction]] = None,
    ):
        self.event_class = event_class
        self.subject_id = subject_id
        self.title = title
        self.body = body
        self.severity = severity
        self.actions = actions or []


def _short(value: Optional[str]) -> Optional[str]:
    return value[:7] if value else None


def derive_notice(event: DomainEvent) -> Optional[EventNotice]:
    """Map a daemon event to the notification it deserves, if any."""
    data = event.payload

    if event.type == "DeviceConnected":
        device = data.get("id") or event.subject_id or "unknown"
        name = data.get("deviceName") or _short(data.get("id")) or "Device"
        return EventNotice(
            EventClass.DEVICE_CONNECTED, device,
            "Device Connected", f"{name} is now online.",
            NotificationSeverity.SUCCESS,
        )

    if event.type == "DeviceDisconnected":
        device = data.get("id") or event.subject_id or "unknown"
        name = data.get("deviceName") or _short(data.get("id")) or "Device"
        return EventNotice(
            EventClass.DEVICE_DISCONNECTED, device,
            "Device Disconnected", f"{name} went offline.",
            NotificationSeverity.INFO,
        )

    if event.type == "FolderCompletion":
        if data.get("completion") != 100:
            return None
        folder = data.get("folder") or event.subject_id or "unknown"
        return EventNotice(
            EventClass.FOLDER_SYNC_COMPLETE, folder,
            "Sync Complete", f'Folder "{folder}" is now in sync.',
            NotificationSeverity.SUCCESS,
        )

    if event.type == "FolderErrors":
        errors = data.get("errors") or []
        if not errors:
            return None
        folder = data.get("folder") or event.subject_id or "unknown"
        return EventNotice(
            EventClass.FOLDER_ERRORS, folder,
            "Sync Errors", f'Folder "{folder}" has {len(errors)} error(s).',
            NotificationSeverity.ERROR,
        )

    if event.type == "DeviceRejected":
        device = data.get("device") or event.subject_id or "unknown"
        name = data.get("name") or _short(data.get("device")) or "Unknown"
        return EventNotice(
            EventClass.DEVICE_REJECTED, device,
            "New Device Wants to Connect", f"Device {name} is trying to connect.",
            NotificationSeverity.WARNING, [_REVIEW],
        )

    if event.type == "FolderRejected":
        folder = data.get("folder") or event.subject_id or "unknown"
        label = data.get("folderLabel") or data.get("folder") or "Unknown"
        from_device = _short(data.get("device")) or "A device"
        return EventNotice(
            EventClass.FOLDER_REJECTED, folder,
            "Folder Shared With You",
            f'Device {from_device} wants to share folder "{label}".',
            NotificationSeverity.INFO, [_REVIEW],
        )

    return None


class EventDispatcher:
    """Long-poll loop plus per-event invalidation and cooldown-limited notices."""

    def __init__(
        self,
        adapter: DaemonAdapter,
        cache: CacheInvalidator,
        notifier: Optional[Notifier] = None,
        config: Optional[DispatcherConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = adapter
        self.cache = cache
        self.notifier = notifier
        self.config = config or DispatcherConfig()
        self._clock = clock

        self.cursor = 0
        self._cooldowns: Dict[Tuple[str, EventClass], float] = {}
        self._recent: Deque[DomainEvent] = deque(maxlen=self.config.recent_events_limit)
        self._seen_order: Deque[int] = deque()
        self._seen_ids: Set[int] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self._events_processed = 0
        self._events_replayed = 0
        self._invalidations = 0
        self._notifications_fired = 0
        self._notifications_suppressed = 0
        self._poll_errors = 0
        self._consecutive_errors = 0
        self._last_poll_success_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the long-poll loop. Idempotent."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self.run_async(self._stop_event), name="event-dispatcher"
        )
        logger.info("Event dispatcher started (cursor=%d)", self.cursor)

    async def stop(self) -> None:
        """Stop the loop, aborting an in-flight long-poll. Idempotent."""
        task, self._task = self._task, None
        if self._stop_event is not None:
            self._stop_event.set()
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Event dispatcher stopped (cursor=%d)", self.cursor)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            got_events = await self.poll_once()
            if got_events:
                continue
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.config.idle_interval_seconds
                )
            except asyncio.TimeoutError:
                continue

    async def poll_once(self) -> bool:
        """
        One long-poll round. Returns True when a non-empty batch was
        processed (the caller should poll again immediately).
        """
        try:
            events = await self.adapter.poll_events(
                since=self.cursor,
                limit=self.config.poll_limit,
                timeout_seconds=self.config.poll_timeout_seconds,
            )
        except ResilienceError as exc:
            if exc.kind in EXPECTED_POLL_KINDS:
                logger.debug("Idle long-poll ended: %s", exc.kind.value)
                self._mark_poll_success()
                return False
            self._record_poll_error(exc)
            return False
        except Exception as exc:
            self._record_poll_error(exc)
            return False

        self._mark_poll_success()
        if not events:
            return False
        self.process_batch(events)
        return True

    def _mark_poll_success(self) -> None:
        self._consecutive_errors = 0
        self._last_poll_success_at = datetime.now(timezone.utc)

    def _record_poll_error(self, exc: BaseException) -> None:
        self._poll_errors += 1
        self._consecutive_errors += 1
        self._last_error = describe_error(exc)
        level = logging.WARNING if self._consecutive_errors <= LOGGED_POLL_ERRORS else logging.DEBUG
        logger.log(
            level,
            "Event poll failed (%d consecutive): %s",
            self._consecutive_errors, self._last_error,
        )

    # --- Processing ---

    def process_batch(self, events: List[DomainEvent]) -> None:
        """Advance the cursor and process events in ascending id order."""
        if not events:
            return
        ordered = sorted(events, key=lambda e: e.id)
        self.cursor = max(self.cursor, ordered[-1].id)
        for event in ordered:
            self.process_event(event)

    def process_event(self, event: DomainEvent) -> Optional[bool]:
        """
        Invalidate and (maybe) notify for one event.
        Returns None if the event is not notification-worthy (or a replay),
        else whether a notification fired.

        An id still in the replay window only invalidates; it is neither
        counted nor notified again.
        """
        for tag in INVALIDATION_MAP.get(event.type, ()):
            self.cache.invalidate(tag)
            self._invalidations += 1

        if event.id in self._seen_ids:
            self._events_replayed += 1
            logger.debug("Replayed event %d (%s), invalidated only", event.id, event.type)
            return None
        self._remember(event.id)

        self._events_processed += 1
        self._recent.append(event)

        notice = derive_notice(event)
        if notice is None:
            return None

        if not self._should_notify(notice.subject_id, notice.event_class):
            self._notifications_suppressed += 1
            logger.debug(
                "Suppressed %s notification for %s (cooldown)",
                notice.event_class.value, notice.subject_id,
            )
            return False

        self._notifications_fired += 1
        if self.notifier is not None:
            try:
                self.notifier.notify(
                    notice.title,
                    notice.body,
                    notice.severity,
                    actions=notice.actions,
                    subject_id=notice.subject_id,
                    event_class=notice.event_class.value,
                )
            except Exception:
                logger.exception("Failed to deliver notification: %s", notice.title)
        return True

    def _remember(self, event_id: int) -> None:
        self._seen_order.append(event_id)
        self._seen_ids.add(event_id)
        while len(self._seen_order) > self.config.replay_window:
            self._seen_ids.discard(self._seen_order.popleft())

    def reset_cursor(self) -> None:
        """
        Start over from event id 0. A restarted daemon numbers its events
        from 1 again, so the old cursor and replay window no longer apply.
        Cooldowns are kept.
        """
        logger.info("Event cursor reset (was %d)", self.cursor)
        self.cursor = 0
        self._seen_order.clear()
        self._seen_ids.clear()

    def cooldown_window(self, event_class: EventClass) -> float:
        return self.config.cooldown_windows.get(
            event_class.value, self.config.default_cooldown_seconds
        )

    def _should_notify(self, subject_id: str, event_class: EventClass) -> bool:
        key = (subject_id, event_class)
        now = self._clock()
        last = self._cooldowns.get(key)
        if last is not None and now - last < self.cooldown_window(event_class):
            return False
        self._cooldowns[key] = now
        if len(self._cooldowns) > self.config.cooldown_max_entries:
            self._prune_cooldowns(now)
        return True

    def _prune_cooldowns(self, now: float) -> None:
        """Drop entries whose window has elapsed; they can no longer suppress anything."""
        stale = [
            key for key, fired in self._cooldowns.items()
            if now - fired >= self.cooldown_window(key[1])
        ]
        for key in stale:
            del self._cooldowns[key]
        if stale:
            logger.debug("Pruned %d stale cooldown entries", len(stale))

    # --- Observability ---

    def cooldown_entries(self) -> List[CooldownEntry]:
        return [
            CooldownEntry(subject_id=subject, event_class=event_class, last_fired_at=fired)
            for (subject, event_class), fired in self._cooldowns.items()
        ]

    def recent_events(self, limit: Optional[int] = None) -> List[DomainEvent]:
        events = list(self._recent)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    @property
    def last_poll_success_at(self) -> Optional[datetime]:
        return self._last_poll_success_at

    def get_status(self) -> DispatcherStatus:
        return DispatcherStatus(
            running=self.running,
            cursor=self.cursor,
            events_processed=self._events_processed,
            events_replayed=self._events_replayed,
            invalidations=self._invalidations,
            notifications_fired=self._notifications_fired,
            notifications_suppressed=self._notifications_suppressed,
            poll_errors=self._poll_errors,
            cooldown_entries=len(self._cooldowns),
            last_poll_success_at=self._last_poll_success_at,
            last_error=self._last_error,
            cooldown_windows=dict(self.config.cooldown_windows),
        )
