"""
Health Monitor — registry of independently-scheduled named probes.

Behavioral Contract:
- Each check runs once on registration, then with fixed-delay scheduling:
  the next run is scheduled only after the current one (timeout included)
  completes. Runs of the same check never overlap.
- Probe failures never propagate; they become HealthStatus.error.
- A critical check alerts the user exactly once, on the run where its
  consecutive failures first reach the alert threshold.
- Subscribers receive a copy of the status map on subscribe and after every run.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from resilience_kernel.errors import ProbeTimeoutError, describe_error
from resilience_kernel.models.config import HealthConfig
from resilience_kernel.models.health import HealthCheck, HealthStatus, HealthSummary
from resilience_kernel.models.notifications import NotificationAction, NotificationSeverity
from resilience_kernel.notifications.center import Notifier
from resilience_kernel.observer.topic import Subscription, Topic

logger = logging.getLogger(__name__)

StatusMap = Dict[str, HealthStatus]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthMonitor:
    """Runs health checks and aggregates their status."""

    def __init__(
        self,
        config: Optional[HealthConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config or HealthConfig()
        self.notifier = notifier

        self._checks: Dict[str, HealthCheck] = {}
        self._status: StatusMap = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._alerted: set = set()
        self._topic: Topic[StatusMap] = Topic("health")

    # --- Registration ---

    def register(self, check: HealthCheck) -> None:
        """
        Register a check, run it immediately and keep it scheduled.
        Must be called from a running event loop.
        """
        if check.name in self._checks:
            logger.info("Replacing health check: %s", check.name)
            self.unregister(check.name)

        self._checks[check.name] = check
        self._status[check.name] = HealthStatus(
            name=check.name,
            critical=check.critical,
            healthy=True,
            consecutive_failures=0,
            last_check=_utcnow(),
        )
        self._locks[check.name] = asyncio.Lock()
        self._start(check)

        logger.info(
            "Health check registered: %s (interval=%ss, critical=%s)",
            check.name, check.interval, check.critical,
        )

    def unregister(self, name: str) -> None:
        """Cancel a check's schedule and drop its status. Unknown names are ignored."""
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
        existed = self._checks.pop(name, None) is not None
        self._status.pop(name, None)
        self._locks.pop(name, None)
        self._alerted.discard(name)
        if existed:
            logger.info("Health check unregistered: %s", name)

    def get_registered(self) -> List[HealthCheck]:
        return list(self._checks.values())

    # --- Scheduling ---

    def _start(self, check: HealthCheck) -> None:
        self._tasks[check.name] = asyncio.get_running_loop().create_task(
            self._schedule(check), name=f"health-check:{check.name}"
        )

    async def _schedule(self, check: HealthCheck) -> None:
        while self._checks.get(check.name) is check:
            await self.run_check(check.name)
            await asyncio.sleep(check.interval)

    def stop(self) -> None:
        """Cancel every scheduled run. Registered checks and statuses are kept."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Health monitor stopped")

    async def shutdown(self) -> None:
        """stop() and wait for the cancelled runs to unwind."""
        tasks = list(self._tasks.values())
        self.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def restart(self) -> None:
        self.stop()
        for check in self._checks.values():
            self._start(check)
        logger.info("Health monitor restarted")

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # --- Running checks ---

    async def run_check(self, name: str) -> Optional[HealthStatus]:
        """Run one check now, serialized with its scheduled runs."""
        check = self._checks.get(name)
        lock = self._locks.get(name)
        if check is None or lock is None:
            return None

        async with lock:
            if self._checks.get(name) is not check:
                return None

            loop = asyncio.get_running_loop()
            started = loop.time()
            timeout = check.timeout or self.config.probe_timeout_seconds
            error: Optional[str] = None
            try:
                healthy = await asyncio.wait_for(self._invoke(check), timeout)
                if not healthy:
                    error = "Check returned false"
            except asyncio.TimeoutError:
                error = describe_error(ProbeTimeoutError(name, timeout))
            except Exception as exc:
                error = describe_error(exc)

            if self._checks.get(name) is not check:
                return None  # Unregistered while the probe was running

            if error is None:
                self._handle_success(check, loop.time() - started)
            else:
                self._handle_failure(check, error)
            status = self._status[name]

        self._notify_listeners()
        return status

    async def run_all_checks(self) -> None:
        """Force one out-of-band run of every registered check."""
        await asyncio.gather(*(self.run_check(name) for name in list(self._checks)))

    @staticmethod
    async def _invoke(check: HealthCheck) -> bool:
        result = check.probe()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def _handle_success(self, check: HealthCheck, duration: float) -> None:
        current = self._status[check.name]
        now = _utcnow()
        self._status[check.name] = current.model_copy(update={
            "healthy": True,
            "consecutive_failures": 0,
            "last_check": now,
            "last_success": now,
            "error": None,
        })

        if not current.healthy:
            logger.info("Health check recovered: %s (%.3fs)", check.name, duration)
            if check.name in self._alerted:
                self._alerted.discard(check.name)
                self._send(
                    f"{check.name} restored",
                    "The connection has been re-established",
                    NotificationSeverity.SUCCESS,
                )

    def _handle_failure(self, check: HealthCheck, error: str) -> None:
        current = self._status[check.name]
        failures = current.consecutive_failures + 1
        now = _utcnow()
        self._status[check.name] = current.model_copy(update={
            "healthy": False,
            "consecutive_failures": failures,
            "last_check": now,
            "last_failure": now,
            "error": error,
        })

        if failures <= self.config.detailed_log_failures:
            logger.warning(
                "Health check failed: %s (%s, consecutive=%d, critical=%s)",
                check.name, error, failures, check.critical,
            )

        if check.critical and failures == self.config.alert_threshold:
            logger.error(
                "CRITICAL: Health check failing repeatedly: %s (consecutive=%d, error=%s)%s",
                check.name, failures, error, f" hint: {check.hint}" if check.hint else "",
            )
            self._alerted.add(check.name)
            self._send(
                f"Connection Issue: {check.name}",
                check.hint or error,
                NotificationSeverity.CRITICAL,
                [
                    NotificationAction(label="Retry", action_id=f"health:refresh:{check.name}"),
                    NotificationAction(label="Dismiss", action_id="dismiss"),
                ],
            )

    def _send(self, title, body, severity, actions=None) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(title, body, severity, actions=actions)
        except Exception:
            logger.exception("Health monitor failed to deliver notification: %s", title)

    # --- Subscribers ---

    def subscribe(self, listener: Callable[[StatusMap], None]) -> Subscription[StatusMap]:
        """
        Receive status snapshots, starting with the current one.

        The monitor holds the subscription weakly: keep the returned handle
        for as long as updates are wanted. A discarded handle (for example
        `monitor.subscribe(lambda s: ...)` on its own line) is collected and
        unsubscribed, with only a debug log. Call cancel() to unsubscribe
        explicitly.
        """
        subscription = self._topic.subscribe(listener)
        try:
            subscription.deliver(self.get_status())
        except Exception:
            logger.exception("Health monitor listener error")
        return subscription

    def _notify_listeners(self) -> None:
        self._topic.publish(self.get_status())

    # --- Read-only queries ---

    def get_status(self) -> StatusMap:
        return {name: status.model_copy() for name, status in self._status.items()}

    def get_check_status(self, name: str) -> Optional[HealthStatus]:
        status = self._status.get(name)
        return status.model_copy() if status is not None else None

    def is_healthy(self) -> bool:
        return all(s.healthy for s in self._status.values())

    def is_critical_healthy(self) -> bool:
        return all(s.healthy for s in self._status.values() if s.critical)

    def get_summary(self) -> HealthSummary:
        statuses = list(self._status.values())
        return HealthSummary(
            total=len(statuses),
            healthy=sum(1 for s in statuses if s.healthy),
            unhealthy=sum(1 for s in statuses if not s.healthy),
            critical=sum(1 for s in statuses if s.critical and not s.healthy),
        )
