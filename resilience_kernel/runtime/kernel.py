"""
Resilience Kernel — composition root.

Builds the breaker, retry executor, health monitor, recovery orchestrator
and event dispatcher around one daemon adapter, and wires the default
daemon checks and recovery strategy. Every collaborator is injected or
defaulted here; nothing below this module reaches for a global.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from resilience_kernel.breaker.circuit import CircuitBreaker
from resilience_kernel.daemon.adapter import DaemonAdapter, SyncthingAdapter
from resilience_kernel.errors import describe_error
from resilience_kernel.events.cache import CacheInvalidator
from resilience_kernel.events.dispatcher import EventDispatcher
from resilience_kernel.health.monitor import HealthMonitor
from resilience_kernel.models.breaker import CircuitState
from resilience_kernel.models.config import KernelConfig
from resilience_kernel.models.health import HealthCheck
from resilience_kernel.models.notifications import NotificationAction, NotificationSeverity
from resilience_kernel.models.recovery import RecoveryStrategy
from resilience_kernel.notifications.center import NotificationCenter, Notifier
from resilience_kernel.recovery.orchestrator import AutoRecoveryOrchestrator
from resilience_kernel.retry.executor import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DAEMON_CHECK = "daemon-api"
EVENT_STREAM_CHECK = "event-stream"
DAEMON_RECOVERY = "daemon-connection"

DAEMON_HINT = (
    "The sync daemon is not responding. It may have stopped or is still "
    "starting up; automatic recovery will try to restart it."
)


class ResilienceKernel:
    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        adapter: Optional[DaemonAdapter] = None,
        notifier: Optional[Notifier] = None,
        cache: Optional[CacheInvalidator] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or KernelConfig()
        self._owns_adapter = adapter is None
        self.adapter = adapter or SyncthingAdapter(self.config.daemon)
        self.notifier = notifier if notifier is not None else NotificationCenter(
            history_limit=self.config.notifications.history_limit,
            enabled=self.config.notifications.enabled,
            dedupe_window_seconds=self.config.notifications.dedupe_window_seconds,
            clock=clock,
        )
        self.cache = cache or CacheInvalidator()
        self._sleep = sleep

        self.breaker = CircuitBreaker(self.config.breaker, name="daemon", clock=clock)
        self.breaker.on_state_change(self._on_breaker_change)
        self.retry_executor = RetryExecutor(self.config.retry, sleep=sleep)
        self.health_monitor = HealthMonitor(self.config.health, notifier=self.notifier)
        self.orchestrator = AutoRecoveryOrchestrator(
            self.health_monitor,
            config=self.config.recovery,
            health_config=self.config.health,
            notifier=self.notifier,
            clock=clock,
        )
        self.dispatcher = EventDispatcher(
            self.adapter,
            self.cache,
            notifier=self.notifier,
            config=self.config.dispatcher,
            clock=clock,
        )

        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    # --- Guarded daemon calls ---

    async def call(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run a daemon operation under the breaker, retrying inside one breaker call."""
        return await self.breaker.execute(lambda: self.retry_executor.run(op))

    # --- Defaults ---

    def register_default_health_checks(self) -> None:
        """Register the daemon API check and the event stream freshness check."""
        health = self.config.health
        self.health_monitor.register(HealthCheck(
            name=DAEMON_CHECK,
            probe=self.adapter.probe,
            interval=health.daemon_check_interval_seconds,
            critical=True,
            timeout=health.probe_timeout_seconds,
            hint=DAEMON_HINT,
        ))
        self.health_monitor.register(HealthCheck(
            name=EVENT_STREAM_CHECK,
            probe=self._event_stream_fresh,
            interval=health.event_stream_check_interval_seconds,
            critical=False,
        ))

    def register_default_recovery_strategies(self) -> None:
        self.orchestrator.register(RecoveryStrategy(
            name=DAEMON_RECOVERY,
            applies_to=DAEMON_CHECK,
            attempt=self._recover_daemon_connection,
        ))

    def _event_stream_fresh(self) -> bool:
        last = self.dispatcher.last_poll_success_at or self._started_at
        if last is None:
            return False
        age = (datetime.now(timezone.utc) - last).total_seconds()
        return age <= self.config.health.event_stream_stale_after_seconds

    async def _ping(self) -> bool:
        try:
            return await self.adapter.probe()
        except Exception as exc:
            logger.debug("Daemon ping failed: %s", describe_error(exc))
            return False

    async def _recover_daemon_connection(self) -> bool:
        """Ping; if the daemon is gone, restart (or start) it and ping again."""
        if await self._ping():
            logger.info("Daemon reachable again, resetting circuit breaker")
            self.breaker.reset()
            return True

        try:
            relaunched = await self.adapter.restart_process()
        except Exception as exc:
            logger.info("Daemon restart request failed (%s), starting process", describe_error(exc))
            relaunched = await self.adapter.start_process()
        if not relaunched:
            return False

        # A relaunched daemon numbers its events from 1 again.
        self.dispatcher.reset_cursor()
        await self._sleep(self.config.recovery.restart_settle_seconds)
        if await self._ping():
            self.breaker.reset()
            return True
        return False

    def _on_breaker_change(self, old_state: CircuitState, new_state: CircuitState) -> None:
        # Once per outage: a failed half-open trial re-opens silently.
        if old_state != CircuitState.CLOSED or new_state != CircuitState.OPEN:
            return
        self.notifier.notify(
            "Service Temporarily Unavailable",
            "Too many failures detected. Please wait before retrying.",
            NotificationSeverity.ERROR,
            actions=[NotificationAction(label="Reset", action_id="breaker:reset")],
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start checks, recovery ticks and the event loop. Idempotent."""
        if self._running:
            return
        self._running = True
        self._started_at = datetime.now(timezone.utc)

        if not self.health_monitor.get_registered():
            self.register_default_health_checks()
        elif not self.health_monitor.running:
            self.health_monitor.restart()
        if not self.orchestrator.get_state():
            self.register_default_recovery_strategies()

        self.orchestrator.start_monitoring()
        self.dispatcher.start()
        logger.info("Resilience kernel started (daemon=%s)", self.config.daemon.base_url)

    async def stop(self) -> None:
        """Stop everything and wait for background tasks to unwind. Idempotent."""
        if not self._running:
            return
        self._running = False
        await self.dispatcher.stop()
        await self.orchestrator.stop_monitoring()
        await self.health_monitor.shutdown()
        logger.info("Resilience kernel stopped")

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_adapter and isinstance(self.adapter, SyncthingAdapter):
            await self.adapter.aclose()

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "breaker": self.breaker.get_state().model_dump(mode="json"),
            "health": self.health_monitor.get_summary().model_dump(),
            "recovery": {
                "status": self.orchestrator.status,
                "enabled": self.orchestrator.enabled,
            },
            "events": self.dispatcher.get_status().model_dump(mode="json"),
        }
