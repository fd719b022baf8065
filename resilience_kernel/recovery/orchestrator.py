"""
Auto-Recovery Orchestrator — automated remediation for critical checks.

Watches the Health Monitor on its own tick. When a critical check has been
unhealthy for at least `alert_threshold` consecutive runs, the strategies
registered for it are attempted.

Dampening (a second, slower backoff layer than the tick):
- A strategy runs at most once per its current cooldown window.
- Success resets the cooldown to its base value and clears last_attempt_at.
- Failure doubles the cooldown, capped at max_cooldown.
- A strategy that raises or overruns its timeout is treated as a failure;
  the loop keeps running.
- Success after a failure the user was told about (an alert or an
  escalation) is announced with a "restored" notification.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from resilience_kernel.errors import describe_error
from resilience_kernel.health.monitor import HealthMonitor
from resilience_kernel.models.config import HealthConfig, RecoveryConfig
from resilience_kernel.models.notifications import NotificationSeverity
from resilience_kernel.models.recovery import RecoveryState, RecoveryStrategy
from resilience_kernel.notifications.center import Notifier

logger = logging.getLogger(__name__)


class _StrategyRuntime:
    """Mutable bookkeeping for one registered strategy."""

    def __init__(
        self,
        strategy: RecoveryStrategy,
        base_cooldown: float,
        max_cooldown: float,
        timeout: float,
    ):
        self.strategy = strategy
        self.base_cooldown = base_cooldown
        self.max_cooldown = max(max_cooldown, base_cooldown)
        self.timeout = timeout
        self.current_cooldown = base_cooldown
        self.last_attempt: Optional[float] = None   # Orchestrator clock
        self.last_attempt_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.attempts = 0
        self.successes = 0
        self.failures = 0
        self.is_recovering = False
        self.escalated = False            # User told that recovery keeps failing

    def in_cooldown(self, now: float) -> bool:
        if self.last_attempt is None:
            return False
        return now - self.last_attempt < self.current_cooldown

    def snapshot(self) -> RecoveryState:
        return RecoveryState(
            name=self.strategy.name,
            applies_to=self.strategy.applies_to,
            attempts=self.attempts,
            successes=self.successes,
            failures=self.failures,
            base_cooldown_seconds=self.base_cooldown,
            current_cooldown_seconds=self.current_cooldown,
            last_attempt_at=self.last_attempt_at,
            last_success_at=self.last_success_at,
            last_error=self.last_error,
            is_recovering=self.is_recovering,
        )


class AutoRecoveryOrchestrator:
    """Runs recovery strategies for failing critical checks."""

    def __init__(
        self,
        health_monitor: HealthMonitor,
        config: Optional[RecoveryConfig] = None,
        health_config: Optional[HealthConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.health_monitor = health_monitor
        self.config = config or RecoveryConfig()
        self.health_config = health_config or health_monitor.config
        self.notifier = notifier
        self.enabled = self.config.enabled
        self._clock = clock

        self._strategies: Dict[str, _StrategyRuntime] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def status(self) -> str:
        return "running" if self._task is not None and not self._task.done() else "stopped"

    # --- Registration ---

    def register(self, strategy: RecoveryStrategy) -> None:
        base = (
            strategy.cooldown
            if strategy.cooldown is not None
            else self.config.strategy_cooldown_seconds
        )
        cap = (
            strategy.max_cooldown
            if strategy.max_cooldown is not None
            else self.config.cooldown_cap_seconds
        )
        timeout = (
            strategy.timeout
            if strategy.timeout is not None
            else self.config.attempt_timeout_seconds
        )
        self._strategies[strategy.name] = _StrategyRuntime(strategy, base, cap, timeout)
        logger.info(
            "Recovery strategy registered: %s (for %s, cooldown=%ss)",
            strategy.name, strategy.applies_to, base,
        )

    def unregister(self, name: str) -> None:
        self._strategies.pop(name, None)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info("Auto-recovery %s", "enabled" if enabled else "disabled")

    # --- Lifecycle ---

    def start_monitoring(self, interval: Optional[float] = None) -> None:
        """Start the tick loop. Calling it while already running does nothing."""
        if self._task is not None and not self._task.done():
            return
        tick = interval if interval is not None else self.config.tick_interval_seconds
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self.run_async(tick, self._stop_event), name="auto-recovery"
        )
        logger.info("Auto-recovery monitoring started (interval=%ss)", tick)

    async def stop_monitoring(self) -> None:
        """Stop the tick loop and abort any attempt in flight. Idempotent."""
        task, self._task = self._task, None
        if self._stop_event is not None:
            self._stop_event.set()
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Auto-recovery monitoring stopped")

    async def run_async(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick until `stop_event` is set."""
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            try:
                await self.recover_once()
            except Exception:
                logger.exception("Auto-recovery tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    # --- Recovery ---

    async def recover_once(self) -> List[dict]:
        """
        Run a single recovery tick.
        Returns one result per strategy attempted.
        """
        if not self.enabled:
            return []

        results = []
        threshold = self.health_config.alert_threshold
        for name, status in self.health_monitor.get_status().items():
            if not status.critical or status.healthy:
                continue
            if status.consecutive_failures < threshold:
                continue

            for runtime in self._strategies_for(name):
                if runtime.is_recovering or runtime.in_cooldown(self._clock()):
                    continue
                results.append(await self._attempt(runtime))
        return results

    async def trigger_recovery(self, name: str) -> Optional[bool]:
        """
        Manually run one strategy now, ignoring its cooldown.
        Returns None if the strategy is unknown or already running.
        """
        runtime = self._strategies.get(name)
        if runtime is None:
            logger.warning("Recovery strategy not found: %s", name)
            return None
        if runtime.is_recovering:
            logger.warning("Recovery already in progress: %s", name)
            return None
        result = await self._attempt(runtime)
        return result["success"]

    def _strategies_for(self, check_name: str) -> List[_StrategyRuntime]:
        return [r for r in self._strategies.values() if r.strategy.applies_to == check_name]

    async def _attempt(self, runtime: _StrategyRuntime) -> dict:
        strategy = runtime.strategy
        runtime.is_recovering = True
        runtime.attempts += 1
        runtime.last_attempt = self._clock()
        runtime.last_attempt_at = datetime.now(timezone.utc)

        logger.info(
            "Attempting recovery: %s (attempt %d, cooldown=%ss)",
            strategy.name, runtime.attempts, runtime.current_cooldown,
        )

        surfaced = runtime.escalated or self._failure_surfaced(strategy.applies_to)
        success = False
        error: Optional[str] = None
        try:
            outcome = strategy.attempt()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=runtime.timeout)
            success = bool(outcome)
            if not success:
                error = "Recovery returned false"
        except asyncio.TimeoutError:
            error = f"Recovery timed out after {runtime.timeout}s"
            logger.error("Recovery failed: %s (%s)", strategy.name, error)
        except Exception as exc:
            error = describe_error(exc)
            logger.error("Recovery failed: %s (%s)", strategy.name, error)
        finally:
            runtime.is_recovering = False

        if success:
            runtime.successes += 1
            runtime.last_error = None
            runtime.last_attempt = None
            runtime.last_attempt_at = None
            runtime.current_cooldown = runtime.base_cooldown
            runtime.last_success_at = datetime.now(timezone.utc)
            runtime.escalated = False
            logger.info("Recovery successful: %s", strategy.name)
            if surfaced:
                self._send(
                    f"{strategy.applies_to} restored",
                    "The connection has been re-established",
                    NotificationSeverity.SUCCESS,
                )
        else:
            runtime.failures += 1
            runtime.last_error = error
            runtime.current_cooldown = min(
                max(runtime.current_cooldown * 2, runtime.base_cooldown),
                runtime.max_cooldown,
            )
            logger.warning(
                "Recovery unsuccessful: %s (%s); next attempt in %ss",
                strategy.name, error, runtime.current_cooldown,
            )
            if runtime.current_cooldown >= runtime.max_cooldown and not runtime.escalated:
                runtime.escalated = True
                self._send(
                    f"Automatic recovery is not working: {strategy.applies_to}",
                    f"{strategy.name} keeps failing ({error}). Manual action may be needed.",
                    NotificationSeverity.ERROR,
                )

        return {
            "strategy": strategy.name,
            "check": strategy.applies_to,
            "success": success,
            "error": error,
            "attempt": runtime.attempts,
            "next_cooldown_seconds": runtime.current_cooldown,
        }

    def _failure_surfaced(self, check_name: str) -> bool:
        """True when the monitor has alerted the user about this check."""
        status = self.health_monitor.get_status().get(check_name)
        if status is None or status.healthy:
            return False
        return status.consecutive_failures >= self.health_config.alert_threshold

    def _send(self, title: str, body: str, severity: NotificationSeverity) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(title, body, severity)
        except Exception:
            logger.exception("Auto-recovery failed to deliver notification: %s", title)

    # --- Observability ---

    def get_state(self) -> Dict[str, RecoveryState]:
        return {name: r.snapshot() for name, r in self._strategies.items()}

    def reset_state(self, name: str) -> bool:
        runtime = self._strategies.get(name)
        if runtime is None:
            return False
        runtime.last_attempt = None
        runtime.last_attempt_at = None
        runtime.current_cooldown = runtime.base_cooldown
        runtime.is_recovering = False
        return True
