"""Tests for the Auto-Recovery Orchestrator."""

import asyncio
from datetime import datetime, timezone

import pytest

from resilience_kernel.models.config import HealthConfig, RecoveryConfig
from resilience_kernel.models.health import HealthStatus
from resilience_kernel.models.notifications import NotificationSeverity
from resilience_kernel.models.recovery import RecoveryStrategy
from resilience_kernel.recovery.orchestrator import AutoRecoveryOrchestrator


class StubMonitor:
    """Stands in for HealthMonitor: statuses are set directly by the test."""

    def __init__(self, alert_threshold=3):
        self.config = HealthConfig(alert_threshold=alert_threshold)
        self.statuses = {}

    def set(self, name, healthy=False, failures=3, critical=True):
        self.statuses[name] = HealthStatus(
            name=name,
            critical=critical,
            healthy=healthy,
            consecutive_failures=failures,
            last_check=datetime.now(timezone.utc),
        )

    def get_status(self):
        return dict(self.statuses)


class Remedy:
    """Strategy body with a scripted outcome."""

    def __init__(self, succeed=False, error=None):
        self.succeed = succeed
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.succeed


def _orchestrator(monitor, clock, notifier=None, **overrides) -> AutoRecoveryOrchestrator:
    config = RecoveryConfig(**{
        "strategy_cooldown_seconds": 30,
        "cooldown_cap_seconds": 600,
        **overrides,
    })
    return AutoRecoveryOrchestrator(monitor, config=config, notifier=notifier, clock=clock)


class TestEligibility:
    @pytest.mark.asyncio
    async def test_below_threshold_is_not_attempted(self, clock):
        monitor = StubMonitor(alert_threshold=3)
        monitor.set("daemon-api", failures=2)
        remedy = Remedy()
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        assert await orchestrator.recover_once() == []
        assert remedy.calls == 0

    @pytest.mark.asyncio
    async def test_attempted_at_threshold(self, clock):
        monitor = StubMonitor(alert_threshold=3)
        monitor.set("daemon-api", failures=3)
        remedy = Remedy(succeed=True)
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        results = await orchestrator.recover_once()

        assert len(results) == 1
        assert results[0]["strategy"] == "daemon-connection"
        assert results[0]["check"] == "daemon-api"
        assert results[0]["success"] is True
        assert remedy.calls == 1

    @pytest.mark.asyncio
    async def test_non_critical_and_healthy_checks_are_ignored(self, clock):
        monitor = StubMonitor()
        monitor.set("event-stream", failures=10, critical=False)
        monitor.set("daemon-api", healthy=True, failures=0)
        remedy = Remedy()
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("stream", "event-stream", remedy))
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        assert await orchestrator.recover_once() == []
        assert remedy.calls == 0

    @pytest.mark.asyncio
    async def test_disabled_does_nothing(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        remedy = Remedy()
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        orchestrator.set_enabled(False)
        assert await orchestrator.recover_once() == []

        orchestrator.set_enabled(True)
        assert len(await orchestrator.recover_once()) == 1


class TestDampening:
    @pytest.mark.asyncio
    async def test_failure_doubles_cooldown(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        remedy = Remedy(succeed=False)
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        results = await orchestrator.recover_once()
        assert results[0]["success"] is False
        assert results[0]["error"] == "Recovery returned false"
        assert results[0]["next_cooldown_seconds"] == 60

        assert await orchestrator.recover_once() == []
        clock.advance(59)
        assert await orchestrator.recover_once() == []
        clock.advance(1)
        results = await orchestrator.recover_once()
        assert results[0]["next_cooldown_seconds"] == 120
        assert remedy.calls == 2

    @pytest.mark.asyncio
    async def test_cooldown_capped_and_escalated_once(self, clock, notifier):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        orchestrator = _orchestrator(monitor, clock, notifier=notifier, cooldown_cap_seconds=100)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", Remedy()))

        cooldowns = []
        for _ in range(4):
            results = await orchestrator.recover_once()
            cooldowns.append(results[0]["next_cooldown_seconds"])
            clock.advance(100)

        assert cooldowns == [60, 100, 100, 100]
        assert notifier.titles() == ["Automatic recovery is not working: daemon-api"]
        assert notifier.sent[0]["severity"] == NotificationSeverity.ERROR

    @pytest.mark.asyncio
    async def test_success_resets_cooldown(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        remedy = Remedy(succeed=False)
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        await orchestrator.recover_once()
        clock.advance(60)
        remedy.succeed = True
        await orchestrator.recover_once()

        state = orchestrator.get_state()["daemon-connection"]
        assert state.current_cooldown_seconds == 30
        assert state.last_attempt_at is None
        assert state.last_success_at is not None
        assert (state.attempts, state.successes, state.failures) == (2, 1, 1)

        # No cooldown after success: still unhealthy means try again.
        assert len(await orchestrator.recover_once()) == 1

    @pytest.mark.asyncio
    async def test_raising_strategy_counts_as_failure(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy(
            "daemon-connection", "daemon-api", Remedy(error=RuntimeError("spawn failed"))
        ))

        results = await orchestrator.recover_once()
        assert results[0]["success"] is False
        assert results[0]["error"] == "spawn failed"
        assert orchestrator.get_state()["daemon-connection"].last_error == "spawn failed"

    @pytest.mark.asyncio
    async def test_per_strategy_cooldown_override(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy(
            "daemon-connection", "daemon-api", Remedy(), cooldown=5, max_cooldown=8,
        ))

        results = await orchestrator.recover_once()
        assert results[0]["next_cooldown_seconds"] == 8

    @pytest.mark.asyncio
    async def test_reset_state_clears_cooldown(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", Remedy()))

        await orchestrator.recover_once()
        assert orchestrator.reset_state("daemon-connection")
        assert not orchestrator.reset_state("unknown")
        assert len(await orchestrator.recover_once()) == 1


class TestManualTrigger:
    @pytest.mark.asyncio
    async def test_trigger_ignores_cooldown(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        remedy = Remedy(succeed=False)
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        await orchestrator.recover_once()
        remedy.succeed = True
        assert await orchestrator.trigger_recovery("daemon-connection") is True
        assert remedy.calls == 2

    @pytest.mark.asyncio
    async def test_trigger_unknown_strategy(self, clock):
        orchestrator = _orchestrator(StubMonitor(), clock)
        assert await orchestrator.trigger_recovery("nope") is None

    @pytest.mark.asyncio
    async def test_in_progress_strategy_is_skipped(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()
            return True

        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", slow))

        running = asyncio.ensure_future(orchestrator.trigger_recovery("daemon-connection"))
        await asyncio.sleep(0)
        assert orchestrator.get_state()["daemon-connection"].is_recovering

        assert await orchestrator.recover_once() == []
        assert await orchestrator.trigger_recovery("daemon-connection") is None

        release.set()
        assert await running is True
        assert calls == [1]


class TestMonitoringLoop:
    @pytest.mark.asyncio
    async def test_loop_attempts_and_stops(self, clock, eventually):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        remedy = Remedy(succeed=True)
        orchestrator = _orchestrator(monitor, clock)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        orchestrator.start_monitoring(interval=0.01)
        orchestrator.start_monitoring(interval=0.01)
        assert orchestrator.status == "running"
        try:
            await eventually(lambda: remedy.calls >= 2)
        finally:
            await orchestrator.stop_monitoring()
            await orchestrator.stop_monitoring()

        assert orchestrator.status == "stopped"
        calls = remedy.calls
        await asyncio.sleep(0.03)
        assert remedy.calls == calls


class TestRestoredNotification:
    @pytest.mark.asyncio
    async def test_success_for_alerted_check_notifies(self, clock, notifier):
        monitor = StubMonitor(alert_threshold=3)
        monitor.set("daemon-api", failures=3)
        orchestrator = _orchestrator(monitor, clock, notifier=notifier)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", Remedy(succeed=True)))

        results = await orchestrator.recover_once()

        assert results[0]["success"] is True
        assert notifier.titles() == ["daemon-api restored"]
        assert notifier.sent[0]["severity"] == NotificationSeverity.SUCCESS

    @pytest.mark.asyncio
    async def test_manual_success_without_alert_is_silent(self, clock, notifier):
        monitor = StubMonitor(alert_threshold=3)
        monitor.set("daemon-api", failures=1)
        orchestrator = _orchestrator(monitor, clock, notifier=notifier)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", Remedy(succeed=True)))

        assert await orchestrator.trigger_recovery("daemon-connection") is True
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_success_after_escalation_notifies(self, clock, notifier):
        monitor = StubMonitor()
        monitor.set("daemon-api")
        remedy = Remedy(succeed=False)
        orchestrator = _orchestrator(monitor, clock, notifier=notifier, cooldown_cap_seconds=60)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", remedy))

        await orchestrator.recover_once()
        monitor.set("daemon-api", failures=0)
        remedy.succeed = True
        assert await orchestrator.trigger_recovery("daemon-connection") is True

        assert notifier.titles() == [
            "Automatic recovery is not working: daemon-api",
            "daemon-api restored",
        ]


class TestAttemptTimeout:
    @pytest.mark.asyncio
    async def test_hung_strategy_times_out_as_failure(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")

        async def hang():
            await asyncio.Event().wait()

        orchestrator = _orchestrator(monitor, clock, attempt_timeout_seconds=0.05)
        orchestrator.register(RecoveryStrategy("daemon-connection", "daemon-api", hang))

        results = await orchestrator.recover_once()

        assert results[0]["success"] is False
        assert results[0]["error"] == "Recovery timed out after 0.05s"
        state = orchestrator.get_state()["daemon-connection"]
        assert state.failures == 1
        assert not state.is_recovering

    @pytest.mark.asyncio
    async def test_per_strategy_timeout_override(self, clock):
        monitor = StubMonitor()
        monitor.set("daemon-api")

        async def slow():
            await asyncio.sleep(0.2)
            return True

        orchestrator = _orchestrator(monitor, clock, attempt_timeout_seconds=0.05)
        orchestrator.register(RecoveryStrategy(
            "daemon-connection", "daemon-api", slow, timeout=5,
        ))

        assert await orchestrator.trigger_recovery("daemon-connection") is True
