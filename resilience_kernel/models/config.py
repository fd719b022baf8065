"""Kernel configuration — every tunable of the resilience core."""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class DaemonConfig(BaseModel):
    """How to reach (and, if needed, launch) the sync daemon."""

    base_url: str = "http://127.0.0.1:8384"
    api_key: Optional[str] = None
    binary_path: Optional[str] = None       # Used by start_process() only
    request_timeout_seconds: float = Field(gt=0, default=10.0)


class CircuitBreakerConfig(BaseModel):
    """Configuration for the daemon circuit breaker."""

    failure_threshold: int = Field(ge=1, default=5)
    open_cooldown_seconds: float = Field(ge=0, default=30.0)


class RetryPolicy(BaseModel):
    """Bounded attempts with exponential backoff and jitter."""

    max_attempts: int = Field(ge=1, default=3)
    base_delay: float = Field(ge=0, default=1.0)       # Seconds
    max_delay: float = Field(ge=0, default=30.0)       # Seconds
    jitter_ratio: float = Field(ge=0, le=1, default=0.25)


class HealthConfig(BaseModel):
    """Configuration for the Health Monitor and its default checks."""

    alert_threshold: int = Field(ge=1, default=3)
    probe_timeout_seconds: float = Field(gt=0, default=10.0)
    detailed_log_failures: int = Field(ge=0, default=3)
    daemon_check_interval_seconds: float = Field(gt=0, default=10.0)
    event_stream_check_interval_seconds: float = Field(gt=0, default=60.0)
    event_stream_stale_after_seconds: float = Field(gt=0, default=120.0)


class RecoveryConfig(BaseModel):
    """Configuration for the Auto-Recovery Orchestrator."""

    enabled: bool = True
    tick_interval_seconds: float = Field(gt=0, default=10.0)
    strategy_cooldown_seconds: float = Field(ge=0, default=30.0)
    cooldown_cap_seconds: float = Field(ge=0, default=600.0)
    restart_settle_seconds: float = Field(ge=0, default=3.0)
    attempt_timeout_seconds: float = Field(gt=0, default=60.0)


def _default_cooldown_windows() -> Dict[str, float]:
    return {
        "device_connected": 60.0,
        "device_disconnected": 60.0,
        "folder_sync_complete": 30.0,
        "folder_errors": 30.0,
        "device_rejected": 0.0,
        "folder_rejected": 0.0,
    }


class DispatcherConfig(BaseModel):
    """Configuration for the Event Dispatcher's long-poll loop."""

    poll_limit: int = Field(ge=1, default=100)
    poll_timeout_seconds: int = Field(ge=0, default=30)
    idle_interval_seconds: float = Field(ge=0, default=1.0)
    cooldown_windows: Dict[str, float] = Field(default_factory=_default_cooldown_windows)
    default_cooldown_seconds: float = Field(ge=0, default=30.0)
    cooldown_max_entries: int = Field(ge=1, default=1024)
    recent_events_limit: int = Field(ge=0, default=100)
    replay_window: int = Field(ge=1, default=1024)         # Event ids remembered for replay detection


class NotificationConfig(BaseModel):
    """Configuration for the Notification Center."""

    enabled: bool = True
    history_limit: int = Field(ge=1, default=100)
    dedupe_window_seconds: float = Field(ge=0, default=5.0)   # Same title and body shown once


class KernelConfig(BaseModel):
    """Top-level configuration aggregate."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
