"""Resilience kernel data models."""

from resilience_kernel.models.breaker import CircuitBreakerState, CircuitState
from resilience_kernel.models.config import (
    CircuitBreakerConfig,
    DaemonConfig,
    DispatcherConfig,
    HealthConfig,
    KernelConfig,
    NotificationConfig,
    RecoveryConfig,
    RetryPolicy,
)
from resilience_kernel.models.events import (
    CacheTag,
    CooldownEntry,
    DispatcherStatus,
    DomainEvent,
    EventClass,
)
from resilience_kernel.models.health import HealthCheck, HealthStatus, HealthSummary
from resilience_kernel.models.notifications import (
    Notification,
    NotificationAction,
    NotificationSeverity,
)
from resilience_kernel.models.recovery import RecoveryState, RecoveryStrategy

__all__ = [
    "CacheTag",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitState",
    "CooldownEntry",
    "DaemonConfig",
    "DispatcherConfig",
    "DispatcherStatus",
    "DomainEvent",
    "EventClass",
    "HealthCheck",
    "HealthConfig",
    "HealthStatus",
    "HealthSummary",
    "KernelConfig",
    "Notification",
    "NotificationAction",
    "NotificationConfig",
    "NotificationSeverity",
    "RecoveryConfig",
    "RecoveryState",
    "RecoveryStrategy",
    "RetryPolicy",
]
