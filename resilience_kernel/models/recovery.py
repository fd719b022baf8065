"""Recovery strategy registration and observable state."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel


@dataclass
class RecoveryStrategy:
    """
    An automated remediation tied to one critical health check.

    `attempt` returns True when the remediation worked. `cooldown`,
    `max_cooldown` and `timeout` fall back to the orchestrator's configured
    defaults.
    """

    name: str
    applies_to: str                         # HealthCheck name
    attempt: Callable[[], Any]
    cooldown: Optional[float] = None
    max_cooldown: Optional[float] = None
    timeout: Optional[float] = None


class RecoveryState(BaseModel):
    """Snapshot of a strategy's backoff bookkeeping."""

    name: str
    applies_to: str
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    base_cooldown_seconds: float
    current_cooldown_seconds: float
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_recovering: bool = False
