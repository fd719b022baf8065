"""Health check registration and status models."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel


@dataclass
class HealthCheck:
    """
    A periodic, independently-scheduled liveness test.

    `probe` may be a plain function or a coroutine function; it returns True
    when the aspect it checks is healthy and may raise on failure.
    """

    name: str
    probe: Callable[[], Any]
    interval: float                         # Seconds between runs (fixed delay)
    critical: bool = False
    timeout: Optional[float] = None         # Falls back to the monitor default
    hint: Optional[str] = None              # Shown to the user on critical alert


class HealthStatus(BaseModel):
    """Latest observed state of one registered check."""

    name: str
    critical: bool = False
    healthy: bool = True
    consecutive_failures: int = 0
    last_check: datetime
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    error: Optional[str] = None


class HealthSummary(BaseModel):
    total: int
    healthy: int
    unhealthy: int
    critical: int                           # Critical checks currently unhealthy
