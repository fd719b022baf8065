"""Circuit breaker state."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CircuitState(str, Enum):
    CLOSED = "closed"           # Calls flow normally
    OPEN = "open"               # Calls fail fast until the cooldown elapses
    HALF_OPEN = "half_open"     # A single trial call decides the next state


class CircuitBreakerState(BaseModel):
    """Immutable snapshot of a circuit breaker, for diagnostics and the UI."""

    model_config = ConfigDict(frozen=True)

    state: CircuitState
    failure_count: int = 0
    success_count: int = 0
    opened_at: Optional[float] = None       # Breaker clock (monotonic seconds)
    trial_in_flight: bool = False
    failure_threshold: int
    open_cooldown_seconds: float
