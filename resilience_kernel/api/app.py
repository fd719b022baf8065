"""
Resilience Kernel API — FastAPI diagnostics endpoints.

Exposes the kernel's state via a REST API for:
- Health check status and forced refresh
- Circuit breaker inspection and reset
- Auto-recovery control
- Event stream status
- Notification history and cache generations
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from resilience_kernel.models.config import KernelConfig
from resilience_kernel.notifications.center import NotificationCenter
from resilience_kernel.runtime.kernel import ResilienceKernel


# --- Request/Response Models ---

class RecoveryEnabledRequest(BaseModel):
    enabled: bool


class RecoveryTriggerResponse(BaseModel):
    strategy: str
    success: bool


# --- Application Factory ---

def create_app(
    kernel: Optional[ResilienceKernel] = None,
    config: Optional[KernelConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    rk = kernel or ResilienceKernel(config or KernelConfig())

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        await rk.start()
        try:
            yield
        finally:
            await rk.aclose()

    app = FastAPI(
        title="Resilience Kernel API",
        description="Health, recovery and event stream diagnostics for the sync daemon",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store the kernel on app state for access in endpoints
    app.state.kernel = rk

    @app.get("/status")
    def kernel_status():
        """Aggregate kernel status."""
        return rk.get_status()

    # === HEALTH ===

    @app.get("/health")
    def get_health():
        """Status of every registered check."""
        return {
            name: status.model_dump(mode="json")
            for name, status in rk.health_monitor.get_status().items()
        }

    @app.get("/health/summary")
    def get_health_summary():
        summary = rk.health_monitor.get_summary()
        return {
            **summary.model_dump(),
            "healthy_overall": rk.health_monitor.is_healthy(),
            "critical_healthy": rk.health_monitor.is_critical_healthy(),
        }

    @app.get("/health/{name}")
    def get_check(name: str):
        """Status of one check."""
        status = rk.health_monitor.get_check_status(name)
        if status is None:
            raise HTTPException(404, "Health check not found")
        return status.model_dump(mode="json")

    @app.post("/health/refresh")
    async def refresh_health():
        """Run every check now, out of band."""
        await rk.health_monitor.run_all_checks()
        return {
            name: status.model_dump(mode="json")
            for name, status in rk.health_monitor.get_status().items()
        }

    # === CIRCUIT BREAKER ===

    @app.get("/breaker")
    def get_breaker():
        return rk.breaker.get_state().model_dump(mode="json")

    @app.post("/breaker/reset")
    def reset_breaker():
        """Operator override: force the breaker closed."""
        rk.breaker.reset()
        return rk.breaker.get_state().model_dump(mode="json")

    # === RECOVERY ===

    @app.get("/recovery")
    def get_recovery():
        return {
            "status": rk.orchestrator.status,
            "enabled": rk.orchestrator.enabled,
            "strategies": {
                name: state.model_dump(mode="json")
                for name, state in rk.orchestrator.get_state().items()
            },
        }

    @app.post("/recovery/{name}/trigger")
    async def trigger_recovery(name: str):
        """Run a recovery strategy now, ignoring its cooldown."""
        if name not in rk.orchestrator.get_state():
            raise HTTPException(404, "Recovery strategy not found")
        result = await rk.orchestrator.trigger_recovery(name)
        if result is None:
            raise HTTPException(409, "Recovery already in progress")
        return RecoveryTriggerResponse(strategy=name, success=result)

    @app.post("/recovery/{name}/reset")
    def reset_recovery(name: str):
        """Clear a strategy's cooldown."""
        if not rk.orchestrator.reset_state(name):
            raise HTTPException(404, "Recovery strategy not found")
        return rk.orchestrator.get_state()[name].model_dump(mode="json")

    @app.put("/recovery/enabled")
    def set_recovery_enabled(req: RecoveryEnabledRequest):
        rk.orchestrator.set_enabled(req.enabled)
        return {"enabled": rk.orchestrator.enabled}

    # === EVENTS ===

    @app.get("/events/status")
    def get_event_status():
        """Event dispatcher counters and cursor."""
        return rk.dispatcher.get_status().model_dump(mode="json")

    @app.get("/events/recent")
    def get_recent_events(limit: int = 50):
        return [e.model_dump(mode="json") for e in rk.dispatcher.recent_events(limit)]

    # === NOTIFICATIONS / CACHE ===

    @app.get("/notifications")
    def get_notifications(limit: int = 50):
        """Recently shown notifications (newest last)."""
        if not isinstance(rk.notifier, NotificationCenter):
            return []
        return [n.model_dump(mode="json") for n in rk.notifier.recent(limit)]

    @app.get("/cache")
    def get_cache_generations():
        return rk.cache.generations()

    return app


# Default application instance
app = create_app()
