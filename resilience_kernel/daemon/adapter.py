"""
Daemon adapter — the kernel's only door to the sync daemon.

`DaemonAdapter` is the protocol the kernel consumes; `SyncthingAdapter`
implements it over the daemon's REST API with httpx. Every transport
failure is classified into an ErrorKind here, at the boundary, so nothing
downstream has to guess from message text.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from resilience_kernel.errors import (
    ErrorKind,
    NonRetryableError,
    ResilienceError,
    TransientError,
)
from resilience_kernel.models.config import DaemonConfig
from resilience_kernel.models.events import DomainEvent

logger = logging.getLogger(__name__)

# Slack added on top of the server-side long-poll timeout.
LONG_POLL_SLACK_SECONDS = 5.0


class DaemonAdapter(Protocol):
    """Protocol for daemon access — pluggable backend."""

    async def probe(self) -> bool: ...

    async def poll_events(
        self, since: int, limit: int, timeout_seconds: int
    ) -> List[DomainEvent]: ...

    async def start_process(self) -> bool: ...

    async def restart_process(self) -> bool: ...


def classify_transport_error(exc: BaseException) -> ResilienceError:
    """Map an httpx exception to a structured kernel error."""
    if isinstance(exc, ResilienceError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return TransientError(f"Daemon request timed out: {exc}", kind=ErrorKind.TIMEOUT)
    if isinstance(exc, httpx.ConnectError):
        return TransientError(
            f"Cannot connect to daemon: {exc}", kind=ErrorKind.CONNECTION_REFUSED
        )
    if isinstance(exc, httpx.TransportError):
        return TransientError(f"Daemon connection aborted: {exc}", kind=ErrorKind.ABORTED)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, str(exc))
    if isinstance(exc, httpx.HTTPError):
        return TransientError(f"Daemon request failed: {exc}", kind=ErrorKind.UNKNOWN)
    return NonRetryableError(f"Unexpected daemon client error: {exc}", cause=exc)


def classify_status(status_code: int, message: str = "") -> ResilienceError:
    """5xx and 429 are worth retrying; other client errors are not."""
    text = message or f"Daemon returned HTTP {status_code}"
    if status_code >= 500 or status_code == 429:
        return TransientError(text, kind=ErrorKind.HTTP_STATUS, status_code=status_code)
    return NonRetryableError(text, kind=ErrorKind.HTTP_STATUS, status_code=status_code)


def parse_event(raw: Dict[str, Any]) -> DomainEvent:
    """Convert one raw daemon event into a DomainEvent."""
    data = raw.get("data")
    payload = data if isinstance(data, dict) else {"value": data}
    subject = payload.get("folder") or payload.get("id") or payload.get("device")

    time_value = raw.get("time")
    try:
        event_time = (
            datetime.fromisoformat(time_value.replace("Z", "+00:00"))
            if isinstance(time_value, str)
            else datetime.now(timezone.utc)
        )
    except ValueError:
        event_time = datetime.now(timezone.utc)

    return DomainEvent(
        id=int(raw["id"]),
        type=str(raw.get("type", "Unknown")),
        subject_id=str(subject) if subject is not None else None,
        payload=payload,
        time=event_time,
    )


class SyncthingAdapter:
    """
    DaemonAdapter over the Syncthing REST API.

    The adapter owns its httpx.AsyncClient unless one is passed in (tests
    pass a client built on httpx.MockTransport). An owned client is created
    on first request, so building an adapter opens nothing.
    """

    def __init__(
        self,
        config: Optional[DaemonConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or DaemonConfig()
        self._owns_client = client is None
        self._client: Optional[httpx.AsyncClient] = client
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.request_timeout_seconds,
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        if self.config.api_key:
            return {"X-API-Key": self.config.api_key}
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        kwargs: Dict[str, Any] = {"params": params, "headers": self._headers()}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc) from exc
        if response.status_code >= 400:
            raise classify_status(
                response.status_code,
                f"Daemon returned HTTP {response.status_code} for {method} {path}",
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        body = response.text
        if not body.strip():
            raise TransientError("Daemon returned an empty body", kind=ErrorKind.EMPTY_BODY)
        try:
            return json.loads(body)
        except ValueError as exc:
            raise NonRetryableError(
                f"Daemon returned undecodable JSON: {exc}",
                cause=exc,
                kind=ErrorKind.PARSE_ERROR,
            ) from exc

    # --- DaemonAdapter ---

    async def probe(self) -> bool:
        """Lightweight liveness call (`/rest/system/ping`)."""
        response = await self._request("GET", "/rest/system/ping")
        data = self._decode(response)
        return isinstance(data, dict) and data.get("ping") == "pong"

    async def get_system_status(self) -> dict:
        response = await self._request("GET", "/rest/system/status")
        data = self._decode(response)
        if not isinstance(data, dict):
            raise NonRetryableError("Unexpected system status payload", kind=ErrorKind.PARSE_ERROR)
        return data

    async def poll_events(
        self, since: int, limit: int, timeout_seconds: int
    ) -> List[DomainEvent]:
        """Long-poll `/rest/events`; blocks server-side up to timeout_seconds."""
        response = await self._request(
            "GET",
            "/rest/events",
            params={"since": since, "limit": limit, "timeout": timeout_seconds},
            timeout=timeout_seconds + LONG_POLL_SLACK_SECONDS,
        )
        if not response.text.strip():
            # An idle long-poll may close with nothing at all.
            raise TransientError("Empty long-poll response", kind=ErrorKind.PARSE_EMPTY)
        data = self._decode(response)
        if data is None:
            return []
        if not isinstance(data, list):
            raise NonRetryableError("Event stream payload is not a list", kind=ErrorKind.PARSE_ERROR)
        return [parse_event(raw) for raw in data if isinstance(raw, dict) and "id" in raw]

    async def restart_process(self) -> bool:
        """Ask a running daemon to restart itself."""
        await self._request("POST", "/rest/system/restart")
        logger.info("Daemon restart requested")
        return True

    async def start_process(self) -> bool:
        """Launch the configured daemon binary if it is not already running."""
        if self._process is not None and self._process.returncode is None:
            return True
        if not self.config.binary_path:
            logger.warning("Cannot start daemon: no binary_path configured")
            return False
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.binary_path,
                "serve",
                "--no-browser",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.error("Failed to start daemon %s: %s", self.config.binary_path, exc)
            return False
        logger.info("Daemon process started (pid=%s)", self._process.pid)
        return True

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
