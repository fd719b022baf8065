"""Shared fakes for the resilience kernel tests."""

import asyncio
from typing import List, Optional

import pytest

from resilience_kernel.errors import ErrorKind, TransientError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Notifier that only remembers what it was asked to show."""

    def __init__(self):
        self.sent: List[dict] = []

    def notify(self, title, body, severity="info", actions=None, subject_id=None, event_class=None):
        self.sent.append({
            "title": title,
            "body": body,
            "severity": severity,
            "actions": actions or [],
            "subject_id": subject_id,
            "event_class": event_class,
        })
        return None

    def titles(self) -> List[str]:
        return [n["title"] for n in self.sent]


class FakeAdapter:
    """
    In-memory DaemonAdapter. `alive` controls probe(); poll results are
    consumed from `poll_results` (lists of events or exceptions to raise).
    """

    def __init__(self, alive: bool = True, restart_works: bool = True):
        self.alive = alive
        self.restart_works = restart_works
        self.restart_raises = False
        self.poll_results: list = []
        self.poll_calls: List[dict] = []
        self.probe_calls = 0
        self.restart_calls = 0
        self.start_calls = 0

    async def probe(self) -> bool:
        self.probe_calls += 1
        if not self.alive:
            raise TransientError("Cannot connect to daemon", kind=ErrorKind.CONNECTION_REFUSED)
        return True

    async def poll_events(self, since: int, limit: int, timeout_seconds: int):
        self.poll_calls.append({"since": since, "limit": limit, "timeout": timeout_seconds})
        if self.poll_results:
            result = self.poll_results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        await asyncio.sleep(0.005)
        return []

    async def restart_process(self) -> bool:
        self.restart_calls += 1
        if self.restart_raises:
            raise TransientError("Cannot connect to daemon", kind=ErrorKind.CONNECTION_REFUSED)
        if self.restart_works:
            self.alive = True
        return self.restart_works

    async def start_process(self) -> bool:
        self.start_calls += 1
        if self.restart_works:
            self.alive = True
        return self.restart_works


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def eventually():
    """Await until `predicate()` is true, failing after `timeout` seconds."""

    async def _eventually(predicate, timeout: float = 2.0, message: Optional[str] = None):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(message or "condition not met in time")
            await asyncio.sleep(0.005)

    return _eventually
