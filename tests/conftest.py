"""
Pytest configuration and shared fixtures.

Settings are reloaded before any app imports so test env vars are used.
"""

import asyncio
from collections import namedtuple
from datetime import datetime, timedelta, timezone

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chat_relay.config import get_settings
get_settings.cache_clear()

from chat_relay.storage import InMemoryMessageStore, SqlMessageStore, build_engine


Address = namedtuple("Address", ["host", "port"])


class FakeClock:
    """Settable clock handed to stores and sweepers."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeWebSocket:
    """
    Stand-in for a Starlette WebSocket as seen by the transport.

    Records every frame sent. With fail=True every send raises. With
    blocking=True sends wait until release() is called.
    """

    def __init__(self, host: str = "127.0.0.1", headers: dict = None, fail: bool = False, blocking: bool = False):
        self.client = Address(host, 50000)
        self.headers = headers or {}
        self.frames = []
        self.close_codes = []
        self.fail = fail
        self.blocking = blocking
        self.send_started = asyncio.Event()
        self._released = asyncio.Event()

    def release(self) -> None:
        self._released.set()

    async def send_json(self, frame) -> None:
        self.send_started.set()
        if self.fail:
            raise RuntimeError("connection reset")
        if self.blocking:
            await self._released.wait()
        self.frames.append(frame)

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)

    def events(self, name: str) -> list:
        return [frame["data"] for frame in self.frames if frame["event"] == name]


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(params=["sql", "memory"])
def store(request, clock):
    """Each store backing, with a fresh database and the fake clock."""
    if request.param == "sql":
        return SqlMessageStore(build_engine("sqlite://"), clock=clock)
    return InMemoryMessageStore(clock=clock)


@pytest.fixture
def sql_store(clock):
    return SqlMessageStore(build_engine("sqlite://"), clock=clock)
