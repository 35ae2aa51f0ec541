"""
Shared fixtures for Fleet Telemetry tests.
"""

import builtins
import contextlib
import os
import tempfile
from typing import Any, Dict, List

import pytest

from fleet_telemetry import database
from fleet_telemetry.agents import AgentState
from fleet_telemetry.event_store import EventStore

T0 = 1_700_000_000_000  # Fixed epoch ms used as "now" by the fake clock


class FakeClock:
    """Epoch-milliseconds clock that only moves when a test advances it."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class DummyWS:
    """
    Minimal async WebSocket-like stub recording what was sent.
    """

    def __init__(self, closed: bool = False, raise_exc: BaseException = None):
        self.closed = closed
        self._raise_exc = raise_exc
        self.sent: List[str] = []
        self.close_calls = 0

    async def send_str(self, text: str):
        if self._raise_exc:
            raise self._raise_exc
        self.sent.append(text)

    async def close(self, code=None, message=None):
        self.close_calls += 1
        self.closed = True

    def messages(self) -> List[Dict[str, Any]]:
        import json
        return [json.loads(text) for text in self.sent]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db():
    """Create temporary test database with full schema."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    try:
        database.init_db(path)
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
async def store(temp_db, clock):
    """A connected, ready event store over the temporary database."""
    event_store = EventStore(temp_db, clock=clock)
    assert await event_store.connect()
    event_store.mark_ready()
    try:
        yield event_store
    finally:
        event_store.close()


@pytest.fixture
def agents():
    return [
        AgentState(id="warrior1", owner="acct-a", ctype="warrior", level=3, xp=40, gold=1000, bank_gold=5000,
                   map="main", x=10.4, y=-3.6),
        AgentState(id="priest1", owner="acct-a", ctype="priest", level=2, xp=10, gold=250, bank_gold=4000),
        AgentState(id="merchant1", owner="acct-b", ctype="merchant", level=1, xp=0, gold=50, server="USIII"),
    ]


@pytest.fixture
def levels():
    return {1: 100, 2: 200, 3: 400, 4: 800}
