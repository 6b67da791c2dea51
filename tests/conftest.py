"""Shared fixtures: fake clock, in-memory store, mock scheduler."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from screen_time.config import Settings
from screen_time.economy import TimeEconomy
from screen_time.events import EventChannel
from screen_time.lifecycle import ManualLifecycleSource
from screen_time.store import RecordStore

# Noon local time, so +-12h stays on the same calendar day
T0 = int(datetime(2026, 3, 10, 12, 0, 0).timestamp() * 1000)


class FakeClock:
    def __init__(self, now_ms: int = T0):
        self.now = now_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> int:
        self.now += int(seconds * 1000)
        return self.now


class MemoryStore:
    """Dict-backed KeyValueStore with switchable failures."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.fail_reads = False
        self.fail_writes = False

    async def get(self, key):
        if self.fail_reads:
            raise OSError("read failed")
        return self.data.get(key)

    async def set(self, key, value):
        if self.fail_writes:
            raise OSError("disk full")
        self.data[key] = value

    async def remove_many(self, keys):
        for key in keys:
            self.data.pop(key, None)


class Recorder:
    """Event listener that keeps everything it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def records(memory_store):
    return RecordStore(memory_store)


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.add_job = MagicMock()
    scheduler.remove_job = MagicMock()
    return scheduler


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def lifecycle():
    return ManualLifecycleSource()


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def recorder(channel):
    rec = Recorder()
    channel.subscribe(rec)
    return rec


@pytest.fixture
def economy(memory_store, lifecycle, notifier, scheduler, clock):
    return TimeEconomy(
        store=memory_store,
        lifecycle=lifecycle,
        notifier=notifier,
        scheduler=scheduler,
        settings=Settings(),
        clock=clock,
    )
