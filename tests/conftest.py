import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tablehold.core.clock import Clock
from tablehold.deps import build_services
from tablehold.models import BookingDraft, TimeWindow
from tablehold.services.notifier import Notifier
from tablehold.services.store import MemoryRequestStore


EST = timezone(timedelta(hours=-5))


def at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    """A wall-clock time on the test evening, Eastern."""
    return datetime(2025, 11, 5, hour, minute, second, tzinfo=EST)


async def settle() -> None:
    """Let background tasks (timer callbacks, notifications) run to completion."""
    current = asyncio.current_task()
    for _ in range(50):
        pending = [task for task in asyncio.all_tasks() if task is not current and not task.done()]
        if not pending:
            return
        await asyncio.wait(pending, timeout=1)


class ManualTimer:
    def __init__(self, when: datetime, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime):
        self._now = start.astimezone(timezone.utc)
        self.timers: list[ManualTimer] = []

    def now(self) -> datetime:
        return self._now

    def after(self, delay_seconds: float, callback) -> ManualTimer:
        timer = ManualTimer(self._now + timedelta(seconds=max(delay_seconds, 0.0)), callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    async def advance(self, delta: timedelta) -> None:
        self._now += delta
        while True:
            due = sorted((t for t in self.pending() if t.when <= self._now), key=lambda t: t.when)
            if not due:
                break
            for timer in due:
                timer.fired = True
                timer.callback()
            await settle()
        await settle()

    async def advance_to(self, moment: datetime) -> None:
        await self.advance(moment.astimezone(timezone.utc) - self._now)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    async def notify(self, party_id, event) -> None:
        self.events.append((party_id, event))

    def for_party(self, party_id: str):
        return [event for party, event in self.events if party == party_id]


@pytest.fixture
def clock():
    return ManualClock(at(18, 0))


@pytest.fixture
def gateway():
    return RecordingNotifier()


@pytest.fixture
def store(clock):
    return MemoryRequestStore(clock)


@pytest.fixture
def services(store, gateway, clock):
    return build_services(store, gateway, clock)


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def holds(services):
    return services.holds


@pytest.fixture
def draft():
    return BookingDraft(
        diner_id="diner-1",
        restaurant_id="bistro",
        party_size=4,
        time_window=TimeWindow(start=at(19, 0), end=at(20, 0)),
        notes="window seat if possible",
    )
