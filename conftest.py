"""
Shared fixtures for PinChat tests.

The coordinator is driven directly with a recording transport (captures who
received what) and a manual scheduler (timers fire only when the test advances
the clock), so no server or event loop is needed for most tests.
"""
import os

import pytest

# Keep the app-level store off disk for any test that builds the FastAPI app.
os.environ.setdefault("PINCHAT_STORE", "memory")

from pinchat.coordinator import RoomCoordinator
from pinchat.scheduler import Scheduler
from pinchat.transport import Transport


class RecordingTransport(Transport):
    """Resolves every emit to its recipients and keeps a per-connection inbox."""

    def __init__(self) -> None:
        self.channels: dict[str, set[str]] = {}
        self.inbox: dict[str, list[tuple[str, dict]]] = {}

    def join(self, sid, channel):
        self.channels.setdefault(channel, set()).add(sid)

    def leave(self, sid, channel):
        self.channels.get(channel, set()).discard(sid)

    def emit(self, event, data=None, *, to=None, room=None, skip_sid=None):
        if to is not None:
            targets = [to]
        else:
            targets = [s for s in self.channels.get(room, ()) if s != skip_sid]
        for sid in targets:
            self.inbox.setdefault(sid, []).append((event, data or {}))

    def received(self, sid: str, event: str) -> list[dict]:
        return [data for name, data in self.inbox.get(sid, []) if name == event]

    def last(self, sid: str, event: str):
        got = self.received(sid, event)
        return got[-1] if got else None

    def events(self, sid: str) -> list[str]:
        return [name for name, _ in self.inbox.get(sid, [])]

    def clear(self) -> None:
        self.inbox.clear()


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class ManualScheduler(Scheduler):
    """Scheduler whose timers fire only on ``advance``."""

    def __init__(self, clock: ManualClock) -> None:
        super().__init__()
        self.clock = clock
        self.timers: dict = {}

    def schedule(self, key, delay, callback):
        self.timers[key] = (self.clock.now + delay, callback)

    def cancel(self, key):
        return self.timers.pop(key, None) is not None

    def pending(self, key):
        return key in self.timers

    def cancel_all(self):
        self.timers.clear()

    def advance(self, seconds: float) -> None:
        self.clock.now += seconds
        due = sorted(
            ((when, key) for key, (when, _) in self.timers.items() if when <= self.clock.now),
            key=lambda item: item[0],
        )
        for _, key in due:
            entry = self.timers.pop(key, None)
            if entry is not None:
                entry[1]()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def coordinator(transport, scheduler, clock) -> RoomCoordinator:
    return RoomCoordinator(transport, scheduler, history_limit=100, grace_seconds=30, clock=clock)
