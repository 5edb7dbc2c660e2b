from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from next_track.history import TrackingHistoryStore
from next_track.models import StoredLocation
from next_track.storage import JsonStateStore


class FakeClock:
    """Settable clock; ``advance`` moves it forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


async def no_sleep(_seconds: float) -> None:
    return None


def loc(lat: float, lon: float, at: datetime, *, speed: float | None = None, activity: str | None = None) -> StoredLocation:
    return StoredLocation(latitude=lat, longitude=lon, timestamp=at, speed_mps=speed, activity_type=activity)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 6, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state.json"


@pytest.fixture
def store(state_path) -> JsonStateStore:
    return JsonStateStore(state_path)


@pytest.fixture
def history(store, clock) -> TrackingHistoryStore:
    return TrackingHistoryStore(store, clock=clock)
