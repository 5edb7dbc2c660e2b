"""Wiring of the services around one state file."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from next_track.events import EventChannel
from next_track.geofence import GeofenceManager, Locator
from next_track.history import TrackingHistoryStore
from next_track.insights import InsightParams, InsightsService
from next_track.models import DEFAULT_TZ, DetectedPlace, VisitedCity
from next_track.notifications import NotificationCenter, PromptFlags
from next_track.places import PlaceParams, detect_places_from_history
from next_track.serialization import city_from_dict, decode_records, place_from_dict, place_to_dict
from next_track.startup import StartupCoordinator, StartupParams
from next_track.storage import JsonStateStore
from next_track.timeutils import utc_now
from next_track.tracking import InMemoryRecorder, LocationRecorder, TrackingStateManager

PLACES_KEY = "detected_places"
CITIES_KEY = "visited_cities"

DEFAULT_STATE_PATH = "next_track_state.json"


def load_places(store: JsonStateStore) -> list[DetectedPlace]:
    return decode_records(store.get(PLACES_KEY), place_from_dict, "place")


def save_places(store: JsonStateStore, places: list[DetectedPlace]) -> None:
    store.set(PLACES_KEY, [place_to_dict(p) for p in places])


def load_cities(store: JsonStateStore) -> list[VisitedCity]:
    return decode_records(store.get(CITIES_KEY), city_from_dict, "city")


@dataclass
class AppContext:
    """All long-lived services, constructed once and passed explicitly."""

    store: JsonStateStore
    channel: EventChannel
    notifier: NotificationCenter
    prompts: PromptFlags
    history: TrackingHistoryStore
    geofences: GeofenceManager
    tracking: TrackingStateManager
    insights: InsightsService
    startup: StartupCoordinator
    tz_name: str = DEFAULT_TZ
    clock: Callable[[], datetime] = utc_now

    def flush(self) -> None:
        self.store.flush()

    def detect_places(self, params: PlaceParams = PlaceParams()) -> list[DetectedPlace]:
        """Re-run place detection over all sessions and persist the result."""

        places = detect_places_from_history(
            self.history.sessions,
            load_places(self.store),
            now=self.clock(),
            tz_name=self.tz_name,
            params=params,
        )
        save_places(self.store, places)
        return places


def build_context(
    state_path: str | Path = DEFAULT_STATE_PATH,
    *,
    locator: Locator | None = None,
    recorder: LocationRecorder | None = None,
    tz_name: str = DEFAULT_TZ,
    startup_params: StartupParams = StartupParams(),
    insight_params: InsightParams = InsightParams(),
    clock: Callable[[], datetime] = utc_now,
) -> AppContext:
    store = JsonStateStore(state_path)
    store.load()
    channel = EventChannel()
    notifier = NotificationCenter(clock=clock)
    prompts = PromptFlags()
    history = TrackingHistoryStore(store, clock=clock)
    geofences = GeofenceManager(
        store,
        locator,
        notifier,
        state_check_timeout_seconds=startup_params.zone_check_timeout_seconds,
        clock=clock,
    )
    tracking = TrackingStateManager(
        history,
        recorder if recorder is not None else InMemoryRecorder(),
        geofences,
        channel,
        clock=clock,
    )
    insights = InsightsService(
        lambda: history.sessions,
        lambda: load_places(store),
        lambda: load_cities(store),
        tz_name=tz_name,
        params=insight_params,
        clock=clock,
    )
    insights.attach(channel)
    startup = StartupCoordinator(
        geofences,
        tracking,
        history,
        notifier,
        prompts,
        startup_params,
        clock=clock,
    )
    startup.install_geofence_callbacks()
    return AppContext(
        store=store,
        channel=channel,
        notifier=notifier,
        prompts=prompts,
        history=history,
        geofences=geofences,
        tracking=tracking,
        insights=insights,
        startup=startup,
        tz_name=tz_name,
        clock=clock,
    )
