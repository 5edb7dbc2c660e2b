"""Data models for tracking sessions, geofence zones, places and cities."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Final

from next_track.geo import clamp_radius


DEFAULT_TZ: Final[str] = "America/Los_Angeles"

DEFAULT_ZONE_RADIUS_M: Final[float] = 100.0

UNKNOWN_PLACE_NAME: Final[str] = "Unknown Place"


def new_id() -> str:
    """Return a fresh random identifier (UUID4 string)."""

    return str(uuid.uuid4())


class TrackingSource(str, Enum):
    """What triggered a tracking start/stop request."""

    NONE = "none"
    MANUAL = "manual"
    GEOFENCE_ENTER = "geofence_enter"
    GEOFENCE_EXIT = "geofence_exit"
    AUTO_START = "auto_start"
    RECOVERY = "recovery"


class GeofenceAction(str, Enum):
    """Action attached to a geofence zone."""

    HOME_MODE = "home_mode"
    START_ON_EXIT = "start_on_exit"
    STOP_ON_ENTER = "stop_on_enter"
    START_ON_ENTER = "start_on_enter"
    STOP_ON_EXIT = "stop_on_exit"

    @property
    def stops_on_entry(self) -> bool:
        """True for the "stop zone" actions (tracking pauses while inside)."""

        return self in (GeofenceAction.HOME_MODE, GeofenceAction.STOP_ON_ENTER)

    @property
    def label(self) -> str:
        return _ACTION_LABELS[self]


_ACTION_LABELS: Final[dict[GeofenceAction, str]] = {
    GeofenceAction.HOME_MODE: "Home: Stop inside, Track outside",
    GeofenceAction.START_ON_EXIT: "Start tracking when leaving",
    GeofenceAction.STOP_ON_ENTER: "Stop tracking when entering",
    GeofenceAction.START_ON_ENTER: "Start tracking when entering",
    GeofenceAction.STOP_ON_EXIT: "Stop tracking when leaving",
}


class PlaceCategory(str, Enum):
    """Category of an automatically detected place."""

    HOME = "home"
    WORK = "work"
    CAFE = "cafe"
    RESTAURANT = "restaurant"
    SHOPPING = "shopping"
    GYM = "gym"
    GAS_STATION = "gas_station"
    GROCERY = "grocery"
    MEDICAL = "medical"
    ENTERTAINMENT = "entertainment"
    TRANSIT = "transit"
    PARK = "park"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class StoredLocation:
    """A single location sample recorded during a session.

    Attributes:
        latitude: Latitude in decimal degrees.
        longitude: Longitude in decimal degrees.
        timestamp: Timezone-aware sample time.
        altitude_m: Altitude in meters, None when the device reported none.
        speed_mps: Instantaneous speed in meters/second, None when invalid.
        accuracy_m: Horizontal accuracy in meters, None when invalid.
        activity_type: Motion activity label ("walking", "automotive", ...), if known.
    """

    latitude: float
    longitude: float
    timestamp: datetime
    altitude_m: float | None = None
    speed_mps: float | None = None
    accuracy_m: float | None = None
    activity_type: str | None = None


@dataclass(frozen=True, slots=True)
class TrackingSession:
    """One continuous recording interval.

    A session is active while ``end_time`` is None. Closing a session returns
    a new record; closed sessions are never modified.
    """

    id: str
    start_time: datetime
    end_time: datetime | None = None
    locations: tuple[StoredLocation, ...] = ()
    total_distance: float = 0.0

    @classmethod
    def new(cls, start_time: datetime) -> TrackingSession:
        return cls(id=new_id(), start_time=start_time)

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def points_count(self) -> int:
        return len(self.locations)

    @property
    def name(self) -> str:
        return f"Track - {self.start_time.strftime('%b %d, %Y %H:%M')}"

    def duration_at(self, now: datetime) -> float:
        """Duration in seconds; active sessions are measured up to ``now``."""

        end = self.end_time if self.end_time is not None else now
        return max(0.0, (end - self.start_time).total_seconds())

    def average_speed(self, now: datetime) -> float | None:
        """Average speed in m/s, or None for a zero-length session."""

        duration = self.duration_at(now)
        if duration <= 0:
            return None
        return self.total_distance / duration

    @property
    def max_altitude(self) -> float | None:
        altitudes = [loc.altitude_m for loc in self.locations if loc.altitude_m is not None]
        return max(altitudes) if altitudes else None

    @property
    def min_altitude(self) -> float | None:
        altitudes = [loc.altitude_m for loc in self.locations if loc.altitude_m is not None]
        return min(altitudes) if altitudes else None

    @property
    def elevation_gain(self) -> float:
        gain = 0.0
        previous: float | None = None
        for loc in self.locations:
            if loc.altitude_m is None:
                continue
            if previous is not None and loc.altitude_m > previous:
                gain += loc.altitude_m - previous
            previous = loc.altitude_m
        return gain

    def with_location(self, location: StoredLocation, distance_m: float) -> TrackingSession:
        """Return a copy with one more sample and the distance increased."""

        if not self.is_active:
            raise ValueError(f"session {self.id} is closed")
        return replace(
            self,
            locations=self.locations + (location,),
            total_distance=self.total_distance + max(0.0, distance_m),
        )

    def closed(self, at: datetime) -> TrackingSession:
        """Return the closed version of this session."""

        return replace(self, end_time=at)


@dataclass(frozen=True, slots=True)
class GeofenceZone:
    """A named circular region with an auto start/stop action."""

    id: str
    name: str
    latitude: float
    longitude: float
    radius: float
    action: GeofenceAction
    is_enabled: bool = True

    @classmethod
    def create(
        cls,
        *,
        name: str,
        latitude: float,
        longitude: float,
        radius: float = DEFAULT_ZONE_RADIUS_M,
        action: GeofenceAction = GeofenceAction.HOME_MODE,
        is_enabled: bool = True,
    ) -> GeofenceZone:
        return cls(
            id=new_id(),
            name=name,
            latitude=latitude,
            longitude=longitude,
            radius=clamp_radius(radius),
            action=action,
            is_enabled=is_enabled,
        )


@dataclass(frozen=True, slots=True)
class PlaceVisit:
    """One arrival (and optional departure) at a detected place."""

    arrival_time: datetime
    departure_time: datetime | None = None
    id: str = field(default_factory=new_id)

    def dwell_seconds(self, now: datetime) -> float:
        end = self.departure_time if self.departure_time is not None else now
        return max(0.0, (end - self.arrival_time).total_seconds())


@dataclass(frozen=True, slots=True)
class DetectedPlace:
    """A place detected from dwell clusters (cafe, gym, home, ...)."""

    id: str
    latitude: float
    longitude: float
    created_at: datetime
    last_visited_at: datetime
    radius: float = 50.0
    name: str | None = None
    category: PlaceCategory = PlaceCategory.OTHER
    visit_history: tuple[PlaceVisit, ...] = ()
    is_confirmed: bool = False
    confidence: float = 0.5

    @property
    def visit_count(self) -> int:
        return len(self.visit_history)

    @property
    def display_name(self) -> str:
        return self.name or UNKNOWN_PLACE_NAME


@dataclass(frozen=True, slots=True)
class VisitedCity:
    """A city the user has been to."""

    id: str
    name: str
    country: str
    first_visit_date: datetime
    last_visit_date: datetime
    latitude: float
    longitude: float
    state: str | None = None
    country_code: str | None = None
    visit_count: int = 1
    total_points_recorded: int = 0
    is_manually_added: bool = False

    @property
    def display_name(self) -> str:
        if self.state:
            return f"{self.name}, {self.state}"
        return f"{self.name}, {self.country}"


@dataclass(frozen=True, slots=True)
class DailyStats:
    """Sessions grouped by local calendar day."""

    day: datetime
    sessions: tuple[TrackingSession, ...]

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @property
    def total_distance(self) -> float:
        return sum(s.total_distance for s in self.sessions)

    @property
    def total_points(self) -> int:
        return sum(s.points_count for s in self.sessions)

    def total_duration(self, now: datetime) -> float:
        return sum(s.duration_at(now) for s in self.sessions)
