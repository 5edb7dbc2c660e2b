"""Detection of significant places from recorded sessions.

A place is a spot where the user repeatedly stood still. Detection runs in
four steps:

1. ``stationary_stops``: runs of slow samples lasting at least
   ``min_dwell_seconds`` become stops.
2. ``cluster_stops``: stops are bucketed into a lat/lon grid (about 50 m
   cells); a cell with ``min_visits`` stops becomes a candidate place.
3. ``merge_places``: candidates overlapping a known place add their visits
   to it; the rest are appended.
4. ``categorize_by_time_pattern``: home / work / gym guess from arrival
   hours and dwell times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from next_track.geo import haversine_m
from next_track.models import (
    DEFAULT_TZ,
    DetectedPlace,
    PlaceCategory,
    PlaceVisit,
    StoredLocation,
    TrackingSession,
    new_id,
)
from next_track.timeutils import tzinfo_from_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlaceParams:
    """Parameters controlling place detection."""

    # 0.00045 degrees of latitude is roughly 50 m
    grid_cell_degrees: float = 0.00045
    grid_cell_m: float = 50.0
    min_visits: int = 2
    min_dwell_seconds: float = 120.0
    stationary_speed_mps: float = 1.0
    min_cluster_spread_m: float = 25.0
    min_place_radius_m: float = 30.0


@dataclass(frozen=True, slots=True)
class StationaryStop:
    """A period spent standing still, anchored at its first sample."""

    latitude: float
    longitude: float
    arrival: datetime
    duration_seconds: float

    @property
    def departure(self) -> datetime:
        return self.arrival + timedelta(seconds=self.duration_seconds)


def stationary_stops(sessions: Iterable[TrackingSession], params: PlaceParams = PlaceParams()) -> list[StationaryStop]:
    """Extract stops from sessions.

    A sample without speed counts as stationary. A run is closed by the
    first moving sample, or by the end of the session.
    """

    stops: list[StationaryStop] = []
    for session in sessions:
        locations = session.locations
        if len(locations) < 2:
            continue
        start: StoredLocation | None = None
        for sample in locations:
            speed = sample.speed_mps if sample.speed_mps is not None else 0.0
            if speed < params.stationary_speed_mps:
                if start is None:
                    start = sample
                continue
            if start is not None:
                _close_stop(stops, start, sample.timestamp, params)
            start = None
        if start is not None:
            _close_stop(stops, start, locations[-1].timestamp, params)
    return stops


def _close_stop(stops: list[StationaryStop], start: StoredLocation, end: datetime, params: PlaceParams) -> None:
    duration = (end - start.timestamp).total_seconds()
    if duration >= params.min_dwell_seconds:
        stops.append(StationaryStop(start.latitude, start.longitude, start.timestamp, duration))


def _grid_key(lat: float, lon: float, cell: float) -> tuple[int, int]:
    # truncation toward zero, so cells touching the equator/meridian are wider
    return int(lat / cell), int(lon / cell)


def cluster_stops(stops: Sequence[StationaryStop], params: PlaceParams = PlaceParams()) -> list[DetectedPlace]:
    """Group stops by grid cell and turn busy cells into candidate places.

    Cells keep the order in which their first stop was seen.
    """

    grid: dict[tuple[int, int], list[StationaryStop]] = {}
    for stop in stops:
        grid.setdefault(_grid_key(stop.latitude, stop.longitude, params.grid_cell_degrees), []).append(stop)

    places: list[DetectedPlace] = []
    for cell in grid.values():
        if len(cell) < params.min_visits:
            continue
        lat = sum(s.latitude for s in cell) / len(cell)
        lon = sum(s.longitude for s in cell) / len(cell)
        spread = max(haversine_m(lat, lon, s.latitude, s.longitude) for s in cell)
        spread = max(spread, params.min_cluster_spread_m)

        visits = sorted(
            (PlaceVisit(arrival_time=s.arrival, departure_time=s.departure) for s in cell),
            key=lambda v: v.arrival_time,
        )
        places.append(
            DetectedPlace(
                id=new_id(),
                latitude=lat,
                longitude=lon,
                radius=max(spread, params.min_place_radius_m),
                created_at=visits[0].arrival_time,
                last_visited_at=visits[-1].arrival_time,
                visit_history=tuple(visits),
            )
        )
    return places


def merge_places(existing: Sequence[DetectedPlace], new: Iterable[DetectedPlace]) -> list[DetectedPlace]:
    """Fold candidate places into the known ones.

    Two places overlap when their centers are closer than the sum of their
    radii. Visits already recorded (same arrival time) are not added twice,
    so detection can be re-run over the whole history. The merged center is
    the visit-weighted mean of both centers.
    """

    merged = list(existing)
    for candidate in new:
        index = next(
            (
                i
                for i, place in enumerate(merged)
                if haversine_m(place.latitude, place.longitude, candidate.latitude, candidate.longitude)
                < place.radius + candidate.radius
            ),
            None,
        )
        if index is None:
            merged.append(candidate)
            continue

        place = merged[index]
        known = {v.arrival_time for v in place.visit_history}
        added = [v for v in candidate.visit_history if v.arrival_time not in known]
        if not added:
            continue
        total = place.visit_count + len(added)
        old_w = place.visit_count / total
        new_w = len(added) / total
        merged[index] = replace(
            place,
            latitude=place.latitude * old_w + candidate.latitude * new_w,
            longitude=place.longitude * old_w + candidate.longitude * new_w,
            visit_history=place.visit_history + tuple(added),
            last_visited_at=max(place.last_visited_at, candidate.last_visited_at),
        )
    return merged


def average_dwell_seconds(place: DetectedPlace, now: datetime) -> float:
    if not place.visit_history:
        return 0.0
    return sum(v.dwell_seconds(now) for v in place.visit_history) / place.visit_count


def categorize_by_time_pattern(
    place: DetectedPlace, *, now: datetime, tz_name: str = DEFAULT_TZ
) -> tuple[PlaceCategory, float]:
    """Guess a category and its confidence from when and how long the place is visited.

    Hours are local to ``tz_name``:

    - home: more than half the arrivals between 23:00 and 07:00, average
      stay over 4 h
    - work: more than 60% of arrivals on weekdays 09:00-17:00, average stay
      over 2 h
    - gym: average stay between 30 min and 2 h with a 05:00-09:00 arrival

    Anything else is OTHER with confidence 0.3.
    """

    if not place.visit_history:
        return PlaceCategory.OTHER, 0.3

    tz = tzinfo_from_name(tz_name)
    night = workday = morning = 0
    for visit in place.visit_history:
        local = visit.arrival_time.astimezone(tz)
        hour = local.hour
        if hour >= 23 or hour < 7:
            night += 1
        if local.weekday() < 5 and 9 <= hour < 17:
            workday += 1
        if 5 <= hour < 9:
            morning += 1

    total = place.visit_count
    night_ratio = night / total
    work_ratio = workday / total
    avg_dwell = average_dwell_seconds(place, now)

    if night_ratio > 0.5 and avg_dwell > 4 * 3600:
        return PlaceCategory.HOME, min(0.9, 0.5 + night_ratio * 0.4)
    if work_ratio > 0.6 and avg_dwell > 2 * 3600:
        return PlaceCategory.WORK, min(0.85, 0.4 + work_ratio * 0.4)
    if 30 * 60 < avg_dwell < 2 * 3600 and morning > 0:
        return PlaceCategory.GYM, 0.5
    return PlaceCategory.OTHER, 0.3


def detect_places_from_history(
    sessions: Sequence[TrackingSession],
    existing: Sequence[DetectedPlace] = (),
    *,
    now: datetime,
    tz_name: str = DEFAULT_TZ,
    params: PlaceParams = PlaceParams(),
) -> list[DetectedPlace]:
    """Run the full detection pass and return the updated place list.

    Places the user confirmed keep their category.
    """

    stops = stationary_stops(sessions, params)
    candidates = cluster_stops(stops, params)
    logger.info("Found %d stops forming %d candidate places", len(stops), len(candidates))

    places = merge_places(existing, candidates)
    result = []
    for place in places:
        if place.is_confirmed:
            result.append(place)
            continue
        category, confidence = categorize_by_time_pattern(place, now=now, tz_name=tz_name)
        result.append(replace(place, category=category, confidence=confidence))
    logger.info("Detected %d places (%d before)", len(result), len(existing))
    return result


def nearest_place_index(places: Sequence[DetectedPlace], lat: float, lon: float, max_distance_m: float) -> int | None:
    """Index of the closest place strictly within ``max_distance_m``, else None."""

    best: int | None = None
    best_distance = max_distance_m
    for i, place in enumerate(places):
        d = haversine_m(lat, lon, place.latitude, place.longitude)
        if d < best_distance:
            best, best_distance = i, d
    return best


def mark_departure(
    places: Sequence[DetectedPlace],
    lat: float,
    lon: float,
    at: datetime,
    params: PlaceParams = PlaceParams(),
) -> list[DetectedPlace]:
    """Close the open visit of the place nearest to (lat, lon).

    Only places within 1.5 grid cells are considered. Without a nearby place
    or an open visit the list is returned unchanged.
    """

    updated = list(places)
    index = nearest_place_index(updated, lat, lon, params.grid_cell_m * 1.5)
    if index is None:
        return updated
    place = updated[index]
    if not place.visit_history or place.visit_history[-1].departure_time is not None:
        return updated
    last = replace(place.visit_history[-1], departure_time=at)
    updated[index] = replace(place, visit_history=place.visit_history[:-1] + (last,))
    logger.info("Departure recorded from %s", place.display_name)
    return updated


def rename_place(places: Sequence[DetectedPlace], place_id: str, name: str) -> list[DetectedPlace]:
    """User override of a place name; the place becomes confirmed."""

    return [replace(p, name=name, is_confirmed=True) if p.id == place_id else p for p in places]


def recategorize_place(places: Sequence[DetectedPlace], place_id: str, category: PlaceCategory) -> list[DetectedPlace]:
    """User override of a place category, with full confidence."""

    return [
        replace(p, category=category, confidence=1.0, is_confirmed=True) if p.id == place_id else p for p in places
    ]
