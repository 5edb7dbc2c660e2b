"""Dict/JSON conversion of the data model, JSON backup and GPX export."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence, TypeVar

import gpxpy
import gpxpy.gpx

from next_track.models import (
    DetectedPlace,
    GeofenceAction,
    GeofenceZone,
    PlaceCategory,
    PlaceVisit,
    StoredLocation,
    TrackingSession,
    VisitedCity,
)
from next_track.geo import clamp_radius
from next_track.timeutils import ensure_aware, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

GPX_CREATOR = "Next Track"


def _dt_to_str(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _dt_from_str(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"expected ISO-8601 string, got {value!r}")
    return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _opt_dt_from_str(value: Any) -> datetime | None:
    return None if value is None else _dt_from_str(value)


def _opt_float(value: Any) -> float | None:
    return None if value is None else float(value)


def location_to_dict(loc: StoredLocation) -> dict[str, Any]:
    return {
        "latitude": loc.latitude,
        "longitude": loc.longitude,
        "timestamp": _dt_to_str(loc.timestamp),
        "altitude": loc.altitude_m,
        "speed": loc.speed_mps,
        "accuracy": loc.accuracy_m,
        "activity_type": loc.activity_type,
    }


def location_from_dict(d: dict[str, Any]) -> StoredLocation:
    return StoredLocation(
        latitude=float(d["latitude"]),
        longitude=float(d["longitude"]),
        timestamp=_dt_from_str(d["timestamp"]),
        altitude_m=_opt_float(d.get("altitude")),
        speed_mps=_opt_float(d.get("speed")),
        accuracy_m=_opt_float(d.get("accuracy")),
        activity_type=d.get("activity_type") or None,
    )


def session_to_dict(session: TrackingSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "start_time": _dt_to_str(session.start_time),
        "end_time": _dt_to_str(session.end_time),
        "total_distance": session.total_distance,
        "locations": [location_to_dict(loc) for loc in session.locations],
    }


def session_from_dict(d: dict[str, Any]) -> TrackingSession:
    return TrackingSession(
        id=str(d["id"]),
        start_time=_dt_from_str(d["start_time"]),
        end_time=_opt_dt_from_str(d.get("end_time")),
        total_distance=float(d.get("total_distance", 0.0) or 0.0),
        locations=tuple(location_from_dict(x) for x in d.get("locations", ()) or ()),
    )


def zone_to_dict(zone: GeofenceZone) -> dict[str, Any]:
    return {
        "id": zone.id,
        "name": zone.name,
        "latitude": zone.latitude,
        "longitude": zone.longitude,
        "radius": zone.radius,
        "action": zone.action.value,
        "is_enabled": zone.is_enabled,
    }


def zone_from_dict(d: dict[str, Any]) -> GeofenceZone:
    return GeofenceZone(
        id=str(d["id"]),
        name=str(d["name"]),
        latitude=float(d["latitude"]),
        longitude=float(d["longitude"]),
        radius=clamp_radius(float(d["radius"])),
        action=GeofenceAction(d["action"]),
        is_enabled=bool(d.get("is_enabled", True)),
    )


def place_to_dict(place: DetectedPlace) -> dict[str, Any]:
    return {
        "id": place.id,
        "latitude": place.latitude,
        "longitude": place.longitude,
        "radius": place.radius,
        "name": place.name,
        "category": place.category.value,
        "created_at": _dt_to_str(place.created_at),
        "last_visited_at": _dt_to_str(place.last_visited_at),
        "is_confirmed": place.is_confirmed,
        "confidence": place.confidence,
        "visit_history": [
            {
                "id": v.id,
                "arrival_time": _dt_to_str(v.arrival_time),
                "departure_time": _dt_to_str(v.departure_time),
            }
            for v in place.visit_history
        ],
    }


def place_from_dict(d: dict[str, Any]) -> DetectedPlace:
    visits = tuple(
        PlaceVisit(
            id=str(v["id"]),
            arrival_time=_dt_from_str(v["arrival_time"]),
            departure_time=_opt_dt_from_str(v.get("departure_time")),
        )
        for v in d.get("visit_history", ()) or ()
    )
    return DetectedPlace(
        id=str(d["id"]),
        latitude=float(d["latitude"]),
        longitude=float(d["longitude"]),
        radius=float(d.get("radius", 50.0)),
        name=d.get("name") or None,
        category=PlaceCategory(d.get("category", PlaceCategory.OTHER.value)),
        created_at=_dt_from_str(d["created_at"]),
        last_visited_at=_dt_from_str(d["last_visited_at"]),
        is_confirmed=bool(d.get("is_confirmed", False)),
        confidence=float(d.get("confidence", 0.5)),
        visit_history=visits,
    )


def city_to_dict(city: VisitedCity) -> dict[str, Any]:
    return {
        "id": city.id,
        "name": city.name,
        "state": city.state,
        "country": city.country,
        "country_code": city.country_code,
        "first_visit_date": _dt_to_str(city.first_visit_date),
        "last_visit_date": _dt_to_str(city.last_visit_date),
        "visit_count": city.visit_count,
        "total_points_recorded": city.total_points_recorded,
        "is_manually_added": city.is_manually_added,
        "latitude": city.latitude,
        "longitude": city.longitude,
    }


def city_from_dict(d: dict[str, Any]) -> VisitedCity:
    return VisitedCity(
        id=str(d["id"]),
        name=str(d["name"]),
        state=d.get("state") or None,
        country=str(d["country"]),
        country_code=d.get("country_code") or None,
        first_visit_date=_dt_from_str(d["first_visit_date"]),
        last_visit_date=_dt_from_str(d["last_visit_date"]),
        visit_count=int(d.get("visit_count", 1)),
        total_points_recorded=int(d.get("total_points_recorded", 0)),
        is_manually_added=bool(d.get("is_manually_added", False)),
        latitude=float(d["latitude"]),
        longitude=float(d["longitude"]),
    )


def decode_records(
    raw: Iterable[Any] | None,
    decoder: Callable[[dict[str, Any]], T],
    what: str,
) -> list[T]:
    """Decode a list of dict records, skipping malformed ones.

    Args:
        raw: Records as loaded from JSON (None is treated as empty).
        decoder: Converts one dict into a model record.
        what: Record kind used in the log message.

    Returns:
        Decoded records in input order.
    """

    out: list[T] = []
    skipped = 0
    for item in raw or ():
        if not isinstance(item, dict):
            skipped += 1
            continue
        try:
            out.append(decoder(item))
        except (KeyError, ValueError, TypeError):
            skipped += 1
    if skipped > 0:
        logger.warning("Skipped %s malformed %s record(s)", skipped, what)
    return out


@dataclass(frozen=True, slots=True)
class ImportResult:
    """Outcome of merging a JSON backup into the session list."""

    sessions: list[TrackingSession]
    added: int
    duplicates: int


def export_sessions_json(sessions: Sequence[TrackingSession], out_path: str | Path) -> None:
    """Write sessions as a pretty-printed JSON array (backup format)."""

    p = Path(out_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = [session_to_dict(s) for s in sessions]
    p.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")


def import_sessions_json(
    existing: Sequence[TrackingSession],
    text: str,
) -> ImportResult:
    """Merge sessions from a JSON backup into ``existing``.

    Accepts either a JSON array of sessions or a single session object.
    Sessions whose id is already known are skipped; the merged list is
    sorted newest first.

    Raises:
        ValueError: If the text is not valid JSON or holds neither shape.
    """

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Backup is not valid JSON: {exc}") from exc

    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValueError("Backup must contain a session object or a list of sessions")

    incoming = decode_records(payload, session_from_dict, "session")
    known = {s.id for s in existing}
    merged = list(existing)
    added = 0
    duplicates = 0
    for session in incoming:
        if session.id in known:
            duplicates += 1
            continue
        known.add(session.id)
        merged.append(session)
        added += 1
    merged.sort(key=lambda s: s.start_time, reverse=True)
    return ImportResult(sessions=merged, added=added, duplicates=duplicates)


def sessions_to_gpx(sessions: Sequence[TrackingSession], title: str) -> str:
    """Render sessions as a GPX 1.1 document, one track per session.

    Speed and activity labels have no GPX 1.1 element and are left out.
    """

    gpx = gpxpy.gpx.GPX()
    gpx.creator = GPX_CREATOR
    gpx.name = title
    gpx.time = utc_now()

    for session in sessions:
        track = gpxpy.gpx.GPXTrack()
        track.name = session.name
        gpx.tracks.append(track)

        segment = gpxpy.gpx.GPXTrackSegment()
        track.segments.append(segment)
        for loc in session.locations:
            segment.points.append(
                gpxpy.gpx.GPXTrackPoint(
                    loc.latitude,
                    loc.longitude,
                    elevation=loc.altitude_m,
                    time=loc.timestamp.astimezone(UTC),
                )
            )

    return gpx.to_xml(version="1.1")


def write_gpx(sessions: Sequence[TrackingSession], out_path: str | Path, title: str) -> None:
    """Write sessions to a GPX file."""

    p = Path(out_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(sessions_to_gpx(sessions, title), encoding="utf-8")
