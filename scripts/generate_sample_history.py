from __future__ import annotations

import argparse
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final

from zoneinfo import ZoneInfo

from next_track.context import CITIES_KEY, PLACES_KEY
from next_track.geo import haversine_m
from next_track.history import SESSIONS_KEY
from next_track.geofence import ZONES_KEY
from next_track.models import (
    DetectedPlace,
    GeofenceAction,
    GeofenceZone,
    PlaceCategory,
    PlaceVisit,
    StoredLocation,
    TrackingSession,
    VisitedCity,
    new_id,
)
from next_track.serialization import city_to_dict, place_to_dict, session_to_dict, zone_to_dict
from next_track.storage import JsonStateStore


TZ: Final[str] = "America/Los_Angeles"

# (name, speed range m/s, activity label or None to leave it to speed inference)
MODES: Final[list[tuple[str, tuple[float, float], str | None]]] = [
    ("walk", (0.8, 1.8), "walking"),
    ("run", (2.2, 3.8), None),
    ("bike", (4.5, 8.0), "cycling"),
    ("drive", (11.0, 25.0), "automotive"),
    ("idle", (0.0, 0.3), None),
]


@dataclass(frozen=True, slots=True)
class Cluster:
    name: str
    lat: float
    lon: float
    category: PlaceCategory


def generate_session(rng: random.Random, start: datetime, origin: Cluster) -> TrackingSession:
    """One session: a few minutes of samples drifting away from ``origin``."""

    _, (lo, hi), label = rng.choice(MODES)
    session = TrackingSession.new(start)
    lat, lon = origin.lat, origin.lon
    cur = start
    heading_lat, heading_lon = rng.uniform(-1, 1), rng.uniform(-1, 1)
    for _ in range(rng.randint(30, 240)):
        speed = rng.uniform(lo, hi)
        step_s = rng.uniform(1.0, 10.0)
        # ~111 km per degree; good enough for fake data
        lat += heading_lat * speed * step_s / 111_000
        lon += heading_lon * speed * step_s / 111_000
        cur = cur + timedelta(seconds=step_s)
        loc = StoredLocation(
            latitude=lat,
            longitude=lon,
            timestamp=cur,
            altitude_m=rng.uniform(0, 120),
            speed_mps=speed if rng.random() > 0.05 else None,
            accuracy_m=rng.choice([3.0, 5.0, 8.0, 12.0]),
            activity_type=label if rng.random() > 0.3 else None,
        )
        prev = session.locations[-1] if session.locations else None
        dist = haversine_m(prev.latitude, prev.longitude, lat, lon) if prev is not None else 0.0
        session = session.with_location(loc, dist)
    return session.closed(cur)


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake Next Track state file for demo/testing.")
    p.add_argument("--out", type=str, default="sample_data/next_track_state.json", help="Output state file")
    p.add_argument("--days", type=int, default=60, help="Number of days of history")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument(
        "--end",
        type=str,
        default=None,
        help="Last local day in America/Los_Angeles, e.g. '2025-06-01' (default: today)",
    )
    args = p.parse_args()

    rng = random.Random(args.seed)
    tz = ZoneInfo(TZ)
    end_day = datetime.fromisoformat(args.end).date() if args.end else datetime.now(tz).date()
    first_day = end_day - timedelta(days=args.days - 1)

    clusters = [
        Cluster("Home", 37.7749, -122.4194, PlaceCategory.HOME),
        Cluster("Office", 37.7897, -122.3972, PlaceCategory.WORK),
        Cluster("Blue Bottle", 37.7825, -122.4075, PlaceCategory.CAFE),
        Cluster("Gym", 37.7680, -122.4290, PlaceCategory.GYM),
    ]

    sessions: list[TrackingSession] = []
    visits: dict[str, list[PlaceVisit]] = {c.name: [] for c in clusters}
    for offset in range(args.days):
        day = first_day + timedelta(days=offset)
        for _ in range(rng.choice([0, 1, 1, 2, 3])):
            start = datetime(day.year, day.month, day.day, rng.randint(6, 21), rng.randint(0, 59), tzinfo=tz)
            origin = rng.choice(clusters)
            sessions.append(generate_session(rng, start, origin))
            arrival = start - timedelta(minutes=rng.randint(20, 180))
            visits[origin.name].append(PlaceVisit(arrival_time=arrival, departure_time=start))
    sessions.sort(key=lambda s: s.start_time, reverse=True)

    places = []
    for c in clusters:
        history = tuple(sorted(visits[c.name], key=lambda v: v.arrival_time))
        if not history:
            continue
        places.append(
            DetectedPlace(
                id=new_id(),
                latitude=c.lat,
                longitude=c.lon,
                name=c.name,
                category=c.category,
                created_at=history[0].arrival_time,
                last_visited_at=history[-1].arrival_time,
                visit_history=history,
                is_confirmed=True,
            )
        )

    last_session = sessions[0].start_time if sessions else datetime.now(tz)
    cities = [
        VisitedCity(
            id=new_id(),
            name="San Francisco",
            state="CA",
            country="United States",
            country_code="US",
            first_visit_date=sessions[-1].start_time if sessions else last_session,
            last_visit_date=last_session,
            latitude=37.7749,
            longitude=-122.4194,
            visit_count=len(sessions),
            total_points_recorded=sum(s.points_count for s in sessions),
        )
    ]
    zones = [GeofenceZone.create(name="Home", latitude=37.7749, longitude=-122.4194, action=GeofenceAction.HOME_MODE)]

    store = JsonStateStore(args.out)
    store.set(SESSIONS_KEY, [session_to_dict(s) for s in sessions])
    store.set(PLACES_KEY, [place_to_dict(pl) for pl in places])
    store.set(CITIES_KEY, [city_to_dict(c) for c in cities])
    store.set(ZONES_KEY, [zone_to_dict(z) for z in zones])
    store.flush()

    print(f"Generated: {store.path} (sessions={len(sessions)}, places={len(places)}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
