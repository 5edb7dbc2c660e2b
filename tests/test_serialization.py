from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

import gpxpy
import pytest

from next_track.models import GeofenceAction, StoredLocation, TrackingSession
from next_track.serialization import (
    decode_records,
    export_sessions_json,
    import_sessions_json,
    session_from_dict,
    session_to_dict,
    sessions_to_gpx,
    zone_from_dict,
)

from conftest import loc

T0 = datetime(2025, 6, 1, 8, 0, tzinfo=UTC)


def _session(session_id: str, start: datetime, distance: float = 0.0) -> TrackingSession:
    return TrackingSession(
        id=session_id,
        start_time=start,
        end_time=start + timedelta(minutes=30),
        total_distance=distance,
        locations=(loc(37.0, -122.0, start, speed=1.2, activity="walking"),),
    )


def test_session_dict_round_trip_keeps_samples():
    session = _session("a", T0, 1200.0)
    restored = session_from_dict(json.loads(json.dumps(session_to_dict(session))))
    assert restored == session


def test_zone_from_dict_clamps_radius():
    zone = zone_from_dict(
        {"id": "z", "name": "Home", "latitude": 1.0, "longitude": 2.0, "radius": 5000, "action": "home_mode"}
    )
    assert zone.radius == 500.0
    assert zone.action is GeofenceAction.HOME_MODE
    assert zone.is_enabled


def test_decode_records_skips_malformed(caplog):
    good = session_to_dict(_session("a", T0))
    with caplog.at_level(logging.WARNING):
        out = decode_records([good, {"id": "b"}, "junk", None], session_from_dict, "session")
    assert [s.id for s in out] == ["a"]
    assert "Skipped 3 malformed session record(s)" in caplog.text


def test_import_merges_skips_known_ids_and_sorts_newest_first():
    existing = [_session("a", T0)]
    backup = [session_to_dict(_session("a", T0)), session_to_dict(_session("b", T0 + timedelta(days=1)))]

    result = import_sessions_json(existing, json.dumps(backup))

    assert result.added == 1
    assert result.duplicates == 1
    assert [s.id for s in result.sessions] == ["b", "a"]


def test_import_accepts_single_session_object():
    result = import_sessions_json([], json.dumps(session_to_dict(_session("solo", T0))))
    assert [s.id for s in result.sessions] == ["solo"]


@pytest.mark.parametrize("text", ["{broken", "42"])
def test_import_rejects_invalid_backup(text):
    with pytest.raises(ValueError):
        import_sessions_json([], text)


def test_export_then_import_is_all_duplicates(tmp_path):
    sessions = [_session("a", T0), _session("b", T0 + timedelta(hours=2))]
    out = tmp_path / "backup" / "sessions.json"
    export_sessions_json(sessions, out)

    result = import_sessions_json(sessions, out.read_text(encoding="utf-8"))
    assert result.added == 0
    assert result.duplicates == 2


def test_gpx_has_one_track_per_session():
    s1 = _session("a", T0)
    s2 = TrackingSession(
        id="b",
        start_time=T0,
        locations=(StoredLocation(latitude=37.5, longitude=-122.5, timestamp=T0, altitude_m=12.5, speed_mps=3.0),),
    )
    xml = sessions_to_gpx([s1, s2], "Trips & more")

    parsed = gpxpy.parse(xml)
    assert parsed.version == "1.1"
    assert parsed.name == "Trips & more"
    assert parsed.creator == "Next Track"
    assert [t.name for t in parsed.tracks] == [s1.name, s2.name]

    point = parsed.tracks[1].segments[0].points[0]
    assert (point.latitude, point.longitude) == (37.5, -122.5)
    assert point.elevation == 12.5
    assert point.time == T0

    # GPX 1.1 has no <speed> element
    assert "<speed>" not in xml
