from __future__ import annotations

from datetime import datetime, time
from pathlib import Path

import streamlit as st

from next_track.context import DEFAULT_STATE_PATH, load_cities, load_places
from next_track.history import SESSIONS_KEY
from next_track.insights import (
    InsightParams,
    InsightPeriod,
    InsightSummary,
    activity_summary_text,
    compute_insight,
    format_change,
    format_duration,
    format_miles,
    summary_text,
)
from next_track.models import DEFAULT_TZ
from next_track.serialization import decode_records, session_from_dict
from next_track.storage import JsonStateStore
from next_track.timeutils import tzinfo_from_name, utc_now


@st.cache_data(show_spinner=False)
def _load_state(state_path: str, mtime: float, journal_mtime: float) -> tuple[list, list, list]:
    _ = (mtime, journal_mtime)  # part of cache key so updated files reload automatically
    store = JsonStateStore(state_path)
    sessions = decode_records(store.get(SESSIONS_KEY), session_from_dict, "session")
    return sessions, load_places(store), load_cities(store)


def _state_mtimes(state_path: Path) -> tuple[float, float]:
    """Modification times of the snapshot and its journal (0.0 when absent)."""

    files = (state_path, JsonStateStore(state_path).journal_path)
    return tuple(f.stat().st_mtime if f.exists() else 0.0 for f in files)


def _activity_rows(insight: InsightSummary) -> list[dict[str, object]]:
    a = insight.activity
    return [
        {"activity": name, "time": format_duration(seconds), "share_%": round(a.percentage(seconds), 1)}
        for name, seconds in (
            ("walking", a.walking),
            ("running", a.running),
            ("cycling", a.cycling),
            ("driving", a.driving),
            ("stationary", a.stationary),
            ("unknown", a.unknown),
        )
        if seconds > 0
    ]


def main() -> None:
    st.set_page_config(page_title="Next Track: insights", layout="wide")
    st.title("Next Track: where the time and distance went")

    with st.sidebar:
        st.subheader("Data and timezone")
        tz_name = st.text_input("Timezone (IANA)", value=DEFAULT_TZ)
        state_path = st.text_input("State file", value=DEFAULT_STATE_PATH)

        st.subheader("Anchor")
        tz = tzinfo_from_name(tz_name)
        today = utc_now().astimezone(tz)
        anchor_d = st.date_input("Date", value=today.date())
        anchor_t = st.time_input("Time", value=today.time().replace(second=0, microsecond=0))

        with st.expander("Advanced", expanded=False):
            seconds_per_sample = st.number_input("Seconds credited per sample", value=1.0, step=0.5, min_value=0.0)

    p = Path(state_path)
    mtimes = _state_mtimes(p)
    if mtimes == (0.0, 0.0):
        st.error(f"State file not found: {state_path!r}. Generate one with scripts/generate_sample_history.py.")
        return

    try:
        sessions, places, cities = _load_state(state_path, *mtimes)
    except Exception as exc:
        st.exception(exc)
        return

    now = datetime.combine(anchor_d, anchor_t or time.min).replace(tzinfo=tz)
    params = InsightParams(seconds_per_sample=float(seconds_per_sample))

    tabs = st.tabs([period.display_name for period in InsightPeriod])
    for tab, period in zip(tabs, InsightPeriod):
        insight = compute_insight(period, sessions, places, cities, now=now, tz_name=tz_name, params=params)
        with tab:
            st.write(summary_text(insight))
            c1, c2, c3, c4 = st.columns(4)
            c1.metric("Distance", format_miles(insight.total_distance), format_change(insight.distance_change))
            c2.metric("Time", format_duration(insight.total_duration), format_change(insight.duration_change))
            c3.metric("Sessions", str(insight.session_count))
            c4.metric("Places / new / cities", f"{insight.places_visited} / {insight.new_places_discovered} / {insight.cities_visited}")

            st.subheader("Activity")
            st.caption(activity_summary_text(insight))
            rows = _activity_rows(insight)
            if rows:
                st.dataframe(rows, use_container_width=True)

            st.subheader("Highlights")
            if insight.longest_session is not None:
                s = insight.longest_session
                st.write(f"Longest session: **{s.name}**, {format_miles(s.distance, 2)} in {format_duration(s.duration)}")
            if insight.most_visited_place is not None:
                pl = insight.most_visited_place
                st.write(f"Most visited place: **{pl.name}** ({pl.visit_count} visits, {pl.category.value})")

    st.subheader("Sessions")
    session_rows = [
        {
            "name": s.name,
            "start": s.start_time.astimezone(tz).isoformat(sep=" ", timespec="minutes"),
            "distance": format_miles(s.total_distance, 2),
            "duration": format_duration(s.duration_at(now)),
            "points": s.points_count,
        }
        for s in sessions
    ]
    st.dataframe(session_rows, use_container_width=True, height=420)

    st.caption(
        "Sessions count toward a period by start time. Daily = local calendar day; "
        "weekly/monthly = the 7 days / 1 month before the anchor. Most visited place is over all places."
    )


if __name__ == "__main__":
    main()
