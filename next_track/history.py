"""Tracking history: completed sessions, the live session and restart evidence."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable

from next_track.geo import haversine_m
from next_track.models import DEFAULT_TZ, DailyStats, StoredLocation, TrackingSession
from next_track.serialization import decode_records, session_from_dict, session_to_dict
from next_track.storage import JsonStateStore
from next_track.timeutils import ensure_aware, start_of_day, utc_now

logger = logging.getLogger(__name__)

SESSIONS_KEY = "tracking_sessions"
AUTOSAVE_KEY = "current_session_autosave"
WAS_TRACKING_KEY = "was_tracking_before_termination"
LAST_TRACKING_TIMESTAMP_KEY = "last_tracking_timestamp"


class TrackingHistoryStore:
    """Persisted session history plus the evidence used for restart detection.

    Sessions are kept most recent first. The live session is auto-saved every
    ``autosave_every`` samples; an auto-saved session found at construction
    time (with at least one sample) is offered as a recovery session.
    """

    def __init__(
        self,
        store: JsonStateStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_sessions: int = 10_000,
        autosave_every: int = 10,
    ) -> None:
        self._store = store
        self._clock = clock
        self._max_sessions = max_sessions
        self._autosave_every = max(1, autosave_every)
        self._locations_since_save = 0
        self._sessions: list[TrackingSession] = decode_records(
            store.get(SESSIONS_KEY), session_from_dict, "session"
        )
        self._current: TrackingSession | None = None
        self._recovery: TrackingSession | None = None
        self._check_for_recovery_session()

    # -- sessions -----------------------------------------------------------

    @property
    def sessions(self) -> list[TrackingSession]:
        return list(self._sessions)

    @property
    def current_session(self) -> TrackingSession | None:
        return self._current

    def start_new_session(self) -> TrackingSession:
        """Open a new live session (discarding any pending recovery session)."""

        self.clear_recovery_session()
        session = TrackingSession.new(self._clock())
        self._current = session
        self._locations_since_save = 0
        self.save_current_session()
        logger.info("Started new session %s", session.id)
        return session

    def end_current_session(self) -> TrackingSession | None:
        """Close the live session and move it into history."""

        if self._current is None:
            return None
        session = self._current.closed(self._clock())
        self._current = None
        self._sessions.insert(0, session)
        self._locations_since_save = 0
        self.clear_recovery_session()
        if len(self._sessions) > self._max_sessions:
            self._sessions = self._sessions[: self._max_sessions]
        self._save_sessions()
        logger.info(
            "Ended session %s: %s points, %.0f m", session.id, session.points_count, session.total_distance
        )
        return session

    def add_location(self, location: StoredLocation) -> None:
        """Append a sample to the live session, accumulating distance."""

        if self._current is None:
            logger.debug("Dropping location sample: no live session")
            return
        distance = 0.0
        if self._current.locations:
            last = self._current.locations[-1]
            distance = haversine_m(last.latitude, last.longitude, location.latitude, location.longitude)
        self._current = self._current.with_location(location, distance)

        self._locations_since_save += 1
        if self._locations_since_save >= self._autosave_every:
            self.save_current_session()
            self._locations_since_save = 0

    def delete_session(self, session_id: str) -> bool:
        before = len(self._sessions)
        self._sessions = [s for s in self._sessions if s.id != session_id]
        if len(self._sessions) == before:
            return False
        self._save_sessions()
        return True

    def replace_sessions(self, sessions: list[TrackingSession]) -> None:
        """Replace the whole history (used by backup import)."""

        self._sessions = sorted(sessions, key=lambda s: s.start_time, reverse=True)
        self._save_sessions()

    def clear_all_history(self) -> None:
        self._sessions = []
        self._save_sessions()

    def save_current_session(self) -> None:
        """Auto-save the live session (or remove a stale auto-save)."""

        if self._current is None:
            self._store.delete(AUTOSAVE_KEY)
            return
        self._store.set(AUTOSAVE_KEY, session_to_dict(self._current))
        if self.was_tracking_before_termination():
            self._store.set(LAST_TRACKING_TIMESTAMP_KEY, self._clock().isoformat())
        logger.debug("Auto-saved session: %s points", self._current.points_count)

    def _save_sessions(self) -> None:
        self._store.set(SESSIONS_KEY, [session_to_dict(s) for s in self._sessions])
        logger.debug("Saved %s sessions", len(self._sessions))

    # -- recovery -----------------------------------------------------------

    @property
    def has_recovery_session(self) -> bool:
        return self._recovery is not None

    @property
    def recovery_session(self) -> TrackingSession | None:
        return self._recovery

    def _check_for_recovery_session(self) -> None:
        raw = self._store.get(AUTOSAVE_KEY)
        if raw is None:
            return
        decoded = decode_records([raw], session_from_dict, "auto-saved session")
        session = decoded[0] if decoded else None
        if session is not None and session.points_count > 0 and self._current is None:
            self._recovery = session
            logger.info(
                "Found interrupted session %s: %s points from %s",
                session.id,
                session.points_count,
                session.start_time.isoformat(),
            )
        else:
            self.clear_recovery_session()

    def clear_recovery_session(self) -> None:
        self._recovery = None
        if self._current is None:
            self._store.delete(AUTOSAVE_KEY)

    def save_recovered_session(self) -> TrackingSession | None:
        """Keep the interrupted session, closed at its last sample time."""

        if self._recovery is None:
            return None
        recovered = self._recovery
        end = recovered.locations[-1].timestamp if recovered.locations else self._clock()
        session = recovered.closed(end)
        self._sessions.insert(0, session)
        self._save_sessions()
        self.clear_recovery_session()
        logger.info("Recovered session saved: %s points", session.points_count)
        return session

    def discard_recovered_session(self) -> None:
        self.clear_recovery_session()
        logger.info("Recovered session discarded")

    # -- restart detection --------------------------------------------------

    def set_tracking_state(self, is_tracking: bool) -> None:
        """Persist whether tracking is on; stamping the time when it is."""

        self._store.set(WAS_TRACKING_KEY, bool(is_tracking))
        if is_tracking:
            self._store.set(LAST_TRACKING_TIMESTAMP_KEY, self._clock().isoformat())
        logger.debug("Tracking state saved: %s", is_tracking)

    def was_tracking_before_termination(self) -> bool:
        return bool(self._store.get(WAS_TRACKING_KEY, False))

    def get_last_tracking_timestamp(self) -> datetime | None:
        raw = self._store.get(LAST_TRACKING_TIMESTAMP_KEY)
        if not isinstance(raw, str):
            return None
        try:
            return ensure_aware(datetime.fromisoformat(raw))
        except ValueError:
            logger.warning("Ignoring unparsable last tracking timestamp %r", raw)
            return None

    def clear_was_tracking_state(self) -> None:
        self._store.set(WAS_TRACKING_KEY, False)
        logger.debug("Cleared was-tracking state")

    # -- statistics ---------------------------------------------------------

    def _all_sessions(self) -> list[TrackingSession]:
        if self._current is None:
            return list(self._sessions)
        return [self._current, *self._sessions]

    @property
    def total_distance_all_time(self) -> float:
        return sum(s.total_distance for s in self._all_sessions())

    @property
    def total_points_all_time(self) -> int:
        return sum(s.points_count for s in self._all_sessions())

    def daily_stats(self, tz_name: str = DEFAULT_TZ) -> list[DailyStats]:
        """Sessions (including the live one) grouped by local day, newest first."""

        grouped: dict[datetime, list[TrackingSession]] = defaultdict(list)
        for session in self._all_sessions():
            grouped[start_of_day(session.start_time, tz_name)].append(session)
        return [
            DailyStats(
                day=day,
                sessions=tuple(sorted(items, key=lambda s: s.start_time, reverse=True)),
            )
            for day, items in sorted(grouped.items(), key=lambda kv: kv[0], reverse=True)
        ]
