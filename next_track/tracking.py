"""Tracking state: the single owner of "are we recording right now"."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Protocol

from next_track.events import SESSION_ENDED, EventChannel
from next_track.history import TrackingHistoryStore
from next_track.models import GeofenceZone, TrackingSession, TrackingSource
from next_track.timeutils import utc_now

logger = logging.getLogger(__name__)

NO_PERMISSION_ERROR = "Location permission not granted"


class LocationRecorder(Protocol):
    """The device-side location updater."""

    @property
    def is_tracking(self) -> bool: ...

    @property
    def has_permission(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class ZoneProvider(Protocol):
    @property
    def current_zone(self) -> GeofenceZone | None: ...


class InMemoryRecorder:
    """Recorder that only keeps a flag; samples are fed through the history store."""

    def __init__(self, *, has_permission: bool = True, is_tracking: bool = False) -> None:
        self.has_permission = has_permission
        self.is_tracking = is_tracking
        self.start_calls = 0
        self.stop_calls = 0

    def start(self) -> None:
        self.is_tracking = True
        self.start_calls += 1

    def stop(self) -> None:
        self.is_tracking = False
        self.stop_calls += 1


class TrackingStateManager:
    """Coordinates the recorder and the history store behind one flag.

    Start/stop requests closer than ``debounce_seconds`` to the previous
    accepted change are refused, except manual ones. Refusals return False
    and are only logged.
    """

    def __init__(
        self,
        history: TrackingHistoryStore,
        recorder: LocationRecorder,
        zones: ZoneProvider | None = None,
        channel: EventChannel | None = None,
        *,
        debounce_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._history = history
        self._recorder = recorder
        self._zones = zones
        self._channel = channel
        self._debounce_seconds = debounce_seconds
        self._clock = clock

        self._is_tracking = False
        self._source = TrackingSource.NONE
        self._last_state_change: datetime | None = None
        self._last_action_time: datetime | None = None
        self.last_error: str | None = None

        self.sync_state_from_components()

    @property
    def is_tracking(self) -> bool:
        return self._is_tracking

    @property
    def source(self) -> TrackingSource:
        return self._source

    @property
    def last_state_change(self) -> datetime | None:
        return self._last_state_change

    @property
    def status_description(self) -> str:
        if self._is_tracking:
            return f"Tracking ({self._source.value})"
        return "Not Tracking"

    def attach_zones(self, zones: ZoneProvider) -> None:
        self._zones = zones

    # -- state sync -----------------------------------------------------------

    def sync_state_from_components(self) -> None:
        """Adopt the recorder/history state (used at startup)."""

        recorder_tracking = self._recorder.is_tracking
        has_session = self._history.current_session is not None
        logger.debug("Syncing state: recorder=%s session=%s", recorder_tracking, has_session)
        if recorder_tracking or has_session:
            self._is_tracking = True
            if self._source == TrackingSource.NONE:
                self._source = TrackingSource.RECOVERY
        else:
            self._is_tracking = False
            self._source = TrackingSource.NONE
        self._last_state_change = self._clock()

    def verify_tracking_state(self) -> bool:
        """Check that recorder and history agree with the flag; repair them if not."""

        recorder_tracking = self._recorder.is_tracking
        has_session = self._history.current_session is not None
        if self._is_tracking == recorder_tracking == has_session:
            logger.debug("Tracking state verified: %s", "tracking" if self._is_tracking else "stopped")
            return True

        logger.warning(
            "Tracking state mismatch: manager=%s recorder=%s session=%s",
            self._is_tracking,
            recorder_tracking,
            has_session,
        )
        if self._is_tracking:
            if not recorder_tracking:
                self._recorder.start()
            if not has_session:
                self._history.start_new_session()
        else:
            if recorder_tracking:
                self._recorder.stop()
            if has_session:
                self._end_session()
        return False

    # -- debounce -------------------------------------------------------------

    def should_allow_action(self, source: TrackingSource) -> bool:
        if source == TrackingSource.MANUAL or self._last_action_time is None:
            return True
        elapsed = (self._clock() - self._last_action_time).total_seconds()
        if elapsed < self._debounce_seconds:
            logger.info(
                "Debouncing %s request: %.1fs since last change (need %.1fs)",
                source.value,
                elapsed,
                self._debounce_seconds,
            )
            return False
        return True

    # -- control --------------------------------------------------------------

    def start_tracking(self, source: TrackingSource) -> bool:
        """Start recording; True if tracking is (now) on."""

        if not self.should_allow_action(source):
            logger.info("Start (%s) blocked by debounce", source.value)
            return False
        if self._is_tracking:
            logger.info("Already tracking (source: %s)", self._source.value)
            return True
        if not self._recorder.has_permission:
            self.last_error = NO_PERMISSION_ERROR
            logger.warning("Cannot start tracking (%s): %s", source.value, NO_PERMISSION_ERROR)
            return False

        self._recorder.start()
        self._history.start_new_session()
        self._history.set_tracking_state(True)
        self._mark_changed(True, source)
        logger.info("Tracking started (source: %s)", source.value)
        self.verify_tracking_state()
        return True

    def stop_tracking(self, source: TrackingSource) -> bool:
        """Stop recording; True if tracking is (now) off."""

        if not self.should_allow_action(source):
            logger.info("Stop (%s) blocked by debounce", source.value)
            return False
        if not self._is_tracking:
            logger.info("Not currently tracking")
            return True

        logger.info("Stopping tracking (source: %s, was: %s)", source.value, self._source.value)
        self._recorder.stop()
        self._end_session()
        self._history.set_tracking_state(False)
        self._mark_changed(False, TrackingSource.NONE)
        return True

    def _end_session(self) -> None:
        session = self._history.end_current_session()
        if session is not None and self._channel is not None:
            self._channel.publish(SESSION_ENDED, session)

    def _mark_changed(self, is_tracking: bool, source: TrackingSource) -> None:
        now = self._clock()
        self._is_tracking = is_tracking
        self._source = source
        self._last_state_change = now
        self._last_action_time = now
        self.last_error = None

    # -- queries --------------------------------------------------------------

    def is_in_stop_zone(self) -> bool:
        """True while inside a zone whose action pauses tracking."""

        if self._zones is None:
            return False
        zone = self._zones.current_zone
        return zone is not None and zone.action.stops_on_entry

    @property
    def current_session(self) -> TrackingSession | None:
        return self._history.current_session
