from __future__ import annotations

import pytest

from next_track.events import SESSION_ENDED, EventChannel
from next_track.models import GeofenceAction, GeofenceZone, TrackingSource
from next_track.tracking import NO_PERMISSION_ERROR, InMemoryRecorder, TrackingStateManager


class Zones:
    def __init__(self, zone: GeofenceZone | None = None) -> None:
        self.current_zone = zone


def _zone(action: GeofenceAction) -> GeofenceZone:
    return GeofenceZone.create(name="Z", latitude=0.0, longitude=0.0, action=action)


@pytest.fixture
def recorder():
    return InMemoryRecorder()


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def manager(history, recorder, channel, clock):
    return TrackingStateManager(history, recorder, Zones(), channel, clock=clock)


def test_start_opens_session_and_persists_flag(manager, history, recorder):
    assert manager.start_tracking(TrackingSource.MANUAL)

    assert manager.is_tracking
    assert manager.source is TrackingSource.MANUAL
    assert recorder.is_tracking
    assert history.current_session is not None
    assert history.was_tracking_before_termination()
    assert manager.status_description == "Tracking (manual)"


def test_start_when_already_tracking_is_accepted_without_new_session(manager, history, recorder, clock):
    manager.start_tracking(TrackingSource.MANUAL)
    session = history.current_session
    clock.advance(10)

    assert manager.start_tracking(TrackingSource.AUTO_START)
    assert history.current_session is session
    assert recorder.start_calls == 1


def test_start_without_permission_is_refused(history, channel, clock):
    manager = TrackingStateManager(history, InMemoryRecorder(has_permission=False), None, channel, clock=clock)

    assert not manager.start_tracking(TrackingSource.AUTO_START)
    assert manager.last_error == NO_PERMISSION_ERROR
    assert not manager.is_tracking
    assert history.current_session is None


def test_non_manual_requests_are_debounced(manager, clock):
    assert manager.start_tracking(TrackingSource.GEOFENCE_EXIT)
    clock.advance(4.9)
    assert not manager.stop_tracking(TrackingSource.GEOFENCE_ENTER)
    assert manager.is_tracking

    clock.advance(0.2)
    assert manager.stop_tracking(TrackingSource.GEOFENCE_ENTER)
    assert not manager.is_tracking


def test_manual_requests_bypass_debounce(manager, clock):
    assert manager.start_tracking(TrackingSource.GEOFENCE_EXIT)
    assert manager.stop_tracking(TrackingSource.MANUAL)
    assert not manager.is_tracking


def test_stop_when_not_tracking_is_accepted(manager):
    assert manager.stop_tracking(TrackingSource.GEOFENCE_ENTER)


def test_stop_closes_session_and_publishes(manager, history, channel, recorder):
    ended = []
    channel.subscribe(SESSION_ENDED, ended.append)
    manager.start_tracking(TrackingSource.MANUAL)

    assert manager.stop_tracking(TrackingSource.MANUAL)

    assert not recorder.is_tracking
    assert history.current_session is None
    assert not history.was_tracking_before_termination()
    assert [s.id for s in ended] == [history.sessions[0].id]
    assert manager.source is TrackingSource.NONE


@pytest.mark.parametrize(
    ("action", "expected"),
    [
        (GeofenceAction.HOME_MODE, True),
        (GeofenceAction.STOP_ON_ENTER, True),
        (GeofenceAction.START_ON_ENTER, False),
        (GeofenceAction.START_ON_EXIT, False),
        (GeofenceAction.STOP_ON_EXIT, False),
    ],
)
def test_is_in_stop_zone(history, recorder, clock, action, expected):
    manager = TrackingStateManager(history, recorder, Zones(_zone(action)), clock=clock)
    assert manager.is_in_stop_zone() is expected


def test_not_in_stop_zone_without_current_zone(manager):
    assert not manager.is_in_stop_zone()


def test_sync_adopts_running_recorder_as_recovery(history, clock):
    manager = TrackingStateManager(history, InMemoryRecorder(is_tracking=True), clock=clock)
    assert manager.is_tracking
    assert manager.source is TrackingSource.RECOVERY


def test_verify_repairs_stopped_recorder(manager, recorder):
    manager.start_tracking(TrackingSource.MANUAL)
    recorder.stop()

    assert not manager.verify_tracking_state()
    assert recorder.is_tracking
    assert manager.verify_tracking_state()


def test_verify_ends_orphan_session(manager, history):
    history.start_new_session()
    assert not manager.verify_tracking_state()
    assert history.current_session is None
