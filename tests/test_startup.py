from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from next_track.context import build_context
from next_track.geofence import StaticLocator
from next_track.models import GeofenceAction, GeofenceZone, TrackingSource
from next_track.notifications import (
    AUTO_START_NOTIFICATION_ID,
    INTERRUPTED_TRACKING_PROMPT,
    SESSION_RECOVERY_PROMPT,
    NotificationCenter,
)
from next_track.startup import StartupCoordinator, StartupParams, StartupState

from conftest import no_sleep

HOME = (37.7749, -122.4194)


class FakeGeofences:
    def __init__(self, zones=(), *, is_monitoring=True, gate: asyncio.Event | None = None, error=None) -> None:
        self.zones = list(zones)
        self.is_monitoring = is_monitoring
        self.gate = gate
        self.error = error
        self.monitoring_starts = 0
        self.checks = 0
        self.on_check = None
        self.on_should_start_tracking = None
        self.on_should_stop_tracking = None

    def start_monitoring_all_zones(self) -> bool:
        self.monitoring_starts += 1
        self.is_monitoring = True
        return True

    async def check_current_zone_states(self):
        self.checks += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.on_check is not None:
            self.on_check()
        return {}


class FakeTracking:
    def __init__(self, *, is_tracking=False, allow=True) -> None:
        self.is_tracking = is_tracking
        self.allow = allow
        self.in_stop_zone = False
        self.starts: list[TrackingSource] = []
        self.stops: list[TrackingSource] = []
        self.syncs = 0
        self.log: list[str] = []

    def start_tracking(self, source):
        self.starts.append(source)
        self.log.append("start")
        if self.allow:
            self.is_tracking = True
        return self.allow

    def stop_tracking(self, source):
        self.stops.append(source)
        self.is_tracking = False
        return True

    def is_in_stop_zone(self):
        self.log.append("stop_zone?")
        return self.in_stop_zone

    def sync_state_from_components(self):
        self.syncs += 1


class FakeHistory:
    def __init__(self, *, was_tracking=False, last=None, recovery=False) -> None:
        self.was_tracking = was_tracking
        self.last = last
        self.has_recovery_session = recovery
        self.cleared = 0

    def was_tracking_before_termination(self):
        return self.was_tracking

    def get_last_tracking_timestamp(self):
        return self.last

    def clear_was_tracking_state(self):
        self.cleared += 1
        self.was_tracking = False


def _zone(action=GeofenceAction.HOME_MODE, enabled=True) -> GeofenceZone:
    return GeofenceZone.create(name="Home", latitude=HOME[0], longitude=HOME[1], action=action, is_enabled=enabled)


def _coordinator(clock, geofences=None, tracking=None, history=None, notifier=None, **params) -> StartupCoordinator:
    return StartupCoordinator(
        geofences if geofences is not None else FakeGeofences(),
        tracking if tracking is not None else FakeTracking(),
        history if history is not None else FakeHistory(),
        notifier if notifier is not None else NotificationCenter(clock=clock),
        params=StartupParams(settle_delay_seconds=0.0, **params),
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def notifier(clock):
    return NotificationCenter(clock=clock)


def _auto_starts(notifier: NotificationCenter) -> list[str]:
    return [n.identifier for n in notifier.posted if n.identifier == AUTO_START_NOTIFICATION_ID]


@pytest.mark.asyncio
async def test_auto_starts_without_zones(clock, notifier):
    tracking = FakeTracking()
    coordinator = _coordinator(clock, FakeGeofences([_zone(enabled=False)]), tracking, notifier=notifier)

    await coordinator.run_startup_sequence()

    assert coordinator.state is StartupState.COMPLETED
    assert tracking.starts == [TrackingSource.AUTO_START]
    assert tracking.syncs == 1
    assert _auto_starts(notifier) == [AUTO_START_NOTIFICATION_ID]


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(clock):
    tracking = FakeTracking()
    coordinator = _coordinator(clock, tracking=tracking)

    await coordinator.run_startup_sequence()
    tracking.is_tracking = False
    await coordinator.run_startup_sequence()

    assert tracking.starts == [TrackingSource.AUTO_START]
    assert tracking.syncs == 1


@pytest.mark.asyncio
async def test_concurrent_runs_decide_once(clock):
    gate = asyncio.Event()
    geofences = FakeGeofences([_zone()], gate=gate)
    tracking = FakeTracking()
    coordinator = _coordinator(clock, geofences, tracking)

    first = asyncio.ensure_future(coordinator.run_startup_sequence())
    await asyncio.sleep(0)
    assert coordinator.state is StartupState.AWAITING_ZONE_CHECK
    second = asyncio.ensure_future(coordinator.run_startup_sequence())
    gate.set()
    await asyncio.gather(first, second)

    assert geofences.checks == 1
    assert tracking.starts == [TrackingSource.AUTO_START]


@pytest.mark.asyncio
async def test_decision_waits_for_zone_check(clock, notifier):
    gate = asyncio.Event()
    geofences = FakeGeofences([_zone()], gate=gate)
    tracking = FakeTracking()

    def entered_home():
        tracking.log.append("zone_check_done")
        tracking.in_stop_zone = True

    geofences.on_check = entered_home
    coordinator = _coordinator(clock, geofences, tracking, notifier=notifier)

    task = asyncio.ensure_future(coordinator.run_startup_sequence())
    for _ in range(5):
        await asyncio.sleep(0)
    assert tracking.log == []
    assert coordinator.state is StartupState.AWAITING_ZONE_CHECK

    gate.set()
    await task

    assert tracking.log == ["zone_check_done", "stop_zone?"]
    assert tracking.starts == []
    assert _auto_starts(notifier) == []


class RecordingGeofences(FakeGeofences):
    """Logs when the zone list is read."""

    def __init__(self, log: list[str], zones=()) -> None:
        self.log = log
        super().__init__(zones)

    @property
    def zones(self):
        self.log.append("zones")
        return self._zones

    @zones.setter
    def zones(self, value) -> None:
        self._zones = value


@pytest.mark.asyncio
async def test_settle_delay_runs_before_zones_are_read(clock):
    log: list[str] = []

    async def recording_sleep(seconds: float) -> None:
        log.append(f"sleep({seconds})")

    coordinator = StartupCoordinator(
        RecordingGeofences(log, [_zone()]),
        FakeTracking(),
        FakeHistory(),
        NotificationCenter(clock=clock),
        params=StartupParams(),
        clock=clock,
        sleep=recording_sleep,
    )

    await coordinator.run_startup_sequence()

    assert log == ["sleep(0.5)", "zones"]


def test_decision_outside_the_deciding_state_is_rejected(clock):
    tracking = FakeTracking()
    coordinator = _coordinator(clock, tracking=tracking)

    with pytest.raises(RuntimeError, match="not_started"):
        coordinator._complete_startup_sequence()

    assert tracking.starts == []
    assert coordinator.state is StartupState.NOT_STARTED


@pytest.mark.asyncio
async def test_monitoring_is_started_when_off(clock):
    geofences = FakeGeofences([_zone()], is_monitoring=False)
    await _coordinator(clock, geofences).run_startup_sequence()
    assert geofences.monitoring_starts == 1
    assert geofences.checks == 1


@pytest.mark.asyncio
async def test_no_check_without_enabled_zones(clock):
    geofences = FakeGeofences([_zone(enabled=False)], is_monitoring=False)
    await _coordinator(clock, geofences).run_startup_sequence()
    assert geofences.checks == 0
    assert geofences.monitoring_starts == 0


@pytest.mark.asyncio
async def test_already_tracking_is_not_restarted(clock, notifier):
    tracking = FakeTracking(is_tracking=True)
    coordinator = _coordinator(clock, tracking=tracking, notifier=notifier)
    await coordinator.run_startup_sequence()
    assert tracking.starts == []
    assert _auto_starts(notifier) == []


@pytest.mark.asyncio
async def test_zone_check_timeout_degrades_to_auto_start(clock):
    geofences = FakeGeofences([_zone()], gate=asyncio.Event())
    tracking = FakeTracking()
    coordinator = _coordinator(clock, geofences, tracking, zone_check_timeout_seconds=0.01)

    await asyncio.wait_for(coordinator.run_startup_sequence(), 1.0)

    assert coordinator.state is StartupState.COMPLETED
    assert tracking.starts == [TrackingSource.AUTO_START]


@pytest.mark.asyncio
async def test_zone_check_error_degrades_to_auto_start(clock):
    geofences = FakeGeofences([_zone()], error=RuntimeError("location services off"))
    tracking = FakeTracking()
    await _coordinator(clock, geofences, tracking).run_startup_sequence()
    assert tracking.starts == [TrackingSource.AUTO_START]


@pytest.mark.asyncio
async def test_refused_auto_start_posts_nothing(clock, notifier):
    tracking = FakeTracking(allow=False)
    coordinator = _coordinator(clock, tracking=tracking, notifier=notifier)
    await coordinator.run_startup_sequence()
    assert tracking.starts == [TrackingSource.AUTO_START]
    assert notifier.posted == []
    assert coordinator.state is StartupState.COMPLETED


@pytest.mark.asyncio
async def test_recovery_prompt_raised_for_autosaved_session(clock):
    coordinator = _coordinator(clock, history=FakeHistory(recovery=True))
    await coordinator.run_startup_sequence()
    assert coordinator.prompts.is_set(SESSION_RECOVERY_PROMPT)


@pytest.mark.parametrize(
    ("gap_seconds", "prompted"),
    [(301, True), (300, False), (299, False)],
)
def test_interruption_threshold(clock, gap_seconds, prompted):
    history = FakeHistory(was_tracking=True, last=clock.now - timedelta(seconds=gap_seconds))
    coordinator = _coordinator(clock, history=history)

    assert coordinator.check_for_interrupted_tracking() is prompted
    assert coordinator.prompts.is_set(INTERRUPTED_TRACKING_PROMPT) is prompted
    assert history.cleared == 1


def test_interruption_without_timestamp_only_clears_flag(clock):
    history = FakeHistory(was_tracking=True)
    coordinator = _coordinator(clock, history=history)
    assert not coordinator.check_for_interrupted_tracking()
    assert history.cleared == 1


def test_interruption_skipped_while_tracking_or_not_flagged(clock):
    history = FakeHistory(was_tracking=True, last=clock.now - timedelta(hours=1))
    coordinator = _coordinator(clock, tracking=FakeTracking(is_tracking=True), history=history)
    assert not coordinator.check_for_interrupted_tracking()
    assert history.cleared == 0

    quiet = FakeHistory(last=clock.now - timedelta(hours=1))
    assert not _coordinator(clock, history=quiet).check_for_interrupted_tracking()
    assert quiet.cleared == 0


@pytest.mark.asyncio
async def test_interrupted_prompt_after_suppressed_auto_start(clock):
    tracking = FakeTracking()
    tracking.in_stop_zone = True
    history = FakeHistory(was_tracking=True, last=clock.now - timedelta(hours=2))
    coordinator = _coordinator(clock, FakeGeofences([_zone()]), tracking, history)

    await coordinator.run_startup_sequence()

    assert tracking.starts == []
    assert coordinator.prompts.is_set(INTERRUPTED_TRACKING_PROMPT)


def test_resume_and_dismiss(clock):
    tracking = FakeTracking()
    history = FakeHistory(was_tracking=True, last=clock.now - timedelta(hours=1))
    coordinator = _coordinator(clock, tracking=tracking, history=history)
    coordinator.check_for_interrupted_tracking()

    assert coordinator.resume_interrupted_tracking()
    assert tracking.starts == [TrackingSource.RECOVERY]
    assert not coordinator.prompts.is_set(INTERRUPTED_TRACKING_PROMPT)

    coordinator.prompts.raise_prompt(INTERRUPTED_TRACKING_PROMPT)
    coordinator.dismiss_interrupted_tracking()
    assert not coordinator.prompts.is_set(INTERRUPTED_TRACKING_PROMPT)


def test_geofence_callbacks_route_to_tracking(clock):
    geofences = FakeGeofences()
    tracking = FakeTracking()
    coordinator = _coordinator(clock, geofences, tracking)

    coordinator.install_geofence_callbacks()
    geofences.on_should_start_tracking()
    geofences.on_should_stop_tracking()
    assert tracking.starts == [TrackingSource.GEOFENCE_EXIT]
    assert tracking.stops == [TrackingSource.GEOFENCE_ENTER]

    coordinator.clear_geofence_callbacks()
    assert geofences.on_should_start_tracking is None
    assert geofences.on_should_stop_tracking is None


def _seed_home_zone(state_path, clock) -> None:
    context = build_context(state_path, clock=clock)
    context.geofences.add_zone(_zone())
    context.flush()


@pytest.mark.asyncio
async def test_launch_at_home_does_not_track(state_path, clock):
    _seed_home_zone(state_path, clock)
    context = build_context(
        state_path,
        locator=StaticLocator(HOME),
        startup_params=StartupParams(settle_delay_seconds=0.0),
        clock=clock,
    )

    await context.startup.run_startup_sequence()

    assert not context.tracking.is_tracking
    assert context.geofences.is_monitoring
    assert [n.title for n in context.notifier.posted] == ["📍 At Home"]


@pytest.mark.asyncio
async def test_launch_away_from_home_auto_starts(state_path, clock):
    _seed_home_zone(state_path, clock)
    context = build_context(
        state_path,
        locator=StaticLocator((HOME[0] + 0.05, HOME[1])),
        startup_params=StartupParams(settle_delay_seconds=0.0),
        clock=clock,
    )

    await context.startup.run_startup_sequence()

    assert context.tracking.is_tracking
    assert context.tracking.source is TrackingSource.AUTO_START
    assert context.history.current_session is not None
    assert [n.identifier for n in context.notifier.posted] == [AUTO_START_NOTIFICATION_ID]
