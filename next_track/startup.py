"""Coordinated launch sequence: geofence-aware auto-start and interruption checks.

The sequence runs once per process:

1. wait a short settle delay so the collaborators finish initializing;
2. if any geofence zone is enabled, make sure monitoring is on and wait for
   the zone-state check to complete (bounded by a timeout);
3. decide: no auto-start inside a stop zone or while already tracking,
   otherwise start tracking with source ``auto_start``;
4. check whether a previous tracking run was cut short and offer a resume.

Step 3 never runs before the zone-state check of step 2 has finished.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Protocol

from next_track.models import GeofenceZone, TrackingSource
from next_track.notifications import (
    AUTO_START_NOTIFICATION_ID,
    INTERRUPTED_TRACKING_PROMPT,
    SESSION_RECOVERY_PROMPT,
    NotificationCenter,
    PromptFlags,
)
from next_track.timeutils import utc_now

logger = logging.getLogger(__name__)

AUTO_START_TITLE = "📍 Tracking Started"
AUTO_START_BODY = "Next Track has automatically started location tracking."
INTERRUPTED_TRACKING_MESSAGE = (
    "Your tracking was interrupted (phone restart or app terminated). Would you like to resume?"
)


class StartupState(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_ZONE_CHECK = "awaiting_zone_check"
    DECIDING = "deciding"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class StartupParams:
    """Timing parameters of the launch sequence."""

    settle_delay_seconds: float = 0.5
    # Upper bound for the zone-state check; on expiry we decide as if outside all zones.
    zone_check_timeout_seconds: float = 5.0
    # A gap strictly longer than this since the last tracking stamp counts as an interruption.
    interruption_threshold_seconds: float = 300.0


class ZoneMonitor(Protocol):
    on_should_start_tracking: Callable[[], object] | None
    on_should_stop_tracking: Callable[[], object] | None

    @property
    def zones(self) -> list[GeofenceZone]: ...

    @property
    def is_monitoring(self) -> bool: ...

    def start_monitoring_all_zones(self) -> bool: ...

    async def check_current_zone_states(self) -> object: ...


class TrackingController(Protocol):
    @property
    def is_tracking(self) -> bool: ...

    def start_tracking(self, source: TrackingSource) -> bool: ...

    def stop_tracking(self, source: TrackingSource) -> bool: ...

    def is_in_stop_zone(self) -> bool: ...

    def sync_state_from_components(self) -> None: ...


class RestartEvidence(Protocol):
    @property
    def has_recovery_session(self) -> bool: ...

    def was_tracking_before_termination(self) -> bool: ...

    def get_last_tracking_timestamp(self) -> datetime | None: ...

    def clear_was_tracking_state(self) -> None: ...


class StartupCoordinator:
    """Runs the launch sequence against injected collaborators.

    Args:
        geofences: Zone monitor (``GeofenceManager`` in-process).
        tracking: Tracking state owner (``TrackingStateManager``).
        history: Source of restart evidence (``TrackingHistoryStore``).
        notifier: Where the auto-start notification is posted.
        prompts: Observable flags for the resume/recovery prompts.
        params: Timing parameters.
        clock: Returns the current aware datetime.
        sleep: Awaitable sleep used for the settle delay.
    """

    def __init__(
        self,
        geofences: ZoneMonitor,
        tracking: TrackingController,
        history: RestartEvidence,
        notifier: NotificationCenter,
        prompts: PromptFlags | None = None,
        params: StartupParams = StartupParams(),
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._geofences = geofences
        self._tracking = tracking
        self._history = history
        self._notifier = notifier
        self.prompts = prompts if prompts is not None else PromptFlags()
        self._params = params
        self._clock = clock
        self._sleep = sleep
        self._state = StartupState.NOT_STARTED

    @property
    def state(self) -> StartupState:
        return self._state

    async def run_startup_sequence(self) -> None:
        """Run the launch sequence; every call after the first is a no-op."""

        if self._state != StartupState.NOT_STARTED:
            logger.info("Startup sequence already %s; ignoring", self._state.value)
            return
        self._state = StartupState.AWAITING_ZONE_CHECK
        logger.info("Starting coordinated startup")

        try:
            self._tracking.sync_state_from_components()
        except Exception:
            logger.warning("Tracking state sync failed; keeping current state", exc_info=True)

        await self._sleep(self._params.settle_delay_seconds)
        self._check_for_session_recovery()

        enabled = self._enabled_zones()
        if enabled:
            logger.info("Found %s enabled geofences", len(enabled))
            await self._await_zone_states()
        else:
            logger.info("No geofences configured; deciding immediately")

        self._state = StartupState.DECIDING
        try:
            self._complete_startup_sequence()
        finally:
            self._state = StartupState.COMPLETED
        logger.info("Startup complete")

    def _enabled_zones(self) -> list[GeofenceZone]:
        try:
            return [z for z in self._geofences.zones if z.is_enabled]
        except Exception:
            logger.warning("Cannot read geofence zones; treating as none", exc_info=True)
            return []

    async def _await_zone_states(self) -> None:
        try:
            if not self._geofences.is_monitoring:
                logger.info("Starting geofence monitoring")
                if not self._geofences.start_monitoring_all_zones():
                    logger.warning("Geofence monitoring could not be started")
            await asyncio.wait_for(
                self._geofences.check_current_zone_states(),
                self._params.zone_check_timeout_seconds,
            )
            logger.info("Geofence state check complete")
        except asyncio.TimeoutError:
            logger.warning(
                "Geofence state check did not complete within %.1fs; assuming not in a stop zone",
                self._params.zone_check_timeout_seconds,
            )
        except Exception:
            logger.warning("Geofence state check failed; assuming not in a stop zone", exc_info=True)

    def _in_stop_zone(self) -> bool:
        try:
            return self._tracking.is_in_stop_zone()
        except Exception:
            logger.warning("Stop-zone query failed; assuming not in a stop zone", exc_info=True)
            return False

    def _complete_startup_sequence(self) -> None:
        if self._state != StartupState.DECIDING:
            raise RuntimeError(f"auto-start decision requested in state {self._state.value!r}")

        try:
            if self._in_stop_zone():
                logger.info("In a stop zone; not auto-starting")
            elif self._tracking.is_tracking:
                logger.info("Already tracking; skipping auto-start")
            elif self._tracking.start_tracking(TrackingSource.AUTO_START):
                logger.info("Auto-start successful")
                self._notifier.post(AUTO_START_TITLE, AUTO_START_BODY, identifier=AUTO_START_NOTIFICATION_ID)
            else:
                logger.info("Auto-start was refused")
        except Exception:
            logger.warning("Auto-start decision failed; tracking left unchanged", exc_info=True)

        try:
            self.check_for_interrupted_tracking()
        except Exception:
            logger.warning("Interrupted-tracking check failed", exc_info=True)

    def _check_for_session_recovery(self) -> None:
        try:
            if self._history.has_recovery_session:
                self.prompts.raise_prompt(SESSION_RECOVERY_PROMPT)
        except Exception:
            logger.warning("Session recovery check failed", exc_info=True)

    def check_for_interrupted_tracking(self) -> bool:
        """Raise the resume prompt if a previous tracking run was cut short.

        Returns:
            True if the prompt was raised.
        """

        if self._tracking.is_tracking:
            logger.debug("Already tracking; skipping interrupted check")
            return False
        if not self._history.was_tracking_before_termination():
            logger.debug("Was not tracking before termination")
            return False

        shown = False
        last = self._history.get_last_tracking_timestamp()
        if last is not None:
            elapsed = (self._clock() - last).total_seconds()
            if elapsed > self._params.interruption_threshold_seconds:
                logger.info("Tracking was interrupted %d min ago; offering resume", int(elapsed // 60))
                self.prompts.raise_prompt(INTERRUPTED_TRACKING_PROMPT)
                shown = True
            else:
                logger.info("Recent tracking activity (%ds ago); not offering resume", int(elapsed))

        self._history.clear_was_tracking_state()
        return shown

    def resume_interrupted_tracking(self) -> bool:
        self.prompts.dismiss(INTERRUPTED_TRACKING_PROMPT)
        return self._tracking.start_tracking(TrackingSource.RECOVERY)

    def dismiss_interrupted_tracking(self) -> None:
        self.prompts.dismiss(INTERRUPTED_TRACKING_PROMPT)

    def install_geofence_callbacks(self) -> None:
        """Route the zone monitor's start/stop hooks to the tracking controller."""

        tracking = self._tracking

        def on_start() -> None:
            if tracking.start_tracking(TrackingSource.GEOFENCE_EXIT):
                logger.info("Tracking started via geofence")
            else:
                logger.info("Geofence start request was refused")

        def on_stop() -> None:
            if tracking.stop_tracking(TrackingSource.GEOFENCE_ENTER):
                logger.info("Tracking stopped via geofence")
            else:
                logger.info("Geofence stop request was refused")

        self._geofences.on_should_start_tracking = on_start
        self._geofences.on_should_stop_tracking = on_stop

    def clear_geofence_callbacks(self) -> None:
        self._geofences.on_should_start_tracking = None
        self._geofences.on_should_stop_tracking = None
