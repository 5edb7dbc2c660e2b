"""Geofence zones: persistence, monitoring and enter/exit handling."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from next_track.geo import clamp_radius, is_inside_circle
from next_track.models import GeofenceAction, GeofenceZone
from next_track.notifications import NotificationCenter
from next_track.serialization import decode_records, zone_from_dict, zone_to_dict
from next_track.storage import JsonStateStore
from next_track.timeutils import utc_now

logger = logging.getLogger(__name__)

ZONES_KEY = "geofence_zones"
MONITORING_KEY = "geofence_monitoring_enabled"

STOPPING_BODY = "Stopping location tracking..."
STARTING_BODY = "Starting location tracking..."


class ZoneState(str, Enum):
    INSIDE = "inside"
    OUTSIDE = "outside"
    UNKNOWN = "unknown"


class Locator(Protocol):
    """Source of the device position used for zone-state checks."""

    @property
    def has_always_permission(self) -> bool: ...

    async def current_position(self) -> tuple[float, float] | None: ...


class StaticLocator:
    """Locator returning a fixed position (None when unknown)."""

    def __init__(
        self,
        position: tuple[float, float] | None = None,
        *,
        has_always_permission: bool = True,
        delay_seconds: float = 0.0,
    ) -> None:
        self.position = position
        self.has_always_permission = has_always_permission
        self.delay_seconds = delay_seconds

    async def current_position(self) -> tuple[float, float] | None:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        return self.position


class GeofenceManager:
    """Owns the configured zones and turns zone transitions into tracking hooks.

    ``on_should_start_tracking`` / ``on_should_stop_tracking`` are plain
    callables set by the owner (see ``StartupCoordinator``). Actions closer
    than ``debounce_seconds`` to the previous one are ignored, but the current
    zone is still updated.
    """

    def __init__(
        self,
        store: JsonStateStore | None = None,
        locator: Locator | None = None,
        notifier: NotificationCenter | None = None,
        *,
        debounce_seconds: float = 5.0,
        state_check_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._locator = locator if locator is not None else StaticLocator()
        self._notifier = notifier
        self._debounce_seconds = debounce_seconds
        self._state_check_timeout = state_check_timeout_seconds
        self._clock = clock

        self._zones: list[GeofenceZone] = []
        if store is not None:
            self._zones = decode_records(store.get(ZONES_KEY), zone_from_dict, "geofence zone")
        self._is_monitoring = False
        self._current_zone: GeofenceZone | None = None
        self._inside_ids: set[str] = set()
        self._last_action_time: datetime | None = None

        self.on_should_start_tracking: Callable[[], object] | None = None
        self.on_should_stop_tracking: Callable[[], object] | None = None

        logger.debug(
            "Loaded %s zones (%s enabled)", len(self._zones), sum(1 for z in self._zones if z.is_enabled)
        )

    @property
    def zones(self) -> list[GeofenceZone]:
        return list(self._zones)

    @property
    def enabled_zones(self) -> list[GeofenceZone]:
        return [z for z in self._zones if z.is_enabled]

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    @property
    def current_zone(self) -> GeofenceZone | None:
        return self._current_zone

    def get_zone(self, zone_id: str) -> GeofenceZone | None:
        return next((z for z in self._zones if z.id == zone_id), None)

    # -- zone management ------------------------------------------------------

    def add_zone(self, zone: GeofenceZone) -> GeofenceZone:
        zone = replace(zone, radius=clamp_radius(zone.radius))
        self._zones.append(zone)
        self._save_zones()
        logger.info("Added zone %s (%s, %.0f m)", zone.name, zone.action.value, zone.radius)
        return zone

    def update_zone(self, zone: GeofenceZone) -> bool:
        for i, existing in enumerate(self._zones):
            if existing.id == zone.id:
                self._zones[i] = replace(zone, radius=clamp_radius(zone.radius))
                self._save_zones()
                return True
        return False

    def delete_zone(self, zone_id: str) -> bool:
        before = len(self._zones)
        self._zones = [z for z in self._zones if z.id != zone_id]
        if len(self._zones) == before:
            return False
        self._inside_ids.discard(zone_id)
        if self._current_zone is not None and self._current_zone.id == zone_id:
            self._current_zone = None
        self._save_zones()
        return True

    def toggle_zone(self, zone_id: str) -> GeofenceZone | None:
        zone = self.get_zone(zone_id)
        if zone is None:
            return None
        toggled = replace(zone, is_enabled=not zone.is_enabled)
        self.update_zone(toggled)
        logger.info("Zone %s %s", toggled.name, "enabled" if toggled.is_enabled else "disabled")
        return toggled

    def _save_zones(self) -> None:
        if self._store is not None:
            self._store.set(ZONES_KEY, [zone_to_dict(z) for z in self._zones])

    # -- monitoring -----------------------------------------------------------

    def start_monitoring_all_zones(self) -> bool:
        """Turn monitoring on; requires the "always" location permission."""

        if not self._locator.has_always_permission:
            logger.warning("Cannot start zone monitoring: 'always' location permission missing")
            return False
        self._is_monitoring = True
        self._save_monitoring_state()
        logger.info("Started monitoring %s zones", len(self.enabled_zones))
        return True

    def stop_monitoring_all_zones(self) -> None:
        self._is_monitoring = False
        self._save_monitoring_state()
        logger.info("Stopped monitoring all zones")

    def restore_monitoring_if_needed(self) -> bool:
        """Resume monitoring when it was on before and enabled zones exist."""

        was_monitoring = bool(self._store.get(MONITORING_KEY, False)) if self._store is not None else False
        if not was_monitoring or not self.enabled_zones:
            logger.debug(
                "Skipping monitoring restore (was_monitoring=%s, enabled=%s)",
                was_monitoring,
                len(self.enabled_zones),
            )
            return False
        return self.start_monitoring_all_zones()

    def _save_monitoring_state(self) -> None:
        if self._store is not None:
            self._store.set(MONITORING_KEY, self._is_monitoring)

    async def check_current_zone_states(self) -> dict[str, ZoneState]:
        """Evaluate every enabled zone against the current position.

        Completes exactly once: immediately when there is nothing to check,
        otherwise when the position is known or the state-check timeout
        expires (all zones are then reported UNKNOWN).

        Returns:
            Mapping of zone id -> state.
        """

        enabled = self.enabled_zones
        if not enabled:
            logger.debug("No enabled zones to check")
            return {}

        try:
            position = await asyncio.wait_for(self._locator.current_position(), self._state_check_timeout)
        except asyncio.TimeoutError:
            logger.warning("Zone state check timed out after %.1fs; forcing completion", self._state_check_timeout)
            position = None

        states: dict[str, ZoneState] = {}
        for zone in enabled:
            if position is None:
                states[zone.id] = ZoneState.UNKNOWN
                continue
            inside = is_inside_circle(position[0], position[1], zone.latitude, zone.longitude, zone.radius)
            states[zone.id] = ZoneState.INSIDE if inside else ZoneState.OUTSIDE
            logger.info("Zone state: %s = %s", zone.name, states[zone.id].value)
            if inside:
                self._inside_ids.add(zone.id)
                self._current_zone = zone
                self._run_entry_action(zone, title=f"📍 At {zone.name}")
            else:
                self._inside_ids.discard(zone.id)
        return states

    def handle_location(self, latitude: float, longitude: float) -> None:
        """Feed a position update; fires enter/exit actions on transitions."""

        for zone in self.enabled_zones:
            inside = is_inside_circle(latitude, longitude, zone.latitude, zone.longitude, zone.radius)
            was_inside = zone.id in self._inside_ids
            if inside and not was_inside:
                self._inside_ids.add(zone.id)
                self.handle_enter(zone)
            elif was_inside and not inside:
                self._inside_ids.discard(zone.id)
                self.handle_exit(zone)

    def handle_enter(self, zone: GeofenceZone) -> None:
        logger.info("Entered zone %s", zone.name)
        self._current_zone = zone
        if zone.action.stops_on_entry:
            self._run_entry_action(zone, title=f"📍 Arrived at {zone.name}")
        else:
            self._run_entry_action(zone, title=f"📍 Entered {zone.name}")

    def handle_exit(self, zone: GeofenceZone) -> None:
        logger.info("Exited zone %s", zone.name)
        self._current_zone = None
        if zone.action not in (GeofenceAction.HOME_MODE, GeofenceAction.START_ON_EXIT, GeofenceAction.STOP_ON_EXIT):
            return
        if not self._should_trigger_action():
            logger.info("Exit action debounced for %s", zone.name)
            return
        if zone.action == GeofenceAction.STOP_ON_EXIT:
            self._notify(f"📍 Left {zone.name}", STOPPING_BODY)
            self._fire(self.on_should_stop_tracking)
        else:
            self._notify(f"📍 Left {zone.name}", STARTING_BODY)
            self._fire(self.on_should_start_tracking)

    def _run_entry_action(self, zone: GeofenceZone, *, title: str) -> None:
        if not (zone.action.stops_on_entry or zone.action == GeofenceAction.START_ON_ENTER):
            return
        if not self._should_trigger_action():
            logger.info("Entry action debounced for %s", zone.name)
            return
        if zone.action.stops_on_entry:
            self._notify(title, STOPPING_BODY)
            self._fire(self.on_should_stop_tracking)
        else:
            self._notify(title, STARTING_BODY)
            self._fire(self.on_should_start_tracking)

    def _should_trigger_action(self) -> bool:
        now = self._clock()
        if self._last_action_time is not None:
            elapsed = (now - self._last_action_time).total_seconds()
            if elapsed < self._debounce_seconds:
                logger.debug("Ignoring rapid zone event (%.1fs since last)", elapsed)
                return False
        self._last_action_time = now
        return True

    def _notify(self, title: str, body: str) -> None:
        if self._notifier is not None:
            self._notifier.post(title, body)

    @staticmethod
    def _fire(hook: Callable[[], object] | None) -> None:
        if hook is not None:
            hook()
