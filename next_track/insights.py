"""Period insights: distance, time, activity mix and place highlights.

``compute_insight`` is a pure function over the session/place/city
collections. ``InsightsService`` keeps the latest daily/weekly/monthly
summaries and refreshes them (debounced) whenever a session ends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Sequence

from next_track.events import SESSION_ENDED, Debouncer, EventChannel
from next_track.models import (
    DEFAULT_TZ,
    UNKNOWN_PLACE_NAME,
    DetectedPlace,
    PlaceCategory,
    StoredLocation,
    TrackingSession,
    VisitedCity,
)
from next_track.timeutils import TimeRange, add_days, add_months, start_of_day, tzinfo_from_name, utc_now

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344


class InsightPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def display_name(self) -> str:
        return {"daily": "Today", "weekly": "This Week", "monthly": "This Month"}[self.value]

    @property
    def unit(self) -> str:
        return {"daily": "day", "weekly": "week", "monthly": "month"}[self.value]

    def date_range(self, now: datetime, tz_name: str = DEFAULT_TZ) -> TimeRange:
        """Current period anchored at ``now``.

        daily: [local midnight, +1 day); weekly: [now - 7 days, now);
        monthly: [now - 1 calendar month, now).
        """

        local_now = now.astimezone(tzinfo_from_name(tz_name))
        if self is InsightPeriod.DAILY:
            start = start_of_day(local_now, tz_name)
            return TimeRange(start, add_days(start, 1))
        if self is InsightPeriod.WEEKLY:
            return TimeRange(add_days(local_now, -7), local_now)
        return TimeRange(add_months(local_now, -1), local_now)

    def previous_range(self, now: datetime, tz_name: str = DEFAULT_TZ) -> TimeRange:
        """The equal-length period right before ``date_range``."""

        current = self.date_range(now, tz_name)
        if self is InsightPeriod.MONTHLY:
            return TimeRange(add_months(current.start, -1), current.start)
        days = 1 if self is InsightPeriod.DAILY else 7
        return TimeRange(add_days(current.start, -days), current.start)


class Activity(str, Enum):
    WALKING = "walking"
    RUNNING = "running"
    CYCLING = "cycling"
    DRIVING = "driving"
    STATIONARY = "stationary"
    UNKNOWN = "unknown"


_LABELS: dict[str, Activity] = {
    "walking": Activity.WALKING,
    "running": Activity.RUNNING,
    "cycling": Activity.CYCLING,
    "automotive": Activity.DRIVING,
    "driving": Activity.DRIVING,
    "stationary": Activity.STATIONARY,
}

# (upper bound in m/s, activity); the first bound the speed is below wins.
_SPEED_THRESHOLDS: tuple[tuple[float, Activity], ...] = (
    (0.5, Activity.STATIONARY),
    (2.0, Activity.WALKING),
    (4.0, Activity.RUNNING),
    (10.0, Activity.CYCLING),
)


def classify_activity(location: StoredLocation) -> Activity:
    """Activity of one sample: explicit label first, otherwise inferred from speed."""

    if location.activity_type is not None:
        return _LABELS.get(location.activity_type.lower(), Activity.UNKNOWN)
    speed = location.speed_mps if location.speed_mps is not None else 0.0
    for bound, activity in _SPEED_THRESHOLDS:
        if speed < bound:
            return activity
    return Activity.DRIVING


@dataclass(frozen=True, slots=True)
class ActivityBreakdown:
    """Seconds attributed to each activity."""

    walking: float = 0.0
    running: float = 0.0
    cycling: float = 0.0
    driving: float = 0.0
    stationary: float = 0.0
    unknown: float = 0.0

    @property
    def total_time(self) -> float:
        return self.walking + self.running + self.cycling + self.driving + self.stationary + self.unknown

    @property
    def on_foot(self) -> float:
        return self.walking + self.running

    @property
    def vehicle(self) -> float:
        return self.cycling + self.driving

    def percentage(self, seconds: float) -> float:
        total = self.total_time
        return seconds / total * 100 if total > 0 else 0.0

    @property
    def on_foot_percentage(self) -> float:
        return self.percentage(self.on_foot)

    @property
    def vehicle_percentage(self) -> float:
        return self.percentage(self.vehicle)

    @property
    def stationary_percentage(self) -> float:
        return self.percentage(self.stationary)


@dataclass(frozen=True, slots=True)
class SessionHighlight:
    session_id: str
    name: str
    distance: float
    duration: float
    date: datetime


@dataclass(frozen=True, slots=True)
class PlaceHighlight:
    place_id: str
    name: str
    visit_count: int
    category: PlaceCategory


@dataclass(frozen=True, slots=True)
class InsightSummary:
    """Aggregate for one period; recomputed on demand, never persisted.

    ``distance_change`` / ``duration_change`` are percentages vs. the previous
    period and None when the previous period has nothing to compare against.
    """

    period: InsightPeriod
    generated_at: datetime
    total_distance: float = 0.0
    total_duration: float = 0.0
    session_count: int = 0
    activity: ActivityBreakdown = field(default_factory=ActivityBreakdown)
    places_visited: int = 0
    new_places_discovered: int = 0
    cities_visited: int = 0
    distance_change: float | None = None
    duration_change: float | None = None
    longest_session: SessionHighlight | None = None
    most_visited_place: PlaceHighlight | None = None

    @classmethod
    def empty(cls, period: InsightPeriod, generated_at: datetime | None = None) -> InsightSummary:
        return cls(period=period, generated_at=generated_at or utc_now())

    @property
    def is_empty(self) -> bool:
        return self.session_count == 0 and self.total_distance == 0

    @property
    def is_distance_up(self) -> bool:
        return (self.distance_change or 0.0) >= 0

    @property
    def is_duration_up(self) -> bool:
        return (self.duration_change or 0.0) >= 0

    @property
    def average_distance_per_session(self) -> float:
        return self.total_distance / self.session_count if self.session_count > 0 else 0.0


@dataclass(frozen=True, slots=True)
class InsightParams:
    """Parameters of insight computation."""

    # Time credited per location sample, regardless of the real sampling interval.
    seconds_per_sample: float = 1.0
    refresh_debounce_seconds: float = 5.0


def percent_change(current: float, previous: float) -> float | None:
    """Relative change in percent; None unless ``previous`` is positive."""

    if previous > 0:
        return (current - previous) / previous * 100
    return None


def activity_breakdown(sessions: Sequence[TrackingSession], seconds_per_sample: float = 1.0) -> ActivityBreakdown:
    totals = dict.fromkeys(Activity, 0.0)
    for session in sessions:
        for location in session.locations:
            totals[classify_activity(location)] += seconds_per_sample
    return ActivityBreakdown(**{activity.value: seconds for activity, seconds in totals.items()})


def compute_insight(
    period: InsightPeriod,
    sessions: Sequence[TrackingSession],
    places: Sequence[DetectedPlace],
    cities: Sequence[VisitedCity],
    *,
    now: datetime | None = None,
    tz_name: str = DEFAULT_TZ,
    params: InsightParams = InsightParams(),
) -> InsightSummary:
    """Summarize one period and compare it with the period before.

    Sessions belong to a period by start time only. Place, new-place and city
    counts use the current range; the most visited place is taken over all
    places.

    Args:
        period: Which period to summarize.
        sessions: All sessions (any order).
        places: All detected places.
        cities: All visited cities.
        now: Anchor time (defaults to the current time).
        tz_name: Timezone for calendar-day/month boundaries.
        params: Computation parameters.

    Returns:
        InsightSummary for ``period``.
    """

    now = now if now is not None else utc_now()
    current = period.date_range(now, tz_name)
    previous = period.previous_range(now, tz_name)

    current_sessions = [s for s in sessions if current.contains(s.start_time)]
    previous_sessions = [s for s in sessions if previous.contains(s.start_time)]

    total_distance = sum(s.total_distance for s in current_sessions)
    total_duration = sum(s.duration_at(now) for s in current_sessions)
    prev_distance = sum(s.total_distance for s in previous_sessions)
    prev_duration = sum(s.duration_at(now) for s in previous_sessions)

    places_visited = sum(
        1 for p in places if any(current.contains(v.arrival_time) for v in p.visit_history)
    )
    new_places = sum(1 for p in places if current.contains(p.created_at))
    cities_visited = sum(1 for c in cities if current.contains(c.last_visit_date))

    longest: SessionHighlight | None = None
    if current_sessions:
        best = max(current_sessions, key=lambda s: s.total_distance)
        longest = SessionHighlight(
            session_id=best.id,
            name=best.name,
            distance=best.total_distance,
            duration=best.duration_at(now),
            date=best.start_time,
        )

    most_visited: PlaceHighlight | None = None
    if places:
        top = max(places, key=lambda p: p.visit_count)
        most_visited = PlaceHighlight(
            place_id=top.id,
            name=top.name or UNKNOWN_PLACE_NAME,
            visit_count=top.visit_count,
            category=top.category,
        )

    return InsightSummary(
        period=period,
        generated_at=now,
        total_distance=total_distance,
        total_duration=total_duration,
        session_count=len(current_sessions),
        activity=activity_breakdown(current_sessions, params.seconds_per_sample),
        places_visited=places_visited,
        new_places_discovered=new_places,
        cities_visited=cities_visited,
        distance_change=percent_change(total_distance, prev_distance),
        duration_change=percent_change(total_duration, prev_duration),
        longest_session=longest,
        most_visited_place=most_visited,
    )


def format_duration(seconds: float) -> str:
    """'1h 5m' or '12m'."""

    total = int(seconds)
    hours, minutes = total // 3600, (total % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_miles(meters: float, digits: int = 1) -> str:
    return f"{meters / METERS_PER_MILE:.{digits}f} mi"


def format_change(change: float | None) -> str | None:
    """'+25%' / '-10%' (truncated toward zero); None stays None."""

    if change is None:
        return None
    sign = "+" if change >= 0 else ""
    return f"{sign}{int(change)}%"


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def summary_text(insight: InsightSummary) -> str:
    """One-paragraph natural language summary of an insight."""

    if insight.is_empty:
        return f"No tracking data for {insight.period.display_name.lower()}."

    text = f"You traveled {format_miles(insight.total_distance)} in {_plural(insight.session_count, 'session')}"
    change = format_change(insight.distance_change)
    if change is not None:
        text += f" ({change} vs last {insight.period.unit})"
    text += "."
    if insight.places_visited > 0:
        text += f" Visited {_plural(insight.places_visited, 'place')}."
    if insight.new_places_discovered > 0:
        text += f" Discovered {_plural(insight.new_places_discovered, 'new place')}!"
    return text


def activity_summary_text(insight: InsightSummary) -> str:
    """Short description of the activity mix (shares above 10%)."""

    breakdown = insight.activity
    if breakdown.total_time == 0:
        return "No activity data available."

    parts = []
    if breakdown.on_foot_percentage > 10:
        parts.append(f"{int(breakdown.on_foot_percentage)}% on foot")
    if breakdown.vehicle_percentage > 10:
        parts.append(f"{int(breakdown.vehicle_percentage)}% in vehicle")
    if breakdown.stationary_percentage > 10:
        parts.append(f"{int(breakdown.stationary_percentage)}% stationary")
    if not parts:
        return "Various activities recorded."
    return ", ".join(parts)


@dataclass(frozen=True, slots=True)
class TodayMetrics:
    distance: str
    duration: str
    places: int


@dataclass(frozen=True, slots=True)
class WeeklyTrends:
    distance_trend: float | None
    duration_trend: float | None
    is_distance_up: bool
    is_duration_up: bool


class InsightsService:
    """Holds the latest summary per period, computed from injected providers."""

    def __init__(
        self,
        sessions: Callable[[], Sequence[TrackingSession]],
        places: Callable[[], Sequence[DetectedPlace]] = lambda: (),
        cities: Callable[[], Sequence[VisitedCity]] = lambda: (),
        *,
        tz_name: str = DEFAULT_TZ,
        params: InsightParams = InsightParams(),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions = sessions
        self._places = places
        self._cities = cities
        self._tz_name = tz_name
        self._params = params
        self._clock = clock
        self._insights: dict[InsightPeriod, InsightSummary] = {}
        self._debouncer = Debouncer(params.refresh_debounce_seconds, self.generate_all_insights)
        self._unsubscribe: Callable[[], None] | None = None

    def generate_all_insights(self) -> None:
        sessions = self._sessions()
        places = self._places()
        cities = self._cities()
        now = self._clock()
        for period in InsightPeriod:
            self._insights[period] = compute_insight(
                period, sessions, places, cities, now=now, tz_name=self._tz_name, params=self._params
            )
        logger.debug("Generated insights from %s sessions", len(sessions))

    def refresh_insights(self) -> None:
        self.generate_all_insights()

    def get_insight(self, period: InsightPeriod) -> InsightSummary:
        insight = self._insights.get(period)
        return insight if insight is not None else InsightSummary.empty(period, self._clock())

    def summary_text(self, period: InsightPeriod) -> str:
        return summary_text(self.get_insight(period))

    def activity_summary_text(self, period: InsightPeriod) -> str:
        return activity_summary_text(self.get_insight(period))

    def today_metrics(self) -> TodayMetrics:
        insight = self.get_insight(InsightPeriod.DAILY)
        return TodayMetrics(
            distance=format_miles(insight.total_distance),
            duration=format_duration(insight.total_duration),
            places=insight.places_visited,
        )

    def weekly_trends(self) -> WeeklyTrends:
        insight = self.get_insight(InsightPeriod.WEEKLY)
        return WeeklyTrends(
            distance_trend=insight.distance_change,
            duration_trend=insight.duration_change,
            is_distance_up=insight.is_distance_up,
            is_duration_up=insight.is_duration_up,
        )

    # -- refresh on session end -------------------------------------------------

    def attach(self, channel: EventChannel) -> None:
        """Refresh (debounced) whenever a session ends on ``channel``."""

        self.detach()
        self._unsubscribe = channel.subscribe(SESSION_ENDED, self._debouncer.trigger)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._debouncer.cancel()

    @property
    def refresh_pending(self) -> bool:
        return self._debouncer.pending
