"""Command-line interface for next_track.

Run:
    python -m next_track insights --state next_track_state.json
    python -m next_track startup --lat 37.77 --lon -122.42
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from next_track.context import DEFAULT_STATE_PATH, AppContext, build_context, load_places, save_places
from next_track.geofence import StaticLocator
from next_track.insights import (
    InsightParams,
    InsightPeriod,
    activity_summary_text,
    format_change,
    format_duration,
    format_miles,
    summary_text,
)
from next_track.models import DEFAULT_TZ, GeofenceAction, GeofenceZone, PlaceCategory
from next_track.notifications import INTERRUPTED_TRACKING_PROMPT, SESSION_RECOVERY_PROMPT
from next_track.places import PlaceParams, recategorize_place, rename_place
from next_track.serialization import export_sessions_json, import_sessions_json, write_gpx
from next_track.startup import INTERRUPTED_TRACKING_MESSAGE, StartupParams
from next_track.timeutils import parse_dt, utc_now


def _context(args: argparse.Namespace, **kwargs) -> AppContext:
    return build_context(args.state, tz_name=args.tz, **kwargs)


def _cmd_insights(args: argparse.Namespace) -> int:
    now = parse_dt(args.now, args.tz) if args.now else utc_now()
    ctx = _context(
        args,
        insight_params=InsightParams(seconds_per_sample=args.seconds_per_sample),
        clock=lambda: now,
    )
    ctx.insights.generate_all_insights()

    periods = list(InsightPeriod) if args.period == "all" else [InsightPeriod(args.period)]
    if args.json:
        payload = {p.value: asdict(ctx.insights.get_insight(p)) for p in periods}
        print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
        return 0

    for period in periods:
        insight = ctx.insights.get_insight(period)
        print(f"### {period.display_name}")
        print(summary_text(insight))
        print(activity_summary_text(insight))
        print(
            f"distance={format_miles(insight.total_distance)}, duration={format_duration(insight.total_duration)}, "
            f"sessions={insight.session_count}, change={format_change(insight.distance_change) or 'n/a'}"
        )
        print(
            f"places={insight.places_visited}, new_places={insight.new_places_discovered}, "
            f"cities={insight.cities_visited}"
        )
        if insight.longest_session is not None:
            s = insight.longest_session
            print(f"longest: {s.name} ({format_miles(s.distance, 2)}, {format_duration(s.duration)})")
        if insight.most_visited_place is not None:
            p = insight.most_visited_place
            print(f"most visited: {p.name} ({p.visit_count} visits, {p.category.value})")
        print()
    return 0


def _cmd_startup(args: argparse.Namespace) -> int:
    if (args.lat is None) != (args.lon is None):
        raise ValueError("--lat and --lon must be given together")
    position = (args.lat, args.lon) if args.lat is not None else None
    params = StartupParams(
        settle_delay_seconds=args.settle_delay,
        zone_check_timeout_seconds=args.zone_timeout,
        interruption_threshold_seconds=args.threshold,
    )
    locator = StaticLocator(position, has_always_permission=not args.no_always_permission)
    ctx = _context(args, locator=locator, startup_params=params)
    ctx.geofences.restore_monitoring_if_needed()

    asyncio.run(ctx.startup.run_startup_sequence())

    for n in ctx.notifier.posted:
        print(f"[notification] {n.title}: {n.body}")
    if ctx.prompts.is_set(SESSION_RECOVERY_PROMPT):
        session = ctx.history.recovery_session
        detail = f" ({session.points_count} points)" if session is not None else ""
        print(f"[prompt] A previous tracking session was interrupted{detail}. Use `recover` to save or discard it.")
    if ctx.prompts.is_set(INTERRUPTED_TRACKING_PROMPT):
        print(f"[prompt] {INTERRUPTED_TRACKING_MESSAGE}")
    print(f"state={ctx.startup.state.value}, tracking={ctx.tracking.status_description}")
    ctx.flush()
    return 0


def _cmd_zones(args: argparse.Namespace) -> int:
    ctx = _context(args)
    geofences = ctx.geofences

    if args.zones_cmd == "add":
        zone = geofences.add_zone(
            GeofenceZone.create(
                name=args.name,
                latitude=args.lat,
                longitude=args.lon,
                radius=args.radius,
                action=GeofenceAction(args.action),
                is_enabled=not args.disabled,
            )
        )
        print(f"added {zone.id} radius={zone.radius:.0f}m")
    elif args.zones_cmd == "remove":
        if not geofences.delete_zone(args.id):
            print(f"zone not found: {args.id}", file=sys.stderr)
            return 1
        print(f"removed {args.id}")
    elif args.zones_cmd == "toggle":
        zone = geofences.toggle_zone(args.id)
        if zone is None:
            print(f"zone not found: {args.id}", file=sys.stderr)
            return 1
        print(f"{zone.name}: {'enabled' if zone.is_enabled else 'disabled'}")
    else:
        for zone in geofences.zones:
            flag = "on " if zone.is_enabled else "off"
            print(
                f"{zone.id}  [{flag}]  {zone.name}  ({zone.latitude:.5f}, {zone.longitude:.5f})  "
                f"r={zone.radius:.0f}m  {zone.action.label}"
            )
        if not geofences.zones:
            print("no zones")
    ctx.flush()
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    ctx = _context(args)
    days = ctx.history.daily_stats(args.tz)
    now = utc_now()
    for day in days[: args.days]:
        print(
            f"{day.day.date().isoformat()}  sessions={day.session_count}  "
            f"distance={format_miles(day.total_distance, 2)}  points={day.total_points}  "
            f"duration={format_duration(day.total_duration(now))}"
        )
    print(
        f"total: sessions={len(ctx.history.sessions)}, "
        f"distance={format_miles(ctx.history.total_distance_all_time, 2)}, "
        f"points={ctx.history.total_points_all_time}"
    )
    return 0


def _cmd_places(args: argparse.Namespace) -> int:
    now = parse_dt(args.now, args.tz) if getattr(args, "now", None) else utc_now()
    ctx = _context(args, clock=lambda: now)

    if args.places_cmd == "detect":
        before = len(load_places(ctx.store))
        places = ctx.detect_places(PlaceParams(min_visits=args.min_visits, min_dwell_seconds=args.min_dwell))
        print(f"detected {len(places)} places ({len(places) - before} new)")
    elif args.places_cmd in ("rename", "categorize"):
        places = load_places(ctx.store)
        if not any(p.id == args.id for p in places):
            print(f"place not found: {args.id}", file=sys.stderr)
            return 1
        if args.places_cmd == "rename":
            places = rename_place(places, args.id, args.name)
        else:
            places = recategorize_place(places, args.id, PlaceCategory(args.category))
        save_places(ctx.store, places)
        print(f"updated {args.id}")
    else:
        places = load_places(ctx.store)
        if not places:
            print("no places")
    if args.places_cmd in ("detect", "list"):
        for p in sorted(places, key=lambda x: x.visit_count, reverse=True):
            mark = "*" if p.is_confirmed else " "
            print(
                f"{p.id} {mark} {p.display_name}  ({p.latitude:.5f}, {p.longitude:.5f})  r={p.radius:.0f}m  "
                f"{p.category.value} ({p.confidence:.2f})  visits={p.visit_count}"
            )
    ctx.flush()
    return 0


def _cmd_recover(args: argparse.Namespace) -> int:
    ctx = _context(args)
    if not ctx.history.has_recovery_session:
        print("no interrupted session")
        return 0
    if args.action == "save":
        session = ctx.history.save_recovered_session()
        if session is not None:
            print(f"saved {session.id}: {session.points_count} points, {format_miles(session.total_distance, 2)}")
    else:
        ctx.history.discard_recovered_session()
        print("discarded interrupted session")
    ctx.flush()
    return 0


def _cmd_export_json(args: argparse.Namespace) -> int:
    ctx = _context(args)
    sessions = ctx.history.sessions
    export_sessions_json(sessions, args.out)
    print(f"exported {len(sessions)} sessions to {args.out}")
    return 0


def _cmd_import_json(args: argparse.Namespace) -> int:
    ctx = _context(args)
    text = Path(args.file).read_text(encoding="utf-8")
    result = import_sessions_json(ctx.history.sessions, text)
    ctx.history.replace_sessions(result.sessions)
    ctx.flush()
    print(f"imported {result.added} sessions ({result.duplicates} already present)")
    return 0


def _cmd_export_gpx(args: argparse.Namespace) -> int:
    ctx = _context(args)
    sessions = ctx.history.sessions
    if args.session:
        sessions = [s for s in sessions if s.id == args.session]
        if not sessions:
            print(f"session not found: {args.session}", file=sys.stderr)
            return 1
    write_gpx(sessions, args.out, args.title)
    print(f"exported {len(sessions)} tracks to {args.out}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--state", type=str, default=DEFAULT_STATE_PATH, help="state file (JSON)")
    common.add_argument("--tz", type=str, default=DEFAULT_TZ, help=f"timezone (IANA), default {DEFAULT_TZ}")

    p = argparse.ArgumentParser(prog="next_track")
    p.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level for diagnostics on stderr",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_ins = sub.add_parser("insights", parents=[common], help="daily/weekly/monthly insight summaries")
    p_ins.add_argument("--period", type=str, default="all", choices=["all", *(x.value for x in InsightPeriod)])
    p_ins.add_argument("--now", type=str, default=None, help="anchor time, e.g. 2025-06-01 12:00:00")
    p_ins.add_argument(
        "--seconds-per-sample",
        type=float,
        default=1.0,
        help="time credited to each location sample in the activity breakdown",
    )
    p_ins.add_argument("--json", action="store_true", help="print JSON instead of text")
    p_ins.set_defaults(func=_cmd_insights)

    p_st = sub.add_parser("startup", parents=[common], help="run the launch sequence once")
    p_st.add_argument("--lat", type=float, default=None, help="current latitude")
    p_st.add_argument("--lon", type=float, default=None, help="current longitude")
    p_st.add_argument("--no-always-permission", action="store_true", help="simulate missing 'always' permission")
    p_st.add_argument("--settle-delay", type=float, default=0.5, help="seconds to wait before reading zones")
    p_st.add_argument("--zone-timeout", type=float, default=5.0, help="zone-state check timeout (seconds)")
    p_st.add_argument(
        "--threshold",
        type=float,
        default=300.0,
        help="gap (seconds) after which an unfinished tracking run counts as interrupted",
    )
    p_st.set_defaults(func=_cmd_startup)

    p_z = sub.add_parser("zones", help="manage geofence zones")
    zsub = p_z.add_subparsers(dest="zones_cmd", required=True)
    zsub.add_parser("list", parents=[common], help="list zones")
    p_za = zsub.add_parser("add", parents=[common], help="add a zone")
    p_za.add_argument("--name", type=str, required=True)
    p_za.add_argument("--lat", type=float, required=True)
    p_za.add_argument("--lon", type=float, required=True)
    p_za.add_argument("--radius", type=float, default=100.0, help="meters, clamped to 30-500")
    p_za.add_argument(
        "--action", type=str, default=GeofenceAction.HOME_MODE.value, choices=[a.value for a in GeofenceAction]
    )
    p_za.add_argument("--disabled", action="store_true")
    p_zr = zsub.add_parser("remove", parents=[common], help="delete a zone")
    p_zr.add_argument("id", type=str)
    p_zt = zsub.add_parser("toggle", parents=[common], help="enable/disable a zone")
    p_zt.add_argument("id", type=str)
    p_z.set_defaults(func=_cmd_zones)

    p_h = sub.add_parser("history", parents=[common], help="sessions grouped by day")
    p_h.add_argument("--days", type=int, default=14, help="number of days to show")
    p_h.set_defaults(func=_cmd_history)

    p_p = sub.add_parser("places", help="detect and manage significant places")
    psub = p_p.add_subparsers(dest="places_cmd", required=True)
    psub.add_parser("list", parents=[common], help="list detected places")
    p_pd = psub.add_parser("detect", parents=[common], help="detect places from the recorded sessions")
    p_pd.add_argument("--now", type=str, default=None, help="reference time for open visits")
    p_pd.add_argument("--min-visits", type=int, default=2, help="stops needed in one grid cell")
    p_pd.add_argument("--min-dwell", type=float, default=120.0, help="seconds standing still that count as a stop")
    p_pn = psub.add_parser("rename", parents=[common], help="name a place (marks it confirmed)")
    p_pn.add_argument("id", type=str)
    p_pn.add_argument("name", type=str)
    p_pc = psub.add_parser("categorize", parents=[common], help="set a place category (marks it confirmed)")
    p_pc.add_argument("id", type=str)
    p_pc.add_argument("category", choices=[c.value for c in PlaceCategory])
    p_p.set_defaults(func=_cmd_places)

    p_r = sub.add_parser("recover", parents=[common], help="save or discard an interrupted session")
    p_r.add_argument("action", choices=["save", "discard"])
    p_r.set_defaults(func=_cmd_recover)

    p_ej = sub.add_parser("export-json", parents=[common], help="back up sessions to JSON")
    p_ej.add_argument("--out", type=str, default="sessions_backup.json")
    p_ej.set_defaults(func=_cmd_export_json)

    p_ij = sub.add_parser("import-json", parents=[common], help="merge sessions from a JSON backup")
    p_ij.add_argument("--file", type=str, required=True)
    p_ij.set_defaults(func=_cmd_import_json)

    p_gpx = sub.add_parser("export-gpx", parents=[common], help="export sessions as GPX 1.1")
    p_gpx.add_argument("--out", type=str, default="tracks.gpx")
    p_gpx.add_argument("--title", type=str, default="Next Track Export")
    p_gpx.add_argument("--session", type=str, default=None, help="export only this session id")
    p_gpx.set_defaults(func=_cmd_export_gpx)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return int(args.func(args))
    except (ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
