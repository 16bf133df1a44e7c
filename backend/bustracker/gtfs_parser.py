"""Region Loader: streams per-operator GTFS bundles into a namespaced ScheduleIndex."""

import asyncio
import logging
import os
from datetime import date, datetime
from typing import Iterator, Optional

import pandas as pd

from bustracker.config import RegionConfig, local_today
from bustracker.models import Route, Stop, Trip
from bustracker.schedule import ScheduleBuilder, ScheduleIndex, ServiceCalendar

logger = logging.getLogger("bustracker.gtfs")

CHUNK_SIZE = 200_000

DAY_COLUMNS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# Some operators ship stops.csv with their own column names
STOP_COLUMN_ALIASES = {
    "stop_id": ["stop_id", "code"],
    "stop_name": ["stop_name", "description[en]", "description"],
    "stop_lat": ["stop_lat", "lat"],
    "stop_lon": ["stop_lon", "lon"],
}


def _iter_table(path: str, chunksize: int = CHUNK_SIZE) -> Iterator[pd.DataFrame]:
    """Yield string-typed chunks of a GTFS table; missing or unreadable files yield nothing."""
    if not os.path.exists(path):
        logger.debug(f"GTFS file not found: {path}")
        return

    try:
        with pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            on_bad_lines="skip",
            encoding="utf-8-sig",
            encoding_errors="replace",
            chunksize=chunksize,
        ) as reader:
            for chunk in reader:
                chunk.columns = [str(c).replace("\ufeff", "").strip() for c in chunk.columns]
                chunk = chunk.fillna("")
                for col in chunk.columns:
                    chunk[col] = chunk[col].str.strip()
                yield chunk
    except (OSError, ValueError) as e:
        logger.warning(f"Error reading {path}, treating rest of file as empty: {e}")


def _read_table(path: str) -> pd.DataFrame:
    chunks = list(_iter_table(path))
    if not chunks:
        return pd.DataFrame()
    return pd.concat(chunks, ignore_index=True)


def _column(df: pd.DataFrame, name: str) -> pd.Series:
    if name in df.columns:
        return df[name]
    return pd.Series([""] * len(df), index=df.index, dtype=str)


def _numeric(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce")


def normalize_gtfs_time(value: str) -> Optional[str]:
    """'8:05:00' -> '08:05:00'. Returns None for anything that isn't H:MM[:SS]."""
    parts = value.split(":")
    if len(parts) == 2:
        parts.append("0")
    if len(parts) != 3:
        return None
    try:
        h, m, s = (int(p) for p in parts)
    except ValueError:
        return None
    if h < 0 or not 0 <= m < 60 or not 0 <= s < 60:
        return None
    return f"{h:02d}:{m:02d}:{s:02d}"


def _parse_gtfs_date(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError:
        return None


def _load_agencies(directory: str, fallback: str) -> tuple[dict[str, str], str]:
    agencies = _read_table(os.path.join(directory, "agency.txt"))
    if agencies.empty:
        return {}, fallback
    names = _column(agencies, "agency_name")
    mapping = dict(zip(_column(agencies, "agency_id"), names))
    # A single-agency feed may omit agency_id on routes
    default = names.iloc[0] if len(agencies) == 1 and names.iloc[0] else fallback
    return mapping, default


def _load_stops(region: RegionConfig, builder: ScheduleBuilder) -> int:
    path = os.path.join(region.directory, "stops.txt")
    if not os.path.exists(path):
        path = os.path.join(region.directory, "stops.csv")

    prefix = region.prefix
    seen: set[str] = set()
    count = 0
    for chunk in _iter_table(path):
        columns = {}
        for target, aliases in STOP_COLUMN_ALIASES.items():
            source = next((a for a in aliases if a in chunk.columns), None)
            columns[target] = _column(chunk, source) if source else _column(chunk, target)

        lats = _numeric(columns["stop_lat"])
        lons = _numeric(columns["stop_lon"])
        for raw_id, name, lat, lon in zip(columns["stop_id"], columns["stop_name"], lats, lons):
            if not raw_id or pd.isna(lat) or pd.isna(lon) or raw_id in seen:
                continue
            seen.add(raw_id)
            builder.add_stop(Stop(stop_id=prefix + raw_id, name=name, latitude=float(lat), longitude=float(lon)))
            count += 1
    return count


def _load_routes(region: RegionConfig, builder: ScheduleBuilder) -> int:
    prefix = region.prefix
    agencies, default_operator = _load_agencies(region.directory, region.name)
    count = 0
    for chunk in _iter_table(os.path.join(region.directory, "routes.txt")):
        rows = zip(
            _column(chunk, "route_id"),
            _column(chunk, "route_short_name"),
            _column(chunk, "route_long_name"),
            _column(chunk, "route_color"),
            _column(chunk, "route_text_color"),
            _column(chunk, "agency_id"),
        )
        for raw_id, short_name, long_name, color, text_color, agency_id in rows:
            if not raw_id:
                continue
            builder.add_route(Route(
                route_id=prefix + raw_id,
                short_name=short_name,
                long_name=long_name,
                display_color=color or "FFFFFF",
                text_color=text_color or "000000",
                operator_name=agencies.get(agency_id) or default_operator,
            ))
            count += 1
    return count


def _load_calendar(region: RegionConfig) -> ServiceCalendar:
    prefix = region.prefix
    calendar = ServiceCalendar()

    for chunk in _iter_table(os.path.join(region.directory, "calendar.txt")):
        day_flags = [_column(chunk, d) for d in DAY_COLUMNS]
        rows = zip(_column(chunk, "service_id"), _column(chunk, "start_date"), _column(chunk, "end_date"), *day_flags)
        for service_id, start, end, *days in rows:
            start_date, end_date = _parse_gtfs_date(start), _parse_gtfs_date(end)
            if not service_id or start_date is None or end_date is None:
                continue
            calendar.add_weekly(prefix + service_id, [d == "1" for d in days], start_date, end_date)

    for chunk in _iter_table(os.path.join(region.directory, "calendar_dates.txt")):
        rows = zip(_column(chunk, "service_id"), _column(chunk, "date"), _column(chunk, "exception_type"))
        for service_id, raw_date, exception_type in rows:
            day = _parse_gtfs_date(raw_date)
            if not service_id or day is None or exception_type not in ("1", "2"):
                continue
            calendar.add_exception(prefix + service_id, day, int(exception_type))

    return calendar


def _load_trips(region: RegionConfig, builder: ScheduleBuilder, active: set[str]) -> dict[str, str]:
    """Add trips (restricted to `active` services when non-empty); returns trip_id -> route_id."""
    prefix = region.prefix
    trip_routes: dict[str, str] = {}
    for chunk in _iter_table(os.path.join(region.directory, "trips.txt")):
        rows = zip(
            _column(chunk, "trip_id"),
            _column(chunk, "route_id"),
            _column(chunk, "service_id"),
            _column(chunk, "trip_headsign"),
            _column(chunk, "shape_id"),
        )
        for raw_trip, raw_route, raw_service, headsign, raw_shape in rows:
            if not raw_trip or not raw_route:
                continue
            service_id = prefix + raw_service
            if active and service_id not in active:
                continue
            trip = Trip(
                trip_id=prefix + raw_trip,
                route_id=prefix + raw_route,
                service_id=service_id,
                headsign=headsign,
                shape_id=prefix + raw_shape if raw_shape else None,
            )
            builder.add_trip(trip)
            trip_routes[trip.trip_id] = trip.route_id
    return trip_routes


def _load_stop_times(
    region: RegionConfig, builder: ScheduleBuilder, trip_routes: dict[str, str], filtered: bool
) -> int:
    prefix = region.prefix
    count = 0
    for chunk in _iter_table(os.path.join(region.directory, "stop_times.txt")):
        rows = zip(
            _column(chunk, "trip_id"),
            _column(chunk, "stop_id"),
            _column(chunk, "arrival_time"),
            _column(chunk, "departure_time"),
        )
        for raw_trip, raw_stop, arrival, departure in rows:
            if not raw_trip or not raw_stop:
                continue
            trip_id = prefix + raw_trip
            route_id = trip_routes.get(trip_id)
            if filtered and route_id is None:
                continue
            scheduled = normalize_gtfs_time(arrival or departure)
            if scheduled is None:
                continue
            builder.add_stop_time(prefix + raw_stop, trip_id, scheduled, route_id)
            count += 1
    return count


def _load_shapes(region: RegionConfig, builder: ScheduleBuilder) -> int:
    prefix = region.prefix
    points: dict[str, list[tuple[float, float, float]]] = {}
    for chunk in _iter_table(os.path.join(region.directory, "shapes.txt")):
        lats = _numeric(_column(chunk, "shape_pt_lat"))
        lons = _numeric(_column(chunk, "shape_pt_lon"))
        seqs = _numeric(_column(chunk, "shape_pt_sequence"))
        for raw_shape, lat, lon, seq in zip(_column(chunk, "shape_id"), lats, lons, seqs):
            if not raw_shape or pd.isna(lat) or pd.isna(lon) or pd.isna(seq):
                continue
            points.setdefault(prefix + raw_shape, []).append((float(seq), float(lat), float(lon)))

    for shape_id, raw_points in points.items():
        # Point order must follow shape_pt_sequence or the polyline zigzags
        raw_points.sort(key=lambda p: p[0])
        builder.add_shape(shape_id, [(lat, lon) for _, lat, lon in raw_points])
    return len(points)


def load_region(
    region: RegionConfig,
    builder: ScheduleBuilder,
    today: Optional[date] = None,
    filter_today: bool = True,
) -> dict:
    """Load one region's static bundle into `builder`; returns per-table counts."""
    if not os.path.isdir(region.directory):
        logger.warning(f"GTFS directory not found for {region.name}: {region.directory}")

    stats = {
        "stops": _load_stops(region, builder),
        "routes": _load_routes(region, builder),
    }

    calendar = _load_calendar(region)
    builder.calendar.merge(calendar)

    active: set[str] = set()
    if filter_today and today is not None:
        active = calendar.active_service_ids(today)
        if not active:
            logger.warning(f"{region.name}: no active services on {today}, loading all trips")

    trip_routes = _load_trips(region, builder, active)
    stats["trips"] = len(trip_routes)
    stats["stop_times"] = _load_stop_times(region, builder, trip_routes, filtered=bool(active))
    stats["shapes"] = _load_shapes(region, builder)
    stats["active_services"] = len(active)

    builder.regions.append(region.name)
    logger.info(
        f"Loaded {region.name} ({region.prefix}): {stats['stops']} stops, {stats['routes']} routes, "
        f"{stats['trips']} trips, {stats['stop_times']} stop times, {stats['shapes']} shapes"
    )
    return stats


def load_gtfs_data(
    regions: list[RegionConfig],
    today: Optional[date] = None,
    filter_today: bool = True,
) -> ScheduleIndex:
    """Load every region synchronously and return the merged index."""
    builder = ScheduleBuilder()
    for region in regions:
        load_region(region, builder, today, filter_today)
    return builder.build()


async def load_schedule(
    regions: list[RegionConfig],
    timezone: str,
    filter_today: bool = True,
    region_delay: float = 0.5,
) -> ScheduleIndex:
    """Load regions one at a time off the event loop, pausing between them."""
    today = local_today(timezone)
    builder = ScheduleBuilder()
    for i, region in enumerate(regions):
        if i and region_delay > 0:
            await asyncio.sleep(region_delay)
        logger.info(f"Streaming {region.name}...")
        await asyncio.to_thread(load_region, region, builder, today, filter_today)
    return builder.build()


async def _reload_loop(app_state: dict, interval: float):
    settings = app_state["settings"]
    while True:
        await asyncio.sleep(interval)
        try:
            index = await load_schedule(
                settings.regions, settings.timezone, settings.filter_today, settings.region_delay
            )
        except Exception as e:
            logger.error(f"Schedule reload failed, keeping previous data: {e}")
            continue
        app_state["store"].install_schedule(index)


def start_schedule_reloader(app_state: dict) -> Optional[asyncio.Task]:
    """Start periodic static-data reloads if RELOAD_INTERVAL is set."""
    interval = app_state["settings"].reload_interval
    if interval <= 0:
        return None
    logger.info(f"Schedule reload every {interval / 3600:.1f}h")
    return asyncio.create_task(_reload_loop(app_state, interval))


async def stop_schedule_reloader(app_state: dict):
    task = app_state.get("reload_task")
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
