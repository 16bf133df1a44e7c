import logging
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from bustracker.config import DEFAULT_TIMEZONE, local_today
from bustracker.models import (
    UNKNOWN,
    Route,
    RouteDetail,
    Stop,
    TimetableEntry,
    VehiclePosition,
)
from bustracker.store import StopTimePrediction, TransitStore

logger = logging.getLogger("bustracker.query")

SECONDS_PER_DAY = 86400


def _gtfs_time_to_seconds(t: str) -> int:
    h, m, s = (int(p) for p in t.split(":"))
    return h * 3600 + m * 60 + s


def _seconds_to_gtfs_time(seconds: int) -> str:
    """Seconds since service-day midnight -> HH:MM:SS (hours may exceed 23)."""
    seconds = max(seconds, 0)
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


class QueryService:
    """Read-only answers composed from the current schedule and realtime snapshot."""

    def __init__(self, store: TransitStore, timezone: str = DEFAULT_TIMEZONE):
        self.store = store
        self.timezone = timezone
        self._tz = ZoneInfo(timezone)

    def list_stops(self) -> list[Stop]:
        return list(self.store.schedule.stops.values())

    def list_routes(self, query: Optional[str] = None) -> list[Route]:
        routes = list(self.store.schedule.routes.values())
        if not query:
            return routes
        q = query.lower()
        return [r for r in routes if q in r.short_name.lower() or q in r.long_name.lower()]

    def route_detail(self, route_id: str) -> Optional[RouteDetail]:
        schedule = self.store.schedule
        route = schedule.routes.get(route_id)
        if route is None:
            return None
        return RouteDetail(
            **route.model_dump(),
            stops=schedule.stops_for_route(route_id),
            shapes=[[[lat, lon] for lat, lon in shape] for shape in schedule.shapes_for_route(route_id)],
        )

    def vehicle_positions(self) -> list[VehiclePosition]:
        return self.store.realtime.vehicles

    def _apply_prediction(self, scheduled: str, prediction: StopTimePrediction) -> tuple[str, int]:
        scheduled_seconds = _gtfs_time_to_seconds(scheduled)
        if prediction.arrival_time is not None:
            predicted = datetime.fromtimestamp(prediction.arrival_time, self._tz)
            # Offset from the schedule, assuming the prediction is within half a day of it
            diff = _gtfs_time_to_seconds(predicted.strftime("%H:%M:%S")) - scheduled_seconds % SECONDS_PER_DAY
            if diff > SECONDS_PER_DAY // 2:
                diff -= SECONDS_PER_DAY
            elif diff < -SECONDS_PER_DAY // 2:
                diff += SECONDS_PER_DAY
            # Displayed on the service-day clock, so 24:10 running late reads 24:12, not 00:12
            arrival = _seconds_to_gtfs_time(scheduled_seconds + diff)
            return arrival, prediction.delay if prediction.delay is not None else diff
        return _seconds_to_gtfs_time(scheduled_seconds + prediction.delay), prediction.delay

    def stop_timetable(self, stop_id: str, day: Optional[date] = None) -> Optional[list[TimetableEntry]]:
        """Scheduled arrivals at a stop for `day`, with live predictions overriding times.

        Returns None when the stop is unknown. A trip whose route was never
        loaded keeps its own route_id and shows "?" as the short name.
        """
        schedule = self.store.schedule
        realtime = self.store.realtime
        if not schedule.has_stop(stop_id):
            return None

        day = day or local_today(self.timezone)
        active = schedule.calendar.service_ids_for(day)

        results = []
        for trip, scheduled in schedule.timetable_for_stop(stop_id):
            # Services with no calendar rows at all run every day
            if active is not None and trip.service_id not in active and schedule.calendar.knows(trip.service_id):
                continue

            route = schedule.routes.get(trip.route_id)
            arrival, is_realtime, delay = scheduled, False, 0
            prediction = realtime.prediction_for(trip.trip_id, stop_id)
            if prediction is not None:
                arrival, delay = self._apply_prediction(scheduled, prediction)
                is_realtime = True

            results.append(TimetableEntry(
                trip_id=trip.trip_id,
                route_id=route.route_id if route else trip.route_id,
                route_short_name=route.short_name if route else UNKNOWN,
                trip_headsign=trip.headsign,
                arrival_time=arrival,
                scheduled_time=scheduled,
                is_realtime=is_realtime,
                delay=delay,
            ))

        # Zero-padded HH:MM:SS strings sort correctly as text
        results.sort(key=lambda e: e.arrival_time)
        return results
