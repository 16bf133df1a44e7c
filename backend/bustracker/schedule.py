"""Merged, queryable static schedule.

The Region Loader fills a ScheduleBuilder off to the side; build() turns it
into an immutable ScheduleIndex that is swapped into the store in one step.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from bustracker.models import Route, Stop, Trip

logger = logging.getLogger("bustracker.schedule")

EXCEPTION_ADDED = 1
EXCEPTION_REMOVED = 2

# Upper bound on how far the "next date with service" search looks ahead
MAX_LOOKAHEAD_DAYS = 366


class ServiceCalendar:
    """Weekly service patterns plus date-specific add/remove exceptions."""

    def __init__(self):
        # (service_id, (mon..sun), start_date, end_date)
        self._weekly: list[tuple[str, tuple[bool, ...], date, date]] = []
        self._exceptions: dict[date, dict[str, int]] = defaultdict(dict)
        self._known: set[str] = set()

    def add_weekly(self, service_id: str, days: Iterable[bool], start: date, end: date) -> None:
        days = tuple(bool(d) for d in days)
        if len(days) != 7:
            raise ValueError(f"Expected 7 weekday flags for {service_id}, got {len(days)}")
        self._weekly.append((service_id, days, start, end))
        self._known.add(service_id)

    def add_exception(self, service_id: str, day: date, exception_type: int) -> None:
        if exception_type not in (EXCEPTION_ADDED, EXCEPTION_REMOVED):
            raise ValueError(f"Unknown exception_type {exception_type}")
        self._exceptions[day][service_id] = exception_type
        self._known.add(service_id)

    def merge(self, other: "ServiceCalendar") -> None:
        self._weekly.extend(other._weekly)
        for day, entries in other._exceptions.items():
            self._exceptions[day].update(entries)
        self._known.update(other._known)

    def knows(self, service_id: str) -> bool:
        return service_id in self._known

    @property
    def is_empty(self) -> bool:
        return not self._weekly and not self._exceptions

    def first_date(self) -> Optional[date]:
        candidates = [start for _, _, start, _ in self._weekly] + list(self._exceptions)
        return min(candidates) if candidates else None

    def last_date(self) -> Optional[date]:
        candidates = [end for _, _, _, end in self._weekly] + list(self._exceptions)
        return max(candidates) if candidates else None

    def active_service_ids(self, day: date) -> set[str]:
        weekday = day.weekday()
        active = {
            service_id
            for service_id, days, start, end in self._weekly
            if start <= day <= end and days[weekday]
        }
        for service_id, exception_type in self._exceptions.get(day, {}).items():
            if exception_type == EXCEPTION_ADDED:
                active.add(service_id)
            else:
                active.discard(service_id)
        return active

    def service_ids_for(self, day: date) -> Optional[set[str]]:
        """Active services for `day`, degrading rather than returning nothing.

        Falls back to the next date with any service, then to the earliest
        known date with service. None means "don't filter at all".
        """
        active = self.active_service_ids(day)
        if active:
            return active

        first, last = self.first_date(), self.last_date()
        if first is None:
            return None

        horizon = min(last, day + timedelta(days=MAX_LOOKAHEAD_DAYS))
        candidate = day + timedelta(days=1)
        while candidate <= horizon:
            active = self.active_service_ids(candidate)
            if active:
                logger.debug(f"No service on {day}, using next service date {candidate}")
                return active
            candidate += timedelta(days=1)

        candidate = first
        stop = min(day, first + timedelta(days=MAX_LOOKAHEAD_DAYS))
        while candidate < stop:
            active = self.active_service_ids(candidate)
            if active:
                logger.debug(f"No upcoming service after {day}, using earliest service date {candidate}")
                return active
            candidate += timedelta(days=1)

        return None


class ScheduleIndex:
    """Read-only multi-region schedule with precomputed lookup tables."""

    def __init__(
        self,
        stops: dict[str, Stop],
        routes: dict[str, Route],
        trips: dict[str, Trip],
        stop_times: dict[str, list[tuple[str, str]]],
        route_stops: dict[str, tuple[str, ...]],
        route_shapes: dict[str, tuple[str, ...]],
        shapes: dict[str, list[tuple[float, float]]],
        calendar: ServiceCalendar,
        regions: Optional[list[str]] = None,
        loaded_at: Optional[datetime] = None,
    ):
        self.stops = stops
        self.routes = routes
        self.trips = trips
        self.shapes = shapes
        self.calendar = calendar
        self.regions = regions or []
        self.loaded_at = loaded_at
        self._stop_times = stop_times
        self._route_stops = route_stops
        self._route_shapes = route_shapes
        # Stops a live feed may reference, including ids only seen in stop_times
        self.stop_ids = dict.fromkeys([*stops, *stop_times])

    @classmethod
    def empty(cls) -> "ScheduleIndex":
        return cls({}, {}, {}, {}, {}, {}, {}, ServiceCalendar())

    def stops_for_route(self, route_id: str) -> list[Stop]:
        return [self.stops[s] for s in self._route_stops.get(route_id, ()) if s in self.stops]

    def shapes_for_route(self, route_id: str) -> list[list[tuple[float, float]]]:
        return [self.shapes[s] for s in self._route_shapes.get(route_id, ()) if s in self.shapes]

    def timetable_for_stop(self, stop_id: str) -> list[tuple[Trip, str]]:
        """(trip, scheduled_arrival) pairs in arrival order; unknown trips are dropped."""
        results = []
        for trip_id, arrival in self._stop_times.get(stop_id, ()):
            trip = self.trips.get(trip_id)
            if trip is not None:
                results.append((trip, arrival))
        return results

    def has_stop(self, stop_id: str) -> bool:
        return stop_id in self.stops or stop_id in self._stop_times

    def stop_time_count(self) -> int:
        return sum(len(v) for v in self._stop_times.values())


class ScheduleBuilder:
    """Mutable accumulator the Region Loader writes into; never visible to readers."""

    def __init__(self):
        self.stops: dict[str, Stop] = {}
        self.routes: dict[str, Route] = {}
        self.trips: dict[str, Trip] = {}
        self.stop_times: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self.route_stops: dict[str, dict[str, None]] = defaultdict(dict)  # ordered sets
        self.route_shapes: dict[str, dict[str, None]] = defaultdict(dict)
        self.shapes: dict[str, list[tuple[float, float]]] = {}
        self.calendar = ServiceCalendar()
        self.regions: list[str] = []

    def add_stop(self, stop: Stop) -> None:
        self.stops.setdefault(stop.stop_id, stop)

    def add_route(self, route: Route) -> None:
        self.routes[route.route_id] = route

    def add_trip(self, trip: Trip) -> None:
        self.trips[trip.trip_id] = trip
        if trip.shape_id:
            self.route_shapes[trip.route_id][trip.shape_id] = None

    def add_stop_time(self, stop_id: str, trip_id: str, arrival: str, route_id: Optional[str] = None) -> None:
        self.stop_times[stop_id].append((trip_id, arrival))
        if route_id:
            self.route_stops[route_id][stop_id] = None

    def add_shape(self, shape_id: str, points: list[tuple[float, float]]) -> None:
        self.shapes[shape_id] = points

    def build(self) -> ScheduleIndex:
        stop_times = {}
        for stop_id, arrivals in self.stop_times.items():
            arrivals.sort(key=lambda item: item[1])
            stop_times[stop_id] = arrivals

        index = ScheduleIndex(
            stops=self.stops,
            routes=self.routes,
            trips=self.trips,
            stop_times=stop_times,
            route_stops={k: tuple(v) for k, v in self.route_stops.items()},
            route_shapes={k: tuple(v) for k, v in self.route_shapes.items()},
            shapes=self.shapes,
            calendar=self.calendar,
            regions=list(self.regions),
            loaded_at=datetime.now(),
        )
        logger.info(
            f"Schedule index built: {len(index.stops)} stops, {len(index.routes)} routes, "
            f"{len(index.trips)} trips, {index.stop_time_count()} stop times, {len(index.shapes)} shapes"
        )
        return index
