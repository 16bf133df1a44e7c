import asyncio
import logging
from datetime import datetime
from typing import Optional

import httpx
from google.transit import gtfs_realtime_pb2

from bustracker.config import RegionConfig
from bustracker.id_resolver import IdResolver
from bustracker.models import UNKNOWN, VehiclePosition
from bustracker.schedule import ScheduleIndex
from bustracker.store import RealtimeSnapshot, StopTimePrediction, TransitStore

logger = logging.getLogger("bustracker.realtime")

RATE_LIMIT_STATUSES = {429}


class FeedRateLimited(Exception):
    def __init__(self, url: str, retry_after: Optional[float] = None):
        super().__init__(f"Rate limited by {url}")
        self.url = url
        self.retry_after = retry_after


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


async def fetch_feed(client: httpx.AsyncClient, url: str, timeout: float = 10.0) -> gtfs_realtime_pb2.FeedMessage:
    """Fetch and decode one GTFS-RT feed. Raises on HTTP, timeout or decode errors."""
    resp = await client.get(url, timeout=timeout)
    if resp.status_code in RATE_LIMIT_STATUSES:
        raise FeedRateLimited(url, _retry_after(resp))
    resp.raise_for_status()

    feed = gtfs_realtime_pb2.FeedMessage()
    feed.ParseFromString(resp.content)
    return feed


def _vehicle_from_entity(
    entity, region: RegionConfig, resolver: IdResolver, schedule: ScheduleIndex
) -> Optional[VehiclePosition]:
    vp = entity.vehicle
    if not vp.HasField("position"):
        return None

    prefix = region.prefix
    raw_trip_id = vp.trip.trip_id if vp.HasField("trip") else ""
    raw_route_id = vp.trip.route_id if vp.HasField("trip") else ""

    trip_id = resolver.trip(raw_trip_id, prefix)
    trip = schedule.trips.get(trip_id) if trip_id else None
    if trip is not None:
        route_id = trip.route_id
    else:
        route_id = resolver.route(raw_route_id, prefix)
    route = schedule.routes.get(route_id) if route_id else None

    # Unresolved ids are kept raw so the vehicle still shows up on the map
    vehicle_id = vp.vehicle.id if vp.HasField("vehicle") and vp.vehicle.id else entity.id
    position = vp.position
    return VehiclePosition(
        vehicle_id=vehicle_id,
        trip_id=trip_id or raw_trip_id or None,
        route_id=route_id or raw_route_id or None,
        lat=position.latitude,
        lon=position.longitude,
        bearing=position.bearing if position.HasField("bearing") else None,
        speed=position.speed if position.HasField("speed") else None,
        timestamp=vp.timestamp if vp.HasField("timestamp") else None,
        route_short_name=route.short_name if route else UNKNOWN,
        trip_headsign=trip.headsign if trip else UNKNOWN,
        color=route.display_color if route else "000000",
        text_color=route.text_color if route else "FFFFFF",
        region=region.name,
    )


def _prediction_from_stop_time_update(stu) -> Optional[StopTimePrediction]:
    for event_name in ("arrival", "departure"):
        if not stu.HasField(event_name):
            continue
        event = getattr(stu, event_name)
        arrival_time = event.time if event.HasField("time") and event.time else None
        delay = event.delay if event.HasField("delay") else None
        if arrival_time is not None or delay is not None:
            return StopTimePrediction(arrival_time=arrival_time, delay=delay)
    return None


def _merge_trip_update(
    entity,
    region: RegionConfig,
    resolver: IdResolver,
    trip_updates: dict[str, dict[str, StopTimePrediction]],
) -> int:
    tu = entity.trip_update
    raw_trip_id = tu.trip.trip_id
    if not raw_trip_id:
        return 0

    prefix = region.prefix
    trip_id = resolver.trip(raw_trip_id, prefix) or raw_trip_id
    count = 0
    for stu in tu.stop_time_update:
        if not stu.stop_id:
            continue
        prediction = _prediction_from_stop_time_update(stu)
        if prediction is None:
            continue
        stop_id = resolver.stop(stu.stop_id, prefix) or stu.stop_id
        trip_updates.setdefault(trip_id, {})[stop_id] = prediction
        count += 1
    return count


def reconcile_feed(
    feed: gtfs_realtime_pb2.FeedMessage,
    region: RegionConfig,
    resolver: IdResolver,
    schedule: ScheduleIndex,
    vehicles: list[VehiclePosition],
    trip_updates: dict[str, dict[str, StopTimePrediction]],
) -> tuple[int, int]:
    """Append one feed's vehicles and trip-update predictions; returns (vehicles, predictions) added."""
    vehicle_count = 0
    prediction_count = 0
    for entity in feed.entity:
        if entity.HasField("vehicle"):
            vehicle = _vehicle_from_entity(entity, region, resolver, schedule)
            if vehicle is not None:
                vehicles.append(vehicle)
                vehicle_count += 1
        if entity.HasField("trip_update"):
            prediction_count += _merge_trip_update(entity, region, resolver, trip_updates)
    return vehicle_count, prediction_count


class RealtimeReconciler:
    """Polls every configured feed in turn and installs one snapshot per cycle."""

    def __init__(
        self,
        store: TransitStore,
        regions: list[RegionConfig],
        client: httpx.AsyncClient,
        fetch_timeout: float = 10.0,
        feed_delay: float = 1.0,
    ):
        self.store = store
        self.regions = [r for r in regions if r.realtime_url]
        self.client = client
        self.fetch_timeout = fetch_timeout
        self.feed_delay = feed_delay
        self.retry_after: Optional[float] = None

    async def poll_once(self) -> bool:
        """Run one cycle. Returns True if any feed asked us to back off."""
        schedule = self.store.schedule
        resolver = IdResolver(schedule)
        vehicles: list[VehiclePosition] = []
        trip_updates: dict[str, dict[str, StopTimePrediction]] = {}
        rate_limited = False
        failed = 0
        self.retry_after = None

        for i, region in enumerate(self.regions):
            if i and self.feed_delay > 0:
                await asyncio.sleep(self.feed_delay)
            try:
                feed = await fetch_feed(self.client, region.realtime_url, self.fetch_timeout)
                n_vehicles, n_predictions = reconcile_feed(
                    feed, region, resolver, schedule, vehicles, trip_updates
                )
                logger.debug(f"{region.name}: {n_vehicles} vehicles, {n_predictions} stop predictions")
            except FeedRateLimited as e:
                rate_limited = True
                failed += 1
                if e.retry_after is not None:
                    self.retry_after = max(self.retry_after or 0.0, e.retry_after)
                logger.warning(f"{region.name}: {e}")
            except Exception as e:
                failed += 1
                logger.error(f"Error fetching {region.name} realtime feed: {e}")

        self._install(vehicles, trip_updates)
        logger.info(
            f"RT update complete: {len(vehicles)} vehicles, {len(trip_updates)} trip updates, "
            f"{failed}/{len(self.regions)} feeds failed"
        )
        return rate_limited

    def _install(self, vehicles: list[VehiclePosition], trip_updates: dict) -> None:
        previous = self.store.realtime
        if not vehicles and previous.vehicles:
            # An empty cycle usually means the upstream failed; keep the last good map
            logger.warning(
                f"Realtime cycle produced no vehicles, keeping previous snapshot ({len(previous.vehicles)} vehicles)"
            )
            return
        self.store.install_realtime(RealtimeSnapshot(
            vehicles=vehicles,
            trip_updates=trip_updates,
            updated_at=datetime.now(),
        ))


async def _poller_loop(reconciler: RealtimeReconciler, interval: float, backoff: float):
    """Background polling loop."""
    while True:
        delay = interval
        try:
            if await reconciler.poll_once():
                delay = max(backoff, reconciler.retry_after or 0.0)
                logger.warning(f"Rate limited, backing off for {delay:.0f}s")
        except Exception as e:
            logger.error(f"Poller error: {e}")
        await asyncio.sleep(delay)


async def start_realtime_poller(app_state: dict) -> Optional[asyncio.Task]:
    """Start the background real-time data poller."""
    settings = app_state["settings"]
    reconciler = RealtimeReconciler(
        store=app_state["store"],
        regions=settings.regions,
        client=app_state["http_client"],
        fetch_timeout=settings.fetch_timeout,
        feed_delay=settings.feed_delay,
    )
    if not reconciler.regions:
        logger.info("No realtime feeds configured, poller not started")
        return None

    app_state["reconciler"] = reconciler
    task = asyncio.create_task(
        _poller_loop(reconciler, settings.poll_interval, settings.rate_limit_backoff)
    )
    logger.info(f"Real-time poller started ({len(reconciler.regions)} feeds every {settings.poll_interval:.0f}s)")
    return task


async def stop_realtime_poller(app_state: dict):
    """Stop the background poller."""
    task = app_state.get("poller_task")
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("Real-time poller stopped")
