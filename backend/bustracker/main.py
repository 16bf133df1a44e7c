import logging
from contextlib import asynccontextmanager

import httpx
from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that read env vars

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bustracker.config import load_settings

logger = logging.getLogger("bustracker")
logging.basicConfig(level=logging.INFO)

settings = load_settings()

# Process-wide handles populated during startup
app_state: dict = {"settings": settings}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load static schedules, then start the realtime poller and reload timer."""
    from bustracker.gtfs_parser import load_schedule, start_schedule_reloader, stop_schedule_reloader
    from bustracker.gtfs_realtime import start_realtime_poller, stop_realtime_poller
    from bustracker.query_service import QueryService
    from bustracker.store import TransitStore

    store = TransitStore()
    app_state["store"] = store
    app_state["query"] = QueryService(store, settings.timezone)

    logger.info("Loading GTFS data...")
    index = await load_schedule(
        settings.regions, settings.timezone, settings.filter_today, settings.region_delay
    )
    store.install_schedule(index)
    logger.info(f"GTFS loaded: {len(index.stops)} stops, {len(index.routes)} routes, {len(index.trips)} trips")

    # Shared httpx client for all realtime feed fetches
    http_client = httpx.AsyncClient(
        timeout=settings.fetch_timeout,
        follow_redirects=True,
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        headers={"User-Agent": "bustracker/0.1"},
    )
    app_state["http_client"] = http_client

    app_state["reload_task"] = start_schedule_reloader(app_state)

    logger.info("Starting real-time poller...")
    app_state["poller_task"] = await start_realtime_poller(app_state)

    yield

    logger.info("Shutting down...")
    await stop_realtime_poller(app_state)
    await stop_schedule_reloader(app_state)
    await http_client.aclose()
    logger.info("Shared HTTP client closed")


app = FastAPI(title="Bus Tracker API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
)

from bustracker.routes import router  # noqa: E402

app.include_router(router, prefix="/api")
