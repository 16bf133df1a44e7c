import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from bustracker.models import (
    HealthResponse,
    Route,
    RouteDetail,
    Stop,
    TimetableEntry,
    VehiclePosition,
)
from bustracker.query_service import QueryService

logger = logging.getLogger("bustracker.routes")

router = APIRouter()


def _get_state():
    from bustracker.main import app_state
    return app_state


def _get_query() -> QueryService:
    query = _get_state().get("query")
    if query is None:
        raise HTTPException(status_code=503, detail="Transit data not initialized")
    return query


@router.get("/health", response_model=HealthResponse)
async def health():
    store = _get_state().get("store")
    if store is None:
        return HealthResponse(status="starting")

    schedule, realtime = store.schedule, store.realtime
    return HealthResponse(
        regions=schedule.regions,
        stops=len(schedule.stops),
        routes=len(schedule.routes),
        trips=len(schedule.trips),
        schedule_loaded_at=schedule.loaded_at.isoformat() if schedule.loaded_at else None,
        vehicles=len(realtime.vehicles),
        realtime_updated_at=realtime.updated_at.isoformat() if realtime.updated_at else None,
    )


@router.get("/stops", response_model=list[Stop])
async def get_stops():
    """All stops across every loaded region."""
    return _get_query().list_stops()


@router.get("/routes", response_model=list[Route])
async def get_routes(q: Optional[str] = Query(None, description="Filter by short or long name")):
    return _get_query().list_routes(q)


@router.get("/routes/{route_id}", response_model=RouteDetail)
async def get_route_detail(route_id: str):
    """Route with its stops and shape polylines."""
    detail = _get_query().route_detail(route_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return detail


@router.get("/stops/{stop_id}/timetable", response_model=list[TimetableEntry])
async def get_stop_timetable(
    stop_id: str,
    date: Optional[str] = Query(None, description="Service date as YYYYMMDD (defaults to today)"),
):
    """Scheduled arrivals at a stop, with realtime predictions where available."""
    day = None
    if date:
        try:
            day = datetime.strptime(date, "%Y%m%d").date()
        except ValueError:
            raise HTTPException(status_code=400, detail="date must be YYYYMMDD")

    timetable = _get_query().stop_timetable(stop_id, day)
    if timetable is None:
        raise HTTPException(status_code=404, detail="Stop not found")
    return timetable


@router.get("/vehicle_positions", response_model=list[VehiclePosition])
async def get_vehicle_positions():
    """Latest realtime vehicle snapshot."""
    return _get_query().vehicle_positions()
