from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

UNKNOWN = "?"


class Stop(BaseModel):
    stop_id: str
    name: str = ""
    latitude: float
    longitude: float


class Route(BaseModel):
    route_id: str
    short_name: str = ""
    long_name: str = ""
    display_color: str = "FFFFFF"
    text_color: str = "000000"
    operator_name: str = ""


class Trip(BaseModel):
    trip_id: str
    route_id: str
    service_id: str
    headsign: str = ""
    shape_id: Optional[str] = None


class RouteDetail(Route):
    stops: list[Stop] = Field(default_factory=list)
    shapes: list[list[list[float]]] = Field(default_factory=list)  # [[lat, lon], ...] per shape


class TimetableEntry(BaseModel):
    trip_id: str
    route_id: str
    route_short_name: str = UNKNOWN
    trip_headsign: str = ""
    arrival_time: str  # HH:MM:SS, realtime when is_realtime
    scheduled_time: str
    is_realtime: bool = False
    delay: int = 0  # seconds


class VehiclePosition(BaseModel):
    vehicle_id: str
    trip_id: Optional[str] = None
    route_id: Optional[str] = None
    lat: float
    lon: float
    bearing: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[int] = None
    route_short_name: str = UNKNOWN
    trip_headsign: str = UNKNOWN
    color: str = "000000"
    text_color: str = "FFFFFF"
    region: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "Bus Tracker API"
    regions: list[str] = Field(default_factory=list)
    stops: int = 0
    routes: int = 0
    trips: int = 0
    schedule_loaded_at: Optional[str] = None
    vehicles: int = 0
    realtime_updated_at: Optional[str] = None
