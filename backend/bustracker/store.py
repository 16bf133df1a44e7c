"""Owned store holding the current Schedule Index and realtime snapshot.

Both are replaced by reference assignment only, so a reader that grabs
``store.schedule`` / ``store.realtime`` once sees a complete, consistent
object for the rest of its request.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from bustracker.models import VehiclePosition
from bustracker.schedule import ScheduleIndex

logger = logging.getLogger("bustracker.store")


@dataclass(frozen=True)
class StopTimePrediction:
    arrival_time: Optional[int] = None  # predicted epoch seconds
    delay: Optional[int] = None  # seconds


@dataclass(frozen=True)
class RealtimeSnapshot:
    vehicles: list[VehiclePosition] = field(default_factory=list)
    # trip_id -> stop_id -> prediction
    trip_updates: dict[str, dict[str, StopTimePrediction]] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def prediction_for(self, trip_id: str, stop_id: str) -> Optional[StopTimePrediction]:
        return self.trip_updates.get(trip_id, {}).get(stop_id)


class TransitStore:
    def __init__(self, schedule: Optional[ScheduleIndex] = None):
        self.schedule: ScheduleIndex = schedule or ScheduleIndex.empty()
        self.realtime: RealtimeSnapshot = RealtimeSnapshot()

    def install_schedule(self, schedule: ScheduleIndex) -> None:
        self.schedule = schedule
        logger.info(f"Installed schedule for regions: {', '.join(schedule.regions) or 'none'}")

    def install_realtime(self, snapshot: RealtimeSnapshot) -> None:
        self.realtime = snapshot
