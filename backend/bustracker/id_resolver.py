"""Two-tier identity resolution of live-feed ids against namespaced static ids.

Live feeds report ids in the operator's own form ("T123") while the static
tables hold them namespaced ("emel_T123"). Resolution order:

1. exact: ``prefix + raw_id`` is a key of the table;
2. suffix: the first key, in table iteration order, that ends with ``raw_id``.

The suffix tier covers feeds whose ids are truncated or already partially
prefixed. When several keys share the suffix (e.g. across regions) the first
one in table order wins; there is no further tie-break.
"""

from typing import Mapping, Optional

from bustracker.schedule import ScheduleIndex


def resolve_id(raw_id: Optional[str], prefix: str, table: Mapping) -> Optional[str]:
    if not raw_id:
        return None
    candidate = prefix + raw_id
    if candidate in table:
        return candidate
    return next((key for key in table if key.endswith(raw_id)), None)


class IdResolver:
    """Resolves trip/route/stop ids for one poll cycle, memoising suffix scans."""

    def __init__(self, schedule: ScheduleIndex):
        self.schedule = schedule
        self._memo: dict[tuple[str, str, str], Optional[str]] = {}

    def _resolve(self, kind: str, table: Mapping, raw_id: Optional[str], prefix: str) -> Optional[str]:
        if not raw_id:
            return None
        key = (kind, prefix, raw_id)
        if key not in self._memo:
            self._memo[key] = resolve_id(raw_id, prefix, table)
        return self._memo[key]

    def trip(self, raw_id: Optional[str], prefix: str) -> Optional[str]:
        return self._resolve("trip", self.schedule.trips, raw_id, prefix)

    def route(self, raw_id: Optional[str], prefix: str) -> Optional[str]:
        return self._resolve("route", self.schedule.routes, raw_id, prefix)

    def stop(self, raw_id: Optional[str], prefix: str) -> Optional[str]:
        return self._resolve("stop", self.schedule.stop_ids, raw_id, prefix)
