"""
Unit tests for live-feed id resolution (id_resolver.py).
"""

from bustracker.id_resolver import IdResolver, resolve_id
from bustracker.models import Stop
from bustracker.schedule import ScheduleBuilder

TABLE = {"emel_T1": 1, "emel_T123": 2, "region_x_T123": 3, "npt_ABC_77": 4}


class TestResolveId:
    def test_exact_match(self):
        assert resolve_id("T123", "region_x_", TABLE) == "region_x_T123"

    def test_exact_match_preferred_over_suffix(self):
        assert resolve_id("T123", "emel_", TABLE) == "emel_T123"

    def test_suffix_fallback(self):
        assert resolve_id("77", "npt_", TABLE) == "npt_ABC_77"

    def test_suffix_ignores_prefix_and_takes_first_in_table_order(self):
        assert resolve_id("T123", "lpt_", TABLE) == "emel_T123"

    def test_no_match(self):
        assert resolve_id("ZZZ", "emel_", TABLE) is None

    def test_empty_id(self):
        assert resolve_id("", "emel_", TABLE) is None
        assert resolve_id(None, "emel_", TABLE) is None


class TestIdResolver:
    def test_resolves_against_schedule_tables(self, schedule):
        resolver = IdResolver(schedule)
        assert resolver.trip("T1", "emel_") == "emel_T1"
        assert resolver.route("R1", "region_x_") == "region_x_R1"
        assert resolver.stop("S2", "emel_") == "emel_S2"

    def test_unknown_ids(self, schedule):
        resolver = IdResolver(schedule)
        assert resolver.trip("nope", "emel_") is None
        assert resolver.route("", "emel_") is None

    def test_results_are_memoised(self, schedule):
        resolver = IdResolver(schedule)
        assert resolver.stop("S1", "emel_") == "emel_S1"
        schedule.stop_ids.pop("emel_S1")
        assert resolver.stop("S1", "emel_") == "emel_S1"

    def test_stop_known_only_from_stop_times(self):
        builder = ScheduleBuilder()
        builder.add_stop(Stop(stop_id="emel_S1", name="Central", latitude=34.0, longitude=33.0))
        builder.add_stop_time("emel_S3", "emel_T1", "08:10:00")
        builder.add_stop_time("region_x_XS3", "region_x_T9", "09:00:00")
        resolver = IdResolver(builder.build())
        assert resolver.stop("S3", "emel_") == "emel_S3"
        assert resolver.stop("XS3", "lpt_") == "region_x_XS3"
