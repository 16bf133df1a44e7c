"""
Shared fixtures: small GTFS bundles for a few regions written to tmp_path.

EMEL      main region. Duplicate and malformed stops, out-of-order shape
          points, a daily service and a service that only runs on an added
          exception date, plus a trip on a route that doesn't exist.
Region X  reuses EMEL's raw ids (S1, R1) and has no calendar at all.
LPT       ships stops.csv with the alternative column names.
"""

import os
import textwrap
from datetime import date

import pytest

from bustracker.config import RegionConfig
from bustracker.gtfs_parser import load_gtfs_data
from bustracker.store import TransitStore

MONDAY = date(2025, 1, 6)
SUNDAY = date(2025, 1, 5)


def write_region(root, name: str, files: dict[str, str]) -> str:
    directory = os.path.join(str(root), name)
    os.makedirs(directory, exist_ok=True)
    for filename, content in files.items():
        with open(os.path.join(directory, filename), "w", encoding="utf-8") as f:
            f.write(textwrap.dedent(content).lstrip())
    return directory


EMEL_FILES = {
    "agency.txt": """
        agency_id,agency_name
        A1,EMEL Lemesos
    """,
    "stops.txt": """
        stop_id,stop_name,stop_lat,stop_lon
        S1,Central,34.0,33.0
        S2,Harbour,34.01,33.02
        S1,Duplicate Central,35.0,35.0
        S3,Broken,not-a-number,33.0
        S4,Too,Many,Fields,Here,Really
    """,
    "routes.txt": """
        route_id,agency_id,route_short_name,route_long_name,route_color,route_text_color
        R1,A1,30,Limassol - Germasogeia,FF0000,FFFFFF
        R2,A1,31,Old Port Loop,,
    """,
    "trips.txt": """
        route_id,service_id,trip_id,trip_headsign,shape_id
        R1,WK,T1,Germasogeia,SH1
        R1,WK,T2,Germasogeia,SH1
        R2,SPECIAL,T3,Old Port,
        R9,WK,T4,Ghost,
    """,
    "stop_times.txt": """
        trip_id,arrival_time,departure_time,stop_id,stop_sequence
        T1,08:00:00,08:00:00,S1,1
        T1,08:10:00,08:10:00,S2,2
        T1,,,S2,3
        T2,7:30:00,7:30:00,S1,1
        T3,09:00:00,09:00:00,S1,1
        T4,06:00:00,06:00:00,S1,1
    """,
    "shapes.txt": """
        shape_id,shape_pt_lat,shape_pt_lon,shape_pt_sequence
        SH1,34.02,33.04,3
        SH1,34.00,33.00,1
        SH1,34.01,33.02,2
        SH1,bad,33.00,4
    """,
    "calendar.txt": """
        service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date
        WK,1,1,1,1,1,1,1,20200101,20991231
        SPECIAL,0,0,0,0,0,0,0,20200101,20991231
    """,
    "calendar_dates.txt": """
        service_id,date,exception_type
        SPECIAL,20250105,1
    """,
}

REGION_X_FILES = {
    "stops.txt": """
        stop_id,stop_name,stop_lat,stop_lon
        S1,Plateia,35.1,33.3
    """,
    "routes.txt": """
        route_id,route_short_name,route_long_name
        R1,X1,Crosstown
    """,
    "trips.txt": """
        route_id,service_id,trip_id,trip_headsign
        R1,DAILY,T123,Airport
    """,
    "stop_times.txt": """
        trip_id,arrival_time,departure_time,stop_id,stop_sequence
        T123,10:00:00,10:00:00,S1,1
    """,
}

LPT_FILES = {
    "stops.csv": """
        code,description[en],lat,lon
        100,Finikoudes,34.91,33.63
        101,Airport,34.87,33.62
    """,
}


@pytest.fixture()
def gtfs_root(tmp_path):
    write_region(tmp_path, "EMEL", EMEL_FILES)
    write_region(tmp_path, "Region X", REGION_X_FILES)
    write_region(tmp_path, "LPT", LPT_FILES)
    return tmp_path


@pytest.fixture()
def regions(gtfs_root):
    return [
        RegionConfig("EMEL", os.path.join(str(gtfs_root), "EMEL"), "https://feeds.test/emel"),
        RegionConfig("Region X", os.path.join(str(gtfs_root), "Region X"), "https://feeds.test/regionx"),
        RegionConfig("LPT", os.path.join(str(gtfs_root), "LPT")),
    ]


@pytest.fixture()
def schedule(regions):
    """Loaded with Monday's day filter applied."""
    return load_gtfs_data(regions, today=MONDAY)


@pytest.fixture()
def full_schedule(regions):
    """Loaded without the day filter, for query-time date filtering tests."""
    return load_gtfs_data(regions, today=MONDAY, filter_today=False)


@pytest.fixture()
def store(schedule):
    return TransitStore(schedule)
