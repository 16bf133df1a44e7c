import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger("bustracker.config")

DEFAULT_DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "other_gtfs")
DEFAULT_TIMEZONE = "Asia/Nicosia"

RT_BASE_URL = "https://opendata.cyprusbus.transport.services/api/gtfs-realtime"

# Cyprus operators: static bundle directory name → live feed (None if the operator publishes none)
DEFAULT_REGIONS = [
    ("EMEL", f"{RT_BASE_URL}/Emel_Lemesos_GTFS-Realtime"),
    ("Intercity buses", f"{RT_BASE_URL}/Intercity_Buses_GTFS-Realtime"),
    ("LPT", f"{RT_BASE_URL}/LPT_Larnaca_GTFS-Realtime"),
    ("NPT", f"{RT_BASE_URL}/CPT_Lefkosia_GTFS-Realtime"),
    ("OSEA (Famagusta)", f"{RT_BASE_URL}/OSEA_Famagusta_GTFS-Realtime"),
    ("OSYPA (Pafos)", f"{RT_BASE_URL}/OsyPa_Paphos_GTFS-Realtime"),
    ("PAME EXPRESS", None),
]

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def region_prefix(name: str) -> str:
    """Namespace prefix for a region: 'OSEA (Famagusta)' -> 'osea__famagusta__'."""
    return _NON_ALNUM_RE.sub("_", name).lower() + "_"


def local_today(timezone: str = DEFAULT_TIMEZONE) -> date:
    return datetime.now(ZoneInfo(timezone)).date()


@dataclass(frozen=True)
class RegionConfig:
    name: str
    directory: str
    realtime_url: Optional[str] = None

    @property
    def prefix(self) -> str:
        return region_prefix(self.name)


@dataclass
class Settings:
    data_dir: str = DEFAULT_DATA_DIR
    regions: list[RegionConfig] = field(default_factory=list)
    poll_interval: float = 40.0
    feed_delay: float = 1.0
    region_delay: float = 0.5
    fetch_timeout: float = 10.0
    rate_limit_backoff: float = 120.0
    reload_interval: float = 0.0  # seconds; 0 disables periodic reload
    filter_today: bool = True
    timezone: str = DEFAULT_TIMEZONE
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @property
    def realtime_regions(self) -> list[RegionConfig]:
        return [r for r in self.regions if r.realtime_url]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_regions(data_dir: str, regions_file: Optional[str] = None) -> list[RegionConfig]:
    """Build the region list from a JSON file, or the built-in Cyprus operator set."""
    if not regions_file:
        return [
            RegionConfig(name=name, directory=os.path.join(data_dir, name), realtime_url=url)
            for name, url in DEFAULT_REGIONS
        ]

    try:
        with open(regions_file, "r", encoding="utf-8") as f:
            entries = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read regions file {regions_file}: {e}") from e

    if not isinstance(entries, list):
        raise ValueError(f"Regions file {regions_file} must contain a JSON list")

    regions = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"Invalid region entry in {regions_file}: {entry!r}")
        name = entry["name"]
        directory = entry.get("directory") or os.path.join(data_dir, name)
        if not os.path.isabs(directory):
            directory = os.path.join(data_dir, directory)
        regions.append(RegionConfig(name=name, directory=directory, realtime_url=entry.get("realtime_url")))
    return regions


def load_settings() -> Settings:
    """Read settings from the environment (call after load_dotenv)."""
    data_dir = os.getenv("GTFS_DATA_DIR", DEFAULT_DATA_DIR)
    timezone = os.getenv("TRANSIT_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        ZoneInfo(timezone)
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown TRANSIT_TIMEZONE {timezone!r}") from e

    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    settings = Settings(
        data_dir=data_dir,
        regions=load_regions(data_dir, os.getenv("REGIONS_FILE")),
        poll_interval=_env_float("POLL_INTERVAL", 40.0),
        feed_delay=_env_float("FEED_DELAY", 1.0),
        region_delay=_env_float("REGION_DELAY", 0.5),
        fetch_timeout=_env_float("FETCH_TIMEOUT", 10.0),
        rate_limit_backoff=_env_float("RATE_LIMIT_BACKOFF", 120.0),
        reload_interval=_env_float("RELOAD_INTERVAL", 0.0) * 3600,
        filter_today=_env_bool("FILTER_TODAY", True),
        timezone=timezone,
        cors_origins=origins or ["*"],
    )
    logger.info(f"Configured {len(settings.regions)} regions ({len(settings.realtime_regions)} with live feeds)")
    return settings
