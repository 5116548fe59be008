"""
ladder/config.py - Local configuration management

Reads config from a platform-appropriate config directory:
  - macOS/Linux: ~/.ladder/config.toml
  - Windows: %APPDATA%\\ladder\\config.toml

Every section is optional; anything left out keeps its default.

Example:
    [database]
    path = "~/.ladder/ladder.db"

    [sweeper]
    enabled = true
    hour = 2                 # UTC hour of the daily auto-forfeit sweep
    grace_period_days = 2    # tournaments may override via rules
    max_retries = 3
    run_on_start = true

    [penalties]
    unfair = 10
    no_show = 15
    gave_up = 20

    [scheduling]
    date_tolerance_minutes = 10

    [server]
    host = "0.0.0.0"
    port = 8000
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from ladder.prestige import PenaltySchedule

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================


def _get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "ladder"
    return Path.home() / ".ladder"


CONFIG_DIR = _get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"
DEFAULT_DB_PATH = str(CONFIG_DIR / "ladder.db")


# ============================================================================
# Data Types
# ============================================================================

@dataclass
class DatabaseConfig:
    path: str = DEFAULT_DB_PATH


@dataclass
class SweeperConfig:
    """Auto-forfeit sweep schedule and behaviour."""

    enabled: bool = True
    hour: int = 2  # UTC
    grace_period_days: int = 2
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    run_on_start: bool = True

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)


@dataclass
class SchedulingConfig:
    date_tolerance_minutes: int = 10

    @property
    def date_tolerance(self) -> timedelta:
        return timedelta(minutes=self.date_tolerance_minutes)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class LadderConfig:
    """Top-level configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    penalties: PenaltySchedule = field(default_factory=PenaltySchedule)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


# ============================================================================
# Parsing
# ============================================================================

def _expand(path: str | None) -> str | None:
    """Expand ~ in a path string."""
    if path is None:
        return None
    if path == ":memory:":
        return path
    return str(Path(path).expanduser())


def _section(raw: dict, name: str) -> dict:
    data = raw.get(name, {})
    return data if isinstance(data, dict) else {}


def load_config(path: Path | None = None) -> LadderConfig:
    """
    Read config from TOML file.

    Args:
        path: Override config file path (default: ~/.ladder/config.toml)

    Returns:
        LadderConfig. Missing file or bad TOML returns the defaults.
    """
    config_path = path or CONFIG_PATH

    if not config_path.exists():
        return LadderConfig()

    try:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)
    except Exception as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return LadderConfig()

    # Parse [database] section
    db_data = _section(raw, "database")
    database = DatabaseConfig(path=_expand(db_data.get("path")) or DEFAULT_DB_PATH)

    # Parse [sweeper] section
    sweep_data = _section(raw, "sweeper")
    _sweep = SweeperConfig()
    sweeper = SweeperConfig(
        enabled=sweep_data.get("enabled", _sweep.enabled),
        hour=sweep_data.get("hour", _sweep.hour),
        grace_period_days=sweep_data.get("grace_period_days", _sweep.grace_period_days),
        max_retries=sweep_data.get("max_retries", _sweep.max_retries),
        retry_delay_seconds=sweep_data.get("retry_delay_seconds", _sweep.retry_delay_seconds),
        run_on_start=sweep_data.get("run_on_start", _sweep.run_on_start),
    )
    if not 0 <= sweeper.hour <= 23:
        logger.warning(f"Ignoring sweeper hour {sweeper.hour}, using {_sweep.hour}")
        sweeper.hour = _sweep.hour

    # Parse [penalties] section
    pen_data = _section(raw, "penalties")
    _pen = PenaltySchedule()
    penalties = PenaltySchedule(
        unfair=pen_data.get("unfair", _pen.unfair),
        no_show=pen_data.get("no_show", _pen.no_show),
        gave_up=pen_data.get("gave_up", _pen.gave_up),
    )

    # Parse [scheduling] section
    sched_data = _section(raw, "scheduling")
    scheduling = SchedulingConfig(
        date_tolerance_minutes=sched_data.get(
            "date_tolerance_minutes", SchedulingConfig().date_tolerance_minutes
        ),
    )

    # Parse [server] section
    server_data = _section(raw, "server")
    _server = ServerConfig()
    server = ServerConfig(
        host=server_data.get("host", _server.host),
        port=server_data.get("port", _server.port),
    )

    return LadderConfig(
        database=database, sweeper=sweeper, penalties=penalties,
        scheduling=scheduling, server=server,
    )
