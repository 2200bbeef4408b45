"""
Configuration -- PhoneFleet
===========================

Environment-driven settings and the device registry file.

All knobs are read from ``FLEET_*`` environment variables with sensible
defaults, so the orchestrator runs with zero configuration on a workstation
that has ``adb`` on its PATH.  ``FleetSettings.from_env()`` snapshots them
into a dataclass that is handed to every component at construction time.

The device registry (``devices.json``) is optional.  It lists the devices the
operator cares about and carries per-device hints the devices cannot report
reliably themselves, mainly a ``"WxH"`` resolution override:

    {"devices": [
        {"device": "R58M123ABC", "name": "rack-1", "resolution": "1440x3040"},
        {"device": "192.168.1.40:5555"}
    ]}

A bare list of entries is accepted as well.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("phonefleet.config")

# ---------------------------------------------------------------------------
# Paths & Constants
# ---------------------------------------------------------------------------

BASE_DIR = Path(os.getenv("FLEET_BASE_DIR", Path(__file__).resolve().parent.parent))

LOG_FORMAT = "[%(asctime)s] %(name)s %(levelname)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"

DEFAULT_APP_PACKAGE = "com.zhiliaoapp.musically"
DEFAULT_API_PORT = 8770

_TRUE_VALUES = ("true", "1", "yes", "on")
_RESOLUTION_RE = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def parse_resolution(value: Any) -> Optional[Tuple[int, int]]:
    """Parse ``"1080x2340"`` into ``(1080, 2340)``. None if malformed."""
    if not isinstance(value, str):
        return None
    match = _RESOLUTION_RE.match(value)
    if not match:
        return None
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        return None
    return width, height


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach the fleet's stream handler to the ``phonefleet`` logger once."""
    root = logging.getLogger("phonefleet")
    root.setLevel((level or os.getenv("FLEET_LOG_LEVEL", "INFO")).upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root.addHandler(handler)
    return root


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class FleetSettings:
    """Snapshot of every runtime knob."""

    adb_path: str = "adb"
    scrcpy_path: str = "scrcpy"
    data_dir: Path = field(default_factory=lambda: BASE_DIR / "data")
    db_path: Optional[Path] = None
    devices_file: Path = field(default_factory=lambda: BASE_DIR / "devices.json")
    api_host: str = "0.0.0.0"
    api_port: int = DEFAULT_API_PORT
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    tick_interval: float = 1.0
    flush_debounce: float = 0.5
    notify_batch_window: float = 1.0
    app_package: str = DEFAULT_APP_PACKAGE
    webhook_url: str = ""
    reconnect_on_start: bool = True
    cancel_active_on_shutdown: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.devices_file = Path(self.devices_file)
        if self.db_path is None:
            self.db_path = self.data_dir / "fleet.db"
        else:
            self.db_path = Path(self.db_path)

    @classmethod
    def from_env(cls) -> FleetSettings:
        data_dir = Path(os.getenv("FLEET_DATA_DIR", str(BASE_DIR / "data")))
        db_path = os.getenv("FLEET_DB_PATH")
        origins = os.getenv("FLEET_CORS_ORIGINS", "http://localhost:3000")
        try:
            port = int(os.getenv("FLEET_API_PORT", str(DEFAULT_API_PORT)))
        except ValueError:
            logger.warning("Ignoring non-numeric FLEET_API_PORT")
            port = DEFAULT_API_PORT
        return cls(
            adb_path=os.getenv("FLEET_ADB_PATH", "adb"),
            scrcpy_path=os.getenv("FLEET_SCRCPY_PATH", "scrcpy"),
            data_dir=data_dir,
            db_path=Path(db_path) if db_path else None,
            devices_file=Path(os.getenv("FLEET_DEVICES_FILE", str(BASE_DIR / "devices.json"))),
            api_host=os.getenv("FLEET_API_HOST", "0.0.0.0"),
            api_port=port,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            tick_interval=_env_float("FLEET_TICK_INTERVAL", 1.0),
            flush_debounce=_env_float("FLEET_FLUSH_DEBOUNCE", 0.5),
            notify_batch_window=_env_float("FLEET_NOTIFY_BATCH", 1.0),
            app_package=os.getenv("FLEET_APP_PACKAGE", DEFAULT_APP_PACKAGE),
            webhook_url=os.getenv("FLEET_WEBHOOK_URL", ""),
            reconnect_on_start=_env_bool("FLEET_RECONNECT_ON_START", True),
            cancel_active_on_shutdown=_env_bool("FLEET_CANCEL_ON_SHUTDOWN", False),
            log_level=os.getenv("FLEET_LOG_LEVEL", "INFO"),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in ("data_dir", "db_path", "devices_file"):
            d[key] = str(d[key])
        return d


# ---------------------------------------------------------------------------
# Device registry
# ---------------------------------------------------------------------------


@dataclass
class DeviceInfo:
    """One entry of the device registry file."""

    device_id: str
    name: str = ""
    resolution: Optional[str] = None

    @property
    def resolution_hint(self) -> Optional[Tuple[int, int]]:
        return parse_resolution(self.resolution)

    @property
    def is_tcp(self) -> bool:
        return ":" in self.device_id

    def to_dict(self) -> Dict[str, Any]:
        return {"device": self.device_id, "name": self.name, "resolution": self.resolution}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DeviceInfo:
        device_id = str(data.get("device") or data.get("device_id") or "").strip()
        return cls(
            device_id=device_id,
            name=str(data.get("name") or ""),
            resolution=data.get("resolution"),
        )


def load_devices(path: Path) -> List[DeviceInfo]:
    """Read the device registry. A missing or unreadable file yields []."""
    path = Path(path)
    if not path.exists():
        logger.info("No device registry at %s", path)
        return []
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to read device registry %s: %s", path, exc)
        return []

    entries = raw.get("devices", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        logger.error("Device registry %s has no device list", path)
        return []

    devices: List[DeviceInfo] = []
    seen = set()
    for entry in entries:
        if isinstance(entry, str):
            entry = {"device": entry}
        if not isinstance(entry, dict):
            continue
        info = DeviceInfo.from_dict(entry)
        if not info.device_id or info.device_id in seen:
            continue
        seen.add(info.device_id)
        devices.append(info)
    logger.info("Loaded %d devices from %s", len(devices), path)
    return devices
