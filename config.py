# ============================================================================
# CONFIGURATION
# ============================================================================

import json
from dataclasses import dataclass, field, fields
from typing import Optional

from errors import ConfigInvalid

MAGIC_BYTE_1 = 0xAD
MAGIC_BYTE_2 = 0xDA

# Highest firmware protocol revision this client speaks
PROTOCOL_VERSION = 1

# Default settings
DEFAULT_LED_COUNT = 60
DEFAULT_BAUD_RATE = 115200
DEFAULT_WEBSOCKET_PORT = 81
DEFAULT_IP = "192.168.4.1"

CONFIG_FILE = "ambilight_config.json"

# Log per-frame detail every N frames
LOG_EVERY_N_FRAMES = 30


@dataclass(frozen=True)
class CaptureRegion:
    """Rectangle of the virtual screen, in pixels."""

    x: int
    y: int
    width: int
    height: int

    @property
    def bbox(self):
        """(left, top, right, bottom) as ImageGrab expects it."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    @classmethod
    def from_value(cls, value) -> "CaptureRegion":
        if isinstance(value, dict):
            try:
                parts = [value[k] for k in ("x", "y", "width", "height")]
            except KeyError as e:
                raise ConfigInvalid(f"capture_region is missing {e.args[0]!r}")
            extra = set(value) - {"x", "y", "width", "height"}
            if extra:
                raise ConfigInvalid(f"capture_region has unknown keys: {sorted(extra)}")
        elif isinstance(value, (list, tuple)) and len(value) == 4:
            parts = list(value)
        else:
            raise ConfigInvalid("capture_region must be {x, y, width, height} or [x, y, w, h]")

        for name, part in zip(("x", "y", "width", "height"), parts):
            _require_int(f"capture_region.{name}", part)
        x, y, w, h = parts
        if w < 1 or h < 1:
            raise ConfigInvalid(f"capture_region must be non-empty, got {w}x{h}")
        return cls(x, y, w, h)


@dataclass(frozen=True)
class DeviceSettings:
    """Which transport to use to reach the LED controller."""

    transport: str = "usb"
    port: str = "auto"
    baud: int = DEFAULT_BAUD_RATE
    host: str = DEFAULT_IP
    ws_port: int = DEFAULT_WEBSOCKET_PORT

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceSettings":
        if not isinstance(data, dict):
            raise ConfigInvalid("device must be an object")
        _reject_unknown("device", data, cls)
        settings = cls(**data)
        if settings.transport not in ("usb", "websocket"):
            raise ConfigInvalid(f"device.transport must be 'usb' or 'websocket', got {settings.transport!r}")
        for name in ("port", "host"):
            if not isinstance(getattr(settings, name), str) or not getattr(settings, name):
                raise ConfigInvalid(f"device.{name} must be a non-empty string")
        for name in ("baud", "ws_port"):
            value = getattr(settings, name)
            _require_int(f"device.{name}", value)
            if value < 1:
                raise ConfigInvalid(f"device.{name} must be positive, got {value}")
        return settings


@dataclass(frozen=True)
class SyncConfig:
    """Validated settings for one sync session.

    ``brightness`` is stored as a 0-1 scale; ``from_dict`` accepts the
    user-facing 0-100 percentage.
    """

    segment_count: int = 5
    brightness: float = 1.0
    saturation: float = 1.0
    transition_speed: float = 30.0
    snap_threshold: float = 1.0
    target_frame_rate: float = 30.0
    capture_region: Optional[CaptureRegion] = None
    monitor: Optional[int] = None
    sample_step: int = 4
    led_count: Optional[int] = None
    device_timeout: float = 0.5
    capture_timeout: float = 1.0
    min_update_interval: float = 0.0
    keepalive_interval: float = 1.0
    reconnect_interval: float = 1.0
    max_consecutive_failures: int = 30
    retry_backoff: float = 0.1
    max_backoff: float = 2.0
    shutdown_grace: float = 1.0
    connect_attempts: int = 3
    connect_retry_delay: float = 1.0
    device: DeviceSettings = field(default_factory=DeviceSettings)

    def __post_init__(self):
        self.validate()

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.target_frame_rate

    def validate(self):
        """Raise ConfigInvalid on the first bad value."""
        _require_int("segment_count", self.segment_count)
        if self.segment_count < 1:
            raise ConfigInvalid(f"segment_count must be >= 1, got {self.segment_count}")

        for name in ("brightness", "saturation"):
            value = getattr(self, name)
            _require_number(name, value)
            if not 0.0 <= value <= 1.0:
                raise ConfigInvalid(f"{name} scale must be within 0-1, got {value}")

        for name in ("transition_speed", "target_frame_rate", "device_timeout",
                     "capture_timeout", "keepalive_interval"):
            value = getattr(self, name)
            _require_number(name, value)
            if value <= 0:
                raise ConfigInvalid(f"{name} must be > 0, got {value}")

        for name in ("snap_threshold", "min_update_interval", "retry_backoff",
                     "max_backoff", "shutdown_grace", "connect_retry_delay",
                     "reconnect_interval"):
            value = getattr(self, name)
            _require_number(name, value)
            if value < 0:
                raise ConfigInvalid(f"{name} must be >= 0, got {value}")

        for name in ("sample_step", "max_consecutive_failures", "connect_attempts"):
            value = getattr(self, name)
            _require_int(name, value)
            if value < 1:
                raise ConfigInvalid(f"{name} must be >= 1, got {value}")

        if self.led_count is not None:
            _require_int("led_count", self.led_count)
            if self.led_count < 1:
                raise ConfigInvalid(f"led_count must be >= 1, got {self.led_count}")

        if self.monitor is not None:
            _require_int("monitor", self.monitor)
            if self.monitor < 0:
                raise ConfigInvalid(f"monitor must be >= 0, got {self.monitor}")

        if self.capture_region is not None and not isinstance(self.capture_region, CaptureRegion):
            raise ConfigInvalid("capture_region must be a CaptureRegion")
        if not isinstance(self.device, DeviceSettings):
            raise ConfigInvalid("device must be DeviceSettings")

    @classmethod
    def from_dict(cls, data: dict) -> "SyncConfig":
        """Build from the JSON option names, rejecting unknown keys."""
        if not isinstance(data, dict):
            raise ConfigInvalid("configuration must be a JSON object")
        _reject_unknown("configuration", data, cls)

        values = dict(data)
        if "brightness" in values:
            percent = values["brightness"]
            _require_number("brightness", percent)
            if not 0 <= percent <= 100:
                raise ConfigInvalid(f"brightness must be within 0-100, got {percent}")
            values["brightness"] = percent / 100.0
        if values.get("capture_region") is not None:
            values["capture_region"] = CaptureRegion.from_value(values["capture_region"])
        if "device" in values:
            values["device"] = DeviceSettings.from_dict(values["device"])
        return cls(**values)


def load_config(path: str = CONFIG_FILE) -> SyncConfig:
    """Read and validate a JSON configuration file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigInvalid(f"configuration file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"{path} is not valid JSON: {e}")
    except OSError as e:
        raise ConfigInvalid(f"cannot read {path}: {e}")
    return SyncConfig.from_dict(data)


def _reject_unknown(where, data, cls):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigInvalid(f"{where} has unknown options: {sorted(unknown)}")


def _require_number(name, value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigInvalid(f"{name} must be a number, got {value!r}")


def _require_int(name, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigInvalid(f"{name} must be an integer, got {value!r}")
