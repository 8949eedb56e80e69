# esparrier_control/models.py
"""Typed device state and configuration.

- DeviceState is a read-only snapshot decoded from the 's' response.
- DeviceConfig mirrors the JSON document stored on the device. The Wi-Fi
  password is write-only: anything produced from a device read is redacted.
"""

from __future__ import annotations

import ipaddress
import json
from dataclasses import asdict, dataclass, field, fields, replace
from enum import IntFlag
from typing import Any, Dict, List, Optional, Tuple

from .const import MODEL_NAMES, USB_PID, USB_VID
from .exception import ConfigError

Version = Tuple[int, int, int]


def parse_version(text: str) -> Version:
    """Parse ``"0.7.0"`` / ``"v0.7.0"`` into a comparable tuple."""
    s = (text or "").strip().lstrip("vV")
    parts = s.split(".")
    if len(parts) != 3:
        raise ValueError(f"Invalid version: {text!r}")
    try:
        major, minor, patch = (int(p) for p in parts)
    except ValueError as e:
        raise ValueError(f"Invalid version: {text!r}") from e
    return major, minor, patch


def format_version(version: Optional[Version]) -> str:
    if version is None:
        return "unknown"
    return ".".join(str(v) for v in version)


def model_id_to_name(model_id: int) -> str | None:
    """Map the firmware's model id to the release asset model tag."""
    return MODEL_NAMES.get(model_id)


# ────────────────────────────────────────────────────────────────
# Device state
# ────────────────────────────────────────────────────────────────
class FeatureFlag(IntFlag):
    """Capability bits reported in DeviceState.feature_flags."""

    LED = 0b0000_0001
    SMART_LED = 0b0000_0010
    GRAPHICS = 0b0000_0100
    OTA = 0b0100_0000
    CLIPBOARD = 0b1000_0000


STATE_PAYLOAD_SIZE = 13


@dataclass(frozen=True)
class DeviceState:
    version_major: int
    version_minor: int
    version_patch: int
    feature_flags: int
    ip_address: str
    ip_prefix: int
    server_connected: bool
    active: bool
    keep_awake: bool
    model_id: int = 0

    @classmethod
    def from_bytes(cls, payload: bytes) -> "DeviceState":
        """Decode the state payload (response tag already stripped)."""
        if len(payload) < STATE_PAYLOAD_SIZE:
            raise ValueError(f"State payload too short ({len(payload)} bytes)")
        return cls(
            version_major=payload[0],
            version_minor=payload[1],
            version_patch=payload[2],
            feature_flags=payload[3],
            ip_address=str(ipaddress.IPv4Address(bytes(payload[4:8]))),
            ip_prefix=payload[8],
            server_connected=payload[9] != 0,
            active=payload[10] != 0,
            keep_awake=payload[11] != 0,
            model_id=payload[12],
        )

    def to_bytes(self) -> bytes:
        return bytes(
            [
                self.version_major,
                self.version_minor,
                self.version_patch,
                self.feature_flags,
                *ipaddress.IPv4Address(self.ip_address).packed,
                self.ip_prefix,
                int(self.server_connected),
                int(self.active),
                int(self.keep_awake),
                self.model_id,
            ]
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON view; model_id is internal and not part of the document."""
        out = asdict(self)
        out.pop("model_id")
        return out

    @property
    def version(self) -> Version:
        return self.version_major, self.version_minor, self.version_patch

    @property
    def version_string(self) -> str:
        return format_version(self.version)

    def has_feature(self, flag: FeatureFlag) -> bool:
        return bool(self.feature_flags & int(flag))

    @property
    def has_ota_support(self) -> bool:
        return self.has_feature(FeatureFlag.OTA)

    @property
    def model_name(self) -> str | None:
        return model_id_to_name(self.model_id)


# ────────────────────────────────────────────────────────────────
# Device configuration
# ────────────────────────────────────────────────────────────────
SCREEN_WIDTH = 1920
SCREEN_HEIGHT = 1080
BRIGHTNESS = 30
POLLING_RATE = 200
JIGGLE_INTERVAL = 60
USB_MANUFACTURER = "0d0a.com"
USB_PRODUCT = "Esparrier KVM"
USB_SERIAL_NUMBER = "88888888"
LANDING_URL = "https://0d0a.com"
WATCHDOG_TIMEOUT = 15

# Always emitted, in this order
_CORE_FIELDS = (
    "ssid",
    "password",
    "server",
    "screen_name",
    "screen_width",
    "screen_height",
    "flip_wheel",
    "brightness",
)


@dataclass
class DeviceConfig:
    ssid: str = ""
    password: str = ""
    server: str = ""
    screen_name: str = ""
    screen_width: int = SCREEN_WIDTH
    screen_height: int = SCREEN_HEIGHT
    flip_wheel: bool = False
    brightness: int = BRIGHTNESS

    # Optional fields, only serialized when they differ from the default
    polling_rate: int = POLLING_RATE
    jiggle_interval: int = JIGGLE_INTERVAL
    ip_addr: Optional[str] = None
    dns_server: List[str] = field(default_factory=list)
    gateway: Optional[str] = None
    vid: int = USB_VID
    pid: int = USB_PID
    manufacturer: str = USB_MANUFACTURER
    product: str = USB_PRODUCT
    serial_number: str = USB_SERIAL_NUMBER
    landing_url: str = LANDING_URL
    watchdog_timeout: int = WATCHDOG_TIMEOUT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceConfig":
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a JSON object")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_json(cls, text: str | bytes) -> "DeviceConfig":
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigError(f"Invalid JSON format: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, omitting an empty password and default-valued extras."""
        defaults = DeviceConfig()
        out: Dict[str, Any] = {}
        for name in _CORE_FIELDS:
            value = getattr(self, name)
            if name == "password" and not value:
                continue
            out[name] = value
        for f in fields(self):
            if f.name in _CORE_FIELDS:
                continue
            value = getattr(self, f.name)
            if value == getattr(defaults, f.name):
                continue
            out[f.name] = value
        return out

    def to_json_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    def redacted(self) -> "DeviceConfig":
        return replace(self, password="")

    def validate(self) -> None:
        """Raise ConfigError when a field is outside what the firmware accepts."""

        def _string(name: str, max_len: int, *, allow_empty: bool = False) -> None:
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ConfigError(f"Config field '{name}' must be a string")
            if not value and not allow_empty:
                raise ConfigError(f"Config field '{name}' is empty")
            if len(value) > max_len:
                raise ConfigError(f"Config field '{name}' is too long")

        def _number(name: str, lo: int, hi: int) -> None:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not lo <= value <= hi:
                raise ConfigError(f"Config field '{name}' is out of range [{lo}..{hi}]")

        def _ipv4(name: str, value: Any) -> ipaddress.IPv4Address:
            if not isinstance(value, str):
                raise ConfigError(f"Config field '{name}' is invalid IP address")
            try:
                return ipaddress.IPv4Address(value)
            except (ipaddress.AddressValueError, ValueError) as e:
                raise ConfigError(f"Config field '{name}' is invalid IP address") from e

        _string("ssid", 32)
        _string("password", 64)
        _string("server", 64)
        host, sep, port = self.server.rpartition(":")
        if not sep or not port.isdigit() or int(port) > 65535:
            raise ConfigError("Config field 'server' is invalid endpoint")
        try:
            ipaddress.IPv4Address(host)
        except (ipaddress.AddressValueError, ValueError) as e:
            raise ConfigError("Config field 'server' is invalid endpoint") from e
        _string("screen_name", 64)
        _number("screen_width", 1, 32767)
        _number("screen_height", 1, 32767)
        _number("brightness", 0, 100)
        if not isinstance(self.flip_wheel, bool):
            raise ConfigError("Config field 'flip_wheel' must be a boolean")

        if self.ip_addr is not None:
            ip, sep, prefix = str(self.ip_addr).partition("/")
            if not sep:
                raise ConfigError("Config field 'ip_addr' is invalid IP address")
            _ipv4("ip_addr", ip)
            if not prefix.isdigit() or int(prefix) > 32:
                raise ConfigError("Config field 'ip_addr' has invalid IPv4 CIDR prefix")
        if not isinstance(self.dns_server, list):
            raise ConfigError("Config field 'dns_server' must be a list of IP addresses")
        for dns in self.dns_server:
            _ipv4("dns_server", dns)
        if self.gateway is not None:
            _ipv4("gateway", self.gateway)

        _string("manufacturer", 64)
        _string("product", 64)
        _string("serial_number", 64)
        _string("landing_url", 255, allow_empty=True)


__all__ = [
    "Version",
    "parse_version",
    "format_version",
    "model_id_to_name",
    "FeatureFlag",
    "DeviceState",
    "DeviceConfig",
]
