# esparrier_control/const.py
"""Constants shared by the transport, codec and OTA pipeline.

Single source of truth for USB identifiers, timeouts and the firmware
release naming rules.
"""

from __future__ import annotations

# ────────────────────────────────────────────────────────────────────────────────
# Core identifiers
# ────────────────────────────────────────────────────────────────────────────────
PRODUCT: str = "esparrier"
MANUFACTURER: str = "0d0a.com"

# ────────────────────────────────────────────────────────────────────────────────
# USB link
# ────────────────────────────────────────────────────────────────────────────────
USB_VID = 0x0D0A
USB_PID = 0xC0DE

# Vendor interface carrying the command channel (class, subclass, protocol)
INTERFACE_CLASS = 0xFF
INTERFACE_SUBCLASS = 0x0D
INTERFACE_PROTOCOL = 0x0A

USB_PACKET_SIZE = 64
READ_BUFFER_SIZE = 4096

# ────────────────────────────────────────────────────────────────────────────────
# Timeouts (seconds)
# ────────────────────────────────────────────────────────────────────────────────
DEFAULT_TIMEOUT = 5.0
OTA_BEGIN_TIMEOUT = 10.0
OTA_END_TIMEOUT = 30.0
DRAIN_TIMEOUT = 0.05
WAIT_POLL_INTERVAL = 0.5
DEFAULT_WAIT_TIMEOUT = 60.0
HTTP_TIMEOUT = 30.0

# ────────────────────────────────────────────────────────────────────────────────
# OTA
# ────────────────────────────────────────────────────────────────────────────────
OTA_CHUNK_SIZE = 1024
OTA_CHUNK_ATTEMPTS = 3
OTA_RETRY_BACKOFF = 0.25
MAX_FIRMWARE_SIZE = 0x100000  # size of the device's OTA partition

# ────────────────────────────────────────────────────────────────────────────────
# Firmware releases
# ────────────────────────────────────────────────────────────────────────────────
RELEASES_URL = "https://api.github.com/repos/windoze/esparrier/releases"
ARCHIVE_EXTENSIONS = ("tar.gz", "tgz", "zip")
DOWNLOAD_CHUNK_SIZE = 8192

# model_id byte reported by the firmware -> asset name model tag
MODEL_NAMES: dict[int, str] = {
    1: "m5atoms3-lite",
    2: "m5atoms3",
    3: "m5atoms3r",
    4: "devkitc-1_0",
    5: "devkitc-1_1",
    6: "xiao-esp32s3",
    7: "esp32-s3-eth",
    255: "generic",
}

# ────────────────────────────────────────────────────────────────────────────────
# Environment
# ────────────────────────────────────────────────────────────────────────────────
ENV_WIFI_PASSWORD = "WIFI_PASSWORD"
ENV_WIFI_SSID = "WIFI_SSID"

__all__ = [
    "PRODUCT",
    "MANUFACTURER",
    "USB_VID",
    "USB_PID",
    "INTERFACE_CLASS",
    "INTERFACE_SUBCLASS",
    "INTERFACE_PROTOCOL",
    "USB_PACKET_SIZE",
    "READ_BUFFER_SIZE",
    "DEFAULT_TIMEOUT",
    "OTA_BEGIN_TIMEOUT",
    "OTA_END_TIMEOUT",
    "DRAIN_TIMEOUT",
    "WAIT_POLL_INTERVAL",
    "DEFAULT_WAIT_TIMEOUT",
    "HTTP_TIMEOUT",
    "OTA_CHUNK_SIZE",
    "OTA_CHUNK_ATTEMPTS",
    "OTA_RETRY_BACKOFF",
    "MAX_FIRMWARE_SIZE",
    "RELEASES_URL",
    "ARCHIVE_EXTENSIONS",
    "DOWNLOAD_CHUNK_SIZE",
    "MODEL_NAMES",
    "ENV_WIFI_PASSWORD",
    "ENV_WIFI_SSID",
]
