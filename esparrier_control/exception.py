# esparrier_control/exception.py
"""Exceptions raised by the Esparrier transport, codec and OTA pipeline.

Every failure carries an ``ErrorKind`` so the CLI can report what went wrong
without inspecting class names. Errors propagate unchanged up to the command
boundary; the only local recovery is the bounded per-chunk OTA retry.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    AMBIGUOUS_DEVICE = "AmbiguousDevice"
    BUSY = "Busy"
    PERMISSION_DENIED = "PermissionDenied"
    TIMEOUT = "Timeout"
    PROTOCOL_ERROR = "ProtocolError"
    DEVICE_ERROR = "DeviceError"
    UNSUPPORTED = "Unsupported"
    CONFIG_ERROR = "ConfigError"
    NO_MATCHING_ASSET = "NoMatchingAsset"
    NO_UPDATE_AVAILABLE = "NoUpdateAvailable"
    MALFORMED_PACKAGE = "MalformedPackage"
    MISSING_SECRET = "MissingSecret"
    FIRMWARE_VERIFICATION_FAILED = "FirmwareVerificationFailed"
    IO_ERROR = "IoError"


class EsparrierError(Exception):
    """Base class for every error surfaced by this package."""

    kind: ErrorKind = ErrorKind.IO_ERROR
    default_detail: str = ""

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail if detail is not None else self.default_detail
        super().__init__(self.detail or self.kind.value)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


class DeviceNotFound(EsparrierError):
    kind = ErrorKind.NOT_FOUND
    default_detail = "Esparrier KVM not found"


class AmbiguousDevice(EsparrierError):
    kind = ErrorKind.AMBIGUOUS_DEVICE
    default_detail = "More than one device connected, use --bus/--address to pick one"


class DeviceBusy(EsparrierError):
    kind = ErrorKind.BUSY
    default_detail = "Device is in use by another process"


class PermissionDenied(EsparrierError):
    kind = ErrorKind.PERMISSION_DENIED
    default_detail = "Permission denied, check the udev rule for the device"


class DeviceTimeout(EsparrierError):
    kind = ErrorKind.TIMEOUT
    default_detail = "Timed out"


class ProtocolError(EsparrierError):
    kind = ErrorKind.PROTOCOL_ERROR
    default_detail = "Invalid response"


class DeviceError(EsparrierError):
    """The device answered with an error frame; ``code`` is passed through."""

    kind = ErrorKind.DEVICE_ERROR

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        self.message = message or "Unknown device error"
        super().__init__(f"{self.message} (code {code!r})")


class Unsupported(EsparrierError):
    kind = ErrorKind.UNSUPPORTED
    default_detail = "Operation not supported by this firmware"


class ConfigError(EsparrierError):
    kind = ErrorKind.CONFIG_ERROR


class NoMatchingAsset(EsparrierError):
    kind = ErrorKind.NO_MATCHING_ASSET
    default_detail = "No matching firmware found"


class NoUpdateAvailable(EsparrierError):
    kind = ErrorKind.NO_UPDATE_AVAILABLE
    default_detail = "Firmware is up to date"


class MalformedPackage(EsparrierError):
    kind = ErrorKind.MALFORMED_PACKAGE
    default_detail = "No valid firmware file found in the package"


class MissingSecret(EsparrierError):
    kind = ErrorKind.MISSING_SECRET


class FirmwareVerificationFailed(EsparrierError):
    kind = ErrorKind.FIRMWARE_VERIFICATION_FAILED
    default_detail = "Device rejected the firmware image"


class EsparrierIOError(EsparrierError):
    kind = ErrorKind.IO_ERROR


__all__ = [
    "ErrorKind",
    "EsparrierError",
    "DeviceNotFound",
    "AmbiguousDevice",
    "DeviceBusy",
    "PermissionDenied",
    "DeviceTimeout",
    "ProtocolError",
    "DeviceError",
    "Unsupported",
    "ConfigError",
    "NoMatchingAsset",
    "NoUpdateAvailable",
    "MalformedPackage",
    "MissingSecret",
    "FirmwareVerificationFailed",
    "EsparrierIOError",
]
