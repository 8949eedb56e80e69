# esparrier_control/protocol.py
"""
Esparrier command protocol codec.

Every message on the USB link, in both directions, is one frame:

    [tag, len_lo, len_hi, *payload, checksum]

- ``tag`` is an ASCII command/response letter.
- ``len`` is the payload length, u16 little-endian.
- ``checksum`` is the XOR of every preceding byte of the frame.

Frames longer than one USB packet are split by the transport; the codec only
deals with whole frames.

Requests (host → device):
    GetState ``s`` · GetConfig ``r`` · SetConfig ``w`` (JSON bytes)
    Commit ``c`` · Reboot ``b`` · SetKeepAwake ``k`` (0/1)
    OtaBegin ``O`` (size u32, crc32 u32) · OtaChunk ``D`` (offset u32, crc32 u32, data)
    OtaEnd ``E``

Responses (device → host):
    ``o`` ok · ``s`` state · ``r`` config JSON · ``P`` committed OTA offset (u32)
    ``C`` OTA complete · ``e`` error (subsystem byte, code byte)
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import ClassVar, FrozenSet, Union

from .exception import ConfigError, DeviceError, ProtocolError
from .models import DeviceConfig, DeviceState

__all__ = [
    "HEADER_SIZE",
    "FRAME_OVERHEAD",
    "MAX_PAYLOAD",
    "Frame",
    "GetState",
    "GetConfig",
    "SetConfig",
    "Commit",
    "Reboot",
    "SetKeepAwake",
    "OtaBegin",
    "OtaChunk",
    "OtaEnd",
    "Request",
    "crc32",
    "encode_frame",
    "decode_frame",
    "frame_size",
    "encode_request",
    "check_response",
    "device_error",
    "decode_state",
    "decode_config",
    "decode_ota_offset",
]

HEADER_SIZE = 3
FRAME_OVERHEAD = HEADER_SIZE + 1
MAX_PAYLOAD = 0xFFFF

# Response tags
RESP_OK = ord("o")
RESP_STATE = ord("s")
RESP_CONFIG = ord("r")
RESP_OTA_PROGRESS = ord("P")
RESP_OTA_COMPLETE = ord("C")
RESP_ERROR = ord("e")

# Error subsystems and codes reported in 'e' frames
ERR_SUBSYSTEM_OTA = ord("O")
ERR_SUBSYSTEM_CONFIG = ord("W")

OTA_ERROR_MESSAGES = {
    ord("a"): "OTA already in progress",
    ord("n"): "OTA not started",
    ord("i"): "OTA initialization failed",
    ord("w"): "OTA write failed",
    ord("c"): "CRC mismatch",
    ord("f"): "OTA flush failed",
    ord("s"): "Invalid firmware size",
    ord("p"): "OTA partition not found",
    ord("o"): "Chunk offset out of order",
}

CONFIG_ERROR_MESSAGES = {
    ord("j"): "Configuration is not valid JSON",
    ord("v"): "Configuration rejected by the device",
    ord("f"): "Failed to write configuration to flash",
}


# ────────────────────────────────────────────────────────────────
# Checksums
# ────────────────────────────────────────────────────────────────
def _xor_checksum(buf: bytes | bytearray) -> int:
    c = 0
    for b in buf:
        c ^= b
    return c & 0xFF


def crc32(data: bytes | bytearray) -> int:
    """CRC-32 (IEEE 802.3), same polynomial as the firmware."""
    return zlib.crc32(data) & 0xFFFFFFFF


# ────────────────────────────────────────────────────────────────
# Frame encoder / decoder
# ────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Frame:
    tag: int
    payload: bytes = b""

    @property
    def tag_char(self) -> str:
        return chr(self.tag)


def encode_frame(tag: int, payload: bytes | bytearray = b"") -> bytes:
    if not 0 <= tag <= 0xFF:
        raise ValueError(f"Tag out of range 0..255: {tag}")
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"Payload too large ({len(payload)} bytes)")
    body = struct.pack("<BH", tag, len(payload)) + bytes(payload)
    return body + bytes([_xor_checksum(body)])


def frame_size(header: bytes | bytearray) -> int:
    """Total frame length announced by the first HEADER_SIZE bytes."""
    if len(header) < HEADER_SIZE:
        raise ValueError("Need at least the frame header")
    (length,) = struct.unpack_from("<H", header, 1)
    return length + FRAME_OVERHEAD


def decode_frame(buf: bytes | bytearray) -> Frame:
    """Decode exactly one frame; any malformation is a ProtocolError."""
    if len(buf) < FRAME_OVERHEAD:
        raise ProtocolError(f"Frame too short ({len(buf)} bytes)")
    expected = frame_size(buf)
    if len(buf) != expected:
        raise ProtocolError(f"Frame length mismatch (header says {expected}, got {len(buf)})")
    if _xor_checksum(buf[:-1]) != buf[-1]:
        raise ProtocolError("Frame checksum mismatch")
    return Frame(tag=buf[0], payload=bytes(buf[HEADER_SIZE:-1]))


# ────────────────────────────────────────────────────────────────
# Requests
# ────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class GetState:
    tag: ClassVar[int] = ord("s")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_STATE})

    def payload(self) -> bytes:
        return b""


@dataclass(frozen=True)
class GetConfig:
    tag: ClassVar[int] = ord("r")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_CONFIG})

    def payload(self) -> bytes:
        return b""


@dataclass(frozen=True)
class SetConfig:
    data: bytes
    tag: ClassVar[int] = ord("w")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OK})

    def payload(self) -> bytes:
        return bytes(self.data)


@dataclass(frozen=True)
class Commit:
    tag: ClassVar[int] = ord("c")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OK})

    def payload(self) -> bytes:
        return b""


@dataclass(frozen=True)
class Reboot:
    tag: ClassVar[int] = ord("b")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OK})

    def payload(self) -> bytes:
        return b""


@dataclass(frozen=True)
class SetKeepAwake:
    enable: bool
    tag: ClassVar[int] = ord("k")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OK})

    def payload(self) -> bytes:
        return bytes([1 if self.enable else 0])


@dataclass(frozen=True)
class OtaBegin:
    total_size: int
    image_crc32: int
    tag: ClassVar[int] = ord("O")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OK})

    def payload(self) -> bytes:
        return struct.pack("<II", self.total_size, self.image_crc32)


@dataclass(frozen=True)
class OtaChunk:
    offset: int
    data: bytes
    checksum: int
    tag: ClassVar[int] = ord("D")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OTA_PROGRESS})

    @classmethod
    def for_data(cls, offset: int, data: bytes) -> "OtaChunk":
        return cls(offset=offset, data=bytes(data), checksum=crc32(data))

    def payload(self) -> bytes:
        return struct.pack("<II", self.offset, self.checksum) + bytes(self.data)


@dataclass(frozen=True)
class OtaEnd:
    tag: ClassVar[int] = ord("E")
    expects: ClassVar[FrozenSet[int]] = frozenset({RESP_OTA_COMPLETE})

    def payload(self) -> bytes:
        return b""


Request = Union[
    GetState, GetConfig, SetConfig, Commit, Reboot, SetKeepAwake, OtaBegin, OtaChunk, OtaEnd
]


def encode_request(request: Request) -> bytes:
    return encode_frame(request.tag, request.payload())


# ────────────────────────────────────────────────────────────────
# Responses
# ────────────────────────────────────────────────────────────────
def device_error(payload: bytes) -> DeviceError:
    """Map an 'e' frame payload to a DeviceError, keeping the raw code."""
    code = payload.decode("latin-1")
    message = None
    if len(payload) >= 2:
        if payload[0] == ERR_SUBSYSTEM_OTA:
            message = OTA_ERROR_MESSAGES.get(payload[1], "Unknown OTA error")
        elif payload[0] == ERR_SUBSYSTEM_CONFIG:
            message = CONFIG_ERROR_MESSAGES.get(payload[1], "Unknown configuration error")
    return DeviceError(code, message)


def check_response(request: Request, frame: Frame) -> Frame:
    """Raise for error frames and for tags the request does not expect."""
    if frame.tag == RESP_ERROR:
        raise device_error(frame.payload)
    if frame.tag not in request.expects:
        raise ProtocolError(
            f"Unexpected response {frame.tag_char!r} to {type(request).__name__}"
        )
    return frame


def decode_state(frame: Frame) -> DeviceState:
    try:
        return DeviceState.from_bytes(frame.payload)
    except ValueError as e:
        raise ProtocolError(str(e)) from e


def decode_config(frame: Frame) -> DeviceConfig:
    """Decode a config response. The password never survives a read."""
    data = bytes(b for b in frame.payload if b != 0)
    try:
        config = DeviceConfig.from_json(data)
    except ConfigError as e:
        raise ProtocolError(f"Invalid config JSON from device: {e}") from e
    return config.redacted()


def decode_ota_offset(frame: Frame) -> int:
    if len(frame.payload) < 4:
        raise ProtocolError("OTA progress payload too short")
    (offset,) = struct.unpack_from("<I", frame.payload, 0)
    return offset
