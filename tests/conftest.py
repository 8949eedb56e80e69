"""Pytest configuration and fixtures for esparrier-control tests."""

from __future__ import annotations

import io
import json
import struct
import tarfile
import zipfile
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import requests

from esparrier_control import protocol
from esparrier_control.device import DeviceDescriptor, DeviceHandle
from esparrier_control.exception import DeviceTimeout
from esparrier_control.models import DeviceState

OTA_FLAGS = 0x40 | 0x82

# A fault replaces the device's answer to one request:
#   "timeout" - the device stays silent
#   bytes     - the device answers with these raw bytes
#   Exception - the write itself fails
Fault = Union[str, bytes, Exception]


class FakeLink:
    """In-memory Link that answers requests like the firmware does."""

    def __init__(self, state: DeviceState, config: Optional[Dict[str, Any]] = None) -> None:
        self.state = state
        self.config = config or {}
        self.requests: List[protocol.Frame] = []
        self.faults: Dict[str, List[Fault]] = {}
        self.pending = bytearray()
        self.packet_size = 64
        self.closed = False
        self.uploaded: Optional[bytes] = None
        self.committed = False
        self.rebooted = False
        self.image = bytearray()
        self.ota_size = 0
        self.ota_crc = 0

    # ---- Link ----
    def write(self, data: bytes, timeout: float) -> None:
        frame = protocol.decode_frame(data)
        self.requests.append(frame)
        queue = self.faults.get(frame.tag_char)
        if queue:
            fault = queue.pop(0)
            if isinstance(fault, Exception):
                raise fault
            if isinstance(fault, bytes):
                self.pending.extend(fault)
            return
        self.pending.extend(self._respond(frame))

    def read(self, timeout: float) -> bytes:
        if not self.pending:
            raise DeviceTimeout("USB transfer timed out")
        out = bytes(self.pending[: self.packet_size])
        del self.pending[: self.packet_size]
        return out

    def close(self) -> None:
        self.closed = True

    # ---- helpers ----
    @property
    def request_tags(self) -> str:
        return "".join(f.tag_char for f in self.requests)

    def _ok(self) -> bytes:
        return protocol.encode_frame(protocol.RESP_OK)

    def _respond(self, frame: protocol.Frame) -> bytes:
        tag = frame.tag_char
        if tag == "s":
            return protocol.encode_frame(protocol.RESP_STATE, self.state.to_bytes())
        if tag == "r":
            return protocol.encode_frame(protocol.RESP_CONFIG, json.dumps(self.config).encode())
        if tag == "w":
            self.uploaded = frame.payload
            return self._ok()
        if tag == "c":
            self.committed = True
            return self._ok()
        if tag == "b":
            self.rebooted = True
            return self._ok()
        if tag == "k":
            self.state = replace(self.state, keep_awake=frame.payload == b"\x01")
            return self._ok()
        if tag == "O":
            self.ota_size, self.ota_crc = struct.unpack("<II", frame.payload)
            self.image = bytearray()
            return self._ok()
        if tag == "D":
            offset, crc = struct.unpack_from("<II", frame.payload)
            data = frame.payload[8:]
            if offset != len(self.image):
                return protocol.encode_frame(protocol.RESP_ERROR, b"Oo")
            if protocol.crc32(data) != crc:
                return protocol.encode_frame(protocol.RESP_ERROR, b"Oc")
            self.image.extend(data)
            return protocol.encode_frame(
                protocol.RESP_OTA_PROGRESS, struct.pack("<I", len(self.image))
            )
        if tag == "E":
            if len(self.image) != self.ota_size or protocol.crc32(self.image) != self.ota_crc:
                return protocol.encode_frame(protocol.RESP_ERROR, b"Oc")
            return protocol.encode_frame(protocol.RESP_OTA_COMPLETE)
        return protocol.encode_frame(protocol.RESP_ERROR, b"?")


class FakeResponse:
    def __init__(self, payload: Any = None, content: bytes = b"", status: int = 200) -> None:
        self._payload = payload
        self.content = content
        self.status_code = status

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON")
        return self._payload

    def iter_content(self, chunk_size: int = 1) -> Any:
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]


class FakeSession:
    """Stands in for requests.Session; maps URL to a FakeResponse."""

    def __init__(self, responses: Dict[str, FakeResponse]) -> None:
        self.responses = responses
        self.calls: List[str] = []
        self.closed = False

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, *exc: object) -> None:
        self.closed = True

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(url)
        return self.responses[url]


@pytest.fixture
def sample_state() -> DeviceState:
    """Device on firmware 0.5.0 without OTA support."""
    return DeviceState(
        version_major=0,
        version_minor=5,
        version_patch=0,
        feature_flags=130,
        ip_address="192.168.1.123",
        ip_prefix=24,
        server_connected=True,
        active=False,
        keep_awake=False,
        model_id=1,
    )


@pytest.fixture
def ota_state() -> DeviceState:
    """Device on firmware 0.7.0 with OTA support."""
    return DeviceState(
        version_major=0,
        version_minor=7,
        version_patch=0,
        feature_flags=OTA_FLAGS,
        ip_address="10.0.0.5",
        ip_prefix=16,
        server_connected=True,
        active=True,
        keep_awake=False,
        model_id=1,
    )


@pytest.fixture
def sample_config() -> Dict[str, Any]:
    return {
        "ssid": "home",
        "password": "hunter22",
        "server": "192.168.1.10:24800",
        "screen_name": "kvm",
        "screen_width": 2560,
        "screen_height": 1440,
        "flip_wheel": False,
        "brightness": 30,
    }


@pytest.fixture
def descriptor() -> DeviceDescriptor:
    return DeviceDescriptor(bus=1, address=4, serial="88888888", model="m5atoms3-lite")


@pytest.fixture
def fake_link(ota_state: DeviceState, sample_config: Dict[str, Any]) -> FakeLink:
    return FakeLink(ota_state, sample_config)


@pytest.fixture
def handle(fake_link: FakeLink, descriptor: DeviceDescriptor) -> DeviceHandle:
    return DeviceHandle(fake_link, descriptor)


@pytest.fixture
def make_link() -> Callable[..., FakeLink]:
    return FakeLink


@pytest.fixture
def make_session() -> Callable[..., FakeSession]:
    return FakeSession


@pytest.fixture
def make_response() -> Callable[..., FakeResponse]:
    return FakeResponse


@pytest.fixture
def make_archive() -> Callable[[Dict[str, bytes], str], bytes]:
    """Build an in-memory tar.gz or zip archive from name -> content."""

    def _make(entries: Dict[str, bytes], fmt: str = "tar.gz") -> bytes:
        buf = io.BytesIO()
        if fmt == "zip":
            with zipfile.ZipFile(buf, "w") as zf:
                for name, data in entries.items():
                    zf.writestr(name, data)
        else:
            with tarfile.open(fileobj=buf, mode="w:gz") as tf:
                for name, data in entries.items():
                    info = tarfile.TarInfo(name)
                    info.size = len(data)
                    tf.addfile(info, io.BytesIO(data))
        return buf.getvalue()

    return _make


@pytest.fixture
def firmware_image() -> bytes:
    """2500 bytes: two full 1 KiB chunks and a partial one."""
    return bytes((i * 7) & 0xFF for i in range(2500))
