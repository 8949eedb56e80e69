# esparrier_control/device/base_device.py
"""USB transport for the Esparrier KVM.

Notes:
- One DeviceHandle owns one claimed vendor interface (class 0xFF, subclass
  0x0D, protocol 0x0A) and its bulk IN/OUT endpoints.
- Requests are strictly sequential: write one frame, read one frame.
- Frames longer than a USB packet arrive in several reads and are
  reassembled here using the length in the frame header.
"""

from __future__ import annotations

import errno
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import usb.core
import usb.util

from .. import protocol
from ..const import (
    DEFAULT_TIMEOUT,
    DRAIN_TIMEOUT,
    INTERFACE_CLASS,
    INTERFACE_PROTOCOL,
    INTERFACE_SUBCLASS,
    MODEL_NAMES,
    READ_BUFFER_SIZE,
    USB_PID,
    USB_VID,
)
from ..exception import (
    DeviceBusy,
    DeviceNotFound,
    DeviceTimeout,
    EsparrierError,
    EsparrierIOError,
    PermissionDenied,
    ProtocolError,
    Unsupported,
)
from ..models import DeviceConfig, DeviceState

_LOG = logging.getLogger("esparrier.transport")


def _bhex(b: bytes | bytearray) -> str:
    return bytes(b).hex(" ").upper()


def _timeout_ms(timeout: float) -> int:
    return max(1, int(timeout * 1000))


def map_usb_error(err: usb.core.USBError) -> EsparrierError:
    """Translate a pyusb error into the package taxonomy."""
    if isinstance(err, usb.core.USBTimeoutError) or err.errno == errno.ETIMEDOUT:
        return DeviceTimeout(f"USB transfer timed out: {err}")
    if err.errno == errno.EBUSY:
        return DeviceBusy()
    if err.errno in (errno.EACCES, errno.EPERM):
        return PermissionDenied()
    if err.errno in (errno.ENODEV, errno.ENOENT):
        return DeviceNotFound("Device disconnected")
    return EsparrierIOError(f"USB error: {err}")


# ────────────────────────────────────────────────────────────────
# Descriptor
# ────────────────────────────────────────────────────────────────
def infer_model(product: Optional[str]) -> Optional[str]:
    """Pick the longest known model tag contained in a USB product string."""
    if not product:
        return None
    text = product.lower()
    best: Optional[str] = None
    for name in MODEL_NAMES.values():
        if name in text and (best is None or len(name) > len(best)):
            best = name
    return best


@dataclass(frozen=True)
class DeviceDescriptor:
    bus: int
    address: int
    serial: Optional[str] = None
    model: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.bus}:{self.address}"

    @classmethod
    def from_usb(cls, dev: Any) -> "DeviceDescriptor":
        return cls(
            bus=int(dev.bus),
            address=int(dev.address),
            serial=_read_string(dev, "serial_number"),
            model=infer_model(_read_string(dev, "product")),
        )


def _read_string(dev: Any, attr: str) -> Optional[str]:
    """String descriptors need access rights; treat them as optional."""
    try:
        return getattr(dev, attr)
    except (usb.core.USBError, ValueError, NotImplementedError) as e:
        _LOG.debug("Cannot read %s of %s:%s: %s", attr, dev.bus, dev.address, e)
        return None


# ────────────────────────────────────────────────────────────────
# Link
# ────────────────────────────────────────────────────────────────
class Link(Protocol):
    def write(self, data: bytes, timeout: float) -> None:
        ...

    def read(self, timeout: float) -> bytes:
        ...

    def close(self) -> None:
        ...


class UsbLink:
    """Bulk endpoint pair of a claimed interface."""

    def __init__(self, dev: Any, interface_number: int, ep_in: Any, ep_out: Any) -> None:
        self._dev = dev
        self._interface_number = interface_number
        self._ep_in = ep_in
        self._ep_out = ep_out
        self._closed = False

    def write(self, data: bytes, timeout: float) -> None:
        try:
            written = self._ep_out.write(data, timeout=_timeout_ms(timeout))
        except usb.core.USBError as e:
            raise map_usb_error(e) from e
        if written != len(data):
            raise EsparrierIOError(f"Short write ({written}/{len(data)} bytes)")

    def read(self, timeout: float) -> bytes:
        try:
            data = self._ep_in.read(READ_BUFFER_SIZE, timeout=_timeout_ms(timeout))
        except usb.core.USBError as e:
            raise map_usb_error(e) from e
        return bytes(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            usb.util.release_interface(self._dev, self._interface_number)
        except usb.core.USBError as e:
            # Expected after reboot/commit: the device is already gone
            _LOG.debug("Release interface failed: %s", e)
        usb.util.dispose_resources(self._dev)


# ────────────────────────────────────────────────────────────────
# Handle
# ────────────────────────────────────────────────────────────────
class DeviceHandle:
    """Exclusive, open link to one device for the duration of a command."""

    def __init__(self, link: Link, descriptor: DeviceDescriptor) -> None:
        self._link = link
        self.descriptor = descriptor
        self._closed = False
        self._logger = logging.getLogger(f"esparrier.device.{descriptor.bus}-{descriptor.address}")

    def __enter__(self) -> "DeviceHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._logger.debug("%s: Closing", self.descriptor.id)
        self._link.close()

    # ---- request/response ----
    def send_request(
        self, request: protocol.Request, timeout: float = DEFAULT_TIMEOUT
    ) -> protocol.Frame:
        self.send(request, timeout)
        return self.receive(request, timeout)

    def send(self, request: protocol.Request, timeout: float = DEFAULT_TIMEOUT) -> None:
        if self._closed:
            raise EsparrierIOError("Device handle is closed")
        raw = protocol.encode_request(request)
        self._logger.debug(
            "%s: Sending %s (%d bytes) %s",
            self.descriptor.id,
            type(request).__name__,
            len(raw),
            _bhex(raw[:16]),
        )
        self._link.write(raw, timeout)

    def receive(
        self, request: protocol.Request, timeout: float = DEFAULT_TIMEOUT
    ) -> protocol.Frame:
        """Read the next frame and check it answers ``request``."""
        if self._closed:
            raise EsparrierIOError("Device handle is closed")
        frame = protocol.decode_frame(self._read_frame(timeout))
        self._logger.debug(
            "%s: Received %r (%d bytes payload)",
            self.descriptor.id,
            frame.tag_char,
            len(frame.payload),
        )
        return protocol.check_response(request, frame)

    def drain(self, timeout: float = DRAIN_TIMEOUT) -> List[protocol.Frame]:
        """Read and return whatever the device still has queued.

        Answers to a request that timed out on our side can arrive later and
        would otherwise be read as the answer to the next request.
        """
        frames: List[protocol.Frame] = []
        while not self._closed:
            try:
                raw = self._read_frame(timeout)
            except DeviceTimeout:
                break
            try:
                frame = protocol.decode_frame(raw)
            except ProtocolError as e:
                self._logger.debug("%s: Discarding garbage: %s", self.descriptor.id, e)
                continue
            self._logger.debug("%s: Drained stale %r frame", self.descriptor.id, frame.tag_char)
            frames.append(frame)
        return frames

    def _read_frame(self, timeout: float) -> bytes:
        deadline = time.monotonic() + timeout
        buf = bytearray()
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeviceTimeout(f"No response within {timeout:g}s")
            buf.extend(self._link.read(remaining))
            if len(buf) < protocol.HEADER_SIZE:
                continue
            size = protocol.frame_size(buf)
            if len(buf) >= size:
                if len(buf) > size:
                    self._logger.debug(
                        "%s: Dropping %d trailing bytes", self.descriptor.id, len(buf) - size
                    )
                return bytes(buf[:size])

    # ---- device commands ----
    def get_state(self) -> DeviceState:
        return protocol.decode_state(self.send_request(protocol.GetState()))

    def get_config(self) -> DeviceConfig:
        """Read the configuration; the password is always redacted."""
        return protocol.decode_config(self.send_request(protocol.GetConfig()))

    def set_config(self, config: DeviceConfig) -> None:
        """Upload a configuration. It only takes effect after commit_config()."""
        config.validate()
        self.send_request(protocol.SetConfig(config.to_json_bytes()))

    def commit_config(self) -> None:
        """Flash the uploaded configuration; the device restarts afterwards."""
        self.send_request(protocol.Commit())

    def reboot(self) -> None:
        self.send_request(protocol.Reboot())

    def keep_awake(self, enable: bool) -> None:
        self.send_request(protocol.SetKeepAwake(enable))


# ────────────────────────────────────────────────────────────────
# Open
# ────────────────────────────────────────────────────────────────
def _is_in(ep: Any) -> bool:
    return usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_IN


def _is_out(ep: Any) -> bool:
    return usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_OUT


def open_handle(
    descriptor: DeviceDescriptor, *, vid: int = USB_VID, pid: int = USB_PID
) -> DeviceHandle:
    """Open and claim the command interface of a discovered device.

    On any failure after the device was found, the interface is released and
    the pyusb resources are disposed before the error propagates.
    """
    try:
        dev = usb.core.find(
            idVendor=vid,
            idProduct=pid,
            custom_match=lambda d: d.bus == descriptor.bus and d.address == descriptor.address,
        )
    except usb.core.NoBackendError as e:
        raise EsparrierIOError(f"No USB backend available: {e}") from e
    if dev is None:
        raise DeviceNotFound(f"Device {descriptor.id} disappeared")

    link: Optional[UsbLink] = None
    try:
        try:
            cfg = dev.get_active_configuration()
        except usb.core.USBError as e:
            raise map_usb_error(e) from e
        intf = usb.util.find_descriptor(
            cfg,
            bInterfaceClass=INTERFACE_CLASS,
            bInterfaceSubClass=INTERFACE_SUBCLASS,
            bInterfaceProtocol=INTERFACE_PROTOCOL,
        )
        if intf is None:
            raise Unsupported(f"Device {descriptor.id} has no command interface")

        try:
            usb.util.claim_interface(dev, intf.bInterfaceNumber)
        except usb.core.USBError as e:
            err = map_usb_error(e)
            if isinstance(err, EsparrierIOError):
                err = DeviceBusy(f"Cannot claim interface: {e}")
            raise err from e

        ep_in = usb.util.find_descriptor(intf, custom_match=_is_in)
        ep_out = usb.util.find_descriptor(intf, custom_match=_is_out)
        link = UsbLink(dev, intf.bInterfaceNumber, ep_in, ep_out)
        if ep_in is None or ep_out is None:
            raise ProtocolError(f"Device {descriptor.id} is missing bulk endpoints")
    except Exception:
        if link is not None:
            link.close()
        else:
            usb.util.dispose_resources(dev)
        raise
    _LOG.debug("Opened device %s (interface %d)", descriptor.id, intf.bInterfaceNumber)
    return DeviceHandle(link, descriptor)


__all__ = [
    "DeviceDescriptor",
    "DeviceHandle",
    "Link",
    "UsbLink",
    "infer_model",
    "map_usb_error",
    "open_handle",
]
