# esparrier_control/device/__init__.py
"""Device discovery, selection and scoped opening.

- discover() enumerates matching USB devices without opening any of them.
- wait_for_device() polls discover() until a device shows up or time runs out.
- open_device() is the only way commands get a handle: it always closes it.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

import usb.core

from ..const import USB_PID, USB_VID, WAIT_POLL_INTERVAL
from ..exception import AmbiguousDevice, DeviceNotFound, DeviceTimeout, EsparrierIOError
from .base_device import DeviceDescriptor, DeviceHandle, open_handle

_LOG = logging.getLogger("esparrier.discovery")

DiscoverFn = Callable[[int, int], List[DeviceDescriptor]]
OpenFn = Callable[..., DeviceHandle]


def discover(vid: int = USB_VID, pid: int = USB_PID) -> List[DeviceDescriptor]:
    """Return every connected device with the given vendor/product id."""
    try:
        devices = list(usb.core.find(find_all=True, idVendor=vid, idProduct=pid))
    except usb.core.NoBackendError as e:
        raise EsparrierIOError(f"No USB backend available: {e}") from e
    except usb.core.USBError as e:
        _LOG.debug("Failed to list devices: %s", e)
        return []
    return [DeviceDescriptor.from_usb(d) for d in devices]


def _bus_matches(device_bus: int, wanted: Optional[int]) -> bool:
    return wanted is None or int(device_bus) == int(wanted)


def filter_devices(
    descriptors: List[DeviceDescriptor],
    bus: Optional[int] = None,
    address: Optional[int] = None,
) -> List[DeviceDescriptor]:
    return [
        d
        for d in descriptors
        if _bus_matches(d.bus, bus) and (address is None or d.address == address)
    ]


def select_device(
    descriptors: List[DeviceDescriptor],
    bus: Optional[int] = None,
    address: Optional[int] = None,
) -> DeviceDescriptor:
    """Pick exactly one descriptor, honouring the optional bus/address selectors."""
    matches = filter_devices(descriptors, bus, address)
    if not matches:
        raise DeviceNotFound()
    if len(matches) > 1:
        ids = ", ".join(d.id for d in matches)
        raise AmbiguousDevice(f"{len(matches)} devices found ({ids}), use --bus/--address to pick one")
    return matches[0]


def wait_for_device(
    timeout: Optional[float],
    *,
    vid: int = USB_VID,
    pid: int = USB_PID,
    bus: Optional[int] = None,
    address: Optional[int] = None,
    discover_fn: DiscoverFn = discover,
    interval: float = WAIT_POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> List[DeviceDescriptor]:
    """Poll until at least one matching device is connected.

    ``timeout=None`` waits until a device appears.
    """
    deadline = None if timeout is None else clock() + timeout
    _LOG.debug("Waiting for device (timeout=%s)", timeout)
    while True:
        found = filter_devices(discover_fn(vid, pid), bus, address)
        if found:
            return found
        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                raise DeviceTimeout(f"No device connected within {timeout:g}s")
            sleep(min(interval, remaining))
        else:
            sleep(interval)


@contextmanager
def open_device(
    *,
    wait: bool = False,
    wait_timeout: Optional[float] = None,
    bus: Optional[int] = None,
    address: Optional[int] = None,
    vid: int = USB_VID,
    pid: int = USB_PID,
    discover_fn: DiscoverFn = discover,
    opener: OpenFn = open_handle,
) -> Iterator[DeviceHandle]:
    """Discover, select and open one device; the handle is closed on every exit path."""
    if wait:
        descriptors = wait_for_device(
            wait_timeout, vid=vid, pid=pid, bus=bus, address=address, discover_fn=discover_fn
        )
    else:
        descriptors = discover_fn(vid, pid)
    descriptor = select_device(descriptors, bus, address)
    handle = opener(descriptor, vid=vid, pid=pid)
    try:
        yield handle
    finally:
        handle.close()


__all__ = [
    "DeviceDescriptor",
    "DeviceHandle",
    "discover",
    "filter_devices",
    "select_device",
    "wait_for_device",
    "open_device",
    "open_handle",
]
