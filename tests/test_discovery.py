"""Tests for device discovery, selection and scoped opening."""

from __future__ import annotations

import errno
from unittest.mock import MagicMock, patch

import pytest
import usb.core

from esparrier_control.device import (
    DeviceDescriptor,
    DeviceHandle,
    discover,
    open_device,
    select_device,
    wait_for_device,
)
from esparrier_control.device.base_device import UsbLink, infer_model, map_usb_error, open_handle
from esparrier_control.exception import (
    AmbiguousDevice,
    DeviceBusy,
    DeviceNotFound,
    DeviceTimeout,
    EsparrierIOError,
    PermissionDenied,
    ProtocolError,
    Unsupported,
)

DEV_A = DeviceDescriptor(bus=1, address=4)
DEV_B = DeviceDescriptor(bus=2, address=7)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_select_device_none():
    with pytest.raises(DeviceNotFound):
        select_device([])


def test_select_device_ambiguous():
    """Two devices and no selector is an error listing both ids."""
    with pytest.raises(AmbiguousDevice) as exc:
        select_device([DEV_A, DEV_B])
    assert "1:4" in str(exc.value)
    assert "2:7" in str(exc.value)


def test_select_device_by_bus_and_address():
    assert select_device([DEV_A, DEV_B], bus=2) == DEV_B
    assert select_device([DEV_A, DEV_B], address=4) == DEV_A
    with pytest.raises(DeviceNotFound):
        select_device([DEV_A, DEV_B], bus=1, address=7)


def test_wait_for_device_times_out():
    clock = FakeClock()
    with pytest.raises(DeviceTimeout):
        wait_for_device(
            2.0, discover_fn=lambda vid, pid: [], sleep=clock.sleep, clock=clock
        )
    assert clock.now == pytest.approx(2.0)
    assert all(s <= 0.5 for s in clock.sleeps)


def test_wait_for_device_returns_when_connected():
    clock = FakeClock()
    answers = [[], [], [DEV_A]]
    found = wait_for_device(
        10.0, discover_fn=lambda vid, pid: answers.pop(0), sleep=clock.sleep, clock=clock
    )
    assert found == [DEV_A]
    assert len(clock.sleeps) == 2


def test_wait_for_device_without_timeout_keeps_polling():
    clock = FakeClock()
    answers = [[]] * 500 + [[DEV_B]]
    found = wait_for_device(
        None, discover_fn=lambda vid, pid: answers.pop(0), sleep=clock.sleep, clock=clock
    )
    assert found == [DEV_B]


def test_wait_for_device_honours_selector():
    clock = FakeClock()
    with pytest.raises(DeviceTimeout):
        wait_for_device(
            1.0, bus=9, discover_fn=lambda vid, pid: [DEV_A], sleep=clock.sleep, clock=clock
        )


def test_open_device_closes_handle_on_error(fake_link):
    """The handle is released even when the command body fails."""
    opener = MagicMock(side_effect=lambda d, vid, pid: DeviceHandle(fake_link, d))
    with pytest.raises(RuntimeError):
        with open_device(discover_fn=lambda vid, pid: [DEV_A], opener=opener) as handle:
            assert handle.descriptor == DEV_A
            raise RuntimeError("boom")
    assert fake_link.closed


def test_open_device_not_found_never_opens():
    opener = MagicMock()
    with pytest.raises(DeviceNotFound):
        with open_device(discover_fn=lambda vid, pid: [], opener=opener):
            pass
    opener.assert_not_called()


def test_open_device_waits(fake_link):
    answers = [[], [DEV_A]]
    opener = MagicMock(side_effect=lambda d, vid, pid: DeviceHandle(fake_link, d))
    with open_device(
        wait=True,
        wait_timeout=5.0,
        discover_fn=lambda vid, pid: answers.pop(0),
        opener=opener,
    ) as handle:
        assert handle.descriptor == DEV_A
    assert fake_link.closed


def test_discover_reads_usb_descriptors():
    dev = MagicMock(bus=3, address=12, serial_number="ABC", product="Esparrier KVM m5atoms3-lite")
    with patch("esparrier_control.device.usb.core.find", return_value=iter([dev])) as find:
        found = discover(0x0D0A, 0xC0DE)
    find.assert_called_once_with(find_all=True, idVendor=0x0D0A, idProduct=0xC0DE)
    assert found == [DeviceDescriptor(3, 12, "ABC", "m5atoms3-lite")]


def test_discover_without_backend():
    with patch(
        "esparrier_control.device.usb.core.find", side_effect=usb.core.NoBackendError("none")
    ):
        with pytest.raises(EsparrierIOError):
            discover()


def test_infer_model_prefers_longest_match():
    assert infer_model("Esparrier KVM (m5atoms3-lite)") == "m5atoms3-lite"
    assert infer_model("Esparrier KVM m5atoms3") == "m5atoms3"
    assert infer_model("something else") is None
    assert infer_model(None) is None


@pytest.mark.parametrize(
    "err_no, expected",
    [
        (errno.EBUSY, DeviceBusy),
        (errno.EACCES, PermissionDenied),
        (errno.ENODEV, DeviceNotFound),
        (errno.ETIMEDOUT, DeviceTimeout),
        (errno.EIO, EsparrierIOError),
    ],
)
def test_map_usb_error(err_no, expected):
    err = usb.core.USBError("failed", errno=err_no)
    assert isinstance(map_usb_error(err), expected)


# ────────────────────────────────────────────────────────────────
# open_handle / UsbLink
# ────────────────────────────────────────────────────────────────
USB = "esparrier_control.device.base_device.usb"


@pytest.fixture
def usb_dev():
    """A pyusb device with one command interface and a bulk endpoint pair."""
    dev = MagicMock(bus=1, address=4)
    intf = MagicMock(bInterfaceNumber=2)
    ep_in, ep_out = MagicMock(name="ep_in"), MagicMock(name="ep_out")
    with patch(f"{USB}.core.find", return_value=dev), patch(
        f"{USB}.util.find_descriptor", side_effect=[intf, ep_in, ep_out]
    ) as find_descriptor, patch(f"{USB}.util.claim_interface") as claim, patch(
        f"{USB}.util.release_interface"
    ) as release, patch(f"{USB}.util.dispose_resources") as dispose:
        yield MagicMock(
            dev=dev,
            intf=intf,
            ep_in=ep_in,
            ep_out=ep_out,
            find_descriptor=find_descriptor,
            claim=claim,
            release=release,
            dispose=dispose,
        )


def test_open_handle_claims_interface(usb_dev):
    handle = open_handle(DEV_A)
    usb_dev.claim.assert_called_once_with(usb_dev.dev, 2)
    usb_dev.dispose.assert_not_called()
    handle.close()
    handle.close()
    usb_dev.release.assert_called_once_with(usb_dev.dev, 2)
    usb_dev.dispose.assert_called_once_with(usb_dev.dev)


def test_open_handle_device_gone():
    with patch(f"{USB}.core.find", return_value=None), patch(
        f"{USB}.util.dispose_resources"
    ) as dispose:
        with pytest.raises(DeviceNotFound):
            open_handle(DEV_A)
    dispose.assert_not_called()


@pytest.mark.parametrize(
    "err_no, expected",
    [(errno.EBUSY, DeviceBusy), (errno.EACCES, PermissionDenied), (errno.EIO, DeviceBusy)],
)
def test_open_handle_claim_failure_disposes(usb_dev, err_no, expected):
    usb_dev.claim.side_effect = usb.core.USBError("claim failed", errno=err_no)
    with pytest.raises(expected):
        open_handle(DEV_A)
    usb_dev.release.assert_not_called()
    usb_dev.dispose.assert_called_once_with(usb_dev.dev)


def test_open_handle_no_command_interface(usb_dev):
    usb_dev.find_descriptor.side_effect = [None]
    with pytest.raises(Unsupported):
        open_handle(DEV_A)
    usb_dev.claim.assert_not_called()
    usb_dev.dispose.assert_called_once_with(usb_dev.dev)


def test_open_handle_configuration_error(usb_dev):
    usb_dev.dev.get_active_configuration.side_effect = usb.core.USBError(
        "gone", errno=errno.ENODEV
    )
    with pytest.raises(DeviceNotFound):
        open_handle(DEV_A)
    usb_dev.dispose.assert_called_once_with(usb_dev.dev)


def test_open_handle_missing_endpoint_releases(usb_dev):
    usb_dev.find_descriptor.side_effect = [usb_dev.intf, usb_dev.ep_in, None]
    with pytest.raises(ProtocolError):
        open_handle(DEV_A)
    usb_dev.release.assert_called_once_with(usb_dev.dev, 2)
    usb_dev.dispose.assert_called_once_with(usb_dev.dev)


def test_usb_link_maps_errors(usb_dev):
    usb_dev.ep_out.write.return_value = 2
    usb_dev.ep_in.read.side_effect = usb.core.USBTimeoutError("timeout", errno=errno.ETIMEDOUT)
    link = UsbLink(usb_dev.dev, 2, usb_dev.ep_in, usb_dev.ep_out)
    with pytest.raises(EsparrierIOError):
        link.write(b"abc", 1.0)
    with pytest.raises(DeviceTimeout):
        link.read(1.0)


def test_usb_link_close_tolerates_release_error(usb_dev):
    """After reboot the device is gone; close still disposes exactly once."""
    usb_dev.release.side_effect = usb.core.USBError("gone", errno=errno.ENODEV)
    link = UsbLink(usb_dev.dev, 2, usb_dev.ep_in, usb_dev.ep_out)
    link.close()
    link.close()
    usb_dev.release.assert_called_once()
    usb_dev.dispose.assert_called_once_with(usb_dev.dev)
