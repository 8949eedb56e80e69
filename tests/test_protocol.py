"""Tests for the frame codec and the request/response transport."""

from __future__ import annotations

import json
import struct

import pytest

from esparrier_control import protocol
from esparrier_control.exception import DeviceError, DeviceTimeout, EsparrierIOError, ProtocolError
from esparrier_control.models import DeviceConfig


def test_encode_get_state_frame():
    """GetState is a header-only frame with an XOR checksum."""
    raw = protocol.encode_request(protocol.GetState())
    assert raw == bytes([0x73, 0x00, 0x00, 0x73])


def test_encode_keep_awake_frame():
    raw = protocol.encode_request(protocol.SetKeepAwake(True))
    assert raw[:4] == bytes([ord("k"), 0x01, 0x00, 0x01])
    assert raw[-1] == ord("k") ^ 0x01 ^ 0x01


def test_ota_chunk_payload_layout():
    """OtaChunk carries offset and CRC-32 little-endian, then the data."""
    chunk = protocol.OtaChunk.for_data(2048, b"\x01\x02\x03")
    payload = chunk.payload()
    offset, crc = struct.unpack_from("<II", payload)
    assert offset == 2048
    assert crc == protocol.crc32(b"\x01\x02\x03")
    assert payload[8:] == b"\x01\x02\x03"


def test_ota_begin_payload_layout():
    payload = protocol.OtaBegin(4096, 0xDEADBEEF).payload()
    assert payload == struct.pack("<II", 4096, 0xDEADBEEF)


def test_decode_frame_roundtrip_payload():
    frame = protocol.decode_frame(protocol.encode_frame(ord("r"), b'{"a":1}'))
    assert frame.tag_char == "r"
    assert frame.payload == b'{"a":1}'


def test_decode_frame_checksum_mismatch():
    raw = bytearray(protocol.encode_frame(ord("o")))
    raw[-1] ^= 0xFF
    with pytest.raises(ProtocolError):
        protocol.decode_frame(bytes(raw))


def test_decode_frame_too_short():
    with pytest.raises(ProtocolError):
        protocol.decode_frame(b"o\x00")


def test_decode_frame_length_mismatch():
    raw = protocol.encode_frame(ord("r"), b"abc")
    with pytest.raises(ProtocolError):
        protocol.decode_frame(raw[:-2])


def test_check_response_error_frame_maps_device_error():
    """An 'e' frame becomes a DeviceError carrying the raw code."""
    frame = protocol.Frame(protocol.RESP_ERROR, b"Oc")
    with pytest.raises(DeviceError) as exc:
        protocol.check_response(protocol.OtaEnd(), frame)
    assert exc.value.code == "Oc"
    assert exc.value.message == "CRC mismatch"


def test_check_response_unknown_error_code_passes_through():
    frame = protocol.Frame(protocol.RESP_ERROR, b"Zz")
    with pytest.raises(DeviceError) as exc:
        protocol.check_response(protocol.Commit(), frame)
    assert exc.value.code == "Zz"


def test_check_response_unexpected_tag():
    frame = protocol.Frame(protocol.RESP_OK)
    with pytest.raises(ProtocolError):
        protocol.check_response(protocol.GetState(), frame)


def test_decode_state_short_payload():
    with pytest.raises(ProtocolError):
        protocol.decode_state(protocol.Frame(protocol.RESP_STATE, b"\x00\x07"))


def test_decode_config_redacts_password():
    """A password sent back by the device never reaches the caller."""
    body = json.dumps(
        {"ssid": "home", "password": "secret", "server": "10.0.0.1:24800", "screen_name": "x"}
    ).encode()
    config = protocol.decode_config(protocol.Frame(protocol.RESP_CONFIG, body + b"\x00\x00"))
    assert config.password == ""
    assert "password" not in config.to_dict()


def test_decode_config_invalid_json():
    with pytest.raises(ProtocolError):
        protocol.decode_config(protocol.Frame(protocol.RESP_CONFIG, b"{not json"))


def test_decode_ota_offset():
    frame = protocol.Frame(protocol.RESP_OTA_PROGRESS, struct.pack("<I", 3072))
    assert protocol.decode_ota_offset(frame) == 3072
    with pytest.raises(ProtocolError):
        protocol.decode_ota_offset(protocol.Frame(protocol.RESP_OTA_PROGRESS, b"\x00"))


# ────────────────────────────────────────────────────────────────
# Transport
# ────────────────────────────────────────────────────────────────
def test_handle_reassembles_multi_packet_response(handle, fake_link, sample_config):
    """A config response larger than one USB packet is read in pieces."""
    fake_link.config = {**sample_config, "landing_url": "https://example.com/" + "x" * 100}
    config = handle.get_config()
    assert config.ssid == "home"
    assert config.landing_url.endswith("x" * 100)
    assert config.password == ""


def test_handle_drops_trailing_bytes(handle, fake_link):
    fake_link.faults["k"] = [protocol.encode_frame(protocol.RESP_OK) + b"\xff\xff"]
    handle.keep_awake(True)
    assert not fake_link.pending


def test_handle_silent_device_times_out(handle, fake_link):
    fake_link.faults["s"] = ["timeout"]
    with pytest.raises(DeviceTimeout):
        handle.get_state()


def test_handle_keep_awake_roundtrip(handle, fake_link):
    handle.keep_awake(True)
    assert handle.get_state().keep_awake is True
    handle.keep_awake(False)
    assert handle.get_state().keep_awake is False


def test_handle_set_config_does_not_commit(handle, fake_link, sample_config):
    handle.set_config(DeviceConfig.from_dict(sample_config))
    assert json.loads(fake_link.uploaded)["password"] == "hunter22"
    assert not fake_link.committed
    handle.commit_config()
    assert fake_link.committed


def test_handle_close_is_idempotent(handle, fake_link):
    handle.close()
    handle.close()
    assert fake_link.closed
    with pytest.raises(EsparrierIOError):
        handle.get_state()
