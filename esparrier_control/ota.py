# esparrier_control/ota.py
"""
Esparrier OTA update pipeline.

The session is an explicit state value:

    Idle → Downloading → Extracting → Transferring → Verifying → Complete
                                                   ↘ Failed (from any non-terminal state)

A local image skips Downloading/Extracting. States only move forward.

Transfer protocol (all over the command channel):
  1. OtaBegin(size, crc32)    → device answers 'o' when ready for data
  2. OtaChunk(offset, crc32, data) for each 1 KiB slice, strictly in order;
     the device echoes the committed offset ('P'). A failed chunk is resent
     as-is up to OTA_CHUNK_ATTEMPTS times, then the whole session fails.
     Before a resend, answers that arrived late are drained; a late ack for
     the same offset counts as success. Acks for lower offsets are ignored.
  3. OtaEnd                   → device verifies the full image: 'C' on
     success (it then reboots by itself), an error frame otherwise.

Every run starts at offset 0. An interrupted transfer is left as-is; the
device firmware is responsible for recovering from a partial image.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import requests

from . import protocol
from .const import (
    DEFAULT_TIMEOUT,
    OTA_BEGIN_TIMEOUT,
    OTA_CHUNK_ATTEMPTS,
    OTA_CHUNK_SIZE,
    OTA_END_TIMEOUT,
    OTA_RETRY_BACKOFF,
)
from .device import DeviceHandle
from .exception import (
    DeviceError,
    DeviceTimeout,
    EsparrierError,
    FirmwareVerificationFailed,
    NoMatchingAsset,
    ProtocolError,
    Unsupported,
)
from .firmware import (
    FirmwarePackage,
    ProgressCallback,
    Source,
    download_asset,
    extract_firmware,
    load_local,
)
from .models import DeviceState, Version
from .release import ReleaseInfo, check_update, fetch_releases, select_release

_LOG = logging.getLogger("esparrier.ota")


class OtaState(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"


_FORWARD_ORDER = [
    OtaState.IDLE,
    OtaState.DOWNLOADING,
    OtaState.EXTRACTING,
    OtaState.TRANSFERRING,
    OtaState.VERIFYING,
    OtaState.COMPLETE,
]
TERMINAL_STATES = frozenset({OtaState.COMPLETE, OtaState.FAILED})


class InvalidTransition(ValueError):
    pass


@dataclass
class OtaSession:
    """State of one `ota` invocation. Never persisted."""

    current_version: Version
    model: Optional[str] = None
    target_version: Optional[Version] = None
    force: bool = False
    source: Source = Source.REMOTE
    state: OtaState = OtaState.IDLE
    total_bytes: int = 0
    bytes_transferred: int = 0
    chunks_sent: int = 0
    retries: int = 0
    error: Optional[EsparrierError] = None

    @classmethod
    def for_device(cls, state: DeviceState, *, force: bool, source: Source) -> "OtaSession":
        return cls(
            current_version=state.version,
            model=state.model_name,
            force=force,
            source=source,
        )

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: OtaState) -> None:
        if new_state is OtaState.FAILED:
            raise InvalidTransition("Use fail() to enter the failed state")
        if self.terminal:
            raise InvalidTransition(f"Session already {self.state.value}")
        if _FORWARD_ORDER.index(new_state) <= _FORWARD_ORDER.index(self.state):
            raise InvalidTransition(f"Cannot go from {self.state.value} to {new_state.value}")
        _LOG.debug("OTA %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def fail(self, error: EsparrierError) -> None:
        if self.terminal:
            raise InvalidTransition(f"Session already {self.state.value}")
        _LOG.debug("OTA %s -> failed: %s", self.state.value, error)
        self.state = OtaState.FAILED
        self.error = error

    def record_progress(self, committed: int) -> None:
        value = min(committed, self.total_bytes)
        if value > self.bytes_transferred:
            self.bytes_transferred = value

    @contextmanager
    def guard(self) -> Iterator["OtaSession"]:
        """Move the session to Failed when an EsparrierError escapes the block."""
        try:
            yield self
        except EsparrierError as e:
            if not self.terminal:
                self.fail(e)
            raise


def require_ota_support(state: DeviceState) -> None:
    if not state.has_ota_support:
        raise Unsupported(f"OTA not supported by firmware {state.version_string}")


# ────────────────────────────────────────────────────────────────
# Chunked transfer
# ────────────────────────────────────────────────────────────────
class OtaTransfer:
    """Pushes a firmware image to the device chunk by chunk."""

    def __init__(
        self,
        handle: DeviceHandle,
        *,
        chunk_size: int = OTA_CHUNK_SIZE,
        attempts: int = OTA_CHUNK_ATTEMPTS,
        backoff: float = OTA_RETRY_BACKOFF,
        chunk_timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._handle = handle
        self.chunk_size = chunk_size
        self.attempts = attempts
        self.backoff = backoff
        self.chunk_timeout = chunk_timeout
        self._sleep = sleep

    def run(
        self,
        session: OtaSession,
        device_state: DeviceState,
        package: FirmwarePackage,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OtaSession:
        with session.guard():
            require_ota_support(device_state)
            session.total_bytes = package.size
            session.advance(OtaState.TRANSFERRING)
            self._begin(package)

            for offset in range(0, package.size, self.chunk_size):
                data = package.data[offset : offset + self.chunk_size]
                committed = self._send_chunk(session, offset, data)
                session.chunks_sent += 1
                session.record_progress(committed)
                if on_progress:
                    on_progress(session.bytes_transferred, session.total_bytes)

            session.advance(OtaState.VERIFYING)
            self._finish(session)
            session.advance(OtaState.COMPLETE)
        _LOG.info("OTA complete: %d bytes in %d chunks", session.total_bytes, session.chunks_sent)
        return session

    def _begin(self, package: FirmwarePackage) -> None:
        image_crc = protocol.crc32(package.data)
        _LOG.debug("OTA begin: size=%d crc32=0x%08x", package.size, image_crc)
        self._handle.send_request(
            protocol.OtaBegin(package.size, image_crc), timeout=OTA_BEGIN_TIMEOUT
        )

    def _send_chunk(self, session: OtaSession, offset: int, data: bytes) -> int:
        request = protocol.OtaChunk.for_data(offset, data)
        expected = offset + len(data)
        attempt = 1
        while True:
            try:
                return self._exchange_chunk(request, expected)
            except (DeviceTimeout, ProtocolError, DeviceError) as e:
                _LOG.warning(
                    "Chunk at offset %d failed (attempt %d/%d): %s",
                    offset,
                    attempt,
                    self.attempts,
                    e,
                )
                if attempt >= self.attempts:
                    raise
            attempt += 1
            session.retries += 1
            self._sleep(self.backoff)
            if self._acked_late(expected):
                return expected

    def _exchange_chunk(self, request: protocol.OtaChunk, expected: int) -> int:
        self._handle.send(request, timeout=self.chunk_timeout)
        while True:
            committed = protocol.decode_ota_offset(
                self._handle.receive(request, timeout=self.chunk_timeout)
            )
            if committed == expected:
                return committed
            if committed > expected:
                raise ProtocolError(f"Device committed offset {committed}, expected {expected}")
            _LOG.debug("Ignoring stale ack for offset %d", committed)

    def _acked_late(self, expected: int) -> bool:
        """Drain answers to earlier attempts; True when one of them committed ``expected``."""
        acked = False
        for frame in self._handle.drain():
            if frame.tag != protocol.RESP_OTA_PROGRESS:
                continue
            try:
                if protocol.decode_ota_offset(frame) == expected:
                    acked = True
            except ProtocolError:
                continue
        if acked:
            _LOG.debug("Late ack for offset %d, not resending", expected)
        return acked

    def _finish(self, session: OtaSession) -> None:
        if session.retries:
            self._handle.drain()
        try:
            self._handle.send_request(protocol.OtaEnd(), timeout=OTA_END_TIMEOUT)
        except DeviceError as e:
            raise FirmwareVerificationFailed(f"{e.message} (code {e.code!r})") from e


# ────────────────────────────────────────────────────────────────
# Full pipeline
# ────────────────────────────────────────────────────────────────
ReleaseFetcher = Callable[[], List[ReleaseInfo]]
Downloader = Callable[..., bytes]


def resolve_remote_package(
    session: OtaSession,
    *,
    fetch: ReleaseFetcher,
    download: Downloader,
    include_prerelease: bool = False,
    on_download: Optional[ProgressCallback] = None,
) -> FirmwarePackage:
    if session.model is None:
        raise NoMatchingAsset("Unknown device model, use --file to flash a local image")
    selection = select_release(fetch(), session.model, include_prerelease=include_prerelease)
    session.target_version = selection.version
    check_update(session.current_version, selection.version, force=session.force)

    session.advance(OtaState.DOWNLOADING)
    archive = download(selection.asset, on_download)

    session.advance(OtaState.EXTRACTING)
    return extract_firmware(archive, selection.asset.name)


def run_ota(
    handle: DeviceHandle,
    *,
    force: bool = False,
    file: Optional[Path] = None,
    include_prerelease: bool = False,
    http: Optional[requests.Session] = None,
    fetch: Optional[ReleaseFetcher] = None,
    download: Optional[Downloader] = None,
    transfer: Optional[OtaTransfer] = None,
    on_session: Optional[Callable[[OtaSession], None]] = None,
    on_download: Optional[ProgressCallback] = None,
    on_transfer: Optional[ProgressCallback] = None,
) -> OtaSession:
    """Resolve the firmware and flash it. Returns the finished session.

    Raises the error that moved the session to Failed.
    """
    device_state = handle.get_state()
    source = Source.LOCAL if file is not None else Source.REMOTE
    session = OtaSession.for_device(device_state, force=force, source=source)
    if fetch is None:
        fetch = lambda: fetch_releases(http)  # noqa: E731
    if download is None:
        download = lambda asset, cb: download_asset(asset, cb, session=http)  # noqa: E731

    with session.guard():
        require_ota_support(device_state)
        if file is not None:
            package = load_local(file)
        else:
            package = resolve_remote_package(
                session,
                fetch=fetch,
                download=download,
                include_prerelease=include_prerelease,
                on_download=on_download,
            )
        if on_session:
            on_session(session)
        (transfer or OtaTransfer(handle)).run(session, device_state, package, on_transfer)
    return session


__all__ = [
    "InvalidTransition",
    "OtaSession",
    "OtaState",
    "OtaTransfer",
    "TERMINAL_STATES",
    "require_ota_support",
    "resolve_remote_package",
    "run_ota",
]
