# esparrier_control/firmware.py
"""Firmware package resolution: a local image or a downloaded release archive."""

from __future__ import annotations

import io
import logging
import posixpath
import tarfile
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import requests

from .const import DOWNLOAD_CHUNK_SIZE, HTTP_TIMEOUT, MAX_FIRMWARE_SIZE, PRODUCT
from .exception import EsparrierIOError, MalformedPackage
from .release import USER_AGENT, Asset

_LOG = logging.getLogger("esparrier.firmware")

ProgressCallback = Callable[[int, int], None]


class Source(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


@dataclass(frozen=True)
class FirmwarePackage:
    data: bytes
    size: int
    source: Source
    name: str

    @classmethod
    def create(cls, data: bytes, source: Source, name: str) -> "FirmwarePackage":
        size = len(data)
        if size == 0:
            raise MalformedPackage(f"Firmware image '{name}' is empty")
        if size > MAX_FIRMWARE_SIZE:
            raise MalformedPackage(
                f"Firmware image '{name}' is {size} bytes (max {MAX_FIRMWARE_SIZE})"
            )
        return cls(data=bytes(data), size=size, source=source, name=name)


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    size: int


# ────────────────────────────────────────────────────────────────
# Local
# ────────────────────────────────────────────────────────────────
def load_local(path: Path) -> FirmwarePackage:
    """Read a firmware image as-is, no extraction."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise EsparrierIOError(f"Cannot read firmware file {path}: {e}") from e
    return FirmwarePackage.create(data, Source.LOCAL, Path(path).name)


# ────────────────────────────────────────────────────────────────
# Download
# ────────────────────────────────────────────────────────────────
def download_asset(
    asset: Asset,
    on_progress: Optional[ProgressCallback] = None,
    session: Optional[requests.Session] = None,
    timeout: float = HTTP_TIMEOUT,
) -> bytes:
    """Download an asset in full, reporting (received, declared_size)."""
    if session is None:
        with requests.Session() as http:
            return download_asset(asset, on_progress, http, timeout)
    http = session
    buf = bytearray()
    _LOG.debug("Downloading %s (%d bytes) from %s", asset.name, asset.size, asset.url)
    try:
        with http.get(
            asset.url,
            headers={"User-Agent": USER_AGENT, "Accept": "application/octet-stream"},
            stream=True,
            timeout=timeout,
        ) as response:
            response.raise_for_status()
            for block in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not block:
                    continue
                buf.extend(block)
                if on_progress:
                    on_progress(len(buf), asset.size)
    except requests.RequestException as e:
        raise EsparrierIOError(f"Failed to download {asset.name}: {e}") from e
    if asset.size and len(buf) != asset.size:
        raise EsparrierIOError(
            f"Downloaded {len(buf)} bytes of {asset.name}, expected {asset.size}"
        )
    return bytes(buf)


# ────────────────────────────────────────────────────────────────
# Archives
# ────────────────────────────────────────────────────────────────
def _is_zip(name: str) -> bool:
    return name.lower().endswith(".zip")


def list_entries(archive: bytes, archive_name: str) -> List[ArchiveEntry]:
    """Flat list of regular files in a tar.gz or zip archive."""
    try:
        if _is_zip(archive_name):
            with zipfile.ZipFile(io.BytesIO(archive)) as zf:
                return [
                    ArchiveEntry(i.filename, i.file_size) for i in zf.infolist() if not i.is_dir()
                ]
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tf:
            return [ArchiveEntry(m.name, m.size) for m in tf.getmembers() if m.isfile()]
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
        raise MalformedPackage(f"Cannot read archive {archive_name}: {e}") from e


def read_entry(archive: bytes, archive_name: str, entry_name: str) -> bytes:
    try:
        if _is_zip(archive_name):
            with zipfile.ZipFile(io.BytesIO(archive)) as zf:
                return zf.read(entry_name)
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tf:
            member = tf.extractfile(entry_name)
            if member is None:
                raise MalformedPackage(f"{entry_name} is not a regular file")
            return member.read()
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError, KeyError) as e:
        raise MalformedPackage(f"Cannot extract {entry_name} from {archive_name}: {e}") from e


def is_firmware_entry(name: str) -> bool:
    base = posixpath.basename(name)
    return base.startswith(f"{PRODUCT}-") and base.endswith(".bin")


def extract_firmware(archive: bytes, archive_name: str) -> FirmwarePackage:
    """Locate exactly one firmware binary in the archive and return it."""
    candidates = [e for e in list_entries(archive, archive_name) if is_firmware_entry(e.name)]
    if not candidates:
        raise MalformedPackage(f"No firmware binary in {archive_name}")
    if len(candidates) > 1:
        names = ", ".join(e.name for e in candidates)
        raise MalformedPackage(f"Multiple firmware binaries in {archive_name}: {names}")
    entry = candidates[0]
    if entry.size == 0:
        raise MalformedPackage(f"Firmware binary {entry.name} is empty")
    data = read_entry(archive, archive_name, entry.name)
    if len(data) != entry.size:
        raise MalformedPackage(
            f"Extracted {len(data)} bytes from {entry.name}, archive declares {entry.size}"
        )
    _LOG.debug("Extracted %s (%d bytes)", entry.name, entry.size)
    return FirmwarePackage.create(data, Source.REMOTE, posixpath.basename(entry.name))


__all__ = [
    "ArchiveEntry",
    "FirmwarePackage",
    "ProgressCallback",
    "Source",
    "download_asset",
    "extract_firmware",
    "is_firmware_entry",
    "list_entries",
    "load_local",
    "read_entry",
]
