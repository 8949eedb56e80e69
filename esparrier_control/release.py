# esparrier_control/release.py
"""Firmware release lookup.

Releases come from the GitHub releases API as a newest-first list. A release
is usable for a device when it carries an asset named

    esparrier-<model>-v<major>.<minor>.<patch>.<tar.gz|tgz|zip>
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

import requests

from . import __version__
from .const import ARCHIVE_EXTENSIONS, HTTP_TIMEOUT, PRODUCT, RELEASES_URL
from .exception import EsparrierIOError, NoMatchingAsset, NoUpdateAvailable
from .models import Version, format_version, parse_version

_LOG = logging.getLogger("esparrier.release")

USER_AGENT = f"esparrierctl/{__version__}"


@dataclass(frozen=True)
class Asset:
    name: str
    url: str
    size: int


@dataclass(frozen=True)
class ReleaseInfo:
    tag: str
    version: Optional[Version]
    assets: List[Asset] = field(default_factory=list)
    prerelease: bool = False
    draft: bool = False

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "ReleaseInfo":
        tag = str(payload.get("tag_name") or "")
        try:
            version: Optional[Version] = parse_version(tag)
        except ValueError:
            version = None
        assets = [
            Asset(
                name=str(a.get("name") or ""),
                url=str(a.get("browser_download_url") or ""),
                size=int(a.get("size") or 0),
            )
            for a in payload.get("assets") or []
            if isinstance(a, dict)
        ]
        return cls(
            tag=tag,
            version=version,
            assets=assets,
            prerelease=bool(payload.get("prerelease")),
            draft=bool(payload.get("draft")),
        )


@dataclass(frozen=True)
class Selection:
    """A release/asset pair chosen for a model, with the asset's version."""

    release: ReleaseInfo
    asset: Asset
    version: Version


def asset_pattern(model: str) -> re.Pattern[str]:
    exts = "|".join(re.escape(e) for e in ARCHIVE_EXTENSIONS)
    return re.compile(
        rf"^{re.escape(PRODUCT)}-{re.escape(model)}-v?(\d+\.\d+\.\d+)\.(?:{exts})$"
    )


def match_asset(release: ReleaseInfo, model: str) -> Optional[tuple[Asset, Version]]:
    pattern = asset_pattern(model)
    for asset in release.assets:
        m = pattern.match(asset.name)
        if m:
            return asset, parse_version(m.group(1))
    return None


def select_release(
    releases: Iterable[ReleaseInfo], model: str, *, include_prerelease: bool = False
) -> Selection:
    """Return the newest release carrying an asset for ``model``."""
    for release in releases:
        if release.draft or (release.prerelease and not include_prerelease):
            continue
        found = match_asset(release, model)
        if found:
            asset, version = found
            _LOG.debug("Selected %s from release %s", asset.name, release.tag)
            return Selection(release=release, asset=asset, version=version)
    raise NoMatchingAsset(f"No firmware for model '{model}' in the release feed")


def check_update(current: Version, target: Version, *, force: bool = False) -> None:
    """Raise NoUpdateAvailable unless target > current or the update is forced."""
    if force or target > current:
        return
    raise NoUpdateAvailable(
        f"Device runs {format_version(current)}, latest is {format_version(target)}"
    )


def fetch_releases(
    session: Optional[requests.Session] = None,
    url: str = RELEASES_URL,
    timeout: float = HTTP_TIMEOUT,
) -> List[ReleaseInfo]:
    """Fetch the release list (newest first) from the release feed."""
    if session is None:
        with requests.Session() as http:
            return fetch_releases(http, url, timeout)
    http = session
    _LOG.debug("Fetching releases from %s", url)
    try:
        response = http.get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "application/vnd.github+json"},
            timeout=timeout,
        )
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as e:
        raise EsparrierIOError(f"Failed to fetch releases: {e}") from e
    except ValueError as e:
        raise EsparrierIOError(f"Unexpected response from release feed: {e}") from e
    if isinstance(payload, dict):
        # /releases/latest returns a single object
        payload = [payload]
    if not isinstance(payload, list):
        raise EsparrierIOError("Unexpected response from release feed")
    return [ReleaseInfo.from_api(p) for p in payload if isinstance(p, dict)]


__all__ = [
    "Asset",
    "ReleaseInfo",
    "Selection",
    "USER_AGENT",
    "asset_pattern",
    "match_asset",
    "select_release",
    "check_update",
    "fetch_releases",
]
