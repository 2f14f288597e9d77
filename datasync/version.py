"""Dataverse version detection and the features each version enables."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "5.14"
FILES_CLEANUP_SINCE = "5.13"
URL_SIGNING_SINCE = "5.14"
DIRECT_UPLOAD_SINCE = "5.14"
# Not yet in a released version; stays off until a version number replaces it.
SLASH_IN_PERMISSIONS_SINCE = "https://github.com/IQSS/dataverse/pull/8995"
NATIVE_API_DELETE_SINCE = "5.14"

REQUEST_TIMEOUT = 300.0

_INTEGER = re.compile(r"[+-]?\d+")


def _atoi(text: str) -> Optional[int]:
    return int(text) if _INTEGER.fullmatch(text) else None


def greater_or_equal(version: str, other: str) -> bool:
    """Compare dotted versions; a non-numeric part of ``other`` makes the result False."""
    for mine, theirs in zip(version.split("."), other.split(".")):
        n1 = _atoi(mine) or 0
        n2 = _atoi(theirs)
        if n2 is None or n1 < n2:
            return False
        if n1 > n2:
            return True
    return len(version) >= len(other)


@dataclass(frozen=True)
class FeatureFlags:
    """Which optional Dataverse features may be used."""

    version: str = DEFAULT_VERSION
    files_cleanup: bool = False
    url_signing: bool = False
    direct_upload: bool = False
    slash_in_permissions: bool = False
    native_api_delete: bool = False

    @classmethod
    def from_version(cls, version: str) -> "FeatureFlags":
        def enabled(since: str, feature: str) -> bool:
            on = greater_or_equal(version, since)
            if on:
                logger.info("version %s >= %s: %s feature is on", version, since, feature)
            return on

        return cls(
            version=version,
            files_cleanup=enabled(FILES_CLEANUP_SINCE, "files cleanup"),
            url_signing=enabled(URL_SIGNING_SINCE, "url signing"),
            direct_upload=enabled(DIRECT_UPLOAD_SINCE, "direct upload"),
            slash_in_permissions=enabled(SLASH_IN_PERMISSIONS_SINCE, "slash in permissions"),
            native_api_delete=enabled(NATIVE_API_DELETE_SINCE, "native API delete"),
        )


def fetch_version(server: str, session: Optional[Any] = None) -> str:
    """Ask the server for its version, falling back to the default on any failure."""
    http = session if session is not None else requests.Session()
    url = f"{server}/api/v1/info/version"
    try:
        response = http.get(url, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as error:
        logger.warning("error when getting version: %s", error)
        logger.warning("using default %s version", DEFAULT_VERSION)
        return DEFAULT_VERSION
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    if response.status_code != 200:
        logger.warning("error when getting version: %s", payload.get("message", ""))
    data = payload.get("data")
    version = data.get("version", "") if isinstance(data, dict) else ""
    logger.info("Dataverse version: %s", version)
    if not version:
        logger.info("using default %s version", DEFAULT_VERSION)
        return DEFAULT_VERSION
    return str(version)