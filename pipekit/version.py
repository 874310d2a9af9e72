"""Start-up check that the core services' major version matches the SDK's."""

from __future__ import annotations

import json
import time
import urllib.request
from typing import Any

from .constants import API_VERSION_ROUTE, CORE_METADATA_SERVICE_KEY
from .container import configuration_from, logging_client_from

CORE_PRE_RELEASE_VERSION = "master"
CORE_DEVELOPER_VERSION = "0.0.0"
VERSION_MAJOR_INDEX = 0

_REQUEST_TIMEOUT = 10.0


class StartupTimer:
    """Bounds how long start-up steps keep retrying."""

    def __init__(self, duration: float = 60.0, interval: float = 1.0) -> None:
        self.duration = duration
        self.interval = interval
        self._start = time.monotonic()

    def has_not_elapsed(self) -> bool:
        return time.monotonic() - self._start < self.duration

    def sleep_for_interval(self) -> None:
        time.sleep(self.interval)


def _fetch_core_version(url: str) -> str:
    """Return the version reported at ``url``; raise OSError or ValueError on failure."""
    with urllib.request.urlopen(url, timeout=_REQUEST_TIMEOUT) as response:
        body = response.read()
    data = json.loads(body.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("version response is not a JSON object")
    version = data.get("version", "")
    if not isinstance(version, str):
        raise ValueError("version in response is not a string")
    return version


class VersionValidator:
    """Checks that Core Metadata's major version matches the SDK's major version."""

    def __init__(self, skip_version_check: bool = False, sdk_version: str = "") -> None:
        self.skip_version_check = skip_version_check
        self.sdk_version = sdk_version

    def bootstrap_handler(self, startup_timer: StartupTimer, dic: Any) -> bool:
        """Return True if the versions are compatible or the check is skipped."""
        logger = logging_client_from(dic.get)
        config = configuration_from(dic.get)

        if self.skip_version_check:
            logger.info("Skipping core service version compatibility check")
            return True

        # The SDK version has the form "v{major}.{minor}.{patch}[-dev.{build}]".
        sdk_parts = self.sdk_version.split(".")
        if len(sdk_parts) < 3:
            logger.error("SDK version is malformed: version=%s", self.sdk_version)
            return False

        sdk_major = sdk_parts[VERSION_MAJOR_INDEX].replace("v", "", 1)
        if sdk_major == "0":
            logger.info(
                "Skipping version compatibility check for SDK Beta version or running in "
                "debugger: version=%s",
                self.sdk_version,
            )
            return True

        client = config.clients.get(CORE_METADATA_SERVICE_KEY)
        if client is None:
            logger.error(
                "Unable to get version of Core Metadata: "
                "Core Metadata missing from Clients configuration"
            )
            return False

        url = client.url() + API_VERSION_ROUTE
        core_version = ""
        error: Exception | None = None
        while startup_timer.has_not_elapsed():
            try:
                core_version = _fetch_core_version(url)
            except (OSError, ValueError) as err:
                error = err
                logger.warning("Unable to get version of Core Metadata: %s", err)
                startup_timer.sleep_for_interval()
                continue
            error = None
            break

        if error is not None:
            logger.error("Unable to get version of Core Metadata after retries: %s", error)
            return False

        if core_version == CORE_PRE_RELEASE_VERSION:
            logger.info(
                "Skipping version compatibility check for Core Services Pre-release "
                "version: version=%s",
                core_version,
            )
            return True

        if core_version == CORE_DEVELOPER_VERSION:
            logger.info(
                "Skipping version compatibility check for Core Services Developer "
                "version: version=%s",
                core_version,
            )
            return True

        core_parts = core_version.split(".")
        if len(core_parts) < 3:
            logger.error("Core Services version is malformed: version=%s", core_version)
            return False

        if core_parts[0] == sdk_major:
            logger.debug(
                "Confirmed Core Services version (%s) is compatible with SDK's version (%s)",
                core_version,
                self.sdk_version,
            )
            return True

        logger.error(
            "Core Services version (%s) is not compatible with SDK's version(%s)",
            core_version,
            self.sdk_version,
        )
        return False