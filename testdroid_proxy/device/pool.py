"""Device acquisition: find or flash a matching device and lock it for a caller."""

from __future__ import annotations

import logging
from typing import Any

from testdroid_proxy.device.cloud import DeviceCloudClient
from testdroid_proxy.device.flash import FlashOrchestrator
from testdroid_proxy.device.properties import normalize_properties
from testdroid_proxy.device.search import SEARCH_ATTEMPTS, acquire_session, find_online_devices
from testdroid_proxy.models import (
    CloudError,
    Device,
    DeviceError,
    DeviceHandle,
    InvalidFilterError,
    ProxyCreationError,
    ProxyEndpoint,
    SelectionStrategy,
    Session,
    SessionUnavailableError,
)
from testdroid_proxy.signing import BEWIT_TTL, sign_url

logger = logging.getLogger("testdroid-proxy.device-pool")

DEFAULT_RETRIES = 2
PROXY_NAMES = ("adb", "marionette")


def search_criteria(filter: dict[str, Any]) -> dict[str, Any]:
    """Inventory criteria for finding a device already running the build.

    ``memory`` only parameterizes flashing; ``build`` stays as the unsigned
    reference the devices are labelled with. The flashing job is handed the
    signed URL but labels the device it flashed with the URL minus its
    ``bewit`` parameter, which is what lets the post-flash search find it.
    """
    return {k: v for k, v in filter.items() if k != "memory"}


def validate_filter(filter: dict[str, Any], retries: int) -> None:
    """Reject an acquisition request before anything remote happens."""
    if not isinstance(retries, int) or isinstance(retries, bool) or retries < 1:
        raise InvalidFilterError(f"retries must be a positive integer, got {retries!r}")
    missing = [key for key in ("build", "memory") if not filter.get(key)]
    if missing:
        raise InvalidFilterError(f"Filter is missing required keys: {', '.join(missing)}")


class DevicePool:
    """Hands out exclusive access to devices in the cloud device farm.

    Stateless across calls: every ``acquire_device`` keeps its own filter,
    counters and timers, so concurrent acquisitions do not interfere beyond
    racing for the same remote devices, which the remote session lock
    arbitrates.
    """

    def __init__(
        self,
        client: DeviceCloudClient,
        client_id: str,
        access_token: str,
        proxy_host: str,
        flasher: FlashOrchestrator | None = None,
        session_timeout: int | None = None,
        strategy: SelectionStrategy = SelectionStrategy.FIRST,
    ):
        self.client = client
        self.client_id = client_id
        self.access_token = access_token
        self.proxy_host = proxy_host
        self.flasher = flasher or FlashOrchestrator(client, strategy=strategy)
        self.session_timeout = session_timeout
        self.strategy = strategy

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    async def get_devices(self) -> list[Device]:
        """Return the whole device inventory."""
        return await self.client.query_devices({})

    async def get_device_properties(self, device_id: int) -> dict[str, str | list[str]]:
        """Return a device's properties keyed by normalized group name."""
        records = await self.client.get_device_properties(device_id)
        return normalize_properties(records)

    async def acquire_device(
        self,
        filter: dict[str, Any],
        retries: int = DEFAULT_RETRIES,
    ) -> DeviceHandle:
        """Lock a device matching ``filter``, flashing one first if needed.

        Args:
            filter: Capability requirements, including 'build' (URL of the
                build to run) and 'memory' (memory size to flash with)
            retries: Number of search/flash rounds before giving up

        Returns:
            A handle holding the session and its adb/marionette proxies

        Raises:
            InvalidFilterError: Bad request, raised before any remote call
            SessionUnavailableError: No session could be started in any round
            ProxyCreationError: Proxies failed; the session was released
            DeviceError: Flashing or the post-flash search failed in the last round
        """
        validate_filter(filter, retries)
        build = filter["build"]
        logger.info("Attempting to get a device for %s", filter)

        criteria = search_criteria(filter)
        # Signed once; the bewit outlives every retry of this call
        flash_filter = dict(filter, build=sign_url(build, self.client_id, self.access_token, BEWIT_TTL))

        session = await self._find_or_flash(criteria, flash_filter, retries)
        if session is None:
            raise SessionUnavailableError(
                f"Could not start a device session for {filter} after {retries} attempts"
            )

        proxies = await self._open_proxies(session)
        handle = DeviceHandle(
            session=session,
            device=session.device,
            proxies=proxies,
            proxy_host=self.proxy_host,
        )
        logger.info(
            "Device %s acquired with session %s (adb port %d, marionette port %d)",
            handle.device.id, session.id, proxies["adb"].port, proxies["marionette"].port,
        )
        return handle

    async def release_device(self, handle: DeviceHandle) -> None:
        """Stop the session behind ``handle``, unlocking the device."""
        await self.client.stop_session(handle.session.id)
        logger.info("Device %s released (session %s)", handle.device.id, handle.session.id)

    # ----------------------------------------------------------------
    # Acquisition steps
    # ----------------------------------------------------------------

    async def _find_or_flash(
        self,
        criteria: dict[str, Any],
        flash_filter: dict[str, Any],
        retries: int,
    ) -> Session | None:
        for attempt in range(1, retries + 1):
            logger.debug("Acquisition attempt %d/%d for %s", attempt, retries, criteria)

            try:
                devices = await find_online_devices(self.client, criteria, attempts=1)
            except CloudError as e:
                logger.warning("Device search failed (attempt %d/%d): %s", attempt, retries, e)
                devices = []
            session = await self._start_session(devices)
            if session:
                return session

            try:
                await self.flasher.flash_device(flash_filter)
            except DeviceError as e:
                if attempt == retries:
                    raise
                logger.warning("Flashing failed (attempt %d/%d): %s", attempt, retries, e)
                continue

            # Flash completion does not mean the device accepts sessions yet
            try:
                devices = await find_online_devices(self.client, criteria, attempts=SEARCH_ATTEMPTS)
            except CloudError as e:
                if attempt == retries:
                    raise
                logger.warning("Post-flash search failed (attempt %d/%d): %s", attempt, retries, e)
                continue
            session = await self._start_session(devices)
            if session:
                return session

        return None

    async def _start_session(self, devices: list[Device]) -> Session | None:
        return await acquire_session(
            self.client,
            devices,
            timeout=self.session_timeout,
            strategy=self.strategy,
        )

    async def _open_proxies(self, session: Session) -> dict[str, ProxyEndpoint]:
        """Open both protocol proxies, or release the session and fail."""
        proxies: dict[str, ProxyEndpoint] = {}
        try:
            for name in PROXY_NAMES:
                proxies[name] = await self.client.get_proxy(name, session.id)
        except Exception as e:
            # The session is exclusive; it must not outlive a failed handle
            logger.error("Proxy creation failed for session %s: %s", session.id, e)
            try:
                await self.client.stop_session(session.id)
            except Exception as stop_error:
                logger.warning("Could not release session %s: %s", session.id, stop_error)
            raise ProxyCreationError(
                f"Could not create {name} proxy for session {session.id}: {e}"
            ) from e
        return proxies
