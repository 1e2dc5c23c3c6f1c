"""Finding available devices and locking one of them into a session."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from testdroid_proxy.device.cloud import DeviceCloudClient
from testdroid_proxy.models import CloudError, Device, SelectionStrategy, Session

logger = logging.getLogger("testdroid-proxy.search")

SEARCH_ATTEMPTS = 5
SEARCH_DELAY = 2.0  # seconds between inventory queries
SESSION_TRIES = 5
SESSION_DELAY = 2.0  # seconds between session-start tries


def order_candidates(devices: list[Device], strategy: SelectionStrategy) -> list[Device]:
    """Return ``devices`` in the order they should be tried."""
    if strategy == SelectionStrategy.RANDOM:
        return random.sample(devices, len(devices))
    return list(devices)


async def find_online_devices(
    client: DeviceCloudClient,
    criteria: dict[str, Any],
    attempts: int = SEARCH_ATTEMPTS,
    delay: float = SEARCH_DELAY,
) -> list[Device]:
    """Poll the inventory until online, unlocked devices match ``criteria``.

    Returns an empty list once ``attempts`` queries came back without a
    usable device. A query error is retried like an empty result, except on
    the last attempt where it propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            devices = await client.query_devices(criteria)
        except CloudError as e:
            if attempt == attempts:
                raise
            logger.warning("Device query failed (attempt %d/%d): %s", attempt, attempts, e)
            devices = []

        available = [d for d in devices if d.is_available]
        if available:
            logger.debug(
                "Found %d available of %d matching devices for %s",
                len(available), len(devices), criteria,
            )
            return available

        if attempt < attempts:
            logger.debug(
                "No available device for %s, retrying in %.0fs (%d attempts left)",
                criteria, delay, attempts - attempt,
            )
            await asyncio.sleep(delay)

    return []


async def acquire_session(
    client: DeviceCloudClient,
    devices: list[Device],
    tries: int = SESSION_TRIES,
    delay: float = SESSION_DELAY,
    timeout: int | None = None,
    strategy: SelectionStrategy = SelectionStrategy.FIRST,
) -> Session | None:
    """Start an exclusive session on the first device that accepts one.

    A device that has just come online may refuse sessions for a short
    while, so each device gets ``tries`` attempts before moving on.
    """
    if not devices:
        return None

    for device in order_candidates(devices, strategy):
        for attempt in range(1, tries + 1):
            try:
                session = await client.start_session(device.id, timeout=timeout)
            except CloudError as e:
                logger.info(
                    "Could not start session on device %s (%d/%d): %s",
                    device.id, attempt, tries, e,
                )
                if attempt < tries:
                    await asyncio.sleep(delay)
                continue

            logger.info("Session %s started on device %s (%s)", session.id, device.id, device.display_name)
            return session

    logger.warning("No session available on any of %d candidate devices", len(devices))
    return None
