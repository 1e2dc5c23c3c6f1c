"""Driving the remote flashing project to completion."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from testdroid_proxy.device.cloud import DeviceCloudClient
from testdroid_proxy.device.search import order_candidates
from testdroid_proxy.models import (
    CloudError,
    Device,
    FlashJobFailedError,
    FlashRun,
    FlashTimeoutError,
    NoCandidateDeviceError,
    RunResult,
    RunState,
    SelectionStrategy,
)

logger = logging.getLogger("testdroid-proxy.flash")

FLASH_PROJECT = "flash-fxos"
BUILD_PARAMETER = "FLAME_ZIP_URL"
MEMORY_PARAMETER = "MEMORY"
FLASH_TIMEOUT = 10 * 60  # seconds, from run creation
POLL_INTERVAL = 2.0
RESERVED_KEYS = ("build", "memory")


def flash_criteria(filter: dict[str, Any]) -> dict[str, Any]:
    """Inventory criteria for picking a device to flash."""
    return {k: v for k, v in filter.items() if k not in RESERVED_KEYS}


class FlashOrchestrator:
    """Reimages a device with a build by running the flashing project on it.

    Each ``flash_device`` call creates its own run; nothing is shared
    between calls except the client and settings.
    """

    def __init__(
        self,
        client: DeviceCloudClient,
        project_name: str = FLASH_PROJECT,
        timeout: float = FLASH_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        strategy: SelectionStrategy = SelectionStrategy.FIRST,
    ):
        self.client = client
        self.project_name = project_name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.strategy = strategy

    async def flash_device(self, filter: dict[str, Any]) -> Device:
        """Flash ``filter['build']`` onto a device matching the rest of ``filter``.

        ``filter['build']`` must already be a signed URL; it is passed to the
        job verbatim. Returns the device the run executed on. The device is
        not guaranteed to be available yet when this returns.

        Raises:
            NoCandidateDeviceError: No online, unlocked device to flash
            FlashTimeoutError: The run did not finish within the deadline
            FlashJobFailedError: The run ended with a failed outcome
        """
        project = await self.client.get_or_create_project(self.project_name)
        run = await self.client.create_run(project)
        created = time.monotonic()

        # The template may carry parameters over from an earlier run
        for parameter in await self.client.get_run_parameters(run):
            await self.client.delete_run_parameter(run, parameter)
        await self.client.create_run_parameter(run, BUILD_PARAMETER, str(filter["build"]))
        await self.client.create_run_parameter(run, MEMORY_PARAMETER, str(filter["memory"]))

        criteria = flash_criteria(filter)
        devices = await self.client.query_devices(criteria)
        candidates = [d for d in devices if d.is_available]
        if not candidates:
            raise NoCandidateDeviceError(
                f"No online and unlocked device to flash matching {criteria}"
            )
        device = order_candidates(candidates, self.strategy)[0]

        run = await self.client.start_run(run, [device.id])
        logger.info(
            "Flash run %s started on device %s (%s), created at %s",
            run.id, device.id, device.display_name,
            run.created_at.isoformat() if run.created_at else "unknown",
        )

        run = await self._wait_for_finish(run, created)

        if run.result == RunResult.FAILED:
            raise FlashJobFailedError(
                f"Flash run {run.id} on device {device.id} finished with a failed result",
                run_id=run.id,
            )

        logger.info(
            "Flash run %s finished at %s. Duration: %.0f seconds.",
            run.id, datetime.now(timezone.utc).isoformat(), time.monotonic() - created,
        )
        return device

    async def _wait_for_finish(self, run: FlashRun, created: float) -> FlashRun:
        """Poll ``run`` until FINISHED, a failed state, or the deadline."""
        deadline = created + self.timeout
        while run.state != RunState.FINISHED:
            if run.state.is_failure:
                raise FlashJobFailedError(
                    f"Flash run {run.id} ended in state {run.state.value}", run_id=run.id
                )
            if time.monotonic() >= deadline:
                await self._abort(run)
                raise FlashTimeoutError(run.id, run.state, self.timeout)

            logger.debug("Flash run %s currently %s", run.id, run.state.value)
            await asyncio.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))
            try:
                run = await self.client.get_run(run)
            except CloudError as e:
                logger.warning("Could not fetch state of flash run %s: %s", run.id, e)
        return run

    async def _abort(self, run: FlashRun) -> None:
        try:
            await self.client.abort_run(run)
        except CloudError as e:
            logger.warning("Could not abort flash run %s: %s", run.id, e)
