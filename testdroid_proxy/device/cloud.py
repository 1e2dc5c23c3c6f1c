"""Capability interface for the remote device cloud.

The acquisition and flashing logic depends only on this protocol. The
production implementation is ``TestdroidClient``; tests use an in-memory fake.
"""

from __future__ import annotations

from typing import Any, Protocol

from testdroid_proxy.models import (
    Device,
    DeviceProperty,
    FlashProject,
    FlashRun,
    ProxyEndpoint,
    RunParameter,
    Session,
)


class DeviceCloudClient(Protocol):
    """Remote operations the device pool needs. Failures raise ``CloudError``."""

    # --- Inventory ---

    async def query_devices(self, criteria: dict[str, Any]) -> list[Device]:
        """Return devices matching every capability in ``criteria``."""
        ...

    async def get_device_properties(self, device_id: int) -> list[DeviceProperty]:
        """Return the raw property records of a device."""
        ...

    # --- Flash runs ---

    async def get_or_create_project(self, name: str) -> FlashProject:
        """Find the job template called ``name``, creating it if missing."""
        ...

    async def create_run(self, project: FlashProject) -> FlashRun:
        """Create a new, not yet started run of ``project``."""
        ...

    async def get_run_parameters(self, run: FlashRun) -> list[RunParameter]:
        ...

    async def delete_run_parameter(self, run: FlashRun, parameter: RunParameter) -> None:
        ...

    async def create_run_parameter(self, run: FlashRun, key: str, value: str) -> RunParameter:
        ...

    async def start_run(self, run: FlashRun, device_ids: list[int]) -> FlashRun:
        """Start ``run`` on the given devices."""
        ...

    async def get_run(self, run: FlashRun) -> FlashRun:
        """Fetch the current state of ``run``."""
        ...

    async def abort_run(self, run: FlashRun) -> None:
        ...

    # --- Sessions ---

    async def start_session(self, device_id: int, timeout: int | None = None) -> Session:
        """Lock a device into an exclusive session."""
        ...

    async def stop_session(self, session_id: int) -> None:
        ...

    async def get_proxy(self, name: str, session_id: int) -> ProxyEndpoint:
        """Open the ``name`` protocol proxy (e.g. 'adb') for a session."""
        ...
