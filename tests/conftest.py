"""Shared fixtures: an in-memory device cloud and a controllable clock."""

from __future__ import annotations

import re
from types import SimpleNamespace

import pytest

from testdroid_proxy.models import (
    CloudError,
    Device,
    DeviceProperty,
    FlashProject,
    FlashRun,
    ProxyEndpoint,
    RunParameter,
    RunResult,
    RunState,
    Session,
)


def strip_bewit(url: str) -> str:
    return re.sub(r"[?&]bewit=[^&]*", "", url)


class FakeDeviceCloud:
    """In-memory DeviceCloudClient.

    Devices match criteria when ``properties[key] == value`` for every key.
    Flash runs step through ``run_states`` on successive ``get_run`` calls;
    a successful finish labels the flashed device with the unsigned build.
    """

    def __init__(self, devices: list[Device] | None = None) -> None:
        self.devices: dict[int, Device] = {d.id: d for d in devices or []}
        self.calls: list[tuple] = []
        self.query_errors: list[Exception] = []
        self.session_failures: dict[int, int] = {}  # device id -> failures before success
        self.proxy_failures: set[str] = set()
        self.stale_parameters: list[RunParameter] = []
        self.run_states: list[RunState] = [RunState.RUNNING, RunState.FINISHED]
        self.run_result: RunResult | None = RunResult.SUCCEEDED
        self.properties: dict[int, list[DeviceProperty]] = {}
        self.parameters: dict[int, list[RunParameter]] = {}
        self.runs: list[FlashRun] = []
        self.started_runs: dict[int, list[int]] = {}
        self.aborted_runs: list[int] = []
        self.stopped_sessions: list[int] = []
        self._next_id = 100
        self._polls: dict[int, int] = {}

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    # --- Inventory ---

    async def query_devices(self, criteria):
        self.calls.append(("query_devices", dict(criteria)))
        if self.query_errors:
            raise self.query_errors.pop(0)
        return [
            d.model_copy(deep=True)
            for d in self.devices.values()
            if all(str(d.properties.get(k)) == str(v) for k, v in criteria.items())
        ]

    async def get_device_properties(self, device_id):
        self.calls.append(("get_device_properties", device_id))
        return list(self.properties.get(device_id, []))

    # --- Flash runs ---

    async def get_or_create_project(self, name):
        self.calls.append(("get_or_create_project", name))
        return FlashProject(id=1, name=name)

    async def create_run(self, project):
        self.calls.append(("create_run", project.id))
        run = FlashRun(id=self._id(), project_id=project.id)
        self.parameters[run.id] = [p.model_copy() for p in self.stale_parameters]
        self.runs.append(run)
        return run

    async def get_run_parameters(self, run):
        self.calls.append(("get_run_parameters", run.id))
        return list(self.parameters[run.id])

    async def delete_run_parameter(self, run, parameter):
        self.calls.append(("delete_run_parameter", run.id, parameter.id))
        self.parameters[run.id] = [p for p in self.parameters[run.id] if p.id != parameter.id]

    async def create_run_parameter(self, run, key, value):
        self.calls.append(("create_run_parameter", run.id, key, value))
        parameter = RunParameter(id=self._id(), key=key, value=value)
        self.parameters[run.id].append(parameter)
        return parameter

    async def start_run(self, run, device_ids):
        self.calls.append(("start_run", run.id, list(device_ids)))
        self.started_runs[run.id] = list(device_ids)
        return run.model_copy(update={"state": RunState.WAITING})

    async def get_run(self, run):
        self.calls.append(("get_run", run.id))
        index = self._polls.get(run.id, 0)
        self._polls[run.id] = index + 1
        state = self.run_states[min(index, len(self.run_states) - 1)]
        result = None
        if state == RunState.FINISHED:
            result = self.run_result
            if result != RunResult.FAILED:
                self._apply_flash(run)
        return run.model_copy(update={"state": state, "result": result})

    def _apply_flash(self, run: FlashRun) -> None:
        values = {p.key: p.value for p in self.parameters[run.id]}
        for device_id in self.started_runs.get(run.id, []):
            device = self.devices[device_id]
            device.properties["build"] = strip_bewit(values.get("FLAME_ZIP_URL", ""))
            device.online = True
            device.locked = False

    async def abort_run(self, run):
        self.calls.append(("abort_run", run.id))
        self.aborted_runs.append(run.id)

    # --- Sessions ---

    async def start_session(self, device_id, timeout=None):
        self.calls.append(("start_session", device_id))
        remaining = self.session_failures.get(device_id, 0)
        if remaining:
            self.session_failures[device_id] = remaining - 1
            raise CloudError(f"Device {device_id} is not ready", status_code=400)
        device = self.devices[device_id]
        device.locked = True
        return Session(id=self._id(), device=device.model_copy(deep=True))

    async def stop_session(self, session_id):
        self.calls.append(("stop_session", session_id))
        self.stopped_sessions.append(session_id)

    async def get_proxy(self, name, session_id):
        self.calls.append(("get_proxy", name, session_id))
        if name in self.proxy_failures:
            raise CloudError(f"{name} proxy unavailable", status_code=500)
        return ProxyEndpoint(name=name, port=15000 + self._id(), session_id=session_id)


class FakeClock:
    """Monotonic clock advanced only by awaited sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.on_sleep = None

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep()


@pytest.fixture
def clock(monkeypatch):
    """Replace sleeping and timekeeping in the acquisition modules."""
    fake = FakeClock()
    monkeypatch.setattr("testdroid_proxy.device.search.asyncio", SimpleNamespace(sleep=fake.sleep))
    monkeypatch.setattr("testdroid_proxy.device.flash.asyncio", SimpleNamespace(sleep=fake.sleep))
    monkeypatch.setattr("testdroid_proxy.device.flash.time", SimpleNamespace(monotonic=fake.monotonic))
    return fake


@pytest.fixture
def cloud():
    return FakeDeviceCloud()
