"""Core data models for devices, sessions, flash runs and API schemas."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DeviceError(Exception):
    """Base error for device acquisition, carrying the subsystem that failed."""

    retryable = False

    def __init__(self, message: str, tool: str = "pool") -> None:
        super().__init__(message)
        self.tool = tool


class CloudError(DeviceError):
    """A remote call to the device cloud failed (network error or bad status)."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, tool="testdroid")
        self.status_code = status_code


class InvalidFilterError(DeviceError):
    """The acquisition request is unusable before any remote call is made."""


class NoCandidateDeviceError(DeviceError):
    """No online, unlocked device matched the flashing criteria."""

    def __init__(self, message: str) -> None:
        super().__init__(message, tool="flash")


class FlashTimeoutError(DeviceError):
    """The flash run did not finish before its deadline."""

    def __init__(self, run_id: int, state: RunState, timeout: float) -> None:
        super().__init__(
            f"Flash run {run_id} timed out after {timeout:.0f}s (last state: {state.value})",
            tool="flash",
        )
        self.run_id = run_id
        self.state = state


class FlashJobFailedError(DeviceError):
    """The flash run ended but reported a failed outcome."""

    def __init__(self, message: str, run_id: int) -> None:
        super().__init__(message, tool="flash")
        self.run_id = run_id


class SessionUnavailableError(DeviceError):
    """Every candidate device exhausted its session-start tries."""

    retryable = True


class ProxyCreationError(DeviceError):
    """A session was obtained but its protocol proxies could not be created."""

    def __init__(self, message: str) -> None:
        super().__init__(message, tool="proxy")


# ---------------------------------------------------------------------------
# Remote records
# ---------------------------------------------------------------------------


class RunState(str, enum.Enum):
    """Lifecycle states of a remote flash run."""

    CREATED = "CREATED"
    WAITING = "WAITING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    ABORTED = "ABORTED"
    FAILED = "FAILED"

    @property
    def is_failure(self) -> bool:
        return self in (RunState.ABORTED, RunState.FAILED)


class RunResult(str, enum.Enum):
    """Outcome reported by a finished run."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class SelectionStrategy(str, enum.Enum):
    """How a device is picked among several eligible candidates."""

    FIRST = "first"
    RANDOM = "random"


class Device(BaseModel):
    """A handset in the device farm. Owned and mutated only by the remote side."""

    id: int
    display_name: str = ""
    online: bool = False
    locked: bool = False
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_available(self) -> bool:
        return self.online and not self.locked


class Session(BaseModel):
    """An exclusive lock on one device."""

    id: int
    device: Device


class FlashProject(BaseModel):
    """The remote job template used for flashing."""

    id: int
    name: str


class FlashRun(BaseModel):
    """A single execution of the flashing project."""

    id: int
    project_id: int
    state: RunState = RunState.CREATED
    result: RunResult | None = None
    created_at: datetime | None = None


class RunParameter(BaseModel):
    """A key/value parameter attached to a flash run."""

    id: int
    key: str
    value: str


class ProxyEndpoint(BaseModel):
    """A protocol proxy opened for a device session."""

    name: str
    port: int
    session_id: int


class DeviceProperty(BaseModel):
    """A raw property record as reported by the device cloud."""

    group_name: str
    display_value: str


class DeviceHandle(BaseModel):
    """Everything a caller needs to drive an acquired device."""

    session: Session
    device: Device
    proxies: dict[str, ProxyEndpoint]
    proxy_host: str = Field(description="Fixed address the proxy ports are exposed on")


# ---------------------------------------------------------------------------
# API request models
# ---------------------------------------------------------------------------


class AcquireDeviceRequest(BaseModel):
    """Body of POST /device."""

    filter: dict[str, Any] = Field(
        description="Capability requirements; must include 'build' and 'memory'",
    )
    retries: int | None = Field(default=None, ge=1, le=10)


class ReleaseDeviceRequest(BaseModel):
    """Body of POST /device/release."""

    session_id: int
