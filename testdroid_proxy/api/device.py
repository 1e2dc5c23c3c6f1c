"""API routes for listing, acquiring and releasing devices."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from testdroid_proxy.models import (
    AcquireDeviceRequest,
    CloudError,
    DeviceError,
    DeviceHandle,
    FlashJobFailedError,
    FlashTimeoutError,
    InvalidFilterError,
    NoCandidateDeviceError,
    ProxyCreationError,
    ReleaseDeviceRequest,
    SessionUnavailableError,
)

router = APIRouter(tags=["device"])
logger = logging.getLogger("testdroid-proxy.api")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_pool(request: Request):
    """Get the DevicePool from app state."""
    pool = request.app.state.device_pool
    if pool is None:
        raise HTTPException(status_code=503, detail="Device pool not initialized")
    return pool


def _handle_device_error(e: DeviceError) -> HTTPException:
    """Map a DeviceError to an appropriate HTTPException."""
    msg = str(e)
    if isinstance(e, InvalidFilterError):
        return HTTPException(status_code=422, detail=msg)
    if isinstance(e, (SessionUnavailableError, NoCandidateDeviceError)):
        return HTTPException(status_code=503, detail=msg)
    if isinstance(e, FlashTimeoutError):
        return HTTPException(status_code=504, detail=msg)
    if isinstance(e, (FlashJobFailedError, ProxyCreationError, CloudError)):
        return HTTPException(status_code=502, detail=f"[{e.tool}] {msg}")
    return HTTPException(status_code=500, detail=f"[{e.tool}] {msg}")


async def _acquire(request: Request, filter: dict[str, Any], retries: int | None) -> dict:
    pool = _get_pool(request)
    config = request.app.state.config
    try:
        handle: DeviceHandle = await pool.acquire_device(
            filter, retries=retries or config.default_retries,
        )
    except DeviceError as e:
        logger.error("Device acquisition failed: %s", e)
        raise _handle_device_error(e)

    request.app.state.handles[handle.session.id] = handle
    return handle.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/devices")
async def list_devices(request: Request):
    """List every device in the cloud inventory."""
    pool = _get_pool(request)
    try:
        devices = await pool.get_devices()
    except DeviceError as e:
        raise _handle_device_error(e)
    return {
        "devices": [d.model_dump() for d in devices],
        "total": len(devices),
    }


@router.get("/devices/{device_id}/properties")
async def device_properties(request: Request, device_id: int):
    """Return a device's properties keyed by normalized group name."""
    pool = _get_pool(request)
    try:
        properties = await pool.get_device_properties(device_id)
    except DeviceError as e:
        raise _handle_device_error(e)
    return {"device_id": device_id, "properties": properties}


@router.post("/device")
async def acquire_device(request: Request, body: AcquireDeviceRequest):
    """Acquire a device matching the filter, flashing one if necessary.

    The request may stay open for the whole flash (up to ten minutes).
    Returns 422 for a filter without build/memory, 503 when no device could
    be locked, 504 when flashing timed out, 502 for other remote failures.
    """
    return await _acquire(request, body.filter, body.retries)


@router.get("/device")
async def acquire_device_by_query(
    request: Request,
    type: str = Query(...),
    buildUrl: str = Query(...),  # noqa: N803
    memory: str = Query(...),
    retries: int | None = Query(default=None, ge=1, le=10),
):
    """Query-string form of POST /device."""
    return await _acquire(request, {"type": type, "build": buildUrl, "memory": memory}, retries)


@router.post("/device/release")
async def release_device(request: Request, body: ReleaseDeviceRequest):
    """Release a device session acquired through this server."""
    pool = _get_pool(request)
    handles: dict[int, DeviceHandle] = request.app.state.handles
    handle = handles.get(body.session_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"No device session {body.session_id} to release")

    try:
        await pool.release_device(handle)
    except DeviceError as e:
        raise _handle_device_error(e)
    handles.pop(body.session_id, None)
    return {"status": "released", "session_id": body.session_id, "device_id": handle.device.id}
