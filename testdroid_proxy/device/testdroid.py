"""TestdroidClient: HTTP client for the Testdroid (Bitbar) cloud API.

Implements ``DeviceCloudClient`` over the v2 REST API. Authentication uses
the OAuth2 password grant; the token is fetched lazily and refreshed once
when the API answers 401. Every remote failure, including a response that
cannot be decoded or lacks a required field, surfaces as ``CloudError``.

Capability criteria map onto the API as follows:
- ``type`` matches the device display name (case-insensitive substring)
- every other key names a label group (``build`` -> "Build version") and the
  value names a label in it; a device must carry all requested labels
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import httpx

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

logger = logging.getLogger("testdroid-proxy.testdroid")

API_TIMEOUT = 30.0  # seconds
PROXY_TIMEOUT = 150.0  # proxy creation can take minutes
OAUTH_CLIENT_ID = "testdroid-cloud-api"
LABEL_GROUPS = {"build": "Build version"}
_DEVICE_FIELDS = {"id", "displayName", "online", "locked"}


@contextmanager
def _parsing(what: str) -> Iterator[None]:
    """Turn a response missing the fields we rely on into a CloudError."""
    try:
        yield
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CloudError(f"Malformed {what} response ({type(e).__name__}: {e})") from e


def _parse_device(data: dict[str, Any]) -> Device:
    with _parsing("device"):
        return Device(
            id=data["id"],
            display_name=data.get("displayName", ""),
            online=bool(data.get("online", False)),
            locked=bool(data.get("locked", False)),
            properties={
                k: v for k, v in data.items()
                if k not in _DEVICE_FIELDS and isinstance(v, (str, int, float, bool))
            },
        )


def _parse_run(data: dict[str, Any], project_id: int) -> FlashRun:
    with _parsing("run"):
        state = RunState(data.get("state", RunState.CREATED.value))
        result = None
        ratio = data.get("successRatio")
        if state == RunState.FINISHED and ratio is not None:
            result = RunResult.SUCCEEDED if ratio >= 1.0 else RunResult.FAILED
        created = data.get("createTime")
        return FlashRun(
            id=data["id"],
            project_id=project_id,
            state=state,
            result=result,
            created_at=datetime.fromtimestamp(created / 1000, tz=timezone.utc) if created else None,
        )


class TestdroidClient:
    """Speaks the Testdroid v2 API on behalf of one cloud user."""

    def __init__(
        self,
        cloud_url: str,
        username: str,
        password: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cloud_url = cloud_url.rstrip("/")
        self.username = username
        self._password = password
        self._token: str | None = None
        self._http = httpx.AsyncClient(
            base_url=self.cloud_url, timeout=API_TIMEOUT, transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _authenticate(self) -> str:
        try:
            resp = await self._http.post(
                "/oauth/token",
                data={
                    "client_id": OAUTH_CLIENT_ID,
                    "grant_type": "password",
                    "username": self.username,
                    "password": self._password,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CloudError(f"Testdroid authentication failed ({type(exc).__name__})")
        if resp.status_code != 200:
            raise CloudError(
                f"Testdroid authentication failed (status {resp.status_code})",
                status_code=resp.status_code,
            )
        with _parsing("token"):
            self._token = resp.json()["access_token"]
        logger.debug("Authenticated to %s as %s", self.cloud_url, self.username)
        return self._token

    async def _request(
        self, method: str, path: str, timeout: float | None = None, **kwargs,
    ) -> Any:
        """Call the API, converting transport, status and decoding errors to CloudError."""
        token = self._token or await self._authenticate()
        for attempt in range(2):
            try:
                resp = await self._http.request(
                    method, f"/api/v2{path}",
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=timeout or API_TIMEOUT,
                    **kwargs,
                )
            except httpx.HTTPError as exc:
                raise CloudError(f"{method} {path} failed ({type(exc).__name__}: {exc})")
            if resp.status_code == 401 and attempt == 0:
                token = await self._authenticate()
                continue
            break

        if resp.status_code >= 400:
            raise CloudError(
                f"{method} {path} failed (status {resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        with _parsing(f"{method} {path}"):
            return resp.json()

    async def _list(self, path: str, **params) -> list[dict[str, Any]]:
        body = await self._request("GET", path, params={"limit": 0, **params})
        with _parsing(path):
            return list(body.get("data", [])) if body else []

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    async def _find_label_id(self, group_name: str, value: str) -> int | None:
        groups = await self._list("/label-groups", search=group_name)
        with _parsing("label group"):
            group_ids = [g["id"] for g in groups if g.get("displayName") == group_name]
        if not group_ids:
            return None
        labels = await self._list(f"/label-groups/{group_ids[0]}/labels", search=value)
        with _parsing("label"):
            label_ids = [label["id"] for label in labels if label.get("displayName") == value]
        return label_ids[0] if label_ids else None

    async def query_devices(self, criteria: dict[str, Any]) -> list[Device]:
        name = criteria.get("type")
        label_ids: list[int] = []
        for key, value in criteria.items():
            if key == "type":
                continue
            label_id = await self._find_label_id(LABEL_GROUPS.get(key, key), str(value))
            if label_id is None:
                logger.debug("No label %r in group for %r, no device can match", value, key)
                return []
            label_ids.append(label_id)

        if label_ids:
            matching: dict[int, dict[str, Any]] | None = None
            for label_id in label_ids:
                listed = await self._list(f"/labels/{label_id}/devices")
                with _parsing("labelled devices"):
                    found = {d["id"]: d for d in listed}
                matching = found if matching is None else {
                    k: v for k, v in matching.items() if k in found
                }
            raw = list(matching.values()) if matching else []
        else:
            raw = await self._list("/devices")

        devices = [_parse_device(d) for d in raw]
        if name:
            devices = [d for d in devices if str(name).lower() in d.display_name.lower()]
        return devices

    async def get_device_properties(self, device_id: int) -> list[DeviceProperty]:
        records = await self._list(f"/devices/{device_id}/properties")
        with _parsing("device properties"):
            return [
                DeviceProperty(
                    group_name=p.get("propertyGroupName", ""),
                    display_value=p.get("displayName", ""),
                )
                for p in records
            ]

    # ------------------------------------------------------------------
    # Flash runs
    # ------------------------------------------------------------------

    async def get_or_create_project(self, name: str) -> FlashProject:
        projects = await self._list("/me/projects", search=name)
        with _parsing("project list"):
            for project in projects:
                if project.get("name") == name:
                    return FlashProject(id=project["id"], name=name)
        logger.info("Creating project %s", name)
        data = await self._request("POST", "/me/projects", json={"name": name, "type": "GENERIC"})
        with _parsing("project"):
            return FlashProject(id=data["id"], name=name)

    async def create_run(self, project: FlashProject) -> FlashRun:
        data = await self._request("POST", f"/me/projects/{project.id}/runs")
        return _parse_run(data, project.id)

    def _run_path(self, run: FlashRun) -> str:
        return f"/me/projects/{run.project_id}/runs/{run.id}"

    async def get_run_parameters(self, run: FlashRun) -> list[RunParameter]:
        records = await self._list(f"{self._run_path(run)}/parameters")
        with _parsing("run parameters"):
            return [
                RunParameter(id=p["id"], key=p["key"], value=str(p.get("value", "")))
                for p in records
            ]

    async def delete_run_parameter(self, run: FlashRun, parameter: RunParameter) -> None:
        await self._request("DELETE", f"{self._run_path(run)}/parameters/{parameter.id}")

    async def create_run_parameter(self, run: FlashRun, key: str, value: str) -> RunParameter:
        data = await self._request(
            "POST", f"{self._run_path(run)}/parameters", json={"key": key, "value": value},
        )
        with _parsing("run parameter"):
            return RunParameter(id=data["id"], key=data["key"], value=str(data.get("value", value)))

    async def start_run(self, run: FlashRun, device_ids: list[int]) -> FlashRun:
        data = await self._request(
            "POST", f"{self._run_path(run)}/start", data={"usedDeviceIds[]": device_ids},
        )
        return _parse_run(data, run.project_id)

    async def get_run(self, run: FlashRun) -> FlashRun:
        data = await self._request("GET", self._run_path(run))
        return _parse_run(data, run.project_id)

    async def abort_run(self, run: FlashRun) -> None:
        await self._request("POST", f"{self._run_path(run)}/abort")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(self, device_id: int, timeout: int | None = None) -> Session:
        body: dict[str, Any] = {"deviceModelId": device_id}
        if timeout:
            body["timeout"] = timeout
        data = await self._request("POST", "/me/device-sessions", json=body)
        with _parsing("device session"):
            return Session(id=data["id"], device=_parse_device(data["device"]))

    async def stop_session(self, session_id: int) -> None:
        await self._request("POST", f"/me/device-sessions/{session_id}/release")

    async def get_proxy(self, name: str, session_id: int) -> ProxyEndpoint:
        data = await self._request(
            "POST", "/proxy-plugin-sessions",
            json={"type": name, "sessionId": session_id},
            timeout=PROXY_TIMEOUT,
        )
        with _parsing(f"{name} proxy"):
            return ProxyEndpoint(name=name, port=int(data["port"]), session_id=session_id)
