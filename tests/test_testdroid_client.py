"""Tests for the Testdroid HTTP client against a mocked API."""

from __future__ import annotations

import json

import httpx
import pytest

from testdroid_proxy.device import testdroid
from testdroid_proxy.models import CloudError, FlashRun, RunResult, RunState

CLOUD = "https://cloud.example.com"

DEVICES = [
    {"id": 1, "displayName": "Flame 1", "online": True, "locked": False, "softwareVersion": "2.2"},
    {"id": 2, "displayName": "Flame 2", "online": True, "locked": True},
    {"id": 3, "displayName": "Keon", "online": False, "locked": False},
]


class FakeTestdroidAPI:
    """Routes requests to canned Testdroid v2 responses and records them."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.expire_next = False
        self.fail_with: int | None = None
        self.run_body: dict = {"id": 40, "state": "FINISHED", "successRatio": 0.0}
        self.overrides: dict[str, httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return self.overrides[path]

        if path == "/oauth/token":
            self.tokens_issued += 1
            return httpx.Response(200, json={"access_token": f"token-{self.tokens_issued}"})

        if self.expire_next:
            self.expire_next = False
            return httpx.Response(401, json={"message": "expired"})
        if self.fail_with:
            return httpx.Response(self.fail_with, text="upstream broke")

        params = request.url.params
        if path == "/api/v2/devices":
            return httpx.Response(200, json={"data": DEVICES})
        if path == "/api/v2/label-groups":
            if params["search"] == "Build version":
                return httpx.Response(200, json={"data": [{"id": 10, "displayName": "Build version"}]})
            return httpx.Response(200, json={"data": []})
        if path == "/api/v2/label-groups/10/labels":
            if params["search"] == "http://example/build.zip":
                return httpx.Response(200, json={"data": [{"id": 77, "displayName": params["search"]}]})
            return httpx.Response(200, json={"data": []})
        if path == "/api/v2/labels/77/devices":
            return httpx.Response(200, json={"data": DEVICES[:2]})
        if path == "/api/v2/devices/1/properties":
            return httpx.Response(200, json={"data": [
                {"propertyGroupName": "Build version", "displayName": "2.2"},
                {"propertyGroupName": "Memory", "displayName": "512"},
            ]})
        if path == "/api/v2/me/projects" and request.method == "GET":
            return httpx.Response(200, json={"data": [{"id": 5, "name": "flash-fxos"}]})
        if path == "/api/v2/me/projects" and request.method == "POST":
            return httpx.Response(201, json={"id": 6, **json.loads(request.content)})
        if path == "/api/v2/me/projects/5/runs" and request.method == "POST":
            return httpx.Response(201, json={"id": 40, "state": "CREATED", "createTime": 1_700_000_000_000})
        if path == "/api/v2/me/projects/5/runs/40/start":
            return httpx.Response(200, json={"id": 40, "state": "WAITING"})
        if path == "/api/v2/me/projects/5/runs/40":
            return httpx.Response(200, json=self.run_body)
        if path == "/api/v2/me/device-sessions":
            body = json.loads(request.content)
            device = next(d for d in DEVICES if d["id"] == body["deviceModelId"])
            return httpx.Response(201, json={"id": 900, "device": device})
        if path == "/api/v2/me/device-sessions/900/release":
            return httpx.Response(204)
        if path == "/api/v2/proxy-plugin-sessions":
            body = json.loads(request.content)
            return httpx.Response(201, json={"port": 15555 if body["type"] == "adb" else 15556})
        return httpx.Response(404, json={"message": f"no route {path}"})


@pytest.fixture
def api():
    return FakeTestdroidAPI()


@pytest.fixture
async def client(api):
    client = testdroid.TestdroidClient(
        CLOUD, "user", "pass", transport=httpx.MockTransport(api),
    )
    yield client
    await client.close()


class TestAuthentication:
    async def test_password_grant_then_bearer(self, client, api):
        await client.query_devices({})

        token_request, devices_request = api.requests
        form = dict(httpx.QueryParams(token_request.content.decode()))
        assert form["grant_type"] == "password"
        assert form["username"] == "user"
        assert devices_request.headers["Authorization"] == "Bearer token-1"

    async def test_token_refreshed_on_401(self, client, api):
        await client.query_devices({})
        api.expire_next = True

        devices = await client.query_devices({})

        assert len(devices) == 3
        assert api.tokens_issued == 2
        assert api.requests[-1].headers["Authorization"] == "Bearer token-2"

    async def test_server_error_becomes_cloud_error(self, client, api):
        api.fail_with = 503

        with pytest.raises(CloudError) as exc_info:
            await client.query_devices({})

        assert exc_info.value.status_code == 503
        assert exc_info.value.tool == "testdroid"

    async def test_transport_error_becomes_cloud_error(self):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = testdroid.TestdroidClient(CLOUD, "user", "pass", transport=httpx.MockTransport(broken))
        with pytest.raises(CloudError, match="authentication failed"):
            await client.query_devices({})
        await client.close()


class TestInventory:
    async def test_all_devices(self, client):
        devices = await client.query_devices({})

        assert [d.id for d in devices] == [1, 2, 3]
        assert devices[1].locked is True
        assert devices[0].properties == {"softwareVersion": "2.2"}

    async def test_type_matches_display_name(self, client):
        devices = await client.query_devices({"type": "flame"})
        assert [d.id for d in devices] == [1, 2]

    async def test_build_matches_label(self, client, api):
        devices = await client.query_devices({"type": "flame", "build": "http://example/build.zip"})

        assert [d.id for d in devices] == [1, 2]
        assert any(r.url.path == "/api/v2/labels/77/devices" for r in api.requests)

    async def test_unknown_label_matches_nothing(self, client):
        assert await client.query_devices({"build": "http://example/other.zip"}) == []

    async def test_unknown_label_group_matches_nothing(self, client):
        assert await client.query_devices({"chipset": "msm8210"}) == []

    async def test_device_properties(self, client):
        records = await client.get_device_properties(1)
        assert [(r.group_name, r.display_value) for r in records] == [
            ("Build version", "2.2"),
            ("Memory", "512"),
        ]


class TestRuns:
    async def test_existing_project_is_reused(self, client):
        project = await client.get_or_create_project("flash-fxos")
        assert project.id == 5

    async def test_missing_project_is_created(self, client, api):
        project = await client.get_or_create_project("flash-b2g")

        assert project.id == 6
        assert api.requests[-1].method == "POST"

    async def test_run_lifecycle(self, client, api):
        project = await client.get_or_create_project("flash-fxos")
        run = await client.create_run(project)

        assert run.id == 40
        assert run.state == RunState.CREATED
        assert run.created_at.year == 2023

        started = await client.start_run(run, [1])
        assert started.state == RunState.WAITING
        assert "usedDeviceIds%5B%5D=1" in api.requests[-1].content.decode()

        finished = await client.get_run(started)
        assert finished.state == RunState.FINISHED
        assert finished.result == RunResult.FAILED

    async def test_unfinished_run_has_no_result(self, client, api):
        api.run_body = {"id": 40, "state": "RUNNING", "successRatio": 1.0}

        polled = await client.get_run(FlashRun(id=40, project_id=5, state=RunState.WAITING))

        assert polled.state == RunState.RUNNING
        assert polled.result is None

    async def test_full_success_ratio_succeeds(self, client, api):
        api.run_body = {"id": 40, "state": "FINISHED", "successRatio": 1.0}

        polled = await client.get_run(FlashRun(id=40, project_id=5))

        assert polled.result == RunResult.SUCCEEDED


class TestSessions:
    async def test_start_and_stop(self, client, api):
        session = await client.start_session(1, timeout=600)

        assert session.id == 900
        assert session.device.id == 1
        assert json.loads(api.requests[-1].content) == {"deviceModelId": 1, "timeout": 600}

        await client.stop_session(session.id)
        assert api.requests[-1].url.path == "/api/v2/me/device-sessions/900/release"

    async def test_proxies(self, client):
        adb = await client.get_proxy("adb", 900)
        marionette = await client.get_proxy("marionette", 900)

        assert (adb.name, adb.port, adb.session_id) == ("adb", 15555, 900)
        assert marionette.port == 15556


class TestMalformedResponses:
    async def test_non_json_body(self, client, api):
        api.overrides["/api/v2/labels/77/devices"] = httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(CloudError, match="Malformed"):
            await client.query_devices({"build": "http://example/build.zip"})

    async def test_token_missing_from_grant(self, client, api):
        api.overrides["/oauth/token"] = httpx.Response(200, json={"error": "unexpected"})

        with pytest.raises(CloudError, match="token"):
            await client.query_devices({})

    async def test_unknown_run_state(self, client, api):
        api.run_body = {"id": 40, "state": "PAUSED"}

        with pytest.raises(CloudError, match="run"):
            await client.get_run(FlashRun(id=40, project_id=5))

    async def test_proxy_without_port(self, client, api):
        api.overrides["/api/v2/proxy-plugin-sessions"] = httpx.Response(200, json={"error": "no port"})

        with pytest.raises(CloudError, match="adb proxy"):
            await client.get_proxy("adb", 900)

    async def test_device_without_id(self, client, api):
        api.overrides["/api/v2/devices"] = httpx.Response(200, json={"data": [{"displayName": "Flame"}]})

        with pytest.raises(CloudError, match="device"):
            await client.query_devices({})
