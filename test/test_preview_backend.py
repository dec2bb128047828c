"""
Tests for the PreviewBackend bindings: HTTP (httpx.MockTransport) and local.
"""

import json

import httpx
import pytest

from conftest import (
    FakeSandboxClient,
    FakeSandboxHandle,
    InMemoryProjectStore,
    make_service,
    seed_running,
)
from services.preview_backend import HttpPreviewBackend, LocalPreviewBackend


class ApiStub:
    """Answers the sandbox API routes and records request bodies"""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body))
        status, payload = self.responses.get(request.url.path, (404, {"detail": "Not Found"}))
        return httpx.Response(status, json=payload)


@pytest.fixture
def api() -> ApiStub:
    return ApiStub()


@pytest.fixture
def backend(api) -> HttpPreviewBackend:
    client = httpx.AsyncClient(
        base_url="http://api.test", transport=httpx.MockTransport(api)
    )
    return HttpPreviewBackend(base_url="http://api.test", client=client)


class TestHttpPreviewBackend:
    @pytest.mark.asyncio
    async def test_check_sandbox(self, api, backend):
        api.responses["/api/check-sandbox"] = (200, {"isAlive": True})

        assert await backend.check_sandbox("sbx-1") is True
        assert api.requests == [("/api/check-sandbox", {"sandboxId": "sbx-1"})]

    @pytest.mark.asyncio
    async def test_check_sandbox_without_id_skips_request(self, api, backend):
        assert await backend.check_sandbox(None) is False
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_check_server_body(self, api, backend):
        api.responses["/api/check-expo-server"] = (200, {"isAlive": False})

        assert await backend.check_server("https://sbx-1.ngrok.dev", "sbx-1") is False
        assert api.requests == [
            (
                "/api/check-expo-server",
                {"url": "https://sbx-1.ngrok.dev", "sandboxId": "sbx-1"},
            )
        ]

    @pytest.mark.asyncio
    async def test_start_server_body(self, api, backend):
        api.responses["/api/start-server"] = (
            200,
            {"success": True, "url": "https://u", "ngrokUrl": "https://t", "serverReady": True},
        )

        result = await backend.start_server("sbx-1", "proj-1", "user-1", force=True)

        assert result["success"] is True
        assert api.requests[0] == (
            "/api/start-server",
            {"sandboxId": "sbx-1", "projectId": "proj-1", "userID": "user-1", "force": True},
        )

    @pytest.mark.asyncio
    async def test_error_status_becomes_failure(self, api, backend):
        api.responses["/api/start-server"] = (
            500,
            {"success": False, "isAlive": False, "error": "Sandbox sbx-1 unreachable"},
        )

        result = await backend.start_server("sbx-1", "proj-1", "user-1")

        assert result["success"] is False
        assert result["isAlive"] is False
        assert result["error"] == "Sandbox sbx-1 unreachable"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = HttpPreviewBackend(
            base_url="http://api.test",
            client=httpx.AsyncClient(
                base_url="http://api.test", transport=httpx.MockTransport(handler)
            ),
        )

        result = await backend.resume_container("proj-1", "user-1")

        assert result["success"] is False
        assert "connection refused" in result["error"]
        assert await backend.check_sandbox("sbx-1") is False
        await backend.aclose()

    @pytest.mark.asyncio
    async def test_get_project(self, api, backend):
        api.responses["/api/project-state"] = (
            200,
            {
                "success": True,
                "project": {
                    "id": "proj-1",
                    "user_id": "user-1",
                    "sandbox_id": "sbx-1",
                    "tunnel_url": "https://sbx-1.ngrok.dev",
                    "started_at": "2026-01-01T12:00:00",
                },
            },
        )

        project = await backend.get_project("proj-1", "user-1")

        assert project.sandbox_id == "sbx-1"
        assert project.started_at.year == 2026
        assert api.requests[0][1] == {"projectId": "proj-1", "userID": "user-1"}

    @pytest.mark.asyncio
    async def test_get_missing_project(self, backend):
        assert await backend.get_project("missing", "user-1") is None


class TestLocalPreviewBackend:
    @pytest.mark.asyncio
    async def test_delegates_to_lifecycle(self):
        store = InMemoryProjectStore()
        seed_running(store)
        client = FakeSandboxClient()
        client.add(FakeSandboxHandle("sbx-live", server_up=True))
        backend = LocalPreviewBackend(make_service(client, store))

        assert await backend.check_sandbox("sbx-live") is True
        assert await backend.check_sandbox("sbx-gone") is False
        assert await backend.check_server(None, "sbx-live") is True
        assert (await backend.get_project("proj-1", "user-1")).sandbox_id == "sbx-live"
        assert await backend.get_project("proj-1", "user-2") is None

        result = await backend.start_server("sbx-live", "proj-1", "user-1")
        assert result["success"] is True
