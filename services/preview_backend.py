# services/preview_backend.py
"""
The narrow backend a preview's monitor and coordinator talk to.

- LocalPreviewBackend: in-process, calls SandboxLifecycleService directly
- HttpPreviewBackend:  calls the /api sandbox routes over HTTP (httpx)

Every transport failure is reported as liveness-negative or as a
``{success: False, error}`` result, never raised.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from db.service import ProjectRecord
from services.sandbox_lifecycle import SandboxLifecycleService
from services.settings import get_preview_settings

logger = logging.getLogger(__name__)


class PreviewBackend(ABC):
    @abstractmethod
    async def check_sandbox(self, sandbox_id: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def check_server(self, tunnel_url: str, sandbox_id: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def start_server(
        self, sandbox_id: str, project_id: str, user_id: str, force: bool = False
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def resume_container(self, project_id: str, user_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_project(self, project_id: str, user_id: str) -> Optional[ProjectRecord]:
        ...


class LocalPreviewBackend(PreviewBackend):
    """Same-process binding over the lifecycle service"""

    def __init__(self, lifecycle: SandboxLifecycleService):
        self.lifecycle = lifecycle

    async def check_sandbox(self, sandbox_id: Optional[str]) -> bool:
        result = await self.lifecycle.check_sandbox(sandbox_id)
        return bool(result.get("isAlive"))

    async def check_server(self, tunnel_url: str, sandbox_id: Optional[str]) -> bool:
        result = await self.lifecycle.check_server(tunnel_url, sandbox_id)
        return bool(result.get("isAlive"))

    async def start_server(
        self, sandbox_id: str, project_id: str, user_id: str, force: bool = False
    ) -> Dict[str, Any]:
        return await self.lifecycle.start_server(
            sandbox_id, project_id, user_id, force=force
        )

    async def resume_container(self, project_id: str, user_id: str) -> Dict[str, Any]:
        return await self.lifecycle.resume_container(project_id, user_id)

    async def get_project(self, project_id: str, user_id: str) -> Optional[ProjectRecord]:
        return await self.lifecycle.store.get_for_user(project_id, user_id)


class HttpPreviewBackend(PreviewBackend):
    """
    Binding over the HTTP routes.

    Request bodies use ``{sandboxId, projectId, userID}``; responses are
    ``{success, url?, ngrokUrl?, error?}`` or ``{isAlive}``.
    """

    HTTP_DEFAULT_TIMEOUT = 30.0
    HTTP_CONNECT_TIMEOUT = 5.0
    # launches poll for up to a minute before answering
    LAUNCH_TIMEOUT = 120.0

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or get_preview_settings().api_base_url).rstrip("/")
        self.http_client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(
                self.HTTP_DEFAULT_TIMEOUT, connect=self.HTTP_CONNECT_TIMEOUT
            ),
        )

    async def aclose(self):
        await self.http_client.aclose()

    async def _post(
        self, path: str, body: Dict[str, Any], timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        try:
            response = await self.http_client.post(
                path, json=body, timeout=timeout or self.HTTP_DEFAULT_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.warning(f"POST {path} failed: {e}")
            return {"success": False, "error": str(e)}

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if response.status_code >= 400:
            detail = data.get("detail") or data.get("error") or response.text
            logger.warning(f"POST {path} -> HTTP {response.status_code}: {detail}")
            return {**data, "success": False, "error": str(detail)}
        return data

    async def check_sandbox(self, sandbox_id: Optional[str]) -> bool:
        if not sandbox_id:
            return False
        data = await self._post("/api/check-sandbox", {"sandboxId": sandbox_id})
        return bool(data.get("isAlive"))

    async def check_server(self, tunnel_url: str, sandbox_id: Optional[str]) -> bool:
        data = await self._post(
            "/api/check-expo-server", {"url": tunnel_url, "sandboxId": sandbox_id}
        )
        return bool(data.get("isAlive"))

    async def start_server(
        self, sandbox_id: str, project_id: str, user_id: str, force: bool = False
    ) -> Dict[str, Any]:
        return await self._post(
            "/api/start-server",
            {
                "sandboxId": sandbox_id,
                "projectId": project_id,
                "userID": user_id,
                "force": force,
            },
            timeout=self.LAUNCH_TIMEOUT,
        )

    async def resume_container(self, project_id: str, user_id: str) -> Dict[str, Any]:
        return await self._post(
            "/api/resume-container",
            {"projectId": project_id, "userID": user_id},
            timeout=self.LAUNCH_TIMEOUT,
        )

    async def get_project(self, project_id: str, user_id: str) -> Optional[ProjectRecord]:
        data = await self._post(
            "/api/project-state", {"projectId": project_id, "userID": user_id}
        )
        if not data.get("success") or not data.get("project"):
            return None
        return ProjectRecord.from_dict(data["project"])
