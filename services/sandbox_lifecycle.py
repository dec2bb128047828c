# services/sandbox_lifecycle.py
"""
Sandbox Lifecycle Service
=========================

Server-side operations behind the sandbox API routes:

- create_container:  first sandbox for a project (or reuse a live one)
- resume_container:  reconnect to the recorded sandbox, or recreate it
- start_server:      (re)start the dev server on the recorded sandbox
- check_sandbox / check_server: liveness probes
- sandbox_status:    running / needs-resume estimate against the sandbox TTL
- destroy_container: kill the sandbox and mark the project destroyed

Recreation is guarded by a Redis lease per project and recorded with a
compare-and-swap on the project's sandbox id, so concurrent callers (two
tabs, two workers) converge on one sandbox.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from db.models import SandboxStatus, ServerStatus
from db.service import ProjectRecord, ProjectStateStore, project_store
from redis_client import LeaseLock
from sandbox_client import SandboxClient, SandboxHandle, get_sandbox_client
from services.dev_server_launcher import DevServerLauncher
from services.errors import SandboxUnreachable, TransientCommandError
from services.settings import PreviewSettings, get_preview_settings

logger = logging.getLogger(__name__)


def _failure(error: str, **extra) -> Dict[str, Any]:
    return {"success": False, "error": error, **extra}


class SandboxLifecycleService:
    """
    Args:
        client: E2B sandbox client
        store: project state store
        launcher: dev server launcher (shares the store)
        lease: cross-process recreation lock
        http_client: used by ``check_server``; created lazily when omitted
        sleep: awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        client: Optional[SandboxClient] = None,
        store: Optional[ProjectStateStore] = None,
        launcher: Optional[DevServerLauncher] = None,
        lease: Optional[LeaseLock] = None,
        settings: Optional[PreviewSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_preview_settings()
        self.client = client or get_sandbox_client()
        self.store = store or project_store
        self.launcher = launcher or DevServerLauncher(
            store=self.store, settings=self.settings
        )
        self.lease = lease or LeaseLock(prefix="preview:recreate")
        self._http = http_client
        self._sleep = sleep

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.settings.server_check_timeout, follow_redirects=True
            )
        return self._http

    async def close(self):
        await self.launcher.file_watcher.stop_all()
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _new_sandbox(self, project_id: str, user_id: str) -> SandboxHandle:
        return await self.client.create(
            template_id=self.settings.template_id,
            metadata={"project_id": project_id, "user_id": user_id},
            idle_timeout_ms=self.settings.sandbox_ttl_ms,
        )

    async def _connect_live(self, sandbox_id: Optional[str]) -> Optional[SandboxHandle]:
        if not sandbox_id:
            return None
        try:
            handle = await self.client.connect(sandbox_id)
        except SandboxUnreachable as e:
            logger.info(f"[{sandbox_id}] Not reachable: {e.message}")
            return None
        if not await handle.is_healthy():
            return None
        return handle

    async def _discard(self, handle: SandboxHandle):
        try:
            await handle.kill()
        except (SandboxUnreachable, TransientCommandError) as e:
            logger.warning(f"[{handle.sandbox_id}] Failed to kill discarded sandbox: {e}")

    def _converged(self, record: ProjectRecord, recreated: bool) -> Dict[str, Any]:
        return {
            "success": True,
            "sandboxId": record.sandbox_id,
            "url": record.sandbox_url,
            "ngrokUrl": record.tunnel_url,
            "serverReady": record.server_ready,
            "recreated": recreated,
        }

    async def _replace_sandbox(
        self, record: ProjectRecord, user_id: str
    ) -> Dict[str, Any]:
        """Create a sandbox and swap it in if nobody else did first"""
        project_id = record.id
        handle = await self._new_sandbox(project_id, user_id)
        swapped = await self.store.swap_incarnation(
            project_id, record.sandbox_id, handle.sandbox_id, datetime.now()
        )
        if not swapped:
            await self._discard(handle)
            winner = await self.store.get(project_id)
            logger.info(
                f"[{project_id}] Converged on concurrent sandbox {winner.sandbox_id}"
            )
            return self._converged(winner, recreated=True)

        launch = await self.launcher.launch(handle, project_id)
        return {**launch.to_dict(), "recreated": True}

    async def _await_concurrent_recreate(
        self, project_id: str, seen_sandbox_id: Optional[str]
    ) -> Dict[str, Any]:
        """Another holder owns the lease: wait for its sandbox to be recorded"""
        waited = 0.0
        while waited < self.settings.recreation_lease_ttl:
            await self._sleep(self.settings.launch_poll_interval)
            waited += self.settings.launch_poll_interval
            record = await self.store.get(project_id)
            if record is not None and record.sandbox_id != seen_sandbox_id:
                return self._converged(record, recreated=True)
        return _failure("Sandbox recreation already in progress")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def create_container(
        self, project_id: str, user_id: str, title: Optional[str] = None
    ) -> Dict[str, Any]:
        """Ensure the project has a sandbox with a dev server launched on it"""
        record = await self.store.ensure_project(project_id, user_id, title)
        if record.user_id != user_id:
            return _failure("Project not found")

        handle = None
        if record.status == SandboxStatus.ACTIVE.value:
            handle = await self._connect_live(record.sandbox_id)

        if handle is not None:
            if record.server_status == ServerStatus.RUNNING.value and record.sandbox_url:
                logger.info(f"[{project_id}] Reusing running sandbox {record.sandbox_id}")
                return self._converged(record, recreated=False)
            launch = await self.launcher.launch(handle, project_id)
            return {**launch.to_dict(), "recreated": False}

        try:
            return await self._replace_sandbox(record, user_id)
        except SandboxUnreachable as e:
            logger.error(f"❌ [{project_id}] Container creation failed: {e.message}")
            return _failure(e.message)

    async def resume_container(self, project_id: str, user_id: str) -> Dict[str, Any]:
        """
        Idempotent resume-or-recreate.

        Returns ``{success, sandboxId, url, ngrokUrl, serverReady, recreated}``
        or ``{success: False, error}``.
        """
        record = await self.store.get_for_user(project_id, user_id)
        if record is None:
            return _failure("Project not found")

        lease_name = project_id
        token = await self.lease.acquire(lease_name, self.settings.recreation_lease_ttl)
        if token is None:
            return await self._await_concurrent_recreate(project_id, record.sandbox_id)

        try:
            # re-read under the lease, a previous holder may have finished
            record = await self.store.get(project_id)
            handle = None
            if record.status != SandboxStatus.DESTROYED.value:
                handle = await self._connect_live(record.sandbox_id)

            if handle is not None:
                logger.info(f"[{project_id}] Resuming sandbox {handle.sandbox_id}")
                await self.store.update(
                    project_id,
                    status=SandboxStatus.ACTIVE,
                    started_at=datetime.now(),
                )
                launch = await self.launcher.launch(handle, project_id)
                return {**launch.to_dict(), "recreated": False}

            logger.info(f"[{project_id}] Sandbox {record.sandbox_id} gone, recreating")
            return await self._replace_sandbox(record, user_id)

        except SandboxUnreachable as e:
            logger.error(f"❌ [{project_id}] Resume failed: {e.message}")
            return _failure(e.message)
        finally:
            await self.lease.release(lease_name, token)

    async def start_server(
        self, sandbox_id: str, project_id: str, user_id: str, force: bool = False
    ) -> Dict[str, Any]:
        """
        Start the dev server on the project's recorded sandbox.

        Unless ``force`` is set, a server recorded as running that still
        answers is returned as-is.
        """
        record = await self.store.get_for_user(project_id, user_id)
        if record is None:
            return _failure("Project not found")
        if record.sandbox_id != sandbox_id:
            return _failure("Sandbox does not belong to project")
        if record.status != SandboxStatus.ACTIVE.value:
            return _failure(f"Sandbox is {record.status}", isAlive=False)

        try:
            handle = await self.client.connect(sandbox_id)
            if (
                not force
                and record.server_status == ServerStatus.RUNNING.value
                and record.sandbox_url
                and await self.launcher.probe(handle)
            ):
                logger.info(f"[{project_id}] Server already running")
                return self._converged(record, recreated=False)

            launch = await self.launcher.launch(handle, project_id)
            return launch.to_dict()
        except SandboxUnreachable as e:
            logger.warning(f"⚠️ [{project_id}] Start server failed: {e.message}")
            return _failure(e.message, isAlive=False)

    async def check_sandbox(self, sandbox_id: Optional[str]) -> Dict[str, Any]:
        if not sandbox_id:
            return {"isAlive": False, "reason": "No sandbox recorded"}
        alive = await self.client.is_alive(sandbox_id)
        if alive:
            return {"isAlive": True}
        return {"isAlive": False, "reason": "Sandbox not found or not responding"}

    async def check_server(
        self, url: Optional[str], sandbox_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Is the dev server answering? HTTP probe of the public/tunnel URL first,
        then a direct port probe inside the sandbox.
        """
        if url:
            try:
                response = await self._http_client().get(url)
                tunnel_error = response.headers.get("ngrok-error-code")
                if tunnel_error:
                    logger.info(f"Server check {url}: tunnel error {tunnel_error}")
                elif response.status_code < 500:
                    return {"isAlive": True, "statusCode": response.status_code}
                logger.info(f"Server check {url}: HTTP {response.status_code}")
            except httpx.HTTPError as e:
                logger.info(f"Server check {url} failed: {e}")

        if sandbox_id:
            try:
                handle = await self.client.connect(sandbox_id)
                if await self.launcher.probe(handle):
                    return {"isAlive": True, "via": "sandbox"}
            except SandboxUnreachable as e:
                logger.info(f"Server check via sandbox {sandbox_id} failed: {e}")

        return {"isAlive": False}

    async def sandbox_status(self, project_id: str, user_id: str) -> Dict[str, Any]:
        """Estimate whether the sandbox is still within its TTL"""
        record = await self.store.get_for_user(project_id, user_id)
        if record is None:
            return _failure("Project not found")

        ttl = timedelta(milliseconds=self.settings.sandbox_ttl_ms)
        started_at = record.started_at
        remaining = 0
        if started_at is not None:
            remaining = max(0, int((started_at + ttl - datetime.now()).total_seconds()))

        is_running = (
            bool(record.sandbox_id)
            and record.status == SandboxStatus.ACTIVE.value
            and remaining > 0
        )
        return {
            "success": True,
            "isRunning": is_running,
            "needsResume": not is_running,
            "startedAt": started_at.isoformat() if started_at else None,
            "remainingSeconds": remaining,
            "sandboxId": record.sandbox_id,
        }

    async def destroy_container(self, project_id: str, user_id: str) -> Dict[str, Any]:
        record = await self.store.get_for_user(project_id, user_id)
        if record is None:
            return _failure("Project not found")

        await self.launcher.file_watcher.stop(project_id)
        if record.sandbox_id:
            try:
                handle = await self.client.connect(record.sandbox_id)
                await handle.kill()
            except (SandboxUnreachable, TransientCommandError) as e:
                logger.info(f"[{project_id}] Sandbox already gone: {e}")

        await self.store.update(
            project_id,
            status=SandboxStatus.DESTROYED,
            server_status=ServerStatus.CLOSED,
            server_ready=False,
            sandbox_url=None,
            tunnel_url=None,
        )
        logger.info(f"[{project_id}] Container destroyed")
        return {"success": True, "sandboxId": record.sandbox_id}


# Global instance
_lifecycle_service: Optional[SandboxLifecycleService] = None


def get_sandbox_lifecycle() -> SandboxLifecycleService:
    """Get the global lifecycle service"""
    global _lifecycle_service
    if _lifecycle_service is None:
        _lifecycle_service = SandboxLifecycleService()
    return _lifecycle_service


async def close_sandbox_lifecycle():
    global _lifecycle_service
    if _lifecycle_service is not None:
        await _lifecycle_service.close()
        _lifecycle_service = None
