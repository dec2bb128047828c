"""
Shared fakes for the preview lifecycle tests.

Nothing here talks to E2B, Postgres or Redis: sandboxes, the project store,
the lease and the preview backend are in-memory stand-ins exposing the same
interfaces as the real implementations.
"""

import asyncio
import itertools
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from db.service import UPDATABLE_FIELDS, ProjectRecord
from sandbox_client import CommandResult
from services.dev_server_launcher import DevServerLauncher
from services.errors import SandboxUnreachable
from services.sandbox_lifecycle import SandboxLifecycleService
from services.settings import PreviewSettings


# =============================================================================
# HELPERS
# =============================================================================


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds or fail after ``timeout``"""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_settings(**overrides) -> PreviewSettings:
    values = dict(
        template_id="expo-template",
        ngrok_authtoken=None,
        launch_poll_interval=3.0,
        launch_max_wait=60.0,
        launch_consecutive_probes=2,
        port_release_wait=0.0,
        monitor_initial_delay=0.0,
        poll_tier_intervals=[0.02, 0.05, 0.1],
        poll_tier_ticks=[3, 3],
        max_recreation_retries=3,
        recreation_lease_ttl=30,
    )
    values.update(overrides)
    return PreviewSettings(**values)


@pytest.fixture
def settings() -> PreviewSettings:
    return make_settings()


# =============================================================================
# SANDBOX FAKES
# =============================================================================


class FakeWatchHandle:
    def __init__(self, on_event):
        self.on_event = on_event
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakeFiles:
    def __init__(self, handle: "FakeSandboxHandle"):
        self._handle = handle
        self.data: Dict[str, str] = {}
        self.watches: Dict[str, FakeWatchHandle] = {}

    async def read(self, path: str) -> str:
        self._handle._check_alive()
        return self.data[path]

    async def write(self, path: str, content: str) -> None:
        self._handle._check_alive()
        self.data[path] = content

    async def exists(self, path: str) -> bool:
        self._handle._check_alive()
        return path in self.data

    async def watch_dir(self, path: str, on_event, recursive: bool = False) -> FakeWatchHandle:
        self._handle._check_alive()
        self.watches[path] = FakeWatchHandle(on_event)
        return self.watches[path]


class FakeSandboxHandle:
    """
    Scripted sandbox.

    ``probe_results`` are consumed one per curl probe (a string is returned as
    the raw curl output). Once exhausted the probe answers according to
    ``server_up``. Starting the dev server in the background sets ``server_up``
    when ``starts_server`` is True and replays ``server_output`` to the stdout
    handler.
    """

    def __init__(
        self,
        sandbox_id: str,
        alive: bool = True,
        server_up: bool = False,
        starts_server: bool = True,
        probe_results: Optional[List[Union[bool, str]]] = None,
        server_output: Optional[List[str]] = None,
    ):
        self.sandbox_id = sandbox_id
        self.alive = alive
        self.server_up = server_up
        self.starts_server = starts_server
        self.probe_results = list(probe_results or [])
        self.server_output = list(server_output or [])
        self.files = FakeFiles(self)
        self.commands: List[str] = []
        self.command_envs: List[Optional[Dict[str, str]]] = []
        self.timeouts_ms: List[int] = []
        self.killed = False
        self.port_busy = False

    def _check_alive(self):
        if not self.alive:
            raise SandboxUnreachable(f"Sandbox {self.sandbox_id} not found", self.sandbox_id)

    def probe_count(self) -> int:
        return sum(1 for cmd in self.commands if cmd.startswith("curl "))

    async def run(
        self,
        cmd: str,
        background: bool = False,
        on_stdout=None,
        on_stderr=None,
        timeout: Optional[float] = None,
        envs: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        self._check_alive()
        self.commands.append(cmd)
        self.command_envs.append(envs)

        if background:
            if self.starts_server:
                self.server_up = True
            for line in self.server_output:
                if on_stdout is not None:
                    on_stdout(line)
            return CommandResult(command=cmd, exit_code=0, pid=4242)

        if cmd.startswith("curl "):
            up = self.probe_results.pop(0) if self.probe_results else self.server_up
            if isinstance(up, str):
                return CommandResult(command=cmd, exit_code=0, stdout=up)
            return CommandResult(command=cmd, exit_code=0, stdout="200" if up else "000")
        if cmd.startswith("netstat "):
            stdout = "tcp 0 0 0.0.0.0:8081 LISTEN" if self.port_busy else "PORT_AVAILABLE"
            return CommandResult(command=cmd, exit_code=0, stdout=stdout)
        if cmd.startswith("lsof "):
            self.port_busy = False
            self.server_up = False
        return CommandResult(command=cmd, exit_code=0)

    def public_host(self, port: int) -> str:
        return f"{port}-{self.sandbox_id}.e2b.app"

    async def set_timeout(self, timeout_ms: int) -> None:
        self._check_alive()
        self.timeouts_ms.append(timeout_ms)

    async def is_healthy(self) -> bool:
        return self.alive

    async def kill(self) -> None:
        self._check_alive()
        self.alive = False
        self.killed = True


class FakeSandboxClient:
    """In-memory SandboxClient; new sandboxes are named sbx-1, sbx-2, ..."""

    def __init__(self, handle_factory: Optional[Callable[[str], FakeSandboxHandle]] = None):
        self.sandboxes: Dict[str, FakeSandboxHandle] = {}
        self._ids = itertools.count(1)
        self._factory = handle_factory or (lambda sandbox_id: FakeSandboxHandle(sandbox_id))
        self.create_calls = 0
        self.fail_creates = 0
        self.before_create: Optional[Callable[[], Any]] = None

    def add(self, handle: FakeSandboxHandle) -> FakeSandboxHandle:
        self.sandboxes[handle.sandbox_id] = handle
        return handle

    async def create(
        self,
        template_id=None,
        metadata=None,
        idle_timeout_ms=None,
        envs=None,
    ) -> FakeSandboxHandle:
        self.create_calls += 1
        if self.before_create is not None:
            await self.before_create()
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise SandboxUnreachable("Failed to create sandbox: quota exceeded")
        handle = self._factory(f"sbx-{next(self._ids)}")
        return self.add(handle)

    async def connect(self, sandbox_id: str) -> FakeSandboxHandle:
        handle = self.sandboxes.get(sandbox_id)
        if handle is None or not handle.alive:
            raise SandboxUnreachable(f"Sandbox {sandbox_id} unreachable", sandbox_id)
        return handle

    async def is_alive(self, sandbox_id: Optional[str]) -> bool:
        handle = self.sandboxes.get(sandbox_id) if sandbox_id else None
        return handle is not None and handle.alive


class FakeLease:
    def __init__(self):
        self.held: Dict[str, str] = {}
        self._tokens = itertools.count(1)

    async def acquire(self, name: str, ttl: int) -> Optional[str]:
        if name in self.held:
            return None
        token = f"token-{next(self._tokens)}"
        self.held[name] = token
        return token

    async def release(self, name: str, token: str) -> bool:
        if self.held.get(name) == token:
            del self.held[name]
            return True
        return False


# =============================================================================
# PROJECT STORE
# =============================================================================


class InMemoryProjectStore:
    """Same interface as ProjectStateStore, backed by a dict of records"""

    def __init__(self):
        self.records: Dict[str, ProjectRecord] = {}
        self.updates: List[Dict[str, Any]] = []

    def seed(self, **fields) -> ProjectRecord:
        record = ProjectRecord(**fields)
        self.records[record.id] = record
        return record

    async def get(self, project_id: str) -> Optional[ProjectRecord]:
        return self.records.get(project_id)

    async def get_for_user(self, project_id: str, user_id: str) -> Optional[ProjectRecord]:
        record = self.records.get(project_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    async def ensure_project(
        self, project_id: str, user_id: str, title: Optional[str] = None
    ) -> ProjectRecord:
        if project_id not in self.records:
            self.records[project_id] = ProjectRecord(
                id=project_id, user_id=user_id, title=title, created_at=datetime.now()
            )
        return self.records[project_id]

    async def update(self, project_id: str, **fields) -> bool:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown project fields: {sorted(unknown)}")
        record = self.records.get(project_id)
        if record is None:
            return False
        values = {
            key: (value.value if isinstance(value, Enum) else value)
            for key, value in fields.items()
        }
        self.updates.append({"project_id": project_id, **values})
        self.records[project_id] = replace(record, **values, updated_at=datetime.now())
        return True

    async def swap_incarnation(
        self,
        project_id: str,
        expected_sandbox_id: Optional[str],
        new_sandbox_id: str,
        started_at: Optional[datetime] = None,
    ) -> bool:
        record = self.records.get(project_id)
        if record is None or record.sandbox_id != expected_sandbox_id:
            return False
        self.records[project_id] = replace(
            record,
            sandbox_id=new_sandbox_id,
            sandbox_url=None,
            tunnel_url=None,
            server_ready=False,
            server_status="closed",
            status="active",
            started_at=started_at or datetime.now(),
        )
        return True


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()


# =============================================================================
# PREVIEW BACKEND
# =============================================================================


class FakeBackend:
    """
    Scripted PreviewBackend.

    Liveness comes from ``alive_sandboxes`` and ``server_up``; recovery
    results are popped from ``resume_results`` / ``start_results`` (the last
    entry repeats). Setting ``resume_gate`` / ``start_gate`` blocks the
    corresponding call until the event is set.
    """

    def __init__(self, project: Optional[ProjectRecord] = None):
        self.project = project
        self.alive_sandboxes = set()
        self.server_up = True
        self.resume_results: List[Dict[str, Any]] = []
        self.start_results: List[Dict[str, Any]] = [{"success": True, "serverReady": True}]
        self.resume_gate: Optional[asyncio.Event] = None
        self.start_gate: Optional[asyncio.Event] = None
        self.calls: List[tuple] = []

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    @staticmethod
    def _next(results: List[Dict[str, Any]]) -> Dict[str, Any]:
        if len(results) > 1:
            return results.pop(0)
        return dict(results[0]) if results else {"success": False, "error": "unscripted"}

    async def check_sandbox(self, sandbox_id: Optional[str]) -> bool:
        self.calls.append(("check_sandbox", sandbox_id))
        return sandbox_id in self.alive_sandboxes

    async def check_server(self, tunnel_url: str, sandbox_id: Optional[str]) -> bool:
        self.calls.append(("check_server", tunnel_url))
        return self.server_up

    async def start_server(
        self, sandbox_id: str, project_id: str, user_id: str, force: bool = False
    ) -> Dict[str, Any]:
        self.calls.append(("start_server", sandbox_id, force))
        if self.start_gate is not None:
            await self.start_gate.wait()
        return self._next(self.start_results)

    async def resume_container(self, project_id: str, user_id: str) -> Dict[str, Any]:
        self.calls.append(("resume_container", project_id))
        if self.resume_gate is not None:
            await self.resume_gate.wait()
        result = self._next(self.resume_results)
        new_id = result.get("sandboxId") if result.get("success") else None
        if new_id and self.project is not None:
            if new_id != self.project.sandbox_id:
                self.project = replace(
                    self.project,
                    sandbox_id=new_id,
                    sandbox_url=result.get("url"),
                    tunnel_url=result.get("ngrokUrl"),
                    server_ready=bool(result.get("serverReady")),
                    server_status="running",
                )
            self.alive_sandboxes.add(new_id)
        return result

    async def get_project(self, project_id: str, user_id: str) -> Optional[ProjectRecord]:
        self.calls.append(("get_project", project_id))
        if self.project is None or self.project.user_id != user_id:
            return None
        return self.project


def ready_project(sandbox_id: str = "sbx-1", **overrides) -> ProjectRecord:
    values = dict(
        id="proj-1",
        user_id="user-1",
        sandbox_id=sandbox_id,
        sandbox_url=f"https://8081-{sandbox_id}.e2b.app?sandboxId={sandbox_id}",
        tunnel_url=f"https://{sandbox_id}.ngrok.dev",
        status="active",
        server_ready=True,
        server_status="running",
        started_at=datetime.now(),
    )
    values.update(overrides)
    return ProjectRecord(**values)


def recreated(sandbox_id: str) -> Dict[str, Any]:
    return {
        "success": True,
        "sandboxId": sandbox_id,
        "url": f"https://8081-{sandbox_id}.e2b.app?sandboxId={sandbox_id}",
        "ngrokUrl": f"https://{sandbox_id}.ngrok.dev",
        "serverReady": True,
        "recreated": True,
    }


# =============================================================================
# LIFECYCLE SERVICE
# =============================================================================


def make_service(client, store, lease=None, http_client=None) -> SandboxLifecycleService:
    settings = make_settings()
    return SandboxLifecycleService(
        client=client,
        store=store,
        launcher=DevServerLauncher(store=store, settings=settings, sleep=no_sleep),
        lease=lease or FakeLease(),
        settings=settings,
        http_client=http_client,
        sleep=no_sleep,
    )


def seed_running(store, sandbox_id="sbx-live", **overrides) -> ProjectRecord:
    values = dict(
        id="proj-1",
        user_id="user-1",
        sandbox_id=sandbox_id,
        sandbox_url=f"https://8081-{sandbox_id}.e2b.app?sandboxId={sandbox_id}",
        tunnel_url=f"https://{sandbox_id}.ngrok.dev",
        status="active",
        server_ready=True,
        server_status="running",
        started_at=datetime.now(),
    )
    values.update(overrides)
    return store.seed(**values)
