# services/dev_server_launcher.py
"""
Dev Server Launcher
===================

Brings the Expo dev server up inside a sandbox and reports where it is served.

Launch sequence (every preliminary step is best-effort):
1. extend the sandbox idle timeout
2. kill stale tunnel processes
3. free the dev port if something is listening on it
4. raise the inotify watch limit
5. merge project/sandbox ids into .env.local
6. configure the tunnel auth token
7. start ``bun run start`` in the background
8. poll the port until two consecutive probes pass or the window closes
9. watch the app directory for source changes

Readiness is decided by HTTP probes only. Output markers such as
"Web Bundled" are logged as hints.
"""

import asyncio
import io
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from dotenv import dotenv_values

from db.models import ServerStatus
from sandbox_client import SandboxHandle
from services.errors import LaunchTimeout, TransientCommandError
from services.file_watcher import ChangeNotifier, SandboxFileWatcher
from services.settings import PreviewSettings, get_preview_settings

logger = logging.getLogger(__name__)

HEALTHY_HTTP_CODES = ("200", "404")

BUNDLE_MARKERS = ("Web Bundled", "Waiting on http://localhost:")
TUNNEL_MARKERS = ("Tunnel ready", "Tunnel connected")

# Values made only of these characters are written unquoted
_BARE_ENV_VALUE = re.compile(r"[A-Za-z0-9_./:@,+-]*")

RUNTIME_ERROR_PATTERNS: List[re.Pattern] = [
    re.compile(r"\b(TypeError|ReferenceError|SyntaxError|RangeError):\s*(.+)"),
    re.compile(r"Unable to resolve module\s+(.+)"),
    re.compile(r"\bERROR\b\s+(.+)"),
    re.compile(r"Invariant Violation:\s*(.+)"),
    re.compile(r"Error: (.+)"),
]

ErrorNotifier = Callable[[Optional[str], str], Any]


def detect_runtime_error(chunk: str) -> Optional[str]:
    """Return the first runtime-error line found in a chunk of server output"""
    for line in chunk.splitlines():
        for pattern in RUNTIME_ERROR_PATTERNS:
            if pattern.search(line):
                return line.strip()
    return None


def format_env_line(key: str, value: Optional[str]) -> str:
    """One KEY=value line that dotenv parsers read back unchanged"""
    if value is None:
        return key
    if _BARE_ENV_VALUE.fullmatch(value):
        return f"{key}={value}"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'{key}="{escaped}"'


def log_runtime_error(project_id: Optional[str], message: str) -> None:
    logger.warning(f"⚠️ [{project_id}] Runtime error in dev server: {message}")


@dataclass
class LaunchResult:
    """Where the preview is served and whether readiness was confirmed"""

    sandbox_id: str
    url: str
    tunnel_url: Optional[str]
    server_ready: bool
    warning: Optional[LaunchTimeout] = None

    @property
    def confirmed(self) -> bool:
        return self.server_ready

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": True,
            "url": self.url,
            "ngrokUrl": self.tunnel_url,
            "serverReady": self.server_ready,
            "sandboxId": self.sandbox_id,
        }
        if self.warning is not None:
            data["warning"] = self.warning.to_dict()
        return data


class _OutputListener:
    """Scans background server output for hints and runtime errors"""

    def __init__(self, project_id: Optional[str], notifier: ErrorNotifier):
        self.project_id = project_id
        self.notifier = notifier
        self.bundled = False
        self.tunnel_ready = False

    def on_stdout(self, data: str):
        logger.debug(f"[{self.project_id}] SERVER STDOUT: {data.rstrip()}")
        if not self.bundled and any(marker in data for marker in BUNDLE_MARKERS):
            self.bundled = True
            logger.info(f"[{self.project_id}] Bundle marker seen (hint)")
        if not self.tunnel_ready and any(marker in data for marker in TUNNEL_MARKERS):
            self.tunnel_ready = True
            logger.info(f"[{self.project_id}] Tunnel ready detected")
        self._scan(data)

    def on_stderr(self, data: str):
        logger.debug(f"[{self.project_id}] SERVER STDERR: {data.rstrip()}")
        self._scan(data)

    def _scan(self, data: str):
        message = detect_runtime_error(data)
        if message is None:
            return
        try:
            self.notifier(self.project_id, message)
        except Exception as e:
            logger.warning(f"Runtime error notifier failed: {e}")


class DevServerLauncher:
    """
    Starts the dev server in a sandbox and records the result.

    Args:
        store: project state store (``update`` / ``get``); persistence is
               skipped when None
        settings: launch tunables
        sleep: awaitable sleep, replaceable in tests
        error_notifier: called with (project_id, message) for runtime errors
                        detected in server output
        change_notifier: called with each FileChange under the app directory
    """

    def __init__(
        self,
        store=None,
        settings: Optional[PreviewSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        error_notifier: Optional[ErrorNotifier] = None,
        change_notifier: Optional[ChangeNotifier] = None,
    ):
        self.store = store
        self.settings = settings or get_preview_settings()
        self._sleep = sleep
        self._notifier = error_notifier or log_runtime_error
        self.file_watcher = SandboxFileWatcher(self.settings.app_dir, change_notifier)

    # =========================================================================
    # URLS AND PROBES
    # =========================================================================

    def tunnel_url_for(self, sandbox_id: str) -> str:
        """Tunnel URL is derived from the sandbox id, never discovered"""
        return f"https://{sandbox_id}.{self.settings.tunnel_domain_suffix}"

    def public_url_for(self, sandbox: SandboxHandle) -> str:
        host = sandbox.public_host(self.settings.dev_port)
        return f"https://{host}?sandboxId={sandbox.sandbox_id}"

    async def probe(self, sandbox: SandboxHandle) -> bool:
        """
        One HTTP probe of the dev port from inside the sandbox.

        200 and 404 both count: the bundler answers 404 on unknown routes.

        Raises:
            SandboxUnreachable: the sandbox itself is gone
        """
        port = self.settings.dev_port
        try:
            result = await sandbox.run(
                f'curl -s -o /dev/null -w "%{{http_code}}" http://localhost:{port} || echo "000"',
                timeout=self.settings.probe_timeout,
            )
        except TransientCommandError as e:
            logger.debug(f"[{sandbox.sandbox_id}] Probe error: {e}")
            return False
        code = result.stdout.strip()
        return code in HEALTHY_HTTP_CODES

    # =========================================================================
    # PRE-LAUNCH STEPS
    # =========================================================================

    async def _best_effort(
        self, sandbox: SandboxHandle, cmd: str, what: str, timeout: Optional[float] = None
    ):
        try:
            result = await sandbox.run(cmd, timeout=timeout or self.settings.command_timeout)
            if not result.success:
                logger.info(
                    f"[{sandbox.sandbox_id}] {what}: exit {result.exit_code} "
                    f"{result.stderr.strip()[:200]}"
                )
            return result
        except TransientCommandError as e:
            logger.info(f"[{sandbox.sandbox_id}] {what} failed (ignored): {e}")
            return None

    async def _extend_timeout(self, sandbox: SandboxHandle):
        try:
            await sandbox.set_timeout(self.settings.sandbox_ttl_ms)
            logger.info(
                f"[{sandbox.sandbox_id}] Idle timeout extended to "
                f"{self.settings.sandbox_ttl_ms // 1000}s"
            )
        except TransientCommandError as e:
            logger.info(f"[{sandbox.sandbox_id}] Failed to set sandbox timeout: {e}")

    async def _free_port(self, sandbox: SandboxHandle):
        port = self.settings.dev_port
        check = await self._best_effort(
            sandbox,
            f'netstat -tuln | grep :{port} || echo "PORT_AVAILABLE"',
            "Port check",
            timeout=5,
        )
        if check is None or "PORT_AVAILABLE" in check.stdout:
            return

        healthy = await self.probe(sandbox)
        if healthy:
            logger.info(
                f"[{sandbox.sandbox_id}] Healthy server on port {port}, "
                f"restarting it to reattach the tunnel"
            )
        else:
            logger.info(
                f"[{sandbox.sandbox_id}] Port {port} occupied by an unresponsive process"
            )
        await self._best_effort(
            sandbox, f"lsof -ti:{port} | xargs kill -9 || true", "Kill port occupant"
        )
        await self._sleep(self.settings.port_release_wait)

    async def _write_env(self, sandbox: SandboxHandle, project_id: Optional[str]):
        """Merge project and sandbox ids into .env.local, keeping other keys"""
        path = f"{self.settings.app_dir}/{self.settings.env_file_name}"
        try:
            existing: Dict[str, Optional[str]] = {}
            if await sandbox.files.exists(path):
                content = await sandbox.files.read(path)
                existing = dict(
                    dotenv_values(stream=io.StringIO(content), interpolate=False)
                )

            if project_id:
                existing["EXPO_PUBLIC_PROJECT_ID"] = project_id
            existing["EXPO_PUBLIC_SANDBOX_ID"] = sandbox.sandbox_id

            lines = [format_env_line(key, value) for key, value in existing.items()]
            await sandbox.files.write(path, "\n".join(lines) + "\n")
            logger.info(f"[{sandbox.sandbox_id}] Updated {self.settings.env_file_name}")
        except TransientCommandError as e:
            logger.info(f"[{sandbox.sandbox_id}] Failed to write {path}: {e}")

    async def _configure_tunnel(self, sandbox: SandboxHandle):
        token = self.settings.ngrok_authtoken
        if not token:
            logger.debug(f"[{sandbox.sandbox_id}] No tunnel auth token configured")
            return
        try:
            await sandbox.run(
                "ngrok config add-authtoken $NGROK_AUTHTOKEN",
                envs={"NGROK_AUTHTOKEN": token},
                timeout=self.settings.command_timeout,
            )
            logger.info(f"[{sandbox.sandbox_id}] Tunnel auth configured")
        except TransientCommandError as e:
            logger.info(f"[{sandbox.sandbox_id}] Failed to configure tunnel: {e}")

    # =========================================================================
    # LAUNCH
    # =========================================================================

    async def launch(
        self, sandbox: SandboxHandle, project_id: Optional[str] = None
    ) -> LaunchResult:
        """
        Start (or restart) the dev server and wait for it to answer.

        A launch that never confirms readiness still returns the URLs with
        ``server_ready=False``; the health monitor takes over from there.

        Raises:
            SandboxUnreachable: the sandbox disappeared during launch
        """
        sandbox_id = sandbox.sandbox_id
        logger.info("=" * 80)
        logger.info(f"[{project_id}] 🚀 Launching dev server in {sandbox_id}")
        logger.info("=" * 80)

        await self._extend_timeout(sandbox)
        await self._best_effort(sandbox, "pkill -9 ngrok || true", "Kill tunnel", timeout=5)
        await self._free_port(sandbox)
        await self._best_effort(
            sandbox,
            f"sudo sysctl fs.inotify.max_user_watches={self.settings.inotify_max_user_watches}",
            "inotify limit",
        )
        await self._write_env(sandbox, project_id)
        await self._configure_tunnel(sandbox)

        listener = _OutputListener(project_id, self._notifier)
        start_command = self.settings.start_command.format(
            app_dir=self.settings.app_dir, domain=sandbox_id
        )
        logger.info(f"[{sandbox_id}] Starting: {start_command}")
        try:
            await sandbox.run(
                start_command,
                background=True,
                on_stdout=listener.on_stdout,
                on_stderr=listener.on_stderr,
            )
        except TransientCommandError as e:
            logger.warning(f"⚠️ [{sandbox_id}] Failed to start dev server: {e}")

        server_ready = await self._wait_until_ready(sandbox)

        result = LaunchResult(
            sandbox_id=sandbox_id,
            url=self.public_url_for(sandbox),
            tunnel_url=self.tunnel_url_for(sandbox_id),
            server_ready=server_ready,
        )
        if server_ready:
            logger.info(f"[{project_id}] ✅ Dev server ready: {result.url}")
        else:
            result.warning = LaunchTimeout(
                f"Readiness not confirmed after {self.settings.launch_max_wait:.0f}s",
                sandbox_id,
            )
            logger.warning(
                f"⚠️ [{project_id}] {result.warning.message}, proceeding with URL "
                f"(bundle hint seen: {listener.bundled})"
            )

        current = await self._persist(project_id, result)
        if project_id and current and self.settings.watch_app_dir:
            await self.file_watcher.start(project_id, sandbox)
        return result

    async def _wait_until_ready(self, sandbox: SandboxHandle) -> bool:
        required = self.settings.launch_consecutive_probes
        interval = self.settings.launch_poll_interval
        waited = 0.0
        streak = 0

        while waited < self.settings.launch_max_wait:
            await self._sleep(interval)
            waited += interval

            if await self.probe(sandbox):
                streak += 1
                logger.info(
                    f"[{sandbox.sandbox_id}] Probe passed ({streak}/{required})"
                )
                if streak >= required:
                    return True
            else:
                streak = 0
                logger.debug(
                    f"[{sandbox.sandbox_id}] Still waiting for server... {waited:.0f}s elapsed"
                )
        return False

    async def _persist(self, project_id: Optional[str], result: LaunchResult) -> bool:
        """False when the project has moved on to another sandbox"""
        if not project_id or self.store is None:
            return True
        try:
            record = await self.store.get(project_id)
            if record is not None and record.sandbox_id not in (None, result.sandbox_id):
                logger.warning(
                    f"⚠️ [{project_id}] Project moved to {record.sandbox_id}, "
                    f"not recording launch of {result.sandbox_id}"
                )
                return False
            await self.store.update(
                project_id,
                sandbox_url=result.url,
                tunnel_url=result.tunnel_url,
                server_ready=result.server_ready,
                server_status=ServerStatus.RUNNING,
            )
            logger.info(f"[{project_id}] Saved server info to database")
        except Exception as e:
            logger.error(f"❌ [{project_id}] Failed to save server info: {e}")
        return True
