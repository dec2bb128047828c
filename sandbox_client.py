# sandbox_client.py - E2B sandbox control plane

"""
Thin, timeout-bounded wrapper around the E2B AsyncSandbox SDK.

- SandboxClient: create / connect / is_alive
- SandboxHandle: run commands, files, public host, timeout extension, kill
- Every SDK failure is translated into SandboxUnreachable or TransientCommandError
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from dotenv import load_dotenv

load_dotenv()

from e2b import AsyncSandbox, CommandExitException
from e2b.exceptions import (
    AuthenticationException,
    NotFoundException,
    RateLimitException,
    SandboxException,
    TimeoutException,
)

from services.errors import SandboxUnreachable, TransientCommandError

logger = logging.getLogger(__name__)

OutputHandler = Callable[[str], Any]

# Failures that mean the control plane cannot reach the sandbox at all
UNREACHABLE_ERRORS = (AuthenticationException, httpx.HTTPError, ConnectionError, OSError)


@dataclass
class SandboxConfig:
    """Configuration for sandbox creation and control-plane calls"""

    template: Optional[str] = None
    api_key: Optional[str] = None

    # Idle timeout in milliseconds (1 hour)
    idle_timeout_ms: int = 3_600_000

    # Per-call timeouts (seconds)
    create_timeout: float = 60.0
    connect_timeout: float = 10.0
    command_timeout: float = 30.0
    health_timeout: float = 5.0

    # Retry configuration
    max_retries: int = 2
    retry_delay: float = 1.0

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.getenv("E2B_API_KEY")
        if self.template is None:
            self.template = os.getenv("E2B_TEMPLATE_ID")


@dataclass
class CommandResult:
    """Result of a command execution"""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    execution_time: float = 0.0
    pid: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        """Whether command executed successfully"""
        return self.exit_code == 0


def setup_logging():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - [%(levelname)s] - %(name)s - %(message)s",
    )
    return logging.getLogger("SandboxClient")


def mask_api_key(api_key: Optional[str]) -> str:
    """Mask API key for safe logging (shows only first 4 and last 4 chars)"""
    if not api_key:
        return "None"
    if len(api_key) <= 8:
        return "****"
    return f"{api_key[:4]}...{api_key[-4:]}"


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, NotFoundException):
        return True
    message = str(exc).lower()
    return "not found" in message or "404" in message


class SandboxFiles:
    """File operations inside a sandbox, each bounded by a timeout"""

    def __init__(self, handle: "SandboxHandle"):
        self._handle = handle

    @property
    def _files(self):
        return self._handle.sandbox.files

    async def read(self, path: str) -> str:
        return await self._handle._call(self._files.read(path), f"read {path}")

    async def write(self, path: str, content: str) -> None:
        await self._handle._call(self._files.write(path, content), f"write {path}")

    async def exists(self, path: str) -> bool:
        return await self._handle._call(self._files.exists(path), f"exists {path}")

    async def watch_dir(
        self, path: str, on_event: Callable[[Any], Any], recursive: bool = False
    ):
        """Watch a directory; returns the SDK watch handle (call ``stop()`` on it)."""
        return await self._handle._call(
            # 0 keeps the event stream open until stop()
            self._files.watch_dir(path, on_event=on_event, recursive=recursive, timeout=0),
            f"watch {path}",
        )


class SandboxHandle:
    """A connected sandbox"""

    def __init__(self, sandbox: AsyncSandbox, config: SandboxConfig):
        self.sandbox = sandbox
        self._config = config
        self.files = SandboxFiles(self)

    @property
    def sandbox_id(self) -> str:
        return self.sandbox.sandbox_id

    async def _call(self, coro, what: str, timeout: Optional[float] = None):
        """Await an SDK coroutine with a timeout and translated errors"""
        timeout = timeout or self._config.command_timeout
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientCommandError(
                f"{what} timed out after {timeout}s", self.sandbox_id, what
            )
        except CommandExitException:
            raise
        except (TimeoutException, httpx.TimeoutException) as e:
            raise TransientCommandError(
                f"{what} timed out: {e}", self.sandbox_id, what
            ) from e
        except SandboxException as e:
            if _is_not_found(e):
                raise SandboxUnreachable(
                    f"Sandbox {self.sandbox_id} not found: {e}", self.sandbox_id
                ) from e
            raise TransientCommandError(
                f"{what} failed: {e}", self.sandbox_id, what
            ) from e
        except UNREACHABLE_ERRORS as e:
            raise SandboxUnreachable(
                f"Sandbox {self.sandbox_id} unreachable: {e}", self.sandbox_id
            ) from e

    async def run(
        self,
        cmd: str,
        background: bool = False,
        on_stdout: Optional[OutputHandler] = None,
        on_stderr: Optional[OutputHandler] = None,
        timeout: Optional[float] = None,
        envs: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """
        Run a shell command in the sandbox.

        Foreground commands wait for completion; a non-zero exit is returned
        in the result, not raised. Background commands return as soon as the
        process is spawned (``pid`` set, ``exit_code`` 0) and keep streaming
        output to the handlers.

        Raises:
            TransientCommandError: timeout or SDK command failure
            SandboxUnreachable: the sandbox no longer exists
        """
        timeout = timeout or self._config.command_timeout
        start = time.monotonic()

        if background:
            handle = await self._call(
                self.sandbox.commands.run(
                    cmd,
                    background=True,
                    envs=envs,
                    # 0 disables the SDK stream timeout; the process outlives this call
                    timeout=0,
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                ),
                cmd[:60],
                timeout=timeout,
            )
            logger.debug(f"[{self.sandbox_id}] Background command started: {cmd[:80]}")
            return CommandResult(
                command=cmd,
                exit_code=0,
                execution_time=time.monotonic() - start,
                pid=getattr(handle, "pid", None),
            )

        try:
            result = await self._call(
                self.sandbox.commands.run(
                    cmd,
                    envs=envs,
                    timeout=timeout,
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                ),
                cmd[:60],
                # outer bound sits above the SDK timeout
                timeout=timeout + 5,
            )
        except CommandExitException as e:
            return CommandResult(
                command=cmd,
                exit_code=getattr(e, "exit_code", 1),
                stdout=getattr(e, "stdout", "") or "",
                stderr=getattr(e, "stderr", "") or "",
                execution_time=time.monotonic() - start,
            )

        return CommandResult(
            command=cmd,
            exit_code=result.exit_code,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            execution_time=time.monotonic() - start,
        )

    def public_host(self, port: int) -> str:
        """Public hostname for a port (``{port}-{sandbox_id}.e2b.app``)"""
        return self.sandbox.get_host(port)

    async def set_timeout(self, timeout_ms: int) -> None:
        """Extend the sandbox idle timeout"""
        await self._call(
            self.sandbox.set_timeout(max(1, timeout_ms // 1000)), "set_timeout"
        )

    async def is_healthy(self) -> bool:
        """Quick health check: a cheap file listing within the health timeout"""
        try:
            await self._call(
                self.sandbox.files.list("."),
                "health",
                timeout=self._config.health_timeout,
            )
            return True
        except (SandboxUnreachable, TransientCommandError) as e:
            logger.debug(f"[{self.sandbox_id}] Health check failed: {e}")
            return False

    async def kill(self) -> None:
        """Destroy the sandbox"""
        await self._call(self.sandbox.kill(), "kill")
        logger.info(f"[{self.sandbox_id}] Sandbox killed")


class SandboxClient:
    """
    Create and connect to E2B sandboxes.

    Stateless apart from configuration: identity lives in the project store,
    so a handle can always be re-obtained with ``connect(sandbox_id)``.
    """

    def __init__(self, config: Optional[SandboxConfig] = None):
        self._config = config or SandboxConfig()
        logger.info(
            f"SandboxClient ready: template={self._config.template or 'default'}, "
            f"api_key={mask_api_key(self._config.api_key)}"
        )

    @property
    def config(self) -> SandboxConfig:
        return self._config

    async def create(
        self,
        template_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idle_timeout_ms: Optional[int] = None,
        envs: Optional[Dict[str, str]] = None,
    ) -> SandboxHandle:
        """
        Create a new sandbox, retrying with exponential backoff.

        Raises:
            SandboxUnreachable: if every attempt failed
        """
        template = template_id or self._config.template
        idle_timeout_ms = idle_timeout_ms or self._config.idle_timeout_ms
        full_metadata = {
            "template": template or "default",
            "created_at": datetime.now().isoformat(),
            **(metadata or {}),
        }

        last_error: Optional[BaseException] = None
        for attempt in range(1, self._config.max_retries + 1):
            try:
                sandbox = await asyncio.wait_for(
                    AsyncSandbox.create(
                        template=template,
                        timeout=max(1, idle_timeout_ms // 1000),
                        metadata=full_metadata,
                        envs=envs or {},
                        api_key=self._config.api_key,
                    ),
                    timeout=self._config.create_timeout,
                )
                logger.info("=" * 80)
                logger.info(f"✅ Sandbox created: {sandbox.sandbox_id}")
                logger.info(f"   Template: {template or 'default'}")
                logger.info(f"   Idle timeout: {idle_timeout_ms // 1000}s")
                logger.info("=" * 80)
                return SandboxHandle(sandbox, self._config)

            except (
                SandboxException,
                AuthenticationException,
                RateLimitException,
                TimeoutException,
                httpx.HTTPError,
                asyncio.TimeoutError,
            ) as e:
                last_error = e
                if attempt < self._config.max_retries:
                    delay = self._config.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Create attempt {attempt} failed: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)

        logger.error(f"❌ Sandbox creation failed after retries: {last_error}")
        raise SandboxUnreachable(f"Failed to create sandbox: {last_error}")

    async def connect(self, sandbox_id: str) -> SandboxHandle:
        """
        Connect to an existing sandbox (resumes it if paused).

        Raises:
            SandboxUnreachable: not found, expired, auth or transport failure
        """
        if not sandbox_id:
            raise SandboxUnreachable("No sandbox id recorded")

        try:
            sandbox = await asyncio.wait_for(
                AsyncSandbox.connect(sandbox_id, api_key=self._config.api_key),
                timeout=self._config.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise SandboxUnreachable(
                f"Connect to {sandbox_id} timed out", sandbox_id
            )
        except (SandboxException, *UNREACHABLE_ERRORS) as e:
            logger.warning(f"[{sandbox_id}] Connect failed: {e}")
            raise SandboxUnreachable(
                f"Sandbox {sandbox_id} unreachable: {e}", sandbox_id
            ) from e

        logger.debug(f"[{sandbox_id}] Connected")
        return SandboxHandle(sandbox, self._config)

    async def is_alive(self, sandbox_id: Optional[str]) -> bool:
        """Connect and run a cheap health check. Never raises."""
        if not sandbox_id:
            return False
        try:
            handle = await self.connect(sandbox_id)
        except SandboxUnreachable:
            return False
        return await handle.is_healthy()


# Global instance
_sandbox_client: Optional[SandboxClient] = None


def get_sandbox_client() -> SandboxClient:
    """Get the global sandbox client"""
    global _sandbox_client
    if _sandbox_client is None:
        _sandbox_client = SandboxClient()
    return _sandbox_client
