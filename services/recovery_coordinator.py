# services/recovery_coordinator.py
"""
Recovery Coordinator
====================

Turns probe results into at most one recovery action per project:

| sandbox alive | server alive               | action                         |
|---------------|----------------------------|--------------------------------|
| no            | n/a                        | recreate sandbox (bounded)     |
| yes           | no (tunnel URL recorded)   | restart dev server             |
| yes           | yes, or no tunnel recorded | reset attempts, mark healthy   |

HealthState is scoped to one sandbox incarnation and is reset whenever the
project's sandbox id changes.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from services.errors import RecoveryExhausted
from services.settings import get_preview_settings

logger = logging.getLogger(__name__)


@dataclass
class HealthState:
    """Transient per-incarnation health of a project's preview"""

    sandbox_id: Optional[str] = None
    sandbox_alive: Optional[bool] = None  # None: not observed this incarnation
    server_alive: Optional[bool] = None
    recreation_attempts: int = 0
    is_recreating: bool = False
    is_restarting_server: bool = False
    recreation_failed: bool = False
    last_error: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.is_recreating or self.is_restarting_server

    def reset_for(self, sandbox_id: Optional[str]):
        """Start over for a new incarnation"""
        self.sandbox_id = sandbox_id
        self.sandbox_alive = None
        self.server_alive = None
        self.recreation_attempts = 0
        self.is_recreating = False
        self.is_restarting_server = False
        self.recreation_failed = False
        self.last_error = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RecoveryAction(str, Enum):
    NONE = "none"
    RECREATE_SANDBOX = "recreate_sandbox"
    RESTART_SERVER = "restart_server"
    MARK_HEALTHY = "mark_healthy"


def decide(
    health: HealthState,
    sandbox_alive: bool,
    server_alive: Optional[bool],
    max_retries: int,
) -> RecoveryAction:
    """
    Pure decision table. ``server_alive`` is None when the server was not
    probed (sandbox down, or no tunnel URL recorded).
    """
    if not sandbox_alive:
        if (
            health.is_recreating
            or health.recreation_failed
            or health.recreation_attempts >= max_retries
        ):
            return RecoveryAction.NONE
        return RecoveryAction.RECREATE_SANDBOX

    if server_alive is False:
        if health.busy:
            return RecoveryAction.NONE
        return RecoveryAction.RESTART_SERVER

    return RecoveryAction.MARK_HEALTHY


IncarnationCallback = Callable[[Optional[str], str, Dict[str, Any]], Any]
RestartCallback = Callable[[Dict[str, Any]], Any]


async def _maybe_await(result):
    if inspect.isawaitable(result):
        await result


class RecoveryCoordinator:
    """
    Applies probe observations to a HealthState and runs the resulting
    recovery action in the background.

    Args:
        project_id / user_id: forwarded to every backend call
        backend: PreviewBackend (``resume_container`` / ``start_server``)
        health: state to drive; a fresh one is created when omitted
        on_incarnation_changed: called with (old_id, new_id, result) after a
            recreation produced a new sandbox
        on_server_restarted: called with the start-server result after a
            restart for the current incarnation succeeded
    """

    def __init__(
        self,
        project_id: str,
        user_id: str,
        backend,
        health: Optional[HealthState] = None,
        max_retries: Optional[int] = None,
        on_incarnation_changed: Optional[IncarnationCallback] = None,
        on_server_restarted: Optional[RestartCallback] = None,
    ):
        self.project_id = project_id
        self.user_id = user_id
        self.backend = backend
        self.health = health or HealthState()
        self.max_retries = (
            max_retries
            if max_retries is not None
            else get_preview_settings().max_recreation_retries
        )
        self._on_incarnation_changed = on_incarnation_changed
        self._on_server_restarted = on_server_restarted
        self._pending: Optional[asyncio.Task] = None

    # =========================================================================
    # OBSERVATIONS
    # =========================================================================

    def observe(
        self,
        sandbox_id: Optional[str],
        sandbox_alive: bool,
        server_alive: Optional[bool] = None,
    ) -> RecoveryAction:
        """
        Record one tick's probe results and dispatch the decided action.

        Results for a sandbox id other than the current incarnation are
        discarded.
        """
        health = self.health
        if sandbox_id != health.sandbox_id:
            logger.debug(
                f"[{self.project_id}] Discarding probe for {sandbox_id} "
                f"(current {health.sandbox_id})"
            )
            return RecoveryAction.NONE

        health.sandbox_alive = sandbox_alive
        health.server_alive = server_alive if sandbox_alive else None

        action = decide(health, sandbox_alive, server_alive, self.max_retries)

        if action == RecoveryAction.RECREATE_SANDBOX:
            self.schedule_recreate()
        elif action == RecoveryAction.RESTART_SERVER:
            self.schedule_restart()
        elif action == RecoveryAction.MARK_HEALTHY:
            if health.recreation_failed:
                logger.info(f"[{self.project_id}] ✅ Healthy again, clearing failure")
            health.recreation_attempts = 0
            health.recreation_failed = False
            health.last_error = None
        elif not sandbox_alive and health.recreation_failed:
            logger.debug(f"[{self.project_id}] Recovery exhausted, waiting for retry")

        return action

    # =========================================================================
    # DISPATCH
    # =========================================================================

    @property
    def has_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def _skip_while_pending(self, name: str) -> bool:
        if self.has_pending:
            logger.debug(f"[{self.project_id}] {name} skipped, recovery pending")
            return True
        return False

    def _dispatch(self, coro: Awaitable, name: str):
        self._pending = asyncio.create_task(coro, name=f"{name}:{self.project_id}")
        self._pending.add_done_callback(self._log_outcome)

    def _log_outcome(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, RecoveryExhausted):
            logger.error(f"❌ [{self.project_id}] {exc.message}")
        elif exc is not None:
            logger.error(
                f"❌ [{self.project_id}] Recovery task failed: {exc}", exc_info=exc
            )

    def schedule_recreate(self) -> bool:
        """Claim the recreation guard and run recreation in the background"""
        if self._skip_while_pending("recreate") or not self._begin_recreate():
            return False
        self._dispatch(self._run_recreate(), "recreate")
        return True

    def schedule_restart(self) -> bool:
        """Claim the restart guard and restart the dev server in the background"""
        if self._skip_while_pending("restart") or not self._begin_restart():
            return False
        self._dispatch(self._run_restart(), "restart")
        return True

    async def wait_idle(self):
        """Wait for the pending recovery action, if any, to finish"""
        while self.has_pending:
            await asyncio.wait({self._pending})

    # =========================================================================
    # RECREATE
    # =========================================================================

    def _begin_recreate(self) -> bool:
        health = self.health
        if health.is_recreating or health.recreation_failed:
            return False
        if health.recreation_attempts >= self.max_retries:
            return False
        health.is_recreating = True
        health.recreation_attempts += 1
        logger.info(
            f"[{self.project_id}] 🔄 Recreating sandbox "
            f"(attempt {health.recreation_attempts}/{self.max_retries})"
        )
        return True

    async def recreate_sandbox(self) -> Dict[str, Any]:
        """
        Run one recreation attempt in the foreground.

        Raises:
            RecoveryExhausted: this attempt failed and reached the retry cap
        """
        if not self._begin_recreate():
            return {"success": False, "error": "Recreation not allowed"}
        return await self._run_recreate()

    async def _run_recreate(self) -> Dict[str, Any]:
        health = self.health
        old_sandbox_id = health.sandbox_id
        try:
            result = await self.backend.resume_container(self.project_id, self.user_id)
        except Exception as e:
            result = {"success": False, "error": str(e)}

        if health.sandbox_id != old_sandbox_id:
            logger.info(f"[{self.project_id}] Recreate result discarded, incarnation moved")
            return result

        health.is_recreating = False
        new_sandbox_id = result.get("sandboxId") if result.get("success") else None

        if not new_sandbox_id:
            health.last_error = result.get("error") or "Recreation failed"
            logger.warning(
                f"⚠️ [{self.project_id}] Recreate attempt "
                f"{health.recreation_attempts}/{self.max_retries} failed: {health.last_error}"
            )
            if health.recreation_attempts >= self.max_retries:
                health.recreation_failed = True
                raise RecoveryExhausted(
                    f"Sandbox recreation failed after {health.recreation_attempts} attempts",
                    old_sandbox_id,
                    attempts=health.recreation_attempts,
                )
            return result

        server_ready = bool(result.get("serverReady"))
        if new_sandbox_id == old_sandbox_id:
            # resumed in place
            health.recreation_attempts = 0
            health.recreation_failed = False
            health.last_error = None
            health.sandbox_alive = True
            health.server_alive = True if server_ready else None
            logger.info(f"[{self.project_id}] ✅ Sandbox {new_sandbox_id} resumed")
            return result

        health.reset_for(new_sandbox_id)
        health.sandbox_alive = True
        health.server_alive = True if server_ready else None
        logger.info(
            f"[{self.project_id}] ✅ Sandbox recreated: {old_sandbox_id} -> {new_sandbox_id}"
        )
        if self._on_incarnation_changed is not None:
            await _maybe_await(
                self._on_incarnation_changed(old_sandbox_id, new_sandbox_id, result)
            )
        return result

    # =========================================================================
    # RESTART SERVER
    # =========================================================================

    def _begin_restart(self) -> bool:
        health = self.health
        if health.busy or not health.sandbox_id:
            return False
        health.is_restarting_server = True
        logger.info(f"[{self.project_id}] 🔄 Restarting dev server in {health.sandbox_id}")
        return True

    async def restart_server(self) -> Dict[str, Any]:
        """Restart the dev server in the foreground"""
        if not self._begin_restart():
            return {"success": False, "error": "Recovery already in progress"}
        return await self._run_restart()

    async def _run_restart(self) -> Dict[str, Any]:
        health = self.health
        sandbox_id = health.sandbox_id
        try:
            result = await self.backend.start_server(
                sandbox_id, self.project_id, self.user_id, force=True
            )
        except Exception as e:
            result = {"success": False, "error": str(e)}

        if health.sandbox_id != sandbox_id:
            logger.info(f"[{self.project_id}] Restart result discarded, incarnation moved")
            return result

        health.is_restarting_server = False
        if not result.get("success"):
            health.last_error = result.get("error") or "Server restart failed"
            logger.warning(f"⚠️ [{self.project_id}] Restart failed: {health.last_error}")
            if result.get("isAlive") is False:
                health.sandbox_alive = False
                health.server_alive = None
            return result

        health.server_alive = True if result.get("serverReady") else None
        health.last_error = None
        logger.info(f"[{self.project_id}] ✅ Dev server restarted")
        if self._on_server_restarted is not None:
            await _maybe_await(self._on_server_restarted(result))
        return result

    # =========================================================================
    # USER ACTIONS
    # =========================================================================

    def request_manual_retry(self) -> bool:
        """
        Clear a terminal recovery failure and re-arm the attempt counter.

        No-op (returns False) unless recovery is exhausted.
        """
        health = self.health
        if not health.recreation_failed:
            return False
        health.recreation_failed = False
        health.recreation_attempts = 0
        health.last_error = None
        logger.info(f"[{self.project_id}] Manual retry requested, recovery re-armed")
        return True
