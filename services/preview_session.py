# services/preview_session.py
"""
Preview Session
===============

Client-facing view of a project's preview.

``derive_session`` is a pure function of the project row and the current
HealthState, so a session can always be rebuilt after a crash or reload.
``PreviewController`` owns the monitor and coordinator for one open preview
and exposes the commands the UI may issue.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from db.models import SandboxStatus
from db.service import ProjectRecord
from services.health_monitor import HealthMonitor, PollSchedule, ProbeTarget, TickResult
from services.recovery_coordinator import HealthState, RecoveryCoordinator
from services.settings import PreviewSettings, get_preview_settings

logger = logging.getLogger(__name__)


class PreviewStatus(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    RECREATING = "recreating"
    FAILED = "failed"


@dataclass(frozen=True)
class PreviewSession:
    """Read model handed to the UI"""

    project_id: str
    status: PreviewStatus
    sandbox_id: Optional[str] = None
    url: Optional[str] = None
    tunnel_url: Optional[str] = None
    reconnecting: bool = False
    error: Optional[str] = None
    can_retry: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "status": self.status.value,
            "sandboxId": self.sandbox_id,
            "url": self.url,
            "ngrokUrl": self.tunnel_url,
            "reconnecting": self.reconnecting,
            "error": self.error,
            "canRetry": self.can_retry,
        }


def derive_session(
    project_id: str, project: Optional[ProjectRecord], health: HealthState
) -> PreviewSession:
    """
    Precedence: failed > recreating > initializing > degraded > ready.

    Recorded URLs are only presented as ready after a live check in the
    current incarnation.
    """
    if health.recreation_failed:
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.FAILED,
            sandbox_id=health.sandbox_id,
            error=health.last_error or "Sandbox could not be recreated",
            can_retry=True,
        )

    if health.is_recreating:
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.RECREATING,
            sandbox_id=health.sandbox_id,
        )

    if (
        project is None
        or not project.sandbox_id
        or project.sandbox_id != health.sandbox_id
        or health.sandbox_alive is None
    ):
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.INITIALIZING,
            sandbox_id=project.sandbox_id if project else None,
        )

    urls = dict(
        sandbox_id=project.sandbox_id,
        url=project.sandbox_url,
        tunnel_url=project.tunnel_url,
    )

    if project.status != SandboxStatus.ACTIVE.value or not health.sandbox_alive:
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.DEGRADED,
            reconnecting=True,
            error=health.last_error,
            **urls,
        )

    if not project.sandbox_url or not project.tunnel_url:
        # sandbox is up, dev server never recorded
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.INITIALIZING,
            sandbox_id=project.sandbox_id,
            reconnecting=health.is_restarting_server,
        )

    if health.server_alive is None and not health.is_restarting_server:
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.INITIALIZING,
            sandbox_id=project.sandbox_id,
        )

    if health.is_restarting_server or health.server_alive is False:
        return PreviewSession(
            project_id=project_id,
            status=PreviewStatus.DEGRADED,
            reconnecting=True,
            error=health.last_error,
            **urls,
        )

    return PreviewSession(project_id=project_id, status=PreviewStatus.READY, **urls)


# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class IncarnationChanged:
    """The project moved to a new sandbox; caches tied to the old one are invalid"""

    project_id: str
    old_sandbox_id: Optional[str]
    new_sandbox_id: str
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class PreviewReloadRequested:
    """The dev server was restarted; preview frames should reload"""

    project_id: str
    sandbox_id: Optional[str]
    at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SessionChanged:
    session: PreviewSession


@dataclass(frozen=True)
class PreviewClosed:
    """Last event of a preview; subscribers should stop listening"""

    project_id: str


PreviewEvent = Union[
    IncarnationChanged, PreviewReloadRequested, SessionChanged, PreviewClosed
]
Listener = Callable[[PreviewEvent], Any]


# =============================================================================
# CONTROLLER
# =============================================================================


class PreviewController:
    """
    One open preview: project snapshot, HealthState, coordinator and monitor.

    Args:
        project_id / user_id: the preview's project and its owner
        backend: PreviewBackend used by the coordinator and monitor
        settings: tunables (poll schedule, retries, initial delay)
        schedule / initial_delay: overrides for the monitor
    """

    def __init__(
        self,
        project_id: str,
        user_id: str,
        backend,
        settings: Optional[PreviewSettings] = None,
        schedule: Optional[PollSchedule] = None,
        initial_delay: Optional[float] = None,
    ):
        self.settings = settings or get_preview_settings()
        self.project_id = project_id
        self.user_id = user_id
        self.backend = backend
        self.project: Optional[ProjectRecord] = None
        self.health = HealthState()
        self.coordinator = RecoveryCoordinator(
            project_id,
            user_id,
            backend,
            health=self.health,
            max_retries=self.settings.max_recreation_retries,
            on_incarnation_changed=self._handle_incarnation_changed,
            on_server_restarted=self._handle_server_restarted,
        )
        self.monitor = HealthMonitor(
            project_id,
            backend,
            self.coordinator,
            target=self._target,
            schedule=schedule or PollSchedule.from_settings(self.settings),
            initial_delay=(
                self.settings.monitor_initial_delay
                if initial_delay is None
                else initial_delay
            ),
            on_tick=self._handle_tick,
        )
        self._listeners: List[Listener] = []
        self._last_session: Optional[PreviewSession] = None
        self._closed = False

    # =========================================================================
    # READ MODEL & EVENTS
    # =========================================================================

    @property
    def session(self) -> PreviewSession:
        return derive_session(self.project_id, self.project, self.health)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: PreviewEvent):
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"[{self.project_id}] Preview listener failed: {e}")

    async def _publish_session(self):
        session = self.session
        if session != self._last_session:
            self._last_session = session
            await self._emit(SessionChanged(session))

    def _target(self) -> ProbeTarget:
        if self.project is None:
            return ProbeTarget(self.health.sandbox_id, None)
        return ProbeTarget(self.project.sandbox_id, self.project.tunnel_url)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self) -> PreviewSession:
        """
        Load the project and start monitoring.

        Raises:
            LookupError: project not found for this user
        """
        self.project = await self.backend.get_project(self.project_id, self.user_id)
        if self.project is None:
            raise LookupError(f"Project {self.project_id} not found")

        self.health.reset_for(self.project.sandbox_id)
        logger.info(
            f"[{self.project_id}] Preview opened (sandbox={self.project.sandbox_id}, "
            f"status={self.project.status})"
        )

        if not self.project.sandbox_id:
            self.coordinator.schedule_recreate()
        elif not self.project.tunnel_url:
            self.coordinator.schedule_restart()

        self.monitor.start()
        await self._publish_session()
        return self.session

    async def teardown(self):
        """Stop monitoring. In-flight recovery runs to completion unobserved."""
        if self._closed:
            return
        self._closed = True
        await self.monitor.stop()
        await self._emit(PreviewClosed(self.project_id))
        self._listeners.clear()
        logger.info(f"[{self.project_id}] Preview closed")

    def on_visibility_change(self, visible: bool):
        if not self._closed:
            self.monitor.notify_visibility(visible)

    # =========================================================================
    # COMMANDS
    # =========================================================================

    async def request_manual_retry(self) -> bool:
        """'Try Again': re-arm recovery and check immediately. No-op unless failed."""
        if not self.coordinator.request_manual_retry():
            return False
        if self.health.sandbox_alive is False or not self.health.sandbox_id:
            self.coordinator.schedule_recreate()
        self.monitor.trigger()
        await self._publish_session()
        return True

    async def request_restart_server(self) -> bool:
        """Restart the dev server on the current sandbox"""
        started = self.coordinator.schedule_restart()
        await self._publish_session()
        return started

    async def wait_idle(self):
        await self.coordinator.wait_idle()

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    async def _handle_tick(self, result: TickResult):
        if not self._closed:
            await self._publish_session()

    async def _handle_incarnation_changed(
        self, old_sandbox_id: Optional[str], new_sandbox_id: str, result: Dict[str, Any]
    ):
        # full reload: nothing cached for the old sandbox survives
        project = await self.backend.get_project(self.project_id, self.user_id)
        if project is not None:
            self.project = project
        if self._closed:
            return
        self.monitor.reset_for_incarnation()
        await self._emit(IncarnationChanged(self.project_id, old_sandbox_id, new_sandbox_id))
        await self._publish_session()

    async def _handle_server_restarted(self, result: Dict[str, Any]):
        project = await self.backend.get_project(self.project_id, self.user_id)
        if project is not None:
            self.project = project
        if self._closed:
            return
        await self._emit(PreviewReloadRequested(self.project_id, self.health.sandbox_id))
        await self._publish_session()
