# services/health_monitor.py
"""
Health Monitor
==============

Polls sandbox and dev-server liveness for one open preview and feeds the
results to the RecoveryCoordinator.

- Escalating schedule: 10s for the first checks, then 30s, then 60s
- Hidden previews are not polled; refocus triggers exactly one immediate check
- A new sandbox incarnation resets the schedule and discards in-flight results
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from services.recovery_coordinator import RecoveryAction, RecoveryCoordinator
from services.settings import PreviewSettings, get_preview_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollSchedule:
    """
    Interval before the next check as a pure function of completed checks.

    With ``intervals=(10, 30, 60)`` and ``tier_ticks=(3, 3)``: checks 1-3 are
    10s apart, checks 4-6 are 30s apart, every later check 60s.
    """

    intervals: Tuple[float, ...] = (10.0, 30.0, 60.0)
    tier_ticks: Tuple[int, ...] = (3, 3)

    def __post_init__(self):
        if len(self.intervals) != len(self.tier_ticks) + 1:
            raise ValueError("intervals must have exactly one more entry than tier_ticks")

    @classmethod
    def from_settings(cls, settings: PreviewSettings) -> "PollSchedule":
        return cls(
            intervals=tuple(settings.poll_tier_intervals),
            tier_ticks=tuple(settings.poll_tier_ticks),
        )

    def interval_for(self, completed_checks: int) -> float:
        boundary = 0
        for ticks, interval in zip(self.tier_ticks, self.intervals):
            boundary += ticks
            if completed_checks < boundary:
                return interval
        return self.intervals[-1]


@dataclass(frozen=True)
class ProbeTarget:
    sandbox_id: Optional[str]
    tunnel_url: Optional[str]


@dataclass(frozen=True)
class TickResult:
    sandbox_id: Optional[str]
    sandbox_alive: bool
    server_alive: Optional[bool]
    action: RecoveryAction


class MonitorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthMonitor:
    """
    Per-preview polling loop.

    Args:
        project_id: for logging
        backend: PreviewBackend (``check_sandbox`` / ``check_server``)
        coordinator: receives every accepted tick
        target: returns the current sandbox id and tunnel URL
        schedule: poll intervals
        initial_delay: wait before the first check after ``start()``
        on_tick: called with each accepted TickResult
    """

    def __init__(
        self,
        project_id: str,
        backend,
        coordinator: RecoveryCoordinator,
        target: Callable[[], ProbeTarget],
        schedule: Optional[PollSchedule] = None,
        initial_delay: Optional[float] = None,
        on_tick: Optional[Callable[[TickResult], Any]] = None,
    ):
        settings = get_preview_settings()
        self.project_id = project_id
        self.backend = backend
        self.coordinator = coordinator
        self._target = target
        self.schedule = schedule or PollSchedule.from_settings(settings)
        self.initial_delay = (
            settings.monitor_initial_delay if initial_delay is None else initial_delay
        )
        self._on_tick = on_tick

        self.state = MonitorState.IDLE
        self.checks = 0
        self._generation = 0
        self._visible = asyncio.Event()
        self._visible.set()
        self._wake = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def visible(self) -> bool:
        return self._visible.is_set()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self):
        """Start a fresh polling cycle (no-op if already running)"""
        if self.running:
            return
        self._stopping = False
        self.checks = 0
        self.state = MonitorState.POLLING
        self._loop_task = asyncio.create_task(
            self._run(), name=f"health-monitor:{self.project_id}"
        )
        logger.info(f"[{self.project_id}] Health monitor started")

    async def stop(self):
        """Stop polling and cancel any in-flight check"""
        self._stopping = True
        for task in (self._tick_task, self._loop_task):
            if task is not None and not task.done():
                task.cancel()
        if self._loop_task is not None:
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._tick_task = None
        self.state = MonitorState.IDLE
        logger.info(f"[{self.project_id}] Health monitor stopped")

    def notify_visibility(self, visible: bool):
        """Preview hidden or refocused"""
        if not visible:
            self._visible.clear()
            logger.debug(f"[{self.project_id}] Preview hidden, polling paused")
            return
        self._visible.set()
        self._wake.set()
        logger.debug(f"[{self.project_id}] Preview visible, checking now")

    def trigger(self):
        """Run the next check immediately"""
        self._wake.set()

    def reset_for_incarnation(self):
        """Fast tier again and drop results of checks against the old sandbox"""
        self._generation += 1
        self.checks = 0
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
        if self.running:
            self.state = MonitorState.POLLING
            self._wake.set()

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run(self):
        await self._wait(self.initial_delay)
        while True:
            if not self._visible.is_set():
                await self._visible.wait()
                self._wake.clear()
            await self._run_tick()
            await self._wait(self.schedule.interval_for(self.checks))

    async def _run_tick(self):
        self._tick_task = asyncio.create_task(self.tick())
        try:
            await self._tick_task
        except asyncio.CancelledError:
            if self._stopping:
                raise
            logger.debug(f"[{self.project_id}] Check cancelled, incarnation changed")
        except Exception as e:
            logger.error(f"❌ [{self.project_id}] Health check failed: {e}", exc_info=True)
        finally:
            self._tick_task = None

    async def tick(self) -> Optional[TickResult]:
        """
        One check: sandbox liveness, then dev-server liveness if the sandbox
        is alive and a tunnel URL is recorded.

        Returns None when the result was discarded because the incarnation
        changed while probing.
        """
        generation = self._generation
        target = self._target()

        sandbox_alive = await self.backend.check_sandbox(target.sandbox_id)
        if generation != self._generation:
            return None

        server_alive: Optional[bool] = None
        if sandbox_alive and target.tunnel_url:
            server_alive = await self.backend.check_server(
                target.tunnel_url, target.sandbox_id
            )
            if generation != self._generation:
                return None

        self.checks += 1
        healthy = sandbox_alive and server_alive is not False
        self.state = MonitorState.HEALTHY if healthy else MonitorState.UNHEALTHY
        logger.info(
            f"[{self.project_id}] Check #{self.checks}: sandbox={sandbox_alive} "
            f"server={server_alive}"
        )

        action = self.coordinator.observe(target.sandbox_id, sandbox_alive, server_alive)
        result = TickResult(target.sandbox_id, sandbox_alive, server_alive, action)
        if self._on_tick is not None:
            outcome = self._on_tick(result)
            if inspect.isawaitable(outcome):
                await outcome
        return result
