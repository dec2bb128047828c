# services/preview_registry.py
"""Live PreviewControllers keyed by (user_id, project_id)."""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from services.preview_session import PreviewController

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str, str], PreviewController]


class PreviewRegistry:
    """
    One controller per user+project. Opening an already-open preview returns
    the existing controller; per-key locks keep concurrent opens from
    starting two monitors.
    """

    def __init__(self, factory: ControllerFactory):
        self._factory = factory
        self._controllers: Dict[Tuple[str, str], PreviewController] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, key: Tuple[str, str]) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def get(self, user_id: str, project_id: str) -> Optional[PreviewController]:
        return self._controllers.get((user_id, project_id))

    def __len__(self) -> int:
        return len(self._controllers)

    async def get_or_open(self, user_id: str, project_id: str) -> PreviewController:
        """
        Raises:
            LookupError: project not found for this user
        """
        key = (user_id, project_id)
        lock = await self._get_lock(key)
        async with lock:
            controller = self._controllers.get(key)
            if controller is not None:
                return controller

            controller = self._factory(project_id, user_id)
            await controller.open()
            self._controllers[key] = controller
            logger.info(
                f"[{user_id}/{project_id}] Preview registered (open: {len(self._controllers)})"
            )
            return controller

    async def close(self, user_id: str, project_id: str) -> bool:
        key = (user_id, project_id)
        lock = await self._get_lock(key)
        async with lock:
            controller = self._controllers.pop(key, None)
            if controller is None:
                return False
            await controller.teardown()
        async with self._locks_lock:
            self._locks.pop(key, None)
        return True

    async def close_all(self):
        for user_id, project_id in list(self._controllers.keys()):
            await self.close(user_id, project_id)
        logger.info("All previews closed")
