# services/file_watcher.py
"""
App Directory Watcher
=====================

Forwards source edits made inside a sandbox to a notifier while the dev
server runs. VCS, dependency, build output and editor temp files are skipped.

One watch per project; starting a new one replaces the previous watch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sandbox_client import SandboxHandle
from services.errors import SandboxUnreachable, TransientCommandError

logger = logging.getLogger(__name__)

IGNORED_DIRS = (".git/", "node_modules/", ".expo/", ".next/", "dist/", "build/")
IGNORED_SUFFIXES = (".tmp", ".swp", "~")


@dataclass(frozen=True)
class FileChange:
    """One file created, modified or deleted under the app directory"""

    project_id: str
    path: str
    action: str
    at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "file_change",
            "projectId": self.project_id,
            "path": self.path,
            "action": self.action,
            "at": self.at.isoformat(),
        }


ChangeNotifier = Callable[[FileChange], Any]


def log_file_change(change: FileChange) -> None:
    logger.info(f"📝 [{change.project_id}] {change.action}: {change.path}")


def relative_path(name: str, app_dir: str) -> str:
    prefix = app_dir.rstrip("/") + "/"
    if name.startswith(prefix):
        return name[len(prefix):]
    if name == app_dir:
        return ""
    if name.startswith("./"):
        return name[2:]
    return name


def is_ignored(path: str) -> bool:
    if path.startswith("."):
        return True
    if any(part in path for part in IGNORED_DIRS):
        return True
    return path.endswith(IGNORED_SUFFIXES)


def action_for(event_type: str) -> str:
    event_type = event_type.lower()
    if "create" in event_type:
        return "created"
    if "remove" in event_type or "delete" in event_type:
        return "deleted"
    return "modified"


def to_file_change(project_id: str, event: Any, app_dir: str) -> Optional[FileChange]:
    """
    Map an SDK filesystem event to a FileChange.

    Returns None for events outside the app directory's source files.
    """
    path = relative_path(getattr(event, "name", "") or "", app_dir)
    if not path or is_ignored(path):
        return None
    event_type = getattr(event, "type", None)
    event_type = getattr(event_type, "value", event_type) or "modified"
    return FileChange(project_id=project_id, path=path, action=action_for(str(event_type)))


class SandboxFileWatcher:
    """
    Watches the app directory of each project's current sandbox.

    Args:
        app_dir: directory watched recursively
        notifier: called with each accepted FileChange
    """

    def __init__(self, app_dir: str, notifier: Optional[ChangeNotifier] = None):
        self.app_dir = app_dir
        self._notifier = notifier or log_file_change
        self._watches: Dict[str, Tuple[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._watches)

    def watched_sandbox(self, project_id: str) -> Optional[str]:
        entry = self._watches.get(project_id)
        return entry[0] if entry else None

    def _forward(self, project_id: str, event: Any):
        change = to_file_change(project_id, event, self.app_dir)
        if change is None:
            return
        try:
            self._notifier(change)
        except Exception as e:
            logger.warning(f"File change notifier failed: {e}")

    async def start(self, project_id: str, sandbox: SandboxHandle) -> bool:
        """Watch ``sandbox`` for ``project_id``. Failures are logged, not raised."""
        await self.stop(project_id)
        try:
            handle = await sandbox.files.watch_dir(
                self.app_dir,
                on_event=lambda event: self._forward(project_id, event),
                recursive=True,
            )
        except (SandboxUnreachable, TransientCommandError) as e:
            logger.warning(f"⚠️ [{project_id}] Failed to start file watcher: {e}")
            return False

        self._watches[project_id] = (sandbox.sandbox_id, handle)
        logger.info(f"✅ [{project_id}] Watching {self.app_dir} in {sandbox.sandbox_id}")
        return True

    async def stop(self, project_id: str) -> bool:
        entry = self._watches.pop(project_id, None)
        if entry is None:
            return False
        sandbox_id, handle = entry
        try:
            await handle.stop()
        except Exception as e:
            logger.info(f"[{project_id}] Watch on {sandbox_id} already closed: {e}")
        logger.info(f"[{project_id}] Stopped watching {sandbox_id}")
        return True

    async def stop_all(self):
        for project_id in list(self._watches):
            await self.stop(project_id)
