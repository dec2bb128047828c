# db/service.py - Project State Store
"""
Durable store of project sandbox state.

Readers get immutable ProjectRecord snapshots; writers update only the
fields they name. Replacing the sandbox incarnation is a compare-and-swap so
two tabs recreating at once converge on a single winner.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, Optional

from db.db_manager import get_db_session
from db.models import Project, SandboxStatus, ServerStatus
from db.data_access import ProjectRepository

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "sandbox_id",
        "sandbox_url",
        "tunnel_url",
        "status",
        "server_ready",
        "server_status",
        "started_at",
    }
)


@dataclass(frozen=True)
class ProjectRecord:
    """Snapshot of a Project row"""

    id: str
    user_id: str
    title: Optional[str] = None
    sandbox_id: Optional[str] = None
    sandbox_url: Optional[str] = None
    tunnel_url: Optional[str] = None
    status: str = SandboxStatus.ACTIVE.value
    server_ready: bool = False
    server_status: str = ServerStatus.CLOSED.value
    started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, project: Project) -> "ProjectRecord":
        return cls(
            id=project.id,
            user_id=project.user_id,
            title=project.title,
            sandbox_id=project.sandbox_id,
            sandbox_url=project.sandbox_url,
            tunnel_url=project.tunnel_url,
            status=project.status,
            server_ready=bool(project.server_ready),
            server_status=project.server_status,
            started_at=project.started_at,
            created_at=project.created_at,
            updated_at=project.updated_at,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectRecord":
        values = {key: data.get(key) for key in cls.__dataclass_fields__ if key in data}
        for key in ("started_at", "created_at", "updated_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _normalize(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown project fields: {sorted(unknown)}")
    return {
        key: (value.value if isinstance(value, (SandboxStatus, ServerStatus)) else value)
        for key, value in fields.items()
    }


class ProjectStateStore:
    """Project rows via the async SQLAlchemy session manager"""

    async def get(self, project_id: str) -> Optional[ProjectRecord]:
        async with get_db_session() as session:
            project = await ProjectRepository(session).get_project(project_id)
            return ProjectRecord.from_model(project) if project else None

    async def get_for_user(
        self, project_id: str, user_id: str
    ) -> Optional[ProjectRecord]:
        async with get_db_session() as session:
            project = await ProjectRepository(session).get_project_for_user(
                project_id, user_id
            )
            return ProjectRecord.from_model(project) if project else None

    async def ensure_project(
        self, project_id: str, user_id: str, title: Optional[str] = None
    ) -> ProjectRecord:
        async with get_db_session() as session:
            project = await ProjectRepository(session).get_or_create_project(
                project_id, user_id, title
            )
            return ProjectRecord.from_model(project)

    async def update(self, project_id: str, **fields) -> bool:
        """
        Partial update of the named fields (last write wins per field).

        Raises:
            ValueError: on a field that is not part of the project state
        """
        values = _normalize(fields)
        if not values:
            return False
        async with get_db_session() as session:
            updated = await ProjectRepository(session).update_fields(
                project_id, values
            )
        if not updated:
            logger.warning(f"⚠️ [{project_id}] Update skipped, project not found")
        else:
            logger.debug(f"[{project_id}] Updated {sorted(values)}")
        return updated

    async def swap_incarnation(
        self,
        project_id: str,
        expected_sandbox_id: Optional[str],
        new_sandbox_id: str,
        started_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record ``new_sandbox_id`` only if the row still holds
        ``expected_sandbox_id``. Returns False if another writer got there first.
        """
        async with get_db_session() as session:
            swapped = await ProjectRepository(session).swap_sandbox(
                project_id,
                expected_sandbox_id,
                new_sandbox_id,
                started_at or datetime.now(),
            )
        if swapped:
            logger.info(
                f"✅ [{project_id}] Incarnation {expected_sandbox_id} -> {new_sandbox_id}"
            )
        else:
            logger.warning(
                f"⚠️ [{project_id}] Incarnation swap lost (expected {expected_sandbox_id})"
            )
        return swapped


# Global instance
project_store = ProjectStateStore()
