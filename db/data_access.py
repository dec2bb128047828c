# db/data_access.py - Data Access Layer
"""
Data access layer for database operations.
Pure CRUD operations without business logic.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any
from datetime import datetime
import logging

from .models import Project, SandboxStatus, ServerStatus

logger = logging.getLogger(__name__)


class ProjectRepository:
    """Repository for project operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_project(self, project_id: str) -> Optional[Project]:
        """Get project by ID"""
        stmt = select(Project).where(Project.id == project_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_project_for_user(
        self, project_id: str, user_id: str
    ) -> Optional[Project]:
        """Get project by ID, only if owned by user_id"""
        stmt = select(Project).where(
            Project.id == project_id, Project.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_project(
        self, project_id: str, user_id: str, title: Optional[str] = None
    ) -> Project:
        """Get existing project or create new one"""
        project = await self.get_project(project_id)
        if not project:
            project = Project(id=project_id, user_id=user_id, title=title)
            self.session.add(project)
            await self.session.flush()
            logger.info(f"✅ Project {project_id} created for user {user_id}")
        return project

    async def update_fields(self, project_id: str, values: Dict[str, Any]) -> bool:
        """
        Field-scoped UPDATE; untouched columns keep whatever concurrent
        writers put there.

        Returns:
            True if a row was updated, False if project not found
        """
        stmt = (
            update(Project)
            .where(Project.id == project_id)
            .values(**values, updated_at=datetime.now())
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount > 0

    async def swap_sandbox(
        self,
        project_id: str,
        expected_sandbox_id: Optional[str],
        new_sandbox_id: str,
        started_at: datetime,
    ) -> bool:
        """
        Replace the sandbox incarnation only if the row still records
        ``expected_sandbox_id``. URLs and readiness are reset with it.

        Returns:
            True if this call won the swap
        """
        if expected_sandbox_id is None:
            condition = Project.sandbox_id.is_(None)
        else:
            condition = Project.sandbox_id == expected_sandbox_id

        stmt = (
            update(Project)
            .where(Project.id == project_id, condition)
            .values(
                sandbox_id=new_sandbox_id,
                sandbox_url=None,
                tunnel_url=None,
                server_ready=False,
                server_status=ServerStatus.CLOSED.value,
                status=SandboxStatus.ACTIVE.value,
                started_at=started_at,
                updated_at=datetime.now(),
            )
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount > 0
