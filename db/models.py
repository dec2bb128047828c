# db/models.py
"""
Database Models
===============

A Project row is the durable record of a project's current sandbox
incarnation: which sandbox backs it, where its preview is served and whether
the dev server was last seen ready.

Column names follow the camelCase convention of the shared Prisma schema.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Boolean,
    Enum,
    Index,
    PrimaryKeyConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum


class Base(AsyncAttrs, DeclarativeBase):
    """Base model for all tables"""

    pass


# =============================================================================
# ENUMS
# =============================================================================


class SandboxStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DESTROYED = "destroyed"


class ServerStatus(str, enum.Enum):
    RUNNING = "running"
    CLOSED = "closed"


# =============================================================================
# PROJECT MODEL
# =============================================================================


class Project(Base):
    """
    Project and its sandbox incarnation.

    ``sandbox_id`` identifies the incarnation; every other sandbox field is
    only meaningful for that id and is reset when it changes.
    """

    __tablename__ = "Project"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="Project_pkey"),
        Index("ix_projects_user_id", "userId"),
        Index("ix_projects_sandbox_id", "sandboxId"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column("userId", String, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Sandbox incarnation
    sandbox_id: Mapped[Optional[str]] = mapped_column(
        "sandboxId", String, nullable=True
    )
    sandbox_url: Mapped[Optional[str]] = mapped_column(
        "sandboxUrl", Text, nullable=True
    )
    tunnel_url: Mapped[Optional[str]] = mapped_column(
        "ngrokUrl", Text, nullable=True
    )
    status: Mapped[str] = mapped_column(
        Enum(
            "active",
            "paused",
            "destroyed",
            name="SandboxStatus",
            native_enum=False,
            create_constraint=False,
        ),
        default=SandboxStatus.ACTIVE.value,
        nullable=False,
    )

    # Dev server
    server_ready: Mapped[bool] = mapped_column(
        "serverReady", Boolean, default=False, nullable=False
    )
    server_status: Mapped[str] = mapped_column(
        "serverStatus",
        Enum(
            "running",
            "closed",
            name="ServerStatus",
            native_enum=False,
            create_constraint=False,
        ),
        default=ServerStatus.CLOSED.value,
        nullable=False,
    )

    # Timestamps
    started_at: Mapped[Optional[datetime]] = mapped_column(
        "startedAt", DateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        "createdAt", DateTime, default=datetime.now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        "updatedAt",
        DateTime,
        default=datetime.now,
        onupdate=datetime.now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Project id={self.id} sandbox={self.sandbox_id} "
            f"status={self.status} server={self.server_status}>"
        )
