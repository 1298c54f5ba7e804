"""
Chapter Pipeline Database Models
SQLAlchemy models for projects, chapters and agent task records.
"""
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import (
    String, Text, Integer, DateTime, JSON, ForeignKey, Index
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base
import uuid

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Project(Base):
    """A novel project that owns chapters."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    genre: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    synopsis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    chapters: Mapped[List["Chapter"]] = relationship(
        "Chapter",
        back_populates="project",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Project {self.title} ({self.id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "genre": self.genre,
            "synopsis": self.synopsis,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Chapter(Base):
    """
    Chapter model - the prose the pipeline produces.

    Attributes:
        content: Current chapter text (nullable until first draft)
        word_count: Length-derived size metric (character count)
        status: Workflow status (outlined, drafting, draft, editing, reviewed, final)
        summary_brief / summary_detailed: Two-tier summary
    """

    __tablename__ = "chapters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    chapter_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    synopsis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="outlined", nullable=False)
    summary_brief: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary_detailed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project: Mapped["Project"] = relationship("Project", back_populates="chapters")

    __table_args__ = (
        Index("idx_chapters_project_number", "project_id", "chapter_number", unique=True),
    )

    def __repr__(self):
        return f"<Chapter {self.chapter_number} ({self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "chapter_number": self.chapter_number,
            "title": self.title,
            "synopsis": self.synopsis,
            "content": self.content,
            "word_count": self.word_count,
            "status": self.status,
            "summary_brief": self.summary_brief,
            "summary_detailed": self.summary_detailed,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AgentTask(Base):
    """
    AgentTask model - durable record of one executed plan step.

    Status moves forward only: pending -> queued -> running ->
    completed | failed | cancelled.
    """

    __tablename__ = "agent_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    chapter_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    pipeline_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    agent_type: Mapped[str] = mapped_column(String(40), nullable=False)
    task_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)

    input_context: Mapped[dict] = mapped_column(JSON, default=dict)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    structured: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    token_usage: Mapped[dict] = mapped_column(JSON, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_agent_tasks_project_status", "project_id", "status"),
        Index("idx_agent_tasks_chapter", "chapter_id"),
        Index("idx_agent_tasks_pipeline", "pipeline_id"),
    )

    def __repr__(self):
        return f"<AgentTask {self.agent_type}/{self.task_type} {self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "chapter_id": self.chapter_id,
            "pipeline_id": self.pipeline_id,
            "agent_type": self.agent_type,
            "task_type": self.task_type,
            "status": self.status,
            "output": self.output,
            "structured": self.structured,
            "token_usage": self.token_usage or {},
            "error_message": self.error_message,
            "sort_order": self.sort_order,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }
