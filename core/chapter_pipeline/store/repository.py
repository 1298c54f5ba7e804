"""
Task Record Store Adapter
Database access layer for agent task records and chapter content.
"""
import logging
from typing import Optional, List, Dict, Any

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from ..exceptions import InvalidTaskTransitionError, ChapterNotFoundError
from ..models import TaskStatus, TokenUsage, ChapterStatus
from .models import Base, Project, Chapter, AgentTask, generate_uuid, utcnow

logger = logging.getLogger("ChapterPipeline.Store")


class TaskRepository:
    """
    Repository for task records and the chapters they write to.

    Every public method is a single transaction: it commits on success
    and rolls back on error, so a step's record write is never partial.
    """

    def __init__(self, engine: Engine):
        """Initialize repository with a SQLAlchemy engine."""
        self.engine = engine
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self._session_factory()

    # ==================== PROJECT / CHAPTER OPERATIONS ====================

    def create_project(self, title: str, genre: Optional[str] = None,
                       synopsis: Optional[str] = None) -> Project:
        """Create a new project."""
        with self.get_session() as session:
            project = Project(id=generate_uuid(), title=title, genre=genre, synopsis=synopsis)
            session.add(project)
            session.commit()
            return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.get_session() as session:
            return session.get(Project, project_id)

    def create_chapter(
        self,
        project_id: str,
        chapter_number: int,
        title: Optional[str] = None,
        synopsis: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Chapter:
        """Create a chapter under a project."""
        with self.get_session() as session:
            chapter = Chapter(
                id=generate_uuid(),
                project_id=project_id,
                chapter_number=chapter_number,
                title=title,
                synopsis=synopsis,
                content=content,
                word_count=len(content) if content else 0,
            )
            session.add(chapter)
            session.commit()
            return chapter

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        with self.get_session() as session:
            return session.get(Chapter, chapter_id)

    def update_chapter_content(
        self,
        chapter_id: str,
        content: str,
        status: ChapterStatus = ChapterStatus.DRAFT,
    ) -> Chapter:
        """Overwrite chapter content, recompute its size and reset its status."""
        with self.get_session() as session:
            chapter = session.get(Chapter, chapter_id)
            if chapter is None:
                raise ChapterNotFoundError(chapter_id)
            chapter.content = content
            chapter.word_count = len(content)
            chapter.status = status.value
            chapter.updated_at = utcnow()
            session.commit()
            logger.info(f"Chapter {chapter_id} content updated ({len(content)} chars, {status.value})")
            return chapter

    def update_chapter_summary(self, chapter_id: str, brief: str, detailed: str) -> Chapter:
        with self.get_session() as session:
            chapter = session.get(Chapter, chapter_id)
            if chapter is None:
                raise ChapterNotFoundError(chapter_id)
            chapter.summary_brief = brief
            chapter.summary_detailed = detailed
            chapter.updated_at = utcnow()
            session.commit()
            return chapter

    def set_chapter_status(self, chapter_id: str, status: ChapterStatus) -> Chapter:
        with self.get_session() as session:
            chapter = session.get(Chapter, chapter_id)
            if chapter is None:
                raise ChapterNotFoundError(chapter_id)
            chapter.status = status.value
            chapter.updated_at = utcnow()
            session.commit()
            return chapter

    # ==================== TASK OPERATIONS ====================

    def create_task(
        self,
        project_id: str,
        chapter_id: Optional[str],
        agent_type: str,
        task_type: str,
        pipeline_id: Optional[str] = None,
        sort_order: int = 0,
        input_context: Optional[Dict[str, Any]] = None,
    ) -> AgentTask:
        """Create a task record in `pending`."""
        with self.get_session() as session:
            task = AgentTask(
                id=generate_uuid(),
                project_id=project_id,
                chapter_id=chapter_id,
                pipeline_id=pipeline_id,
                agent_type=agent_type,
                task_type=task_type,
                status=TaskStatus.PENDING.value,
                input_context=input_context or {},
                token_usage={},
                sort_order=sort_order,
            )
            session.add(task)
            session.commit()
            return task

    def get_task(self, task_id: str) -> Optional[AgentTask]:
        with self.get_session() as session:
            return session.get(AgentTask, task_id)

    def _transition(self, task_id: str, new_status: TaskStatus, **fields) -> AgentTask:
        with self.get_session() as session:
            task = session.get(AgentTask, task_id)
            if task is None:
                raise ValueError(f"Task not found: {task_id}")

            current = TaskStatus(task.status)
            if current.is_terminal or new_status.rank <= current.rank:
                raise InvalidTaskTransitionError(task_id, current.value, new_status.value)

            task.status = new_status.value
            for key, value in fields.items():
                setattr(task, key, value)
            session.commit()
            return task

    def enqueue_task(self, task_id: str) -> AgentTask:
        return self._transition(task_id, TaskStatus.QUEUED)

    def mark_task_running(self, task_id: str) -> AgentTask:
        return self._transition(task_id, TaskStatus.RUNNING, started_at=utcnow())

    def complete_task(
        self,
        task_id: str,
        output: str,
        structured: Optional[Dict[str, Any]] = None,
        token_usage: Optional[TokenUsage] = None,
    ) -> AgentTask:
        """Persist a finished step's output in one write."""
        usage = token_usage or TokenUsage()
        return self._transition(
            task_id,
            TaskStatus.COMPLETED,
            output=output,
            structured=structured,
            token_usage=usage.to_dict(),
            completed_at=utcnow(),
        )

    def fail_task(self, task_id: str, error_message: str) -> AgentTask:
        return self._transition(
            task_id,
            TaskStatus.FAILED,
            error_message=error_message,
            completed_at=utcnow(),
        )

    def cancel_task(self, task_id: str) -> AgentTask:
        return self._transition(task_id, TaskStatus.CANCELLED, completed_at=utcnow())

    def cancel_open_tasks(self, pipeline_id: str) -> int:
        """Mark every not-yet-started record of a pipeline as cancelled."""
        open_statuses = [TaskStatus.PENDING.value, TaskStatus.QUEUED.value]
        with self.get_session() as session:
            tasks = session.query(AgentTask).filter(
                AgentTask.pipeline_id == pipeline_id,
                AgentTask.status.in_(open_statuses),
            ).all()
            now = utcnow()
            for task in tasks:
                task.status = TaskStatus.CANCELLED.value
                task.completed_at = now
            session.commit()
            if tasks:
                logger.info(f"Cancelled {len(tasks)} open task(s) for pipeline {pipeline_id}")
            return len(tasks)

    def list_tasks(
        self,
        pipeline_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> List[AgentTask]:
        """List task records in plan order, filtered by any given id."""
        with self.get_session() as session:
            query = session.query(AgentTask)
            if pipeline_id:
                query = query.filter(AgentTask.pipeline_id == pipeline_id)
            if chapter_id:
                query = query.filter(AgentTask.chapter_id == chapter_id)
            if project_id:
                query = query.filter(AgentTask.project_id == project_id)
            return query.order_by(AgentTask.created_at, AgentTask.sort_order).all()

    def latest_completed_task(
        self,
        project_id: str,
        chapter_id: str,
        agent_type: str,
        task_type: Optional[str] = None,
    ) -> Optional[AgentTask]:
        """Most recently completed record for a chapter and agent type (and task type, if given)."""
        with self.get_session() as session:
            query = session.query(AgentTask).filter(
                AgentTask.project_id == project_id,
                AgentTask.chapter_id == chapter_id,
                AgentTask.agent_type == agent_type,
                AgentTask.status == TaskStatus.COMPLETED.value,
            )
            if task_type is not None:
                query = query.filter(AgentTask.task_type == task_type)
            return query.order_by(
                AgentTask.completed_at.desc(),
                AgentTask.created_at.desc(),
            ).first()
