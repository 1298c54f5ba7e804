"""
Chapter Pipeline Service Layer

Handles business logic between API and pipeline core.
"""

import logging
from typing import Optional, Dict, Any, List, Tuple

from config.settings import settings
from core.chapter_pipeline import (
    AnthropicAgentExecutor,
    ChapterNotFoundError,
    ChapterPipelineExecutor,
    ChapterRecovery,
    ChapterStepRunner,
    ChapterSummaryGenerator,
    DefaultPlanner,
    EventStream,
    MockAgentExecutor,
    PipelineConfig,
    PipelineRegistry,
    TaskRepository,
)
from core.database import create_db_engine, get_database_url


logger = logging.getLogger("ChapterPipeline.Service")


class PipelineService:
    """
    Service layer for the chapter pipeline.

    Owns the registry, the executor and the repository for the process
    and exposes the operations the HTTP routes need.
    """

    def __init__(
        self,
        repository: TaskRepository,
        agent_executor: Any = None,
        config: Optional[PipelineConfig] = None,
        registry: Optional[PipelineRegistry] = None,
        planner: Any = None,
    ):
        self.config = config or PipelineConfig()
        self.repository = repository

        if agent_executor is None:
            logger.warning("No agent executor provided, using mock agents")
            agent_executor = MockAgentExecutor()
        self.agent_executor = agent_executor

        self.registry = registry or PipelineRegistry(retention_seconds=self.config.retention_seconds)
        self.summary_generator = ChapterSummaryGenerator(repository, agent_executor, self.config)
        self.recovery = ChapterRecovery(repository)
        self.executor = ChapterPipelineExecutor(
            repository=repository,
            planner=planner or DefaultPlanner(repository),
            agent_executor=agent_executor,
            registry=self.registry,
            config=self.config,
            summary_generator=self.summary_generator,
        )
        self.step_runner = ChapterStepRunner(
            repository=repository,
            agent_executor=agent_executor,
            config=self.config,
            summary_generator=self.summary_generator,
        )

    # ==================== START ====================

    def _build_context(
        self,
        mode: str,
        custom_steps: Optional[List[Dict[str, Any]]],
        initial_context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        context = dict(initial_context or {})
        context["mode"] = mode
        if custom_steps:
            context["custom_steps"] = custom_steps
        return context

    def _check_chapter(self, project_id: str, chapter_id: Optional[str]):
        if not chapter_id:
            return
        chapter = self.repository.get_chapter(chapter_id)
        if chapter is None or chapter.project_id != project_id:
            raise ChapterNotFoundError(chapter_id)

    async def start_streaming(
        self,
        project_id: str,
        chapter_id: Optional[str] = None,
        mode: str = "write",
        custom_steps: Optional[List[Dict[str, Any]]] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, EventStream]:
        """Start a pipeline observed by a new event stream."""
        self._check_chapter(project_id, chapter_id)
        stream = EventStream(heartbeat_interval=self.config.heartbeat_interval)
        pipeline_id = await self.executor.start(
            project_id,
            chapter_id,
            self._build_context(mode, custom_steps, initial_context),
            stream=stream,
        )
        return pipeline_id, stream

    async def start_detached(
        self,
        project_id: str,
        chapter_id: Optional[str] = None,
        mode: str = "write",
        custom_steps: Optional[List[Dict[str, Any]]] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Start a pipeline nobody streams; observe it through status queries."""
        self._check_chapter(project_id, chapter_id)
        return await self.executor.start(
            project_id,
            chapter_id,
            self._build_context(mode, custom_steps, initial_context),
        )

    async def start_step_streaming(
        self,
        project_id: str,
        chapter_id: str,
        step_index: int,
    ) -> Tuple[str, EventStream]:
        """Run one writing-plan step observed by a new event stream."""
        stream = EventStream(heartbeat_interval=self.config.heartbeat_interval)
        task_id = await self.step_runner.start(project_id, chapter_id, step_index, stream)
        return task_id, stream

    # ==================== STATUS / CONTROL ====================

    def status(self, pipeline_id: str) -> dict:
        return self.registry.status(pipeline_id)

    def list_active(self) -> List[str]:
        return self.registry.list_active()

    def control(self, pipeline_id: str, action: str) -> dict:
        logger.info(f"Control '{action}' for pipeline {pipeline_id}")
        return self.registry.control(pipeline_id, action)

    # ==================== TASK RECORDS ====================

    def list_tasks(
        self,
        pipeline_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
    ) -> List[dict]:
        return [t.to_dict() for t in self.repository.list_tasks(pipeline_id=pipeline_id, chapter_id=chapter_id)]

    # ==================== RECOVERY / SUMMARY ====================

    def recover_content(self, project_id: str, chapter_id: str) -> dict:
        return self.recovery.recover(project_id, chapter_id)

    async def generate_summary(self, chapter_id: str) -> dict:
        return await self.summary_generator.generate(chapter_id)

    async def shutdown(self):
        await self.executor.shutdown()
        await self.step_runner.shutdown()


# Global service instance
_service: Optional[PipelineService] = None


def build_agent_executor(config: PipelineConfig):
    """Anthropic-backed agents when a key is configured, mock agents otherwise."""
    if settings.agents_enabled():
        return AnthropicAgentExecutor(
            api_key=settings.anthropic_api_key,
            config=config,
            base_url=settings.anthropic_base_url,
            timeout=settings.agent_timeout_seconds,
            max_retries=settings.agent_max_retries,
        )
    if not settings.use_mock_agents:
        logger.warning("ANTHROPIC_API_KEY not set, falling back to mock agents")
    return MockAgentExecutor()


def get_pipeline_service() -> PipelineService:
    """Get or create the global service instance."""
    global _service
    if _service is None:
        config = PipelineConfig.from_settings(settings)
        engine = create_db_engine(get_database_url(settings.database_name))
        _service = PipelineService(
            repository=TaskRepository(engine),
            agent_executor=build_agent_executor(config),
            config=config,
        )
    return _service


def set_pipeline_service(service: Optional[PipelineService]):
    """Replace the global instance (tests, custom wiring)."""
    global _service
    _service = service
