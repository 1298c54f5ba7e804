"""
Chapter Pipeline Executor

Walks a plan of agent steps for one chapter:
1. Planning      - ask the planner for the step list, announce it
2. Step loop     - boundary check (cancel / pause), run the agent,
                   persist the task record, stream progress
3. Finalization  - write the chapter draft, generate its summary,
                   announce completion and close the streams

Steps run strictly in order on the pipeline's own asyncio task.
Pause and cancel are only honored between steps.
"""

import asyncio
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .ai_adapter import AgentExecutor
from .config import PipelineConfig
from .control import ControlToken
from .exceptions import PlanningError
from .models import (
    AgentOutput,
    AgentType,
    PipelineProgress,
    PipelineState,
    PlanStep,
    StreamEvent,
)
from .parsing import Structured, extract_chapter_text, extract_json_object
from .planner import Planner
from .registry import PipelineRegistry
from .store import TaskRepository
from .store.models import utcnow
from .streaming import EventStream

logger = logging.getLogger("ChapterPipeline.Executor")

# Agents whose output is prose; everything else may carry a JSON payload.
PROSE_AGENTS = (AgentType.WRITER, AgentType.EDITOR)


class ChapterPipeline:
    """
    In-memory state of one run.

    Mutated by its executing task (state, progress, outputs) and by the
    control surface (pause / resume / cancel) from request handlers.
    """

    def __init__(
        self,
        project_id: str,
        chapter_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        cancel_when_unobserved: bool = True,
        pipeline_id: Optional[str] = None,
    ):
        self.pipeline_id = pipeline_id or str(uuid.uuid4())
        self.project_id = project_id
        self.chapter_id = chapter_id
        self.initial_context = dict(initial_context or {})
        self.cancel_when_unobserved = cancel_when_unobserved

        self.token = ControlToken()
        self.plan: List[PlanStep] = []
        self.outputs: List[AgentOutput] = []
        self.error: Optional[str] = None
        self.created_at = utcnow()
        self.finished_at: Optional[datetime] = None

        self._lock = threading.Lock()
        self._state = PipelineState.PLANNING
        self._progress = PipelineProgress()
        self._outputs_by_step: Dict[int, AgentOutput] = {}
        self._observers: List[EventStream] = []

    # === State ===

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> PipelineProgress:
        with self._lock:
            return PipelineProgress(
                completed_steps=self._progress.completed_steps,
                total_steps=self._progress.total_steps,
                current_agent_type=self._progress.current_agent_type,
            )

    def set_state(self, new_state: PipelineState) -> bool:
        """Move to `new_state`. Terminal states are final."""
        with self._lock:
            old_state = self._state
            if old_state == new_state or old_state.is_terminal:
                return False
            self._state = new_state
            if new_state.is_terminal:
                self.finished_at = utcnow()
        logger.info(f"Pipeline {self.pipeline_id}: {old_state.value} -> {new_state.value}")
        return True

    def set_plan(self, steps: List[PlanStep]):
        with self._lock:
            self.plan = list(steps)
            self._progress.total_steps = len(steps)

    def begin_step(self, agent_type: AgentType):
        with self._lock:
            self._progress.current_agent_type = agent_type

    def record_output(self, index: int, output: AgentOutput):
        with self._lock:
            self.outputs.append(output)
            self._outputs_by_step[index] = output
            self._progress.completed_steps += 1
            self._progress.current_agent_type = None

    def output_for_step(self, index: int) -> Optional[AgentOutput]:
        with self._lock:
            return self._outputs_by_step.get(index)

    def snapshot(self) -> dict:
        """State and progress read together."""
        with self._lock:
            return {
                "pipelineId": self.pipeline_id,
                "state": self._state.value,
                "progress": self._progress.to_dict(),
            }

    # === Control ===

    def pause(self) -> bool:
        if self.state.is_terminal:
            logger.info(f"Pipeline {self.pipeline_id}: pause ignored ({self.state.value})")
            return False
        applied = self.token.request_pause()
        logger.info(f"Pipeline {self.pipeline_id}: pause requested")
        return applied

    def resume(self) -> bool:
        if self.state.is_terminal:
            logger.info(f"Pipeline {self.pipeline_id}: resume ignored ({self.state.value})")
            return False
        was_paused = self.token.request_resume()
        with self._lock:
            if self._state == PipelineState.PAUSED and not self.token.cancelled:
                self._state = PipelineState.RUNNING
                logger.info(f"Pipeline {self.pipeline_id}: paused -> running")
        logger.info(f"Pipeline {self.pipeline_id}: resume requested (was paused: {was_paused})")
        return was_paused

    def cancel(self) -> bool:
        if self.state.is_terminal:
            logger.info(f"Pipeline {self.pipeline_id}: cancel ignored ({self.state.value})")
            return False
        applied = self.token.request_cancel()
        if applied:
            logger.info(f"Pipeline {self.pipeline_id}: cancel requested")
        return applied

    # === Observers ===

    def subscribe(self, stream: EventStream):
        stream.on_disconnect = self._observer_disconnected
        with self._lock:
            self._observers.append(stream)

    def unsubscribe(self, stream: EventStream):
        with self._lock:
            if stream in self._observers:
                self._observers.remove(stream)

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    def emit(self, event: StreamEvent):
        with self._lock:
            observers = list(self._observers)
        for stream in observers:
            stream.send(event)

    def close_streams(self):
        with self._lock:
            observers = list(self._observers)
            self._observers.clear()
        for stream in observers:
            stream.close()

    def _observer_disconnected(self, stream: EventStream):
        with self._lock:
            if stream in self._observers:
                self._observers.remove(stream)
            remaining = len(self._observers)
        if remaining == 0 and self.cancel_when_unobserved and not self.state.is_terminal:
            logger.info(f"Pipeline {self.pipeline_id}: last observer left, cancelling")
            self.cancel()


class ChapterPipelineExecutor:
    """
    Starts pipelines and owns their asyncio tasks.

    Usage:
        executor = ChapterPipelineExecutor(repository, planner, agents, registry)
        pipeline_id = await executor.start(project_id, chapter_id, {"mode": "write"}, stream)
    """

    def __init__(
        self,
        repository: TaskRepository,
        planner: Planner,
        agent_executor: AgentExecutor,
        registry: PipelineRegistry,
        config: Optional[PipelineConfig] = None,
        summary_generator=None,
    ):
        self.repository = repository
        self.planner = planner
        self.agent_executor = agent_executor
        self.registry = registry
        self.config = config or PipelineConfig()
        self.summary_generator = summary_generator
        self._tasks: Dict[str, asyncio.Task] = {}

    async def start(
        self,
        project_id: str,
        chapter_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        stream: Optional[EventStream] = None,
    ) -> str:
        """
        Register a pipeline and begin executing it in the background.

        Returns the pipeline id immediately; progress is observed through
        `stream` and through the registry.
        """
        pipeline = ChapterPipeline(
            project_id=project_id,
            chapter_id=chapter_id,
            initial_context=initial_context,
            cancel_when_unobserved=self.config.cancel_on_disconnect,
        )
        if stream is not None:
            pipeline.subscribe(stream)

        self.registry.register(pipeline)
        task = asyncio.create_task(self._run(pipeline))
        self._tasks[pipeline.pipeline_id] = task
        logger.info(
            f"Started pipeline {pipeline.pipeline_id} "
            f"(project={project_id}, chapter={chapter_id})"
        )
        return pipeline.pipeline_id

    async def wait(self, pipeline_id: str):
        """Wait until a pipeline's task has finished."""
        task = self._tasks.get(pipeline_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self):
        """Cancel every running pipeline task (process shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} pipeline task(s)")

    # === Run ===

    async def _run(self, pipeline: ChapterPipeline):
        try:
            await self._execute(pipeline)
        except asyncio.CancelledError:
            logger.warning(f"Pipeline {pipeline.pipeline_id} interrupted")
            self._cancel(pipeline)
            raise
        except Exception as e:
            logger.exception(f"Pipeline {pipeline.pipeline_id} failed: {e}")
            self._fail(pipeline, str(e) or e.__class__.__name__)
        finally:
            pipeline.close_streams()
            self.registry.mark_finished(pipeline.pipeline_id)
            self._tasks.pop(pipeline.pipeline_id, None)
            logger.info(
                f"Pipeline {pipeline.pipeline_id} finished: {pipeline.state.value} "
                f"({len(pipeline.outputs)}/{len(pipeline.plan)} steps)"
            )

    async def _execute(self, pipeline: ChapterPipeline):
        plan = await self._plan(pipeline)
        if plan is None:
            return

        pipeline.set_plan(plan)
        pipeline.emit(StreamEvent.pipeline_plan(plan))
        pipeline.set_state(PipelineState.RUNNING)

        base_context = self._base_context(pipeline)
        for index, step in enumerate(plan):
            if not await self._step_boundary(pipeline, index):
                return
            if not await self._run_step(pipeline, index, step, base_context):
                return

        await self._finalize(pipeline)

    async def _plan(self, pipeline: ChapterPipeline) -> Optional[List[PlanStep]]:
        try:
            plan = await self.planner.plan(
                pipeline.project_id,
                pipeline.chapter_id,
                dict(pipeline.initial_context),
            )
        except PlanningError as e:
            self._fail(pipeline, f"Planning failed: {e}")
            return None

        if not plan:
            self._fail(pipeline, "Planning failed: the plan has no steps")
            return None
        logger.info(f"Pipeline {pipeline.pipeline_id}: planned {len(plan)} step(s)")
        return plan

    async def _step_boundary(self, pipeline: ChapterPipeline, index: int) -> bool:
        """Honor cancel and pause before step `index`. False means stop."""
        token = pipeline.token
        if token.cancelled:
            self._cancel(pipeline)
            return False

        if token.paused:
            pipeline.set_state(PipelineState.PAUSED)
            pipeline.emit(StreamEvent.pipeline_paused(
                f"Paused before step {index + 1} of {len(pipeline.plan)}"
            ))
            await token.wait_released()
            if token.cancelled:
                self._cancel(pipeline)
                return False
            pipeline.set_state(PipelineState.RUNNING)
            logger.info(f"Pipeline {pipeline.pipeline_id}: resumed at step {index + 1}")

        return True

    async def _run_step(
        self,
        pipeline: ChapterPipeline,
        index: int,
        step: PlanStep,
        base_context: Dict[str, Any],
    ) -> bool:
        agent_type = step.agent_type
        context = self._step_context(pipeline, index, step, base_context)

        record = self.repository.create_task(
            project_id=pipeline.project_id,
            chapter_id=pipeline.chapter_id,
            agent_type=agent_type.value,
            task_type=step.task_type,
            pipeline_id=pipeline.pipeline_id,
            sort_order=index,
            input_context={
                "description": step.description,
                "dependsOn": step.depends_on,
            },
        )
        self.repository.enqueue_task(record.id)
        self.repository.mark_task_running(record.id)

        pipeline.begin_step(agent_type)
        pipeline.emit(StreamEvent.agent_start(agent_type))
        logger.info(
            f"Pipeline {pipeline.pipeline_id}: step {index + 1}/{len(pipeline.plan)} "
            f"{agent_type.value}/{step.task_type}"
        )

        def on_text(chunk: str):
            pipeline.emit(StreamEvent.agent_stream(agent_type, chunk))

        try:
            output = await self.agent_executor.invoke(
                agent_type, step.task_type, context, on_text=on_text
            )
            if not output.content or not output.content.strip():
                raise ValueError("Agent returned empty output")

            if output.structured is None and agent_type not in PROSE_AGENTS:
                extracted = extract_json_object(output.content)
                if isinstance(extracted, Structured):
                    output.structured = extracted.value

            self.repository.complete_task(
                record.id,
                output=output.content,
                structured=output.structured,
                token_usage=output.token_usage,
            )
        except asyncio.CancelledError:
            self._close_record(record.id, self.repository.cancel_task)
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(
                f"Pipeline {pipeline.pipeline_id}: {agent_type.value} failed: {message}"
            )
            self._close_record(record.id, self.repository.fail_task, message)
            self._fail(pipeline, message, agent_type)
            return False

        pipeline.record_output(index, output)
        pipeline.emit(StreamEvent.agent_complete(output))
        logger.info(
            f"Pipeline {pipeline.pipeline_id}: {agent_type.value} done "
            f"(tokens in={output.token_usage.input}, out={output.token_usage.output})"
        )
        return True

    async def _finalize(self, pipeline: ChapterPipeline):
        if pipeline.chapter_id:
            content = self._chapter_text(pipeline)
            if content:
                self.repository.update_chapter_content(pipeline.chapter_id, content)
                logger.info(
                    f"Pipeline {pipeline.pipeline_id}: saved chapter "
                    f"{pipeline.chapter_id} ({len(content)} chars)"
                )
                await self._summarize(pipeline)

        pipeline.set_state(PipelineState.COMPLETED)
        pipeline.emit(StreamEvent.pipeline_complete(pipeline.outputs))

    async def _summarize(self, pipeline: ChapterPipeline):
        if not self.config.summary_on_complete or self.summary_generator is None:
            return
        try:
            await self.summary_generator.generate(pipeline.chapter_id)
        except Exception as e:
            logger.warning(
                f"Pipeline {pipeline.pipeline_id}: summary generation failed "
                f"for chapter {pipeline.chapter_id}: {e}"
            )

    # === Helpers ===

    def _cancel(self, pipeline: ChapterPipeline):
        swept = self.repository.cancel_open_tasks(pipeline.pipeline_id)
        pipeline.set_state(PipelineState.CANCELLED)
        logger.info(
            f"Pipeline {pipeline.pipeline_id} cancelled after "
            f"{len(pipeline.outputs)} step(s), {swept} open record(s) swept"
        )

    def _close_record(self, task_id: str, close, *args):
        """Move a running record to a terminal status; a store error here is logged, not raised."""
        try:
            close(task_id, *args)
        except Exception:
            logger.exception(f"Could not close task record {task_id}")

    def _fail(
        self,
        pipeline: ChapterPipeline,
        message: str,
        agent_type: Optional[AgentType] = None,
    ):
        pipeline.error = message
        if pipeline.set_state(PipelineState.FAILED):
            pipeline.emit(StreamEvent.error(message, agent_type))

    def _base_context(self, pipeline: ChapterPipeline) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "pipeline_id": pipeline.pipeline_id,
            "project_id": pipeline.project_id,
            "chapter_id": pipeline.chapter_id,
            "initial_context": pipeline.initial_context,
        }
        project = self.repository.get_project(pipeline.project_id)
        if project is not None:
            context["project"] = project.to_dict()
        if pipeline.chapter_id:
            chapter = self.repository.get_chapter(pipeline.chapter_id)
            if chapter is not None:
                context["chapter"] = chapter.to_dict()
        return context

    def _step_context(
        self,
        pipeline: ChapterPipeline,
        index: int,
        step: PlanStep,
        base_context: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Base context plus the outputs of the steps this one depends on."""
        depends_on = step.depends_on if step.depends_on is not None else range(index)
        previous = []
        for dep in depends_on:
            output = pipeline.output_for_step(dep)
            if output is not None:
                previous.append({
                    "agentType": output.agent_type.value,
                    "taskType": output.task_type,
                    "content": output.content,
                })

        context = dict(base_context)
        context.update(
            step_index=index,
            description=step.description,
            instructions=step.instructions,
            previous_outputs=previous,
        )
        return context

    def _chapter_text(self, pipeline: ChapterPipeline) -> str:
        """Latest editor prose, falling back to the latest writer draft."""
        for agent_type in (AgentType.EDITOR, AgentType.WRITER):
            for output in reversed(pipeline.outputs):
                if output.agent_type != agent_type:
                    continue
                text = extract_chapter_text(agent_type.value, output.content)
                if text:
                    return text
        return ""
