"""
Single Step Runner

Runs one step of a chapter's writing plan on demand, for clients that
drive the plan themselves one request per step. Outputs of the step's
dependencies come from the latest completed task records of the
chapter rather than from an in-memory run.

After a writer or editor step the chapter text is saved; after the
editor step the chapter summary is regenerated.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .ai_adapter import AgentExecutor
from .config import PipelineConfig
from .exceptions import ChapterNotFoundError, InvalidStepIndexError
from .models import AgentOutput, AgentType, PlanStep, StreamEvent
from .parsing import Structured, extract_chapter_text, extract_json_object
from .pipeline import PROSE_AGENTS
from .planner import build_writing_plan
from .store import Chapter, TaskRepository
from .streaming import EventStream

logger = logging.getLogger("ChapterPipeline.StepRunner")


class ChapterStepRunner:
    """
    Usage:
        runner = ChapterStepRunner(repository, agents, summary_generator=summaries)
        task_id = await runner.start(project_id, chapter_id, 4, stream)
    """

    def __init__(
        self,
        repository: TaskRepository,
        agent_executor: AgentExecutor,
        config: Optional[PipelineConfig] = None,
        summary_generator=None,
    ):
        self.repository = repository
        self.agent_executor = agent_executor
        self.config = config or PipelineConfig()
        self.summary_generator = summary_generator
        self._tasks: Set[asyncio.Task] = set()

    def resolve(self, project_id: str, chapter_id: str, step_index: int) -> Tuple[Chapter, List[PlanStep]]:
        """Load the chapter and its writing plan, rejecting an out-of-range index."""
        chapter = self.repository.get_chapter(chapter_id)
        if chapter is None or chapter.project_id != project_id:
            raise ChapterNotFoundError(chapter_id)

        plan = build_writing_plan(chapter.chapter_number)
        if isinstance(step_index, bool) or not isinstance(step_index, int) \
                or not 0 <= step_index < len(plan):
            raise InvalidStepIndexError(step_index, len(plan))
        return chapter, plan

    def dependency_outputs(
        self,
        project_id: str,
        chapter_id: str,
        plan: List[PlanStep],
        step_index: int,
    ) -> List[Dict[str, Any]]:
        """Latest completed output of each dependency; missing ones are skipped."""
        step = plan[step_index]
        depends_on = step.depends_on if step.depends_on is not None else range(step_index)
        previous = []
        for dep in depends_on:
            dep_step = plan[dep]
            record = self.repository.latest_completed_task(
                project_id, chapter_id, dep_step.agent_type.value, dep_step.task_type
            )
            if record is None or not record.output:
                logger.debug(f"No completed {dep_step.agent_type.value}/{dep_step.task_type} output yet")
                continue
            previous.append({
                "agentType": record.agent_type,
                "taskType": record.task_type,
                "content": record.output,
            })
        return previous

    async def start(
        self,
        project_id: str,
        chapter_id: str,
        step_index: int,
        stream: EventStream,
    ) -> str:
        """
        Validate the request, open a task record and run the step in the
        background. Returns the task record id; progress goes to `stream`,
        which is closed when the step ends.
        """
        chapter, plan = self.resolve(project_id, chapter_id, step_index)
        step = plan[step_index]

        context: Dict[str, Any] = {
            "project_id": project_id,
            "chapter_id": chapter_id,
            "chapter": chapter.to_dict(),
            "step_index": step_index,
            "description": step.description,
            "instructions": step.instructions,
            "previous_outputs": self.dependency_outputs(project_id, chapter_id, plan, step_index),
        }
        project = self.repository.get_project(project_id)
        if project is not None:
            context["project"] = project.to_dict()

        record = self.repository.create_task(
            project_id=project_id,
            chapter_id=chapter_id,
            agent_type=step.agent_type.value,
            task_type=step.task_type,
            sort_order=step_index,
            input_context={"description": step.description, "dependsOn": step.depends_on},
        )
        self.repository.enqueue_task(record.id)
        self.repository.mark_task_running(record.id)

        stream.send(StreamEvent.agent_start(step.agent_type))
        logger.info(
            f"Step {step_index + 1}/{len(plan)} {step.agent_type.value}/{step.task_type} "
            f"for chapter {chapter_id} ({len(context['previous_outputs'])} dependency output(s))"
        )

        task = asyncio.create_task(self._run(record.id, chapter_id, step, context, stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record.id

    async def wait(self):
        """Wait for every step started by this runner."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} step task(s)")

    # === Run ===

    async def _run(
        self,
        task_id: str,
        chapter_id: str,
        step: PlanStep,
        context: Dict[str, Any],
        stream: EventStream,
    ):
        agent_type = step.agent_type

        def on_text(chunk: str):
            stream.send(StreamEvent.agent_stream(agent_type, chunk))

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
                task_id,
                output=output.content,
                structured=output.structured,
                token_usage=output.token_usage,
            )
        except asyncio.CancelledError:
            self._close_record(task_id, self.repository.cancel_task)
            stream.close()
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Step {agent_type.value}/{step.task_type} failed: {message}")
            self._close_record(task_id, self.repository.fail_task, message)
            stream.send(StreamEvent.error(message, agent_type))
            stream.close()
            return

        await self._apply_output(chapter_id, output)
        stream.send(StreamEvent.agent_complete(output))
        stream.close()
        logger.info(
            f"Step {agent_type.value}/{step.task_type} done "
            f"(tokens in={output.token_usage.input}, out={output.token_usage.output})"
        )

    async def _apply_output(self, chapter_id: str, output: AgentOutput):
        """Save writer/editor prose to the chapter. Failures here do not fail the step."""
        if output.agent_type not in PROSE_AGENTS:
            return
        text = extract_chapter_text(output.agent_type.value, output.content)
        if not text:
            return
        try:
            self.repository.update_chapter_content(chapter_id, text)
        except Exception as e:
            logger.warning(f"Could not save chapter {chapter_id}: {e}")
            return

        if output.agent_type != AgentType.EDITOR:
            return
        if not self.config.summary_on_complete or self.summary_generator is None:
            return
        try:
            await self.summary_generator.generate(chapter_id)
        except Exception as e:
            logger.warning(f"Summary generation failed for chapter {chapter_id}: {e}")

    def _close_record(self, task_id: str, close, *args):
        try:
            close(task_id, *args)
        except Exception:
            logger.exception(f"Could not close task record {task_id}")
