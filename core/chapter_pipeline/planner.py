"""
Planning capability.

Produces the ordered, immutable step list for one pipeline run.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from .exceptions import PlanningError
from .models import AgentType, PlanStep

logger = logging.getLogger("ChapterPipeline.Planner")

PLAN_MODES = ("write", "edit", "custom")


class Planner(Protocol):
    """Anything that can turn a project/chapter context into a plan."""

    async def plan(
        self,
        project_id: str,
        chapter_id: Optional[str],
        context: Dict[str, Any],
    ) -> List[PlanStep]: ...


def build_writing_plan(chapter_number: int) -> List[PlanStep]:
    """Standard sequence for generating a chapter from scratch."""
    n = chapter_number
    return [
        PlanStep(
            agent_type=AgentType.COORDINATOR,
            task_type="plan",
            description=f"Plan chapter {n}",
            instructions=(
                f"Draw up the writing plan for chapter {n}: scene structure, characters "
                f"on stage, key events and how foreshadowing is handled."
            ),
            depends_on=[],
        ),
        PlanStep(
            agent_type=AgentType.PLOT_ARCHITECT,
            task_type="outline",
            description=f"Scene structure and beats for chapter {n}",
            instructions=(
                f"Write the detailed scene structure for chapter {n}, including the beats "
                f"of each scene and where foreshadowing is planted or paid off."
            ),
            depends_on=[0],
        ),
        PlanStep(
            agent_type=AgentType.WORLD_BUILDER,
            task_type="setting",
            description=f"Setting and environment for chapter {n}",
            instructions=(
                f"Based on the scene structure, describe the settings chapter {n} needs: "
                f"places, time of day, atmosphere and sensory details."
            ),
            depends_on=[0, 1],
        ),
        PlanStep(
            agent_type=AgentType.CHARACTER_MANAGER,
            task_type="briefing",
            description=f"Character briefing for chapter {n}",
            instructions=(
                f"Brief every character appearing in chapter {n}: current state of mind, "
                f"goal in this chapter, and how their relationships shift."
            ),
            depends_on=[0, 1, 2],
        ),
        PlanStep(
            agent_type=AgentType.WRITER,
            task_type="write",
            description=f"Write chapter {n}",
            instructions=(
                f"Write the full text of chapter {n} from the scene structure, setting "
                f"notes and character briefing.\n\n"
                f"Output only the prose of the chapter. No JSON, metadata, notes or comments."
            ),
            depends_on=[1, 2, 3],
        ),
        PlanStep(
            agent_type=AgentType.EDITOR,
            task_type="review",
            description=f"Edit and proofread chapter {n}",
            instructions=(
                f"Proofread chapter {n} for quality, consistency of expression, typos and "
                f"readability, and produce a corrected version.\n\n"
                f"Output format:\n"
                f"1. The line '--- Revised Text ---' followed by the complete corrected text\n"
                f"2. The line '--- Feedback ---' followed by your corrections and assessment\n"
                f"Do not answer in JSON."
            ),
            depends_on=[4],
        ),
        PlanStep(
            agent_type=AgentType.CONTINUITY_CHECKER,
            task_type="check",
            description=f"Continuity check for chapter {n}",
            instructions=(
                f"Check chapter {n} for contradictions with earlier chapters, timeline "
                f"errors, out-of-character behavior and conflicts with the world settings."
            ),
            depends_on=[5],
        ),
    ]


def build_editing_plan(chapter_number: int) -> List[PlanStep]:
    """Shorter plan that re-edits an existing chapter."""
    n = chapter_number
    return [
        PlanStep(
            agent_type=AgentType.EDITOR,
            task_type="review",
            description=f"Re-edit chapter {n}",
            instructions=(
                f"Re-edit chapter {n}, improving the quality of the prose and its expression.\n\n"
                f"Start with '--- Revised Text ---' and the full corrected text, then "
                f"'--- Feedback ---' and your notes."
            ),
            depends_on=[],
        ),
        PlanStep(
            agent_type=AgentType.CONTINUITY_CHECKER,
            task_type="check",
            description=f"Re-check continuity of chapter {n}",
            instructions=f"Re-check the continuity of the edited chapter {n}.",
            depends_on=[0],
        ),
    ]


def build_custom_plan(raw_steps: List[Dict[str, Any]]) -> List[PlanStep]:
    """Validate caller-supplied steps."""
    if not raw_steps:
        raise PlanningError("Custom plan has no steps")

    steps = []
    for index, raw in enumerate(raw_steps):
        try:
            agent_type = AgentType(raw.get("agentType") or raw.get("agent_type"))
        except ValueError:
            raise PlanningError(f"Step {index}: unknown agent type {raw.get('agentType')!r}")

        task_type = raw.get("taskType") or raw.get("task_type") or "general"
        depends_on = raw.get("dependsOn", raw.get("depends_on"))
        if depends_on is not None:
            depends_on = [int(d) for d in depends_on]
            if any(d < 0 or d >= index for d in depends_on):
                raise PlanningError(f"Step {index}: dependencies must refer to earlier steps")

        steps.append(PlanStep(
            agent_type=agent_type,
            task_type=task_type,
            description=raw.get("description") or f"{agent_type.value} {task_type}",
            instructions=raw.get("instructions", ""),
            depends_on=depends_on,
        ))
    return steps


class DefaultPlanner:
    """
    Plans from the chapter record and the requested mode.

    Context keys read: "mode" (write | edit | custom),
    "custom_steps" (list of step dicts, custom mode only).
    """

    def __init__(self, repository=None):
        self.repository = repository

    async def plan(
        self,
        project_id: str,
        chapter_id: Optional[str],
        context: Dict[str, Any],
    ) -> List[PlanStep]:
        mode = context.get("mode") or "write"
        if mode not in PLAN_MODES:
            raise PlanningError(f"Unknown plan mode: {mode}")

        if mode == "custom":
            return build_custom_plan(context.get("custom_steps") or [])

        chapter_number = self._chapter_number(chapter_id)
        if mode == "edit":
            return build_editing_plan(chapter_number)
        return build_writing_plan(chapter_number)

    def _chapter_number(self, chapter_id: Optional[str]) -> int:
        if not chapter_id or self.repository is None:
            return 1
        chapter = self.repository.get_chapter(chapter_id)
        return chapter.chapter_number if chapter else 1
