"""
Pytest Configuration and Fixtures
"""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from core.chapter_pipeline.config import PipelineConfig
from core.chapter_pipeline.exceptions import AgentExecutionError
from core.chapter_pipeline.models import AgentOutput, AgentType, PlanStep, TokenUsage
from core.chapter_pipeline.registry import PipelineRegistry
from core.chapter_pipeline.store import TaskRepository
from core.chapter_pipeline.streaming import EventStreamDecoder
from core.database import create_db_engine


class ScriptedAgentExecutor:
    """
    Agent executor double.

    responses: agent type -> reply text
    fail_on:   call indexes that raise AgentExecutionError
    hooks:     call index -> callable(context), run while the call is in flight
    gates:     call index -> asyncio.Event awaited before the call returns
    """

    def __init__(
        self,
        responses: Optional[Dict[AgentType, str]] = None,
        fail_on: Optional[List[int]] = None,
        hooks: Optional[Dict[int, Callable]] = None,
        gates: Optional[Dict[int, asyncio.Event]] = None,
    ):
        self.responses = responses or {}
        self.fail_on = set(fail_on or [])
        self.hooks = hooks or {}
        self.gates = gates or {}
        self.calls = []

    async def invoke(self, agent_type, task_type, context, on_text=None):
        index = len(self.calls)
        self.calls.append((agent_type, task_type, context))

        hook = self.hooks.get(index)
        if hook:
            hook(context)
        gate = self.gates.get(index)
        if gate:
            await gate.wait()
        await asyncio.sleep(0)

        if index in self.fail_on:
            raise AgentExecutionError(agent_type.value, "model unavailable")

        content = self.responses.get(agent_type, f"{agent_type.value} output #{index}")
        if on_text:
            half = len(content) // 2
            on_text(content[:half])
            on_text(content[half:])

        return AgentOutput(
            agent_type=agent_type,
            task_type=task_type,
            content=content,
            token_usage=TokenUsage(input=10, output=len(content)),
        )


class FixedPlanner:
    """Planner double that always returns the same steps."""

    def __init__(self, steps: List[PlanStep]):
        self.steps = steps
        self.calls = []

    async def plan(self, project_id, chapter_id, context):
        self.calls.append((project_id, chapter_id, context))
        return list(self.steps)


async def collect_events(stream):
    """Drain a closed EventStream and decode its frames."""
    decoder = EventStreamDecoder()
    events = []
    async for frame in stream.frames():
        events.extend(decoder.feed(frame))
    events.extend(decoder.flush())
    return events, decoder.done


async def wait_for(predicate, timeout: float = 2.0):
    """Yield to the loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def config():
    """Default test configuration"""
    return PipelineConfig(
        heartbeat_interval=60.0,
        retention_seconds=300.0,
        summary_on_complete=False,
    )


@pytest.fixture
def repository():
    """In-memory SQLite repository"""
    return TaskRepository(create_db_engine("sqlite://"))


@pytest.fixture
def registry():
    return PipelineRegistry(retention_seconds=300.0)


@pytest.fixture
def project(repository):
    return repository.create_project("The Harbor Letters", genre="mystery")


@pytest.fixture
def chapter(repository, project):
    return repository.create_chapter(project.id, 1, title="Rain", synopsis="A letter arrives.")


@pytest.fixture
def three_steps():
    return [
        PlanStep(AgentType.PLOT_ARCHITECT, "outline", "Outline", depends_on=[]),
        PlanStep(AgentType.WRITER, "write", "Write", depends_on=[0]),
        PlanStep(AgentType.EDITOR, "review", "Edit", depends_on=[1]),
    ]


@pytest.fixture
def scripted_executor():
    """Factory for ScriptedAgentExecutor"""
    return ScriptedAgentExecutor


@pytest.fixture
def fixed_planner():
    """Factory for FixedPlanner"""
    return FixedPlanner


@pytest.fixture
def drain():
    return collect_events


@pytest.fixture
def until():
    return wait_for
