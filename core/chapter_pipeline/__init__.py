"""
Chapter Pipeline - multi-agent chapter generation orchestrator

Runs a fixed plan of AI agents (coordinator, plot architect, world
builder, character manager, writer, editor, continuity checker) for one
chapter, streams progress to the client, and lets an operator pause,
resume or cancel a run between steps.

Key Features:
- One asyncio task per pipeline, strictly sequential steps
- Durable task record per executed step
- Heartbeat-protected event stream (text/event-stream framing)
- Recovery of chapter content from completed task records
- Client-driven execution of a single writing-plan step

Usage:
    from core.chapter_pipeline import (
        ChapterPipelineExecutor, DefaultPlanner, PipelineRegistry, TaskRepository,
    )

    registry = PipelineRegistry()
    executor = ChapterPipelineExecutor(repository, DefaultPlanner(repository),
                                       agents, registry)
    pipeline_id = await executor.start(project_id, chapter_id, {"mode": "write"}, stream)
"""

from .config import PipelineConfig
from .models import (
    AgentType,
    TaskStatus,
    PipelineState,
    ChapterStatus,
    ControlAction,
    TokenUsage,
    PlanStep,
    AgentOutput,
    PipelineProgress,
    StreamEvent,
    StreamEventType,
)
from .exceptions import (
    ChapterPipelineError,
    PipelineNotFoundError,
    InvalidControlActionError,
    PlanningError,
    AgentExecutionError,
    InvalidTaskTransitionError,
    ChapterNotFoundError,
    NoRecoverableOutputError,
    InvalidStepIndexError,
)
from .ai_adapter import AgentExecutor, AnthropicAgentExecutor, MockAgentExecutor
from .planner import Planner, DefaultPlanner
from .registry import PipelineRegistry
from .streaming import EventStream, EventStreamDecoder, consume_event_stream
from .pipeline import ChapterPipeline, ChapterPipelineExecutor
from .step_runner import ChapterStepRunner
from .recovery import ChapterRecovery
from .summary import ChapterSummaryGenerator
from .store import TaskRepository

__version__ = "1.0.0"
__all__ = [
    # Config
    "PipelineConfig",
    # Models
    "AgentType",
    "TaskStatus",
    "PipelineState",
    "ChapterStatus",
    "ControlAction",
    "TokenUsage",
    "PlanStep",
    "AgentOutput",
    "PipelineProgress",
    "StreamEvent",
    "StreamEventType",
    # Exceptions
    "ChapterPipelineError",
    "PipelineNotFoundError",
    "InvalidControlActionError",
    "PlanningError",
    "AgentExecutionError",
    "InvalidTaskTransitionError",
    "ChapterNotFoundError",
    "NoRecoverableOutputError",
    "InvalidStepIndexError",
    # Capabilities
    "AgentExecutor",
    "AnthropicAgentExecutor",
    "MockAgentExecutor",
    "Planner",
    "DefaultPlanner",
    # Orchestration
    "PipelineRegistry",
    "EventStream",
    "EventStreamDecoder",
    "consume_event_stream",
    "ChapterPipeline",
    "ChapterPipelineExecutor",
    "ChapterStepRunner",
    "ChapterRecovery",
    "ChapterSummaryGenerator",
    "TaskRepository",
]
