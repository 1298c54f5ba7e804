"""
Tests for the pipeline executor state machine
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from core.chapter_pipeline.exceptions import PlanningError
from core.chapter_pipeline.models import (
    AgentType,
    ChapterStatus,
    PipelineState,
    StreamEvent,
    StreamEventType,
    TaskStatus,
)
from core.chapter_pipeline.pipeline import ChapterPipeline, ChapterPipelineExecutor
from core.chapter_pipeline.streaming import EventStream


EDITOR_REPLY = (
    "--- Revised Text ---\n"
    "The harbor was quiet.\n"
    "<!-- SPLIT_SUGGESTION: {\"at\": 12} -->\n"
    "She waited.\n"
    "--- Feedback ---\n"
    "Tightened pacing."
)


@pytest.fixture
def build(repository, registry, config, fixed_planner):
    """Build an executor over the shared repository and registry."""
    def _build(agents, steps, summary_generator=None, **overrides):
        for key, value in overrides.items():
            setattr(config, key, value)
        return ChapterPipelineExecutor(
            repository=repository,
            planner=fixed_planner(steps),
            agent_executor=agents,
            registry=registry,
            config=config,
            summary_generator=summary_generator,
        )
    return _build


def types_of(events):
    return [e.type for e in events]


class TestCompletedRun:
    """A run where every step succeeds"""

    @pytest.mark.asyncio
    async def test_start_returns_before_execution(self, build, scripted_executor, three_steps, project, registry):
        executor = build(scripted_executor(), three_steps)
        pipeline_id = await executor.start(project.id)

        assert registry.status(pipeline_id)["state"] == "planning"
        await executor.wait(pipeline_id)
        assert registry.status(pipeline_id)["state"] == "completed"

    @pytest.mark.asyncio
    async def test_one_terminal_record_per_step(self, build, scripted_executor, three_steps, project, repository):
        executor = build(scripted_executor(), three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert len(records) == 3
        assert all(TaskStatus(r.status) == TaskStatus.COMPLETED for r in records)
        assert [r.agent_type for r in records] == ["plot_architect", "writer", "editor"]
        assert all(r.completed_at is not None for r in records)
        assert records[1].token_usage == {"input": 10, "output": len("writer output #1")}

    @pytest.mark.asyncio
    async def test_event_order_matches_plan(self, build, scripted_executor, three_steps, project, drain):
        executor = build(scripted_executor(), three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        await executor.wait(pipeline_id)

        events, done = await drain(stream)
        assert done
        assert events[0].type == StreamEventType.PIPELINE_PLAN
        assert [s.agent_type for s in events[0].plan] == [s.agent_type for s in three_steps]
        assert events[-1].type == StreamEventType.PIPELINE_COMPLETE

        completes = [e for e in events if e.type == StreamEventType.AGENT_COMPLETE]
        assert [e.agent_type for e in completes] == [s.agent_type for s in three_steps]

        step_events = types_of(events[1:4])
        assert step_events == [
            StreamEventType.AGENT_START,
            StreamEventType.AGENT_STREAM,
            StreamEventType.AGENT_STREAM,
        ]

    @pytest.mark.asyncio
    async def test_streamed_chunks_rebuild_output(self, build, scripted_executor, three_steps, project, drain):
        executor = build(scripted_executor(), three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        await executor.wait(pipeline_id)

        events, _ = await drain(stream)
        writer_chunks = [
            e.text for e in events
            if e.type == StreamEventType.AGENT_STREAM and e.agent_type == AgentType.WRITER
        ]
        assert "".join(writer_chunks) == "writer output #1"

    @pytest.mark.asyncio
    async def test_complete_event_carries_all_outputs(self, build, scripted_executor, three_steps, project, drain):
        executor = build(scripted_executor(), three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        await executor.wait(pipeline_id)

        events, _ = await drain(stream)
        outputs = events[-1].outputs
        assert [o.content for o in outputs] == [
            "plot_architect output #0",
            "writer output #1",
            "editor output #2",
        ]

    @pytest.mark.asyncio
    async def test_dependencies_feed_context(self, build, scripted_executor, three_steps, project):
        agents = scripted_executor()
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        writer_context = agents.calls[1][2]
        editor_context = agents.calls[2][2]
        assert [p["content"] for p in writer_context["previous_outputs"]] == ["plot_architect output #0"]
        assert [p["agentType"] for p in editor_context["previous_outputs"]] == ["writer"]
        assert editor_context["pipeline_id"] == pipeline_id

    @pytest.mark.asyncio
    async def test_missing_depends_on_means_all_prior(self, build, scripted_executor, three_steps, project):
        for step in three_steps:
            step.depends_on = None
        agents = scripted_executor()
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        editor_context = agents.calls[2][2]
        assert len(editor_context["previous_outputs"]) == 2

    @pytest.mark.asyncio
    async def test_structured_payload_for_non_prose_agents(self, build, scripted_executor, three_steps, project, repository):
        agents = scripted_executor(responses={
            AgentType.PLOT_ARCHITECT: 'Scenes: {"scenes": [1, 2]} done',
            AgentType.WRITER: 'She said {"not": "json"} aloud.',
        })
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert records[0].structured == {"scenes": [1, 2]}
        assert records[1].structured is None

    @pytest.mark.asyncio
    async def test_registry_retains_finished_pipeline(self, build, scripted_executor, three_steps, project, registry):
        executor = build(scripted_executor(), three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        assert pipeline_id in registry
        assert pipeline_id not in registry.list_active()
        progress = registry.status(pipeline_id)["progress"]
        assert progress == {"completedSteps": 3, "totalSteps": 3, "currentAgentType": None}


class TestChapterFinalization:
    """Side effects after the last step"""

    @pytest.mark.asyncio
    async def test_editor_prose_saved_as_draft(self, build, scripted_executor, three_steps, project, chapter, repository):
        agents = scripted_executor(responses={AgentType.EDITOR: EDITOR_REPLY})
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id, chapter.id)
        await executor.wait(pipeline_id)

        saved = repository.get_chapter(chapter.id)
        assert saved.content == "The harbor was quiet.\n\nShe waited."
        assert saved.word_count == len(saved.content)
        assert saved.status == ChapterStatus.DRAFT.value

    @pytest.mark.asyncio
    async def test_writer_fallback_when_editor_has_no_prose(self, build, scripted_executor, three_steps, project, chapter, repository):
        agents = scripted_executor(responses={
            AgentType.WRITER: "Draft prose.",
            AgentType.EDITOR: '{"corrections": []}',
        })
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id, chapter.id)
        await executor.wait(pipeline_id)

        assert repository.get_chapter(chapter.id).content == "Draft prose."

    @pytest.mark.asyncio
    async def test_summary_generated_on_complete(self, build, scripted_executor, three_steps, project, chapter):
        summary = MagicMock()
        summary.generate = AsyncMock(return_value={"brief": "b", "detailed": "d", "structured": True})
        executor = build(scripted_executor(), three_steps, summary_generator=summary, summary_on_complete=True)
        pipeline_id = await executor.start(project.id, chapter.id)
        await executor.wait(pipeline_id)

        summary.generate.assert_awaited_once_with(chapter.id)

    @pytest.mark.asyncio
    async def test_summary_failure_is_not_fatal(self, build, scripted_executor, three_steps, project, chapter, registry):
        summary = MagicMock()
        summary.generate = AsyncMock(side_effect=RuntimeError("quota"))
        executor = build(scripted_executor(), three_steps, summary_generator=summary, summary_on_complete=True)
        pipeline_id = await executor.start(project.id, chapter.id)
        await executor.wait(pipeline_id)

        assert registry.status(pipeline_id)["state"] == "completed"

    @pytest.mark.asyncio
    async def test_store_failure_fails_pipeline(self, build, scripted_executor, three_steps, project, chapter, repository, drain):
        executor = build(scripted_executor(), three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        with patch.object(repository, "update_chapter_content", side_effect=RuntimeError("disk full")):
            pipeline_id = await executor.start(project.id, chapter.id, stream=stream)
            await executor.wait(pipeline_id)

        events, done = await drain(stream)
        assert done
        assert events[-1].type == StreamEventType.ERROR
        assert "disk full" in events[-1].message
        assert executor.registry.status(pipeline_id)["state"] == "failed"


class TestStepFailure:
    """A failing step aborts the rest of the plan"""

    @pytest.mark.asyncio
    async def test_failed_step_stops_pipeline(self, build, scripted_executor, three_steps, project, repository, registry, drain):
        agents = scripted_executor(fail_on=[1])
        executor = build(agents, three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert [r.status for r in records] == ["completed", "failed"]
        assert "model unavailable" in records[1].error_message
        assert len(agents.calls) == 2
        assert registry.status(pipeline_id)["state"] == "failed"

        events, done = await drain(stream)
        assert done
        assert events[-1].type == StreamEventType.ERROR
        assert events[-1].agent_type == AgentType.WRITER
        assert StreamEventType.PIPELINE_COMPLETE not in types_of(events)

    @pytest.mark.asyncio
    async def test_empty_output_is_a_failure(self, build, scripted_executor, three_steps, project, repository):
        agents = scripted_executor(responses={AgentType.PLOT_ARCHITECT: "   "})
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert [r.status for r in records] == ["failed"]

    @pytest.mark.asyncio
    async def test_store_error_on_completion_fails_the_record(self, build, scripted_executor, three_steps, project, repository, registry, drain):
        executor = build(scripted_executor(), three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        with patch.object(repository, "complete_task", side_effect=RuntimeError("db locked")):
            pipeline_id = await executor.start(project.id, stream=stream)
            await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert [r.status for r in records] == ["failed"]
        assert records[0].error_message == "db locked"
        assert registry.status(pipeline_id)["state"] == "failed"
        events, done = await drain(stream)
        assert done
        assert events[-1].type == StreamEventType.ERROR
        assert events[-1].message == "db locked"

    @pytest.mark.asyncio
    async def test_store_error_while_failing_still_fails_pipeline(self, build, scripted_executor, three_steps, project, repository, registry):
        executor = build(scripted_executor(fail_on=[0]), three_steps)
        with patch.object(repository, "fail_task", side_effect=RuntimeError("db locked")):
            pipeline_id = await executor.start(project.id)
            await executor.wait(pipeline_id)

        assert registry.status(pipeline_id)["state"] == "failed"

    @pytest.mark.asyncio
    async def test_planning_error_fails_without_records(self, repository, registry, config, scripted_executor, project, drain):
        planner = MagicMock()
        planner.plan = AsyncMock(side_effect=PlanningError("unknown agent"))
        executor = ChapterPipelineExecutor(repository, planner, scripted_executor(), registry, config)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        await executor.wait(pipeline_id)

        assert repository.list_tasks(pipeline_id=pipeline_id) == []
        assert registry.status(pipeline_id)["state"] == "failed"
        events, _ = await drain(stream)
        assert [e.type for e in events] == [StreamEventType.ERROR]
        assert "unknown agent" in events[0].message

    @pytest.mark.asyncio
    async def test_empty_plan_fails(self, build, scripted_executor, project, registry):
        executor = build(scripted_executor(), [])
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)
        assert registry.status(pipeline_id)["state"] == "failed"


class TestCancellation:
    """Cancel is honored at step boundaries only"""

    @pytest.mark.asyncio
    async def test_cancel_before_first_step(self, build, scripted_executor, three_steps, project, repository, registry, drain):
        agents = scripted_executor()
        executor = build(agents, three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        registry.control(pipeline_id, "cancel")
        await executor.wait(pipeline_id)

        assert agents.calls == []
        assert repository.list_tasks(pipeline_id=pipeline_id) == []
        assert registry.status(pipeline_id)["state"] == "cancelled"
        events, done = await drain(stream)
        assert done
        assert types_of(events) == [StreamEventType.PIPELINE_PLAN]

    @pytest.mark.asyncio
    async def test_in_flight_step_finishes_before_cancel(self, build, scripted_executor, three_steps, project, repository, registry, drain):
        agents = scripted_executor(hooks={1: lambda ctx: registry.control(ctx["pipeline_id"], "cancel")})
        executor = build(agents, three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert [r.status for r in records] == ["completed", "completed"]
        assert len(agents.calls) == 2
        assert registry.status(pipeline_id)["state"] == "cancelled"

        events, done = await drain(stream)
        assert done
        started = [e.agent_type for e in events if e.type == StreamEventType.AGENT_START]
        assert started == [AgentType.PLOT_ARCHITECT, AgentType.WRITER]
        assert events[-1].type == StreamEventType.AGENT_COMPLETE

    @pytest.mark.asyncio
    async def test_cancel_while_paused_after_k_steps(self, build, scripted_executor, three_steps, project, repository, registry, until):
        agents = scripted_executor(hooks={0: lambda ctx: registry.control(ctx["pipeline_id"], "pause")})
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id)
        pipeline = registry.get(pipeline_id)

        await until(lambda: pipeline.state == PipelineState.PAUSED)
        registry.control(pipeline_id, "cancel")
        await executor.wait(pipeline_id)

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert [r.status for r in records] == ["completed"]
        assert pipeline.state == PipelineState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, build, scripted_executor, three_steps, project, registry):
        executor = build(scripted_executor(), three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)

        first = registry.control(pipeline_id, "cancel")
        second = registry.control(pipeline_id, "cancel")
        assert first["state"] == second["state"] == "completed"

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_running_pipeline(self, build, scripted_executor, three_steps, project, repository, registry, until):
        gate = asyncio.Event()
        agents = scripted_executor(gates={0: gate})
        executor = build(agents, three_steps)
        pipeline_id = await executor.start(project.id)
        await until(lambda: len(agents.calls) == 1)

        await executor.shutdown()

        records = repository.list_tasks(pipeline_id=pipeline_id)
        assert [r.status for r in records] == ["cancelled"]
        assert registry.status(pipeline_id)["state"] == "cancelled"


class TestPauseResume:
    """Pause suspends between steps without changing the outcome"""

    @pytest.mark.asyncio
    async def test_pause_emits_event_and_holds_position(self, build, scripted_executor, three_steps, project, repository, registry, until, drain):
        agents = scripted_executor(hooks={0: lambda ctx: registry.control(ctx["pipeline_id"], "pause")})
        executor = build(agents, three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)
        pipeline = registry.get(pipeline_id)

        await until(lambda: pipeline.state == PipelineState.PAUSED)
        await asyncio.sleep(0.01)
        assert len(agents.calls) == 1
        assert len(repository.list_tasks(pipeline_id=pipeline_id)) == 1
        assert pipeline_id in registry.list_active()

        snapshot = registry.control(pipeline_id, "resume")
        assert snapshot["state"] == "running"
        await executor.wait(pipeline_id)

        events, _ = await drain(stream)
        assert StreamEventType.PIPELINE_PAUSED in types_of(events)
        assert events[-1].type == StreamEventType.PIPELINE_COMPLETE

    @pytest.mark.asyncio
    async def test_pause_then_resume_matches_uninterrupted_run(self, build, scripted_executor, three_steps, project, repository, registry, until, drain):
        plain = build(scripted_executor(), three_steps)
        plain_stream = EventStream(heartbeat_interval=60.0)
        plain_id = await plain.start(project.id, stream=plain_stream)
        await plain.wait(plain_id)

        paused_agents = scripted_executor(hooks={1: lambda ctx: registry.control(ctx["pipeline_id"], "pause")})
        paused = build(paused_agents, three_steps)
        paused_stream = EventStream(heartbeat_interval=60.0)
        paused_id = await paused.start(project.id, stream=paused_stream)
        pipeline = registry.get(paused_id)
        await until(lambda: pipeline.state == PipelineState.PAUSED)
        registry.control(paused_id, "resume")
        await paused.wait(paused_id)

        def trail(pid):
            return [(r.agent_type, r.status, r.output) for r in repository.list_tasks(pipeline_id=pid)]

        assert trail(plain_id) == trail(paused_id)

        plain_events, _ = await drain(plain_stream)
        paused_events, _ = await drain(paused_stream)
        assert [o.content for o in plain_events[-1].outputs] == [o.content for o in paused_events[-1].outputs]

    @pytest.mark.asyncio
    async def test_resume_when_not_paused_is_noop(self, build, scripted_executor, three_steps, project, registry):
        gate = asyncio.Event()
        executor = build(scripted_executor(gates={0: gate}), three_steps)
        pipeline_id = await executor.start(project.id)

        snapshot = registry.control(pipeline_id, "resume")
        assert snapshot["state"] in ("planning", "running")
        gate.set()
        await executor.wait(pipeline_id)
        assert registry.status(pipeline_id)["state"] == "completed"


class TestObservers:
    """Stream disconnects and detached runs"""

    @pytest.mark.asyncio
    async def test_disconnect_cancels_at_next_boundary(self, build, scripted_executor, three_steps, project, repository, registry, until):
        gate = asyncio.Event()
        agents = scripted_executor(gates={0: gate})
        executor = build(agents, three_steps)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)

        frames = stream.frames()
        await frames.__anext__()
        await frames.aclose()
        assert not stream.heartbeat_running

        gate.set()
        await executor.wait(pipeline_id)
        assert registry.status(pipeline_id)["state"] == "cancelled"
        assert [r.status for r in repository.list_tasks(pipeline_id=pipeline_id)] == ["completed"]

    @pytest.mark.asyncio
    async def test_disconnect_ignored_when_configured(self, build, scripted_executor, three_steps, project, registry):
        gate = asyncio.Event()
        executor = build(scripted_executor(gates={0: gate}), three_steps, cancel_on_disconnect=False)
        stream = EventStream(heartbeat_interval=60.0)
        pipeline_id = await executor.start(project.id, stream=stream)

        frames = stream.frames()
        await frames.__anext__()
        await frames.aclose()

        gate.set()
        await executor.wait(pipeline_id)
        assert registry.status(pipeline_id)["state"] == "completed"

    @pytest.mark.asyncio
    async def test_detached_run_completes(self, build, scripted_executor, three_steps, project, registry):
        executor = build(scripted_executor(), three_steps)
        pipeline_id = await executor.start(project.id)
        await executor.wait(pipeline_id)
        assert registry.status(pipeline_id)["state"] == "completed"

    def test_emit_fans_out_to_every_observer(self):
        pipeline = ChapterPipeline("project-1")
        first, second = MagicMock(), MagicMock()
        pipeline.subscribe(first)
        pipeline.subscribe(second)

        event = StreamEvent.agent_start(AgentType.WRITER)
        pipeline.emit(event)
        first.send.assert_called_once_with(event)
        second.send.assert_called_once_with(event)

        pipeline.close_streams()
        first.close.assert_called_once()
        second.close.assert_called_once()
        assert pipeline.observer_count == 0
