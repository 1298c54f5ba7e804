"""
Chapter Pipeline API Routes

FastAPI router for starting, streaming, observing and controlling
chapter pipelines.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Depends
from fastapi.responses import StreamingResponse

from api.schemas.pipeline import (
    ActivePipelinesResponse,
    ControlRequest,
    ExecuteStepRequest,
    ExecuteRequest,
    PipelineStartedResponse,
    PipelineStatusResponse,
    PlanMode,
    RecoverContentRequest,
    RecoverContentResponse,
    SummaryResponse,
    TaskListResponse,
)
from api.services.pipeline_service import get_pipeline_service, PipelineService
from core.chapter_pipeline.exceptions import (
    AgentExecutionError,
    ChapterNotFoundError,
    InvalidControlActionError,
    InvalidStepIndexError,
    NoRecoverableOutputError,
    PipelineNotFoundError,
    PlanningError,
)
from core.chapter_pipeline.planner import build_custom_plan
from core.chapter_pipeline.streaming import SSE_HEADERS, EventStream

logger = logging.getLogger("API.Pipelines")

router = APIRouter(
    prefix="/api/agents",
    tags=["Chapter Pipeline"],
)


def get_service() -> PipelineService:
    """Dependency injection for the service."""
    return get_pipeline_service()


class EventStreamResponse(StreamingResponse):
    """Streams an EventStream and releases it however the response ends."""

    def __init__(self, stream: EventStream, headers: Optional[dict] = None):
        super().__init__(
            stream.frames(),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **(headers or {})},
        )
        self.event_stream = stream

    async def __call__(self, scope, receive, send):
        # The client may leave before the body generator is ever started.
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.event_stream.release()


def _start_kwargs(request: ExecuteRequest) -> dict:
    custom_steps = None
    if request.mode == PlanMode.CUSTOM:
        custom_steps = [s.model_dump(by_alias=True) for s in request.custom_steps or []]
        try:
            build_custom_plan(custom_steps)
        except PlanningError as e:
            raise HTTPException(status_code=400, detail=str(e))

    return {
        "project_id": request.project_id,
        "chapter_id": request.chapter_id,
        "mode": request.mode.value,
        "custom_steps": custom_steps,
        "initial_context": request.initial_context,
    }


# === Execution ===

@router.post("/execute")
async def execute_pipeline(
    request: ExecuteRequest,
    service: PipelineService = Depends(get_service),
):
    """
    Start a pipeline and stream its events.

    Body is `text/event-stream`: `data: {event}` frames, `: heartbeat`
    keep-alives, and a final `data: [DONE]`. The pipeline id is returned
    in the `X-Pipeline-Id` header for status and control calls.
    """
    kwargs = _start_kwargs(request)
    try:
        pipeline_id, stream = await service.start_streaming(**kwargs)
    except ChapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    logger.info(f"Streaming pipeline {pipeline_id}")
    return EventStreamResponse(stream, headers={"X-Pipeline-Id": pipeline_id})


@router.post("/execute-step")
async def execute_step(
    request: ExecuteStepRequest,
    service: PipelineService = Depends(get_service),
):
    """
    Run one step of the chapter's writing plan and stream its events.

    Dependency outputs are taken from the chapter's latest completed
    task records. The task record id is returned in `X-Task-Id`.
    """
    if not request.project_id or not request.chapter_id or request.step_index is None:
        raise HTTPException(status_code=400, detail="projectId, chapterId and stepIndex are required")

    try:
        task_id, stream = await service.start_step_streaming(
            request.project_id, request.chapter_id, request.step_index
        )
    except InvalidStepIndexError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChapterNotFoundError:
        raise HTTPException(status_code=404, detail="Chapter not found")

    logger.info(f"Streaming step {request.step_index} of chapter {request.chapter_id} (task {task_id})")
    return EventStreamResponse(stream, headers={"X-Task-Id": task_id})


@router.post("/pipelines", response_model=PipelineStartedResponse, status_code=202)
async def start_pipeline(
    request: ExecuteRequest,
    service: PipelineService = Depends(get_service),
):
    """Start a pipeline without a stream; poll /status for progress."""
    kwargs = _start_kwargs(request)
    try:
        pipeline_id = await service.start_detached(**kwargs)
    except ChapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"pipelineId": pipeline_id}


# === Status & Control ===

@router.get("/status")
async def get_status(
    pipeline_id: Optional[str] = Query(None, alias="pipelineId"),
    service: PipelineService = Depends(get_service),
):
    """State and progress of one pipeline, or the ids of all active ones."""
    if not pipeline_id:
        return ActivePipelinesResponse(activePipelines=service.list_active())

    try:
        return PipelineStatusResponse(**service.status(pipeline_id))
    except PipelineNotFoundError:
        raise HTTPException(status_code=404, detail="Pipeline not found")


@router.post("/status", response_model=PipelineStatusResponse)
async def control_pipeline(
    request: ControlRequest,
    service: PipelineService = Depends(get_service),
):
    """Apply pause, resume or cancel to a pipeline."""
    if not request.pipeline_id or not request.action:
        raise HTTPException(status_code=400, detail="pipelineId and action are required")

    try:
        return service.control(request.pipeline_id, request.action)
    except InvalidControlActionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PipelineNotFoundError:
        raise HTTPException(status_code=404, detail="Pipeline not found")


# === Task Records ===

@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    pipeline_id: Optional[str] = Query(None, alias="pipelineId"),
    chapter_id: Optional[str] = Query(None, alias="chapterId"),
    service: PipelineService = Depends(get_service),
):
    """Task record trail of a pipeline or a chapter."""
    if not pipeline_id and not chapter_id:
        raise HTTPException(status_code=400, detail="pipelineId or chapterId is required")

    tasks = service.list_tasks(pipeline_id=pipeline_id, chapter_id=chapter_id)
    return TaskListResponse(tasks=tasks, total=len(tasks))


# === Recovery & Summary ===

@router.post("/recover-content", response_model=RecoverContentResponse)
async def recover_content(
    request: RecoverContentRequest,
    service: PipelineService = Depends(get_service),
):
    """Rebuild a chapter from its latest editor or writer output."""
    if not request.project_id or not request.chapter_id:
        raise HTTPException(status_code=400, detail="projectId and chapterId are required")

    try:
        return service.recover_content(request.project_id, request.chapter_id)
    except (NoRecoverableOutputError, ChapterNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/chapters/{chapter_id}/summary", response_model=SummaryResponse)
async def generate_summary(
    chapter_id: str,
    service: PipelineService = Depends(get_service),
):
    """Generate and store the brief and detailed summary of a chapter."""
    try:
        return await service.generate_summary(chapter_id)
    except ChapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AgentExecutionError as e:
        logger.error(f"Summary generation failed for {chapter_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
