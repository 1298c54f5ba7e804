"""
Chapter Pipeline API Schemas

Pydantic models for request/response validation.
JSON field names are camelCase to match the stream event format.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from enum import Enum


class PlanMode(str, Enum):
    WRITE = "write"
    EDIT = "edit"
    CUSTOM = "custom"


# === REQUEST SCHEMAS ===

class CustomStep(BaseModel):
    agent_type: str = Field(..., alias="agentType")
    task_type: str = Field("general", alias="taskType")
    description: Optional[str] = None
    instructions: str = ""
    depends_on: Optional[List[int]] = Field(None, alias="dependsOn")

    class Config:
        populate_by_name = True


class ExecuteRequest(BaseModel):
    project_id: str = Field(..., min_length=1, alias="projectId")
    chapter_id: Optional[str] = Field(None, alias="chapterId")
    mode: PlanMode = Field(PlanMode.WRITE)
    custom_steps: Optional[List[CustomStep]] = Field(None, alias="customSteps")
    initial_context: Dict[str, Any] = Field(default_factory=dict, alias="initialContext")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "projectId": "3f1c...",
                "chapterId": "9b2e...",
                "mode": "write",
            }
        }


class ControlRequest(BaseModel):
    """Fields are optional so a missing one is reported as 400, not 422."""
    pipeline_id: Optional[str] = Field(None, alias="pipelineId")
    action: Optional[str] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {"example": {"pipelineId": "c0ffee...", "action": "pause"}}


class ExecuteStepRequest(BaseModel):
    project_id: Optional[str] = Field(None, alias="projectId")
    chapter_id: Optional[str] = Field(None, alias="chapterId")
    step_index: Optional[int] = Field(None, alias="stepIndex")

    class Config:
        populate_by_name = True
        json_schema_extra = {"example": {"projectId": "3f1c...", "chapterId": "9b2e...", "stepIndex": 4}}


class RecoverContentRequest(BaseModel):
    project_id: Optional[str] = Field(None, alias="projectId")
    chapter_id: Optional[str] = Field(None, alias="chapterId")

    class Config:
        populate_by_name = True


# === RESPONSE SCHEMAS ===

class ProgressResponse(BaseModel):
    completed_steps: int = Field(..., alias="completedSteps")
    total_steps: int = Field(..., alias="totalSteps")
    current_agent_type: Optional[str] = Field(None, alias="currentAgentType")

    class Config:
        populate_by_name = True


class PipelineStatusResponse(BaseModel):
    pipeline_id: str = Field(..., alias="pipelineId")
    state: str
    progress: ProgressResponse

    class Config:
        populate_by_name = True


class ActivePipelinesResponse(BaseModel):
    active_pipelines: List[str] = Field(..., alias="activePipelines")

    class Config:
        populate_by_name = True


class PipelineStartedResponse(BaseModel):
    pipeline_id: str = Field(..., alias="pipelineId")

    class Config:
        populate_by_name = True


class TaskListResponse(BaseModel):
    tasks: List[Dict[str, Any]]
    total: int


class RecoverContentResponse(BaseModel):
    success: bool
    source: str
    content_length: int = Field(..., alias="contentLength")
    chapter: Dict[str, Any]

    class Config:
        populate_by_name = True


class SummaryResponse(BaseModel):
    brief: str
    detailed: str
    structured: bool
