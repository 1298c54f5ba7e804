"""
Chapter Pipeline Data Models

Core data structures shared by the executor, the stream transport,
the registry and the HTTP layer.

Wire format (StreamEvent JSON) uses camelCase keys so an event
serialized here can be consumed unchanged by the browser client.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from enum import Enum
import json


class AgentType(Enum):
    """Agent roles that can appear in a plan"""
    COORDINATOR = "coordinator"
    PLOT_ARCHITECT = "plot_architect"
    CHARACTER_MANAGER = "character_manager"
    WRITER = "writer"
    EDITOR = "editor"
    WORLD_BUILDER = "world_builder"
    CONTINUITY_CHECKER = "continuity_checker"


AGENT_LABELS: Dict[AgentType, Dict[str, str]] = {
    AgentType.COORDINATOR: {"ja": "コーディネーター", "en": "Coordinator"},
    AgentType.PLOT_ARCHITECT: {"ja": "プロット構成", "en": "Plot Architect"},
    AgentType.CHARACTER_MANAGER: {"ja": "キャラクター管理", "en": "Character Manager"},
    AgentType.WRITER: {"ja": "執筆", "en": "Writer"},
    AgentType.EDITOR: {"ja": "編集・校正", "en": "Editor"},
    AgentType.WORLD_BUILDER: {"ja": "世界観設定", "en": "World Builder"},
    AgentType.CONTINUITY_CHECKER: {"ja": "整合性チェック", "en": "Continuity Checker"},
}


class TaskStatus(Enum):
    """Persisted task record status"""
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        """Position along pending -> queued -> running -> terminal"""
        return _TASK_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


_TASK_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.QUEUED: 1,
    TaskStatus.RUNNING: 2,
    TaskStatus.COMPLETED: 3,
    TaskStatus.FAILED: 3,
    TaskStatus.CANCELLED: 3,
}


class PipelineState(Enum):
    """In-memory pipeline lifecycle state"""
    PLANNING = "planning"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)


class ChapterStatus(Enum):
    """Chapter workflow status"""
    OUTLINED = "outlined"
    DRAFTING = "drafting"
    DRAFT = "draft"
    EDITING = "editing"
    REVIEWED = "reviewed"
    FINAL = "final"


@dataclass
class TokenUsage:
    """Token counts reported by the agent executor"""
    input: int = 0
    output: int = 0

    def to_dict(self) -> dict:
        return {"input": self.input, "output": self.output}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "TokenUsage":
        data = data or {}
        return cls(input=int(data.get("input", 0)), output=int(data.get("output", 0)))


@dataclass
class PlanStep:
    """
    One agent invocation in a plan.

    `depends_on` lists earlier step indexes whose output feeds this step.
    None means "every step before me".
    """
    agent_type: AgentType
    task_type: str
    description: str
    instructions: str = ""
    depends_on: Optional[List[int]] = None

    def to_dict(self) -> dict:
        return {
            "agentType": self.agent_type.value,
            "taskType": self.task_type,
            "description": self.description,
        }


@dataclass
class AgentOutput:
    """Full result of one agent invocation"""
    agent_type: AgentType
    task_type: str
    content: str
    structured: Optional[Dict[str, Any]] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> dict:
        data = {
            "agentType": self.agent_type.value,
            "taskType": self.task_type,
            "content": self.content,
            "tokenUsage": self.token_usage.to_dict(),
        }
        if self.structured is not None:
            data["structured"] = self.structured
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AgentOutput":
        return cls(
            agent_type=AgentType(data["agentType"]),
            task_type=data.get("taskType", "general"),
            content=data.get("content", ""),
            structured=data.get("structured"),
            token_usage=TokenUsage.from_dict(data.get("tokenUsage")),
        )


@dataclass
class PipelineProgress:
    """Progress counters exposed through status queries"""
    completed_steps: int = 0
    total_steps: int = 0
    current_agent_type: Optional[AgentType] = None

    def to_dict(self) -> dict:
        return {
            "completedSteps": self.completed_steps,
            "totalSteps": self.total_steps,
            "currentAgentType": self.current_agent_type.value if self.current_agent_type else None,
        }


class StreamEventType(Enum):
    """Tags of the StreamEvent union"""
    AGENT_START = "agent_start"
    AGENT_STREAM = "agent_stream"
    AGENT_COMPLETE = "agent_complete"
    PIPELINE_PLAN = "pipeline_plan"
    PIPELINE_PAUSED = "pipeline_paused"
    PIPELINE_COMPLETE = "pipeline_complete"
    ERROR = "error"


@dataclass
class StreamEvent:
    """A transient unit of progress information pushed to a client"""
    type: StreamEventType
    agent_type: Optional[AgentType] = None
    text: Optional[str] = None
    output: Optional[AgentOutput] = None
    plan: Optional[List[PlanStep]] = None
    outputs: Optional[List[AgentOutput]] = None
    message: Optional[str] = None

    @classmethod
    def agent_start(cls, agent_type: AgentType) -> "StreamEvent":
        return cls(StreamEventType.AGENT_START, agent_type=agent_type)

    @classmethod
    def agent_stream(cls, agent_type: AgentType, text: str) -> "StreamEvent":
        return cls(StreamEventType.AGENT_STREAM, agent_type=agent_type, text=text)

    @classmethod
    def agent_complete(cls, output: AgentOutput) -> "StreamEvent":
        return cls(StreamEventType.AGENT_COMPLETE, agent_type=output.agent_type, output=output)

    @classmethod
    def pipeline_plan(cls, steps: List[PlanStep]) -> "StreamEvent":
        return cls(StreamEventType.PIPELINE_PLAN, plan=list(steps))

    @classmethod
    def pipeline_paused(cls, message: str = "") -> "StreamEvent":
        return cls(StreamEventType.PIPELINE_PAUSED, message=message or None)

    @classmethod
    def pipeline_complete(cls, outputs: List[AgentOutput]) -> "StreamEvent":
        return cls(StreamEventType.PIPELINE_COMPLETE, outputs=list(outputs))

    @classmethod
    def error(cls, message: str, agent_type: Optional[AgentType] = None) -> "StreamEvent":
        return cls(StreamEventType.ERROR, agent_type=agent_type, message=message)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.agent_type is not None:
            data["agentType"] = self.agent_type.value
        if self.text is not None:
            data["text"] = self.text
        if self.output is not None:
            data["output"] = self.output.to_dict()
        if self.plan is not None:
            data["plan"] = {"steps": [s.to_dict() for s in self.plan]}
        if self.outputs is not None:
            data["outputs"] = [o.to_dict() for o in self.outputs]
        if self.message is not None:
            data["message"] = self.message
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict) -> "StreamEvent":
        """Rebuild an event from its wire form. Raises on malformed input."""
        event_type = StreamEventType(data["type"])
        agent_type = AgentType(data["agentType"]) if data.get("agentType") else None
        plan = None
        if data.get("plan") is not None:
            plan = [
                PlanStep(
                    agent_type=AgentType(s["agentType"]),
                    task_type=s.get("taskType", ""),
                    description=s.get("description", ""),
                )
                for s in data["plan"].get("steps", [])
            ]
        output = AgentOutput.from_dict(data["output"]) if data.get("output") else None
        outputs = None
        if data.get("outputs") is not None:
            outputs = [AgentOutput.from_dict(o) for o in data["outputs"]]
        return cls(
            type=event_type,
            agent_type=agent_type,
            text=data.get("text"),
            output=output,
            plan=plan,
            outputs=outputs,
            message=data.get("message"),
        )


class ControlAction(Enum):
    """Operator control actions"""
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
