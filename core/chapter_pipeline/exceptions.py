"""
Chapter Pipeline Custom Exceptions
"""


class ChapterPipelineError(Exception):
    """Base exception for the chapter pipeline"""
    pass


class PipelineNotFoundError(ChapterPipelineError):
    """No live pipeline is registered under the given id"""
    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline not found: {pipeline_id}")


class InvalidControlActionError(ChapterPipelineError):
    """Control action is not one of pause, resume, cancel"""
    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Invalid action '{action}'. Use: pause, resume, cancel")


class PlanningError(ChapterPipelineError):
    """The planning capability could not produce a usable plan"""
    pass


class AgentExecutionError(ChapterPipelineError):
    """Error in agent execution"""
    def __init__(self, agent_type: str, message: str):
        self.agent_type = agent_type
        super().__init__(f"[{agent_type}] {message}")


class InvalidTaskTransitionError(ChapterPipelineError):
    """Task record status may only move forward"""
    def __init__(self, task_id: str, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id}: cannot move from {current} to {requested}")


class ChapterNotFoundError(ChapterPipelineError):
    """Chapter does not exist or has no content to work with"""
    def __init__(self, chapter_id: str, reason: str = "not found"):
        self.chapter_id = chapter_id
        super().__init__(f"Chapter {reason}: {chapter_id}")


class NoRecoverableOutputError(ChapterPipelineError):
    """No completed editor or writer output exists for the chapter"""
    def __init__(self, chapter_id: str):
        self.chapter_id = chapter_id
        super().__init__("No completed writer or editor output found")


class InvalidStepIndexError(ChapterPipelineError):
    """Step index falls outside the chapter's writing plan"""
    def __init__(self, step_index, total_steps: int):
        self.step_index = step_index
        self.total_steps = total_steps
        super().__init__(f"Invalid stepIndex {step_index}: the plan has {total_steps} steps")
