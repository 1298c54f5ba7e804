"""
Chapter Pipeline Configuration

Settings the orchestration core depends on, kept separate from the
process-wide Settings so the core can be driven directly in tests.
"""

from dataclasses import dataclass


@dataclass
class PipelineConfig:
    """
    Configuration for the chapter pipeline.

    All settings that control orchestration behavior.
    """

    # === STREAMING ===

    heartbeat_interval: float = 15.0
    """Seconds between heartbeat frames on an idle event stream"""

    cancel_on_disconnect: bool = True
    """Cancel a pipeline at its next step boundary once its last observer disconnects"""

    # === REGISTRY ===

    retention_seconds: float = 300.0
    """How long a finished pipeline stays queryable by id"""

    # === AGENT CALLS ===

    default_model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 4096

    summary_model: str = "claude-sonnet-4-20250514"
    summary_temperature: float = 0.3
    summary_max_tokens: int = 1024

    # === COMPLETION ===

    summary_on_complete: bool = True
    """Generate the chapter summary after a successful run"""

    brief_summary_chars: int = 200
    detailed_summary_chars: int = 800

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        """Build from the application Settings object."""
        return cls(
            heartbeat_interval=settings.heartbeat_interval_seconds,
            cancel_on_disconnect=settings.cancel_on_disconnect,
            retention_seconds=settings.pipeline_retention_seconds,
            default_model=settings.default_model,
            temperature=settings.agent_temperature,
            max_tokens=settings.agent_max_tokens,
            summary_model=settings.default_model,
            summary_on_complete=settings.summary_on_complete,
        )
