"""
Pipeline Registry & Control Surface

Process-scoped lookup of live pipelines by id.

Lifecycle: one registry is created at process start and handed to the
executor and the HTTP layer. Entries are inserted when a pipeline
starts; once a pipeline reaches a terminal state it stays queryable
for `retention_seconds` and is then evicted.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from .exceptions import PipelineNotFoundError, InvalidControlActionError
from .models import ControlAction

if TYPE_CHECKING:
    from .pipeline import ChapterPipeline

logger = logging.getLogger("ChapterPipeline.Registry")


def parse_action(action: str) -> ControlAction:
    """Validate a raw control action value."""
    try:
        return ControlAction(action)
    except ValueError:
        raise InvalidControlActionError(str(action))


class PipelineRegistry:
    """Non-owning index of pipelines; the executor owns each pipeline."""

    def __init__(
        self,
        retention_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._pipelines: Dict[str, "ChapterPipeline"] = {}
        self._finished_at: Dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pipelines)

    def __contains__(self, pipeline_id: str) -> bool:
        return self.get(pipeline_id) is not None

    def register(self, pipeline: "ChapterPipeline"):
        with self._lock:
            self._pipelines[pipeline.pipeline_id] = pipeline
        logger.info(f"Registered pipeline {pipeline.pipeline_id}")

    def mark_finished(self, pipeline_id: str):
        """Start the retention window for a pipeline that reached a terminal state."""
        with self._lock:
            if pipeline_id not in self._pipelines:
                return
            if self.retention_seconds <= 0:
                self._pipelines.pop(pipeline_id, None)
                logger.debug(f"Removed finished pipeline {pipeline_id}")
                return
            self._finished_at[pipeline_id] = self._clock()

    def remove(self, pipeline_id: str) -> bool:
        with self._lock:
            self._finished_at.pop(pipeline_id, None)
            return self._pipelines.pop(pipeline_id, None) is not None

    def purge_expired(self) -> int:
        """Evict finished pipelines whose retention window has passed."""
        now = self._clock()
        with self._lock:
            expired = [
                pid for pid, finished in self._finished_at.items()
                if now - finished >= self.retention_seconds
            ]
            for pid in expired:
                self._finished_at.pop(pid, None)
                self._pipelines.pop(pid, None)
        if expired:
            logger.debug(f"Evicted {len(expired)} finished pipeline(s)")
        return len(expired)

    def get(self, pipeline_id: str) -> Optional["ChapterPipeline"]:
        self.purge_expired()
        with self._lock:
            return self._pipelines.get(pipeline_id)

    def require(self, pipeline_id: str) -> "ChapterPipeline":
        pipeline = self.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    def list_active(self) -> List[str]:
        """Ids of registered pipelines that have not reached a terminal state."""
        self.purge_expired()
        with self._lock:
            pipelines = list(self._pipelines.values())
        return [p.pipeline_id for p in pipelines if not p.state.is_terminal]

    # === Control surface ===

    def status(self, pipeline_id: str) -> dict:
        """Current state and progress, or PipelineNotFoundError."""
        return self.require(pipeline_id).snapshot()

    def control(self, pipeline_id: str, action: str) -> dict:
        """
        Apply pause, resume or cancel and return the resulting snapshot.

        Actions only flip flags read at the next step boundary; a step
        already in flight always runs to completion first.
        """
        parsed = parse_action(action)
        pipeline = self.require(pipeline_id)

        if parsed == ControlAction.PAUSE:
            pipeline.pause()
        elif parsed == ControlAction.RESUME:
            pipeline.resume()
        else:
            pipeline.cancel()

        return pipeline.snapshot()
