"""
Chapter content recovery.

Rebuilds a chapter from the best completed task record after a run
failed or its content was lost: the latest editor output first, then
the latest writer output.
"""

import logging
from typing import Any, Dict

from .exceptions import NoRecoverableOutputError
from .models import AgentType, ChapterStatus
from .parsing import extract_chapter_text
from .store import TaskRepository

logger = logging.getLogger("ChapterPipeline.Recovery")

RECOVERY_ORDER = (AgentType.EDITOR, AgentType.WRITER)


class ChapterRecovery:
    def __init__(self, repository: TaskRepository):
        self.repository = repository

    def find_content(self, project_id: str, chapter_id: str):
        """Return (agent_type, text) of the preferred record, or None."""
        for agent_type in RECOVERY_ORDER:
            record = self.repository.latest_completed_task(project_id, chapter_id, agent_type.value)
            if record is None or not record.output:
                continue
            text = extract_chapter_text(agent_type.value, record.output)
            if text:
                return agent_type, text
            logger.debug(f"{agent_type.value} record {record.id} has no usable prose, skipping")
        return None

    def recover(self, project_id: str, chapter_id: str) -> Dict[str, Any]:
        """
        Overwrite the chapter with recovered content and reset it to draft.

        Raises NoRecoverableOutputError when neither record type exists.
        """
        found = self.find_content(project_id, chapter_id)
        if found is None:
            logger.info(f"No recoverable output for chapter {chapter_id}")
            raise NoRecoverableOutputError(chapter_id)

        agent_type, content = found
        chapter = self.repository.update_chapter_content(
            chapter_id, content, status=ChapterStatus.DRAFT
        )
        logger.info(
            f"Recovered chapter {chapter_id} from {agent_type.value} output "
            f"({len(content)} chars)"
        )
        return {
            "success": True,
            "source": agent_type.value,
            "contentLength": len(content),
            "chapter": chapter.to_dict(),
        }
