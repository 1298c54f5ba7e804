"""
Chapter summary generation.

Asks the agent executor for a brief and a detailed summary as JSON.
A reply that does not parse degrades to prefixes of the raw text.
"""

import logging
from typing import Any, Dict, Optional

from .ai_adapter import AgentExecutor
from .config import PipelineConfig
from .exceptions import ChapterNotFoundError
from .models import AgentType
from .parsing import Structured, extract_json_object
from .prompts import SUMMARY_SYSTEM_PROMPT
from .store import TaskRepository

logger = logging.getLogger("ChapterPipeline.Summary")

SUMMARY_TASK_TYPE = "summary"


def summarize_reply(raw: str, brief_chars: int = 200, detailed_chars: int = 800) -> Dict[str, Any]:
    """
    Turn a model reply into {brief, detailed, structured}.

    `structured` is False when the reply had no usable JSON object.
    """
    extracted = extract_json_object(raw)
    if isinstance(extracted, Structured):
        value = extracted.value
        brief = value.get("brief")
        detailed = value.get("detailed")
        if isinstance(brief, str) and isinstance(detailed, str):
            return {"brief": brief, "detailed": detailed, "structured": True}

    logger.warning("Summary reply was not valid JSON, using raw text")
    return {
        "brief": raw[:brief_chars],
        "detailed": raw[:detailed_chars],
        "structured": False,
    }


class ChapterSummaryGenerator:
    """Generates and stores the two-tier summary of a chapter."""

    def __init__(
        self,
        repository: TaskRepository,
        agent_executor: AgentExecutor,
        config: Optional[PipelineConfig] = None,
    ):
        self.repository = repository
        self.agent_executor = agent_executor
        self.config = config or PipelineConfig()

    async def generate(self, chapter_id: str) -> Dict[str, Any]:
        chapter = self.repository.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(chapter_id)
        if not chapter.content or not chapter.content.strip():
            raise ChapterNotFoundError(chapter_id, reason="has no content")

        context = {
            "system_prompt": SUMMARY_SYSTEM_PROMPT,
            "instructions": f"Summarize the following chapter:\n\n{chapter.content}",
            "model": self.config.summary_model,
            "temperature": self.config.summary_temperature,
            "max_tokens": self.config.summary_max_tokens,
            "chapter": {"chapter_number": chapter.chapter_number},
        }
        output = await self.agent_executor.invoke(AgentType.EDITOR, SUMMARY_TASK_TYPE, context)

        result = summarize_reply(
            output.content,
            brief_chars=self.config.brief_summary_chars,
            detailed_chars=self.config.detailed_summary_chars,
        )
        self.repository.update_chapter_summary(chapter_id, result["brief"], result["detailed"])
        logger.info(
            f"Summary saved for chapter {chapter_id} "
            f"(brief={len(result['brief'])}, detailed={len(result['detailed'])})"
        )
        return result
