"""
System prompts and context formatting for agent calls.
"""

import json
from typing import Any, Dict, List

from .models import AgentType


SYSTEM_PROMPTS: Dict[AgentType, str] = {
    AgentType.COORDINATOR: (
        "You are the coordinator of a team of agents writing a serialized novel. "
        "You plan each chapter so the other agents can do their part: what happens, "
        "who appears, and which threads move forward."
    ),
    AgentType.PLOT_ARCHITECT: (
        "You are the plot architect. You turn a chapter plan into concrete scenes and "
        "beats, and you track where foreshadowing is planted and paid off."
    ),
    AgentType.CHARACTER_MANAGER: (
        "You are the character manager. You know every character's voice, motives and "
        "relationships and brief the writer on how each one should behave in this chapter."
    ),
    AgentType.WRITER: (
        "You are the novelist. You write vivid, readable prose that follows the scene "
        "structure, settings and character notes you are given."
    ),
    AgentType.EDITOR: (
        "You are the editor. You proofread and polish chapter prose while keeping the "
        "author's voice, and you explain the changes you made."
    ),
    AgentType.WORLD_BUILDER: (
        "You are the world builder. You keep the setting consistent and supply the "
        "concrete sensory detail scenes need."
    ),
    AgentType.CONTINUITY_CHECKER: (
        "You are the continuity checker. You find contradictions with earlier chapters, "
        "timeline errors and out-of-character behavior, and you report them precisely."
    ),
}


SUMMARY_SYSTEM_PROMPT = """You write chapter summaries for a novel's internal records.
Read the chapter and output two summaries as JSON.

Output format:
{
  "brief": "One or two sentences, at most 200 characters: what happens in this chapter.",
  "detailed": "At most 800 characters: main events, character changes, progress of foreshadowing, emotional turning points."
}

Notes:
- Always output valid JSON
- Spoilers are fine; this summary is for internal use
- Keep proper nouns as they are"""


def format_context_for_prompt(context: Dict[str, Any]) -> str:
    """Render project/chapter context and prior step outputs as prompt text."""
    parts: List[str] = []

    project = context.get("project") or {}
    if project:
        lines = [f"# Project: {project.get('title', '')}"]
        if project.get("genre"):
            lines.append(f"Genre: {project['genre']}")
        if project.get("synopsis"):
            lines.append(f"Synopsis: {project['synopsis']}")
        parts.append("\n".join(lines))

    chapter = context.get("chapter") or {}
    if chapter:
        lines = [f"# Chapter {chapter.get('chapter_number', '')}: {chapter.get('title') or ''}".rstrip(": ")]
        if chapter.get("synopsis"):
            lines.append(f"Synopsis: {chapter['synopsis']}")
        if chapter.get("content"):
            lines.append(f"## Current text\n{chapter['content']}")
        parts.append("\n".join(lines))

    extra = context.get("initial_context") or {}
    if extra:
        parts.append("# Additional context\n" + json.dumps(extra, ensure_ascii=False, indent=2))

    for prior in context.get("previous_outputs") or []:
        parts.append(
            f"## Output of the previous step ({prior['agentType']} / {prior['taskType']})\n"
            f"{prior['content']}"
        )

    return "\n\n---\n\n".join(parts)


def build_messages(context: Dict[str, Any]) -> List[Dict[str, str]]:
    """Messages for one step: a context message followed by the step's instructions."""
    messages = []
    context_text = format_context_for_prompt(context)
    if context_text:
        messages.append({
            "role": "user",
            "content": f"Project context follows:\n\n{context_text}",
        })
        messages.append({"role": "assistant", "content": "Understood."})
    messages.append({
        "role": "user",
        "content": context.get("instructions") or context.get("description") or "Proceed.",
    })
    return messages
