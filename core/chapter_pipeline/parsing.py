"""
Lenient parsing of agent free-text replies.

Agents are asked for JSON or for marker-delimited sections, but replies
arrive as free text. Nothing in here raises on malformed input; callers
get a tagged result and decide the degraded behavior themselves.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class Structured:
    """A JSON object was found and parsed"""
    value: Dict[str, Any]
    raw_text: str


@dataclass(frozen=True)
class Unstructured:
    """No usable JSON object; the raw reply is all there is"""
    raw_text: str


ExtractionResult = Union[Structured, Unstructured]


SPLIT_SUGGESTION_PATTERN = re.compile(r"<!-- SPLIT_SUGGESTION:[\s\S]*?-->")

EDITOR_START_MARKER = re.compile(r"---\s*(?:修正後本文|Revised Text)\s*---", re.IGNORECASE)
EDITOR_END_MARKER = re.compile(r"---\s*(?:フィードバック|Feedback)\s*---", re.IGNORECASE)


def find_balanced_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} span in text, or None.

    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json_object(text: str) -> ExtractionResult:
    """Locate and parse the first JSON object embedded anywhere in text."""
    text = text or ""
    span = find_balanced_object(text)
    if span is None:
        return Unstructured(raw_text=text)
    try:
        value = json.loads(span)
    except json.JSONDecodeError:
        return Unstructured(raw_text=text)
    if not isinstance(value, dict):
        return Unstructured(raw_text=text)
    return Structured(value=value, raw_text=text)


def strip_split_suggestions(text: str) -> str:
    """Remove internal chapter-split annotations and trim."""
    return SPLIT_SUGGESTION_PATTERN.sub("", text or "").strip()


def extract_editor_content(raw: str) -> str:
    """
    Extract the corrected prose from editor output.

    Expected format: "--- 修正後本文 ---\\n...\\n--- フィードバック ---\\n..."
    Returns "" for the legacy JSON corrections format, which carries no prose.
    """
    raw = raw or ""
    start_match = EDITOR_START_MARKER.search(raw)
    if start_match:
        content_start = start_match.end()
        end_match = EDITOR_END_MARKER.search(raw, content_start)
        if end_match:
            return strip_split_suggestions(raw[content_start:end_match.start()])
        return strip_split_suggestions(raw[content_start:])

    trimmed = raw.strip()
    if trimmed.startswith("{") and '"corrections"' in trimmed:
        return ""

    return strip_split_suggestions(raw)


def extract_chapter_text(agent_type_value: str, raw: str) -> str:
    """Chapter prose from an editor or writer output."""
    if agent_type_value == "editor":
        return extract_editor_content(raw)
    return strip_split_suggestions(raw)
