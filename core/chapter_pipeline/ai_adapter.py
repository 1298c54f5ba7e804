"""
Agent executor capability.

The pipeline only depends on the AgentExecutor protocol. Two
implementations ship with the service: one that streams from the
Anthropic Messages API through the official SDK, and a mock for
offline runs.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import anthropic
import httpx

from .config import PipelineConfig
from .exceptions import AgentExecutionError
from .models import AgentOutput, AgentType, TokenUsage
from .prompts import SYSTEM_PROMPTS, build_messages

TextCallback = Callable[[str], None]

ANTHROPIC_API_URL = "https://api.anthropic.com"


class AgentExecutor(Protocol):
    """
    invoke(agent_type, task_type, context) -> AgentOutput

    When `on_text` is given, each incremental chunk of generated text is
    passed to it before the final output is returned.
    """

    async def invoke(
        self,
        agent_type: AgentType,
        task_type: str,
        context: Dict[str, Any],
        on_text: Optional[TextCallback] = None,
    ) -> AgentOutput: ...


class AnthropicAgentExecutor:
    """
    Streams one Messages API call per agent step through
    `AsyncAnthropic.messages.stream` and forwards text deltas as they
    arrive.
    """

    def __init__(
        self,
        api_key: str,
        config: Optional[PipelineConfig] = None,
        base_url: str = ANTHROPIC_API_URL,
        timeout: float = 300.0,
        max_retries: int = 2,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or PipelineConfig()
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )
        self.logger = logging.getLogger("ChapterPipeline.AIAdapter")

    async def invoke(
        self,
        agent_type: AgentType,
        task_type: str,
        context: Dict[str, Any],
        on_text: Optional[TextCallback] = None,
    ) -> AgentOutput:
        """Run one agent step."""
        system = context.get("system_prompt") or SYSTEM_PROMPTS[agent_type]
        content, usage = await self.complete(
            system=system,
            messages=build_messages(context),
            model=context.get("model") or self.config.default_model,
            temperature=context.get("temperature", self.config.temperature),
            max_tokens=context.get("max_tokens", self.config.max_tokens),
            on_text=on_text,
            agent_label=agent_type.value,
        )
        return AgentOutput(
            agent_type=agent_type,
            task_type=task_type,
            content=content,
            token_usage=usage,
        )

    async def complete(
        self,
        system: str,
        messages: list,
        model: str,
        temperature: float,
        max_tokens: int,
        on_text: Optional[TextCallback] = None,
        agent_label: str = "agent",
    ) -> tuple:
        """Stream one Messages API call. Returns (text, TokenUsage)."""
        chunks = []
        try:
            async with self.client.messages.stream(
                model=model,
                system=system,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            ) as stream:
                async for text in stream.text_stream:
                    chunks.append(text)
                    if on_text and text:
                        on_text(text)
                message = await stream.get_final_message()
        except anthropic.APIStatusError as e:
            self.logger.error(f"Agent call rejected ({agent_label}): {e.status_code}")
            raise AgentExecutionError(agent_label, f"API returned {e.status_code}: {e.message[:300]}")
        except anthropic.APIError as e:
            self.logger.error(f"Agent call failed ({agent_label}): {e}")
            raise AgentExecutionError(agent_label, f"Request failed: {e}")

        content = "".join(chunks)
        if not content.strip():
            raise AgentExecutionError(agent_label, "Empty response from model")
        usage = TokenUsage(input=message.usage.input_tokens, output=message.usage.output_tokens)
        return content, usage


class MockAgentExecutor:
    """
    Mock executor for development / when no API key is configured.

    Produces deterministic placeholder text per agent type and streams
    it in a few chunks.
    """

    def __init__(self, chunk_count: int = 4, delay: float = 0.0):
        self.chunk_count = chunk_count
        self.delay = delay
        self.call_count = 0
        self.logger = logging.getLogger("ChapterPipeline.MockAI")

    async def invoke(
        self,
        agent_type: AgentType,
        task_type: str,
        context: Dict[str, Any],
        on_text: Optional[TextCallback] = None,
    ) -> AgentOutput:
        self.call_count += 1
        content = self._generate(agent_type, task_type, context)

        if on_text:
            size = max(1, len(content) // self.chunk_count)
            for i in range(0, len(content), size):
                if self.delay:
                    await asyncio.sleep(self.delay)
                on_text(content[i:i + size])

        return AgentOutput(
            agent_type=agent_type,
            task_type=task_type,
            content=content,
            token_usage=TokenUsage(input=len(str(context)) // 4, output=len(content) // 4),
        )

    def _generate(self, agent_type: AgentType, task_type: str, context: Dict[str, Any]) -> str:
        chapter = (context.get("chapter") or {}).get("chapter_number", 1)

        if task_type == "summary":
            return json.dumps({
                "brief": f"Chapter {chapter}: a letter changes everything at the harbor.",
                "detailed": (
                    f"In chapter {chapter} the heroine brings a letter to the harbor office. "
                    "Nobody speaks until he reads it; the rain keeps falling."
                ),
            })

        if agent_type == AgentType.WRITER:
            return (
                f"The rain had not stopped since dawn. Chapter {chapter} opens on the harbor, "
                "where the lanterns swung in the wind and nobody wanted to be the first to speak.\n\n"
                "She set the letter on the table and waited for him to read it."
            )
        if agent_type == AgentType.EDITOR:
            return (
                "--- Revised Text ---\n"
                f"The rain had not stopped since dawn. Chapter {chapter} opens on the harbor, "
                "where lanterns swung in the wind and no one wanted to speak first.\n\n"
                "She set the letter on the table and waited for him to read it.\n"
                "--- Feedback ---\n"
                "Tightened the opening sentence and removed a repeated article."
            )
        if agent_type == AgentType.CONTINUITY_CHECKER:
            return '{"issues": [], "newCharacters": [], "newWorldSettings": []}'
        return f"[{agent_type.value}] Notes for chapter {chapter}."
