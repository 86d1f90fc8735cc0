# inkpilot/summarizer.py
"""
Transcript compaction.

When a session transcript grows past ``message_threshold`` the older part is
rendered as compact text, summarized by the model over the plain generate
endpoint, and replaced by a single user-role message holding the summary.
The newest ``recent_messages_to_keep`` messages are kept verbatim.

A failed or empty summary leaves the transcript untouched; the check runs
again on the next turn.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

from .backends import GenerateRequest, GenerateResult, SamplingOptions
from .config import SummarizationConfig
from .logging_utils import get_logger
from .messages import Message, MessageRole
from .prompt import SUMMARIZER_SYSTEM_PROMPT, summarizer_prompt, wrap_summary
from .session import Session

log = get_logger("inkpilot.summarizer")

_ARGS_CHARS = 200
_TEXT_CHARS = 300


class TextGenerator(Protocol):
    def generate(self, request: GenerateRequest, timeout: float | None = None) -> GenerateResult: ...


@dataclass(frozen=True)
class CompactionRecord:
    messages_summarized: int
    messages_kept: int
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "occurred": True,
            "messagesSummarized": self.messages_summarized,
            "messagesKept": self.messages_kept,
            "summary": self.summary,
        }


@dataclass
class Compaction:
    messages: list[Message]
    record: CompactionRecord


def format_messages_for_summarization(messages: list[Message]) -> str:
    parts: list[str] = []
    for msg in messages:
        content = msg.content or ""
        if msg.role == MessageRole.ASSISTANT:
            for call in msg.tool_calls:
                args = json.dumps(call.arguments, ensure_ascii=False, default=str)[:_ARGS_CHARS]
                parts.append(f"[ASSISTANT called {call.name}: {args}]")
            if content:
                parts.append(f"[ASSISTANT]: {content[:_TEXT_CHARS]}")
        elif msg.role in (MessageRole.USER, MessageRole.TOOL):
            clipped = content[:_TEXT_CHARS] + ("..." if len(content) > _TEXT_CHARS else "")
            parts.append(f"[USER/TOOL RESULT]: {clipped}")
    return "\n".join(parts)


class HistorySummarizer:
    def __init__(self, config: SummarizationConfig | None = None) -> None:
        self.config = config or SummarizationConfig()

    def needs_compaction(self, session: Session) -> bool:
        return self.config.enabled and len(session.messages) > self.config.message_threshold

    def summarize(self, session: Session, older: list[Message], llm: TextGenerator) -> str | None:
        """Ask the model for a synopsis of ``older``; None on any failure."""
        prompt = summarizer_prompt(
            session.goal,
            session.iteration_count,
            session.max_iterations,
            format_messages_for_summarization(older),
        )
        result = llm.generate(
            GenerateRequest(
                prompt=prompt,
                system=SUMMARIZER_SYSTEM_PROMPT,
                options=SamplingOptions(
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                ),
            ),
            timeout=self.config.timeout,
        )
        if not result.success:
            log.warning("Summarization failed: %s", result.error, extra={"session": session.id})
            return None
        text = result.response.strip()
        if not text:
            log.warning("Summarization returned an empty response", extra={"session": session.id})
            return None
        return text

    def maybe_compact(self, session: Session, llm: TextGenerator) -> Compaction | None:
        if not self.needs_compaction(session):
            return None

        keep = self.config.recent_messages_to_keep
        split = len(session.messages) - keep
        older = session.messages[:split]
        recent = session.messages[split:]

        summary = self.summarize(session, older, llm)
        if summary is None:
            return None

        wrapped = wrap_summary(summary)
        log.info(
            "Compacted session %s: %d message(s) summarized, %d kept",
            session.id,
            len(older),
            len(recent),
        )
        return Compaction(
            messages=[Message(role=MessageRole.USER, content=wrapped), *recent],
            record=CompactionRecord(
                messages_summarized=len(older),
                messages_kept=len(recent),
                summary=wrapped,
            ),
        )


__all__ = [
    "Compaction",
    "CompactionRecord",
    "HistorySummarizer",
    "format_messages_for_summarization",
]
