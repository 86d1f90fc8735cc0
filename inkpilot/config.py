# inkpilot/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any


# ---------------------------------------------------------------------
# LLMConfig: where to reach the inference server and how to sample
# ---------------------------------------------------------------------
@dataclass
class LLMConfig:
    base_url: str = field(
        default_factory=lambda: os.getenv(
            "INKPILOT_OLLAMA_URL", "http://localhost:11434"
        )
    )
    model: str = field(
        default_factory=lambda: os.getenv("INKPILOT_MODEL", "llama3.1")
    )
    temperature: float = 0.7
    max_tokens: int = 2048

    # Local inference is slow; chat/generate get minutes, connectivity
    # checks get seconds.
    timeout: float = 300.0
    connect_timeout: float = 10.0


# ---------------------------------------------------------------------
# SummarizationConfig: transcript compaction
# ---------------------------------------------------------------------
@dataclass
class SummarizationConfig:
    enabled: bool = True
    message_threshold: int = 30
    recent_messages_to_keep: int = 10

    temperature: float = 0.3
    max_tokens: int = 500
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.recent_messages_to_keep < 0:
            raise ValueError("recent_messages_to_keep must be >= 0")
        if self.message_threshold <= self.recent_messages_to_keep:
            raise ValueError(
                "message_threshold must be greater than recent_messages_to_keep "
                f"(got {self.message_threshold} <= {self.recent_messages_to_keep})"
            )


# ---------------------------------------------------------------------
# Agent Config
# ---------------------------------------------------------------------
@dataclass
class Config:
    llm: LLMConfig = field(default_factory=LLMConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)

    # Session defaults
    max_iterations: int = 10
    completion_tool: str = "mark_goal_complete"
    ask_user_tool: str = "ask_user"

    # Append a corrective user message when a turn produced no tool call
    nudge_on_idle_turn: bool = True

    # Attach per-turn event traces to TurnResult.debug
    debug_trace: bool = False

    # Logging
    log_level: str | int = field(
        default_factory=lambda: os.getenv("INKPILOT_LOG_LEVEL", "ERROR")
    )
    log_json: bool = field(
        default_factory=lambda: os.getenv("INKPILOT_LOG_JSON", "0").lower()
        in ("1", "true", "yes")
    )

    @classmethod
    def from_overrides(cls, **overrides: Any) -> Config:
        """
        Build a Config from flat keyword overrides.

        Keys naming a top-level field are applied directly; keys naming an
        LLMConfig or SummarizationConfig field are routed to that section,
        LLMConfig first (so ``temperature`` means the chat temperature).
        Unknown keys are ignored.
        """
        cfg = cls()
        top = {f.name for f in fields(cls)}
        llm_keys = {f.name for f in fields(LLMConfig)}
        summary_keys = {f.name for f in fields(SummarizationConfig)}

        summary_updates: dict[str, Any] = {}
        for k, v in overrides.items():
            if k in top:
                setattr(cfg, k, v)
            elif k in llm_keys:
                setattr(cfg.llm, k, v)
            elif k in summary_keys:
                summary_updates[k] = v

        if summary_updates:
            current = {f.name: getattr(cfg.summarization, f.name) for f in fields(SummarizationConfig)}
            current.update(summary_updates)
            # threshold/keep are validated together in __post_init__
            cfg.summarization = SummarizationConfig(**current)
        return cfg
