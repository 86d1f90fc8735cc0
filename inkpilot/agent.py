# inkpilot/agent.py
from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Callable, Iterable

import httpx

from .backends import ModelListResult, OllamaClient
from .capabilities import CapabilityCache, normalize_base_url
from .config import Config, LLMConfig
from .engine import ConversationEngine, TurnListener, TurnResult
from .logging_utils import get_logger
from .messages import Message, MessageRole
from .prompt import SystemPromptBuilder
from .session import Session, SessionManager, SessionSnapshot
from .summarizer import HistorySummarizer
from .tools import ToolExecutor, ToolParameter, ToolRegistry, register_control_tools

log = get_logger("inkpilot.agent")


class Agent:
    """
    Goal-driven agent over an Ollama server.

    Owns the session store, the conversation engine and one HTTP client per
    distinct session LLM configuration. All clients share one
    ``CapabilityCache``, so a model found to lack native tool calling is
    remembered across sessions.
    """

    def __init__(
        self,
        config: Config | None = None,
        tools: ToolExecutor | None = None,
        *,
        system_prompt_builder: SystemPromptBuilder | None = None,
        capabilities: CapabilityCache | None = None,
        transport: httpx.BaseTransport | None = None,
        listeners: Iterable[TurnListener] = (),
    ) -> None:
        # --------------------------------------------------------------
        # CONFIG + LOGGING
        # --------------------------------------------------------------
        self.config = config or Config()
        get_logger("inkpilot", self.config.log_level, self.config.log_json)
        self._log = log
        self._log.info(
            "Initializing Agent base_url=%s model=%s max_iterations=%d",
            self.config.llm.base_url,
            self.config.llm.model,
            self.config.max_iterations,
        )

        # --------------------------------------------------------------
        # TOOLS
        # --------------------------------------------------------------
        if tools is None:
            tools = ToolRegistry()
        if isinstance(tools, ToolRegistry) and self.config.completion_tool not in tools:
            register_control_tools(tools, self.config.completion_tool, self.config.ask_user_tool)
        self.tools = tools

        # --------------------------------------------------------------
        # TRANSPORT
        # --------------------------------------------------------------
        self.capabilities = capabilities if capabilities is not None else CapabilityCache()
        self._transport = transport
        self._clients: dict[tuple[Any, ...], OllamaClient] = {}
        self._clients_lock = threading.Lock()

        # --------------------------------------------------------------
        # SESSIONS + ENGINE
        # --------------------------------------------------------------
        self.sessions = SessionManager()
        self.engine = ConversationEngine(
            self._client_for_session,
            self.tools,
            config=self.config,
            system_prompt_builder=system_prompt_builder,
            summarizer=HistorySummarizer(self.config.summarization),
            listeners=listeners,
        )

    def __repr__(self) -> str:
        return (
            f"Agent(model={self.config.llm.model!r}, sessions={len(self.sessions)}, "
            f"capabilities={self.capabilities!r})"
        )

    # ------------------------------------------------------------------
    # clients
    # ------------------------------------------------------------------
    def client_for(self, llm: LLMConfig | None = None) -> OllamaClient:
        llm = llm or self.config.llm
        key = (
            normalize_base_url(llm.base_url),
            llm.model,
            llm.temperature,
            llm.max_tokens,
            llm.timeout,
            llm.connect_timeout,
        )
        with self._clients_lock:
            client = self._clients.get(key)
            if client is None:
                client = OllamaClient.from_config(
                    llm, capabilities=self.capabilities, transport=self._transport
                )
                self._clients[key] = client
            return client

    def _client_for_session(self, session: Session) -> OllamaClient:
        return self.client_for(session.llm)

    def check_connection(self, llm: LLMConfig | None = None) -> ModelListResult:
        """List the server's models; ``success=False`` if it is unreachable."""
        result = self.client_for(llm).list_models()
        if result.success:
            self._log.info("Connected, %d model(s) available", len(result.models))
        else:
            self._log.warning("Connection check failed: %s", result.error)
        return result

    # ------------------------------------------------------------------
    # tools + listeners
    # ------------------------------------------------------------------
    def add_tool(
        self,
        name: str,
        description: str,
        parameters: list[ToolParameter],
        function: Callable[..., Any],
        *,
        takes_context: bool = False,
    ) -> Agent:
        if not isinstance(self.tools, ToolRegistry):
            raise TypeError("add_tool requires the agent to use a ToolRegistry")
        self.tools.register(name, description, parameters, function, takes_context=takes_context)
        return self

    def subscribe(self, listener: TurnListener) -> Callable[[], None]:
        return self.engine.subscribe(listener)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def start_session(
        self,
        goal: str,
        max_iterations: int | None = None,
        llm: LLMConfig | None = None,
        data: dict[str, Any] | None = None,
    ) -> str:
        goal = (goal or "").strip()
        if not goal:
            raise ValueError("goal must be a non-empty string")
        budget = self.config.max_iterations if max_iterations is None else max_iterations
        if budget <= 0:
            raise ValueError(f"max_iterations must be positive (got {budget})")

        session = self.sessions.create_session(
            goal,
            budget,
            llm=replace(llm or self.config.llm),
            data=data,
        )
        self.sessions.add_message(
            session.id, Message(role=MessageRole.USER, content=f"My goal: {goal}")
        )
        self._log.info("Started session %s goal=%r", session.id[:8], goal[:80])
        return session.id

    def continue_turn(self, session_id: str) -> TurnResult:
        return self.engine.run_conversation_turn(session_id, self.sessions)

    def send_user_message(self, session_id: str, text: str) -> TurnResult:
        return self.engine.run_conversation_turn(session_id, self.sessions, user_message=text)

    def cancel_session(self, session_id: str) -> bool:
        return self.sessions.cancel_session(session_id)

    def get_state(self, session_id: str) -> SessionSnapshot | None:
        return self.sessions.snapshot(session_id)

    def end_session(self, session_id: str) -> bool:
        return self.sessions.delete_session(session_id)

    def active_sessions(self) -> list[SessionSnapshot]:
        out: list[SessionSnapshot] = []
        for s in self.sessions.active_sessions():
            snap = self.sessions.snapshot(s.id)
            if snap is not None:
                out.append(snap)
        return out

    def cleanup_old_sessions(self, max_age_s: float = 3600.0) -> int:
        return self.sessions.cleanup_old_sessions(max_age_s)


# ===========================================================================
# AGENT FACTORY
# ===========================================================================
def create_agent(
    base_url: str | None = None,
    model: str | None = None,
    *,
    tools: ToolExecutor | None = None,
    system_prompt_builder: SystemPromptBuilder | None = None,
    config_overrides: dict[str, Any] | None = None,
) -> Agent:
    cfg = Config.from_overrides(**(config_overrides or {}))
    if base_url:
        cfg.llm.base_url = base_url
    if model:
        cfg.llm.model = model
    return Agent(config=cfg, tools=tools, system_prompt_builder=system_prompt_builder)


__all__ = ["Agent", "create_agent"]
