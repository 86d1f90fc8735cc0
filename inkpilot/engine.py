# inkpilot/engine.py
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Protocol

from .backends import ChatRequest, ChatResult, GenerateRequest, GenerateResult, SamplingOptions
from .config import Config
from .extraction import ParseError, extract_tool_calls, looks_like_tool_call
from .logging_utils import get_logger
from .messages import Message, MessageRole, ToolCall, ToolResult
from .prompt import (
    WARN_EMPTY,
    WARN_JSON_IN_CONTENT,
    WARN_PARSE_ERRORS,
    WARN_PLAIN_TEXT,
    SystemPromptBuilder,
    default_system_prompt,
    empty_response_nudge,
    json_in_content_nudge,
    parse_error_nudge,
    plain_text_nudge,
)
from .session import Session, SessionManager, SessionStatus
from .summarizer import CompactionRecord, HistorySummarizer
from .tools import ToolContext, ToolDefinition, ToolExecutor, ToolOutcome

log = get_logger("inkpilot.engine")

SESSION_NOT_FOUND = "Session not found"


class ChatLLM(Protocol):
    def chat(self, request: ChatRequest, timeout: float | None = None) -> ChatResult: ...

    def generate(self, request: GenerateRequest, timeout: float | None = None) -> GenerateResult: ...


LLMResolver = Callable[[Session], ChatLLM]


# ===========================================================================
# Turn result
# ===========================================================================
@dataclass
class TurnResult:
    session_id: str
    status: SessionStatus
    message: Message | None = None
    tool_calls: list[ToolResult] = field(default_factory=list)
    iteration_count: int = 0
    max_iterations: int = 0
    created_entities: list[str] = field(default_factory=list)
    modified_entities: list[str] = field(default_factory=list)
    error: str | None = None
    warning: str | None = None
    completion_summary: str | None = None
    history_compaction: CompactionRecord | None = None
    awaiting_user_response: bool = False
    user_question: str | None = None
    parse_errors: list[ParseError] = field(default_factory=list)
    used_fallback: bool = False
    debug: dict[str, Any] = field(default_factory=dict)

    def to_update(self) -> dict[str, Any]:
        """Push-notification payload sent to listeners after every turn."""
        out: dict[str, Any] = {
            "sessionId": self.session_id,
            "status": self.status.value,
            "toolCalls": [r.to_dict() for r in self.tool_calls],
            "iterationCount": self.iteration_count,
            "maxIterations": self.max_iterations,
            "createdEntities": list(self.created_entities),
            "modifiedEntities": list(self.modified_entities),
        }
        if self.message is not None:
            out["message"] = self.message.to_wire()
        if self.error:
            out["error"] = self.error
        if self.warning:
            out["warning"] = self.warning
        if self.completion_summary is not None:
            out["completionSummary"] = self.completion_summary
        if self.history_compaction is not None:
            out["historyCompaction"] = self.history_compaction.to_dict()
        if self.awaiting_user_response:
            out["awaitingUserResponse"] = True
            out["userQuestion"] = self.user_question
        if self.parse_errors:
            out["parseErrors"] = [asdict(e) for e in self.parse_errors]
        return out


TurnListener = Callable[[TurnResult], None]


@dataclass
class _TraceCollector:
    enabled: bool
    started_ts: float = field(default_factory=time.perf_counter)
    events: list[dict[str, Any]] = field(default_factory=list)

    def emit(self, kind: str, **data: Any) -> None:
        if not self.enabled:
            return
        self.events.append(
            {
                "t": round(time.perf_counter() - self.started_ts, 6),
                "kind": kind,
                **data,
            }
        )

    def total_duration_s(self) -> float:
        return round(time.perf_counter() - self.started_ts, 6)

    def build_debug_payload(self, *, session: Session, used_fallback: bool) -> dict[str, Any]:
        if not self.enabled:
            return {}
        return {
            "session_id": session.id,
            "iteration": session.iteration_count,
            "events": self.events,
            "config": {
                "model": session.llm.model,
                "base_url": session.llm.base_url,
                "temperature": session.llm.temperature,
                "max_tokens": session.llm.max_tokens,
                "used_fallback": used_fallback,
            },
            "timings": {"total_duration_s": self.total_duration_s()},
        }


@dataclass
class _TurnState:
    """Mutable bits of one turn, folded into the TurnResult at the end."""

    message: Message | None = None
    tool_results: list[ToolResult] = field(default_factory=list)
    warning: str | None = None
    completion_summary: str | None = None
    compaction: CompactionRecord | None = None
    awaiting_user: bool = False
    question: str | None = None
    parse_errors: list[ParseError] = field(default_factory=list)
    used_fallback: bool = False


# ===========================================================================
# Engine
# ===========================================================================
class ConversationEngine:
    """
    Drives sessions one turn at a time.

    A turn: optional history compaction, one chat call with the current
    transcript, tool-call resolution (native calls, or extraction from text
    on the fallback path), tool execution in order, and iteration
    accounting. ``run_conversation_turn`` keeps issuing turns while the
    previous one executed tools and none of them completed the goal or
    asked the user something.
    """

    def __init__(
        self,
        llm: ChatLLM | LLMResolver,
        tools: ToolExecutor,
        *,
        config: Config | None = None,
        system_prompt_builder: SystemPromptBuilder | None = None,
        summarizer: HistorySummarizer | None = None,
        listeners: Iterable[TurnListener] = (),
    ) -> None:
        self.config = config or Config()
        self.tools = tools
        self.system_prompt_builder = system_prompt_builder or default_system_prompt
        self.summarizer = summarizer
        self._listeners: list[TurnListener] = list(listeners)
        if hasattr(llm, "chat"):
            self._resolve_llm: LLMResolver = lambda _session: llm  # type: ignore[assignment,return-value]
        else:
            self._resolve_llm = llm  # type: ignore[assignment]

    def subscribe(self, listener: TurnListener) -> Callable[[], None]:
        """Register a turn listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, result: TurnResult) -> None:
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                log.exception("Turn listener failed for session %s", result.session_id)

    # ------------------------------------------------------------------
    # public entry points
    # ------------------------------------------------------------------
    def run_single_turn(self, session: Session, manager: SessionManager) -> TurnResult:
        """One turn, no auto-continue. The caller must hold ``session.turn_lock``."""
        result, _ = self._guarded_turn(session, manager)
        return result

    def run_conversation_turn(
        self,
        session_id: str,
        manager: SessionManager,
        user_message: str | None = None,
    ) -> TurnResult:
        """
        Advance a session: optional user message, one turn, then auto-continue.

        Every turn is reported to listeners; the last turn's result is
        returned. Unknown sessions yield an error result instead of raising.
        """
        session = manager.get_session(session_id)
        if session is None:
            return TurnResult(session_id=session_id, status=SessionStatus.ERROR, error=SESSION_NOT_FOUND)

        with session.turn_lock:
            if user_message is not None and not session.status.is_terminal:
                manager.add_message(session_id, Message(role=MessageRole.USER, content=user_message))
                manager.update_data(session_id, awaiting_user_question=None)

            result, auto_continue = self._guarded_turn(session, manager)
            self._notify(result)

            while auto_continue:
                if manager.observe_cancellation(session_id):
                    result = self._build_result(session, _TurnState())
                    self._notify(result)
                    break
                result, auto_continue = self._guarded_turn(session, manager)
                self._notify(result)

            if result.status is SessionStatus.ACTIVE and manager.observe_cancellation(session_id):
                result.status = session.status
            return result

    # ------------------------------------------------------------------
    # one turn
    # ------------------------------------------------------------------
    def _guarded_turn(self, session: Session, manager: SessionManager) -> tuple[TurnResult, bool]:
        try:
            return self._run_turn(session, manager)
        except Exception as e:
            log.exception("Turn failed: %s", e, extra={"session": session.id})
            manager.error_session(session.id, str(e) or type(e).__name__)
            return self._build_result(session, _TurnState()), False

    def _run_turn(self, session: Session, manager: SessionManager) -> tuple[TurnResult, bool]:
        sid = session.id
        state = _TurnState()
        tracer = _TraceCollector(enabled=bool(self.config.debug_trace))

        if manager.observe_cancellation(sid) or session.status.is_terminal:
            return self._build_result(session, state), False

        tracer.emit("turn_begin", iteration=session.iteration_count + 1, messages=len(session.messages))
        llm = self._resolve_llm(session)

        if self.summarizer is not None:
            compaction = self.summarizer.maybe_compact(session, llm)
            if compaction is not None:
                manager.replace_messages(sid, compaction.messages)
                state.compaction = compaction.record
                tracer.emit(
                    "history_compacted",
                    summarized=compaction.record.messages_summarized,
                    kept=compaction.record.messages_kept,
                )

        definitions = self.tools.definitions()
        messages = [
            Message(role=MessageRole.SYSTEM, content=self.system_prompt_builder(session)),
            *session.messages,
        ]
        tracer.emit("llm_request", messages=len(messages), tools=len(definitions))
        log.info("Turn iteration=%d", session.iteration_count + 1, extra={"session": sid})

        response = llm.chat(
            ChatRequest(
                messages=messages,
                tools=definitions or None,
                options=SamplingOptions(
                    temperature=session.llm.temperature,
                    max_tokens=session.llm.max_tokens,
                ),
            ),
            timeout=session.llm.timeout,
        )
        state.used_fallback = response.used_fallback

        if not response.success or response.message is None:
            error = response.error or "No response from LLM"
            log.error("LLM call failed: %s", error, extra={"session": sid})
            tracer.emit("llm_error", error=error)
            manager.error_session(sid, error)
            return self._finish(session, state, tracer), False

        content = response.message.content or ""
        calls = list(response.message.tool_calls)
        if not calls and response.used_fallback:
            extraction = extract_tool_calls(content)
            calls = extraction.calls
            state.parse_errors = extraction.parse_errors
        tracer.emit(
            "llm_response",
            content_chars=len(content),
            tool_calls=[c.name for c in calls],
            parse_errors=len(state.parse_errors),
            used_fallback=response.used_fallback,
        )

        assistant = Message(role=MessageRole.ASSISTANT, content=content, tool_calls=calls)
        manager.add_message(sid, assistant)
        state.message = assistant

        if not calls:
            self._handle_idle_turn(session, manager, state, definitions, tracer)
            manager.increment_iteration(sid)
            return self._finish(session, state, tracer), False

        completed = self._dispatch(session, manager, calls, state, tracer)
        if completed:
            manager.complete_session(sid)
        manager.increment_iteration(sid)
        if state.awaiting_user:
            manager.update_data(sid, awaiting_user_question=state.question)

        auto_continue = (
            not completed
            and not state.awaiting_user
            and session.status is SessionStatus.ACTIVE
        )
        return self._finish(session, state, tracer), auto_continue

    def _dispatch(
        self,
        session: Session,
        manager: SessionManager,
        calls: list[ToolCall],
        state: _TurnState,
        tracer: _TraceCollector,
    ) -> bool:
        context = ToolContext(session_id=session.id, goal=session.goal, data=session.data)
        completed = False
        for call in calls:
            outcome = self._execute(call, context)
            state.tool_results.append(
                ToolResult(name=call.name, arguments=dict(call.arguments), result=outcome.result)
            )
            manager.add_message(session.id, Message(role=MessageRole.TOOL, content=outcome.result))
            manager.record_entities(session.id, outcome.created, outcome.modified)
            tracer.emit("tool_result", name=call.name, error=outcome.error, chars=len(outcome.result))

            if outcome.error is not None:
                continue
            if outcome.goal_complete or call.name == self.config.completion_tool:
                completed = True
                summary = outcome.summary
                if summary is None and call.arguments.get("summary") is not None:
                    summary = str(call.arguments["summary"])
                state.completion_summary = summary
            if outcome.awaiting_user or call.name == self.config.ask_user_tool:
                state.awaiting_user = True
                question = outcome.question
                if question is None and call.arguments.get("question") is not None:
                    question = str(call.arguments["question"])
                state.question = question
        return completed

    def _execute(self, call: ToolCall, context: ToolContext) -> ToolOutcome:
        try:
            return self.tools.execute(call, context)
        except Exception as e:
            log.exception("Tool '%s' raised", call.name)
            return ToolOutcome(result=f"Error: {e}", error=str(e))

    def _handle_idle_turn(
        self,
        session: Session,
        manager: SessionManager,
        state: _TurnState,
        definitions: list[ToolDefinition],
        tracer: _TraceCollector,
    ) -> None:
        content = state.message.content if state.message else ""
        tool_names = [d["function"]["name"] for d in definitions]

        if state.parse_errors:
            state.warning = WARN_PARSE_ERRORS
            nudge = parse_error_nudge(state.parse_errors)
        elif not content.strip():
            state.warning = WARN_EMPTY
            nudge = empty_response_nudge(session.goal, tool_names)
        elif not state.used_fallback and looks_like_tool_call(content):
            state.warning = WARN_JSON_IN_CONTENT
            nudge = json_in_content_nudge(content)
        else:
            state.warning = WARN_PLAIN_TEXT
            nudge = plain_text_nudge(content, tool_names)

        log.warning("%s", state.warning, extra={"session": session.id})
        tracer.emit("idle_turn", warning=state.warning)
        if self.config.nudge_on_idle_turn:
            manager.add_message(session.id, Message(role=MessageRole.USER, content=nudge))

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------
    def _finish(self, session: Session, state: _TurnState, tracer: _TraceCollector) -> TurnResult:
        tracer.emit("turn_end", status=session.status.value)
        result = self._build_result(session, state)
        result.debug = tracer.build_debug_payload(session=session, used_fallback=state.used_fallback)
        return result

    @staticmethod
    def _build_result(session: Session, state: _TurnState) -> TurnResult:
        return TurnResult(
            session_id=session.id,
            status=session.status,
            message=state.message,
            tool_calls=list(state.tool_results),
            iteration_count=session.iteration_count,
            max_iterations=session.max_iterations,
            created_entities=list(session.created_entities),
            modified_entities=list(session.modified_entities),
            error=session.error_message,
            warning=state.warning,
            completion_summary=state.completion_summary,
            history_compaction=state.compaction,
            awaiting_user_response=state.awaiting_user,
            user_question=state.question,
            parse_errors=list(state.parse_errors),
            used_fallback=state.used_fallback,
        )


__all__ = ["ChatLLM", "ConversationEngine", "TurnListener", "TurnResult"]
