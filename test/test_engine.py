from __future__ import annotations

from conftest import ScriptedLLM, call_reply, fenced, text_reply

from inkpilot.backends import ChatResult, GenerateResult
from inkpilot.config import Config, SummarizationConfig
from inkpilot.engine import SESSION_NOT_FOUND, ConversationEngine, TurnResult
from inkpilot.messages import Message, MessageRole
from inkpilot.prompt import WARN_EMPTY, WARN_JSON_IN_CONTENT, WARN_PARSE_ERRORS, WARN_PLAIN_TEXT
from inkpilot.session import SessionManager, SessionStatus
from inkpilot.summarizer import HistorySummarizer
from inkpilot.tools import ToolOutcome, ToolParameter, ToolRegistry, register_control_tools


def make_tools() -> ToolRegistry:
    registry = register_control_tools(ToolRegistry())
    registry.register(
        "ping",
        "Echo text.",
        [ToolParameter("text", "string", "Text to echo")],
        lambda text="": f"PONG: {text}",
    )
    registry.register(
        "add_entity",
        "Create an entity.",
        [ToolParameter("name", "string", "Entity name")],
        lambda name: ToolOutcome(result=f"created {name}", created=[name]),
    )
    return registry


def setup(replies, max_iterations=10, config=None, summarizer=None, tools=None, summary=None):
    llm = ScriptedLLM(replies, summary=summary)
    seen: list[TurnResult] = []
    engine = ConversationEngine(
        llm,
        tools or make_tools(),
        config=config or Config(),
        summarizer=summarizer,
        listeners=[seen.append],
    )
    manager = SessionManager()
    session = manager.create_session("test goal", max_iterations)
    manager.add_message(session.id, Message(MessageRole.USER, "My goal: test goal"))
    return engine, manager, session, llm, seen


def test_iteration_budget_stops_exactly_at_limit():
    engine, manager, session, llm, seen = setup([call_reply(("ping", {"text": "a"}))], max_iterations=3)

    result = engine.run_conversation_turn(session.id, manager)

    assert result.status is SessionStatus.MAX_ITERATIONS
    assert result.iteration_count == 3
    assert len(llm.requests) == 3
    assert [r.status for r in seen] == [
        SessionStatus.ACTIVE,
        SessionStatus.ACTIVE,
        SessionStatus.MAX_ITERATIONS,
    ]
    assert [r.iteration_count for r in seen] == [1, 2, 3]


def test_completion_wins_on_the_last_iteration():
    engine, manager, session, llm, _ = setup(
        [call_reply(("mark_goal_complete", {"summary": "all done"}))], max_iterations=1
    )
    result = engine.run_conversation_turn(session.id, manager)
    assert result.status is SessionStatus.COMPLETED
    assert result.completion_summary == "all done"
    assert result.iteration_count == 1


def test_fallback_text_call_completes_session():
    reply = text_reply("I added the knot.\n" + fenced("mark_goal_complete", {"summary": "done"}))
    engine, manager, session, llm, _ = setup([reply])

    result = engine.run_conversation_turn(session.id, manager)

    assert result.status is SessionStatus.COMPLETED
    assert result.completion_summary == "done"
    assert [c.name for c in result.tool_calls] == ["mark_goal_complete"]
    assert result.used_fallback
    assert len(llm.requests) == 1


def test_turn_transcript_and_request():
    engine, manager, session, llm, _ = setup(
        [call_reply(("ping", {"text": "a"}), ("add_entity", {"name": "cave"})), call_reply(("mark_goal_complete", {}))]
    )
    result = engine.run_conversation_turn(session.id, manager)

    first = llm.requests[0]
    assert first.messages[0].role == MessageRole.SYSTEM
    assert "test goal" in first.messages[0].content
    assert first.messages[1].content == "My goal: test goal"
    assert {d["function"]["name"] for d in first.tools} >= {"ping", "mark_goal_complete"}

    roles = [m.role for m in session.messages]
    assert roles == [
        MessageRole.USER,
        MessageRole.ASSISTANT,
        MessageRole.TOOL,
        MessageRole.TOOL,
        MessageRole.ASSISTANT,
        MessageRole.TOOL,
    ]
    assert session.messages[2].content == "PONG: a"
    assert session.messages[3].content == "created cave"
    assert result.created_entities == ["cave"]
    assert result.status is SessionStatus.COMPLETED
    assert all(m.role != MessageRole.SYSTEM for m in session.messages)


def test_plain_text_turn_warns_and_nudges():
    engine, manager, session, llm, _ = setup([text_reply("I would add a knot now.")])
    result = engine.run_conversation_turn(session.id, manager)

    assert result.warning == WARN_PLAIN_TEXT
    assert result.status is SessionStatus.ACTIVE
    assert result.iteration_count == 1
    assert len(llm.requests) == 1
    nudge = session.messages[-1]
    assert nudge.role == MessageRole.USER
    assert "plain text instead of calling a tool" in nudge.content
    assert "I would add a knot now." in nudge.content


def test_empty_turn():
    engine, manager, session, _, _ = setup([text_reply("   ")])
    result = engine.run_conversation_turn(session.id, manager)
    assert result.warning == WARN_EMPTY
    assert "empty response" in session.messages[-1].content


def test_json_in_content_on_native_path():
    content = '{"function": "ping", "arguments": {"text": "a"}}'
    engine, manager, session, _, _ = setup([text_reply(content, fallback=False)])
    result = engine.run_conversation_turn(session.id, manager)
    assert result.warning == WARN_JSON_IN_CONTENT
    assert result.tool_calls == []


def test_parse_errors_are_reported():
    content = 'Calling now: {"function": "ping", "arguments": {"text": }}'
    engine, manager, session, _, _ = setup([text_reply(content)])
    result = engine.run_conversation_turn(session.id, manager)

    assert result.warning == WARN_PARSE_ERRORS
    assert len(result.parse_errors) == 1
    assert "Failed to parse your tool call JSON" in session.messages[-1].content
    assert result.to_update()["parseErrors"][0]["original_json"].startswith("{")


def test_nudges_can_be_disabled():
    engine, manager, session, _, _ = setup(
        [text_reply("hello")], config=Config(nudge_on_idle_turn=False)
    )
    result = engine.run_conversation_turn(session.id, manager)
    assert result.warning == WARN_PLAIN_TEXT
    assert session.messages[-1].role == MessageRole.ASSISTANT


def test_llm_failure_errors_the_session():
    failure = ChatResult(success=False, error="Server returned status 500: oom")
    engine, manager, session, _, _ = setup([failure])
    result = engine.run_conversation_turn(session.id, manager)
    assert result.status is SessionStatus.ERROR
    assert result.error == "Server returned status 500: oom"
    assert session.iteration_count == 0


def test_tool_errors_do_not_abort_the_turn():
    tools = make_tools()

    def explode(**_):
        raise ValueError("bad input")

    tools.register("explode", "Fails.", [], explode)
    engine, manager, session, _, seen = setup(
        [call_reply(("explode", {})), call_reply(("mark_goal_complete", {"summary": "ok"}))], tools=tools
    )
    result = engine.run_conversation_turn(session.id, manager)

    assert result.status is SessionStatus.COMPLETED
    assert seen[0].tool_calls[0].result == "Error executing explode: bad input"


def test_failed_completion_call_does_not_complete():
    tools = make_tools()

    def finish(summary=""):
        if not summary:
            raise ValueError("summary is required")
        return ToolOutcome(result="Finished.", goal_complete=True, summary=summary)

    tools.register("mark_goal_complete", "Finish.", [ToolParameter("summary", "string", "Summary")], finish)
    engine, manager, session, _, _ = setup(
        [call_reply(("mark_goal_complete", {})), call_reply(("mark_goal_complete", {"summary": "x"}))],
        tools=tools,
    )
    result = engine.run_conversation_turn(session.id, manager)
    assert result.status is SessionStatus.COMPLETED
    assert result.completion_summary == "x"
    assert result.iteration_count == 2


def test_completion_with_extra_arguments_still_completes():
    reply = text_reply(fenced("mark_goal_complete", {"summary": "done", "knots": ["a"]}))
    engine, manager, session, llm, _ = setup([reply], max_iterations=3)

    result = engine.run_conversation_turn(session.id, manager)

    assert result.status is SessionStatus.COMPLETED
    assert result.completion_summary == "done"
    assert result.iteration_count == 1
    assert len(llm.requests) == 1


def test_ask_user_with_extra_arguments_waits():
    engine, manager, session, llm, _ = setup(
        [call_reply(("ask_user", {"question": "Which ending?", "options": ["happy", "sad"]}))]
    )
    result = engine.run_conversation_turn(session.id, manager)
    assert result.awaiting_user_response
    assert result.user_question == "Which ending?"
    assert len(llm.requests) == 1


def test_prompt_builder_failure_errors_the_session():
    def broken_prompt(session):
        raise RuntimeError("prompt builder broke")

    llm = ScriptedLLM([call_reply(("ping", {}))])
    seen: list[TurnResult] = []
    engine = ConversationEngine(
        llm, make_tools(), config=Config(), system_prompt_builder=broken_prompt, listeners=[seen.append]
    )
    manager = SessionManager()
    session = manager.create_session("test goal", 5)

    result = engine.run_conversation_turn(session.id, manager)

    assert result.status is SessionStatus.ERROR
    assert result.error == "prompt builder broke"
    assert session.status is SessionStatus.ERROR
    assert session.error_message == "prompt builder broke"
    assert llm.requests == []
    assert [r.status for r in seen] == [SessionStatus.ERROR]


def test_llm_exception_errors_the_session():
    def explode(request):
        raise ConnectionResetError("socket closed")

    engine, manager, session, _, _ = setup(explode)
    result = engine.run_conversation_turn(session.id, manager)
    assert result.status is SessionStatus.ERROR
    assert result.error == "socket closed"
    assert session.turn_lock.acquire(blocking=False)
    session.turn_lock.release()


def test_ask_user_stops_auto_continue():
    engine, manager, session, llm, _ = setup(
        [call_reply(("ask_user", {"question": "Which ending?"})), call_reply(("mark_goal_complete", {"summary": "ok"}))]
    )
    result = engine.run_conversation_turn(session.id, manager)
    assert result.awaiting_user_response
    assert result.user_question == "Which ending?"
    assert result.status is SessionStatus.ACTIVE
    assert len(llm.requests) == 1
    assert session.data["awaiting_user_question"] == "Which ending?"

    result = engine.run_conversation_turn(session.id, manager, user_message="The happy one")
    assert result.status is SessionStatus.COMPLETED
    assert llm.requests[1].messages[-1].content == "The happy one"
    assert session.data["awaiting_user_question"] is None


def test_cancel_between_auto_continued_turns():
    engine, manager, session, llm, seen = setup([call_reply(("ping", {}))], max_iterations=10)
    engine.subscribe(lambda r: manager.cancel_session(r.session_id))

    result = engine.run_conversation_turn(session.id, manager)

    assert result.status is SessionStatus.CANCELLED
    assert len(llm.requests) == 1
    assert session.status is SessionStatus.CANCELLED


def test_cancelled_session_does_not_call_llm():
    engine, manager, session, llm, _ = setup([call_reply(("ping", {}))])
    manager.cancel_session(session.id)
    result = engine.run_conversation_turn(session.id, manager)
    assert result.status is SessionStatus.CANCELLED
    assert llm.requests == []


def test_unknown_session():
    engine, manager, _, _, _ = setup([text_reply("x")])
    result = engine.run_conversation_turn("nope", manager)
    assert result.status is SessionStatus.ERROR
    assert result.error == SESSION_NOT_FOUND


def test_listener_errors_are_contained():
    engine, manager, session, _, _ = setup([call_reply(("mark_goal_complete", {}))])

    def bad_listener(_):
        raise RuntimeError("ui went away")

    engine.subscribe(bad_listener)
    assert engine.run_conversation_turn(session.id, manager).status is SessionStatus.COMPLETED


def test_history_is_compacted_before_the_call():
    summarizer = HistorySummarizer(SummarizationConfig(message_threshold=5, recent_messages_to_keep=2))
    engine, manager, session, llm, _ = setup([text_reply("hmm")], summarizer=summarizer)
    for i in range(5):
        manager.add_message(session.id, Message(MessageRole.USER, f"note {i}"))

    result = engine.run_conversation_turn(session.id, manager)

    assert result.history_compaction is not None
    assert result.history_compaction.messages_summarized == 4
    assert result.history_compaction.messages_kept == 2
    sent = llm.requests[0].messages
    assert len(sent) == 4
    assert sent[1].content.startswith("=== CONVERSATION HISTORY SUMMARY ===")
    assert [m.content for m in sent[2:]] == ["note 3", "note 4"]
    assert result.to_update()["historyCompaction"]["messagesKept"] == 2


def test_failed_summary_does_not_block_the_turn():
    summarizer = HistorySummarizer(SummarizationConfig(message_threshold=5, recent_messages_to_keep=2))
    engine, manager, session, llm, _ = setup(
        [call_reply(("mark_goal_complete", {"summary": "ok"}))],
        summarizer=summarizer,
        summary=GenerateResult(False, error="Request timed out after 30s"),
    )
    for i in range(5):
        manager.add_message(session.id, Message(MessageRole.USER, f"note {i}"))

    result = engine.run_conversation_turn(session.id, manager)

    assert len(llm.generate_requests) == 1
    assert len(llm.requests) == 1
    assert result.history_compaction is None
    assert result.status is SessionStatus.COMPLETED
    sent = llm.requests[0].messages
    assert len(sent) == 7
    assert sent[1].content == "My goal: test goal"
    assert not any(m.content.startswith("=== CONVERSATION HISTORY SUMMARY ===") for m in session.messages)


def test_to_update_payload():
    engine, manager, session, _, _ = setup([call_reply(("mark_goal_complete", {"summary": "fin"}))])
    update = engine.run_conversation_turn(session.id, manager).to_update()

    assert update["sessionId"] == session.id
    assert update["status"] == "completed"
    assert update["iterationCount"] == 1
    assert update["toolCalls"][0]["name"] == "mark_goal_complete"
    assert update["completionSummary"] == "fin"
    assert update["message"]["role"] == "assistant"
    assert "error" not in update


def test_debug_trace():
    engine, manager, session, _, _ = setup(
        [call_reply(("mark_goal_complete", {}))], config=Config(debug_trace=True)
    )
    result = engine.run_conversation_turn(session.id, manager)
    kinds = [e["kind"] for e in result.debug["events"]]
    assert kinds[0] == "turn_begin" and kinds[-1] == "turn_end"
    assert "tool_result" in kinds
