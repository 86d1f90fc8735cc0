# inkpilot/prompt.py
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable, Sequence

if TYPE_CHECKING:
    from .extraction import ParseError
    from .session import Session

SystemPromptBuilder = Callable[["Session"], str]

_TOOL_CALL_EXAMPLE = """```json
{ "function": "tool_name", "arguments": { "param1": "value1" } }
```"""


# ==============================================================================
# Session system prompt
# ==============================================================================

def default_system_prompt(session: "Session") -> str:
    """Generic goal-driven prompt; applications usually supply their own."""
    return (
        "You are an autonomous assistant that accomplishes a goal by calling tools.\n"
        "Work step by step. Every response should call at least one tool; describing "
        "an action without calling a tool does nothing.\n\n"
        f"GOAL: {session.goal}\n"
        f"PROGRESS: iteration {session.iteration_count} of {session.max_iterations}\n\n"
        "When the goal is fully accomplished, call mark_goal_complete with a short summary. "
        "If you cannot continue without information only the user has, call ask_user."
    )


# ==============================================================================
# History summarization
# ==============================================================================

SUMMARIZER_SYSTEM_PROMPT = """You are a conversation summarizer. Your task is to create a concise summary of a conversation between a user and an AI assistant working toward a goal with tools.

The summary should capture:
1. The overall goal being worked on
2. Key actions taken (tools called and what they changed)
3. Any important decisions or user feedback
4. Current state of progress

Keep the summary concise but complete enough that the AI can continue the work without losing context. Focus on WHAT was done, not the exact back-and-forth."""

SUMMARY_HEADER = "=== CONVERSATION HISTORY SUMMARY ==="
SUMMARY_FOOTER = "=== END SUMMARY ==="


def summarizer_prompt(goal: str, iteration: int, max_iterations: int, history: str) -> str:
    return (
        "Summarize the following conversation history.\n\n"
        f"Goal: {goal}\n"
        f"Progress: {iteration}/{max_iterations} iterations used\n\n"
        "=== CONVERSATION TO SUMMARIZE ===\n"
        f"{history}\n"
        "=== END CONVERSATION ===\n\n"
        "Provide a concise summary (3-10 sentences) that captures the key progress "
        "and context needed to continue the work:"
    )


def wrap_summary(summary: str) -> str:
    return (
        f"{SUMMARY_HEADER}\n{summary.strip()}\n{SUMMARY_FOOTER}\n"
        "Continue working toward the goal. The recent messages below show your current context."
    )


# ==============================================================================
# Corrective messages for turns that produced no tool call
# ==============================================================================

WARN_EMPTY = "The AI returned an empty response. It has been reminded to use tool calls."
WARN_PLAIN_TEXT = (
    "The AI responded with text instead of calling a tool. "
    "It has been reminded to use tool calls."
)
WARN_JSON_IN_CONTENT = (
    "The AI outputted JSON instead of making a proper tool call. "
    "It has been reminded to use the tool calling mechanism."
)
WARN_PARSE_ERRORS = (
    "The AI sent invalid JSON in its tool call. It has been informed of the syntax error."
)


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _tool_list(tool_names: Iterable[str]) -> str:
    names = list(tool_names)
    return ", ".join(names) if names else "(none)"


def empty_response_nudge(goal: str, tool_names: Iterable[str]) -> str:
    return (
        "Error: You returned an empty response without calling any tools. Nothing has happened.\n\n"
        "To make progress on the goal, you MUST call a tool. You cannot just think about "
        "what to do - you must actually do it by calling a tool.\n\n"
        f"To call a tool, output a JSON block in this format:\n{_TOOL_CALL_EXAMPLE}\n\n"
        f"Available tools: {_tool_list(tool_names)}\n\n"
        f'Please call the appropriate tool now to continue working on the goal: "{goal}"'
    )


def plain_text_nudge(content: str, tool_names: Iterable[str]) -> str:
    return (
        "Error: You responded with plain text instead of calling a tool. "
        "Nothing has happened yet.\n\n"
        f'Your response was:\n"{_clip(content, 300)}"\n\n'
        "IMPORTANT: To make progress on the goal, you MUST call a tool. You cannot just "
        "describe what you want to do - you must actually do it by calling a tool.\n\n"
        f"To call a tool, output a JSON block in this format:\n{_TOOL_CALL_EXAMPLE}\n\n"
        f"Available tools: {_tool_list(tool_names)}\n\n"
        "Please call the appropriate tool now to continue working on the goal."
    )


def json_in_content_nudge(content: str) -> str:
    return (
        "Error: Your response contains JSON that looks like a tool call, but you didn't "
        "use the proper tool calling mechanism. Your message content was:\n\n"
        f"{_clip(content, 500)}\n\n"
        "To use a tool, you must make an actual tool call - not just output JSON. "
        "Please call the appropriate tool using the tool calling interface."
    )


def parse_error_nudge(errors: Sequence["ParseError"]) -> str:
    parts = [
        f"Error {i}: {err.error}\nInvalid JSON:\n{err.original_json}"
        for i, err in enumerate(errors, start=1)
    ]
    return (
        "Error: Failed to parse your tool call JSON. The syntax is invalid and could not "
        "be processed.\n\n"
        + "\n\n".join(parts)
        + "\n\nPlease fix the JSON syntax error and try again. Common issues:\n"
        "- Missing or extra commas\n"
        "- Unquoted property names\n"
        "- Missing closing braces or brackets\n"
        "- Invalid escape sequences in strings\n"
        "- Trailing commas before closing braces/brackets"
    )
