# -*- coding: utf-8 -*-
"""
inkpilot/tools.py

Tool catalog and execution.

- ToolRegistry: register plain Python callables as tools + execute calls
- definitions(): Ollama/OpenAI-style function schemas for the native path
- render_tool_prompt(): the same catalog as text instructions for models
  without native tool calling
- register_control_tools(): mark_goal_complete / ask_user

Key guarantee:
- ToolRegistry.execute never raises; a failing tool becomes an error result.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, TypedDict

from .logging_utils import get_logger
from .messages import ToolCall


# =============================================================================
# 1) Tool model
# =============================================================================


# Loose type names accepted from callers -> JSON schema primitive.
_SCHEMA_TYPES = {
    "int": "integer",
    "integer": "integer",
    "float": "number",
    "double": "number",
    "number": "number",
    "bool": "boolean",
    "boolean": "boolean",
    "list": "array",
    "array": "array",
    "dict": "object",
    "map": "object",
    "object": "object",
}


@dataclass
class ToolParameter:
    name: str
    type: str
    description: str
    required: bool = True

    def schema(self) -> dict[str, str]:
        kind = _SCHEMA_TYPES.get(str(self.type).strip().lower(), "string")
        return {"type": kind, "description": self.description}


@dataclass
class Tool:
    name: str
    description: str
    parameters: list[ToolParameter]
    function: Callable[..., Any]
    takes_context: bool = False

    def definition(self) -> ToolDefinition:
        """Function schema in the shape Ollama's ``tools`` field expects."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.schema() for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }

    def __repr__(self) -> str:
        return (
            f"Tool(name={self.name!r}, parameters={len(self.parameters)}, "
            f"description={self.description[:48]!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


@dataclass
class ToolContext:
    """What a context-aware tool sees about the session calling it."""

    session_id: str
    goal: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolOutcome:
    """
    Result of one tool execution.

    ``result`` is the text appended to the transcript. The flags let a tool
    end the session (``goal_complete``) or hand control back to the user
    (``awaiting_user``); ``created``/``modified`` name the entities touched.
    """

    result: str
    error: Optional[str] = None
    goal_complete: bool = False
    summary: Optional[str] = None
    awaiting_user: bool = False
    question: Optional[str] = None
    created: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)


class _ToolFunction(TypedDict):
    name: str
    description: str
    parameters: dict[str, Any]


class ToolDefinition(TypedDict):
    type: str
    function: _ToolFunction


class ToolExecutor(Protocol):
    def definitions(self) -> list[ToolDefinition]: ...

    def execute(self, call: ToolCall, context: ToolContext | None = None) -> ToolOutcome: ...


def _as_outcome(value: Any) -> ToolOutcome:
    if isinstance(value, ToolOutcome):
        return value
    if isinstance(value, str):
        return ToolOutcome(result=value)
    if value is None:
        return ToolOutcome(result="OK")
    return ToolOutcome(result=json.dumps(value, ensure_ascii=False, default=str))


# =============================================================================
# 2) Registry
# =============================================================================


class ToolRegistry:
    """
    Registry of callable tools.

    Arguments arrive as a mapping and are passed as keyword arguments; the
    ``{"_args": [...]}`` form produced for list-style calls is passed
    positionally. Tools registered with ``takes_context=True`` receive a
    ``ToolContext`` as their first argument.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._log = get_logger("inkpilot.tools")
        self._version: int = 0

    def __repr__(self) -> str:
        return f"ToolRegistry(tools={len(self._tools)}, version={self._version})"

    def __str__(self) -> str:
        names = ", ".join(sorted(self._tools.keys()))
        return f"ToolRegistry[{len(self._tools)}]: {names}" if names else "ToolRegistry[0]"

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def version(self) -> int:
        return self._version

    def register(
        self,
        name: str,
        description: str,
        parameters: list[ToolParameter],
        function: Callable[..., Any],
        *,
        takes_context: bool = False,
    ) -> "ToolRegistry":
        if not name:
            raise ValueError("tool name must be non-empty")
        self._log.info("Registering tool: %s", name)
        self._tools[name] = Tool(
            name=name,
            description=description,
            parameters=list(parameters),
            function=self._wrap_tool_function(function, name),
            takes_context=takes_context,
        )
        self._version += 1
        return self

    def unregister(self, name: str) -> bool:
        removed = self._tools.pop(name, None) is not None
        if removed:
            self._version += 1
        return removed

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def _wrap_tool_function(self, func: Callable, tool_name: str) -> Callable:
        def wrapped(*args, **kwargs):
            try:
                return _as_outcome(func(*args, **kwargs))
            except Exception as e:
                self._log.exception("Error in tool '%s'", tool_name)
                return ToolOutcome(
                    result=f"Error executing {tool_name}: {e}", error=str(e)
                )

        wrapped.__name__ = getattr(func, "__name__", tool_name)
        wrapped.__doc__ = getattr(func, "__doc__", None)
        return wrapped

    def execute(self, call: ToolCall, context: ToolContext | None = None) -> ToolOutcome:
        tool = self.get(call.name)
        if not tool:
            self._log.error("Tool not found: %s", call.name)
            return ToolOutcome(
                result=f"Error: tool '{call.name}' not found.",
                error=f"unknown tool: {call.name}",
            )

        args = dict(call.arguments or {})
        positional: list[Any] = []
        if set(args) == {"_args"} and isinstance(args["_args"], list):
            positional = list(args.pop("_args"))

        if tool.takes_context:
            if context is None:
                return ToolOutcome(
                    result=f"Error: tool '{call.name}' needs a session context.",
                    error="missing context",
                )
            positional.insert(0, context)

        self._log.debug("Executing %s args=%s", call.name, args)
        return tool.function(*positional, **args)

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition() for t in sorted(self._tools.values(), key=lambda t: t.name)]


# =============================================================================
# 3) Text protocol for models without native tool calling
# =============================================================================

_TOOL_PROMPT_HEADER = """## HOW TO CALL TOOLS

To perform ANY action, you MUST output a tool call in this EXACT format:
```json
{ "function": "tool_name", "arguments": { "param1": "value1" } }
```

CRITICAL RULES:
- You MUST use this JSON format to call tools
- Writing JSON data WITHOUT this format does NOTHING
- The "function" field specifies which tool to call
- The "arguments" field contains the parameters
- You may call several tools in one response, one JSON block per call

## Available Tools
"""

_TOOL_PROMPT_FOOTER = """## REMEMBER
- To DO anything, you must output a tool call JSON block
- Describing an action in prose does NOTHING
- Use only the tool names listed above
"""


def render_tool_prompt(definitions: list[ToolDefinition] | list[dict[str, Any]]) -> str:
    """Render tool schemas as plain-text calling instructions."""
    lines: list[str] = [_TOOL_PROMPT_HEADER]
    for d in definitions:
        fn = d.get("function", {})
        lines.append(f"### {fn.get('name', '')}")
        lines.append(str(fn.get("description", "")))
        params = fn.get("parameters") or {}
        props: dict[str, Any] = params.get("properties") or {}
        required = set(params.get("required") or [])
        if props:
            lines.append("Parameters:")
            for pname, pdef in props.items():
                req = "required" if pname in required else "optional"
                lines.append(
                    f"  - {pname} ({pdef.get('type', 'string')}, {req}): "
                    f"{pdef.get('description', '')}"
                )
        else:
            lines.append("Parameters: none")
        lines.append("")
    lines.append(_TOOL_PROMPT_FOOTER)
    return "\n".join(lines)


# =============================================================================
# 4) Control tools
# =============================================================================


def register_control_tools(
    registry: ToolRegistry,
    completion_tool: str = "mark_goal_complete",
    ask_user_tool: str = "ask_user",
) -> ToolRegistry:
    """Install the completion and ask-user tools on ``registry``."""

    def mark_goal_complete(summary: str = "", **_extra: Any) -> ToolOutcome:
        return ToolOutcome(
            result=f"Goal marked as complete. Summary: {summary}",
            goal_complete=True,
            summary=summary,
        )

    def ask_user(question: str = "", **_extra: Any) -> ToolOutcome:
        return ToolOutcome(
            result=f"Question sent to the user: {question}",
            awaiting_user=True,
            question=question,
        )

    registry.register(
        completion_tool,
        "Call this when the goal has been fully accomplished.",
        [ToolParameter("summary", "string", "Short summary of what was done")],
        mark_goal_complete,
    )
    registry.register(
        ask_user_tool,
        "Ask the user a question and wait for their answer before continuing.",
        [ToolParameter("question", "string", "The question to ask")],
        ask_user,
    )
    return registry


__all__ = [
    "Tool",
    "ToolContext",
    "ToolDefinition",
    "ToolExecutor",
    "ToolOutcome",
    "ToolParameter",
    "ToolRegistry",
    "register_control_tools",
    "render_tool_prompt",
]
