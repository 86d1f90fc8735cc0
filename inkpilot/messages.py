# inkpilot/messages.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def signature(self) -> tuple[str, str]:
        """Identity used for de-duplication; argument key order is ignored."""
        return (
            self.name,
            json.dumps(self.arguments, sort_keys=True, ensure_ascii=False, default=str),
        )

    def to_wire(self) -> dict[str, Any]:
        return {"function": {"name": self.name, "arguments": dict(self.arguments)}}

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> ToolCall | None:
        """
        Normalize a server-side tool call.

        Accepts ``{"function": {"name", "arguments"}}`` where ``arguments``
        may be an object or a JSON-encoded string. Returns None when no
        usable name is present.
        """
        func = data.get("function") if isinstance(data, Mapping) else None
        if not isinstance(func, Mapping):
            return None
        name = func.get("name")
        if not isinstance(name, str) or not name:
            return None
        args: Any = func.get("arguments", {})
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError:
                args = {}
        if not isinstance(args, dict):
            args = {}
        return cls(name=name, arguments=args)


@dataclass
class Message:
    role: MessageRole
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            out["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return out

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> Message:
        role_raw = str(data.get("role", "assistant")).lower()
        try:
            role = MessageRole(role_raw)
        except ValueError:
            role = MessageRole.ASSISTANT
        calls: list[ToolCall] = []
        for raw in data.get("tool_calls") or []:
            call = ToolCall.from_wire(raw)
            if call is not None:
                calls.append(call)
        return cls(role=role, content=str(data.get("content") or ""), tool_calls=calls)


@dataclass(frozen=True)
class ToolResult:
    name: str
    arguments: dict[str, Any]
    result: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments), "result": self.result}
