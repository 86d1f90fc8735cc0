from __future__ import annotations

import json
from typing import Any, Callable

import httpx

from inkpilot.backends import ChatRequest, ChatResult, GenerateRequest, GenerateResult
from inkpilot.messages import Message, MessageRole, ToolCall


class ScriptedLLM:
    """Chat/generate stand-in that replays canned results and records requests."""

    def __init__(
        self,
        replies: list[ChatResult] | Callable[[ChatRequest], ChatResult],
        summary: GenerateResult | None = None,
    ) -> None:
        self._replies = replies
        self._summary = summary or GenerateResult(success=True, response="Summary of earlier work.")
        self.requests: list[ChatRequest] = []
        self.generate_requests: list[GenerateRequest] = []
        self.timeouts: list[float | None] = []

    def chat(self, request: ChatRequest, timeout: float | None = None) -> ChatResult:
        self.requests.append(request)
        self.timeouts.append(timeout)
        if callable(self._replies):
            return self._replies(request)
        if len(self._replies) > 1:
            return self._replies.pop(0)
        return self._replies[0]

    def generate(self, request: GenerateRequest, timeout: float | None = None) -> GenerateResult:
        self.generate_requests.append(request)
        self.timeouts.append(timeout)
        return self._summary


def text_reply(content: str, *, fallback: bool = True) -> ChatResult:
    return ChatResult(
        success=True,
        message=Message(role=MessageRole.ASSISTANT, content=content),
        done=True,
        used_fallback=fallback,
    )


def call_reply(*calls: tuple[str, dict[str, Any]], content: str = "") -> ChatResult:
    return ChatResult(
        success=True,
        message=Message(
            role=MessageRole.ASSISTANT,
            content=content,
            tool_calls=[ToolCall(name=n, arguments=a) for n, a in calls],
        ),
        done=True,
    )


def fenced(name: str, arguments: dict[str, Any]) -> str:
    return "```json\n" + json.dumps({"function": name, "arguments": arguments}) + "\n```"


def request_json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content) if request.content else {}
