# inkpilot/backends.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from .capabilities import CapabilityCache, is_tool_support_error, normalize_base_url
from .config import LLMConfig
from .logging_utils import get_logger
from .messages import Message, MessageRole
from .tools import ToolDefinition, render_tool_prompt

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
_ERROR_BODY_CHARS = 500


# =====================================================================
# Request / result shapes
# =====================================================================
@dataclass
class SamplingOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    # "json" asks the server for a JSON-only answer; None means free text
    format: str | None = None


@dataclass
class ChatRequest:
    messages: list[Message]
    tools: list[ToolDefinition] | None = None
    options: SamplingOptions = field(default_factory=SamplingOptions)


@dataclass
class GenerateRequest:
    prompt: str
    system: str | None = None
    options: SamplingOptions = field(default_factory=SamplingOptions)


@dataclass
class GenerateResult:
    success: bool
    response: str = ""
    error: str | None = None


@dataclass
class ChatResult:
    success: bool
    message: Message | None = None
    done: bool = False
    error: str | None = None
    used_fallback: bool = False


@dataclass
class ModelListResult:
    success: bool
    models: list[str] = field(default_factory=list)
    error: str | None = None


def with_tool_prompt(messages: list[Message], prompt: str) -> list[Message]:
    """
    Return a copy of ``messages`` carrying ``prompt`` in the system message.

    The prompt is appended to the first system message, or prepended as a
    new system message when there is none.
    """
    out = list(messages)
    for i, m in enumerate(out):
        if m.role == MessageRole.SYSTEM:
            out[i] = replace(m, content=f"{m.content}\n\n{prompt}" if m.content else prompt)
            return out
    out.insert(0, Message(role=MessageRole.SYSTEM, content=prompt))
    return out


# =====================================================================
# Ollama Client (HTTP)
# =====================================================================
class OllamaClient:
    """
    Blocking client for an Ollama server.

    Every method returns a result object; transport failures, non-2xx
    statuses and undecodable bodies are reported through ``success=False``
    and ``error``. Non-2xx errors keep the (truncated) server body, which is
    what tool-support detection matches against.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        capabilities: CapabilityCache | None = None,
        timeout: float = 300.0,
        connect_timeout: float = 10.0,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.model = model
        self.capabilities = capabilities if capabilities is not None else CapabilityCache()
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport
        self._log = get_logger("inkpilot.ollama")

    @classmethod
    def from_config(
        cls,
        llm: LLMConfig,
        *,
        capabilities: CapabilityCache | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> "OllamaClient":
        return cls(
            llm.base_url,
            llm.model,
            capabilities=capabilities,
            timeout=llm.timeout,
            connect_timeout=llm.connect_timeout,
            temperature=llm.temperature,
            max_tokens=llm.max_tokens,
            transport=transport,
        )

    def __repr__(self) -> str:
        return f"OllamaClient(base_url={self.base_url!r}, model={self.model!r})"

    # -----------------------------------------------------------------
    # HTTP plumbing
    # -----------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        payload: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any] | None, str | None]:
        url = f"{self.base_url}{path}"
        self._log.info("%s %s model=%s", method, path, self.model)
        try:
            with httpx.Client(
                timeout=httpx.Timeout(timeout, connect=min(timeout, self.connect_timeout)),
                transport=self._transport,
            ) as client:
                resp = client.request(method, url, json=payload)
        except httpx.TimeoutException as e:
            self._log.error("%s %s timed out after %.0fs: %s", method, path, timeout, e)
            return None, f"Request timed out after {timeout:.0f}s"
        except httpx.HTTPError as e:
            self._log.error("%s %s failed: %s", method, path, e)
            return None, f"Request failed: {e}"

        self._log.debug(
            "%s %s -> status=%d length=%d", method, path, resp.status_code, len(resp.content)
        )
        if not resp.is_success:
            body = resp.text[:_ERROR_BODY_CHARS]
            self._log.error("Error response: %s", body)
            return None, f"Server returned status {resp.status_code}: {body}"

        try:
            data = resp.json()
        except ValueError:
            self._log.error("Failed to parse response body: %s", resp.text[:1000])
            return None, "Failed to parse Ollama API response"
        if not isinstance(data, dict):
            return None, "Failed to parse Ollama API response"
        if isinstance(data.get("error"), str):
            return None, data["error"]
        return data, None

    def _options(self, opts: SamplingOptions) -> dict[str, Any]:
        return {
            "temperature": opts.temperature if opts.temperature is not None else self.temperature,
            "num_predict": opts.max_tokens if opts.max_tokens is not None else self.max_tokens,
        }

    # -----------------------------------------------------------------
    # /api/generate
    # -----------------------------------------------------------------
    def generate(self, request: GenerateRequest, timeout: float | None = None) -> GenerateResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": request.prompt,
            "system": request.system or "",
            "stream": False,
            "options": self._options(request.options),
        }
        if request.options.format:
            payload["format"] = request.options.format

        self._log.debug(
            "generate: system=%d chars prompt=%d chars",
            len(request.system or ""),
            len(request.prompt),
        )
        data, error = self._request("POST", "/api/generate", timeout or self.timeout, payload)
        if data is None:
            return GenerateResult(success=False, error=error)

        text = str(data.get("response") or "")
        if request.options.format == "json" and not text.strip().startswith(("{", "[")):
            self._log.warning("JSON requested but response does not start with { or [")
        return GenerateResult(success=True, response=text)

    # -----------------------------------------------------------------
    # /api/chat
    # -----------------------------------------------------------------
    def chat(self, request: ChatRequest, timeout: float | None = None) -> ChatResult:
        """
        Chat, negotiating native vs. text tool calling.

        Without tools this is a plain chat. With tools the native path is
        tried first unless the capability cache says the model lacks it; a
        tool-support error marks the model and the same request is retried
        once on the text path.
        """
        timeout = timeout or self.timeout
        tools = request.tools or []
        if not tools:
            return self._chat_native(request, None, timeout)

        if self.capabilities.lacks_tools(self.base_url, self.model):
            return self._chat_fallback(request, tools, timeout)

        result = self._chat_native(request, tools, timeout)
        if not result.success and is_tool_support_error(result.error):
            self._log.info(
                "Model %s does not support tools, switching to text fallback", self.model
            )
            self.capabilities.mark_no_tools(self.base_url, self.model)
            return self._chat_fallback(request, tools, timeout)
        return result

    def _chat_payload(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        options: SamplingOptions,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in messages],
            "stream": False,
            "options": self._options(options),
        }
        if tools:
            payload["tools"] = tools
        if options.format:
            payload["format"] = options.format
        return payload

    def _chat_native(
        self,
        request: ChatRequest,
        tools: list[ToolDefinition] | None,
        timeout: float,
    ) -> ChatResult:
        payload = self._chat_payload(request.messages, tools, request.options)
        data, error = self._request("POST", "/api/chat", timeout, payload)
        if data is None:
            return ChatResult(success=False, error=error)
        return self._chat_result(data, used_fallback=False)

    def _chat_fallback(
        self,
        request: ChatRequest,
        tools: list[ToolDefinition],
        timeout: float,
    ) -> ChatResult:
        messages = with_tool_prompt(request.messages, render_tool_prompt(tools))
        payload = self._chat_payload(messages, None, request.options)
        self._log.debug("chat (text tools): %d tool(s) described in system prompt", len(tools))
        data, error = self._request("POST", "/api/chat", timeout, payload)
        if data is None:
            return ChatResult(success=False, error=error, used_fallback=True)
        return self._chat_result(data, used_fallback=True)

    def _chat_result(self, data: dict[str, Any], used_fallback: bool) -> ChatResult:
        raw = data.get("message")
        if not isinstance(raw, dict):
            return ChatResult(
                success=False,
                error="Response did not contain a message",
                used_fallback=used_fallback,
            )
        message = Message.from_wire(raw)
        self._log.debug(
            "chat done=%s content=%d chars tool_calls=%d",
            data.get("done"),
            len(message.content),
            len(message.tool_calls),
        )
        return ChatResult(
            success=True,
            message=message,
            done=bool(data.get("done", True)),
            used_fallback=used_fallback,
        )

    # -----------------------------------------------------------------
    # /api/tags
    # -----------------------------------------------------------------
    def list_models(self) -> ModelListResult:
        """Connectivity check: names of the models the server has pulled."""
        data, error = self._request("GET", "/api/tags", self.connect_timeout)
        if data is None:
            return ModelListResult(success=False, error=error)
        models = [
            str(m.get("name"))
            for m in data.get("models") or []
            if isinstance(m, dict) and m.get("name")
        ]
        return ModelListResult(success=True, models=models)


__all__ = [
    "ChatRequest",
    "ChatResult",
    "GenerateRequest",
    "GenerateResult",
    "ModelListResult",
    "OllamaClient",
    "SamplingOptions",
    "with_tool_prompt",
]
