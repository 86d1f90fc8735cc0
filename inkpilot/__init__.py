# inkpilot/__init__.py
from .agent import Agent, create_agent
from .backends import ChatRequest, ChatResult, GenerateRequest, GenerateResult, OllamaClient, SamplingOptions
from .capabilities import CapabilityCache
from .config import Config, LLMConfig, SummarizationConfig
from .engine import ConversationEngine, TurnResult
from .extraction import ExtractionResult, ParseError, extract_tool_calls, repair_json
from .messages import Message, MessageRole, ToolCall, ToolResult
from .session import SessionManager, SessionSnapshot, SessionStatus
from .summarizer import CompactionRecord, HistorySummarizer
from .tools import ToolContext, ToolOutcome, ToolParameter, ToolRegistry, register_control_tools

__all__ = [
    "Agent",
    "create_agent",
    "Config",
    "LLMConfig",
    "SummarizationConfig",
    "OllamaClient",
    "ChatRequest",
    "ChatResult",
    "GenerateRequest",
    "GenerateResult",
    "SamplingOptions",
    "CapabilityCache",
    "ConversationEngine",
    "TurnResult",
    "SessionManager",
    "SessionSnapshot",
    "SessionStatus",
    "HistorySummarizer",
    "CompactionRecord",
    "Message",
    "MessageRole",
    "ToolCall",
    "ToolResult",
    "ToolRegistry",
    "ToolParameter",
    "ToolContext",
    "ToolOutcome",
    "register_control_tools",
    "extract_tool_calls",
    "repair_json",
    "ExtractionResult",
    "ParseError",
]
