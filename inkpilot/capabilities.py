# inkpilot/capabilities.py
"""
Per-(server, model) memory of which models reject structured tool calling.

Ollama reports a missing tool capability only through its error text, so
detection is a substring heuristic over the raw error body. The wording is
not a stable API: keep every marker in ``TOOL_UNSUPPORTED_MARKERS`` and treat
a match as best effort. A model that is never marked simply keeps paying for
one failed native attempt per chat call.
"""

from __future__ import annotations

import threading

TOOL_UNSUPPORTED_MARKERS: tuple[str, ...] = (
    "does not support tools",
    "tools are not supported",
    "tool use is not supported",
    "does not support tool",
)


def is_tool_support_error(error: str | None) -> bool:
    if not error:
        return False
    text = error.lower()
    if any(marker in text for marker in TOOL_UNSUPPORTED_MARKERS):
        return True
    return "unknown field" in text and "tool" in text


def normalize_base_url(base_url: str) -> str:
    return base_url.rstrip("/")


class CapabilityCache:
    """
    Records (server, model) pairs observed to reject native tool calling.

    Entries only ever move from native to fallback; nothing demotes a pair
    back. The cache lives for the lifetime of the object and is never
    persisted.
    """

    def __init__(self) -> None:
        self._no_tools: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(base_url: str, model: str) -> tuple[str, str]:
        return (normalize_base_url(base_url), model)

    def lacks_tools(self, base_url: str, model: str) -> bool:
        with self._lock:
            return self._key(base_url, model) in self._no_tools

    def mark_no_tools(self, base_url: str, model: str) -> None:
        with self._lock:
            self._no_tools.add(self._key(base_url, model))

    def clear(self) -> None:
        with self._lock:
            self._no_tools.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._no_tools)

    def __repr__(self) -> str:
        return f"CapabilityCache(no_tools={len(self)})"
