# inkpilot/session.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from .config import LLMConfig
from .logging_utils import get_logger
from .messages import Message

log = get_logger("inkpilot.session")


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


@dataclass
class Session:
    """
    One goal-driven conversation.

    ``messages`` is the transcript without the system prompt, which is
    rebuilt for every turn. Only the engine mutates a session, and only
    while holding ``turn_lock``.
    """

    goal: str
    max_iterations: int
    llm: LLMConfig = field(default_factory=LLMConfig)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    messages: list[Message] = field(default_factory=list)
    iteration_count: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    created_entities: list[str] = field(default_factory=list)
    modified_entities: list[str] = field(default_factory=list)
    error_message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    cancel_requested: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )
    turn_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def touch(self) -> None:
        self.last_activity_at = time.time()


@dataclass(frozen=True)
class SessionSnapshot:
    id: str
    goal: str
    status: SessionStatus
    iteration_count: int
    max_iterations: int
    messages: tuple[Message, ...]
    created_entities: tuple[str, ...]
    modified_entities: tuple[str, ...]
    error_message: str | None
    data: dict[str, Any]
    created_at: float
    last_activity_at: float

    @property
    def message_count(self) -> int:
        return len(self.messages)


def _extend_unique(target: list[str], names: Iterable[str]) -> None:
    for n in names:
        if n and n not in target:
            target.append(n)


class SessionManager:
    """In-memory session store. Lookups and status changes are lock-guarded."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __repr__(self) -> str:
        return f"SessionManager(sessions={len(self)})"

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def create_session(
        self,
        goal: str,
        max_iterations: int,
        llm: LLMConfig | None = None,
        data: dict[str, Any] | None = None,
    ) -> Session:
        session = Session(
            goal=goal,
            max_iterations=max_iterations,
            llm=llm or LLMConfig(),
            data=dict(data or {}),
        )
        with self._lock:
            self._sessions[session.id] = session
        log.info("Created session %s (max_iterations=%d)", session.id, max_iterations)
        return session

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.cancel_requested.set()
        return session is not None

    def active_sessions(self) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.status is SessionStatus.ACTIVE]

    def all_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def cleanup_old_sessions(self, max_age_s: float = 3600.0) -> int:
        """Drop finished sessions idle for longer than ``max_age_s``."""
        cutoff = time.time() - max_age_s
        with self._lock:
            stale = [
                sid
                for sid, s in self._sessions.items()
                if s.status is not SessionStatus.ACTIVE and s.last_activity_at < cutoff
            ]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            log.info("Cleaned up %d old session(s)", len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # transcript and counters
    # ------------------------------------------------------------------
    def add_message(self, session_id: str, message: Message) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.messages.append(message)
            session.touch()
            return session

    def replace_messages(self, session_id: str, messages: list[Message]) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.messages[:] = messages
            session.touch()
            return session

    def increment_iteration(self, session_id: str) -> Session | None:
        """
        Count one turn. An active session whose budget is now used up moves
        to ``max_iterations``; a session already finished this turn keeps
        its status.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.iteration_count += 1
            session.touch()
            if (
                session.status is SessionStatus.ACTIVE
                and session.iteration_count >= session.max_iterations
            ):
                session.status = SessionStatus.MAX_ITERATIONS
                log.info(
                    "Session %s reached max iterations (%d)",
                    session_id,
                    session.max_iterations,
                )
            return session

    def record_entities(
        self,
        session_id: str,
        created: Iterable[str] = (),
        modified: Iterable[str] = (),
    ) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            _extend_unique(session.created_entities, created)
            _extend_unique(session.modified_entities, modified)
            return session

    def update_data(self, session_id: str, **updates: Any) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.data.update(updates)
            return session

    # ------------------------------------------------------------------
    # status transitions (only out of ACTIVE)
    # ------------------------------------------------------------------
    def _transition(
        self, session_id: str, status: SessionStatus, error: str | None = None
    ) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.status is SessionStatus.ACTIVE:
                session.status = status
                if error is not None:
                    session.error_message = error
                session.touch()
                log.info("Session %s -> %s", session_id, status.value)
            return session

    def complete_session(self, session_id: str) -> Session | None:
        return self._transition(session_id, SessionStatus.COMPLETED)

    def error_session(self, session_id: str, error: str) -> Session | None:
        return self._transition(session_id, SessionStatus.ERROR, error)

    def cancel_session(self, session_id: str) -> bool:
        """
        Request cancellation. An idle session is cancelled immediately; a
        session with a turn in flight is cancelled by the engine at its next
        checkpoint.
        """
        session = self.get_session(session_id)
        if session is None or session.status.is_terminal:
            return False
        session.cancel_requested.set()
        if session.turn_lock.acquire(blocking=False):
            try:
                self._transition(session_id, SessionStatus.CANCELLED)
            finally:
                session.turn_lock.release()
        return True

    def observe_cancellation(self, session_id: str) -> bool:
        """Apply a pending cancellation request; True if the session is now cancelled."""
        session = self.get_session(session_id)
        if session is None:
            return False
        if session.cancel_requested.is_set():
            self._transition(session_id, SessionStatus.CANCELLED)
        return session.status is SessionStatus.CANCELLED

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------
    def snapshot(self, session_id: str) -> SessionSnapshot | None:
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None:
                return None
            return SessionSnapshot(
                id=s.id,
                goal=s.goal,
                status=s.status,
                iteration_count=s.iteration_count,
                max_iterations=s.max_iterations,
                messages=tuple(s.messages),
                created_entities=tuple(s.created_entities),
                modified_entities=tuple(s.modified_entities),
                error_message=s.error_message,
                data=dict(s.data),
                created_at=s.created_at,
                last_activity_at=s.last_activity_at,
            )


__all__ = ["Session", "SessionManager", "SessionSnapshot", "SessionStatus"]
