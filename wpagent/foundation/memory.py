"""
Session memory - bounded conversation and action history.

Each conversation owns one SessionMemory. Chat turns and executed
actions are kept in FIFO windows (oldest evicted first) and rendered
into a short summary that is handed to the generative service as context.
"""

from __future__ import annotations
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MAX_CHAT_HISTORY = 10
MAX_EXECUTED_ACTIONS = 20


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ChatEntry:
    """A single chat turn."""
    role: str  # "user" or "assistant"
    message: str
    timestamp: str = field(default_factory=_now_iso)
    session_time: float = 0.0  # seconds since session start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "message": self.message,
            "timestamp": self.timestamp,
            "session_time": round(self.session_time, 3),
        }


@dataclass
class ActionEntry:
    """A remote action that was attempted."""
    type: str
    description: str
    success: bool
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "timestamp": self.timestamp,
            "success": self.success,
        }


class SessionMemory:
    """
    Bounded memory for one conversation.

    chat_history holds at most ``max_chat_history`` entries and
    executed_actions at most ``max_executed_actions``; appending beyond
    the bound drops the oldest entry.
    """

    def __init__(
        self,
        site_context: Optional[Dict[str, Any]] = None,
        max_chat_history: int = MAX_CHAT_HISTORY,
        max_executed_actions: int = MAX_EXECUTED_ACTIONS,
        clock=time.time,
    ):
        self._clock = clock
        self.chat_history: Deque[ChatEntry] = deque(maxlen=max_chat_history)
        self.executed_actions: Deque[ActionEntry] = deque(maxlen=max_executed_actions)
        self.site_context: Optional[Dict[str, Any]] = dict(site_context) if site_context else None
        self.session_start_time: float = clock()

    @classmethod
    def from_history(
        cls,
        history: Iterable[Dict[str, Any]],
        site_context: Optional[Dict[str, Any]] = None,
        max_chat_history: int = MAX_CHAT_HISTORY,
    ) -> SessionMemory:
        """Seed a transient memory from client-supplied chat history (most recent entries win)."""
        memory = cls(site_context=site_context, max_chat_history=max_chat_history)
        memory.extend_history(history)
        return memory

    @property
    def session_time(self) -> float:
        return self._clock() - self.session_start_time

    def extend_history(self, history: Iterable[Dict[str, Any]]) -> None:
        for item in history:
            role = str(item.get("role", "user"))
            message = item.get("message") or item.get("content") or ""
            if message:
                self.add_turn(role, str(message))

    def add_turn(self, role: str, message: str) -> ChatEntry:
        entry = ChatEntry(role=role, message=message, session_time=self.session_time)
        self.chat_history.append(entry)
        return entry

    def record_action(self, action_type: str, description: str, success: bool) -> ActionEntry:
        entry = ActionEntry(type=action_type, description=description, success=success)
        self.executed_actions.append(entry)
        return entry

    def set_site_context(self, site_context: Optional[Dict[str, Any]]) -> None:
        self.site_context = dict(site_context) if site_context else None

    def clear(self, site_context: Optional[Dict[str, Any]] = None) -> None:
        """Forget everything; re-seed the site context if a site is still connected."""
        self.chat_history.clear()
        self.executed_actions.clear()
        self.site_context = None
        self.session_start_time = self._clock()
        if site_context:
            self.set_site_context(site_context)
        logger.info("Session memory cleared")

    def summary(self, max_turns: int = MAX_CHAT_HISTORY, max_actions: int = 5) -> str:
        """Render recent turns and actions as plain text for a prompt."""
        lines: List[str] = []

        turns = list(self.chat_history)[-max_turns:] if max_turns > 0 else []
        if turns:
            lines.append("Recent conversation:")
            for entry in turns:
                speaker = "User" if entry.role == "user" else "Assistant"
                lines.append(f"{speaker}: {entry.message}")

        actions = list(self.executed_actions)[-max_actions:] if max_actions > 0 else []
        if actions:
            lines.append("Recent actions:")
            for action in actions:
                outcome = "ok" if action.success else "failed"
                lines.append(f"- [{outcome}] {action.type}: {action.description}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_history": [e.to_dict() for e in self.chat_history],
            "executed_actions": [a.to_dict() for a in self.executed_actions],
            "site_context": self.site_context,
            "session_start_time": self.session_start_time,
        }


class SessionRegistry:
    """In-process store of SessionMemory objects keyed by session id, LRU bounded."""

    def __init__(
        self,
        max_sessions: int = 1000,
        max_chat_history: int = MAX_CHAT_HISTORY,
        max_executed_actions: int = MAX_EXECUTED_ACTIONS,
    ):
        self.max_sessions = max_sessions
        self.max_chat_history = max_chat_history
        self.max_executed_actions = max_executed_actions
        self._sessions: "OrderedDict[str, SessionMemory]" = OrderedDict()

    def get(self, session_id: str) -> Optional[SessionMemory]:
        memory = self._sessions.get(session_id)
        if memory is not None:
            self._sessions.move_to_end(session_id)
        return memory

    def get_or_create(
        self,
        session_id: str,
        site_context: Optional[Dict[str, Any]] = None,
    ) -> SessionMemory:
        memory = self.get(session_id)
        if memory is None:
            memory = SessionMemory(
                site_context=site_context,
                max_chat_history=self.max_chat_history,
                max_executed_actions=self.max_executed_actions,
            )
            self._sessions[session_id] = memory
            logger.info(f"Created session {session_id}")
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info(f"Evicted least recently used session {evicted}")
        elif site_context:
            memory.set_site_context(site_context)
        return memory

    def __len__(self) -> int:
        return len(self._sessions)
