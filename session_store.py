import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from utils import logger

HISTORY_LIMIT = 20


class SessionStore(ABC):
    """Per-user conversation and connection state, keyed by session id."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge `data` into the stored session; keys not in `data` are kept."""

    @abstractmethod
    def replace(self, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def items(self) -> List[Tuple[str, Dict[str, Any]]]:
        ...

    def __contains__(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def find(self, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Tuple[str, Dict[str, Any]]]:
        for session_id, data in self.items():
            if predicate(data):
                return session_id, data
        return None


class InMemorySessionStore(SessionStore):
    # Process-wide, no eviction; restarts lose every session.

    def __init__(self):
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(session_id)
        return dict(session) if session is not None else None

    def set(self, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        existing = self._sessions.get(session_id) or {}
        merged = {**existing, **data, "updatedAt": int(time.time() * 1000)}
        self._sessions[session_id] = merged
        return dict(merged)

    def replace(self, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._sessions[session_id] = {**data, "updatedAt": int(time.time() * 1000)}
        return dict(self._sessions[session_id])

    def delete(self, session_id: str) -> bool:
        existed = self._sessions.pop(session_id, None) is not None
        if existed:
            logger.info("Deleted session %s", session_id)
        return existed

    def items(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [(sid, dict(data)) for sid, data in self._sessions.items()]

    def __len__(self) -> int:
        return len(self._sessions)


def append_history(store: SessionStore, session_id: str, user_message: str, assistant_message: str, limit: int = HISTORY_LIMIT) -> List[Dict[str, str]]:
    session = store.get(session_id) or {}
    history = list(session.get("conversationHistory") or [])
    history.append({"role": "user", "content": user_message})
    history.append({"role": "assistant", "content": assistant_message})
    if len(history) > limit:
        history = history[-limit:]
    store.set(session_id, {"conversationHistory": history})
    return history
