"""Ephemeral typing indicators, kept in memory only."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List


@dataclass
class TypingState:
    conversation_id: str
    identity_id: str
    is_typing: bool
    expires_at: float


class TypingRegistry:
    """Typing flags keyed by the session that raised them.

    Clients are expected to send ``is_typing=False`` themselves; entries
    older than ``ttl`` are ignored and pruned so a lost "stopped" frame does
    not leave a peer typing forever. :meth:`clear_session` drops everything a
    closed session left behind.
    """

    def __init__(self, ttl: float = 10.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = float(ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._by_session: Dict[str, Dict[str, TypingState]] = {}

    def set(self, session_id: str, conversation_id: str, identity_id: str, is_typing: bool) -> TypingState:
        state = TypingState(conversation_id, identity_id, is_typing, self._clock() + self.ttl)
        with self._lock:
            if is_typing:
                self._by_session.setdefault(session_id, {})[conversation_id] = state
            else:
                entries = self._by_session.get(session_id)
                if entries is not None:
                    entries.pop(conversation_id, None)
                    if not entries:
                        del self._by_session[session_id]
        return state

    def active_for(self, conversation_id: str, identity_id: str) -> List[TypingState]:
        now = self._clock()
        out: List[TypingState] = []
        with self._lock:
            for session_id in list(self._by_session):
                entries = self._by_session[session_id]
                for cid in [c for c, s in entries.items() if s.expires_at <= now]:
                    del entries[cid]
                if not entries:
                    del self._by_session[session_id]
                    continue
                state = entries.get(conversation_id)
                if state is not None and state.identity_id == identity_id:
                    out.append(state)
        return out

    def clear_session(self, session_id: str) -> int:
        with self._lock:
            return len(self._by_session.pop(session_id, {}))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._by_session.values())
