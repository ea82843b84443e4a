"""Presence table: which live sessions belong to which identity.

An identity is online while it has at least one registered session. Callers
only broadcast presence when :attr:`PresenceChange.changed` is set, i.e. on
the 0 -> 1 and 1 -> 0 transitions; opening a second tab is not an event.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, NamedTuple, Set

from .errors import UnknownSession

log = logging.getLogger(__name__)


class PresenceChange(NamedTuple):
    identity_id: str
    online: bool
    changed: bool


class PresenceTable:
    """Thread-safe session <-> identity map.

    Reads return snapshots (frozensets) so broadcast code never iterates a
    set that a concurrent register/unregister is mutating.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_session: Dict[str, str] = {}
        self._by_identity: Dict[str, Set[str]] = {}

    def register(self, session_id: str, identity_id: str) -> PresenceChange:
        with self._lock:
            current = self._by_session.get(session_id)
            if current is not None:
                if current != identity_id:
                    raise ValueError(f"Session {session_id} already belongs to {current}")
                return PresenceChange(identity_id, True, False)
            sessions = self._by_identity.setdefault(identity_id, set())
            sessions.add(session_id)
            self._by_session[session_id] = identity_id
            changed = len(sessions) == 1
        log.debug("Registered session %s for %s (went online=%s)", session_id, identity_id, changed)
        return PresenceChange(identity_id, True, changed)

    def unregister(self, session_id: str) -> PresenceChange:
        with self._lock:
            identity_id = self._by_session.pop(session_id, None)
            if identity_id is None:
                raise UnknownSession(f"Session {session_id} is not registered")
            sessions = self._by_identity.get(identity_id, set())
            sessions.discard(session_id)
            changed = not sessions
            if changed:
                self._by_identity.pop(identity_id, None)
        log.debug("Unregistered session %s for %s (went offline=%s)", session_id, identity_id, changed)
        return PresenceChange(identity_id, False, changed)

    def sessions_for(self, identity_id: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._by_identity.get(identity_id, ()))

    def identity_for(self, session_id: str) -> str | None:
        with self._lock:
            return self._by_session.get(session_id)

    def is_online(self, identity_id: str) -> bool:
        with self._lock:
            return bool(self._by_identity.get(identity_id))

    def all_online_identities(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._by_identity)

    def all_sessions(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._by_session)

    def session_count(self, identity_id: str | None = None) -> int:
        with self._lock:
            if identity_id is None:
                return len(self._by_session)
            return len(self._by_identity.get(identity_id, ()))
