"""Session router: connection lifecycle, targeting and persistence ordering.

Each connection is a :class:`Session` moving through

    UNAUTHENTICATED -> AUTHENTICATED <-> CONVERSATION_JOINED -> CLOSED

Outbound events are queued on the session's bounded outbox; the transport
drains it. Routing never awaits a socket, so a slow client cannot hold up
anyone else, and no router state is locked across a send.

Blocking work (token verification, log store I/O) runs in the threadpool.
The only lock held across it is the per-conversation lock, which serializes
append + fan-out so every participant sees a conversation in commit order.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional

from starlette.concurrency import run_in_threadpool

from .addressing import conversation_id
from .auth import TokenVerifier
from .directory import IdentityDirectory
from .errors import (
    ChatError,
    EmptyMessage,
    InvalidToken,
    MessageTooLong,
    SessionStateError,
    UnknownSession,
)
from .logstore import ConversationLogStore
from .models import Identity, Message, utc_iso
from .presence import PresenceTable
from .protocol import (
    AuthenticateFrame,
    JoinFrame,
    LeaveFrame,
    PingFrame,
    SendFrame,
    TypingFrame,
    parse_frame,
)
from .typing_state import TypingRegistry

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CONVERSATION_JOINED = "conversation_joined"
    CLOSED = "closed"


_AUTHENTICATED = (SessionState.AUTHENTICATED, SessionState.CONVERSATION_JOINED)


@dataclass(eq=False)
class Session:
    """One live connection. Owned by the transport; the router keeps a reference."""
    session_id: str
    outbox: "asyncio.Queue[Optional[Dict[str, Any]]]"
    state: SessionState = SessionState.UNAUTHENTICATED
    identity: Optional[Identity] = None
    joined_at: Optional[str] = None
    active_peer: Optional[str] = None
    active_conversation: Optional[str] = None
    overflowed: bool = False

    @property
    def identity_id(self) -> Optional[str]:
        return self.identity.id if self.identity else None

    @property
    def is_authenticated(self) -> bool:
        return self.state in _AUTHENTICATED

    def deliver(self, event: Dict[str, Any]) -> bool:
        if self.state is SessionState.CLOSED or self.overflowed:
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            # Overflowed sessions are closed by the transport.
            self.overflowed = True
            log.warning("Outbox full for session %s; marking for close", self.session_id)
            return False
        return True

    def close(self) -> None:
        try:
            self.outbox.put_nowait(None)
        except asyncio.QueueFull:
            pass


class _KeyedLocks:
    """asyncio locks created on demand per key and dropped when unused."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class SessionRouter:
    """Orchestrates directory, presence, addressing and the log store."""

    def __init__(
        self,
        directory: IdentityDirectory,
        store: ConversationLogStore,
        verifier: TokenVerifier,
        *,
        presence: Optional[PresenceTable] = None,
        typing: Optional[TypingRegistry] = None,
        outbox_size: int = 256,
        preview_chars: int = 80,
        max_text_chars: int = 4000,
    ) -> None:
        if presence is None:
            presence = directory.presence if directory.presence is not None else PresenceTable()
        self.presence = presence
        if directory.presence is None:
            directory.presence = self.presence
        self.directory = directory
        self.store = store
        self.verifier = verifier
        self.typing = typing if typing is not None else TypingRegistry()
        self.outbox_size = max(1, int(outbox_size))
        self.preview_chars = max(1, int(preview_chars))
        self.max_text_chars = max(1, int(max_text_chars))
        self._sessions: Dict[str, Session] = {}
        self._conversation_locks = _KeyedLocks()

    # ---------- introspection ----------

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def online_identities(self) -> FrozenSet[str]:
        return self.presence.all_online_identities()

    # ---------- lifecycle ----------

    def connect(self) -> Session:
        session = Session(session_id=uuid.uuid4().hex, outbox=asyncio.Queue(maxsize=self.outbox_size))
        self._sessions[session.session_id] = session
        log.debug("Session %s connected", session.session_id)
        return session

    async def authenticate(self, session: Session, token: str) -> Identity:
        if session.state is not SessionState.UNAUTHENTICATED:
            raise SessionStateError(f"Cannot authenticate in state {session.state.value}.")

        identity_id = await run_in_threadpool(self.verifier.verify, token)

        # The transport may have dropped the connection while we waited.
        if session.state is not SessionState.UNAUTHENTICATED:
            raise SessionStateError(f"Cannot authenticate in state {session.state.value}.")
        identity = self.directory.get(identity_id)
        if identity is None:
            log.warning("Token for unregistered identity %r rejected", identity_id)
            raise InvalidToken("Unknown identity.")

        session.identity = identity
        session.joined_at = utc_iso()
        session.state = SessionState.AUTHENTICATED
        change = self.presence.register(session.session_id, identity.id)
        log.info("Session %s authenticated as %s", session.session_id, identity.id)

        session.deliver({
            "type": "authenticated",
            "session_id": session.session_id,
            "identity": identity.to_dict(),
        })
        session.deliver(self._identities_event(identity.id))
        session.deliver({"type": "online", "identity_ids": sorted(self.presence.all_online_identities())})
        if change.changed:
            self._broadcast_presence(identity, True, exclude=session.session_id)
        return identity

    async def disconnect(self, session: Session) -> None:
        if session.state is SessionState.CLOSED:
            return
        was_authenticated = session.is_authenticated
        session.state = SessionState.CLOSED
        self._sessions.pop(session.session_id, None)

        if was_authenticated:
            self.typing.clear_session(session.session_id)
            try:
                change = self.presence.unregister(session.session_id)
            except UnknownSession:
                log.error("Session %s missing from presence table on disconnect", session.session_id)
            else:
                if change.changed and session.identity is not None:
                    self._broadcast_presence(session.identity, False)
        session.close()
        log.info("Session %s closed (%s)", session.session_id, session.identity_id or "unauthenticated")

    # ---------- conversations ----------

    async def join_conversation(self, session: Session, peer_id: str) -> List[Message]:
        me = self._require_auth(session)
        peer = self.directory.resolve(peer_id)
        cid = conversation_id(me.id, peer.id)

        async with self._conversation_locks.hold(cid):
            history = await run_in_threadpool(self.store.read, cid)
            if not session.is_authenticated:
                return history
            session.active_peer = peer.id
            session.active_conversation = cid
            session.state = SessionState.CONVERSATION_JOINED
            session.deliver({
                "type": "history",
                "conversation_id": cid,
                "peer": peer.to_dict(),
                "messages": [m.to_dict() for m in history],
            })

        if peer.id != me.id and self.typing.active_for(cid, peer.id):
            session.deliver(self._typing_event(cid, peer.id, True))
        log.debug("%s joined conversation %s (%d messages)", me.id, cid, len(history))
        return history

    async def leave_conversation(self, session: Session) -> None:
        self._require_auth(session)
        session.active_peer = None
        session.active_conversation = None
        session.state = SessionState.AUTHENTICATED

    async def send_message(
        self,
        session: Session,
        recipient_id: str,
        text: str,
        attachment: Optional[Dict[str, Any]] = None,
    ) -> Message:
        me = self._require_auth(session)
        body = (text or "").strip()
        if not body:
            raise EmptyMessage("Message cannot be empty.")
        if len(body) > self.max_text_chars:
            raise MessageTooLong(f"Message exceeds {self.max_text_chars} characters.")
        recipient = self.directory.resolve(recipient_id)
        cid = conversation_id(me.id, recipient.id)
        async with self._conversation_locks.hold(cid):
            # Stamped under the lock: log order is timestamp order.
            message = Message(sender_id=me.id, recipient_id=recipient.id, text=body, attachment=attachment)
            # PersistenceFailure propagates from here: nothing below runs for an uncommitted message.
            committed = await run_in_threadpool(self.store.append, cid, message)
            self._fan_out(cid, committed, me, recipient)
        return committed

    async def set_typing(self, session: Session, recipient_id: str, is_typing: bool) -> None:
        me = self._require_auth(session)
        recipient = self.directory.resolve(recipient_id)
        cid = conversation_id(me.id, recipient.id)
        self.typing.set(session.session_id, cid, me.id, bool(is_typing))
        event = self._typing_event(cid, me.id, bool(is_typing))
        for sid in sorted(self.presence.sessions_for(recipient.id)):
            if sid == session.session_id:
                continue
            target = self._sessions.get(sid)
            if target is not None:
                target.deliver(event)

    # ---------- frame dispatch ----------

    async def handle(self, session: Session, data: Any) -> None:
        """Run one inbound frame; failures are reported to ``session`` only."""
        request = data.get("type") if isinstance(data, dict) else None
        try:
            frame = parse_frame(data)
            if isinstance(frame, AuthenticateFrame):
                await self.authenticate(session, frame.token)
            elif isinstance(frame, JoinFrame):
                await self.join_conversation(session, frame.peer_id)
            elif isinstance(frame, LeaveFrame):
                await self.leave_conversation(session)
            elif isinstance(frame, SendFrame):
                attachment = frame.attachment.model_dump(exclude_none=True) if frame.attachment else None
                await self.send_message(session, frame.recipient_id, frame.text, attachment)
            elif isinstance(frame, TypingFrame):
                await self.set_typing(session, frame.recipient_id, frame.is_typing)
            elif isinstance(frame, PingFrame):
                session.deliver({"type": "pong", "timestamp": utc_iso()})
        except ChatError as e:
            log.info("Session %s %s rejected: %s", session.session_id, request, e.code)
            event = e.to_event()
            if request:
                event["request"] = request
            session.deliver(event)
        except Exception:
            log.exception("Unhandled error for session %s (%s)", session.session_id, request)
            session.deliver({"type": "error", "code": "internal_error", "detail": "Internal server error."})

    # ---------- internals ----------

    def _require_auth(self, session: Session) -> Identity:
        if not session.is_authenticated or session.identity is None:
            raise SessionStateError("Authenticate first." if session.state is SessionState.UNAUTHENTICATED
                                    else "Session is closed.")
        return session.identity

    def _identities_event(self, exclude_id: str) -> Dict[str, Any]:
        return {
            "type": "identities",
            "identities": [
                {**row["identity"].to_dict(), "online": row["is_online"]}
                for row in self.directory.list_others(exclude_id)
            ],
        }

    @staticmethod
    def _typing_event(cid: str, identity_id: str, is_typing: bool) -> Dict[str, Any]:
        return {"type": "typing", "conversation_id": cid, "identity_id": identity_id, "is_typing": is_typing}

    def _broadcast_presence(self, identity: Identity, online: bool, exclude: Optional[str] = None) -> None:
        event = {
            "type": "presence",
            "identity_id": identity.id,
            "display_name": identity.display_name,
            "online": online,
        }
        for sid in sorted(self.presence.all_sessions()):
            if sid == exclude:
                continue
            target = self._sessions.get(sid)
            if target is not None:
                target.deliver(event)
        log.info("%s is now %s", identity.id, "online" if online else "offline")

    def _fan_out(self, cid: str, message: Message, sender: Identity, recipient: Identity) -> None:
        event = {"type": "message", "conversation_id": cid, "message": message.to_dict()}
        targets = self.presence.sessions_for(sender.id) | self.presence.sessions_for(recipient.id)
        for sid in sorted(targets):
            target = self._sessions.get(sid)
            if target is not None:
                target.deliver(event)

        if recipient.id == sender.id:
            return
        notification = {
            "type": "notification",
            "conversation_id": cid,
            "sender_id": sender.id,
            "sender_name": sender.display_name,
            "preview": message.text[: self.preview_chars],
            "timestamp": message.timestamp,
        }
        for sid in sorted(self.presence.sessions_for(recipient.id)):
            target = self._sessions.get(sid)
            if target is not None and target.active_conversation != cid:
                target.deliver(notification)
