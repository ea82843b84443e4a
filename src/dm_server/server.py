"""FastAPI application exposing the session router over WebSockets."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .auth import TokenVerifier, create_verifier
from .config import load_config, merge_config
from .directory import IdentityDirectory
from .errors import BadRequest, DuplicateIdentity, InvalidIdentity
from .logstore import ConversationLogStore, create_store
from .presence import PresenceTable
from .router import Session, SessionRouter
from .typing_state import TypingRegistry

log = logging.getLogger(__name__)

# WebSocket close codes
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


# -----------------------------
# Pydantic request/response
# -----------------------------
class IdentityIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=128, description="Stable identity id (username).")
    display_name: Optional[str] = Field(default=None, max_length=128)


class IdentityOut(BaseModel):
    id: str
    display_name: str
    online: bool = False


class IdentityList(BaseModel):
    identities: List[IdentityOut]


# -----------------------------
# Utilities
# -----------------------------
def _make_directory(cfg: Dict[str, Any], presence: PresenceTable) -> IdentityDirectory:
    dir_cfg = cfg.get("directory", {})
    directory = IdentityDirectory(dir_cfg.get("path"), presence=presence)
    directory.seed(dir_cfg.get("seed") or [])
    return directory


def _make_router(
    cfg: Dict[str, Any],
    directory: IdentityDirectory,
    store: ConversationLogStore,
    verifier: TokenVerifier,
) -> SessionRouter:
    srv_cfg = cfg.get("server", {})
    chat_cfg = cfg.get("chat", {})
    return SessionRouter(
        directory,
        store,
        verifier,
        typing=TypingRegistry(ttl=float(chat_cfg.get("typing_ttl_seconds", 10.0))),
        outbox_size=int(srv_cfg.get("outbox_size", 256)),
        preview_chars=int(chat_cfg.get("preview_chars", 80)),
        max_text_chars=int(chat_cfg.get("max_text_chars", 4000)),
    )


def _decode(raw: Union[str, bytes]) -> Any:
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)
    except ValueError:
        raise BadRequest("Frame is not valid JSON.")


async def _pump(websocket: WebSocket, session: Session) -> None:
    """Drain the session outbox onto the socket until the close sentinel."""
    try:
        while True:
            event = await session.outbox.get()
            if event is None:
                break
            await websocket.send_json(event)
            if session.overflowed and session.outbox.empty():
                log.warning("Closing session %s: client too slow", session.session_id)
                await websocket.close(code=TRY_AGAIN_LATER)
                break
    except Exception as e:
        # Peer went away mid-send; the receive loop sees the disconnect.
        log.debug("Sender for session %s stopped: %s", session.session_id, e)


async def _receive_frame(router: SessionRouter, websocket: WebSocket, session: Session, timeout: Optional[float]) -> None:
    message = await asyncio.wait_for(websocket.receive(), timeout) if timeout else await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    raw = message.get("text")
    if raw is None:
        raw = message.get("bytes") or b""
    try:
        data = _decode(raw)
    except BadRequest as e:
        session.deliver(e.to_event())
        return
    await router.handle(session, data)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    overrides: Optional[Dict[str, Any]] = None,
    directory: Optional[IdentityDirectory] = None,
    store: Optional[ConversationLogStore] = None,
    verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    if overrides:
        cfg = merge_config(cfg, overrides)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    auth_timeout = float(cfg.get("server", {}).get("auth_timeout_seconds") or 0) or None

    # Services
    if directory is None:
        directory = _make_directory(cfg, PresenceTable())
    if store is None:
        store = create_store(cfg)
    if verifier is None:
        verifier = create_verifier(cfg, directory)
    router = _make_router(cfg, directory, store, verifier)

    app = FastAPI(title="DM Server", version="0.1.0")
    app.state.router = router
    app.state.config = cfg
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root() -> Dict[str, Any]:
        return {"ok": True, "msg": "Backend running..."}

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "identities": len(directory),
            "sessions": router.presence.session_count(),
            "online": len(router.online_identities()),
        }

    @app.get("/presence")
    def get_presence() -> Dict[str, Any]:
        return {"online": sorted(router.online_identities())}

    @app.post("/identities", response_model=IdentityOut, status_code=201)
    def register_identity(inp: IdentityIn):
        try:
            identity = directory.register(inp.id, inp.display_name)
        except DuplicateIdentity as e:
            raise HTTPException(status_code=409, detail=e.detail)
        except InvalidIdentity as e:
            raise HTTPException(status_code=400, detail=e.detail)
        return IdentityOut(id=identity.id, display_name=identity.display_name,
                           online=router.presence.is_online(identity.id))

    @app.get("/identities", response_model=IdentityList)
    def list_identities(exclude: Optional[str] = Query(default=None)):
        rows = directory.list_others(exclude)
        return IdentityList(identities=[
            IdentityOut(id=r["identity"].id, display_name=r["identity"].display_name, online=r["is_online"])
            for r in rows
        ])

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        session = router.connect()
        sender = asyncio.create_task(_pump(websocket, session))
        close_code: Optional[int] = None
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + auth_timeout if auth_timeout else None
            while not session.is_authenticated:
                remaining = deadline - loop.time() if deadline is not None else None
                if remaining is not None and remaining <= 0:
                    raise asyncio.TimeoutError
                await _receive_frame(router, websocket, session, remaining)

            while True:
                await _receive_frame(router, websocket, session, None)
        except asyncio.TimeoutError:
            log.info("Session %s did not authenticate in time", session.session_id)
            session.deliver({"type": "error", "code": "auth_timeout", "detail": "Authentication timed out."})
            close_code = POLICY_VIOLATION
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Raised by starlette when receiving on a socket the sender already closed.
            log.debug("Receive loop for session %s ended: %s", session.session_id, e)
        finally:
            await router.disconnect(session)
            try:
                await asyncio.wait_for(sender, timeout=5.0)
            except asyncio.TimeoutError:
                log.warning("Sender for session %s did not drain in time", session.session_id)
            if close_code is not None:
                try:
                    await websocket.close(code=close_code)
                except RuntimeError:
                    log.debug("Socket for session %s already closed", session.session_id)

    return app
