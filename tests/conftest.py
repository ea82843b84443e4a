"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from dm_server.auth import DirectoryTokenVerifier  # noqa: E402
from dm_server.directory import IdentityDirectory  # noqa: E402
from dm_server.logstore import ConversationLogStore, MemoryBackend  # noqa: E402
from dm_server.presence import PresenceTable  # noqa: E402
from dm_server.router import Session, SessionRouter  # noqa: E402


def drain(session: Session) -> List[Dict[str, Any]]:
    """Pop every queued event (the close sentinel is skipped)."""
    out: List[Dict[str, Any]] = []
    while True:
        try:
            event = session.outbox.get_nowait()
        except asyncio.QueueEmpty:
            return out
        if event is not None:
            out.append(event)


def of_type(events: List[Dict[str, Any]], kind: str) -> List[Dict[str, Any]]:
    return [e for e in events if e.get("type") == kind]


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for conversation logs during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    monkeypatch.delenv("DM_SERVER_CONFIG", raising=False)
    for var in [k for k in os.environ if k.startswith("DM_SERVER__")]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def directory() -> IdentityDirectory:
    d = IdentityDirectory(presence=PresenceTable())
    d.register("alice", "Alice")
    d.register("bob", "Bob")
    d.register("carol", "Carol")
    return d


@pytest.fixture(scope="function")
def make_router(directory: IdentityDirectory):
    """Build a router over the shared directory; keyword args go to SessionRouter."""
    def _make(store: ConversationLogStore | None = None, **kwargs: Any) -> SessionRouter:
        store = store or ConversationLogStore(MemoryBackend())
        return SessionRouter(directory, store, DirectoryTokenVerifier(directory), **kwargs)
    return _make
