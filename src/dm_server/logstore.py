"""Durable, capped, per-conversation message logs (thread-safe, atomic)."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Protocol

from .errors import PersistenceFailure
from .models import Message

log = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 1000
_REQUIRED_KEYS = ("id", "sender_id", "recipient_id")


# -----------------------------
# Helpers
# -----------------------------
def _file_stem(conversation_id: str) -> str:
    # Readable prefix for humans, hash for uniqueness and filesystem safety.
    readable = re.sub(r"[^\w.\-@]+", "_", conversation_id)[:48]
    digest = hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()[:24]
    return f"{readable}.{digest}"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# Backends
# -----------------------------
class LogBackend(Protocol):
    """Byte-store collaborator: whole conversation in, whole conversation out."""

    def load(self, conversation_id: str) -> List[Dict[str, Any]]: ...

    def store(self, conversation_id: str, records: List[Dict[str, Any]]) -> None: ...


class MemoryBackend:
    """In-process backend; nothing survives a restart."""

    def __init__(self) -> None:
        self._data: Dict[str, List[Dict[str, Any]]] = {}

    def load(self, conversation_id: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._data.get(conversation_id, [])]

    def store(self, conversation_id: str, records: List[Dict[str, Any]]) -> None:
        self._data[conversation_id] = [dict(r) for r in records]


class DiskBackend:
    """One JSON file per conversation.

    Layout:
        data_dir/
          <conversation>.<hash>.json     # list[message dict], oldest first
          (optional) logs/<conversation>.<hash>.jsonl  # append-only audit trail
    """

    def __init__(self, data_dir: str | Path, *, use_jsonl: bool = False) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.logs_dir = self.root / "logs"
        self.use_jsonl = use_jsonl
        if use_jsonl:
            self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _json_path(self, conversation_id: str) -> Path:
        return self.root / f"{_file_stem(conversation_id)}.json"

    def _jsonl_path(self, conversation_id: str) -> Path:
        return self.logs_dir / f"{_file_stem(conversation_id)}.jsonl"

    def load(self, conversation_id: str) -> List[Dict[str, Any]]:
        path = self._json_path(conversation_id)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("expected a list of messages")
            for record in data:
                if not isinstance(record, dict) or not all(k in record for k in _REQUIRED_KEYS):
                    raise ValueError(f"malformed message record: {record!r:.80}")
            return data
        except (ValueError, UnicodeDecodeError) as e:
            # Corruption fallback: keep a backup and start fresh.
            bad = path.with_suffix(".corrupt.json")
            log.error("Corrupt conversation file %s (%s); moved to %s", path, e, bad)
            os.replace(path, bad)
            return []

    def store(self, conversation_id: str, records: List[Dict[str, Any]]) -> None:
        _atomic_write_text(self._json_path(conversation_id), json.dumps(records, ensure_ascii=False, indent=2))
        if self.use_jsonl and records:
            self._append_jsonl(conversation_id, records[-1])

    def _append_jsonl(self, conversation_id: str, record: Dict[str, Any]) -> None:
        try:
            with self._jsonl_path(conversation_id).open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            # Non-fatal: the JSON log above is the durable copy.
            log.warning("JSONL audit append failed for %s: %s", conversation_id, e)


@dataclass
class RetentionPolicy:
    """How many messages a conversation keeps; oldest are evicted first."""
    max_messages: int = DEFAULT_MAX_MESSAGES


# -----------------------------
# ConversationLogStore
# -----------------------------
class ConversationLogStore:
    """Append-only message logs keyed by conversation id.

    Appends to the same conversation are serialized by a per-key lock; keys
    do not contend with each other. :meth:`append` returns only after the
    backend has written the new log, and wraps every backend error in
    :class:`~dm_server.errors.PersistenceFailure`.
    """

    def __init__(self, backend: LogBackend, *, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self.backend = backend
        self.policy = RetentionPolicy(max_messages=max_messages)
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def _locked(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(conversation_id, threading.Lock())
            self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[conversation_id] -= 1
                if not self._users[conversation_id]:
                    del self._users[conversation_id]
                    del self._locks[conversation_id]

    # --------- core API ----------
    def append(self, conversation_id: str, message: Message) -> Message:
        """Persist ``message`` and evict beyond the retention cap."""
        with self._locked(conversation_id):
            try:
                records = self.backend.load(conversation_id)
                records.append(message.to_dict())
                overflow = len(records) - self.policy.max_messages
                if overflow > 0:
                    del records[:overflow]
                self.backend.store(conversation_id, records)
            except Exception as e:
                log.exception("Append to %s failed", conversation_id)
                raise PersistenceFailure(f"Could not store message: {e}") from e
        return message

    def read(self, conversation_id: str) -> List[Message]:
        """Full current log, oldest first; empty if the conversation never started."""
        with self._locked(conversation_id):
            try:
                return [Message.from_dict(r) for r in self.backend.load(conversation_id)]
            except Exception as e:
                log.exception("Read of %s failed", conversation_id)
                raise PersistenceFailure(f"Could not read conversation: {e}") from e


def create_store(cfg: Dict[str, Any]) -> ConversationLogStore:
    st_cfg = cfg.get("storage", {})
    backend_name = str(st_cfg.get("backend", "disk")).lower()
    if backend_name == "memory":
        backend: LogBackend = MemoryBackend()
    elif backend_name == "disk":
        backend = DiskBackend(
            st_cfg.get("data_dir") or "data/conversations",
            use_jsonl=bool(st_cfg.get("use_jsonl", False)),
        )
    else:
        raise ValueError(f"Unknown storage backend: {backend_name!r}")
    return ConversationLogStore(backend, max_messages=int(st_cfg.get("max_messages", DEFAULT_MAX_MESSAGES)))
