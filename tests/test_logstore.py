from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from dm_server.errors import PersistenceFailure
from dm_server.logstore import ConversationLogStore, DiskBackend, MemoryBackend, create_store
from dm_server.models import Message


def _msg(i: int, sender: str = "alice", recipient: str = "bob") -> Message:
    return Message(sender_id=sender, recipient_id=recipient, text=f"m{i}")


def test_read_missing_conversation_is_empty(tmp_path: Path):
    store = ConversationLogStore(DiskBackend(tmp_path))
    assert store.read("alice:bob") == []


def test_append_then_read_ends_with_message(tmp_path: Path):
    store = ConversationLogStore(DiskBackend(tmp_path))
    first = store.append("alice:bob", _msg(1))
    second = store.append("alice:bob", _msg(2))
    history = store.read("alice:bob")
    assert history == [first, second]
    assert history[-1].text == "m2"


def test_log_survives_a_new_store_instance(tmp_path: Path):
    ConversationLogStore(DiskBackend(tmp_path)).append("alice:bob", _msg(1))
    reopened = ConversationLogStore(DiskBackend(tmp_path))
    assert [m.text for m in reopened.read("alice:bob")] == ["m1"]


def test_retention_evicts_oldest_first():
    store = ConversationLogStore(MemoryBackend(), max_messages=3)
    for i in range(1, 6):
        store.append("alice:bob", _msg(i))
        assert len(store.read("alice:bob")) <= 3
    assert [m.text for m in store.read("alice:bob")] == ["m3", "m4", "m5"]


def test_1001_messages_keep_the_newest_1000(tmp_path: Path):
    store = ConversationLogStore(DiskBackend(tmp_path), max_messages=1000)
    backend = store.backend
    # Seed 1000 records in one write, then go through append for #1001.
    backend.store("alice:bob", [_msg(i).to_dict() for i in range(1, 1001)])
    store.append("alice:bob", _msg(1001))
    history = store.read("alice:bob")
    assert len(history) == 1000
    assert history[0].text == "m2"
    assert history[-1].text == "m1001"
    assert "m1" not in {m.text for m in history}


def test_conversations_are_isolated(tmp_path: Path):
    store = ConversationLogStore(DiskBackend(tmp_path))
    store.append("alice:bob", _msg(1))
    store.append("alice:carol", _msg(2, recipient="carol"))
    assert [m.text for m in store.read("alice:bob")] == ["m1"]
    assert [m.text for m in store.read("alice:carol")] == ["m2"]


def test_concurrent_appends_are_all_kept():
    store = ConversationLogStore(MemoryBackend(), max_messages=1000)

    def worker(offset: int) -> None:
        for i in range(50):
            store.append("alice:bob", _msg(offset + i))

    threads = [threading.Thread(target=worker, args=(n * 100,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    history = store.read("alice:bob")
    assert len(history) == 200
    assert len({m.id for m in history}) == 200
    # Each writer's messages keep their relative order.
    for n in range(4):
        mine = [int(m.text[1:]) for m in history if n * 100 <= int(m.text[1:]) < n * 100 + 100]
        assert mine == sorted(mine)


class FailingBackend(MemoryBackend):
    def store(self, conversation_id, records):
        raise OSError("disk full")


def test_backend_failure_surfaces_as_persistence_failure():
    store = ConversationLogStore(FailingBackend())
    with pytest.raises(PersistenceFailure):
        store.append("alice:bob", _msg(1))
    assert store.read("alice:bob") == []


def test_corrupt_file_is_moved_aside(tmp_path: Path):
    backend = DiskBackend(tmp_path)
    store = ConversationLogStore(backend)
    store.append("alice:bob", _msg(1))
    path = backend._json_path("alice:bob")
    path.write_text("{not json", encoding="utf-8")

    assert store.read("alice:bob") == []
    assert path.with_suffix(".corrupt.json").exists()


def test_malformed_record_is_moved_aside(tmp_path: Path):
    backend = DiskBackend(tmp_path)
    store = ConversationLogStore(backend)
    path = backend._json_path("alice:bob")
    path.write_text(json.dumps([{"sender_id": "alice", "recipient_id": "bob", "text": "no id"}]), encoding="utf-8")

    store.append("alice:bob", _msg(1))
    assert [m.text for m in store.read("alice:bob")] == [_msg(1).text]
    assert path.with_suffix(".corrupt.json").exists()


def test_jsonl_audit_trail(tmp_path: Path):
    backend = DiskBackend(tmp_path, use_jsonl=True)
    store = ConversationLogStore(backend, max_messages=1)
    store.append("alice:bob", _msg(1))
    store.append("alice:bob", _msg(2))
    lines = backend._jsonl_path("alice:bob").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert len(store.read("alice:bob")) == 1


def test_attachment_round_trips(tmp_path: Path):
    store = ConversationLogStore(DiskBackend(tmp_path))
    att = {"name": "cat.png", "url": "blob://1", "content_type": "image/png", "size": 12}
    store.append("alice:bob", Message(sender_id="alice", recipient_id="bob", text="look", attachment=att))
    assert store.read("alice:bob")[0].attachment == att


def test_create_store_from_config(tmp_path: Path):
    store = create_store({"storage": {"backend": "disk", "data_dir": str(tmp_path / "logs"), "max_messages": 5}})
    assert isinstance(store.backend, DiskBackend)
    assert store.policy.max_messages == 5
    with pytest.raises(ValueError):
        create_store({"storage": {"backend": "s3"}})
