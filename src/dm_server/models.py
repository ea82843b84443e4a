"""Plain data records passed between the directory, log store and router."""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def new_message_id() -> str:
    # Time-ordered prefix; the random suffix keeps ids distinct within one millisecond.
    return f"{time.time_ns() // 1_000_000}-{secrets.token_hex(6)}"


@dataclass(frozen=True)
class Identity:
    """A registered user."""
    id: str
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "display_name": self.display_name}


@dataclass(frozen=True)
class Message:
    """A single direct message. Immutable once appended to a conversation log."""
    sender_id: str
    recipient_id: str
    text: str
    id: str = field(default_factory=new_message_id)
    timestamp: str = field(default_factory=utc_iso)
    attachment: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "text": self.text,
            "timestamp": self.timestamp,
        }
        if self.attachment is not None:
            d["attachment"] = dict(self.attachment)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            sender_id=str(data["sender_id"]),
            recipient_id=str(data["recipient_id"]),
            text=str(data.get("text", "")),
            timestamp=str(data.get("timestamp", "")),
            attachment=data.get("attachment"),
        )
