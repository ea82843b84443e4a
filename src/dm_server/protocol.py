"""Inbound WebSocket frames, validated with pydantic."""
from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import BadRequest


class Attachment(BaseModel):
    """Descriptor of a blob stored elsewhere; only the reference travels."""
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1)
    content_type: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)


class AuthenticateFrame(BaseModel):
    type: Literal["authenticate"]
    token: str


class JoinFrame(BaseModel):
    type: Literal["join"]
    peer_id: str


class LeaveFrame(BaseModel):
    type: Literal["leave"]


class SendFrame(BaseModel):
    type: Literal["send"]
    recipient_id: str
    text: str = ""
    attachment: Optional[Attachment] = None


class TypingFrame(BaseModel):
    type: Literal["typing"]
    recipient_id: str
    is_typing: bool = True


class PingFrame(BaseModel):
    type: Literal["ping"]


Frame = Annotated[
    Union[AuthenticateFrame, JoinFrame, LeaveFrame, SendFrame, TypingFrame, PingFrame],
    Field(discriminator="type"),
]

_frame_adapter: TypeAdapter[Any] = TypeAdapter(Frame)


def parse_frame(data: Any) -> Any:
    """Validate a decoded JSON object into one of the frame models."""
    if not isinstance(data, dict):
        raise BadRequest("Frame must be a JSON object.")
    try:
        return _frame_adapter.validate_python(data)
    except ValidationError as e:
        first: Dict[str, Any] = e.errors()[0] if e.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "frame"
        raise BadRequest(f"Invalid {where}: {first.get('msg', 'malformed frame')}") from e
