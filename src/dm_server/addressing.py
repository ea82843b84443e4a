"""Deterministic addressing of the log shared by two identities."""
from __future__ import annotations

from typing import Tuple
from urllib.parse import quote, unquote

from .errors import InvalidIdentity

SEPARATOR = ":"


def _check(identity_id: object) -> str:
    if not isinstance(identity_id, str) or not identity_id.strip():
        raise InvalidIdentity(f"Invalid identity id: {identity_id!r}")
    return identity_id


def conversation_id(a: str, b: str) -> str:
    """Return the conversation id for the unordered pair ``{a, b}``.

    The pair is sorted and each id percent-encoded before joining, so the
    separator can never occur inside a component:

        conversation_id("bob", "alice") == "alice:bob"
        conversation_id("a:b", "c") != conversation_id("a", "b:c")
    """
    lo, hi = sorted((_check(a), _check(b)))
    return f"{quote(lo, safe='')}{SEPARATOR}{quote(hi, safe='')}"


def participants(conv_id: str) -> Tuple[str, str]:
    """Inverse of :func:`conversation_id`."""
    left, sep, right = conv_id.partition(SEPARATOR)
    if not sep or not left or not right:
        raise ValueError(f"Not a conversation id: {conv_id!r}")
    return unquote(left), unquote(right)
