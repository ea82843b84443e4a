"""Identity directory: registered users and who is reachable."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from .errors import DuplicateIdentity, InvalidIdentity, UnknownRecipient
from .models import Identity
from .presence import PresenceTable

log = logging.getLogger(__name__)


class IdentityDirectory:
    """
    Append-only registry of identities, optionally persisted to YAML.

    Registration is serialized under a lock so two concurrent registrations
    of the same id cannot both succeed. Identities are never removed or
    changed afterwards, which makes plain dict lookups safe without the lock.

    YAML layout (when ``path`` is given):
        identities:
          - {id: alice, display_name: Alice}
          - {id: bob, display_name: Bob}
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        *,
        presence: Optional[PresenceTable] = None,
    ) -> None:
        self.path = Path(path) if path else None
        self.presence = presence
        self._lock = threading.RLock()
        self._identities: Dict[str, Identity] = {}
        if self.path is not None:
            self._load()

    # ---------- public API ----------

    def register(self, identity_id: str, display_name: Optional[str] = None, *, save: bool = True) -> Identity:
        if not isinstance(identity_id, str) or not identity_id.strip():
            raise InvalidIdentity("Identity id cannot be empty.")
        identity_id = identity_id.strip()
        name = (display_name or "").strip() or identity_id
        with self._lock:
            if identity_id in self._identities:
                raise DuplicateIdentity(f"Identity {identity_id!r} already exists.")
            identity = Identity(id=identity_id, display_name=name)
            self._identities[identity_id] = identity
            if save and self.path is not None:
                try:
                    self._save()
                except Exception:
                    del self._identities[identity_id]
                    raise
        log.info("Registered identity %s", identity_id)
        return identity

    def seed(self, entries: Iterable[Dict[str, Any]]) -> int:
        """Register entries that are not present yet; returns how many were added."""
        added = 0
        for item in entries or []:
            ident = str(item.get("id") or "").strip()
            if not ident or ident in self._identities:
                continue
            self.register(ident, item.get("display_name"))
            added += 1
        return added

    def get(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)

    def resolve(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id) if isinstance(identity_id, str) else None
        if identity is None:
            raise UnknownRecipient(f"Unknown identity: {identity_id!r}")
        return identity

    def list_others(self, exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """All identities except ``exclude_id``, with a live online flag."""
        out: List[Dict[str, Any]] = []
        for ident in sorted(list(self._identities.values()), key=lambda i: i.id):
            if ident.id == exclude_id:
                continue
            online = self.presence.is_online(ident.id) if self.presence is not None else False
            out.append({"identity": ident, "is_online": online})
        return out

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._identities

    def __len__(self) -> int:
        return len(self._identities)

    # ---------- persistence ----------

    def _load(self) -> None:
        assert self.path is not None
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise RuntimeError(f"Invalid identity file {self.path}, expected mapping.")
        for item in data.get("identities", []) or []:
            if not isinstance(item, dict):
                continue
            ident = str(item.get("id") or "").strip()
            if not ident:
                continue
            self._identities[ident] = Identity(id=ident, display_name=str(item.get("display_name") or ident))
        log.info("Loaded %d identities from %s", len(self._identities), self.path)

    def _save(self) -> None:
        """Persist current state to YAML (pretty & stable)."""
        assert self.path is not None
        payload = {"identities": [i.to_dict() for i in sorted(self._identities.values(), key=lambda i: i.id)]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp.yaml")
        with tmp.open("w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, allow_unicode=True, sort_keys=False)
        tmp.replace(self.path)
