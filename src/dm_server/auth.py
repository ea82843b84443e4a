"""Token verification collaborators.

The router only needs ``verify(token) -> identity id``; which implementation
backs it is a deployment choice (``auth.mode`` in the config).
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from jose import JWTError, jwt

from .directory import IdentityDirectory
from .errors import InvalidToken

log = logging.getLogger(__name__)


class TokenVerifier(Protocol):
    def verify(self, token: str) -> str: ...


def _clean(token: Any) -> str:
    if not isinstance(token, str) or not token.strip():
        raise InvalidToken("Token is missing.")
    return token.strip()


class DirectoryTokenVerifier:
    """Development mode: the token is the identity id itself."""

    def __init__(self, directory: IdentityDirectory) -> None:
        self.directory = directory

    def verify(self, token: str) -> str:
        token = _clean(token)
        if token not in self.directory:
            raise InvalidToken("Unknown identity.")
        return token


class StaticTokenVerifier:
    """Fixed ``token -> identity id`` table, e.g. issued out of band."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = {str(k): str(v) for k, v in (tokens or {}).items()}

    def verify(self, token: str) -> str:
        identity_id = self._tokens.get(_clean(token))
        if identity_id is None:
            raise InvalidToken()
        return identity_id


class JWTTokenVerifier:
    """Signed JWTs carrying the identity id in ``sub``."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("auth.jwt_secret is required for jwt mode")
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, token: str) -> str:
        try:
            payload = jwt.decode(_clean(token), self.secret, algorithms=[self.algorithm])
        except JWTError as err:
            raise InvalidToken("Could not validate credentials") from err
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidToken("Token has no subject")
        return subject


def create_verifier(cfg: Dict[str, Any], directory: IdentityDirectory) -> TokenVerifier:
    auth_cfg = cfg.get("auth", {})
    mode = str(auth_cfg.get("mode", "directory")).lower()
    if mode == "directory":
        return DirectoryTokenVerifier(directory)
    if mode == "static":
        return StaticTokenVerifier(auth_cfg.get("tokens") or {})
    if mode == "jwt":
        return JWTTokenVerifier(auth_cfg.get("jwt_secret") or "", auth_cfg.get("jwt_algorithm") or "HS256")
    raise ValueError(f"Unknown auth mode: {mode!r}")


def issue_token(identity_id: str, secret: str, algorithm: str = "HS256", claims: Optional[Dict[str, Any]] = None) -> str:
    """Mint a token :class:`JWTTokenVerifier` accepts (tests and local tooling)."""
    payload: Dict[str, Any] = dict(claims or {})
    payload["sub"] = identity_id
    return jwt.encode(payload, secret, algorithm=algorithm)
