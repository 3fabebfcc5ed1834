from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

import jwt

from . import crypto
from .errors import Unauthorized
from .store import UserRecord

log = logging.getLogger("tasksync.identity")

UserLookupFn = Callable[[str], Awaitable[Optional[UserRecord]]]

DEFAULT_TOKEN_TTL_S = 7 * 24 * 3600
SECRET_ENV = "TASKSYNC_JWT_SECRET"


@dataclass(frozen=True, slots=True)
class Identity:
    user_id: str
    name: str = ""
    email: str = ""


class TokenVerifier:
    """Checks signature and expiry of a bearer JWT and returns the user id claim."""

    def __init__(
        self,
        *,
        algorithm: str = "HS256",
        secret: Optional[str] = None,
        public_key_pem: Optional[bytes] = None,
        leeway_s: float = 0,
    ) -> None:
        if algorithm == "HS256":
            if not secret:
                raise ValueError("HS256 requires a shared secret")
            self._key: Any = secret
        elif algorithm == "RS256":
            if not public_key_pem or not crypto.accept_pubkey(public_key_pem):
                raise ValueError("RS256 requires an RSA public key")
            self._key = crypto.load_public_key(public_key_pem)
        else:
            raise ValueError(f"unsupported algorithm {algorithm!r}")
        self.algorithm = algorithm
        self.leeway_s = leeway_s

    @classmethod
    def from_config(cls, auth: Mapping[str, Any]) -> "TokenVerifier":
        algorithm = auth.get("algorithm", "HS256")
        public_key_pem = None
        if algorithm == "RS256":
            public_key_pem = crypto.load_verifying_key(auth["public_key_file"])
        return cls(
            algorithm=algorithm,
            secret=auth.get("secret") or os.getenv(SECRET_ENV),
            public_key_pem=public_key_pem,
            leeway_s=float(auth.get("leeway_secs", 0)),
        )

    def verify(self, token: str) -> str:
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[self.algorithm],
                leeway=self.leeway_s,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("token expired")
        except jwt.PyJWTError as exc:
            raise Unauthorized(f"invalid token: {exc}")
        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            raise Unauthorized("token has no user claim")
        return str(user_id)


class IdentityGate:
    """Resolve a handshake credential to an active user, or raise Unauthorized.

    Every failure mode collapses into the one exception so the transport can
    refuse the connection before any room join happens.
    """

    def __init__(self, verifier: TokenVerifier, lookup_user: UserLookupFn) -> None:
        self.verifier = verifier
        self.lookup_user = lookup_user

    async def authenticate(self, token: Optional[str]) -> Identity:
        if not token:
            raise Unauthorized("no token provided")
        user_id = self.verifier.verify(token)
        try:
            user = await self.lookup_user(user_id)
        except Exception:
            log.exception("User lookup failed for %s", user_id)
            raise Unauthorized("user lookup failed")
        if user is None:
            raise Unauthorized("unknown user")
        if not user.is_active:
            raise Unauthorized("user deactivated")
        return Identity(user_id=user.user_id, name=user.name, email=user.email)


def issue_token(
    user_id: str,
    *,
    algorithm: str = "HS256",
    secret: Optional[str] = None,
    private_key_pem: Optional[bytes] = None,
    ttl_s: int = DEFAULT_TOKEN_TTL_S,
    now: Optional[float] = None,
) -> str:
    """Mint a credential the gate accepts. The HTTP auth layer does this in production."""

    issued = int(time.time() if now is None else now)
    claims: Dict[str, Any] = {"userId": user_id, "iat": issued, "exp": issued + ttl_s}
    if algorithm == "RS256":
        if not private_key_pem:
            raise ValueError("RS256 requires a private key")
        key: Any = crypto.load_private_key(private_key_pem)
    else:
        key = secret or os.getenv(SECRET_ENV)
        if not key:
            raise ValueError("HS256 requires a shared secret")
    return jwt.encode(claims, key, algorithm=algorithm)


def extract_token(path: str, headers: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Handshake auth parameter (?token=...) first, Authorization: Bearer as fallback."""

    query = parse_qs(urlsplit(path).query)
    values = query.get("token")
    if values and values[0]:
        return values[0]
    if headers is not None:
        auth = headers.get("Authorization") or ""
        scheme, _, value = auth.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


__all__ = [
    "Identity",
    "TokenVerifier",
    "IdentityGate",
    "issue_token",
    "extract_token",
    "SECRET_ENV",
]
