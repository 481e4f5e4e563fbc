"""
TRASHURE Ledger: local identity provider

Stand-in for the hosted identity service the mobile client signs in with.
It keeps the same contract (sign_up / sign_in / sign_out /
on_auth_state_change) and hands out a stable user id the ledger keys
accounts on.

  - credentials : `identities/<email>` in the ledger store, passlib hash
  - sessions    : HS256 JWT bearer tokens (python-jose) with a `jti`
  - sign-out    : `revoked_tokens/<jti>` in the ledger store
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from engine.errors import IdentityError
from engine.store import LedgerStore
from engine.subscriptions import Change, SubscriptionHub

logger = logging.getLogger("trashure.identity")

DEFAULT_JWT_SECRET  = "trashure-dev-secret-change-in-prod"
JWT_SECRET          = os.getenv("TRASHURE_JWT_SECRET") or DEFAULT_JWT_SECRET
JWT_ALG             = "HS256"
TOKEN_TTL_MINUTES   = int(os.getenv("TRASHURE_TOKEN_TTL_MINUTES", str(60 * 24 * 14)))  # 14 days
MIN_PASSWORD_LENGTH = 6

IDENTITIES     = "identities"
REVOKED_TOKENS = "revoked_tokens"
_AUTH_PATH     = "auth"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


@dataclass(frozen=True)
class AuthUser:
    user_id:      str
    display_name: str
    email:        str

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "displayName": self.display_name, "email": self.email}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthUser":
        return cls(data["userId"], data.get("displayName", ""), data.get("email", ""))


@dataclass(frozen=True)
class AuthSession:
    user:  AuthUser
    token: str


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class LocalIdentityProvider:

    def __init__(
        self,
        store:             LedgerStore,
        secret:            str = JWT_SECRET,
        token_ttl_minutes: int = TOKEN_TTL_MINUTES,
    ):
        self._store      = store
        self._secret     = secret
        self._token_ttl  = timedelta(minutes=token_ttl_minutes)
        self._auth_hub   = SubscriptionHub()

    # ── Contract ──────────────────────────────────────────────────────────────
    def sign_up(self, email: str, password: str, display_name: Optional[str] = None) -> AuthSession:
        email = _normalize_email(email)
        if "@" not in email:
            raise IdentityError("Invalid email address")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise IdentityError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")

        user_id = uuid.uuid4().hex
        doc, created = self._store.put_if_absent(IDENTITIES, email, {
            "userId":       user_id,
            "email":        email,
            "displayName":  (display_name or "").strip(),
            "passwordHash": pwd_context.hash(password),
            "createdAt":    datetime.now(timezone.utc).isoformat(),
        })
        if not created:
            raise IdentityError("Email already registered", conflict=True)

        user = self._user_from_doc(doc)
        logger.info(f"[AUTH] Signed up {user.user_id} <{email}>")
        return self._open_session(user)

    def sign_in(self, email: str, password: str) -> AuthSession:
        doc = self._store.get(IDENTITIES, _normalize_email(email))
        if not doc or not pwd_context.verify(password or "", doc.get("passwordHash", "")):
            raise IdentityError("Invalid email or password")
        user = self._user_from_doc(doc)
        logger.info(f"[AUTH] Signed in {user.user_id}")
        return self._open_session(user)

    def sign_out(self, token: str) -> None:
        claims = self._decode(token)
        self._store.put_if_absent(REVOKED_TOKENS, claims["jti"], {
            "userId": claims.get("sub"),
            "exp":    claims.get("exp"),
        })
        logger.info(f"[AUTH] Signed out {claims.get('sub')}")
        self._auth_hub.dispatch(Change(path=_AUTH_PATH, doc=None))

    def authenticate(self, token: Optional[str]) -> AuthUser:
        if not token:
            raise IdentityError("Missing bearer token")
        claims = self._decode(token)
        if self._store.get(REVOKED_TOKENS, claims["jti"]) is not None:
            raise IdentityError("Session has been signed out")
        doc = self._store.get(IDENTITIES, claims.get("email", ""))
        if not doc or doc.get("userId") != claims.get("sub"):
            raise IdentityError("Unknown user")
        return self._user_from_doc(doc)

    def on_auth_state_change(self, callback: Callable[[Optional[AuthUser]], None]) -> Callable[[], None]:
        def _listener(change: Change) -> None:
            callback(AuthUser.from_dict(change.doc) if change.doc else None)

        return self._auth_hub.add(_AUTH_PATH, _listener)

    # ── Internals ─────────────────────────────────────────────────────────────
    @staticmethod
    def _user_from_doc(doc: Dict[str, Any]) -> AuthUser:
        return AuthUser(
            user_id      = doc["userId"],
            display_name = doc.get("displayName", ""),
            email        = doc.get("email", ""),
        )

    def _open_session(self, user: AuthUser) -> AuthSession:
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "sub":   user.user_id,
                "email": user.email,
                "jti":   uuid.uuid4().hex,
                "iat":   now,
                "exp":   now + self._token_ttl,
            },
            self._secret,
            algorithm=JWT_ALG,
        )
        self._auth_hub.dispatch(Change(path=_AUTH_PATH, doc=user.to_dict()))
        return AuthSession(user=user, token=token)

    def _decode(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[JWT_ALG])
        except JWTError as e:
            raise IdentityError(f"Invalid or expired token: {e}") from e
        if not claims.get("jti") or not claims.get("sub"):
            raise IdentityError("Malformed token")
        return claims
