from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles."""

    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class TokenKind(str, Enum):
    """Purposes a one-time token can be issued for."""

    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


@dataclass
class ProfileUpdate:
    field: str
    old_value: Optional[str]
    new_value: Optional[str]
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    password_algo: str = "argon2id"
    role: Role = Role.VIEWER
    email_verified: bool = False
    is_deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    profile_updates: List[ProfileUpdate] = field(default_factory=list)
    # Bumped by every account-wide revocation; sessions minted under an older
    # value are refused
    session_generation: int = 0

    @property
    def can_authenticate(self) -> bool:
        return self.email_verified and not self.is_deleted


@dataclass
class RefreshSession:
    """Server-side record backing one opaque refresh token.

    The id doubles as the refresh token handed to the client. Records are
    never deleted; revocation flips ``revoked`` and stamps ``revoked_at``.
    """

    id: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    rotated_to: Optional[str] = None
    generation: int = 0

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl_minutes: int,
        *,
        generation: int = 0,
        now: Optional[datetime] = None,
    ) -> "RefreshSession":
        now = now or utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            account_id=account_id,
            generation=generation,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass
class OneTimeToken:
    id: str
    token_hash: str
    account_id: str
    kind: TokenKind
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        kind: TokenKind,
        token_hash: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
    ) -> "OneTimeToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            account_id=account_id,
            kind=kind,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at
