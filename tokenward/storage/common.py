"""Storage contract and helpers shared between memory and postgres backends.

Every exactly-once mutation in the store is a conditional update that
reports how many records it touched. A zero count means another request got
there first; callers turn that into a domain error instead of retrying.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import Any, List, Optional, Protocol

from tokenward.storage.models import (
    Account,
    OneTimeToken,
    ProfileUpdate,
    RefreshSession,
    Role,
    TokenKind,
)


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.VIEWER,
        email_verified: bool = False,
        password_algo: str = "argon2id",
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def append_profile_updates(
        self, account_id: str, updates: List[ProfileUpdate], *, keep: int
    ) -> None: ...

    def create_session(self, session: RefreshSession) -> Optional[RefreshSession]:
        """Insert ``session`` unless the account was revoked since its generation.

        Returns None when ``session.generation`` no longer matches the
        account's ``session_generation``.
        """
        ...

    def get_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def revoke_session_if_active(
        self, session_id: str, now: datetime, *, rotated_to: Optional[str] = None
    ) -> int: ...

    def revoke_session(self, session_id: str, now: datetime) -> int: ...

    def revoke_account_sessions(self, account_id: str, now: datetime) -> int:
        """Bump the account's session generation and revoke its live sessions."""
        ...

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def get_one_time_token_by_hash(
        self, token_hash: str, kind: TokenKind
    ) -> Optional[OneTimeToken]: ...

    def mark_token_used_if_valid(self, token_id: str, now: datetime) -> int: ...

    def invalidate_account_tokens(
        self, account_id: str, now: datetime, kind: Optional[TokenKind] = None
    ) -> int: ...


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookups."""
    return (email or "").strip().lower()


def hash_secret(raw: str) -> str:
    """SHA-256 hex digest of a one-time token secret."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def trim_profile_updates(
    updates: List[ProfileUpdate], keep: int
) -> List[ProfileUpdate]:
    """Keep only the most recent ``keep`` audit entries, oldest first."""
    if keep <= 0:
        return []
    return list(updates[-keep:])


def coerce_role(raw: Any) -> Role:
    if isinstance(raw, Role):
        return raw
    return Role(str(raw))


def coerce_token_kind(raw: Any) -> TokenKind:
    if isinstance(raw, TokenKind):
        return raw
    return TokenKind(str(raw))


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())


ACCOUNT_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "name",
        "password_hash",
        "password_algo",
        "role",
        "email_verified",
        "is_deleted",
        "last_login_at",
    }
)
