from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tokenward.logging import get_logger
from tokenward.service.one_time import OneTimeTokenManager
from tokenward.service.refresh_store import RefreshTokenStore
from tokenward.storage.models import TokenKind

logger = get_logger(__name__)


class RevocationReason(str, Enum):
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET = "password_reset"
    ROLE_CHANGED = "role_changed"
    ACCOUNT_DELETED = "account_deleted"
    EMAIL_CHANGED = "email_changed"


# Which outstanding one-time tokens die alongside the sessions. ``None`` means
# every kind; a missing entry means none.
_TOKEN_SCOPE: dict[RevocationReason, Optional[TokenKind]] = {
    RevocationReason.PASSWORD_CHANGED: TokenKind.RESET_PASSWORD,
    RevocationReason.PASSWORD_RESET: TokenKind.RESET_PASSWORD,
    RevocationReason.ACCOUNT_DELETED: None,
}


@dataclass(frozen=True)
class CascadeResult:
    reason: RevocationReason
    sessions_revoked: int
    tokens_invalidated: int


class RevocationCascade:
    """Invalidates every refresh session of an account after a trust change.

    Failures are not caught here: the operation that triggered the cascade
    must fail too, otherwise the caller would be told the change took effect
    while old sessions are still usable. Access tokens already handed out
    stay valid until they expire.
    """

    def __init__(
        self, refresh_store: RefreshTokenStore, one_time: OneTimeTokenManager
    ) -> None:
        self.refresh_store = refresh_store
        self.one_time = one_time

    def cascade(self, account_id: str, reason: RevocationReason | str) -> CascadeResult:
        reason = RevocationReason(reason)
        sessions = self.refresh_store.revoke_all_for_account(account_id)
        tokens = 0
        if reason in _TOKEN_SCOPE:
            tokens = self.one_time.invalidate_for_account(account_id, _TOKEN_SCOPE[reason])
        logger.info(
            "revocation_cascade_applied",
            account_id=account_id,
            reason=reason.value,
            sessions_revoked=sessions,
            tokens_invalidated=tokens,
        )
        return CascadeResult(
            reason=reason, sessions_revoked=sessions, tokens_invalidated=tokens
        )
