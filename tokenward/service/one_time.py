from __future__ import annotations

import secrets
from typing import Callable, Dict, Optional

from tokenward.logging import get_logger
from tokenward.service.errors import TokenAlreadyUsed, TokenExpired, TokenNotFound
from tokenward.storage.common import AuthStore, hash_secret, normalize_email
from tokenward.storage.models import Account, OneTimeToken, TokenKind, utcnow

logger = get_logger(__name__)


class OneTimeTokenManager:
    """Single-use secrets for email verification and password reset.

    Only the SHA-256 of a secret is stored, so a leaked table cannot be
    replayed. Consumption is a conditional "mark used if still unused and
    unexpired"; when two requests race on one secret exactly one wins.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl_minutes: Dict[TokenKind, int],
        clock: Callable = utcnow,
    ) -> None:
        self.store = store
        self.ttl_minutes = dict(ttl_minutes)
        self._clock = clock

    def issue(
        self, account_id: str, kind: TokenKind, ttl_minutes: Optional[int] = None
    ) -> str:
        raw = secrets.token_urlsafe(32)
        ttl = self.ttl_minutes[kind] if ttl_minutes is None else ttl_minutes
        self.store.create_one_time_token(
            OneTimeToken.new(account_id, kind, hash_secret(raw), ttl, now=self._clock())
        )
        logger.info("one_time_token_issued", account_id=account_id, token_kind=kind.value)
        return raw

    def consume(
        self,
        raw_secret: str,
        kind: TokenKind,
        expected_email: Optional[str] = None,
    ) -> Account:
        if not raw_secret:
            raise TokenNotFound()
        record = self.store.get_one_time_token_by_hash(hash_secret(raw_secret), kind)
        if record is None:
            raise TokenNotFound()
        account = self.store.get_account(record.account_id)
        if account is None:
            raise TokenNotFound()
        if expected_email is not None and normalize_email(expected_email) != account.email:
            # A valid secret paired with someone else's address tells the caller nothing
            logger.warning(
                "one_time_token_email_mismatch",
                account_id=account.id,
                token_kind=kind.value,
            )
            raise TokenNotFound()
        now = self._clock()
        if record.used:
            raise TokenAlreadyUsed()
        if record.is_expired(now):
            raise TokenExpired()
        if self.store.mark_token_used_if_valid(record.id, now) == 0:
            self._raise_lost_race(record)
        logger.info("one_time_token_consumed", account_id=account.id, token_kind=kind.value)
        return account

    def _raise_lost_race(self, record: OneTimeToken) -> None:
        latest = self.store.get_one_time_token_by_hash(record.token_hash, record.kind)
        if latest is None or latest.used:
            raise TokenAlreadyUsed()
        raise TokenExpired()

    def invalidate_for_account(
        self, account_id: str, kind: Optional[TokenKind] = None
    ) -> int:
        count = self.store.invalidate_account_tokens(account_id, self._clock(), kind)
        if count:
            logger.info(
                "one_time_tokens_invalidated",
                account_id=account_id,
                token_kind=kind.value if kind else "all",
                count=count,
            )
        return count
