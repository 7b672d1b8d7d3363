from __future__ import annotations

from typing import Callable, Optional

from tokenward.logging import get_logger
from tokenward.service.errors import SessionExpired, SessionNotFound, SessionRevoked
from tokenward.storage.common import AuthStore
from tokenward.storage.models import RefreshSession, utcnow

logger = get_logger(__name__)


class RefreshTokenStore:
    """Server-side refresh sessions with single-use rotation.

    A refresh token is the opaque id of a ``RefreshSession``. Rotation
    consumes the presented session through a conditional revoke and only
    then creates its successor, so a rotation that dies halfway leaves the
    old token dead rather than leaving two live ones. The successor carries
    the parent's generation, so it is refused if the account was revoked
    after the parent was opened.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl_minutes: int,
        clock: Callable = utcnow,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    def create(
        self,
        account_id: str,
        ttl_minutes: Optional[int] = None,
        *,
        generation: Optional[int] = None,
    ) -> RefreshSession:
        """Open a session for ``account_id``.

        ``generation`` is the account's session generation as the caller saw
        it; a revocation since then refuses the session with ``SessionRevoked``.
        """
        if ttl_minutes is None:
            ttl_minutes = self.ttl_minutes
        if generation is None:
            account = self.store.get_account(account_id)
            generation = account.session_generation if account else 0
        session = RefreshSession.new(
            account_id, ttl_minutes, generation=generation, now=self._clock()
        )
        created = self.store.create_session(session)
        if created is None:
            logger.warning("refresh_session_refused", account_id=account_id)
            raise SessionRevoked()
        return created

    def get(self, session_id: str) -> Optional[RefreshSession]:
        if not session_id:
            return None
        return self.store.get_session(session_id)

    def _classify(self, session_id: str) -> RefreshSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound()
        if session.revoked:
            raise SessionRevoked()
        if session.is_expired(self._clock()):
            raise SessionExpired()
        return session

    def rotate(self, old_session_id: str) -> RefreshSession:
        current = self._classify(old_session_id)
        now = self._clock()
        # The successor id is reserved up front so the revoked record can point at it
        successor = RefreshSession.new(
            current.account_id, self.ttl_minutes, generation=current.generation, now=now
        )
        claimed = self.store.revoke_session_if_active(
            old_session_id, now, rotated_to=successor.id
        )
        if claimed == 0:
            # Another request consumed or revoked it between the read and the update
            logger.warning("refresh_rotation_lost_race", account_id=current.account_id)
            raise SessionRevoked()
        created = self.store.create_session(successor)
        if created is None:
            # An account-wide revocation landed between the revoke and the insert
            logger.warning("refresh_rotation_revoked", account_id=current.account_id)
            raise SessionRevoked()
        logger.info("refresh_session_rotated", account_id=current.account_id)
        return created

    def revoke(self, session_id: str) -> bool:
        if not session_id:
            return False
        return self.store.revoke_session(session_id, self._clock()) > 0

    def revoke_all_for_account(self, account_id: str) -> int:
        count = self.store.revoke_account_sessions(account_id, self._clock())
        logger.info("refresh_sessions_revoked", account_id=account_id, count=count)
        return count
