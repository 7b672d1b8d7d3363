from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tokenward.logging import email_fingerprint, get_logger
from tokenward.service.errors import (
    AccountDeactivated,
    EmailNotVerified,
    InvalidCredentials,
    ReauthenticationRequired,
    SessionError,
)
from tokenward.service.passwords import CredentialHasher
from tokenward.service.refresh_store import RefreshTokenStore
from tokenward.service.signer import AccessClaims, AccessTokenSigner
from tokenward.storage.common import AuthStore, normalize_email
from tokenward.storage.models import Account, Role, utcnow

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    account_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class Principal:
    """The caller behind a verified access token."""

    account_id: str
    role: Role
    email: str
    token_expires_at: Optional[datetime] = None


class SessionService:
    """Login, refresh and logout over the refresh store and the signer."""

    def __init__(
        self,
        store: AuthStore,
        refresh_store: RefreshTokenStore,
        signer: AccessTokenSigner,
        hasher: CredentialHasher,
    ) -> None:
        self.store = store
        self.refresh_store = refresh_store
        self.signer = signer
        self.hasher = hasher

    def _mint(self, account: Account) -> TokenPair:
        try:
            session = self.refresh_store.create(
                account.id, generation=account.session_generation
            )
        except SessionError:
            # Credentials were checked against a record that has since been revoked
            logger.info("login_rejected", reason="revoked_during_login", account_id=account.id)
            raise ReauthenticationRequired()
        access_token, access_exp = self.signer.issue_with_expiry(
            account.id, account.role, account.email
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=session.id,
            account_id=account.id,
            access_expires_at=access_exp,
            refresh_expires_at=session.expires_at,
        )

    async def login(self, email: str, password: str) -> TokenPair:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            # Same argon2 cost as a real check so timing does not reveal the miss
            self.hasher.burn(password)
            logger.info("login_failed", email_hash=email_fingerprint(email))
            raise InvalidCredentials()
        if not self.hasher.verify(account.password_hash, password, algo=account.password_algo):
            logger.info("login_failed", account_id=account.id)
            raise InvalidCredentials()
        # Only a caller holding the right password learns the account state
        if account.is_deleted:
            raise AccountDeactivated()
        if not account.email_verified:
            raise EmailNotVerified()

        pair = self._mint(account)
        updates = {"last_login_at": utcnow()}
        if self.hasher.needs_rehash(account.password_hash):
            updates["password_hash"], updates["password_algo"] = self.hasher.hash(password)
        self.store.update_account(account.id, **updates)
        logger.info("login_succeeded", account_id=account.id)
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            session = self.refresh_store.rotate(refresh_token)
        except SessionError as exc:
            logger.info("refresh_rejected", reason=exc.error_code)
            raise ReauthenticationRequired()

        # Claims come from the account as it is now, not as it was at login
        account = self.store.get_account(session.account_id)
        if account is None or not account.can_authenticate:
            self.refresh_store.revoke(session.id)
            logger.warning("refresh_rejected", reason="account_ineligible", account_id=session.account_id)
            raise ReauthenticationRequired()

        access_token, access_exp = self.signer.issue_with_expiry(
            account.id, account.role, account.email
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=session.id,
            account_id=account.id,
            access_expires_at=access_exp,
            refresh_expires_at=session.expires_at,
        )

    async def logout(self, refresh_token: str) -> None:
        if self.refresh_store.revoke(refresh_token):
            logger.info("logout_session_revoked")

    def authenticate(self, access_token: str) -> Principal:
        claims: AccessClaims = self.signer.verify_access_token(access_token)
        return Principal(
            account_id=claims.account_id,
            role=claims.role,
            email=claims.email,
            token_expires_at=claims.expires_at,
        )
