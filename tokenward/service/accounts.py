from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from tokenward.logging import email_fingerprint, get_logger
from tokenward.service.cascade import RevocationCascade, RevocationReason
from tokenward.service.email import EmailService
from tokenward.service.errors import (
    AccountDeactivated,
    AccountNotFound,
    EmailAlreadyInUse,
    InvalidCredentials,
)
from tokenward.service.one_time import OneTimeTokenManager
from tokenward.service.passwords import CredentialHasher
from tokenward.storage.common import AuthStore, normalize_email
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import Account, ProfileUpdate, Role, TokenKind, utcnow

logger = get_logger(__name__)

_MASKED = "****"


class AccountService:
    """Registration, profile changes and the credential lifecycle flows.

    Every flow that changes who may act as the account (password, role,
    deletion, email) runs the revocation cascade before it returns. Emails
    go out afterwards and are best effort.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        one_time: OneTimeTokenManager,
        cascade: RevocationCascade,
        email: EmailService,
        *,
        audit_log_max_entries: int = 100,
        verify_ttl_minutes: int = 24 * 60,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.one_time = one_time
        self.cascade = cascade
        self.email = email
        self.audit_log_max_entries = audit_log_max_entries
        self.verify_ttl_minutes = verify_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    def _require(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    def _require_active(self, account_id: str) -> Account:
        account = self._require(account_id)
        if account.is_deleted:
            raise AccountDeactivated()
        return account

    def _audit(self, account_id: str, *updates: ProfileUpdate) -> None:
        self.store.append_profile_updates(
            account_id, list(updates), keep=self.audit_log_max_entries
        )

    async def _send_verification(self, email: str, token: str) -> bool:
        return await asyncio.to_thread(
            self.email.send_email_verification,
            email,
            token,
            ttl_hours=max(1, self.verify_ttl_minutes // 60),
        )

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.VIEWER,
    ) -> Tuple[Account, str]:
        normalized = normalize_email(email)
        password_hash, algo = self.hasher.hash(password)
        try:
            account = self.store.create_account(
                normalized, password_hash, name=name, role=role, password_algo=algo
            )
        except ConstraintViolation:
            raise EmailAlreadyInUse()
        token = self.one_time.issue(account.id, TokenKind.VERIFY_EMAIL)
        await self._send_verification(account.email, token)
        logger.info("account_registered", account_id=account.id, role=account.role.value)
        return account, token

    async def request_email_verification(self, account_id: str) -> Optional[str]:
        """Re-send the verification link. Returns None when already verified."""
        account = self._require_active(account_id)
        if account.email_verified:
            return None
        # Older links stop working once a new one is sent
        self.one_time.invalidate_for_account(account.id, TokenKind.VERIFY_EMAIL)
        token = self.one_time.issue(account.id, TokenKind.VERIFY_EMAIL)
        await self._send_verification(account.email, token)
        return token

    async def resend_email_verification(self, email: str) -> Optional[str]:
        """Send a fresh verification link to an unverified live account.

        Unknown, deleted and already verified addresses are skipped without
        telling the caller, as with password reset requests.
        """
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None or account.is_deleted:
            logger.info("verification_resend_unknown_email", email_hash=email_fingerprint(email))
            return None
        return await self.request_email_verification(account.id)

    async def verify_email(self, token: str, email: Optional[str] = None) -> Account:
        account = self.one_time.consume(token, TokenKind.VERIFY_EMAIL, expected_email=email)
        if account.is_deleted:
            raise AccountDeactivated()
        updated = self.store.update_account(account.id, email_verified=True)
        logger.info("email_verified", account_id=account.id)
        return updated or account

    def get_profile(self, account_id: str) -> Account:
        return self._require_active(account_id)

    async def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Account:
        account = self._require_active(account_id)
        now = utcnow()
        changes: dict = {}
        audit: list[ProfileUpdate] = []

        if name is not None and name != account.name:
            audit.append(ProfileUpdate("name", account.name, name, now))
            changes["name"] = name

        new_email = normalize_email(email) if email is not None else None
        email_changed = bool(new_email) and new_email != account.email
        if email_changed:
            # Fast path only; the unique index decides races below
            existing = self.store.get_account_by_email(new_email)
            if existing is not None and existing.id != account.id:
                raise EmailAlreadyInUse()
            audit.append(ProfileUpdate("email", account.email, new_email, now))
            changes["email"] = new_email
            changes["email_verified"] = False

        if not changes:
            return account

        try:
            updated = self.store.update_account(account.id, **changes)
        except ConstraintViolation:
            raise EmailAlreadyInUse()
        if updated is None:
            raise AccountNotFound()
        self._audit(account.id, *audit)

        if email_changed:
            self.cascade.cascade(account.id, RevocationReason.EMAIL_CHANGED)
            self.one_time.invalidate_for_account(account.id, TokenKind.VERIFY_EMAIL)
            token = self.one_time.issue(account.id, TokenKind.VERIFY_EMAIL)
            await self._send_verification(new_email, token)
            logger.info(
                "account_email_changed",
                account_id=account.id,
                email_hash=email_fingerprint(new_email),
            )
        logger.info("profile_updated", account_id=account.id, fields=sorted(changes))
        return self.store.get_account(account.id) or updated

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self._require_active(account_id)
        if not self.hasher.verify(
            account.password_hash, current_password, algo=account.password_algo
        ):
            logger.info("password_change_rejected", account_id=account.id)
            raise InvalidCredentials()
        await self._set_password(account, new_password, RevocationReason.PASSWORD_CHANGED)

    async def _set_password(
        self, account: Account, new_password: str, reason: RevocationReason
    ) -> None:
        password_hash, algo = self.hasher.hash(new_password)
        self.store.update_account(account.id, password_hash=password_hash, password_algo=algo)
        self._audit(account.id, ProfileUpdate("password", _MASKED, _MASKED, utcnow()))
        self.cascade.cascade(account.id, reason)
        await asyncio.to_thread(self.email.send_password_changed, account.email)
        logger.info("password_updated", account_id=account.id, reason=reason.value)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Send a reset link if the address belongs to a live account.

        Callers always report success so the endpoint cannot be used to probe
        which addresses are registered.
        """
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None or account.is_deleted:
            logger.info("password_reset_unknown_email", email_hash=email_fingerprint(email))
            return None
        token = self.one_time.issue(account.id, TokenKind.RESET_PASSWORD)
        await asyncio.to_thread(
            self.email.send_password_reset,
            account.email,
            token,
            ttl_minutes=self.reset_ttl_minutes,
        )
        logger.info("password_reset_requested", account_id=account.id)
        return token

    async def complete_password_reset(
        self, token: str, new_password: str, email: Optional[str] = None
    ) -> Account:
        account = self.one_time.consume(token, TokenKind.RESET_PASSWORD, expected_email=email)
        if account.is_deleted:
            raise AccountDeactivated()
        await self._set_password(account, new_password, RevocationReason.PASSWORD_RESET)
        return self.store.get_account(account.id) or account

    def set_role(self, account_id: str, role: Role | str) -> Account:
        account = self._require_active(account_id)
        new_role = Role(role)
        if new_role == account.role:
            return account
        old_role = account.role
        updated = self.store.update_account(account.id, role=new_role)
        self._audit(
            account.id, ProfileUpdate("role", old_role.value, new_role.value, utcnow())
        )
        self.cascade.cascade(account.id, RevocationReason.ROLE_CHANGED)
        logger.info(
            "account_role_changed",
            account_id=account.id,
            old_role=old_role.value,
            new_role=new_role.value,
        )
        return updated or account

    async def soft_delete(self, account_id: str) -> None:
        account = self._require(account_id)
        if account.is_deleted:
            raise AccountDeactivated("account already deactivated")
        self.store.update_account(account.id, is_deleted=True)
        self._audit(account.id, ProfileUpdate("is_deleted", "false", "true", utcnow()))
        self.cascade.cascade(account.id, RevocationReason.ACCOUNT_DELETED)
        await asyncio.to_thread(self.email.send_account_deactivated, account.email)
        logger.info("account_deactivated", account_id=account.id)
