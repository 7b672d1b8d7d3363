from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.common import (
    ACCOUNT_MUTABLE_FIELDS,
    coerce_role,
    coerce_token_kind,
    generate_uuid,
    normalize_email,
    trim_profile_updates,
)
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import (
    Account,
    OneTimeToken,
    ProfileUpdate,
    RefreshSession,
    Role,
    TokenKind,
    utcnow,
)


class MemoryStore:
    """In-process backing store with a JSON snapshot under ``fs_root``.

    Every read and write holds ``_data_lock``, which makes the conditional
    updates atomic with respect to each other.
    """

    def __init__(self, fs_root: str = "/tmp/tokenward", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, RefreshSession] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- accounts ---------------------------------------------------------

    def _find_by_email(self, email: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.VIEWER,
        email_verified: bool = False,
        password_algo: str = "argon2id",
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._find_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                password_algo=password_algo,
                name=name,
                role=coerce_role(role),
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return self._find_by_email(normalize_email(email))

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                existing = self._find_by_email(fields["email"])
                if existing and existing.id != account_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "role" in fields:
                fields["role"] = coerce_role(fields["role"])
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def append_profile_updates(
        self, account_id: str, updates: List[ProfileUpdate], *, keep: int
    ) -> None:
        if not updates:
            return
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.profile_updates = trim_profile_updates(
                account.profile_updates + list(updates), keep
            )
            self._persist_state()

    # -- refresh sessions -------------------------------------------------

    def create_session(self, session: RefreshSession) -> Optional[RefreshSession]:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            account = self.accounts.get(session.account_id)
            if account is None:
                raise ConstraintViolation(
                    "account not found for session", {"account_id": session.account_id}
                )
            if account.session_generation != session.generation:
                return None
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session_if_active(
        self, session_id: str, now: datetime, *, rotated_to: Optional[str] = None
    ) -> int:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active(now):
                return 0
            sess.revoked = True
            sess.revoked_at = now
            sess.rotated_to = rotated_to
            self._persist_state()
            return 1

    def revoke_session(self, session_id: str, now: datetime) -> int:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return 0
            sess.revoked = True
            sess.revoked_at = now
            self._persist_state()
            return 1

    def revoke_account_sessions(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is not None:
                account.session_generation += 1
            count = 0
            for sess in self.sessions.values():
                if sess.account_id == account_id and not sess.revoked:
                    sess.revoked = True
                    sess.revoked_at = now
                    count += 1
            if count or account is not None:
                self._persist_state()
            return count

    # -- one-time tokens --------------------------------------------------

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if token.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for token", {"account_id": token.account_id}
                )
            if any(
                t.token_hash == token.token_hash for t in self.one_time_tokens.values()
            ):
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self.one_time_tokens[token.id] = token
            self._persist_state()
            return token

    def get_one_time_token_by_hash(
        self, token_hash: str, kind: TokenKind
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.one_time_tokens.values()
                    if t.token_hash == token_hash and t.kind == kind
                ),
                None,
            )

    def mark_token_used_if_valid(self, token_id: str, now: datetime) -> int:
        with self._data_lock:
            token = self.one_time_tokens.get(token_id)
            if not token or token.used or token.is_expired(now):
                return 0
            token.used = True
            token.used_at = now
            self._persist_state()
            return 1

    def invalidate_account_tokens(
        self, account_id: str, now: datetime, kind: Optional[TokenKind] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.one_time_tokens.values():
                if token.account_id != account_id or token.used:
                    continue
                if kind is not None and token.kind != kind:
                    continue
                token.used = True
                token.used_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "one_time_tokens": [
                self._serialize_token(t) for t in self.one_time_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.one_time_tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("one_time_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "name": account.name,
            "password_hash": account.password_hash,
            "password_algo": account.password_algo,
            "role": account.role.value,
            "email_verified": account.email_verified,
            "is_deleted": account.is_deleted,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "profile_updates": [
                {
                    "field": u.field,
                    "old_value": u.old_value,
                    "new_value": u.new_value,
                    "updated_at": self._serialize_datetime(u.updated_at),
                }
                for u in account.profile_updates
            ],
            "session_generation": account.session_generation,
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            role=coerce_role(data.get("role", Role.VIEWER.value)),
            email_verified=bool(data.get("email_verified", False)),
            is_deleted=bool(data.get("is_deleted", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            profile_updates=[
                ProfileUpdate(
                    field=u["field"],
                    old_value=u.get("old_value"),
                    new_value=u.get("new_value"),
                    updated_at=self._deserialize_datetime(u.get("updated_at")) or utcnow(),
                )
                for u in data.get("profile_updates", [])
            ],
            session_generation=int(data.get("session_generation", 0)),
        )

    def _serialize_session(self, sess: RefreshSession) -> dict:
        return {
            "id": sess.id,
            "account_id": sess.account_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "revoked": sess.revoked,
            "revoked_at": self._serialize_datetime(sess.revoked_at),
            "rotated_to": sess.rotated_to,
            "generation": sess.generation,
        }

    def _deserialize_session(self, data: dict) -> RefreshSession:
        return RefreshSession(
            id=data["id"],
            account_id=data["account_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            rotated_to=data.get("rotated_to"),
            generation=int(data.get("generation", 0)),
        )

    def _serialize_token(self, token: OneTimeToken) -> dict:
        return {
            "id": token.id,
            "token_hash": token.token_hash,
            "account_id": token.account_id,
            "kind": token.kind.value,
            "expires_at": self._serialize_datetime(token.expires_at),
            "used": token.used,
            "used_at": self._serialize_datetime(token.used_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            id=data["id"],
            token_hash=data["token_hash"],
            account_id=data["account_id"],
            kind=coerce_token_kind(data["kind"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            used_at=self._deserialize_datetime(data.get("used_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
