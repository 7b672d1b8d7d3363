from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenward.logging import get_logger
from tokenward.storage.common import (
    ACCOUNT_MUTABLE_FIELDS,
    coerce_role,
    coerce_token_kind,
    generate_uuid,
    normalize_email,
    safe_row_value,
)
from tokenward.storage.errors import ConstraintViolation, StoreUnavailable
from tokenward.storage.models import (
    Account,
    OneTimeToken,
    ProfileUpdate,
    RefreshSession,
    Role,
    TokenKind,
    utcnow,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        role TEXT NOT NULL DEFAULT 'viewer'
            CHECK (role IN ('admin', 'editor', 'viewer')),
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        session_generation INTEGER NOT NULL DEFAULT 0
    )
    """,
    "ALTER TABLE account ADD COLUMN IF NOT EXISTS session_generation INTEGER NOT NULL DEFAULT 0",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS account_profile_update (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        field TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS account_profile_update_account_idx
        ON account_profile_update (account_id, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        rotated_to TEXT,
        generation INTEGER NOT NULL DEFAULT 0
    )
    """,
    "ALTER TABLE refresh_session ADD COLUMN IF NOT EXISTS generation INTEGER NOT NULL DEFAULT 0",
    "CREATE INDEX IF NOT EXISTS refresh_session_account_idx ON refresh_session (account_id)",
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        account_id TEXT NOT NULL REFERENCES account(id),
        kind TEXT NOT NULL CHECK (kind IN ('verify_email', 'reset_password')),
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_token_account_idx ON one_time_token (account_id)",
)

_REQUIRED_TABLES = (
    "account",
    "account_profile_update",
    "refresh_session",
    "one_time_token",
)


class PostgresStore:
    """Postgres-backed record store for accounts, sessions and one-time tokens."""

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; transaction commits on clean exit.

        Pool exhaustion, dropped connections and statement timeouts surface as
        ``StoreUnavailable`` so callers can tell them apart from domain outcomes.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("store_pool_timeout", error=str(exc))
            raise StoreUnavailable("database pool exhausted", {"retryable": True}) from exc
        except errors.OperationalError as exc:
            self.logger.error("store_operational_error", error=str(exc))
            raise StoreUnavailable("database unavailable", {"retryable": True}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # accounts
    def _account_from_row(
        self, row: Any, updates: Optional[List[ProfileUpdate]] = None
    ) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name"),
            password_hash=row["password_hash"],
            password_algo=safe_row_value(row, "password_algo", "argon2id"),
            role=coerce_role(safe_row_value(row, "role", Role.VIEWER.value)),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            is_deleted=bool(safe_row_value(row, "is_deleted", False)),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or utcnow(),
            last_login_at=safe_row_value(row, "last_login_at"),
            profile_updates=updates or [],
            session_generation=int(safe_row_value(row, "session_generation", 0) or 0),
        )

    def _load_profile_updates(self, conn: Any, account_id: str) -> List[ProfileUpdate]:
        rows = conn.execute(
            """
            SELECT field, old_value, new_value, updated_at
            FROM account_profile_update WHERE account_id = %s ORDER BY id
            """,
            (account_id,),
        ).fetchall()
        return [
            ProfileUpdate(
                field=r["field"],
                old_value=r.get("old_value"),
                new_value=r.get("new_value"),
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

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
        account = Account(
            id=generate_uuid(),
            email=normalize_email(email),
            name=name,
            password_hash=password_hash,
            password_algo=password_algo,
            role=coerce_role(role),
            email_verified=email_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, name, password_hash, password_algo, role,
                                         email_verified, is_deleted, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.name,
                        account.password_hash,
                        account.password_algo,
                        account.role.value,
                        account.email_verified,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
            if not row:
                return None
            updates = self._load_profile_updates(conn, str(row["id"]))
        return self._account_from_row(row, updates)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
            if not row:
                return None
            updates = self._load_profile_updates(conn, str(row["id"]))
        return self._account_from_row(row, updates)

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "role" in fields:
            fields["role"] = coerce_role(fields["role"]).value
        # Column names come from ACCOUNT_MUTABLE_FIELDS, never from callers
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = list(fields.values())
        set_clause = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {set_clause} WHERE id = %s RETURNING *",
                    (*params, account_id),
                ).fetchone()
                if not row:
                    return None
                updates = self._load_profile_updates(conn, account_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row, updates)

    def append_profile_updates(
        self, account_id: str, updates: List[ProfileUpdate], *, keep: int
    ) -> None:
        if not updates:
            return
        with self._connect() as conn:
            for update in updates:
                conn.execute(
                    """
                    INSERT INTO account_profile_update (account_id, field, old_value, new_value, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        update.field,
                        update.old_value,
                        update.new_value,
                        update.updated_at,
                    ),
                )
            conn.execute(
                """
                DELETE FROM account_profile_update
                WHERE account_id = %s AND id NOT IN (
                    SELECT id FROM account_profile_update
                    WHERE account_id = %s ORDER BY id DESC LIMIT %s
                )
                """,
                (account_id, account_id, keep),
            )

    # refresh sessions
    @staticmethod
    def _session_from_row(row: Any) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked=bool(safe_row_value(row, "revoked", False)),
            revoked_at=safe_row_value(row, "revoked_at"),
            rotated_to=safe_row_value(row, "rotated_to"),
            generation=int(safe_row_value(row, "generation", 0) or 0),
        )

    def create_session(self, session: RefreshSession) -> Optional[RefreshSession]:
        try:
            with self._connect() as conn:
                # FOR SHARE orders this insert against revoke_account_sessions,
                # which takes the account row lock before revoking
                row = conn.execute(
                    "SELECT session_generation FROM account WHERE id = %s FOR SHARE",
                    (session.account_id,),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "account not found for session", {"account_id": session.account_id}
                    )
                if int(row["session_generation"]) != session.generation:
                    return None
                conn.execute(
                    """
                    INSERT INTO refresh_session (id, account_id, created_at, expires_at, revoked, generation)
                    VALUES (%s, %s, %s, %s, FALSE, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.created_at,
                        session.expires_at,
                        session.generation,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for session", {"account_id": session.account_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"field": "id"})
        return session

    def get_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def revoke_session_if_active(
        self, session_id: str, now: datetime, *, rotated_to: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_session
                SET revoked = TRUE, revoked_at = %s, rotated_to = %s
                WHERE id = %s AND revoked = FALSE AND expires_at > %s
                """,
                (now, rotated_to, session_id, now),
            )
            return result.rowcount

    def revoke_session(self, session_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_session SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND revoked = FALSE
                """,
                (now, session_id),
            )
            return result.rowcount

    def revoke_account_sessions(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET session_generation = session_generation + 1 WHERE id = %s",
                (account_id,),
            )
            result = conn.execute(
                """
                UPDATE refresh_session SET revoked = TRUE, revoked_at = %s
                WHERE account_id = %s AND revoked = FALSE
                """,
                (now, account_id),
            )
            return result.rowcount

    # one-time tokens
    @staticmethod
    def _token_from_row(row: Any) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            kind=coerce_token_kind(row["kind"]),
            expires_at=row["expires_at"],
            used=bool(safe_row_value(row, "used", False)),
            used_at=safe_row_value(row, "used_at"),
            created_at=safe_row_value(row, "created_at") or utcnow(),
        )

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_token (id, token_hash, account_id, kind, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, FALSE, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.account_id,
                        token.kind.value,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for token", {"account_id": token.account_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "token_hash"})
        return token

    def get_one_time_token_by_hash(
        self, token_hash: str, kind: TokenKind
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE token_hash = %s AND kind = %s",
                (token_hash, coerce_token_kind(kind).value),
            ).fetchone()
        if not row:
            return None
        return self._token_from_row(row)

    def mark_token_used_if_valid(self, token_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE one_time_token SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE AND expires_at > %s
                """,
                (now, token_id, now),
            )
            return result.rowcount

    def invalidate_account_tokens(
        self, account_id: str, now: datetime, kind: Optional[TokenKind] = None
    ) -> int:
        query = "UPDATE one_time_token SET used = TRUE, used_at = %s WHERE account_id = %s AND used = FALSE"
        params: list[Any] = [now, account_id]
        if kind is not None:
            query += " AND kind = %s"
            params.append(coerce_token_kind(kind).value)
        with self._connect() as conn:
            result = conn.execute(query, tuple(params))
            return result.rowcount
