from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import TokenExpired, TokenInvalid
from tokenward.storage.models import Role

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    role: Role
    email: str
    issued_at: datetime
    expires_at: datetime
    jti: str


def _key_id(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()[:8]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenSigner:
    """Mints and verifies short-lived HS256 access tokens.

    Verification is purely cryptographic and never touches the store. The
    first configured secret signs; every configured secret verifies, which
    lets operators retire a secret without logging everybody out.
    """

    def __init__(
        self,
        secrets: Sequence[str],
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = 15,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secrets or not secrets[0]:
            raise ValueError("at least one signing secret is required")
        self._secrets = {_key_id(s): s.encode() for s in secrets}
        self._signing_kid = _key_id(secrets[0])
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_minutes * 60
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessTokenSigner":
        return cls(
            settings.verification_secrets,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_minutes=settings.access_token_ttl_minutes,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def _sign(self, key: bytes, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_access_token(self, account_id: str, role: Role | str, email: str) -> str:
        token, _ = self.issue_with_expiry(account_id, role, email)
        return token

    def issue_with_expiry(
        self, account_id: str, role: Role | str, email: str
    ) -> tuple[str, datetime]:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account_id,
            "role": Role(role).value,
            "email": email,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "jti": str(uuid.uuid4()),
            "token_type": _TOKEN_TYPE,
        }
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": self._signing_kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._sign(self._secrets[self._signing_kid], signing_input)
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        return f"{signing_input}.{signature}", expires_at

    def _candidate_keys(self, kid: Optional[str]) -> list[bytes]:
        if kid and kid in self._secrets:
            return [self._secrets[kid]]
        return list(self._secrets.values())

    def verify_access_token(self, token: str) -> AccessClaims:
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid()

        signing_input = f"{header_b64}.{payload_b64}"
        if not any(
            hmac.compare_digest(self._sign(key, signing_input).encode(), sig_b64.encode())
            for key in self._candidate_keys(header.get("kid"))
        ):
            raise TokenInvalid()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud or payload.get("token_type") != _TOKEN_TYPE:
            raise TokenInvalid()

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts - self.ttl_seconds))
            role = Role(payload["role"])
            account_id = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpired("access token expired", status_code=401)

        return AccessClaims(
            account_id=account_id,
            role=role,
            email=str(payload.get("email", "")),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )

