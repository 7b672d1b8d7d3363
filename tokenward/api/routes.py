from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from tokenward.api.schemas import (
    AccountResponse,
    EmailVerificationRequest,
    EmailVerificationResendRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UpdateRoleRequest,
)
from tokenward.logging import email_fingerprint, get_correlation_id, get_logger
from tokenward.service.errors import AccountDeactivated, PermissionDenied
from tokenward.service.runtime import check_rate_limit, get_runtime
from tokenward.service.sessions import Principal, TokenPair
from tokenward.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one request from the bucket at ``key``.

    Raises:
        HTTPException with 429 if the bucket is empty
    """
    window_seconds = runtime.settings.rate_limit_window_seconds
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise HTTPException(
            status_code=429,
            detail={
                "status": "error",
                "error": {"code": "rate_limited", "message": "rate limit exceeded"},
            },
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _token_pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        account_id=pair.account_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer access token to the account acting on this request.

    The role is taken from the stored account so a demotion applies before
    outstanding access tokens expire.
    """
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "invalid authorization header", status_code=401)
    runtime = get_runtime()
    principal = runtime.sessions.authenticate(token.strip())
    account = runtime.store.get_account(principal.account_id)
    if account is None or account.is_deleted:
        raise AccountDeactivated()
    principal.role = account.role
    principal.email = account.email
    return principal


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role != Role.ADMIN:
        raise PermissionDenied("admin access required")
    return principal


# Sessions


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified account and send the verification link."""
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup is disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        response=response,
    )
    account, _token = await runtime.accounts.register(
        body.email, body.password, name=body.name
    )
    return _ok(AccountResponse.from_account(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for an access token and a refresh token.

    Raises:
        401: invalid credentials
        403: account deactivated or email not verified
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{email_fingerprint(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    pair = await runtime.sessions.login(body.email, body.password)
    return _ok(_token_pair_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate the refresh token. The presented token stops working."""
    runtime = get_runtime()
    pair = await runtime.sessions.refresh(body.refresh_token)
    return _ok(_token_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.sessions.logout(body.refresh_token)
    return _ok({"status": "logged_out"})


# Email verification and password reset


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(body: EmailVerificationResendRequest, response: Response):
    """Re-send the verification link.

    Needs no session, since unverified accounts cannot log in. Always answers
    "sent" so registered addresses cannot be probed.
    """
    runtime = get_runtime()
    # Keyed by address to stop mail flooding
    await _enforce_rate_limit(
        runtime,
        f"verify:request:{email_fingerprint(body.email)}",
        runtime.settings.verify_rate_limit_per_minute,
        response=response,
    )
    await runtime.accounts.resend_email_verification(body.email)
    return _ok({"status": "sent"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    runtime = get_runtime()
    # Keyed by client to slow token guessing
    await _enforce_rate_limit(
        runtime,
        f"verify:email:{_client_ip(request)}",
        runtime.settings.verify_rate_limit_per_minute,
        response=response,
    )
    account = await runtime.accounts.verify_email(body.token, body.email)
    return _ok({"status": "verified", "account_id": account.id})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, response: Response):
    """Always answers "sent" so registered addresses cannot be probed."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:request:{email_fingerprint(body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    await runtime.accounts.request_password_reset(body.email)
    return _ok({"status": "sent"})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    body: PasswordResetConfirm, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    await runtime.accounts.complete_password_reset(
        body.token, body.new_password, email=body.email
    )
    return _ok({"status": "password_reset"})


# Profile


@router.get("/profile", response_model=Envelope, tags=["profile"])
async def get_profile(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.accounts.get_profile(principal.account_id)
    return _ok(AccountResponse.from_account(account))


@router.put("/profile", response_model=Envelope, tags=["profile"])
async def update_profile(
    body: ProfileUpdateRequest, principal: Principal = Depends(get_principal)
):
    """Change the display name and/or email.

    An email change marks the account unverified and signs out every
    session, so the caller must verify the new address and log in again.
    """
    runtime = get_runtime()
    account = await runtime.accounts.update_profile(
        principal.account_id, name=body.name, email=body.email
    )
    return _ok(AccountResponse.from_account(account))


@router.put("/profile/password", response_model=Envelope, tags=["profile"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.accounts.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return _ok({"status": "password_changed"})


@router.delete("/profile", response_model=Envelope, tags=["profile"])
async def delete_profile(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.accounts.soft_delete(principal.account_id)
    return _ok({"status": "deactivated"})


# Admin


@router.post("/admin/accounts/{account_id}/role", response_model=Envelope, tags=["admin"])
async def set_account_role(
    body: UpdateRoleRequest,
    account_id: str = Path(..., min_length=1, max_length=64),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    account = runtime.accounts.set_role(account_id, body.role)
    logger.info(
        "admin_role_updated",
        admin_id=principal.account_id,
        account_id=account.id,
        role=account.role.value,
    )
    return _ok(AccountResponse.from_account(account))
