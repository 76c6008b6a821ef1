from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from moodcircle.api.schemas import (
    CodeRequest,
    CodeRequestResponse,
    Envelope,
    IdentityResponse,
    LoginResponse,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    RefreshResponse,
    VerifyCodeRequest,
    VerifyResponse,
)
from moodcircle.logging import get_logger
from moodcircle.service.runtime import get_runtime
from moodcircle.service.tokens import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token; failures surface as auth error envelopes."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/request-code", response_model=Envelope, tags=["auth"])
async def request_code(body: CodeRequest):
    """Email a one-time verification code.

    Raises:
        400: If the email is malformed
        429: If an unexpired code was already sent to this address
        503: If the code could not be delivered
    """
    runtime = get_runtime()
    result = await runtime.auth.request_code(body.email)
    return Envelope(
        status="ok", data=CodeRequestResponse(expiry_minutes=result.expiry_minutes)
    )


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest):
    """Exchange an email and one-time code for access and refresh tokens.

    The first successful verification for an email creates its identity.
    """
    runtime = get_runtime()
    login = await runtime.auth.verify_code(body.email, body.code)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=IdentityResponse(id=login.identity.id, pseudonym=login.identity.pseudonym),
            access_token=login.access_token,
            refresh_token=login.refresh_token,
            token_type=login.token_type,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token, refresh_token=result.refresh_token
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    """Revoke one refresh token owned by the caller.

    The caller's access token stays valid until it expires.
    """
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, user_id=principal.user_id)
    return Envelope(status="ok", data=LogoutResponse())


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=VerifyResponse(user_id=principal.user_id))
