from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from tokenline.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    ProfileResponse,
    RefreshRequest,
    SessionResponse,
)
from tokenline.logging import get_logger
from tokenline.service.errors import (
    AuthenticationError,
    ServiceUnavailableError,
)
from tokenline.service.issuer import IssuedSession
from tokenline.service.refresh import (
    clear_session_cookies,
    extract_credential,
    extract_first,
    rotation_token_extractors,
    set_session_cookies,
)
from tokenline.service.rotation import RotationStatus
from tokenline.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Principal:
    user_id: str
    email: Optional[str]
    display_name: Optional[str]
    must_change_password: bool
    expires_at: Optional[datetime]


async def get_principal(request: Request) -> Principal:
    """Authenticate the request from its (possibly just refreshed) credential."""
    runtime = get_runtime()
    credential = extract_credential(request, runtime.settings)
    claims = runtime.codec.parse(credential)
    if not claims or not claims.get("sub"):
        raise AuthenticationError("invalid or expired credential")
    exp = claims.get("exp")
    return Principal(
        user_id=str(claims["sub"]),
        email=claims.get("email"),
        display_name=claims.get("display_name"),
        must_change_password=bool(claims.get("must_change_password", False)),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


def _session_payload(session: IssuedSession) -> SessionResponse:
    return SessionResponse(
        user_id=session.owner_id,
        access_token=session.credential,
        refresh_token=session.rotation_token,
        access_token_expires_at=session.credential_expires_at,
        refresh_token_expires_at=session.rotation_expires_at,
        must_change_password=bool(session.claims.get("must_change_password", False)),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password and start a session.

    Raises:
        401: If the credentials are wrong
        503: If the rotation token could not be persisted
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.identity.authenticate, body.email, body.password)
    if not user:
        raise AuthenticationError("invalid credentials")
    session = await runtime.tokens.issue_session(
        user.id,
        {
            "email": user.email,
            "display_name": user.display_name,
            "must_change_password": user.must_change_password,
        },
    )
    if body.use_cookie_auth:
        set_session_cookies(response, session, runtime.settings, remember=body.remember_me)
    logger.info("login_succeeded", user_id=user.id, cookie_auth=body.use_cookie_auth)
    return Envelope(status="ok", data=_session_payload(session))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    """Exchange a rotation token for a new credential and rotation token.

    Unknown, expired, revoked and replayed tokens all produce the same 401.
    """
    runtime = get_runtime()
    presented = body.refresh_token if body else None
    source = "body"
    if not presented:
        presented, source = extract_first(request, rotation_token_extractors(runtime.settings))
    if not presented:
        raise AuthenticationError("refresh token required")

    result = await runtime.tokens.rotate(presented)
    if result.status is RotationStatus.STORE_UNAVAILABLE:
        raise ServiceUnavailableError("token store unavailable, retry later")
    if result.status is not RotationStatus.SUCCESS:
        raise AuthenticationError("invalid refresh token")

    if source == "cookie" or (body is not None and body.use_cookie_auth):
        set_session_cookies(response, result.session, runtime.settings)
    return Envelope(status="ok", data=_session_payload(result.session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
):
    runtime = get_runtime()
    presented = body.refresh_token if body else None
    if not presented:
        presented, _ = extract_first(request, rotation_token_extractors(runtime.settings))
    if presented:
        await runtime.tokens.revoke(presented)
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Replace the caller's password and end every session they hold."""
    runtime = get_runtime()
    verified = await asyncio.to_thread(
        runtime.identity.verify_password, principal.user_id, body.current_password
    )
    if not verified:
        raise AuthenticationError("current password is incorrect")
    await asyncio.to_thread(
        runtime.identity.set_password, principal.user_id, body.new_password
    )
    revoked = await runtime.tokens.revoke_family(principal.user_id)
    clear_session_cookies(response, runtime.settings)
    logger.info("password_changed", user_id=principal.user_id, revoked_count=revoked)
    return Envelope(status="ok", data={"message": "password changed", "revoked_sessions": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def profile(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=ProfileResponse(
            user_id=principal.user_id,
            email=principal.email,
            display_name=principal.display_name,
            must_change_password=principal.must_change_password,
            credential_expires_at=principal.expires_at,
        ),
    )
