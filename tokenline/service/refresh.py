"""Transparent credential refresh for incoming HTTP requests.

Runs before routing. When a request carries a rotation token but its bearer
credential is missing or expired, the rotation token is exchanged for a new
pair and the request's ``Authorization`` header is rewritten so the handler
authenticates with the fresh credential. A failed rotation never fails the
request: it simply continues unauthenticated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from fastapi import Request, Response

from tokenline.config import Settings
from tokenline.logging import get_logger, token_fingerprint
from tokenline.service.issuer import IssuedSession
from tokenline.service.rotation import RotationStatus

logger = get_logger(__name__)

ACCESS_HEADER_NAME = "X-Access-Token"

# Endpoints that consume the rotation token themselves
_SKIP_PATHS = frozenset({"/v1/auth/login", "/v1/auth/refresh", "/v1/auth/logout"})


@dataclass(frozen=True)
class TokenExtractor:
    """One place a token can travel in: a named header or a named cookie."""

    source: str
    name: str

    def extract(self, request: Request) -> Optional[str]:
        if self.source == "header":
            value = request.headers.get(self.name)
        else:
            value = request.cookies.get(self.name)
        value = (value or "").strip()
        return value or None


def rotation_token_extractors(settings: Settings) -> List[TokenExtractor]:
    return [
        TokenExtractor("header", settings.refresh_header_name),
        TokenExtractor("cookie", settings.refresh_cookie_name),
    ]


def extract_first(
    request: Request, extractors: Iterable[TokenExtractor]
) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(value, source)`` from the first extractor that finds a value."""
    for extractor in extractors:
        value = extractor.extract(request)
        if value:
            return value, extractor.source
    return None, None


def extract_credential(request: Request, settings: Settings) -> Optional[str]:
    authorization = request.headers.get("Authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    cookie = request.cookies.get(settings.access_cookie_name)
    return cookie or None


def set_session_cookies(
    response: Response,
    session: IssuedSession,
    settings: Settings,
    *,
    remember: bool = True,
) -> None:
    rotation_max_age = int(session.rotation_ttl.total_seconds())
    if not remember:
        rotation_max_age = min(
            rotation_max_age, settings.refresh_token_short_ttl_days * 86400
        )
    common = {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "domain": settings.cookie_domain,
        "path": "/",
    }
    response.set_cookie(
        settings.access_cookie_name,
        session.credential,
        max_age=int(session.credential_ttl.total_seconds()),
        **common,
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        session.rotation_token,
        max_age=rotation_max_age,
        **common,
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _replace_authorization(request: Request, credential: str) -> None:
    headers = [
        (key, value)
        for key, value in request.scope["headers"]
        if key.lower() != b"authorization"
    ]
    headers.append((b"authorization", f"Bearer {credential}".encode("latin-1")))
    request.scope["headers"] = headers


class TransparentRefresh:
    """HTTP middleware that rotates an expired credential in flight."""

    def __init__(self, runtime_getter: Callable[[], Any]) -> None:
        self._runtime_getter = runtime_getter

    async def __call__(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)
        runtime = self._runtime_getter()
        settings: Settings = runtime.settings
        if not settings.transparent_refresh_enabled:
            return await call_next(request)

        presented, source = extract_first(request, rotation_token_extractors(settings))
        if not presented:
            return await call_next(request)
        credential = extract_credential(request, settings)
        if credential and not runtime.codec.needs_refresh(credential):
            return await call_next(request)

        session = await self._rotate(runtime, presented)
        if session is not None:
            _replace_authorization(request, session.credential)

        response = await call_next(request)
        if session is not None:
            set_session_cookies(response, session, settings)
            if source == "header":
                response.headers[ACCESS_HEADER_NAME] = session.credential
                response.headers[settings.refresh_header_name] = session.rotation_token
        return response

    async def _rotate(self, runtime, presented: str) -> Optional[IssuedSession]:
        fingerprint = token_fingerprint(presented)
        try:
            result = await runtime.tokens.rotate(presented)
        except Exception as exc:
            logger.error(
                "transparent_refresh_failed",
                token_prefix=fingerprint,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if result.status is RotationStatus.SUCCESS:
            logger.info("transparent_refresh_succeeded", owner_id=result.owner_id)
            return result.session
        if result.status is RotationStatus.STORE_UNAVAILABLE:
            logger.error("transparent_refresh_store_unavailable", token_prefix=fingerprint)
        else:
            logger.info(
                "transparent_refresh_rejected",
                token_prefix=fingerprint,
                status=result.status.value,
            )
        return None
