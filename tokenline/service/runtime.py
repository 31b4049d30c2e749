from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from tokenline.config import Settings, StoreBackend, get_settings, reset_settings_cache
from tokenline.logging import get_logger
from tokenline.service.credentials import CredentialCodec
from tokenline.service.identity import MemoryIdentityStore
from tokenline.service.issuer import IssuedSession, TokenIssuer
from tokenline.service.rotation import RotationCoordinator, RotationResult
from tokenline.service.single_flight import SingleFlight
from tokenline.storage.common import RotationTokenStore
from tokenline.storage.memory import MemoryStore
from tokenline.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> RotationTokenStore:
    backend = settings.store_backend
    if backend is StoreBackend.POSTGRES:
        from tokenline.storage.postgres import PostgresStore

        logger.info("runtime_store_selected", store_type="postgres",
                    dsn=_mask_url_password(settings.database_url))
        return PostgresStore(settings.database_url)
    if backend is StoreBackend.REDIS:
        from tokenline.storage.redis_store import RedisStore

        store = RedisStore(settings.redis_url)
        store.verify_connection()
        logger.info("runtime_store_selected", store_type="redis",
                    redis_url=_mask_url_password(settings.redis_url))
        return store
    logger.info("runtime_store_selected", store_type="memory")
    return MemoryStore()


class TokenService:
    """Session operations exposed to the HTTP layer.

    Rotations go through the single-flight guard so concurrent requests
    carrying the same rotation token share one coordinator call.
    """

    def __init__(
        self,
        store: RotationTokenStore,
        issuer: TokenIssuer,
        coordinator: RotationCoordinator,
        guard: SingleFlight,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.coordinator = coordinator
        self.guard = guard
        self._clock = clock

    async def issue_session(
        self, owner_id: str, claims: Optional[Dict[str, Any]] = None
    ) -> IssuedSession:
        return await self.issuer.issue(owner_id, claims)

    async def rotate(self, rotation_token: str) -> RotationResult:
        return await self.guard.execute(
            rotation_token, lambda: self.coordinator.rotate(rotation_token)
        )

    async def revoke(self, rotation_token: Optional[str]) -> bool:
        return await self.coordinator.revoke(rotation_token)

    async def revoke_family(self, owner_id: str) -> int:
        return await self.coordinator.revoke_family(owner_id)

    async def purge_expired(self, retention: timedelta) -> int:
        cutoff = self._clock() - retention
        return await asyncio.to_thread(self.store.purge_expired, cutoff)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.identity = MemoryIdentityStore()
        self.identity.ensure_root_user(
            self.settings.root_user_email,
            self.settings.root_user_password,
            self.settings.root_user_display_name,
        )

        self.codec = CredentialCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.credential_clock_skew_seconds,
        )
        self.issuer = TokenIssuer(
            self.store,
            self.codec,
            credential_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            rotation_ttl=timedelta(days=self.settings.refresh_token_ttl_days),
        )
        self.coordinator = RotationCoordinator(self.store, self.issuer)
        self.single_flight = SingleFlight()
        self.tokens = TokenService(
            self.store, self.issuer, self.coordinator, self.single_flight
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
