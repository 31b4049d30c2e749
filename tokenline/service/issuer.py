from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from tokenline.logging import get_logger, token_fingerprint
from tokenline.service.credentials import CredentialCodec
from tokenline.storage.common import RotationTokenStore, hash_token
from tokenline.storage.errors import ConstraintViolation
from tokenline.storage.models import RotationToken, utcnow

logger = get_logger(__name__)

# 64 random bytes -> 512 bits of entropy in the opaque rotation value
ROTATION_TOKEN_BYTES = 64
_MAX_INSERT_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedSession:
    credential: str
    rotation_token: str
    credential_ttl: timedelta
    rotation_ttl: timedelta
    credential_expires_at: datetime
    rotation_expires_at: datetime
    owner_id: str = ""
    claims: Dict[str, Any] = field(default_factory=dict)


class TokenIssuer:
    """Mints a signed credential paired with a freshly persisted rotation token."""

    def __init__(
        self,
        store: RotationTokenStore,
        codec: CredentialCodec,
        *,
        credential_ttl: timedelta,
        rotation_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.credential_ttl = credential_ttl
        self.rotation_ttl = rotation_ttl
        self._clock = clock

    async def issue(
        self, owner_id: str, claims: Optional[Dict[str, Any]] = None
    ) -> IssuedSession:
        """Persist a new unused rotation token for ``owner_id`` and sign a credential.

        Raises ``StoreUnavailable`` when the row cannot be written; no
        credential is produced in that case.
        """
        snapshot = dict(claims or {})
        snapshot.pop("sub", None)
        now = self._clock()
        for attempt in range(1, _MAX_INSERT_ATTEMPTS + 1):
            raw_token = secrets.token_urlsafe(ROTATION_TOKEN_BYTES)
            record = RotationToken.new(
                owner_id,
                hash_token(raw_token),
                self.rotation_ttl,
                claims=snapshot,
                now=now,
            )
            try:
                await asyncio.to_thread(self.store.create_rotation_token, record)
                break
            except ConstraintViolation:
                # digest collision; only a broken RNG gets here twice
                logger.warning("rotation_token_collision", owner_id=owner_id, attempt=attempt)
                if attempt == _MAX_INSERT_ATTEMPTS:
                    raise

        credential = self.codec.issue({"sub": owner_id, **snapshot}, self.credential_ttl)
        # report the expiry the credential actually carries
        credential_expires_at = datetime.fromtimestamp(
            self.codec.peek_expiry(credential), tz=timezone.utc
        )
        logger.info(
            "session_issued",
            owner_id=owner_id,
            token_id=record.id,
            token_prefix=token_fingerprint(raw_token),
        )
        return IssuedSession(
            credential=credential,
            rotation_token=raw_token,
            credential_ttl=self.credential_ttl,
            rotation_ttl=self.rotation_ttl,
            credential_expires_at=credential_expires_at,
            rotation_expires_at=record.expires_at,
            owner_id=owner_id,
            claims=snapshot,
        )
