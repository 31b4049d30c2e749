from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class RotationTokenState(str, Enum):
    ACTIVE = "active"
    USED = "used"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class User:
    id: str
    email: str
    display_name: str
    must_change_password: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RotationToken:
    """Server-side record of one issued rotation token.

    Only the SHA-256 digest of the opaque value is kept; the plaintext leaves
    the process exactly once, inside the issuance response.
    """

    id: str
    owner_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    revoked_at: Optional[datetime] = None
    claims: Dict | None = None

    @classmethod
    def new(
        cls,
        owner_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        claims: Dict | None = None,
        now: Optional[datetime] = None,
    ) -> "RotationToken":
        issued_at = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            claims=dict(claims) if claims else {},
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def state(self, now: Optional[datetime] = None) -> RotationTokenState:
        """Collapse the flags into the single lifecycle state they imply."""
        now = now or utcnow()
        if self.revoked_at is not None:
            return RotationTokenState.REVOKED
        if self.is_expired(now):
            return RotationTokenState.EXPIRED
        if self.used:
            return RotationTokenState.USED
        return RotationTokenState.ACTIVE
