"""Contract and helpers shared by the memory, Postgres and Redis token stores.

Every backend persists only the digest of a rotation token, and every backend
implements ``mark_rotation_token_used`` as a single conditional update so that
concurrent rotations of one token can never both succeed.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from tokenline.storage.models import RotationToken


def hash_token(value: str) -> str:
    """SHA-256 hex digest used as the lookup key for an opaque rotation token."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class RotationTokenStore(Protocol):
    def create_rotation_token(self, token: RotationToken) -> RotationToken:
        ...

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]:
        ...

    def mark_rotation_token_used(self, token_id: str, now: datetime) -> bool:
        """Flip ``used`` from false to true on a live token.

        Returns False when the flag was already set, or when the token was
        revoked or had expired as of ``now``; the check and the write are one
        atomic step.
        """
        ...

    def revoke_rotation_token(self, token_id: str, revoked_at: datetime) -> bool:
        ...

    def revoke_owner_tokens(self, owner_id: str, revoked_at: datetime) -> int:
        ...

    def list_owner_tokens(self, owner_id: str) -> List[RotationToken]:
        ...

    def purge_expired(self, before: datetime) -> int:
        ...

    def verify_connection(self) -> None:
        ...


def dump_claims(claims: Optional[Dict[str, Any]]) -> Optional[str]:
    if not claims:
        return None
    return json.dumps(claims, sort_keys=True)


def load_claims(raw: Any) -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


__all__ = ["RotationTokenStore", "dump_claims", "hash_token", "load_claims"]
