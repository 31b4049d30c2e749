from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from tokenline.logging import get_logger
from tokenline.storage.errors import ConstraintViolation
from tokenline.storage.models import RotationToken, RotationTokenState


class MemoryStore:
    """In-process rotation token store for tests and single-node deployments."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, RotationToken] = {}
        self._by_hash: Dict[str, str] = {}
        # RLock for all data operations; nested acquisitions stay on one thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def create_rotation_token(self, token: RotationToken) -> RotationToken:
        with self._data_lock:
            if token.token_hash in self._by_hash:
                raise ConstraintViolation(
                    "rotation token already exists", {"field": "token_hash"}
                )
            if token.id in self.tokens:
                raise ConstraintViolation("rotation token id already exists", {"field": "id"})
            stored = replace(token, claims=dict(token.claims or {}))
            self.tokens[stored.id] = stored
            self._by_hash[stored.token_hash] = stored.id
            return replace(stored)

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]:
        with self._data_lock:
            token_id = self._by_hash.get(token_hash)
            if token_id is None:
                return None
            token = self.tokens.get(token_id)
            # hand out copies so callers never mutate stored rows
            return replace(token, claims=dict(token.claims or {})) if token else None

    def mark_rotation_token_used(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if token is None or token.state(now) is not RotationTokenState.ACTIVE:
                return False
            token.used = True
            return True

    def revoke_rotation_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if token is None or token.revoked_at is not None:
                return False
            token.revoked_at = revoked_at
            return True

    def revoke_owner_tokens(self, owner_id: str, revoked_at: datetime) -> int:
        revoked = 0
        with self._data_lock:
            for token in self.tokens.values():
                if token.owner_id == owner_id and token.revoked_at is None:
                    token.revoked_at = revoked_at
                    revoked += 1
        return revoked

    def list_owner_tokens(self, owner_id: str) -> List[RotationToken]:
        with self._data_lock:
            owned = [replace(t) for t in self.tokens.values() if t.owner_id == owner_id]
        return sorted(owned, key=lambda t: t.issued_at)

    def purge_expired(self, before: datetime) -> int:
        with self._data_lock:
            stale = [t for t in self.tokens.values() if t.expires_at < before]
            for token in stale:
                self.tokens.pop(token.id, None)
                self._by_hash.pop(token.token_hash, None)
        if stale:
            self.logger.info("rotation_tokens_purged", count=len(stale), backend="memory")
        return len(stale)
