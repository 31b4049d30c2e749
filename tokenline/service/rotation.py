from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from tokenline.logging import get_logger, token_fingerprint
from tokenline.service.issuer import IssuedSession, TokenIssuer
from tokenline.storage.common import RotationTokenStore, hash_token
from tokenline.storage.errors import StoreUnavailable
from tokenline.storage.models import RotationToken, RotationTokenState, utcnow

logger = get_logger(__name__)


class RotationStatus(str, Enum):
    SUCCESS = "success"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REPLAY_DETECTED = "token_replay_detected"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class RotationResult:
    status: RotationStatus
    session: Optional[IssuedSession] = None
    owner_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RotationStatus.SUCCESS


class RotationCoordinator:
    """Exchanges a rotation token for a new session exactly once.

    The store's conditional ``mark_rotation_token_used`` decides the winner
    when several callers race on the same token; every loser is treated as a
    replay and takes the whole session family down with it.
    """

    def __init__(
        self,
        store: RotationTokenStore,
        issuer: TokenIssuer,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self._clock = clock

    async def rotate(self, presented: Optional[str]) -> RotationResult:
        if not presented:
            return RotationResult(RotationStatus.TOKEN_INVALID)
        fingerprint = token_fingerprint(presented)
        try:
            return await self._rotate(presented, fingerprint)
        except StoreUnavailable as exc:
            logger.error(
                "rotation_store_unavailable",
                token_prefix=fingerprint,
                backend=exc.backend,
                error=exc.message,
            )
            return RotationResult(RotationStatus.STORE_UNAVAILABLE)

    async def _rotate(self, presented: str, fingerprint: Optional[str]) -> RotationResult:
        token_hash = hash_token(presented)
        record = await asyncio.to_thread(self.store.get_rotation_token, token_hash)
        if record is None:
            logger.info("rotation_token_unknown", token_prefix=fingerprint)
            return RotationResult(RotationStatus.TOKEN_INVALID)

        state = record.state(self._clock())
        if state in (RotationTokenState.REVOKED, RotationTokenState.EXPIRED):
            logger.info(
                "rotation_token_rejected",
                owner_id=record.owner_id,
                token_id=record.id,
                state=state.value,
            )
            return RotationResult(RotationStatus.TOKEN_INVALID, owner_id=record.owner_id)
        if state is RotationTokenState.USED:
            return await self._handle_replay(record)

        won = await asyncio.to_thread(
            self.store.mark_rotation_token_used, record.id, self._clock()
        )
        if not won:
            # the row changed since it was read; only a spent row counts as replay
            current = await asyncio.to_thread(self.store.get_rotation_token, token_hash)
            if current is None or not current.used:
                logger.info(
                    "rotation_token_lost_mark",
                    owner_id=record.owner_id,
                    token_id=record.id,
                    state=current.state(self._clock()).value if current else None,
                )
                return RotationResult(RotationStatus.TOKEN_INVALID, owner_id=record.owner_id)
            return await self._handle_replay(current)

        session = await self.issuer.issue(record.owner_id, record.claims)
        logger.info(
            "rotation_token_rotated",
            owner_id=record.owner_id,
            token_id=record.id,
        )
        return RotationResult(
            RotationStatus.SUCCESS, session=session, owner_id=record.owner_id
        )

    async def _handle_replay(self, record: RotationToken) -> RotationResult:
        revoked = await asyncio.to_thread(
            self.store.revoke_owner_tokens, record.owner_id, self._clock()
        )
        logger.warning(
            "rotation_token_replay_detected",
            owner_id=record.owner_id,
            token_id=record.id,
            revoked_count=revoked,
        )
        return RotationResult(
            RotationStatus.TOKEN_REPLAY_DETECTED, owner_id=record.owner_id
        )

    async def revoke_family(self, owner_id: str) -> int:
        revoked = await asyncio.to_thread(
            self.store.revoke_owner_tokens, owner_id, self._clock()
        )
        logger.info("session_family_revoked", owner_id=owner_id, revoked_count=revoked)
        return revoked

    async def revoke(self, presented: Optional[str]) -> bool:
        """Revoke a single rotation token; unknown values are ignored."""
        if not presented:
            return False
        record = await asyncio.to_thread(
            self.store.get_rotation_token, hash_token(presented)
        )
        if record is None:
            return False
        revoked = await asyncio.to_thread(
            self.store.revoke_rotation_token, record.id, self._clock()
        )
        if revoked:
            logger.info("rotation_token_revoked", owner_id=record.owner_id, token_id=record.id)
        return revoked
