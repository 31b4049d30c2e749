from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenline.logging import get_logger
from tokenline.storage.common import dump_claims, load_claims
from tokenline.storage.errors import ConstraintViolation, StoreUnavailable
from tokenline.storage.models import RotationToken

_TOKEN_COLUMNS = "id, owner_id, token_hash, issued_at, expires_at, used, revoked_at, claims"


class PostgresStore:
    """Postgres-backed rotation token store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres unavailable", backend="postgres") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the rotation token table exists before serving requests."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", ("public.rotation_token",)
            ).fetchone()
        if not row or not row.get("oid"):
            raise RuntimeError(
                "Missing required Postgres table rotation_token. "
                "Apply sql/001_rotation_token.sql before starting the service."
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> RotationToken:
        return RotationToken(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            used=bool(row.get("used")),
            revoked_at=row.get("revoked_at"),
            claims=load_claims(row.get("claims")),
        )

    def create_rotation_token(self, token: RotationToken) -> RotationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO rotation_token (id, owner_id, token_hash, issued_at, expires_at, used, revoked_at, claims)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.owner_id,
                        token.token_hash,
                        token.issued_at,
                        token.expires_at,
                        token.used,
                        token.revoked_at,
                        dump_claims(token.claims),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "rotation token already exists", {"field": "token_hash"}
            )
        return token

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM rotation_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def mark_rotation_token_used(self, token_id: str, now: datetime) -> bool:
        # single conditional update; rowcount tells the winner apart
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE rotation_token SET used = TRUE"
                " WHERE id = %s AND used = FALSE AND revoked_at IS NULL AND expires_at > %s",
                (token_id, now),
            )
            return result.rowcount == 1

    def revoke_rotation_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE rotation_token SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (revoked_at, token_id),
            )
            return result.rowcount > 0

    def revoke_owner_tokens(self, owner_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE rotation_token SET revoked_at = %s WHERE owner_id = %s AND revoked_at IS NULL",
                (revoked_at, owner_id),
            )
            return result.rowcount

    def list_owner_tokens(self, owner_id: str) -> List[RotationToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM rotation_token WHERE owner_id = %s ORDER BY issued_at",
                (owner_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def purge_expired(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM rotation_token WHERE expires_at < %s", (before,)
            )
            purged = result.rowcount
        if purged:
            self.logger.info("rotation_tokens_purged", count=purged, backend="postgres")
        return purged

    def close(self) -> None:
        self.pool.close()
