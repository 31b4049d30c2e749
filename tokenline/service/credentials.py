from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional

from tokenline.logging import get_logger

logger = get_logger(__name__)

# Registered claims the codec owns; callers cannot override them through ``claims``
_RESERVED_CLAIMS = {"iss", "aud", "iat", "exp"}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class CredentialCodec:
    """Signs and verifies the short-lived HS256 bearer credential.

    Stateless: nothing is stored and nothing is looked up. A credential whose
    ``exp`` equals the current second is already expired.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = int(self._clock())
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.setdefault("jti", str(uuid.uuid4()))
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": now,
                "exp": now + int(ttl.total_seconds()),
            }
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def is_expired(self, exp: float) -> bool:
        return exp <= self._clock() - self.leeway_seconds

    def parse(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Verify ``token`` and return its claims, or None when it is not usable."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if exp is None:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(exp_ts):
            return None
        if self.is_expired(exp_ts):
            return None
        return payload

    @staticmethod
    def peek_expiry(token: Optional[str]) -> Optional[int]:
        """Read ``exp`` without checking the signature.

        Only good enough to decide whether a refresh is worth attempting; the
        downstream auth dependency still verifies the credential in full.
        """
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(_decode_segment(parts[1]))
            exp = float(payload["exp"])
        except (ValueError, TypeError, KeyError):
            return None
        # inf and nan survive json decoding
        if not math.isfinite(exp):
            return None
        return int(exp)

    def needs_refresh(self, token: Optional[str]) -> bool:
        exp = self.peek_expiry(token)
        return exp is None or self.is_expired(exp)
