from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tokenline.logging import get_logger
from tokenline.service.errors import ConflictError, ValidationError
from tokenline.storage.models import User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        *,
        must_change_password: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def authenticate(self, email: str, password: str) -> Optional[User]: ...

    def verify_password(self, user_id: str, password: str) -> bool: ...

    def set_password(self, user_id: str, password: str) -> User: ...


class MemoryIdentityStore:
    """Users and argon2id password hashes held in process memory."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        self._passwords: Dict[str, str] = {}
        self._lock = threading.RLock()
        # verified against on unknown emails so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def _check_password_policy(password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        *,
        must_change_password: bool = False,
    ) -> User:
        self._check_password_policy(password)
        normalized = self._normalize_email(email)
        digest = self._pwd_hasher.hash(password)
        with self._lock:
            if normalized in self._by_email:
                raise ConflictError("email already exists", detail={"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                display_name=display_name,
                must_change_password=must_change_password,
            )
            self.users[user.id] = user
            self._by_email[normalized] = user.id
            self._passwords[user.id] = digest
        logger.info("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            user_id = self._by_email.get(self._normalize_email(email))
            return self.users.get(user_id) if user_id else None

    def _verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.get_user_by_email(email)
        if user is None:
            self._verify(self._dummy_hash, password)
            logger.warning("login_unknown_email")
            return None
        if not self.verify_password(user.id, password):
            return None
        return user

    def verify_password(self, user_id: str, password: str) -> bool:
        with self._lock:
            stored_hash = self._passwords.get(user_id)
        if not stored_hash:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        if not self._verify(stored_hash, password):
            logger.warning("password_verification_failed", user_id=user_id)
            return False
        return True

    def set_password(self, user_id: str, password: str) -> User:
        self._check_password_policy(password)
        digest = self._pwd_hasher.hash(password)
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                raise ValidationError("unknown user", detail={"field": "user_id"})
            self._passwords[user_id] = digest
            user.must_change_password = False
        return user

    def ensure_root_user(
        self, email: Optional[str], password: Optional[str], display_name: str
    ) -> Optional[User]:
        """Provision the configured administrator once; later calls are no-ops."""
        if not email or not password:
            return None
        existing = self.get_user_by_email(email)
        if existing:
            return existing
        user = self.create_user(email, password, display_name)
        logger.info("root_user_provisioned", user_id=user.id)
        return user
