import pytest

from tokenline.service.errors import ConflictError, ValidationError
from tokenline.service.identity import MemoryIdentityStore


@pytest.fixture
def identity():
    return MemoryIdentityStore()


def test_authenticate_with_correct_password(identity):
    user = identity.create_user("Alice@Example.com", "correct-horse", "Alice")

    assert identity.authenticate("alice@example.com", "correct-horse").id == user.id
    assert identity.authenticate("alice@example.com", "wrong-horse") is None
    assert identity.authenticate("bob@example.com", "correct-horse") is None


def test_password_is_not_stored_in_clear(identity):
    user = identity.create_user("a@example.com", "correct-horse", "A")
    stored = identity._passwords[user.id]
    assert "correct-horse" not in stored
    assert stored.startswith("$argon2id$")


def test_duplicate_email_conflicts(identity):
    identity.create_user("a@example.com", "correct-horse", "A")
    with pytest.raises(ConflictError):
        identity.create_user("A@example.com", "other-horse", "A2")


def test_short_password_is_rejected(identity):
    with pytest.raises(ValidationError):
        identity.create_user("a@example.com", "short", "A")


def test_set_password_clears_must_change_flag(identity):
    user = identity.create_user("a@example.com", "correct-horse", "A", must_change_password=True)

    identity.set_password(user.id, "battery-staple")

    assert identity.get_user(user.id).must_change_password is False
    assert identity.verify_password(user.id, "battery-staple")
    assert not identity.verify_password(user.id, "correct-horse")


def test_root_user_is_provisioned_once(identity):
    first = identity.ensure_root_user("root@example.com", "root-password-123", "Root")
    second = identity.ensure_root_user("root@example.com", "root-password-123", "Root")

    assert first is not None
    assert first.id == second.id
    assert identity.ensure_root_user(None, None, "Root") is None
