from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.errors import InvalidGrant, ValidationError
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import ROLE_ADMIN, ROLE_EDITOR, AuthorizationCodeRecord


def test_upsert_links_by_provider_identity():
    store = MemoryStore()
    first = store.upsert_user("a@example.com", "A", "google", "g-1")
    # the provider identity wins even if the address changes upstream
    second = store.upsert_user("renamed@example.com", None, "google", "g-1")
    assert first == second
    user = store.get_user(first)
    assert user.email == "renamed@example.com"
    assert user.name == "A"
    assert user.last_login_at is not None


def test_same_email_from_another_provider_is_a_separate_user():
    store = MemoryStore()
    google_id = store.upsert_user("Same@Example.com", "S", "google", "g-1")
    microsoft_id = store.upsert_user("same@example.com", "S", "microsoft", "m-1")
    assert google_id != microsoft_id
    assert store.get_user(google_id).provider == "google"
    assert store.get_user(microsoft_id).provider_user_id == "m-1"
    assert len(store.list_users()) == 2


def test_admin_role_not_inherited_through_shared_email():
    store = MemoryStore()
    admin_id = store.upsert_user("admin@example.com", "Admin", "google", "g-1")
    store.add_role(admin_id, ROLE_ADMIN)
    other_id = store.upsert_user("admin@example.com", None, "microsoft", "ms-2")
    assert other_id != admin_id
    assert not store.get_user(other_id).is_admin
    assert store.get_user(admin_id).is_admin


def test_bootstrap_admin_promoted():
    store = MemoryStore(bootstrap_admins=["Boss@Example.com"])
    boss = store.get_user(store.upsert_user("boss@example.com", None, "apple", "a-1"))
    other = store.get_user(store.upsert_user("other@example.com", None, "apple", "a-2"))
    assert boss.is_admin and boss.is_editor
    assert not other.is_admin and not other.is_editor


def test_add_role():
    store = MemoryStore()
    user_id = store.upsert_user("ed@example.com", None, "google", "g-9")
    assert store.add_role(user_id, ROLE_EDITOR).is_editor
    assert store.add_role("missing", ROLE_EDITOR) is None


@pytest.mark.parametrize("email, subject", [("", "g-1"), ("  ", "g-1"), ("a@example.com", "")])
def test_upsert_validation(email, subject):
    with pytest.raises(ValidationError):
        MemoryStore().upsert_user(email, None, "google", subject)


def test_code_lifecycle():
    store = MemoryStore()
    record = AuthorizationCodeRecord.new("user-1", "cli", "http://127.0.0.1/cb")
    store.save_authorization_code(record)
    with pytest.raises(ConstraintViolation):
        store.save_authorization_code(record)

    redeemed = store.redeem_authorization_code(record.code)
    assert redeemed.used
    with pytest.raises(InvalidGrant, match="already used"):
        store.redeem_authorization_code(record.code)
    with pytest.raises(InvalidGrant, match="not found"):
        store.redeem_authorization_code("code_missing")


def test_expired_code_and_sweep():
    store = MemoryStore()
    stale = AuthorizationCodeRecord.new("u", "cli", "http://x/cb", ttl=timedelta(seconds=-1))
    fresh = AuthorizationCodeRecord.new("u", "cli", "http://x/cb")
    store.save_authorization_code(stale)
    store.save_authorization_code(fresh)
    with pytest.raises(InvalidGrant, match="expired"):
        store.redeem_authorization_code(stale.code)
    assert store.delete_expired_authorization_codes(datetime.now(timezone.utc)) == 1
    assert list(store.authorization_codes) == [fresh.code]
