"""Tests for the in-memory credential store and its JSON persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from storefront.storage.errors import ConstraintViolation
from storefront.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _create(store, username, email=None, **kwargs):
    return store.create_user(email or f"{username}@example.com", username, "hash", **kwargs)


class TestUniqueness:
    def test_email_is_lowercased(self, memory_store):
        user = _create(memory_store, "alice", "Alice@Example.COM")
        assert user.email == "alice@example.com"
        assert memory_store.get_user_by_email("ALICE@example.com").id == user.id

    def test_duplicate_email_rejected(self, memory_store):
        _create(memory_store, "alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as excinfo:
            _create(memory_store, "alice2", "ALICE@example.com")
        assert excinfo.value.detail == {"field": "email"}

    def test_duplicate_username_rejected(self, memory_store):
        _create(memory_store, "alice", "a1@example.com")
        with pytest.raises(ConstraintViolation) as excinfo:
            _create(memory_store, "alice", "a2@example.com")
        assert excinfo.value.detail == {"field": "username"}

    def test_save_rejects_taken_username(self, memory_store):
        _create(memory_store, "alice")
        bob = _create(memory_store, "bob")
        bob.username = "alice"
        with pytest.raises(ConstraintViolation):
            memory_store.save_user(bob)
        assert memory_store.get_user(bob.id).username == "bob"


class TestLookups:
    def test_identifier_matches_email_or_username(self, memory_store):
        user = _create(memory_store, "alice", "alice@example.com")
        assert memory_store.get_user_by_identifier("alice").id == user.id
        assert memory_store.get_user_by_identifier("ALICE@example.com").id == user.id
        assert memory_store.get_user_by_identifier("nobody") is None

    def test_records_are_copies(self, memory_store):
        """Mutating a returned record does not change stored state until saved."""
        user = _create(memory_store, "alice")
        user.role = "admin"
        assert memory_store.get_user(user.id).role == "user"
        memory_store.save_user(user)
        assert memory_store.get_user(user.id).role == "admin"

    def test_verification_token_lookup_respects_expiry(self, memory_store):
        now = datetime.now(timezone.utc)
        user = _create(
            memory_store,
            "alice",
            email_verification_token_hash="digest",
            email_verification_expires_at=now + timedelta(hours=1),
        )
        assert memory_store.get_user_by_verification_token("digest", now).id == user.id
        assert memory_store.get_user_by_verification_token("other", now) is None
        later = now + timedelta(hours=2)
        assert memory_store.get_user_by_verification_token("digest", later) is None

    def test_reset_token_lookup_respects_expiry(self, memory_store):
        now = datetime.now(timezone.utc)
        user = _create(memory_store, "alice")
        user.set_reset_token("reset-digest", now + timedelta(minutes=60))
        memory_store.save_user(user)
        assert memory_store.get_user_by_reset_token("reset-digest", now).id == user.id
        assert (
            memory_store.get_user_by_reset_token("reset-digest", now + timedelta(minutes=61))
            is None
        )


class TestRefreshToken:
    def test_set_overwrites_previous_token(self, memory_store):
        user = _create(memory_store, "alice")
        assert memory_store.set_refresh_token(user.id, "first")
        assert memory_store.set_refresh_token(user.id, "second")
        assert memory_store.get_user(user.id).refresh_token == "second"
        assert memory_store.get_user_by_refresh_token("first") is None
        assert memory_store.get_user_by_refresh_token("second").id == user.id

    def test_conditional_clear_ignores_stale_token(self, memory_store):
        user = _create(memory_store, "alice")
        memory_store.set_refresh_token(user.id, "current")
        assert memory_store.clear_refresh_token(user.id, expected="stale") is False
        assert memory_store.get_user(user.id).refresh_token == "current"
        assert memory_store.clear_refresh_token(user.id, expected="current") is True
        assert memory_store.get_user(user.id).refresh_token is None

    def test_set_for_unknown_user_fails(self, memory_store):
        assert memory_store.set_refresh_token("missing", "token") is False


class TestListing:
    def test_pagination_and_total(self, memory_store):
        for name in ("carol", "alice", "bob", "dave"):
            _create(memory_store, name)
        page, total = memory_store.list_users(offset=0, limit=3, sort="asc")
        assert total == 4
        assert [u.username for u in page] == ["alice", "bob", "carol"]
        page, _ = memory_store.list_users(offset=3, limit=3, sort="asc")
        assert [u.username for u in page] == ["dave"]

    def test_descending_sort(self, memory_store):
        for name in ("alice", "bob"):
            _create(memory_store, name)
        page, _ = memory_store.list_users(sort="desc")
        assert [u.username for u in page] == ["bob", "alice"]

    def test_unknown_sort_rejected(self, memory_store):
        with pytest.raises(ValueError):
            memory_store.list_users(sort="random")


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store, "alice", is_verified=True)
        store.set_refresh_token(user.id, "refresh")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        loaded = reloaded.get_user(user.id)
        assert loaded.username == "alice"
        assert loaded.is_verified is True
        assert loaded.refresh_token == "refresh"
        assert loaded.created_at == user.created_at

    def test_delete_user(self, memory_store):
        user = _create(memory_store, "alice")
        assert memory_store.delete_user(user.id) is True
        assert memory_store.get_user(user.id) is None
        assert memory_store.delete_user(user.id) is False
