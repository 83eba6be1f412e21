import inspect
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from storefront.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _stub_store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    return store


def test_row_to_user_maps_columns():
    store = _stub_store()
    now = datetime.now(timezone.utc)
    user_id = uuid.uuid4()
    user = store._row_to_user(
        {
            "id": user_id,
            "username": "alice",
            "email": "alice@x.com",
            "password_hash": "hash",
            "role": "admin",
            "is_verified": True,
            "is_active": True,
            "refresh_token": "rt",
            "created_at": now,
            "updated_at": now,
        }
    )
    assert user.id == str(user_id)
    assert user.is_admin
    assert user.refresh_token == "rt"
    assert user.email_verification_token_hash is None


def test_constraint_field_from_diag():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_username_key"))
    assert PostgresStore._constraint_field(exc) == "username"
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_email_key"))
    assert PostgresStore._constraint_field(exc) == "email"


def test_unknown_sort_rejected_before_query():
    store = _stub_store()
    with pytest.raises(ValueError):
        store.list_users(sort="random")


def test_constructor_takes_only_dsn():
    assert list(inspect.signature(PostgresStore.__init__).parameters) == ["self", "dsn"]
