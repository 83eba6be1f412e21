import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that loads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="storefront_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-automation-only-0001")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-automation-only-0002")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storefront.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh store file per test; in-process rate-limit buckets so limits start full
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("REDIS_URL", "")
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def outbox(monkeypatch):
    """Capture raw tokens handed to the notification sink."""
    sent = {"verification": [], "password_reset": []}
    email = get_runtime().email

    def _verification(to_email, raw_token):
        sent["verification"].append((to_email, raw_token))
        return True

    def _reset(to_email, raw_token):
        sent["password_reset"].append((to_email, raw_token))
        return True

    monkeypatch.setattr(email, "send_verification_email", _verification)
    monkeypatch.setattr(email, "send_password_reset_email", _reset)
    return sent


@pytest.fixture
def make_user():
    """Create a user directly in the runtime store, verified by default."""

    def _make(username, email=None, password="Pw1!aaaa", *, role="user", verified=True, active=True):
        runtime = get_runtime()
        return runtime.store.create_user(
            email=email or f"{username}@example.com",
            username=username,
            password_hash=runtime.auth._hash_password(password),
            role=role,
            is_verified=verified,
            is_active=active,
        )

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
