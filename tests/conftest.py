import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="moodcircle_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789"
)
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210"
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from moodcircle.config import Settings  # noqa: E402
from moodcircle.service.runtime import reset_runtime_for_tests  # noqa: E402
from moodcircle.storage.memory import MemoryStore  # noqa: E402


class RecordingSender:
    """Email sender double that keeps every code it was asked to deliver."""

    def __init__(self, result: bool = True, error: Exception | None = None):
        self.result = result
        self.error = error
        self.sent: list[tuple[str, str, int]] = []

    def send_otp(self, to_email: str, code: str, expiry_minutes: int) -> bool:
        self.sent.append((to_email, code, expiry_minutes))
        if self.error is not None:
            raise self.error
        return self.result

    def last_code(self, email: str) -> str:
        for to_email, code, _ in reversed(self.sent):
            if to_email == email:
                return code
        raise AssertionError(f"no code sent to {email}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="unit-access-secret-for-automation-only-0123456789",
        jwt_refresh_secret="unit-refresh-secret-for-automation-only-9876543210",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
        otp_expiry_minutes=10,
        email_send_timeout_seconds=2,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def make_sender():
    return RecordingSender


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
