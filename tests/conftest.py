import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="fingerauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("CLIENT_DOMAIN", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from fingerauth.config import Settings  # noqa: E402
from fingerauth.service.messages import set_fallback_locale  # noqa: E402
from fingerauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from fingerauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"

DEVICE_A = {
    "sec-ch-ua": '"Chromium";v="124", "Google Chrome";v="124"',
    "user-agent": "Mozilla/5.0 (X11; Linux x86_64) Chrome/124.0",
    "accept-language": "ru-RU,ru;q=0.9",
}
DEVICE_B = {
    "sec-ch-ua": '"Firefox";v="125"',
    "user-agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) Firefox/125.0",
    "accept-language": "en-US,en;q=0.8",
}


class RecordingMailer:
    """Collects code mails instead of sending them."""

    def __init__(self, *, fail: bool = False):
        self.sent: List[Tuple[str, str, Optional[str]]] = []
        self.fail = fail

    def send_otp_code(self, to_email: str, code: str, locale: Optional[str] = None) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((to_email, code, locale))
        return True

    def codes_for(self, email: str) -> List[str]:
        return [code for to, code, _ in self.sent if to == email]


def sequence_codes(*codes: str):
    """Code factory yielding ``codes`` in order, then ``0000`` forever."""
    remaining = list(codes)

    def factory() -> str:
        return remaining.pop(0) if remaining else "0000"

    return factory


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets its own memory-store state directory
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    set_fallback_locale("ru")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def mailer():
    return RecordingMailer()


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
