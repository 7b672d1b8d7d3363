import asyncio
import inspect
import os
import tempfile

# Environment must be in place before anything builds Settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits use the in-process bucket unless a test opts into Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

from tokenward.service.email import EmailService  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingEmailService(EmailService):
    """EmailService that keeps messages in memory instead of sending them."""

    def __init__(self, *, deliver: bool = True, **kwargs):
        kwargs.setdefault("base_url", "http://testserver")
        super().__init__(**kwargs)
        self.deliver = deliver
        self.outbox: list[dict] = []

    def notify(self, to, subject, text, html_body=None):
        self.outbox.append({"to": to, "subject": subject, "text": text, "html": html_body})
        return self.deliver

    def last_to(self, address: str) -> dict:
        matches = [m for m in self.outbox if m["to"] == address]
        assert matches, f"no message sent to {address}"
        return matches[-1]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # The memory store snapshots to SHARED_FS_ROOT, so every test gets its own
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def outbox():
    """Swap the runtime's email service for a recording one."""
    from tokenward.service.runtime import get_runtime

    runtime = get_runtime()
    recorder = RecordingEmailService()
    runtime.email = recorder
    runtime.accounts.email = recorder
    return recorder


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
