import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="novo_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "google-secret")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_ID", "github-client")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_SECRET", "github-secret")
# In-process fallbacks keep tests independent of a running Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from novo.config import Settings  # noqa: E402
from novo.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
    )


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


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
