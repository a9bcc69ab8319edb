import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment defaults must be in place before anything imports medhub.app,
# which loads settings at import time.
_test_tmp_dir = tempfile.mkdtemp(prefix="medhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only")
# Per-process token buckets unless a test run points REDIS_URL at a server
os.environ.setdefault("REDIS_URL", "")
# Generous throttles; rate-limit tests tighten them explicitly
for _name in ("REGISTER", "LOGIN", "REFRESH", "RESET"):
    os.environ.setdefault(f"{_name}_RATE_LIMIT", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from medhub.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh snapshot directory per test keeps the memory store empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    monkeypatch.undo()
    reset_runtime_for_tests()


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
