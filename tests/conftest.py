import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might build settings or the runtime
os.environ["TEST_MODE"] = "true"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ["REDIS_URL"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["ADMIN_API_TOKEN"] = ""
os.environ.setdefault(
    "ENCRYPTION_KEY", "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff0"
)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from codebot.config import Settings, reset_settings_cache  # noqa: E402
from codebot.service.runtime import reset_runtime_for_tests  # noqa: E402
from codebot.storage.memory import MemoryStore  # noqa: E402
from codebot.service.transport import OutboxTransport  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_settings_cache()
    reset_runtime_for_tests()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        credential_encryption_key="unit-test-key",
        retry_base_delay=0.01,
        retry_max_delay=0.02,
        transport_chunk_delay=0,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def outbox() -> OutboxTransport:
    return OutboxTransport()


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
