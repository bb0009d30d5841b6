import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything imports tokenledger settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# TestClient talks plain http, so Secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenledger.config import Settings  # noqa: E402
from tokenledger.service.credentials import CredentialVerifier  # noqa: E402
from tokenledger.service.ledger import RefreshLedger  # noqa: E402
from tokenledger.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenledger.service.tokens import TokenCodec  # noqa: E402
from tokenledger.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Correct-Horse-Battery-9"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        upstream_timeout_seconds=2.0,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


@pytest.fixture
def verifier(memory_store):
    return CredentialVerifier(memory_store, timeout=2.0)


@pytest.fixture
def ledger(memory_store):
    return RefreshLedger(memory_store, timeout=2.0)


@pytest.fixture
def test_password():
    return TEST_PASSWORD


@pytest.fixture
def test_user(memory_store, verifier):
    """Active user whose password is ``TEST_PASSWORD``."""
    user = memory_store.create_user("a@x.com", "Alice")
    pwd_hash, algo = verifier.hash_secret(TEST_PASSWORD)
    memory_store.save_password(user.id, pwd_hash, algo)
    return user


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
