import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="authgate_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TOKEN_SECRET", "test-token-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings, reset_settings_cache  # noqa: E402
from authgate.service.clock import ManualClock  # noqa: E402
from authgate.service.passwords import PasswordHasher  # noqa: E402
from authgate.service.providers import ProviderIdentity  # noqa: E402
from authgate.service.runtime import Runtime  # noqa: E402

TEST_SECRET = "test-token-secret-for-testing-only-do-not-use-in-production"


class RecordingNotifier:
    """Notifier double that keeps every token it was asked to deliver."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.resets = []
        self.confirmations = []

    def send_reset_email(self, user, token):
        self.resets.append((user.email, token))
        return self.deliver

    def send_confirmation_email(self, user, token, email=None):
        self.confirmations.append((email or user.email, token))
        return self.deliver

    @property
    def last_reset_token(self):
        return self.resets[-1][1]

    @property
    def last_confirmation_token(self):
        return self.confirmations[-1][1]


class FakeProviderAdapter:
    """Provider adapter that accepts a fixed set of assertions."""

    def __init__(self, name, identities=None):
        self.name = name
        self.identities = dict(identities or {})
        self.calls = 0

    def add(self, assertion, provider_uid, email, *, email_verified=True, username=None):
        self.identities[assertion] = ProviderIdentity(
            provider=self.name,
            provider_uid=provider_uid,
            email=email,
            email_verified=email_verified,
            username=username,
        )

    async def verify_assertion(self, raw):
        self.calls += 1
        return self.identities.get(raw)


def fast_password_hasher(time_cost: int = 1) -> PasswordHasher:
    """Argon2id with minimal cost so suites stay quick."""
    return PasswordHasher(
        Argon2Hasher(type=Type.ID, time_cost=time_cost, memory_cost=1024, parallelism=1)
    )


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hasher():
    return fast_password_hasher()


@pytest.fixture
def github():
    return FakeProviderAdapter("github")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        token_secret=TEST_SECRET,
        state_dir=str(tmp_path),
        password_min_length=3,
        test_mode=True,
    )


@pytest.fixture
def make_runtime(settings, clock, notifier, hasher, github):
    """Factory for runtimes sharing the test's clock, notifier and fakes."""

    def _make(**overrides):
        configured = settings.model_copy(update=overrides) if overrides else settings
        return Runtime(
            configured,
            clock=clock,
            notifier=notifier,
            providers={"github": github},
            password_hasher=hasher,
        )

    return _make


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()


@pytest.fixture
def gateway(runtime):
    return runtime.gateway


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
