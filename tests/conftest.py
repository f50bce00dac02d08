import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authflow_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process cache keeps OTP and rate-limit state isolated per runtime reset
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("MAIL_TRANSPORT", "log")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("CLEANUP_ENABLED", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
# TestClient requests all share one address; tests that exercise the bucket set their own
os.environ.setdefault("GLOBAL_RATE_LIMIT_CAPACITY", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authflow.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
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


class RecordingMailer:
    """Stands in for EmailService and keeps every code it was asked to send."""

    def __init__(self):
        self.codes = []
        self.welcomed = []
        self.fail = False
        self.error = None

    def send_otp(self, to_email, code, *, recipient_name=None, expires_minutes=30):
        if self.error is not None:
            raise self.error
        if self.fail:
            return False
        self.codes.append((to_email, code))
        return True

    def send_welcome(self, to_email, name=None):
        self.welcomed.append(to_email)
        return True

    def last_code(self, email):
        for to_email, code in reversed(self.codes):
            if to_email == email:
                return code
        raise AssertionError(f"no code sent to {email}")


@pytest.fixture
def settings():
    from authflow.config import Settings

    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_hash_time_cost=1,
        password_hash_memory_cost=8192,
        password_hash_parallelism=1,
    )


@pytest.fixture
def cache():
    from authflow.storage.memory_cache import MemoryCache

    return MemoryCache()


@pytest.fixture
def memory_store(tmp_path):
    from authflow.storage.memory import MemoryStore

    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def rate_limiter(cache):
    from authflow.service.rate_limit import RateLimiter

    return RateLimiter(cache)


@pytest.fixture
def otp_service(cache, mailer, rate_limiter, settings):
    from authflow.service.otp import OTPService

    return OTPService(cache, mailer, rate_limiter, secret=settings.jwt_secret)


@pytest.fixture
def token_issuer(memory_store, cache, settings):
    from authflow.service.tokens import TokenIssuer

    return TokenIssuer(memory_store, cache, settings)


@pytest.fixture
def registration_service(cache, memory_store, otp_service, rate_limiter, token_issuer, mailer):
    from authflow.service.registration import RegistrationService

    return RegistrationService(
        cache, memory_store, otp_service, rate_limiter, token_issuer, mailer
    )


@pytest.fixture
def auth_service(memory_store, registration_service, token_issuer):
    from authflow.service.auth import AuthService

    return AuthService(memory_store, registration_service, token_issuer)
