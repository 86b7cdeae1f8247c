import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("DEFAULT_ADMIN_EMAIL", "admin@w9.test")
os.environ.setdefault("DEFAULT_ADMIN_PASSWORD", "admin-password-1")
os.environ.setdefault("APP_BASE_URL", "https://mail.w9.test/")
os.environ.setdefault("LOG_JSON", "false")
for _name in ("TURNSTILE_SECRET_KEY", "SMTP_HOST", "MEMORY_STORE_PATH"):
    os.environ.pop(_name, None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from w9mail.config import Settings  # noqa: E402
from w9mail.service.captcha import TurnstileVerifier  # noqa: E402
from w9mail.service.email import EmailService  # noqa: E402
from w9mail.service.passwords import CredentialHasher  # noqa: E402
from w9mail.service.runtime import reset_runtime_for_tests  # noqa: E402
from w9mail.service.senders import SenderResolver  # noqa: E402
from w9mail.storage.memory import MemoryStore  # noqa: E402


class RecordingMailer(EmailService):
    """EmailService double that records messages instead of relaying them."""

    def __init__(self, succeed: bool = True) -> None:
        super().__init__()
        self.succeed = succeed
        self.sent = []

    async def send(self, credentials, to, subject, body, *, cc=None, bcc=None, html=False):
        self.sent.append(
            {
                "credentials": credentials,
                "to": list(to) if not isinstance(to, str) else [to],
                "subject": subject,
                "body": body,
                "cc": cc,
                "bcc": bcc,
                "html": html,
            }
        )
        return self.succeed


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-secret",
        test_mode=True,
        use_memory_store=True,
        app_base_url="https://mail.w9.test/",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return CredentialHasher()


@pytest.fixture
def senders(memory_store):
    return SenderResolver(memory_store)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def no_captcha(settings):
    return TurnstileVerifier(None, settings.turnstile_verify_url)


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
