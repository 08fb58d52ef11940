import asyncio
import inspect
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Each test gets fresh in-process throttles and consumed-session tracking
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from meterauth.config import Settings  # noqa: E402
from meterauth.service.account import AccountService  # noqa: E402
from meterauth.service.audit import AuthLoggingService  # noqa: E402
from meterauth.service.clock import ManualClock  # noqa: E402
from meterauth.service.delivery import CodeDeliveryService  # noqa: E402
from meterauth.service.email import EmailService  # noqa: E402
from meterauth.service.login import ConsumedSessionLedger, LoginOrchestrator  # noqa: E402
from meterauth.service.password_reset import PasswordResetOrchestrator  # noqa: E402
from meterauth.service.passwords import PasswordService, PasswordValidator  # noqa: E402
from meterauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from meterauth.service.session_tokens import SessionTokenCodec  # noqa: E402
from meterauth.service.sms import SmsService  # noqa: E402
from meterauth.service.tokens import TokenService  # noqa: E402
from meterauth.service.two_factor import TwoFactorService  # noqa: E402
from meterauth.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "ValidPassword123!"

_TOKEN_IN_URL = re.compile(r"token=([0-9a-f]{64})")
_CODE_IN_BODY = re.compile(r"verification code is (\d{6})")


class RecordingEmailService(EmailService):
    """EmailService that keeps messages in memory instead of talking SMTP."""

    def __init__(self, *, succeed: bool = True):
        super().__init__(from_name="MeterIt Pro")
        self.outbox = []
        self.succeed = succeed

    def _send_email(self, to_email, subject, html_body, text_body=None):
        self.outbox.append({"to": to_email, "subject": subject, "text": text_body or ""})
        return self.succeed

    def last_reset_token(self):
        for message in reversed(self.outbox):
            match = _TOKEN_IN_URL.search(message["text"])
            if match:
                return match.group(1)
        return None

    def last_code(self):
        for message in reversed(self.outbox):
            match = _CODE_IN_BODY.search(message["text"])
            if match:
                return match.group(1)
        return None


class RecordingSmsService(SmsService):
    def __init__(self):
        super().__init__()
        self.messages = []

    async def send_message(self, to_number, message):
        self.messages.append({"to": to_number, "message": message})
        return True


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


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        frontend_url="https://app.example.com",
    )


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(settings):
    return MemoryStore(mfa_encryption_key=settings.effective_mfa_secret_key)


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def sms_service():
    return RecordingSmsService()


@pytest.fixture
def passwords(store):
    return PasswordService(store)


@pytest.fixture
def validator(settings):
    return PasswordValidator(min_length=settings.password_min_length)


@pytest.fixture
def codec(settings, clock):
    return SessionTokenCodec(settings, clock=clock)


@pytest.fixture
def token_service(store, settings, clock):
    return TokenService(store, settings, clock=clock)


@pytest.fixture
def two_factor(store, settings, clock):
    return TwoFactorService(store, settings, clock=clock)


@pytest.fixture
def audit(store, clock):
    return AuthLoggingService(store, clock=clock)


@pytest.fixture
def delivery(email_service, sms_service, settings):
    return CodeDeliveryService(
        email=email_service, sms=sms_service, expires_minutes=settings.otp_ttl_minutes
    )


@pytest.fixture
def login_orchestrator(store, settings, passwords, two_factor, audit, codec, delivery, clock):
    return LoginOrchestrator(
        store,
        settings,
        passwords=passwords,
        two_factor=two_factor,
        audit=audit,
        codec=codec,
        ledger=ConsumedSessionLedger(clock=clock),
        delivery=delivery,
        clock=clock,
    )


@pytest.fixture
def reset_orchestrator(
    store, settings, token_service, passwords, validator, audit, email_service, clock
):
    return PasswordResetOrchestrator(
        store,
        settings,
        tokens=token_service,
        passwords=passwords,
        validator=validator,
        audit=audit,
        email=email_service,
        clock=clock,
    )


@pytest.fixture
def account_service(
    store, passwords, validator, two_factor, token_service, audit, codec, delivery, clock
):
    return AccountService(
        store,
        passwords=passwords,
        validator=validator,
        two_factor=two_factor,
        tokens=token_service,
        audit=audit,
        codec=codec,
        delivery=delivery,
        clock=clock,
    )


@pytest.fixture
def make_user(store, passwords, clock):
    """Create a user with a password; extra keywords go to ``create_user``."""

    def _make(email="test@example.com", password=STRONG_PASSWORD, **kwargs):
        user = store.create_user(email, **kwargs)
        passwords.save_password(user.id, password)
        return store.get_user(user.id)

    return _make
