import asyncio
import inspect
import os
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlparse

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Step-up sessions, codes and throttles stay process-local so tests never share state
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.service.email import EmailService  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Settable clock; call it like ``datetime.now(timezone.utc)``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailService(EmailService):
    """Captures outgoing messages instead of talking to SMTP."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.outbox: list[dict] = []
        self.deliver = True

    def send(self, to_email, subject, html_body, text_body=None) -> bool:
        self.outbox.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body or ""}
        )
        return self.deliver

    def subjects(self) -> list[str]:
        return [message["subject"] for message in self.outbox]

    def last_code(self) -> str:
        for message in reversed(self.outbox):
            match = re.search(r"Your security code is: (\d{6})", message["text"])
            if match:
                return match.group(1)
        raise AssertionError("no two-factor code was sent")

    def _link_token(self, path: str) -> str:
        pattern = re.compile(rf"(https?://\S+/{path}\?\S+)")
        for message in reversed(self.outbox):
            match = pattern.search(message["text"])
            if match:
                return parse_qs(urlparse(match.group(1)).query)["token"][0]
        raise AssertionError(f"no {path} link was sent")

    def last_confirmation_token(self) -> str:
        return self._link_token("confirm-email")

    def last_reset_token(self) -> str:
        return self._link_token("reset-password")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingEmailService(base_url="http://testserver")


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
