import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("TOKEN_SECRET", "test-secret")
os.environ.setdefault("FRONTEND_APP_URL", "https://app.taskforge.test")
os.environ["AUTH_RATE_LIMIT_ENABLED"] = "false"
os.environ["ACCOUNT_STORE_BACKEND"] = "memory"

from taskforge.services.account_guard import AccountGuard
from taskforge.services.account_store import InMemoryAccountStore
from taskforge.services.mail_delivery_service import MailDeliveryError
from taskforge.services.token_service import TokenService


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    def __init__(self, error: Exception | None = None):
        self.sent: list[dict] = []
        self.error = error
        self.email_configured = True

    async def send_email(self, *, to_email, subject, text_body, html_body=None):
        if self.error is not None:
            raise self.error
        self.sent.append(
            {
                "to_email": to_email,
                "subject": subject,
                "text_body": text_body,
                "html_body": html_body,
            }
        )
        return {"provider": "recording", "status_code": 200}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryAccountStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def guard(store, mailer, clock):
    return AccountGuard(
        store=store,
        mailer=mailer,
        tokens=TokenService("test-secret", clock=clock),
        clock=clock,
    )


@pytest.fixture
def rate_limited_mailer():
    return RecordingMailer(
        error=MailDeliveryError("quota", provider="brevo", category="rate_limited", status_code=429)
    )
