"""
Pytest configuration and fixtures.

The card processor and SMS transport are replaced by recording fakes; the
QR renderer and bcrypt hashing are real. Time is driven by FrozenClock.
"""
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from capabilities import ChargeResult, InstrumentDetails
from container import Services, build_services
from errors import ErrorCodes, ExternalServiceError
from main import create_app
from repositories import Repositories
from settings import Settings


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProcessor:
    """Records every call; `decline` makes the next charges fail."""

    def __init__(self):
        self.decline = False
        self.charges: List[dict] = []
        self.profiles: List[dict] = []
        self.attached: List[tuple] = []
        self.defaults: List[tuple] = []
        self.detached: List[str] = []
        self._ids = itertools.count(1)

    def charge(self, amount: Decimal, currency, method_ref, description, customer_ref=None, off_session=False):
        self.charges.append(
            {
                "amount": amount,
                "currency": currency,
                "method_ref": method_ref,
                "description": description,
                "customer_ref": customer_ref,
                "off_session": off_session,
            }
        )
        if self.decline:
            raise ExternalServiceError("Your card was declined.", ErrorCodes.CHARGE_DECLINED)
        return ChargeResult(external_id=f"pi_{next(self._ids)}", status="succeeded")

    def create_profile(self, name=None, email=None, phone=None):
        self.profiles.append({"name": name, "email": email, "phone": phone})
        return f"cus_{next(self._ids)}"

    def attach_method(self, profile_ref, method_ref):
        self.attached.append((profile_ref, method_ref))
        return InstrumentDetails(external_ref=method_ref, brand="visa", last4="4242", exp_month=12, exp_year=2030)

    def set_default(self, profile_ref, method_ref):
        self.defaults.append((profile_ref, method_ref))

    def list_methods(self, profile_ref):
        return [InstrumentDetails(external_ref=m) for p, m in self.attached if p == profile_ref]

    def detach_method(self, method_ref):
        self.detached.append(method_ref)


class FakeSms:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[tuple] = []

    def send(self, to_phone, body):
        if self.fail:
            raise ExternalServiceError("SMS delivery failed: 503", ErrorCodes.SMS_DELIVERY_FAILED)
        self.sent.append((to_phone, body))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_name="streetpay-test",
        app_env="test",
        log_level="WARNING",
        frontend_url="https://pay.example.com",
        jwt_secret="test-secret",
        bcrypt_rounds=10,
        database_url=None,
        stripe_secret_key=None,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def services(settings, clock, processor) -> Services:
    return build_services(settings, repos=Repositories.in_memory(), processor=processor, clock=clock)


@pytest.fixture
def vendor(services):
    return services.identity.register_vendor("A", "a@x.com", "pw", "Shop")


@pytest.fixture
def client(settings, services) -> TestClient:
    app = create_app(settings, services)
    with TestClient(app) as c:
        yield c
