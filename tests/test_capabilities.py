import base64
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe

from capabilities import QrRenderer, StripeProcessor, TwilioSmsSender, to_minor_units
from errors import ErrorCodes, ExternalServiceError


@pytest.mark.parametrize("amount,cents", [("12.50", 1250), ("0.01", 1), ("10", 1000), ("19.99", 1999)])
def test_to_minor_units(amount, cents):
    assert to_minor_units(Decimal(amount)) == cents


def test_qr_renderer_returns_png_data_url():
    data_url = QrRenderer(size=300, margin=2).render_data_url("https://pay.example.com/pay/abc")
    prefix = "data:image/png;base64,"
    assert data_url.startswith(prefix)
    png = base64.b64decode(data_url[len(prefix):])
    assert png[:8] == b"\x89PNG\r\n\x1a\n"


def test_twilio_sender_posts_message():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(201, json={"sid": "SM1"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    TwilioSmsSender("AC123", "token", "+15550000000", client=client).send("+15551112222", "code 1234")

    assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert "Body=code+1234" in seen["body"]


def test_twilio_sender_raises_on_error_status():
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    sender = TwilioSmsSender("AC123", "token", "+15550000000", client=client)
    with pytest.raises(ExternalServiceError) as exc:
        sender.send("+15551112222", "hi")
    assert exc.value.code == ErrorCodes.SMS_DELIVERY_FAILED


def test_stripe_charge_converts_to_cents(monkeypatch):
    calls = {}

    def fake_create(**kwargs):
        calls.update(kwargs)
        return SimpleNamespace(id="pi_123", status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    result = StripeProcessor("sk_test_x").charge(Decimal("12.50"), "USD", "pm_1", "Lunch")

    assert result.external_id == "pi_123"
    assert calls["amount"] == 1250
    assert calls["currency"] == "usd"
    assert calls["confirm"] is True
    assert calls["api_key"] == "sk_test_x"


def test_stripe_off_session_charge_uses_customer(monkeypatch):
    calls = {}

    def fake_create(**kwargs):
        calls.update(kwargs)
        return SimpleNamespace(id="pi_9", status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    StripeProcessor("sk_test_x").charge(Decimal("5"), "usd", "pm_1", "x", customer_ref="cus_1", off_session=True)

    assert calls["customer"] == "cus_1"
    assert calls["off_session"] is True
    assert "automatic_payment_methods" not in calls


def test_stripe_incomplete_intent_is_declined(monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "create", lambda **kw: SimpleNamespace(id="pi_1", status="requires_action")
    )
    with pytest.raises(ExternalServiceError) as exc:
        StripeProcessor("sk_test_x").charge(Decimal("5"), "usd", "pm_1", "x")
    assert exc.value.code == ErrorCodes.CHARGE_DECLINED


def test_stripe_without_key_fails_cleanly():
    with pytest.raises(ExternalServiceError):
        StripeProcessor(None).charge(Decimal("5"), "usd", "pm_1", "x")


def test_stripe_list_methods_reads_card_details(monkeypatch):
    methods = [{"id": "pm_1", "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}}]
    monkeypatch.setattr(
        stripe.PaymentMethod, "list", lambda **kw: SimpleNamespace(auto_paging_iter=lambda: iter(methods))
    )
    [details] = StripeProcessor("sk_test_x").list_methods("cus_1")
    assert (details.external_ref, details.brand, details.last4) == ("pm_1", "visa", "4242")
