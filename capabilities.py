"""
External capabilities the relay delegates to.

- CardProcessor: card charges and billing profiles (Stripe)
- SmsSender: text delivery (Twilio REST API over httpx)
- QrRenderer: payment-link QR codes as PNG data URLs (qrcode + Pillow)

Every call is blocking and is not retried here; failures surface as
ExternalServiceError.
"""
import base64
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from io import BytesIO
from typing import List, Optional, Protocol

import httpx
import qrcode
import stripe
import structlog

from errors import ErrorCodes, ExternalServiceError

logger = structlog.get_logger(__name__)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class ChargeResult:
    external_id: str
    status: str


@dataclass
class InstrumentDetails:
    external_ref: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class CardProcessor(Protocol):
    def charge(
        self,
        amount: Decimal,
        currency: str,
        method_ref: str,
        description: str,
        customer_ref: Optional[str] = None,
        off_session: bool = False,
    ) -> ChargeResult: ...

    def create_profile(
        self, name: Optional[str] = None, email: Optional[str] = None, phone: Optional[str] = None
    ) -> str: ...

    def attach_method(self, profile_ref: str, method_ref: str) -> InstrumentDetails: ...

    def set_default(self, profile_ref: str, method_ref: str) -> None: ...

    def list_methods(self, profile_ref: str) -> List[InstrumentDetails]: ...

    def detach_method(self, method_ref: str) -> None: ...


class SmsSender(Protocol):
    def send(self, to_phone: str, body: str) -> None: ...


# ----------------------
# Stripe
# ----------------------

def _card_details(method) -> InstrumentDetails:
    card = method.get("card") or {}
    return InstrumentDetails(
        external_ref=method["id"],
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
    )


class StripeProcessor:
    """CardProcessor backed by Stripe PaymentIntents and Customers."""

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    def _require_key(self) -> str:
        if not self.api_key:
            raise ExternalServiceError("Card processor is not configured", ErrorCodes.CHARGE_DECLINED)
        return self.api_key

    def charge(
        self,
        amount: Decimal,
        currency: str,
        method_ref: str,
        description: str,
        customer_ref: Optional[str] = None,
        off_session: bool = False,
    ) -> ChargeResult:
        api_key = self._require_key()
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "payment_method": method_ref,
            "confirm": True,
            "description": description,
        }
        if customer_ref:
            params["customer"] = customer_ref
        if off_session:
            params["off_session"] = True
        else:
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}

        try:
            intent = stripe.PaymentIntent.create(api_key=api_key, **params)
        except stripe.CardError as e:
            logger.warning("card_declined", decline_code=getattr(e, "code", None))
            raise ExternalServiceError(e.user_message or "Card declined", ErrorCodes.CHARGE_DECLINED) from e
        except stripe.InvalidRequestError as e:
            raise ExternalServiceError(e.user_message or "Invalid payment method", ErrorCodes.INVALID_METHOD) from e
        except stripe.StripeError as e:
            logger.error("stripe_api_error", error=str(e))
            raise ExternalServiceError("Card processor unavailable", ErrorCodes.CHARGE_DECLINED) from e

        if intent.status != "succeeded":
            raise ExternalServiceError(f"Charge not completed ({intent.status})", ErrorCodes.CHARGE_DECLINED)
        return ChargeResult(external_id=intent.id, status=intent.status)

    def create_profile(
        self, name: Optional[str] = None, email: Optional[str] = None, phone: Optional[str] = None
    ) -> str:
        api_key = self._require_key()
        params = {k: v for k, v in {"name": name, "email": email, "phone": phone}.items() if v}
        try:
            customer = stripe.Customer.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            raise ExternalServiceError(str(e), ErrorCodes.BILLING_PROFILE_ERROR) from e
        return customer.id

    def attach_method(self, profile_ref: str, method_ref: str) -> InstrumentDetails:
        api_key = self._require_key()
        try:
            method = stripe.PaymentMethod.attach(method_ref, customer=profile_ref, api_key=api_key)
        except stripe.InvalidRequestError as e:
            raise ExternalServiceError(e.user_message or "Invalid payment method", ErrorCodes.INVALID_METHOD) from e
        except stripe.StripeError as e:
            raise ExternalServiceError(str(e), ErrorCodes.BILLING_PROFILE_ERROR) from e
        return _card_details(method)

    def set_default(self, profile_ref: str, method_ref: str) -> None:
        api_key = self._require_key()
        try:
            stripe.Customer.modify(
                profile_ref,
                invoice_settings={"default_payment_method": method_ref},
                api_key=api_key,
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(str(e), ErrorCodes.BILLING_PROFILE_ERROR) from e

    def list_methods(self, profile_ref: str) -> List[InstrumentDetails]:
        api_key = self._require_key()
        try:
            methods = stripe.PaymentMethod.list(customer=profile_ref, type="card", api_key=api_key)
        except stripe.StripeError as e:
            raise ExternalServiceError(str(e), ErrorCodes.BILLING_PROFILE_ERROR) from e
        return [_card_details(m) for m in methods.auto_paging_iter()]

    def detach_method(self, method_ref: str) -> None:
        api_key = self._require_key()
        try:
            stripe.PaymentMethod.detach(method_ref, api_key=api_key)
        except stripe.StripeError as e:
            raise ExternalServiceError(str(e), ErrorCodes.BILLING_PROFILE_ERROR) from e


# ----------------------
# SMS
# ----------------------

class TwilioSmsSender:
    """SmsSender posting to the Twilio Messages endpoint."""

    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[httpx.Client] = None):
        self.account_sid = account_sid
        self.from_number = from_number
        self.client = client or httpx.Client(timeout=10.0)
        self.auth = (account_sid, auth_token)

    def send(self, to_phone: str, body: str) -> None:
        url = f"{self.BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = self.client.post(
                url,
                auth=self.auth,
                data={"To": to_phone, "From": self.from_number, "Body": body},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"SMS delivery failed: {e}", ErrorCodes.SMS_DELIVERY_FAILED) from e


# ----------------------
# QR codes
# ----------------------

class QrRenderer:
    def __init__(self, size: int = 300, margin: int = 2, dark: str = "#000000", light: str = "#FFFFFF"):
        self.size = size
        self.margin = margin
        self.dark = dark
        self.light = light

    def render_png(self, url: str) -> bytes:
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=self.margin,
        )
        qr.add_data(url)
        qr.make(fit=True)
        # scale modules so the image is close to the requested width
        qr.box_size = max(1, self.size // (qr.modules_count + 2 * self.margin))
        img = qr.make_image(fill_color=self.dark, back_color=self.light)

        buf = BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    def render_data_url(self, url: str) -> str:
        encoded = base64.b64encode(self.render_png(url)).decode("ascii")
        return f"data:image/png;base64,{encoded}"
