"""
Identity registry: vendors, personal payees (users) and paying customers.

Vendors and users get a permanent payment link plus its QR image at
registration. Customers are created lazily and own their saved
instruments; at most one instrument per customer is the default.
"""
from contextlib import ExitStack
from typing import List, Optional

import structlog
from pymongo.errors import DuplicateKeyError

from auth import CredentialHasher
from capabilities import CardProcessor, QrRenderer
from errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from repositories import KeyedLock, Repositories
from schemas import Customer, SavedInstrument, User, Vendor, new_id
from settings import Settings

logger = structlog.get_logger(__name__)


def _required(**fields) -> None:
    missing = [name for name, value in fields.items() if value is None or not str(value).strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", ErrorCodes.MISSING_FIELD)


class IdentityRegistry:
    def __init__(
        self,
        settings: Settings,
        repos: Repositories,
        hasher: CredentialHasher,
        processor: CardProcessor,
        qr: QrRenderer,
    ):
        self.settings = settings
        self.repos = repos
        self.hasher = hasher
        self.processor = processor
        self.qr = qr
        self._customer_lock = KeyedLock()
        self._claim_lock = KeyedLock()

    def locator(self, kind: str, identity_id: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/{kind}/{identity_id}"

    # ----------------------
    # Vendors
    # ----------------------

    def register_vendor(self, name: str, email: str, password: str, business_name: str) -> Vendor:
        _required(name=name, email=email, password=password, businessName=business_name)
        email = email.strip().lower()
        credential_hash = self.hasher.hash(password)

        with self._claim_lock(f"email:{email}"):
            if self.resolve_vendor_by_email(email) is not None:
                raise ConflictError("Email already registered", ErrorCodes.DUPLICATE_EMAIL)

            vendor_id = new_id()
            payment_url = self.locator("pay-vendor", vendor_id)
            vendor = Vendor(
                id=vendor_id,
                name=name.strip(),
                email=email,
                businessName=business_name.strip(),
                credentialHash=credential_hash,
                vendorPaymentUrl=payment_url,
                vendorQRCode=self.qr.render_data_url(payment_url),
            )
            try:
                self.repos.vendors.put(vendor)
            except DuplicateKeyError as e:
                # another process won the race for this email
                raise ConflictError("Email already registered", ErrorCodes.DUPLICATE_EMAIL) from e
        logger.info("vendor_registered", vendor_id=vendor.id)
        return vendor

    def resolve_vendor_by_email(self, email: str) -> Optional[Vendor]:
        email = email.strip().lower()
        return self.repos.vendors.find_one(lambda v: v.email == email)

    def resolve_vendor(self, vendor_id: str) -> Vendor:
        vendor = self.repos.vendors.get(vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor not found", ErrorCodes.VENDOR_NOT_FOUND)
        return vendor

    # ----------------------
    # Users
    # ----------------------

    def register_user(self, name: str, phone: str) -> User:
        # several personal QR codes may share one phone
        _required(name=name, phone=phone)
        user_id = new_id()
        payment_url = self.locator("pay-user", user_id)
        user = User(
            id=user_id,
            name=name.strip(),
            phone=phone.strip(),
            paymentUrl=payment_url,
            qrCode=self.qr.render_data_url(payment_url),
        )
        self.repos.users.put(user)
        logger.info("user_registered", user_id=user.id)
        return user

    def resolve_user(self, user_id: str) -> User:
        user = self.repos.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found", ErrorCodes.USER_NOT_FOUND)
        return user

    # ----------------------
    # Customers & instruments
    # ----------------------

    def resolve_or_create_customer(
        self, phone: Optional[str] = None, email: Optional[str] = None, name: Optional[str] = None
    ) -> Customer:
        phone = phone.strip() if phone else None
        email = email.strip().lower() if email else None
        if not phone and not email:
            raise ValidationError("Phone or email is required", ErrorCodes.MISSING_FIELD)

        def matches(c: Customer) -> bool:
            return (phone is not None and c.phone == phone) or (email is not None and c.email == email)

        claims = sorted(f"customer-{kind}:{value}" for kind, value in (("phone", phone), ("email", email)) if value)
        with ExitStack() as stack:
            # always taken in sorted order
            for claim in claims:
                stack.enter_context(self._claim_lock(claim))

            existing = self.repos.customers.find_one(matches)
            if existing is not None:
                return existing

            customer = Customer(phone=phone, email=email, name=name)
            customer.billingProfileRef = self.processor.create_profile(name=name, email=email, phone=phone)
            self.repos.customers.put(customer)
        logger.info("customer_created", customer_id=customer.id)
        return customer

    def resolve_customer(self, customer_id: str) -> Customer:
        customer = self.repos.customers.get(customer_id)
        if customer is None:
            raise NotFoundError("Customer not found", ErrorCodes.CUSTOMER_NOT_FOUND)
        return customer

    def _ensure_profile(self, customer: Customer) -> str:
        if not customer.billingProfileRef:
            customer.billingProfileRef = self.processor.create_profile(
                name=customer.name, email=customer.email, phone=customer.phone
            )
        return customer.billingProfileRef

    def add_instrument(self, customer_id: str, external_ref: str, set_default: bool = False) -> SavedInstrument:
        _required(paymentMethodId=external_ref)
        with self._customer_lock(customer_id):
            customer = self.resolve_customer(customer_id)
            profile_ref = self._ensure_profile(customer)

            details = self.processor.attach_method(profile_ref, external_ref)
            if set_default:
                self.processor.set_default(profile_ref, external_ref)
                for existing in customer.instruments:
                    existing.isDefault = False

            instrument = SavedInstrument(
                externalRef=details.external_ref,
                brand=details.brand,
                last4=details.last4,
                expMonth=details.exp_month,
                expYear=details.exp_year,
                isDefault=set_default,
            )
            customer.instruments.append(instrument)
            self.repos.customers.put(customer)
        logger.info("instrument_added", customer_id=customer.id, instrument_id=instrument.id, default=set_default)
        return instrument

    def remove_instrument(self, customer_id: str, instrument_id: str) -> None:
        with self._customer_lock(customer_id):
            customer = self.resolve_customer(customer_id)
            instrument = next((i for i in customer.instruments if i.id == instrument_id), None)
            if instrument is None:
                raise NotFoundError("Instrument not found", ErrorCodes.INSTRUMENT_NOT_FOUND)

            self.processor.detach_method(instrument.externalRef)
            customer.instruments = [i for i in customer.instruments if i.id != instrument_id]
            self.repos.customers.put(customer)
        logger.info("instrument_removed", customer_id=customer.id, instrument_id=instrument_id)

    def list_instruments(self, customer_id: str) -> List[SavedInstrument]:
        return self.resolve_customer(customer_id).instruments

    def sync_instruments(self, customer_id: str) -> List[SavedInstrument]:
        """Reconcile saved instruments with the billing profile.

        Instruments the processor no longer lists are dropped; card details
        of the rest are refreshed.
        """
        with self._customer_lock(customer_id):
            customer = self.resolve_customer(customer_id)
            if not customer.billingProfileRef:
                return customer.instruments

            remote = {d.external_ref: d for d in self.processor.list_methods(customer.billingProfileRef)}
            kept = []
            for instrument in customer.instruments:
                details = remote.get(instrument.externalRef)
                if details is None:
                    continue
                instrument.brand = details.brand or instrument.brand
                instrument.last4 = details.last4 or instrument.last4
                instrument.expMonth = details.exp_month or instrument.expMonth
                instrument.expYear = details.exp_year or instrument.expYear
                kept.append(instrument)

            dropped = len(customer.instruments) - len(kept)
            customer.instruments = kept
            self.repos.customers.put(customer)
        if dropped:
            logger.info("instruments_pruned", customer_id=customer_id, dropped=dropped)
        return kept
