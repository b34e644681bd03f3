"""
Payment and transfer lifecycle.

A Payment is an ephemeral QR request: PENDING until it is charged
(COMPLETED) or its 15-minute window lapses (EXPIRED). Both end states are
final. Direct vendor-QR charges, saved-card charges, wallet payments and
peer transfers skip the Payment record and go straight to the ledger.

Vendor-directed money carries the platform fee; peer transfers do not.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional, Tuple

import structlog

from capabilities import CardProcessor, QrRenderer
from errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from identity import IdentityRegistry
from ledger import Ledger
from otp import OtpGate
from repositories import KeyedLock, Repositories
from schemas import (
    Channel,
    OtpDispatch,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionType,
    Transfer,
    Vendor,
    new_id,
)
from settings import Settings

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

PAYMENT_OPTIONS = {
    "wallet_balance": Channel.WALLET,
    "apple_pay": Channel.WALLET,
    "google_pay": Channel.WALLET,
    "bank_transfer": Channel.BANK_TRANSFER,
}
DEFAULT_PAYMENT_OPTION = "wallet_balance"
CASHOUT_PURPOSE = "cashout"


def parse_amount(value) -> Decimal:
    """Validate a major-unit amount and round it to cents."""
    if value is None or isinstance(value, bool):
        raise ValidationError("Invalid amount", ErrorCodes.INVALID_AMOUNT)
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount", ErrorCodes.INVALID_AMOUNT)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Invalid amount", ErrorCodes.INVALID_AMOUNT)
    return amount


def normalize_currency(currency: Optional[str]) -> str:
    currency = (currency or "usd").strip().lower()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("Invalid currency code")
    return currency


def split_fee(amount: Decimal, rate: Decimal) -> Tuple[Decimal, Decimal]:
    """Return (platform_fee, vendor_amount) for a cent-exact amount."""
    fee = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return fee, amount - fee


def resolve_option(option: Optional[str]) -> Tuple[str, Channel]:
    option = option or DEFAULT_PAYMENT_OPTION
    channel = PAYMENT_OPTIONS.get(option)
    if channel is None:
        raise ValidationError(f"Unsupported payment option: {option}")
    return option, channel


@dataclass
class WalletReceipt:
    transaction: Transaction
    otp: Optional[OtpDispatch] = None


class PaymentLifecycle:
    def __init__(
        self,
        settings: Settings,
        repos: Repositories,
        registry: IdentityRegistry,
        ledger: Ledger,
        otp: OtpGate,
        processor: CardProcessor,
        qr: QrRenderer,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.repos = repos
        self.registry = registry
        self.ledger = ledger
        self.otp = otp
        self.processor = processor
        self.qr = qr
        self.clock = clock
        self._payment_lock = KeyedLock()

    def _vendor_transaction(self, vendor: Vendor, amount: Decimal, **fields) -> Transaction:
        fee, net = split_fee(amount, self.settings.platform_fee_rate)
        return Transaction(
            vendorId=vendor.id,
            vendorName=vendor.businessName,
            amount=amount,
            platformFee=fee,
            vendorAmount=net,
            timestamp=self.clock(),
            **fields,
        )

    # ----------------------
    # QR payment requests
    # ----------------------

    def create_payment(
        self,
        amount,
        currency: Optional[str] = "usd",
        description: Optional[str] = None,
        vendor_id: Optional[str] = None,
    ) -> Payment:
        amount = parse_amount(amount)
        currency = normalize_currency(currency)
        vendor = self.registry.resolve_vendor(vendor_id) if vendor_id else None

        now = self.clock()
        payment_id = new_id()
        payment_url = f"{self.settings.frontend_url.rstrip('/')}/pay/{payment_id}"
        payment = Payment(
            id=payment_id,
            vendorId=vendor.id if vendor else None,
            vendorName=vendor.businessName if vendor else None,
            amount=amount,
            currency=currency,
            description=description,
            paymentUrl=payment_url,
            qrCode=self.qr.render_data_url(payment_url),
            createdAt=now,
            expiresAt=now + timedelta(minutes=self.settings.payment_ttl_minutes),
        )
        self.repos.payments.put(payment)
        logger.info("payment_created", payment_id=payment.id, vendor_id=payment.vendorId, amount=str(amount))
        return payment

    def _load(self, payment_id: str) -> Payment:
        payment = self.repos.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", ErrorCodes.PAYMENT_NOT_FOUND)
        return payment

    def _expire_if_due(self, payment: Payment) -> Payment:
        if payment.status == PaymentStatus.PENDING and self.clock() > payment.expiresAt:
            payment.status = PaymentStatus.EXPIRED
            self.repos.payments.put(payment)
            logger.info("payment_expired", payment_id=payment.id)
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        payment = self._load(payment_id)
        if payment.status != PaymentStatus.PENDING or self.clock() <= payment.expiresAt:
            return payment
        with self._payment_lock(payment_id):
            return self._expire_if_due(self._load(payment_id))

    def charge_card(self, payment_id: str, method_ref: str) -> Payment:
        if not method_ref:
            raise ValidationError("paymentMethodId is required", ErrorCodes.MISSING_FIELD)

        # held across the processor call so one payment is never charged twice
        with self._payment_lock(payment_id):
            payment = self._expire_if_due(self._load(payment_id))
            if payment.status == PaymentStatus.EXPIRED:
                raise ConflictError("Payment expired", ErrorCodes.PAYMENT_EXPIRED)
            if payment.status != PaymentStatus.PENDING:
                raise ConflictError("Payment already processed", ErrorCodes.ALREADY_FINALIZED)

            description = payment.description or (
                f"Payment to {payment.vendorName}" if payment.vendorName else "QR payment"
            )
            result = self.processor.charge(payment.amount, payment.currency, method_ref, description)

            payment.status = PaymentStatus.COMPLETED
            payment.externalChargeRef = result.external_id
            payment.completedAt = self.clock()
            payment.channel = Channel.CARD
            self.repos.payments.put(payment)

        fee, net = split_fee(payment.amount, self.settings.platform_fee_rate)
        self.ledger.append(
            Transaction(
                type=TransactionType.PAYMENT,
                paymentId=payment.id,
                vendorId=payment.vendorId,
                vendorName=payment.vendorName,
                amount=payment.amount,
                platformFee=fee,
                vendorAmount=net,
                currency=payment.currency,
                channel=Channel.CARD,
                externalChargeRef=result.external_id,
                timestamp=payment.completedAt,
            )
        )
        logger.info("payment_charged", payment_id=payment.id, charge_ref=result.external_id)
        return payment

    # ----------------------
    # Immediate card charges
    # ----------------------

    def charge_with_saved_instrument(
        self,
        vendor_id: str,
        customer_id: str,
        instrument_ref: Optional[str],
        amount,
        currency: Optional[str] = "usd",
        description: Optional[str] = None,
    ) -> Transaction:
        amount = parse_amount(amount)
        currency = normalize_currency(currency)
        vendor = self.registry.resolve_vendor(vendor_id)
        customer = self.registry.resolve_customer(customer_id)

        if instrument_ref:
            instrument = next(
                (i for i in customer.instruments if instrument_ref in (i.id, i.externalRef)), None
            )
        else:
            instrument = next((i for i in customer.instruments if i.isDefault), None)
        if instrument is None:
            raise NotFoundError("Saved instrument not found", ErrorCodes.INSTRUMENT_NOT_FOUND)

        result = self.processor.charge(
            amount,
            currency,
            instrument.externalRef,
            description or f"Payment to {vendor.businessName}",
            customer_ref=customer.billingProfileRef,
            off_session=True,
        )
        transaction = self._vendor_transaction(
            vendor,
            amount,
            type=TransactionType.SAVED_CARD,
            customerId=customer.id,
            payerName=customer.name,
            currency=currency,
            channel=Channel.CARD,
            externalChargeRef=result.external_id,
        )
        return self.ledger.append(transaction)

    def create_direct_vendor_payment(
        self,
        vendor_id: str,
        amount,
        currency: Optional[str],
        description: Optional[str],
        method_ref: str,
    ) -> Transaction:
        amount = parse_amount(amount)
        currency = normalize_currency(currency)
        vendor = self.registry.resolve_vendor(vendor_id)
        if not method_ref:
            raise ValidationError("paymentMethodId is required", ErrorCodes.MISSING_FIELD)

        result = self.processor.charge(
            amount, currency, method_ref, description or f"Payment to {vendor.businessName}"
        )
        transaction = self._vendor_transaction(
            vendor,
            amount,
            type=TransactionType.VENDOR_QR,
            currency=currency,
            channel=Channel.CARD,
            externalChargeRef=result.external_id,
        )
        return self.ledger.append(transaction)

    # ----------------------
    # Wallet payments & transfers
    # ----------------------

    def _cashout_code(self, payer_phone: Optional[str]) -> Optional[OtpDispatch]:
        if not payer_phone or not payer_phone.strip():
            return None
        return self.otp.issue(payer_phone, CASHOUT_PURPOSE)

    def create_wallet_payment(
        self,
        target_id: str,
        amount,
        currency: Optional[str] = "usd",
        payer_name: Optional[str] = None,
        payer_phone: Optional[str] = None,
        option: Optional[str] = None,
    ) -> WalletReceipt:
        """Record a simulated wallet payment to a vendor, or to a user as a transfer.

        No funds move; the entry is completed immediately and a cash-out
        code goes to the payer's phone when one is given.
        """
        vendor = self.repos.vendors.get(target_id)
        if vendor is None:
            if self.repos.users.get(target_id) is None:
                raise NotFoundError("Vendor not found", ErrorCodes.VENDOR_NOT_FOUND)
            transfer, transaction = self._transfer(
                target_id, amount, currency, None, payer_name, payer_phone, option
            )
            return WalletReceipt(transaction=transaction, otp=transfer.otp)

        amount = parse_amount(amount)
        currency = normalize_currency(currency)
        option, channel = resolve_option(option)

        transaction = self.ledger.append(
            self._vendor_transaction(
                vendor,
                amount,
                type=TransactionType.WALLET,
                currency=currency,
                channel=channel,
                paymentOption=option,
                payerName=payer_name,
            )
        )
        return WalletReceipt(transaction=transaction, otp=self._cashout_code(payer_phone))

    def _transfer(self, user_id, amount, currency, note, sender_name, sender_phone, option):
        amount = parse_amount(amount)
        currency = normalize_currency(currency)
        option, channel = resolve_option(option)
        user = self.registry.resolve_user(user_id)

        transfer = Transfer(
            receiverId=user.id,
            receiverName=user.name,
            receiverPhone=user.phone,
            amount=amount,
            currency=currency,
            note=note,
            senderName=sender_name,
            senderPhone=sender_phone,
            paymentOption=option,
            channel=channel,
            createdAt=self.clock(),
        )
        self.repos.transfers.put(transfer)
        transaction = self.ledger.append(
            Transaction(
                type=TransactionType.TRANSFER,
                transferId=transfer.id,
                userId=user.id,
                amount=amount,
                currency=currency,
                channel=channel,
                paymentOption=option,
                payerName=sender_name,
                timestamp=transfer.createdAt,
            )
        )
        logger.info("transfer_recorded", transfer_id=transfer.id, user_id=user.id, amount=str(amount))

        transfer.otp = self._cashout_code(sender_phone)
        if transfer.otp is not None:
            self.repos.transfers.put(transfer)
        return transfer, transaction

    def transfer_to_user(
        self,
        user_id: str,
        amount,
        currency: Optional[str] = "usd",
        note: Optional[str] = None,
        sender_name: Optional[str] = None,
        sender_phone: Optional[str] = None,
        option: Optional[str] = None,
    ) -> Transfer:
        transfer, _ = self._transfer(user_id, amount, currency, note, sender_name, sender_phone, option)
        return transfer
