"""
Record schemas for the StreetPay relay

Each Pydantic model is one stored entity. Repositories key records by
their `id` field (OTP records by `phone`); the Mongo collection name is the
lowercase of the class name (e.g., Vendor -> "vendor").
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, Field, PlainSerializer

# Amounts are exact cents internally and plain JSON numbers on the wire.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Channel(str, Enum):
    CARD = "card"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    VENDOR_QR = "vendor-qr"
    SAVED_CARD = "saved-card"
    WALLET = "wallet"
    TRANSFER = "transfer"


class Vendor(BaseModel):
    """Vendors collection schema
    Collection name: "vendor"
    """
    id: str = Field(default_factory=new_id)
    name: str = Field(..., description="Contact name")
    email: str = Field(..., description="Unique login email, lowercase")
    businessName: str = Field(..., description="Display name shown to payers")
    credentialHash: str = Field(..., description="BCrypt hash of the vendor password")
    vendorPaymentUrl: str = Field(..., description="Permanent pay-this-vendor link")
    vendorQRCode: str = Field(..., description="PNG data URL of the payment link")
    createdAt: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """Personal payees receiving peer transfers
    Collection name: "user"
    """
    id: str = Field(default_factory=new_id)
    name: str
    phone: str
    paymentUrl: str
    qrCode: str
    createdAt: datetime = Field(default_factory=utcnow)


class SavedInstrument(BaseModel):
    id: str = Field(default_factory=new_id)
    externalRef: str = Field(..., description="Processor payment-method id")
    brand: Optional[str] = None
    last4: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None
    isDefault: bool = False
    addedAt: datetime = Field(default_factory=utcnow)


class Customer(BaseModel):
    """Payers with reusable instruments
    Collection name: "customer"
    """
    id: str = Field(default_factory=new_id)
    phone: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    billingProfileRef: Optional[str] = Field(None, description="Processor customer id")
    instruments: List[SavedInstrument] = Field(default_factory=list)
    createdAt: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    """Ephemeral QR payment requests
    Collection name: "payment"
    """
    id: str = Field(default_factory=new_id)
    vendorId: Optional[str] = None
    vendorName: Optional[str] = None
    amount: Money
    currency: str
    description: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    paymentUrl: Optional[str] = None
    qrCode: Optional[str] = None
    createdAt: datetime
    expiresAt: datetime
    completedAt: Optional[datetime] = None
    externalChargeRef: Optional[str] = None
    channel: Optional[Channel] = None


class OtpDispatch(BaseModel):
    """Outcome of an OTP issue, returned to the caller."""
    delivered: bool
    maskedPhone: str
    expiresAt: datetime
    testCode: Optional[str] = None
    error: Optional[str] = None


class Transfer(BaseModel):
    """Peer-to-peer transfers to a User
    Collection name: "transfer"
    """
    id: str = Field(default_factory=new_id)
    receiverId: str
    receiverName: str
    receiverPhone: str
    amount: Money
    currency: str
    note: Optional[str] = None
    senderName: Optional[str] = None
    senderPhone: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    paymentOption: str
    channel: Channel
    otp: Optional[OtpDispatch] = None
    createdAt: datetime = Field(default_factory=utcnow)


class Transaction(BaseModel):
    """Append-only ledger entries
    Collection name: "transaction"
    """
    id: str = Field(default_factory=new_id)
    type: TransactionType
    paymentId: Optional[str] = None
    transferId: Optional[str] = None
    vendorId: Optional[str] = None
    vendorName: Optional[str] = None
    userId: Optional[str] = None
    customerId: Optional[str] = None
    amount: Money
    vendorAmount: Optional[Money] = None
    platformFee: Optional[Money] = None
    currency: str
    status: PaymentStatus = PaymentStatus.COMPLETED
    channel: Channel
    paymentOption: Optional[str] = None
    payerName: Optional[str] = None
    externalChargeRef: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class OtpRecord(BaseModel):
    """One active code per phone
    Collection name: "otprecord"
    """
    phone: str
    code: str
    purpose: str
    expiresAt: datetime
    createdAt: datetime
    attempts: int = 0


class RevenueSummary(BaseModel):
    count: int = 0
    grossTotal: Money = Decimal("0.00")
    vendorNetTotal: Money = Decimal("0.00")
    platformFeeTotal: Money = Decimal("0.00")


class RevokedToken(BaseModel):
    """Logged-out session ids
    Collection name: "revokedtoken"
    """
    jti: str
    vendorId: str
    expiresAt: datetime
