from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

from container import Services, build_services
from errors import AuthError, register_exception_handlers
from logging_config import setup_logging
from otp import mask_phone
from schemas import User, Vendor
from settings import Settings, get_settings

auth_scheme = HTTPBearer(auto_error=False)
router = APIRouter()

# ----------------------
# Dependencies
# ----------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme)) -> str:
    if credentials is None or not credentials.credentials:
        raise AuthError("No token provided")
    return credentials.credentials


def get_current_vendor(token: str = Depends(get_token), services: Services = Depends(get_services)) -> Vendor:
    return services.sessions.authenticate(token)


# ----------------------
# Views
# ----------------------

def vendor_view(vendor: Vendor, with_qr: bool = True) -> dict:
    view = {
        "id": vendor.id,
        "name": vendor.name,
        "email": vendor.email,
        "businessName": vendor.businessName,
        "createdAt": vendor.createdAt.isoformat(),
    }
    if with_qr:
        view["vendorPaymentUrl"] = vendor.vendorPaymentUrl
        view["vendorQRCode"] = vendor.vendorQRCode
    return view


def user_public_view(user: User) -> dict:
    return {"id": user.id, "name": user.name, "phoneMasked": mask_phone(user.phone)}


# ----------------------
# Request schemas
# ----------------------

class VendorRegister(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=1)
    businessName: str


class VendorLogin(BaseModel):
    email: EmailStr
    password: str


class GeneratePaymentReq(BaseModel):
    amount: Decimal
    currency: Optional[str] = "usd"
    description: Optional[str] = None


class ProcessPaymentReq(BaseModel):
    paymentMethodId: str


class VendorPaymentReq(BaseModel):
    amount: Decimal
    currency: Optional[str] = "usd"
    description: Optional[str] = None
    paymentMethodId: str


class WalletPaymentReq(BaseModel):
    amount: Decimal
    currency: Optional[str] = "usd"
    payerName: Optional[str] = None
    payerPhone: Optional[str] = None
    paymentOption: Optional[str] = None


class ChargeSavedReq(BaseModel):
    customerId: str
    instrumentId: Optional[str] = None
    amount: Decimal
    currency: Optional[str] = "usd"
    description: Optional[str] = None


class UserRegister(BaseModel):
    name: str
    phone: str


class TransferReq(BaseModel):
    amount: Decimal
    currency: Optional[str] = "usd"
    note: Optional[str] = None
    senderName: Optional[str] = None
    senderPhone: Optional[str] = None
    paymentOption: Optional[str] = None


class CustomerResolveReq(BaseModel):
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    name: Optional[str] = None


class AddInstrumentReq(BaseModel):
    paymentMethodId: str
    setDefault: bool = False


class OtpSendReq(BaseModel):
    phone: str
    purpose: str = "cashout"


class OtpVerifyReq(BaseModel):
    phone: str
    code: str


# ----------------------
# Health/Test
# ----------------------

@router.get("/")
def read_root():
    return {"message": "StreetPay API running"}


@router.get("/health")
def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/test")
def test_storage(services: Services = Depends(get_services)):
    settings = services.settings
    return {
        "backend": "Running",
        "storage": services.storage,
        "database_url": "Set" if settings.database_url else "Not Set",
        "card_processor": "Set" if settings.stripe_secret_key else "Not Set",
        "sms": "Set" if settings.sms_configured else "Not Set",
    }


# ----------------------
# Vendor Auth Routes
# ----------------------

@router.post("/api/vendor/register")
def register_vendor(payload: VendorRegister, services: Services = Depends(get_services)):
    vendor = services.identity.register_vendor(
        payload.name, str(payload.email), payload.password, payload.businessName
    )
    token = services.sessions.issue_session(vendor.id)
    return {"success": True, "vendor": vendor_view(vendor), "token": token}


@router.post("/api/vendor/login")
def login_vendor(payload: VendorLogin, services: Services = Depends(get_services)):
    vendor, token = services.sessions.login(str(payload.email), payload.password)
    return {"success": True, "vendor": vendor_view(vendor, with_qr=False), "token": token}


@router.post("/api/vendor/logout")
def logout_vendor(
    token: str = Depends(get_token),
    vendor: Vendor = Depends(get_current_vendor),
    services: Services = Depends(get_services),
):
    services.sessions.revoke(token)
    return {"success": True}


@router.get("/api/vendor/profile")
def vendor_profile(vendor: Vendor = Depends(get_current_vendor)):
    return {"success": True, "vendor": vendor_view(vendor)}


# ----------------------
# Vendor QR Routes (public)
# ----------------------

@router.get("/api/vendor/{vendor_id}/info")
def vendor_info(vendor_id: str, services: Services = Depends(get_services)):
    vendor = services.identity.resolve_vendor(vendor_id)
    return {
        "success": True,
        "vendor": {"id": vendor.id, "businessName": vendor.businessName, "email": vendor.email},
    }


@router.post("/api/vendor/{vendor_id}/payment")
def pay_vendor(vendor_id: str, payload: VendorPaymentReq, services: Services = Depends(get_services)):
    tx = services.payments.create_direct_vendor_payment(
        vendor_id, payload.amount, payload.currency, payload.description, payload.paymentMethodId
    )
    return {"success": True, "transaction": tx.model_dump(mode="json")}


@router.post("/api/vendor/{vendor_id}/wallet-payment")
def wallet_pay_vendor(vendor_id: str, payload: WalletPaymentReq, services: Services = Depends(get_services)):
    receipt = services.payments.create_wallet_payment(
        vendor_id,
        payload.amount,
        payload.currency,
        payload.payerName,
        payload.payerPhone,
        payload.paymentOption,
    )
    return {
        "success": True,
        "transaction": receipt.transaction.model_dump(mode="json"),
        "otp": receipt.otp.model_dump(mode="json") if receipt.otp else None,
    }


@router.post("/api/vendor/{vendor_id}/charge-saved")
def charge_saved_instrument(
    vendor_id: str,
    payload: ChargeSavedReq,
    vendor: Vendor = Depends(get_current_vendor),
    services: Services = Depends(get_services),
):
    if vendor.id != vendor_id:
        raise AuthError("Forbidden")
    tx = services.payments.charge_with_saved_instrument(
        vendor_id, payload.customerId, payload.instrumentId, payload.amount, payload.currency, payload.description
    )
    return {"success": True, "transaction": tx.model_dump(mode="json")}


# ----------------------
# Payment Requests
# ----------------------

@router.post("/api/payment/generate")
def generate_payment(
    payload: GeneratePaymentReq,
    vendor: Vendor = Depends(get_current_vendor),
    services: Services = Depends(get_services),
):
    payment = services.payments.create_payment(
        payload.amount, payload.currency, payload.description, vendor_id=vendor.id
    )
    return {"success": True, "payment": payment.model_dump(mode="json")}


@router.post("/api/payment/platform")
def generate_platform_payment(payload: GeneratePaymentReq, services: Services = Depends(get_services)):
    payment = services.payments.create_payment(payload.amount, payload.currency, payload.description)
    return {"success": True, "payment": payment.model_dump(mode="json")}


@router.get("/api/payment/{payment_id}")
def get_payment(payment_id: str, services: Services = Depends(get_services)):
    payment = services.payments.get_payment(payment_id)
    return {"success": True, "payment": payment.model_dump(mode="json", exclude={"qrCode"})}


@router.post("/api/payment/{payment_id}/process")
def process_payment(payment_id: str, payload: ProcessPaymentReq, services: Services = Depends(get_services)):
    payment = services.payments.charge_card(payment_id, payload.paymentMethodId)
    return {
        "success": True,
        "payment": {
            "id": payment.id,
            "status": payment.status.value,
            "amount": float(payment.amount),
            "currency": payment.currency,
        },
    }


# ----------------------
# Personal QR & Transfers
# ----------------------

@router.post("/api/user/register")
def register_user(payload: UserRegister, services: Services = Depends(get_services)):
    user = services.identity.register_user(payload.name, payload.phone)
    return {"success": True, "user": user.model_dump(mode="json")}


@router.get("/api/user/{user_id}/info")
def user_info(user_id: str, services: Services = Depends(get_services)):
    user = services.identity.resolve_user(user_id)
    return {"success": True, "user": user_public_view(user)}


@router.post("/api/user/{user_id}/transfer")
def transfer_to_user(user_id: str, payload: TransferReq, services: Services = Depends(get_services)):
    transfer = services.payments.transfer_to_user(
        user_id,
        payload.amount,
        payload.currency,
        payload.note,
        payload.senderName,
        payload.senderPhone,
        payload.paymentOption,
    )
    return {"success": True, "transfer": transfer.model_dump(mode="json")}


# ----------------------
# Customers & Saved Instruments
# ----------------------

@router.post("/api/customer/resolve")
def resolve_customer(payload: CustomerResolveReq, services: Services = Depends(get_services)):
    customer = services.identity.resolve_or_create_customer(
        payload.phone, str(payload.email) if payload.email else None, payload.name
    )
    return {"success": True, "customer": customer.model_dump(mode="json")}


@router.get("/api/customer/{customer_id}/instruments")
def list_instruments(customer_id: str, refresh: bool = False, services: Services = Depends(get_services)):
    if refresh:
        instruments = services.identity.sync_instruments(customer_id)
    else:
        instruments = services.identity.list_instruments(customer_id)
    return {"success": True, "instruments": [i.model_dump(mode="json") for i in instruments]}


@router.post("/api/customer/{customer_id}/instruments")
def add_instrument(customer_id: str, payload: AddInstrumentReq, services: Services = Depends(get_services)):
    instrument = services.identity.add_instrument(customer_id, payload.paymentMethodId, payload.setDefault)
    return {"success": True, "instrument": instrument.model_dump(mode="json")}


@router.delete("/api/customer/{customer_id}/instruments/{instrument_id}")
def remove_instrument(customer_id: str, instrument_id: str, services: Services = Depends(get_services)):
    services.identity.remove_instrument(customer_id, instrument_id)
    return {"success": True}


# ----------------------
# OTP
# ----------------------

@router.post("/api/otp/send")
def send_otp(payload: OtpSendReq, services: Services = Depends(get_services)):
    dispatch = services.otp.issue(payload.phone, payload.purpose)
    return {"success": True, **dispatch.model_dump(mode="json")}


@router.post("/api/otp/verify")
def verify_otp(payload: OtpVerifyReq, services: Services = Depends(get_services)):
    services.otp.verify(payload.phone, payload.code)
    return {"success": True, "verified": True}


# ----------------------
# Transactions & Stats
# ----------------------

@router.get("/api/transactions")
def vendor_transactions(vendor: Vendor = Depends(get_current_vendor), services: Services = Depends(get_services)):
    txs = services.ledger.list_for(vendor.id)
    return {"success": True, "transactions": [t.model_dump(mode="json") for t in txs]}


@router.get("/api/transactions/all")
def all_transactions(services: Services = Depends(get_services)):
    # TODO: restrict to platform operators once an admin role exists
    txs = services.ledger.list_all()
    return {"success": True, "transactions": [t.model_dump(mode="json") for t in txs]}


@router.get("/api/dashboard/stats")
def dashboard_stats(vendor: Vendor = Depends(get_current_vendor), services: Services = Depends(get_services)):
    summary = services.ledger.aggregate_revenue(vendor_id=vendor.id)
    return {"success": True, "stats": summary.model_dump(mode="json")}


@router.get("/api/admin/revenue")
def platform_revenue(services: Services = Depends(get_services)):
    summary = services.ledger.aggregate_revenue()
    return {"success": True, "stats": summary.model_dump(mode="json")}


# ----------------------
# App & Security Setup
# ----------------------

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(title="StreetPay API", version="0.2.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.state.services = services or build_services(settings)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
