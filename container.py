from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from auth import CredentialHasher, SessionManager
from capabilities import CardProcessor, QrRenderer, SmsSender, StripeProcessor, TwilioSmsSender
from database import get_db
from identity import IdentityRegistry
from ledger import Ledger
from otp import OtpGate
from payments import PaymentLifecycle
from repositories import Repositories
from settings import Settings

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    repos: Repositories
    storage: str
    identity: IdentityRegistry
    sessions: SessionManager
    otp: OtpGate
    ledger: Ledger
    payments: PaymentLifecycle


def build_services(
    settings: Settings,
    *,
    repos: Optional[Repositories] = None,
    processor: Optional[CardProcessor] = None,
    sms: Optional[SmsSender] = None,
    qr: Optional[QrRenderer] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """Assemble every component from settings; any collaborator can be overridden."""
    clock = clock or (lambda: datetime.now(timezone.utc))

    if repos is None:
        db = get_db(settings)
        repos = Repositories.mongo(db) if db is not None else Repositories.in_memory()
        storage = "mongo" if db is not None else "memory"
    else:
        storage = "custom"

    if processor is None:
        processor = StripeProcessor(settings.stripe_secret_key)
    if sms is None and settings.sms_configured:
        sms = TwilioSmsSender(
            settings.twilio_account_sid, settings.twilio_auth_token, settings.twilio_from_number
        )
    if qr is None:
        qr = QrRenderer(settings.qr_size, settings.qr_margin, settings.qr_dark, settings.qr_light)

    hasher = CredentialHasher(settings.bcrypt_rounds)
    identity = IdentityRegistry(settings, repos, hasher, processor, qr)
    sessions = SessionManager(settings, repos.vendors, repos.revoked_tokens, hasher, clock=clock)
    otp = OtpGate(settings, repos.otps, sms=sms, clock=clock)
    ledger = Ledger(repos.transactions)
    payments = PaymentLifecycle(settings, repos, identity, ledger, otp, processor, qr, clock=clock)

    logger.info("services_initialized", storage=storage, sms_enabled=sms is not None)
    return Services(
        settings=settings,
        repos=repos,
        storage=storage,
        identity=identity,
        sessions=sessions,
        otp=otp,
        ledger=ledger,
        payments=payments,
    )
