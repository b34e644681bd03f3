"""
One-time codes sent to a phone number.

One record per phone: issuing a new code replaces the previous one. A code
is single-use, expires after `otp_ttl_minutes` and is discarded after
`otp_max_attempts` wrong guesses. Delivery failures are
reported to the caller but never discard the stored code.
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from capabilities import SmsSender
from errors import ErrorCodes, ExternalServiceError, NotFoundError, ValidationError
from repositories import KeyedLock, Repository
from schemas import OtpDispatch, OtpRecord
from settings import Settings

logger = structlog.get_logger(__name__)


def mask_phone(phone: str, mask: str = "*") -> str:
    if len(phone) <= 4:
        return mask * len(phone)
    return mask * (len(phone) - 4) + phone[-4:]


class OtpGate:
    def __init__(
        self,
        settings: Settings,
        store: Repository[OtpRecord],
        sms: Optional[SmsSender] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.store = store
        self.sms = sms
        self.clock = clock
        self._phone_lock = KeyedLock()

    def _generate_code(self) -> str:
        digits = self.settings.otp_digits
        return f"{secrets.randbelow(10 ** digits):0{digits}d}"

    def issue(self, phone: str, purpose: str) -> OtpDispatch:
        phone = (phone or "").strip()
        if not phone:
            raise ValidationError("Phone number is required", ErrorCodes.MISSING_FIELD)

        now = self.clock()
        record = OtpRecord(
            phone=phone,
            code=self._generate_code(),
            purpose=purpose,
            createdAt=now,
            expiresAt=now + timedelta(minutes=self.settings.otp_ttl_minutes),
        )
        with self._phone_lock(phone):
            self.store.put(record)

        masked = mask_phone(phone)
        dispatch = OtpDispatch(delivered=False, maskedPhone=masked, expiresAt=record.expiresAt)

        if self.sms is None:
            logger.info("otp_issued_without_transport", phone=masked, purpose=purpose)
            if not self.settings.is_production:
                dispatch.testCode = record.code
            return dispatch

        body = f"Your {self.settings.app_name} code is {record.code}. It expires in {self.settings.otp_ttl_minutes} minutes."
        try:
            self.sms.send(phone, body)
        except ExternalServiceError as e:
            logger.warning("otp_delivery_failed", phone=masked, purpose=purpose, error=e.message)
            dispatch.error = e.message
            return dispatch

        dispatch.delivered = True
        logger.info("otp_sent", phone=masked, purpose=purpose)
        return dispatch

    def verify(self, phone: str, code: str) -> bool:
        phone = (phone or "").strip()
        with self._phone_lock(phone):
            record = self.store.get(phone)
            if record is None:
                raise NotFoundError("No code was requested for this phone", ErrorCodes.OTP_NOT_REQUESTED)

            if self.clock() > record.expiresAt:
                self.store.delete(phone)
                raise ValidationError("Code expired", ErrorCodes.OTP_EXPIRED)

            if not secrets.compare_digest(record.code, (code or "").strip()):
                record.attempts += 1
                if record.attempts >= self.settings.otp_max_attempts:
                    self.store.delete(phone)
                    logger.warning("otp_attempts_exceeded", phone=mask_phone(phone), purpose=record.purpose)
                    raise ValidationError("Too many attempts, request a new code", ErrorCodes.OTP_ATTEMPTS_EXCEEDED)
                self.store.put(record)
                raise ValidationError("Invalid code", ErrorCodes.OTP_MISMATCH)

            self.store.delete(phone)
        logger.info("otp_verified", phone=mask_phone(phone), purpose=record.purpose)
        return True
