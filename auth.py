"""
Vendor credentials and sessions.

Passwords are stored as bcrypt hashes (passlib). Sessions are signed JWTs
(python-jose) carrying the vendor id in `sub` and a unique `jti`; logout
adds the `jti` to a revocation store so the token stops authenticating
before its expiry.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import structlog
from jose import JWTError, jwt
from passlib.context import CryptContext

from errors import AuthError, ErrorCodes
from repositories import Repository
from schemas import RevokedToken, Vendor
from settings import Settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialHasher:
    def __init__(self, rounds: int = 12):
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, plain: str) -> str:
        return self.pwd_context.hash(plain)

    def verify(self, plain: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self.pwd_context.verify(plain, hashed)
        except ValueError:
            # malformed stored hash
            return False


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        vendors: Repository[Vendor],
        revoked: Repository[RevokedToken],
        hasher: CredentialHasher,
        clock: Clock = _utcnow,
    ):
        self.settings = settings
        self.vendors = vendors
        self.revoked = revoked
        self.hasher = hasher
        self.clock = clock

    def verify_credential(self, plain: str, hashed: str) -> bool:
        return self.hasher.verify(plain, hashed)

    def issue_session(self, vendor_id: str, expires_delta: Optional[timedelta] = None) -> str:
        now = self.clock()
        expire = now + (expires_delta or timedelta(minutes=self.settings.access_token_expire_minutes))
        claims = {
            "sub": vendor_id,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(claims, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def _decode(self, token: str) -> dict:
        try:
            # expiry is checked against the injected clock below
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            raise AuthError("Invalid token")
        exp = payload.get("exp")
        if exp is None or self.clock().timestamp() >= exp:
            raise AuthError("Token expired")
        if not payload.get("sub") or not payload.get("jti"):
            raise AuthError("Invalid token")
        return payload

    def authenticate(self, token: Optional[str]) -> Vendor:
        if not token:
            raise AuthError("No token provided")
        payload = self._decode(token)
        if self.revoked.get(payload["jti"]) is not None:
            raise AuthError("Token revoked")
        vendor = self.vendors.get(payload["sub"])
        if vendor is None:
            raise AuthError("Vendor not found")
        return vendor

    def revoke(self, token: str) -> None:
        payload = self._decode(token)
        self.revoked.put(
            RevokedToken(
                jti=payload["jti"],
                vendorId=payload["sub"],
                expiresAt=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        )
        logger.info("session_revoked", vendor_id=payload["sub"])

    def login(self, email: str, password: str) -> Tuple[Vendor, str]:
        email = email.strip().lower()
        vendor = self.vendors.find_one(lambda v: v.email == email)
        if vendor is None or not self.verify_credential(password, vendor.credentialHash):
            logger.info("login_failed")
            raise AuthError("Invalid credentials", ErrorCodes.INVALID_CREDENTIALS)
        logger.info("vendor_logged_in", vendor_id=vendor.id)
        return vendor, self.issue_session(vendor.id)
