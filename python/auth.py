"""
Admin Authentication

Password hashing (passlib bcrypt), signed session tokens (python-jose JWT)
and RFC 6238 time-based one-time passwords for the optional second factor.

A password login for an admin with 2FA enabled yields a short-lived token
scoped ``2fa_pending`` that is only accepted by the second-factor endpoint;
the full ``admin`` scope is granted after a valid code.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import struct
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from config_manager import AuthConfig
from database.models import AdminAccount
from database.repositories import AdminRepository
from errors import AuthError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SCOPE_ADMIN = "admin"
SCOPE_2FA_PENDING = "2fa_pending"

INVALID_CREDENTIALS = "Invalid email or password"

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_ISSUER = "Client Verification Portal"


# ============================================
# PASSWORDS
# ============================================

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Malformed stored hash
        return False


# ============================================
# SESSION TOKENS
# ============================================

@dataclass
class TokenClaims:
    """Decoded session token"""
    admin_id: int
    scope: str
    expires_at: datetime


def create_access_token(
    admin_id: int,
    scope: str,
    config: AuthConfig,
    expires: Optional[timedelta] = None
) -> str:
    """
    Sign a session token for an administrator.

    Args:
        admin_id: Administrator primary key
        scope: SCOPE_ADMIN or SCOPE_2FA_PENDING
        config: Auth settings (key, algorithm, default lifetimes)
        expires: Override the lifetime for this token

    Returns:
        Encoded JWT
    """
    if expires is None:
        minutes = (
            config.two_factor_token_expire_minutes
            if scope == SCOPE_2FA_PENDING
            else config.access_token_expire_minutes
        )
        expires = timedelta(minutes=minutes)
    payload = {
        "sub": str(admin_id),
        "scope": scope,
        "exp": datetime.now(timezone.utc) + expires,
    }
    return jwt.encode(payload, config.secret_key, algorithm=config.algorithm)


def decode_access_token(
    token: str,
    config: AuthConfig,
    required_scope: Optional[str] = None
) -> TokenClaims:
    """
    Verify and decode a session token.

    Args:
        token: Encoded JWT from the Authorization header
        config: Auth settings
        required_scope: Scope the token must carry

    Returns:
        TokenClaims

    Raises:
        AuthError: If the token is malformed, expired or has the wrong scope
    """
    if not token:
        raise AuthError("Not authenticated", code="NOT_AUTHENTICATED")
    try:
        payload = jwt.decode(token, config.secret_key, algorithms=[config.algorithm])
        admin_id = int(payload["sub"])
        scope = str(payload["scope"])
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (JWTError, KeyError, TypeError, ValueError):
        raise AuthError("Invalid or expired session", code="INVALID_SESSION")

    if required_scope is not None and scope != required_scope:
        raise AuthError("Session token not valid for this operation", code="INVALID_SCOPE")

    return TokenClaims(admin_id=admin_id, scope=scope, expires_at=expires_at)


# ============================================
# TOTP (RFC 6238)
# ============================================

def generate_totp_secret() -> str:
    """Random 160-bit base32 secret"""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii")


def _decode_secret(secret: str) -> bytes:
    cleaned = secret.replace(" ", "").upper()
    padding = "=" * (-len(cleaned) % 8)
    return base64.b32decode(cleaned + padding)


def _hotp(key: bytes, counter: int, digits: int = TOTP_DIGITS) -> str:
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(value % (10 ** digits)).zfill(digits)


def totp_now(secret: str, at: Optional[float] = None) -> str:
    """Current code for a secret (or the code at a given UNIX time)"""
    moment = time.time() if at is None else at
    return _hotp(_decode_secret(secret), int(moment // TOTP_PERIOD))


def verify_totp(
    secret: str,
    code: str,
    window: int = 1,
    at: Optional[float] = None
) -> bool:
    """
    Check a submitted code against a secret.

    Args:
        secret: Base32 secret
        code: Code typed by the admin
        window: Accepted drift in 30-second steps either side
        at: UNIX time to check against (defaults to now)

    Returns:
        True if the code matches any step within the window
    """
    if not secret or not code:
        return False
    code = code.replace(" ", "")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    try:
        key = _decode_secret(secret)
    except (ValueError, TypeError):
        logger.error("Stored TOTP secret is not valid base32")
        return False

    moment = time.time() if at is None else at
    counter = int(moment // TOTP_PERIOD)
    return any(
        hmac.compare_digest(_hotp(key, counter + step), code)
        for step in range(-window, window + 1)
    )


def provisioning_uri(secret: str, email: str, issuer: str = TOTP_ISSUER) -> str:
    """otpauth:// URI for authenticator apps"""
    label = quote(f"{issuer}:{email}")
    return (
        f"otpauth://totp/{label}?secret={secret}"
        f"&issuer={quote(issuer)}&digits={TOTP_DIGITS}&period={TOTP_PERIOD}"
    )


# ============================================
# LOGIN FLOW
# ============================================

@dataclass
class AuthResult:
    """Outcome of a password check"""
    admin: AdminAccount
    requires_2fa: bool


def authenticate(session: Session, email: str, password: str) -> AuthResult:
    """
    Check an administrator's email and password.

    Args:
        session: Database session
        email: Submitted email
        password: Submitted password

    Returns:
        AuthResult telling whether a second factor is still required

    Raises:
        AuthError: If the email is unknown or the password is wrong
    """
    repo = AdminRepository(session)
    admin = repo.get_by_email(email)
    if admin is None or not verify_password(password, admin.password_hash):
        raise AuthError(INVALID_CREDENTIALS, code="INVALID_CREDENTIALS")

    security = repo.get_security(admin.id)
    requires_2fa = bool(
        security and security.two_factor_enabled and security.two_factor_secret
    )
    return AuthResult(admin=admin, requires_2fa=requires_2fa)


def check_second_factor(
    session: Session,
    admin_id: int,
    code: str,
    window: int = 1
) -> AdminAccount:
    """
    Verify a TOTP code for an administrator.

    Raises:
        AuthError: If the admin is unknown, has no second factor, or the code is wrong
    """
    repo = AdminRepository(session)
    admin = repo.get_by_id(admin_id)
    security = repo.get_security(admin_id) if admin is not None else None
    if admin is None or security is None or not security.two_factor_enabled:
        raise AuthError("Two-factor authentication is not enabled", code="2FA_NOT_ENABLED")
    if not verify_totp(security.two_factor_secret or "", code, window=window):
        raise AuthError("Invalid verification code", code="INVALID_2FA_CODE", field="code")
    return admin
