"""
Tests for admin authentication: passwords, session tokens, TOTP and the
admin provisioning script.
"""

import pytest
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from auth import (
    SCOPE_2FA_PENDING,
    SCOPE_ADMIN,
    authenticate,
    check_second_factor,
    create_access_token,
    decode_access_token,
    generate_totp_secret,
    hash_password,
    provisioning_uri,
    totp_now,
    verify_password,
    verify_totp,
)
from config_manager import AuthConfig
from create_admin import create_admin
from errors import AuthError, ValidationError

# RFC 6238 appendix B shared secret ("12345678901234567890"), SHA-1
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False
        assert verify_password("", "") is False


class TestSessionTokens:

    def test_round_trip(self):
        config = AuthConfig(secret_key="k")
        claims = decode_access_token(create_access_token(7, SCOPE_ADMIN, config), config)
        assert claims.admin_id == 7
        assert claims.scope == SCOPE_ADMIN

    def test_wrong_scope(self):
        config = AuthConfig(secret_key="k")
        token = create_access_token(7, SCOPE_2FA_PENDING, config)
        with pytest.raises(AuthError) as exc:
            decode_access_token(token, config, required_scope=SCOPE_ADMIN)
        assert exc.value.code == "INVALID_SCOPE"

    def test_expired(self):
        config = AuthConfig(secret_key="k")
        token = create_access_token(7, SCOPE_ADMIN, config, expires=timedelta(seconds=-5))
        with pytest.raises(AuthError) as exc:
            decode_access_token(token, config)
        assert exc.value.code == "INVALID_SESSION"

    def test_wrong_key(self):
        token = create_access_token(7, SCOPE_ADMIN, AuthConfig(secret_key="one"))
        with pytest.raises(AuthError):
            decode_access_token(token, AuthConfig(secret_key="two"))

    def test_missing(self):
        with pytest.raises(AuthError) as exc:
            decode_access_token("", AuthConfig())
        assert exc.value.code == "NOT_AUTHENTICATED"
        assert exc.value.status_code == 401


class TestTotp:

    @pytest.mark.parametrize("at,expected", [
        (59, "287082"),
        (1111111109, "081804"),
        (1234567890, "005924"),
        (2000000000, "279037"),
    ])
    def test_rfc6238_vectors(self, at, expected):
        assert totp_now(RFC_SECRET, at=at) == expected

    def test_window(self):
        code = totp_now(RFC_SECRET, at=1000)
        assert verify_totp(RFC_SECRET, code, window=1, at=1000 + 30)
        assert not verify_totp(RFC_SECRET, code, window=0, at=1000 + 30)
        assert not verify_totp(RFC_SECRET, code, window=1, at=1000 + 90)

    def test_rejects_malformed_codes(self):
        assert not verify_totp(RFC_SECRET, "12345")
        assert not verify_totp(RFC_SECRET, "abcdef")
        assert not verify_totp("", "123456")

    def test_generated_secret_works(self):
        secret = generate_totp_secret()
        assert len(secret) == 32
        assert verify_totp(secret, totp_now(secret))

    def test_provisioning_uri(self):
        uri = provisioning_uri(RFC_SECRET, "admin@example.com")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parse_qs(parsed.query)["secret"] == [RFC_SECRET]


class TestLoginFlow:

    def test_authenticate(self, session):
        create_admin(session, "admin@example.com", "correct-horse")
        session.commit()

        result = authenticate(session, "Admin@Example.com", "correct-horse")
        assert result.admin.email == "admin@example.com"
        assert result.requires_2fa is False

    def test_unknown_email_and_bad_password_look_the_same(self, session):
        create_admin(session, "admin@example.com", "correct-horse")
        session.commit()

        with pytest.raises(AuthError) as unknown:
            authenticate(session, "nobody@example.com", "correct-horse")
        with pytest.raises(AuthError) as wrong:
            authenticate(session, "admin@example.com", "battery-staple")
        assert str(unknown.value) == str(wrong.value)
        assert unknown.value.code == wrong.value.code == "INVALID_CREDENTIALS"

    def test_two_factor(self, session):
        admin, secret = create_admin(session, "admin@example.com", "correct-horse", enable_2fa=True)
        session.commit()

        assert authenticate(session, "admin@example.com", "correct-horse").requires_2fa is True
        assert check_second_factor(session, admin.id, totp_now(secret)).id == admin.id
        with pytest.raises(AuthError) as exc:
            check_second_factor(session, admin.id, "000000" if totp_now(secret) != "000000" else "111111")
        assert exc.value.code == "INVALID_2FA_CODE"

    def test_second_factor_not_enabled(self, session):
        admin, _ = create_admin(session, "admin@example.com", "correct-horse")
        session.commit()
        with pytest.raises(AuthError) as exc:
            check_second_factor(session, admin.id, "123456")
        assert exc.value.code == "2FA_NOT_ENABLED"


class TestCreateAdmin:

    def test_rejects_short_password(self, session):
        with pytest.raises(ValidationError) as exc:
            create_admin(session, "admin@example.com", "short")
        assert exc.value.field == "password"

    def test_rejects_bad_email(self, session):
        with pytest.raises(ValidationError):
            create_admin(session, "not-an-email", "long-enough-pass")

    def test_password_is_hashed(self, session):
        admin, secret = create_admin(session, "admin@example.com", "long-enough-pass")
        assert admin.password_hash != "long-enough-pass"
        assert secret is None
