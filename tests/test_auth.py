"""
authcore - Authentication Test Suite

Tests for:
- Password hashing
- JWT access and refresh tokens, signing key configuration
- Credential verification
- Client address resolution behind proxies
- Login, OTP verification, refresh and logout endpoints

Run with: pytest tests/test_auth.py -v
"""

from datetime import timedelta
from uuid import uuid4

import bcrypt
import pytest
from jose import jwt
from pydantic import ValidationError
from sqlmodel import select

from authcore.app import create_app
from authcore.auth.credentials import verify_credentials
from authcore.auth.dependencies import is_trusted_proxy
from authcore.auth.errors import AccessTokenInvalid, InvalidCredentials, TokenExpiredOrUnknown
from authcore.auth.models import RefreshToken, Role, TrustedOrigin
from authcore.auth.password import hash_password, needs_rehash, verify_password
from authcore.auth.tokens import (
    IdentityClaims,
    create_access_token,
    create_refresh_token,
    verify_access_token,
    verify_refresh_token,
)
from authcore.config import Settings
from tests.conftest import TEST_PASSWORD, auth_headers, build_client, login


# =============================================================================
# PASSWORD HASHING TESTS
# =============================================================================

class TestPasswordHashing:
    """Tests for bcrypt password hashing."""

    def test_hash_password_creates_bcrypt_hash(self):
        """Hashes should be 60-character bcrypt strings."""
        hashed = hash_password("SecurePassword123")

        assert hashed.startswith("$2b$")
        assert len(hashed) == 60

    def test_verify_password(self):
        """Only the original password should verify."""
        hashed = hash_password("SecurePassword123")

        assert verify_password("SecurePassword123", hashed) is True
        assert verify_password("WrongPassword", hashed) is False
        assert verify_password("", hashed) is False

    def test_malformed_hash_is_a_mismatch(self):
        """A corrupt stored hash should fail verification, not raise."""
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_same_password_different_hashes(self):
        """Salting should make every hash unique."""
        assert hash_password("pw") != hash_password("pw")

    def test_needs_rehash_old_work_factor(self):
        """Hashes below the target work factor should be flagged."""
        old_hash = bcrypt.hashpw(b"password", bcrypt.gensalt(rounds=4)).decode()

        assert needs_rehash(old_hash, target_work_factor=12) is True
        assert needs_rehash(old_hash, target_work_factor=4) is False


# =============================================================================
# JWT TOKEN TESTS
# =============================================================================

def _claims(**overrides) -> IdentityClaims:
    values = {
        "sub": str(uuid4()),
        "email": "mario.rossi@example.com",
        "name": "Mario Rossi",
        "role": "SUPPORT",
    }
    values.update(overrides)
    return IdentityClaims(**values)


def _app_settings(**overrides) -> Settings:
    values = {
        "SECRET_KEY": "app-specific-access-key",
        "REFRESH_SECRET_KEY": "app-specific-refresh-key",
    }
    values.update(overrides)
    return Settings(**values)


class TestJWTTokens:
    """Tests for token minting and verification."""

    def test_access_token_round_trip(self):
        """An access token should decode to the claims it was minted with."""
        claims = _claims(custom_role_id=str(uuid4()))

        token, jti = create_access_token(claims)
        payload = verify_access_token(token)

        assert payload.sub == claims.sub
        assert payload.role == "SUPPORT"
        assert payload.custom_role_id == claims.custom_role_id
        assert payload.type == "access"
        assert payload.jti == jti
        assert len(jti) == 32

    def test_tampered_token_rejected(self):
        """Any change to the payload should break the signature."""
        token, _ = create_access_token(_claims())
        header, body, signature = token.split(".")

        with pytest.raises(AccessTokenInvalid):
            verify_access_token(".".join([header, body + "x", signature]))

    def test_expired_token_rejected(self):
        """Expired access tokens should be rejected."""
        token, _ = create_access_token(_claims(), expires_delta=timedelta(seconds=-5))

        with pytest.raises(AccessTokenInvalid):
            verify_access_token(token)

    def test_refresh_token_is_not_an_access_token(self):
        """A refresh token should not pass as an access token."""
        token, _, _ = create_refresh_token(_claims())

        with pytest.raises(AccessTokenInvalid):
            verify_access_token(token)

    def test_access_token_is_not_a_refresh_token(self):
        """An access token should not pass as a refresh token."""
        refresh, _, _ = create_refresh_token(_claims())
        access, _ = create_access_token(_claims())

        assert verify_refresh_token(refresh).type == "refresh"
        with pytest.raises(TokenExpiredOrUnknown):
            verify_refresh_token(access)

    def test_refresh_tokens_minted_together_are_distinct(self):
        """Two refresh tokens minted in the same second should differ."""
        claims = _claims()

        first, _, _ = create_refresh_token(claims)
        second, _, _ = create_refresh_token(claims)

        assert first != second

    def test_injected_settings_sign_and_expire(self):
        """Tokens should use the keys and lifetimes of the settings passed in."""
        custom = _app_settings(ACCESS_TOKEN_EXPIRE_MINUTES=5)

        token, _ = create_access_token(_claims(), settings=custom)
        payload = verify_access_token(token, custom)

        assert (payload.exp - payload.iat) == timedelta(minutes=5)
        with pytest.raises(AccessTokenInvalid):
            verify_access_token(token)

    def test_blank_key_rejects_forged_token(self):
        """With no signing key configured nothing should verify."""
        blank = Settings.model_construct(SECRET_KEY="", REFRESH_SECRET_KEY="")
        forged = jwt.encode(
            {**_claims(role="ADMIN").model_dump(), "type": "access", "jti": "x",
             "iat": 0, "exp": 4102444800},
            "",
            algorithm="HS256",
        )

        with pytest.raises(AccessTokenInvalid):
            verify_access_token(forged, blank)
        with pytest.raises(RuntimeError):
            create_access_token(_claims(), settings=blank)


class TestSigningKeys:
    """Tests for signing key configuration."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"SECRET_KEY": ""},
            {"REFRESH_SECRET_KEY": ""},
            {"SECRET_KEY": "short"},
            {"SECRET_KEY": "same-key-for-both-tokens", "REFRESH_SECRET_KEY": "same-key-for-both-tokens"},
        ],
    )
    def test_unusable_keys_rejected_outside_development(self, overrides):
        """Blank, short or shared keys should fail settings validation."""
        with pytest.raises(ValidationError):
            Settings(ENVIRONMENT="production", **overrides)

    def test_development_generates_keys(self):
        """Development without keys should get random distinct ones."""
        dev = Settings(ENVIRONMENT="development", SECRET_KEY="", REFRESH_SECRET_KEY="")

        assert len(dev.SECRET_KEY) >= 16
        assert dev.SECRET_KEY != dev.REFRESH_SECRET_KEY

    def test_app_refuses_to_start_without_keys(self, test_engine):
        """create_app should refuse settings that bypassed validation."""
        blank = Settings.model_construct(SECRET_KEY="", REFRESH_SECRET_KEY="")

        with pytest.raises(RuntimeError):
            create_app(settings=blank, engine=test_engine)


# =============================================================================
# CREDENTIAL VERIFIER TESTS
# =============================================================================

class TestCredentialVerifier:
    """Tests for username/password verification."""

    @pytest.mark.asyncio
    async def test_valid_credentials(self, db_session, support_user):
        """Usernames should be trimmed and case-folded before lookup."""
        user = await verify_credentials(db_session, "  Mario.Rossi@Example.com ", TEST_PASSWORD)

        assert user.id == support_user.id
        claims = IdentityClaims.from_user(user)
        assert claims.name == "Mario Rossi"
        assert claims.role == "SUPPORT"
        assert claims.custom_role_id is None

    @pytest.mark.asyncio
    async def test_failures_are_indistinguishable(self, db_session, support_user, inactive_user):
        """Wrong password, unknown user and inactive user should look the same."""
        errors = []
        for username, password in [
            ("mario.rossi@example.com", "WrongPassword1"),
            ("nobody@example.com", TEST_PASSWORD),
            ("former@example.com", TEST_PASSWORD),
        ]:
            with pytest.raises(InvalidCredentials) as exc_info:
                await verify_credentials(db_session, username, password)
            errors.append((exc_info.value.status_code, exc_info.value.error_code, str(exc_info.value)))

        assert len(set(errors)) == 1
        assert errors[0] == (401, "invalid_credentials", "Invalid credentials")

    @pytest.mark.asyncio
    async def test_weak_hash_upgraded_on_login(self, db_session, make_user):
        """A hash below the configured work factor should be upgraded on login."""
        weak = bcrypt.hashpw(TEST_PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode()
        user = make_user("legacy@example.com", Role.PM)
        user.password_hash = weak
        db_session.add(user)
        db_session.commit()

        import authcore.auth.password as password_module
        original = password_module.settings.BCRYPT_WORK_FACTOR
        password_module.settings.BCRYPT_WORK_FACTOR = 5
        try:
            await verify_credentials(db_session, "legacy@example.com", TEST_PASSWORD)
        finally:
            password_module.settings.BCRYPT_WORK_FACTOR = original

        db_session.refresh(user)
        assert user.password_hash != weak
        assert user.password_hash.startswith("$2b$05$")
        assert verify_password(TEST_PASSWORD, user.password_hash)


# =============================================================================
# LOGIN FLOW TESTS
# =============================================================================

class TestLoginEndpoint:
    """Tests for the adaptive login flow."""

    def test_new_origin_requires_challenge(self, client, support_user, notifier):
        """A first login from an address should get an OTP challenge."""
        response = login(client, "mario.rossi@example.com")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "challenge_required"
        assert data["requires_challenge"] is True
        assert data["user_id"] == str(support_user.id)
        assert data["masked_destination"] == "m***i@example.com"
        assert "tokens" not in data
        assert len(notifier.sent) == 1

    def test_challenge_then_trusted_origin(self, client, db_session, support_user, notifier, sink):
        """A verified address should log in directly next time."""
        first = login(client, "mario.rossi@example.com", ip_address="198.51.100.7")
        user_id = first.json()["user_id"]

        verify = client.post(
            "/api/v1/auth/verify-ip",
            json={"user_id": user_id, "code": notifier.last_code},
            headers={"X-Forwarded-For": "198.51.100.7"},
        )
        assert verify.status_code == 200
        assert verify.json()["tokens"]["access_token"]
        assert "authcore_refresh" in verify.cookies

        entry = db_session.exec(
            select(TrustedOrigin).where(TrustedOrigin.user_id == support_user.id)
        ).first()
        assert entry is not None
        assert entry.ip_address == "198.51.100.7"

        second = login(client, "mario.rossi@example.com", ip_address="198.51.100.7")
        assert second.status_code == 200
        assert second.json()["status"] == "authenticated"
        assert second.json()["tokens"]["token_type"] == "bearer"
        assert len(notifier.sent) == 1

        assert "OTP_SENT" in sink.actions()
        assert "IP_VERIFIED" in sink.actions()
        assert "LOGIN" in sink.actions()

    def test_trusted_origin_is_per_address(self, client, support_user, notifier):
        """Trust on one address should not extend to another."""
        login(client, "mario.rossi@example.com", ip_address="198.51.100.7")
        client.post(
            "/api/v1/auth/verify-ip",
            json={"user_id": str(support_user.id), "code": notifier.last_code},
            headers={"X-Forwarded-For": "198.51.100.7"},
        )

        response = login(client, "mario.rossi@example.com", ip_address="198.51.100.8")

        assert response.json()["status"] == "challenge_required"

    def test_wrong_code_reports_attempts_remaining(self, client, support_user, notifier):
        """A wrong code should report the attempts left."""
        login(client, "mario.rossi@example.com")
        wrong = "000000" if notifier.last_code != "000000" else "111111"

        response = client.post(
            "/api/v1/auth/verify-ip",
            json={"user_id": str(support_user.id), "code": wrong},
            headers={"X-Forwarded-For": "203.0.113.10"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_code"
        assert response.json()["attempts_remaining"] == 4

    def test_verify_without_challenge_is_expired(self, client, support_user):
        """Verifying with no open challenge should report it expired."""
        response = client.post(
            "/api/v1/auth/verify-ip",
            json={"user_id": str(support_user.id), "code": "123456"},
        )

        assert response.status_code == 400
        assert response.json()["expired"] is True

    def test_invalid_password(self, client, support_user):
        """A wrong password should be a 401."""
        response = login(client, "mario.rossi@example.com", password="WrongPassword123")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"
        assert response.json()["error_code"] == "invalid_credentials"

    def test_unknown_user_same_response(self, client, support_user):
        """Unknown users should get the wrong-password response."""
        unknown = login(client, "nobody@example.com")
        wrong = login(client, "mario.rossi@example.com", password="WrongPassword123")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["detail"] == wrong.json()["detail"]

    def test_inactive_user_same_response(self, client, inactive_user):
        """Inactive users should get the wrong-password response."""
        response = login(client, "former@example.com")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    def test_sixth_attempt_rate_limited(self, client, support_user):
        """The sixth login from one address within a minute should be a 429."""
        for _ in range(5):
            login(client, "mario.rossi@example.com", password="WrongPassword123", ip_address="192.0.2.1")

        # Correct credentials do not bypass the limit
        response = login(client, "mario.rossi@example.com", ip_address="192.0.2.1")

        assert response.status_code == 429
        assert response.json()["error_code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

        other_ip = login(client, "mario.rossi@example.com", ip_address="192.0.2.2")
        assert other_ip.status_code == 200

    def test_malformed_email_rejected(self, client):
        """A malformed email should fail request validation."""
        response = client.post(
            "/api/v1/auth/login",
            json={"email": "not-an-email", "password": "whatever"},
        )

        assert response.status_code == 422

    def test_development_skips_trust_check(self, test_engine, support_user, notifier, sink):
        """Development mode should log in without a challenge."""
        dev_settings = Settings(ENVIRONMENT="development")
        with build_client(test_engine, notifier, sink, dev_settings) as dev_client:
            response = login(dev_client, "mario.rossi@example.com")

        assert response.status_code == 200
        assert response.json()["status"] == "authenticated"
        assert notifier.sent == []

    def test_login_records_last_login(self, client, db_session, support_user, notifier):
        """A completed login should record time and address."""
        login(client, "mario.rossi@example.com", ip_address="198.51.100.9")
        client.post(
            "/api/v1/auth/verify-ip",
            json={"user_id": str(support_user.id), "code": notifier.last_code},
            headers={"X-Forwarded-For": "198.51.100.9"},
        )

        db_session.refresh(support_user)
        assert support_user.last_login_at is not None
        assert support_user.last_ip_address == "198.51.100.9"

    def test_app_settings_drive_issued_tokens(self, test_engine, support_user, notifier, sink):
        """Tokens from an app should use that app's keys and lifetime."""
        custom = _app_settings(ENVIRONMENT="development", ACCESS_TOKEN_EXPIRE_MINUTES=5)
        with build_client(test_engine, notifier, sink, custom) as app_client:
            response = login(app_client, "mario.rossi@example.com")
            tokens = response.json()["tokens"]
            me = app_client.get(
                "/api/v1/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}
            )
            refreshed = app_client.post(
                "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
            )

        assert tokens["expires_in"] == 300
        assert "Max-Age=300" in response.headers["set-cookie"]
        assert verify_access_token(tokens["access_token"], custom).sub == str(support_user.id)
        with pytest.raises(AccessTokenInvalid):
            verify_access_token(tokens["access_token"])
        assert me.status_code == 200
        assert refreshed.status_code == 200
        assert refreshed.json()["tokens"]["expires_in"] == 300


# =============================================================================
# CLIENT ADDRESS TESTS
# =============================================================================

@pytest.fixture
def direct_client(test_engine, notifier, sink):
    """App client whose socket peer is not a trusted proxy."""
    with build_client(test_engine, notifier, sink, Settings(TRUSTED_PROXIES=[])) as c:
        yield c


class TestClientAddress:
    """Tests for resolving the client address behind proxies."""

    def _challenge_ip(self, client, notifier, headers):
        client.post(
            "/api/v1/auth/login",
            json={"email": "mario.rossi@example.com", "password": TEST_PASSWORD},
            headers=headers,
        )
        return notifier.sent[-1][2]

    def test_first_forwarded_entry_wins(self, client, support_user, notifier):
        """Behind a trusted proxy the first X-Forwarded-For entry is the client."""
        ip = self._challenge_ip(
            client, notifier, {"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "X-Real-IP": "10.9.9.9"}
        )
        assert ip == "203.0.113.5"

    def test_real_ip_fallback(self, client, support_user, notifier):
        """Without X-Forwarded-For, X-Real-IP should be used."""
        ip = self._challenge_ip(client, notifier, {"X-Real-IP": "203.0.113.6"})
        assert ip == "203.0.113.6"

    def test_invalid_forwarded_value_ignored(self, client, support_user, notifier):
        """A forwarded value that is not an IP address should be skipped."""
        ip = self._challenge_ip(
            client, notifier, {"X-Forwarded-For": "x" * 200, "X-Real-IP": "203.0.113.7"}
        )
        assert ip == "203.0.113.7"

    def test_forwarded_address_canonicalised(self, client, support_user, notifier):
        """IPv6 addresses should be stored in canonical form."""
        ip = self._challenge_ip(client, notifier, {"X-Forwarded-For": "2001:DB8:0:0:0:0:0:1"})
        assert ip == "2001:db8::1"

    def test_non_ip_peer_is_unknown(self, client, support_user, notifier):
        """A socket peer that is not an IP address should resolve to unknown."""
        ip = self._challenge_ip(client, notifier, {})
        assert ip == "unknown"

    def test_headers_ignored_from_untrusted_peer(self, direct_client, support_user, notifier):
        """Forwarding headers from a peer that is not a proxy should be ignored."""
        ip = self._challenge_ip(
            direct_client, notifier, {"X-Forwarded-For": "203.0.113.5", "X-Real-IP": "203.0.113.6"}
        )
        assert ip == "unknown"

    def test_rotating_forwarded_header_still_rate_limited(self, direct_client, support_user):
        """Changing X-Forwarded-For per request should not escape the login limit."""
        statuses = [
            login(
                direct_client,
                "mario.rossi@example.com",
                password="WrongPassword123",
                ip_address=f"198.51.100.{i}",
            ).status_code
            for i in range(8)
        ]

        assert statuses[:5] == [401] * 5
        assert statuses[5:] == [429] * 3

    def test_spoofed_trusted_address_still_challenged(self, client, direct_client, support_user, notifier):
        """Claiming a trusted address from a non-proxy peer should not skip the OTP."""
        _trusted_login(client, notifier, support_user.id, ip_address="203.0.113.10")

        response = login(direct_client, "mario.rossi@example.com", ip_address="203.0.113.10")

        assert response.json()["status"] == "challenge_required"

    @pytest.mark.parametrize(
        "peer,proxies,expected",
        [
            ("10.0.0.7", ["10.0.0.0/8"], True),
            ("10.0.0.7", ["10.0.0.7"], True),
            ("192.0.2.1", ["10.0.0.0/8"], False),
            ("::1", ["127.0.0.1"], False),
            ("testclient", ["testclient"], True),
            ("testclient", ["10.0.0.0/8"], False),
            (None, ["10.0.0.0/8"], False),
        ],
    )
    def test_is_trusted_proxy(self, peer, proxies, expected):
        """Proxies match by address, CIDR network or exact peer name."""
        assert is_trusted_proxy(peer, proxies) is expected


# =============================================================================
# REFRESH / LOGOUT / ME ENDPOINT TESTS
# =============================================================================

def _trusted_login(client, notifier, user_id, ip_address="203.0.113.10"):
    login(client, "mario.rossi@example.com", ip_address=ip_address)
    response = client.post(
        "/api/v1/auth/verify-ip",
        json={"user_id": str(user_id), "code": notifier.last_code},
        headers={"X-Forwarded-For": ip_address},
    )
    return response.json()["tokens"]


class TestSessionEndpoints:
    """Tests for refresh, logout and identity endpoints."""

    def test_refresh_rotates(self, client, support_user, notifier):
        """Refreshing should hand back a new refresh token."""
        tokens = _trusted_login(client, notifier, support_user.id)

        response = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        assert response.json()["tokens"]["refresh_token"] != tokens["refresh_token"]

    def test_refresh_unknown_token(self, client):
        """An unknown refresh token should be a 401."""
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": "bogus"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "token_expired"

    def test_cookie_refresh_redirects_to_next(self, client, support_user, notifier):
        """Cookie refresh should redirect to the requested local path."""
        _trusted_login(client, notifier, support_user.id)

        response = client.get(
            "/api/v1/auth/refresh", params={"next": "/crm/leads"}, follow_redirects=False
        )

        assert response.status_code == 303
        assert response.headers["location"] == "/crm/leads"

    def test_cookie_refresh_failure_redirects_to_login(self, client):
        """A failed cookie refresh should go to login with a safe next path."""
        client.cookies.set("authcore_refresh", "bogus")

        response = client.get(
            "/api/v1/auth/refresh", params={"next": "https://evil.example"}, follow_redirects=False
        )

        assert response.status_code == 303
        assert response.headers["location"] == "/login?next=%2F"

    def test_me(self, client, support_user):
        """/me should describe the caller."""
        response = client.get("/api/v1/auth/me", headers=auth_headers(support_user))

        assert response.status_code == 200
        assert response.json()["email"] == "mario.rossi@example.com"
        assert response.json()["role"] == "SUPPORT"

    def test_me_requires_token(self, client):
        """/me without a token should be a 401."""
        response = client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error_code"] == "unauthorized"

    def test_deactivated_user_token_rejected(self, client, db_session, support_user):
        """Deactivation should invalidate outstanding access tokens at once."""
        headers = auth_headers(support_user)
        support_user.is_active = False
        db_session.add(support_user)
        db_session.commit()

        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_logout_revokes_refresh_token(self, client, support_user, notifier):
        """Logout should make the refresh token unusable."""
        tokens = _trusted_login(client, notifier, support_user.id)

        response = client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )
        assert response.status_code == 200
        assert response.json()["tokens_revoked"] == 1

        client.cookies.clear()
        refresh = client.post(
            "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_logout_all_sessions(self, client, db_session, support_user, notifier):
        """Logout everywhere should revoke every refresh token of the user."""
        tokens = _trusted_login(client, notifier, support_user.id)
        login(client, "mario.rossi@example.com")  # trusted now, second refresh token

        response = client.post(
            "/api/v1/auth/logout",
            json={"all_sessions": True},
            headers={"Authorization": f"Bearer {tokens['access_token']}"},
        )

        assert response.status_code == 200
        assert response.json()["tokens_revoked"] == 2
        active = db_session.exec(
            select(RefreshToken).where(
                RefreshToken.user_id == support_user.id, RefreshToken.revoked == False  # noqa: E712
            )
        ).all()
        assert active == []

    def test_security_headers(self, client):
        """Responses should carry the security headers and a request id."""
        response = client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"]
