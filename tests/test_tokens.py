"""Tests for access-token issuance and validation.

Covers:
- Claim set and the fixed 15 minute lifetime
- Signature, issuer, audience and expiry checks on decode
- Missing signing configuration
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from authcore.config import Settings
from authcore.service.errors import ConfigurationMissingError
from authcore.service.tokens import TokenIssuer, new_refresh_token
from authcore.storage.models import User

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret-key-for-token-unit-tests-0123456789")


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def user():
    return User(id="0b6c1f5e-6f5a-4f0e-9a58-3f8d2b1c7e11", email="a@x.com", first_name="Ada", last_name="Lovelace")


def _claims(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestIssueAccessToken:
    def test_lifetime_is_fifteen_minutes(self, issuer, user):
        token, expires_in = issuer.issue_access_token(user, ["Viewer"], now=NOW)

        assert expires_in == 900
        claims = _claims(token)
        assert claims["exp"] - claims["iat"] == 900
        assert claims["iat"] == int(NOW.timestamp())

    def test_claims_describe_the_user(self, issuer, user):
        token, _ = issuer.issue_access_token(user, ["Viewer", "Editor"], now=NOW)
        claims = _claims(token)

        assert claims["sub"] == user.id
        assert claims["email"] == "a@x.com"
        assert claims["given_name"] == "Ada"
        assert claims["family_name"] == "Lovelace"
        assert claims["name"] == "Ada Lovelace"
        assert claims["iss"] == "authcore"
        assert claims["aud"] == "authcore-clients"
        assert claims["jti"]

    def test_one_role_entry_per_assigned_role(self, issuer, user):
        token, _ = issuer.issue_access_token(user, ["Viewer", "Editor", "Viewer"], now=NOW)

        assert _claims(token)["role"] == ["Editor", "Viewer"]

    def test_name_falls_back_to_email(self, issuer):
        bare = User(id="u-1", email="bare@x.com")
        token, _ = issuer.issue_access_token(bare, [], now=NOW)

        assert _claims(token)["name"] == "bare@x.com"
        assert _claims(token)["role"] == []

    def test_each_token_has_unique_jti(self, issuer, user):
        first, _ = issuer.issue_access_token(user, [], now=NOW)
        second, _ = issuer.issue_access_token(user, [], now=NOW)

        assert _claims(first)["jti"] != _claims(second)["jti"]


class TestDecode:
    def test_round_trip_within_lifetime(self, issuer, user):
        token, _ = issuer.issue_access_token(user, ["Viewer"], now=NOW)

        payload = issuer.decode(token, now=NOW.timestamp() + 60)

        assert payload is not None
        assert payload["sub"] == user.id

    def test_expired_token_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)

        assert issuer.decode(token, now=NOW.timestamp() + 3600) is None

    def test_tampered_signature_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)
        header, payload, signature = token.split(".")
        flipped = ("B" if signature[0] == "A" else "A") + signature[1:]
        forged = f"{header}.{payload}.{flipped}"

        assert issuer.decode(forged, now=NOW.timestamp()) is None

    def test_other_secret_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)
        other = TokenIssuer(Settings(jwt_secret="a-completely-different-secret-value-9876543210"))

        assert other.decode(token, now=NOW.timestamp()) is None

    def test_wrong_audience_rejected(self, settings, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)
        strict = TokenIssuer(settings.model_copy(update={"jwt_audience": "someone-else"}))

        assert strict.decode(token, now=NOW.timestamp()) is None

    def test_non_hs256_header_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)
        _, payload, signature = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        assert issuer.decode(f"{header}.{payload}.{signature}", now=NOW.timestamp()) is None

    def test_garbage_rejected(self, issuer):
        assert issuer.decode("not-a-token") is None

    @pytest.mark.parametrize("header", [b"[]", b'"x"', b"42", b"null"])
    def test_non_object_header_rejected(self, issuer, header):
        forged = f"{_segment(header)}.{_segment(b'{}')}.sig"

        assert issuer.decode(forged, now=NOW.timestamp()) is None

    def test_non_object_payload_rejected(self, issuer):
        header = _segment(b'{"alg":"HS256","typ":"JWT"}')
        payload = _segment(b"[1, 2]")
        signature = issuer._sign(issuer.settings.jwt_secret.encode(), f"{header}.{payload}")

        assert issuer.decode(f"{header}.{payload}.{signature}", now=NOW.timestamp()) is None

    def test_non_ascii_signature_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)
        header, payload, _ = token.split(".")

        assert issuer.decode(f"{header}.{payload}.sïgnature", now=NOW.timestamp()) is None

    def test_expiry_leeway(self, settings, issuer, user):
        token, _ = issuer.issue_access_token(user, [], now=NOW)
        expires = NOW.timestamp() + 900

        assert issuer.decode(token, now=expires + 20) is not None
        assert issuer.decode(token, now=expires + 31) is None

        strict = TokenIssuer(settings, clock_skew=timedelta(0))
        assert strict.decode(token, now=expires - 1) is not None
        assert strict.decode(token, now=expires) is None


class TestConfiguration:
    def test_missing_secret_raises(self, user):
        issuer = TokenIssuer(Settings(jwt_secret=None))

        with pytest.raises(ConfigurationMissingError) as exc_info:
            issuer.issue_access_token(user, [], now=NOW)

        assert exc_info.value.error_code == "configuration_missing"
        assert "JWT_SECRET" in exc_info.value.detail["missing"]

    def test_ensure_configured_passes_with_secret(self, issuer):
        issuer.ensure_configured()


def test_refresh_tokens_are_opaque_hex():
    token = new_refresh_token()

    assert len(token) == 32
    int(token, 16)
    assert token != new_refresh_token()
