from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ConfigurationMissingError
from authcore.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_LIFETIME = timedelta(minutes=15)
REFRESH_TOKEN_LIFETIME = timedelta(days=7)


def new_refresh_token() -> str:
    """Opaque refresh credential: 32 hex characters of randomness."""
    return uuid.uuid4().hex


class TokenIssuer:
    """Mints and validates HS256-signed access tokens.

    Issued tokens carry ``exp = iat + 15 minutes``. ``decode`` accepts a token
    for up to ``clock_skew`` (30 seconds by default) past ``exp``; pass
    ``timedelta(0)`` for strict expiry.
    """

    def __init__(self, settings: Settings, *, clock_skew: timedelta = timedelta(seconds=30)) -> None:
        self.settings = settings
        self._clock_skew = clock_skew

    def _signing_material(self) -> tuple[bytes, str, str]:
        missing = [
            name
            for name, value in (
                ("JWT_SECRET", self.settings.jwt_secret),
                ("JWT_ISSUER", self.settings.jwt_issuer),
                ("JWT_AUDIENCE", self.settings.jwt_audience),
            )
            if not value
        ]
        if missing:
            logger.error("jwt_configuration_missing", missing=missing)
            raise ConfigurationMissingError(
                "token signing configuration missing", detail={"missing": missing}
            )
        return (
            self.settings.jwt_secret.encode(),
            self.settings.jwt_issuer,
            self.settings.jwt_audience,
        )

    def ensure_configured(self) -> None:
        self._signing_material()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        key, _, _ = self._signing_material()
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def issue_access_token(
        self, user: User, roles: Iterable[str], *, now: Optional[datetime] = None
    ) -> tuple[str, int]:
        """Return the signed access token and its lifetime in seconds."""
        _, issuer, audience = self._signing_material()
        issued = now or datetime.now(timezone.utc)
        lifetime = int(ACCESS_TOKEN_LIFETIME.total_seconds())
        payload = {
            "iss": issuer,
            "aud": audience,
            "sub": user.id,
            "email": user.email,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "name": user.full_name or user.email,
            # One entry per assigned role
            "role": sorted(set(roles), key=str.lower),
            "jti": str(uuid.uuid4()),
            "iat": int(issued.timestamp()),
            "exp": int(issued.timestamp()) + lifetime,
        }
        return self.encode(payload), lifetime

    def decode(self, token: str, *, now: Optional[float] = None) -> Optional[dict[str, Any]]:
        key, issuer, audience = self._signing_material()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            logger.warning("jwt_header_decode_failed", header_type=type(header).__name__)
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._sign(key, signing_input).encode()
        if not hmac.compare_digest(expected_sig, sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            logger.warning("jwt_payload_decode_failed", payload_type=type(payload).__name__)
            return None
        if payload.get("iss") != issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = aud == audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        current = time.time() if now is None else now
        if exp_ts <= current - self._clock_skew.total_seconds():
            return None
        return payload
