"""RFC 6238 time-based one-time codes for authenticator apps."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote

from authcore.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20  # 160-bit shared secret
# One adjacent step either side absorbs network delay and small clock drift
VERIFICATION_WINDOW = 1


def generate_secret() -> str:
    """Random base32 secret, unpadded (20 bytes encode to exactly 32 chars)."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def normalize_code(code: Optional[str]) -> str:
    """Strip the separators users commonly type between digit groups."""
    return (code or "").replace(" ", "").replace("-", "").strip()


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = VERIFICATION_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    candidate = normalize_code(code)
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    issuer_enc = quote(issuer, safe="")
    account_enc = quote(account, safe="")
    return (
        f"otpauth://totp/{issuer_enc}:{account_enc}"
        f"?secret={secret}&issuer={issuer_enc}"
        f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
    )


def format_manual_key(secret: str) -> str:
    """Group the secret into space-separated blocks of four for manual entry."""
    upper = secret.upper()
    return " ".join(upper[i : i + 4] for i in range(0, len(upper), 4))
