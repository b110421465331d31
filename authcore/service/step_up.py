"""Second-factor (step-up) login state.

A password-verified login that still needs a second factor holds a
``StepUpSession``: a random one-time token bound to the user and the channel
the code must come from. The session lives in its own expiring store, apart
from the user's security stamp, so unrelated credential changes never cancel
an in-flight challenge.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

from authcore.logging import get_logger, redact_email
from authcore.service.errors import ValidationError
from authcore.service.guards import Clock, FreshnessGuard, utc_now
from authcore.service.totp import normalize_code
from authcore.storage.models import StepUpSession, User

logger = get_logger(__name__)

STEP_UP_TOKEN_BYTES = 32
EMAIL_CODE_DIGITS = 6


class StepUpChannel(str, Enum):
    EMAIL = "Email"
    AUTHENTICATOR = "Authenticator"

    @classmethod
    def parse(cls, value) -> "StepUpChannel":
        """Resolve a channel name case-insensitively; anything else is a 400."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for channel in cls:
            if channel.value.lower() == text:
                return channel
        raise ValidationError(
            "unsupported two-factor channel",
            detail={"channel": value, "allowed": [c.value for c in cls]},
        )


class StepUpState(str, Enum):
    NONE_REQUIRED = "NoneRequired"
    PENDING_VERIFICATION = "PendingVerification"
    VERIFIED = "Verified"


def new_step_up_token() -> str:
    return base64.b64encode(secrets.token_bytes(STEP_UP_TOKEN_BYTES)).decode("ascii")


def tokens_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest((expected or "").encode(), (presented or "").encode())


class StepUpSessions:
    """Keyed, expiring store of step-up sessions (one per user)."""

    def __init__(
        self,
        *,
        cache=None,
        clock: Optional[Clock] = None,
        ttl: timedelta = timedelta(minutes=10),
    ) -> None:
        self.cache = cache
        self._clock = clock or utc_now
        self.ttl = ttl
        self._sessions: Dict[str, StepUpSession] = {}
        self._lock = threading.Lock()

    async def create(self, user_id: str, channel: StepUpChannel) -> StepUpSession:
        """Start a new challenge, replacing any earlier one for the user."""
        session = StepUpSession(
            user_id=user_id,
            token=new_step_up_token(),
            channel=channel.value,
            expires_at=self._clock() + self.ttl,
        )
        if self.cache:
            await self.cache.set_step_up_session(
                user_id, session.to_dict(), int(self.ttl.total_seconds())
            )
        else:
            with self._lock:
                self._sessions[user_id] = session
        return session

    async def get(self, user_id: str) -> Optional[StepUpSession]:
        if self.cache:
            payload = await self.cache.get_step_up_session(user_id)
            session = StepUpSession.from_dict(payload) if payload else None
        else:
            with self._lock:
                session = self._sessions.get(user_id)
        if session and session.is_expired(self._clock()):
            await self.discard(user_id)
            return None
        return session

    async def consume(self, user_id: str, token: str) -> bool:
        """Mark the session verified if ``token`` still names a pending challenge."""
        if self.cache:
            return await self.cache.consume_step_up_session(user_id, token)
        with self._lock:
            session = self._sessions.get(user_id)
            if (
                not session
                or session.verified
                or session.is_expired(self._clock())
                or not tokens_match(session.token, token)
            ):
                return False
            session.verified = True
            return True

    async def discard(self, user_id: str) -> None:
        if self.cache:
            await self.cache.delete_step_up_session(user_id)
        else:
            with self._lock:
                self._sessions.pop(user_id, None)


def _hash_code(user_id: str, code: str) -> str:
    return hashlib.sha256(f"{user_id}:{code}".encode()).hexdigest()


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class EmailCodeProvider:
    """Issues and validates emailed six-digit login codes.

    Codes are kept hashed with their issue time. Every issued code is recorded
    in the freshness guard, so once a newer code is sent the older one stops
    validating even while unexpired.
    """

    def __init__(
        self,
        freshness: FreshnessGuard,
        *,
        cache=None,
        clock: Optional[Clock] = None,
        ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        self.freshness = freshness
        self.cache = cache
        self._clock = clock or utc_now
        self.ttl = ttl
        self._codes: Dict[str, Dict[str, datetime]] = {}
        self._lock = threading.Lock()

    async def issue(self, user: User) -> str:
        code = f"{secrets.randbelow(10 ** EMAIL_CODE_DIGITS):0{EMAIL_CODE_DIGITS}d}"
        issued_at = self._clock()
        code_hash = _hash_code(user.id, code)
        if self.cache:
            await self.cache.add_two_factor_code(
                user.id, code_hash, issued_at.timestamp(), int(self.ttl.total_seconds())
            )
        else:
            cutoff = issued_at - self.ttl
            with self._lock:
                codes = {
                    h: ts for h, ts in self._codes.get(user.id, {}).items() if ts > cutoff
                }
                codes[code_hash] = issued_at
                self._codes[user.id] = codes
        await self.freshness.store(user.email, issued_at)
        logger.info("two_factor_code_issued", user_id=user.id)
        return code

    async def validate(self, user: User, code: str) -> bool:
        candidate = normalize_code(code)
        if len(candidate) != EMAIL_CODE_DIGITS or not candidate.isdigit():
            return False
        code_hash = _hash_code(user.id, candidate)
        if self.cache:
            raw = await self.cache.get_two_factor_code(user.id, code_hash)
            issued_at = _from_ts(raw) if raw is not None else None
        else:
            with self._lock:
                issued_at = self._codes.get(user.id, {}).get(code_hash)
        if issued_at is None:
            return False
        if self._clock() >= issued_at + self.ttl:
            logger.info("two_factor_code_expired", user_id=user.id)
            return False
        if not await self.freshness.is_latest(user.email, issued_at):
            logger.info(
                "two_factor_code_superseded",
                user_id=user.id,
                identifier=redact_email(user.email),
            )
            return False
        return True

    async def clear(self, user: User) -> None:
        if self.cache:
            await self.cache.clear_two_factor_codes(user.id)
        else:
            with self._lock:
                self._codes.pop(user.id, None)
        await self.freshness.clear(user.email)
