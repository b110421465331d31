"""Replay and resend protection for emailed tokens and codes.

``FreshnessGuard`` remembers, per identifier (an email address), when the most
recent token of a given kind was issued so that older tokens are rejected even
while they are still unexpired. ``ThrottleGuard`` limits how often a resend
can be requested: a cooldown between consecutive attempts plus a cap on the
number of attempts in a rolling window.

When a Redis cache is supplied it is the only store, so limits hold across
instances. Without one, or when a cache call fails, the guard uses a
process-local map behind a lock and prunes it on every local write. Cache
errors are logged and never raised (fail open).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from authcore.logging import get_logger, redact_email
from authcore.service.errors import RateLimitedError

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize(identifier: str) -> str:
    return (identifier or "").strip().lower()


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class FreshnessGuard:
    def __init__(
        self,
        scope: str,
        *,
        cache=None,
        clock: Optional[Clock] = None,
        tolerance: timedelta = timedelta(seconds=1),
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        self.scope = scope
        self.cache = cache
        self._clock = clock or utc_now
        self.tolerance = tolerance
        self.retention = retention
        self._latest: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    async def is_latest(self, identifier: str, issued_at: datetime) -> bool:
        """Accept ``issued_at`` unless a newer token has been recorded since."""
        key = _normalize(identifier)
        stored: Optional[datetime] = None
        from_cache = False
        if self.cache:
            try:
                ts = await self.cache.get_latest_timestamp(self.scope, key)
                stored = _from_ts(ts) if ts is not None else None
                from_cache = True
            except Exception as exc:
                logger.warning(
                    "guard_cache_unavailable", guard="freshness", scope=self.scope, error=str(exc)
                )
        if not from_cache:
            with self._lock:
                stored = self._latest.get(key)
        if stored is None:
            return True
        accepted = issued_at >= stored - self.tolerance
        if not accepted:
            logger.info(
                "superseded_token_rejected",
                scope=self.scope,
                identifier=redact_email(key),
            )
        return accepted

    async def store(self, identifier: str, issued_at: datetime) -> None:
        key = _normalize(identifier)
        if self.cache:
            try:
                await self.cache.set_latest_timestamp(
                    self.scope, key, issued_at.timestamp(), int(self.retention.total_seconds())
                )
                return
            except Exception as exc:
                logger.warning(
                    "guard_cache_unavailable", guard="freshness", scope=self.scope, error=str(exc)
                )
        with self._lock:
            self._latest[key] = issued_at
        self.cleanup()

    async def clear(self, identifier: str) -> None:
        key = _normalize(identifier)
        with self._lock:
            self._latest.pop(key, None)
        if self.cache:
            try:
                await self.cache.clear_latest_timestamp(self.scope, key)
            except Exception as exc:
                logger.warning(
                    "guard_cache_unavailable", guard="freshness", scope=self.scope, error=str(exc)
                )

    def cleanup(self) -> int:
        """Drop local entries older than the retention period."""
        cutoff = self._clock() - self.retention
        with self._lock:
            stale = [key for key, ts in self._latest.items() if ts < cutoff]
            for key in stale:
                self._latest.pop(key, None)
        return len(stale)


@dataclass
class ThrottleDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after: timedelta = timedelta(0)

    @property
    def message(self) -> Optional[str]:
        if self.allowed:
            return None
        seconds = max(1, int(self.retry_after.total_seconds() + 0.999))
        if self.reason == "cooldown":
            return f"Please wait {seconds} seconds before requesting another code."
        hours, remainder = divmod(seconds, 3600)
        minutes = remainder // 60
        return f"Daily limit reached. Try again in {hours}h {minutes}m."


class ThrottleGuard:
    def __init__(
        self,
        scope: str,
        *,
        cache=None,
        clock: Optional[Clock] = None,
        cooldown: timedelta = timedelta(seconds=60),
        max_attempts: int = 5,
        window: timedelta = timedelta(hours=24),
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self.scope = scope
        self.cache = cache
        self._clock = clock or utc_now
        self.cooldown = cooldown
        self.max_attempts = max_attempts
        self.window = window
        self._attempts: Dict[str, List[datetime]] = {}
        self._lock = threading.Lock()

    def _local_attempts(self, key: str, now: datetime) -> List[datetime]:
        cutoff = now - self.window
        with self._lock:
            kept = [ts for ts in self._attempts.get(key, []) if ts > cutoff]
            if kept:
                self._attempts[key] = kept
            else:
                self._attempts.pop(key, None)
            return sorted(kept)

    async def _load_attempts(self, key: str, now: datetime) -> List[datetime]:
        if self.cache:
            try:
                raw = await self.cache.get_throttle_attempts(
                    self.scope, key, (now - self.window).timestamp()
                )
                return sorted(_from_ts(ts) for ts in raw)
            except Exception as exc:
                logger.warning(
                    "guard_cache_unavailable", guard="throttle", scope=self.scope, error=str(exc)
                )
        return self._local_attempts(key, now)

    async def check(self, identifier: str) -> ThrottleDecision:
        key = _normalize(identifier)
        now = self._clock()
        attempts = await self._load_attempts(key, now)
        if attempts:
            elapsed = now - attempts[-1]
            if elapsed < self.cooldown:
                return ThrottleDecision(False, "cooldown", self.cooldown - elapsed)
        if len(attempts) >= self.max_attempts:
            resets_at = attempts[0] + self.window
            return ThrottleDecision(False, "daily_limit", max(resets_at - now, timedelta(0)))
        return ThrottleDecision(True)

    async def ensure_allowed(self, identifier: str) -> None:
        decision = await self.check(identifier)
        if not decision.allowed:
            logger.warning(
                "throttle_rejected",
                scope=self.scope,
                identifier=redact_email(_normalize(identifier)),
                reason=decision.reason,
                retry_after_seconds=int(decision.retry_after.total_seconds()),
            )
            raise RateLimitedError(
                decision.message or "Too many attempts",
                retry_after=decision.retry_after,
                detail={"reason": decision.reason},
            )

    async def record_attempt(self, identifier: str) -> None:
        key = _normalize(identifier)
        now = self._clock()
        if self.cache:
            try:
                await self.cache.record_throttle_attempt(
                    self.scope, key, now.timestamp(), self.window.total_seconds()
                )
                return
            except Exception as exc:
                logger.warning(
                    "guard_cache_unavailable", guard="throttle", scope=self.scope, error=str(exc)
                )
        cutoff = now - self.window
        with self._lock:
            kept = [ts for ts in self._attempts.get(key, []) if ts > cutoff]
            kept.append(now)
            self._attempts[key] = kept
        self.cleanup()

    def cleanup(self) -> int:
        """Drop local identifiers whose attempts have all left the window."""
        cutoff = self._clock() - self.window
        with self._lock:
            stale = [
                key for key, attempts in self._attempts.items()
                if not attempts or attempts[-1] <= cutoff
            ]
            for key in stale:
                self._attempts.pop(key, None)
        return len(stale)

    async def clear(self, identifier: str) -> None:
        key = _normalize(identifier)
        with self._lock:
            self._attempts.pop(key, None)
        if self.cache:
            try:
                await self.cache.clear_throttle(self.scope, key)
            except Exception as exc:
                logger.warning(
                    "guard_cache_unavailable", guard="throttle", scope=self.scope, error=str(exc)
                )
