from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger, redact_email
from authcore.service.email import EmailService
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidSessionError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from authcore.service.guards import Clock, FreshnessGuard, ThrottleGuard, utc_now
from authcore.service.rbac import RBACResolver
from authcore.service.step_up import (
    EmailCodeProvider,
    StepUpChannel,
    StepUpSessions,
    StepUpState,
    tokens_match,
)
from authcore.service.tokens import REFRESH_TOKEN_LIFETIME, TokenIssuer, new_refresh_token
from authcore.service.totp import (
    format_manual_key,
    generate_secret,
    provisioning_uri,
    verify_totp,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuthenticatorSetup,
    RefreshToken,
    ResendResult,
    SessionTokens,
    TwoFactorChallenge,
    User,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
CONFIRMATION_PURPOSE = "email_confirmation"
RESET_PURPOSE = "password_reset"


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        email_confirmed: bool = False,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def mark_email_confirmed(self, user_id: str) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> Optional[User]: ...

    def reset_failed_logins(self, user_id: str) -> None: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def add_refresh_token(self, row: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: str,
        new_expires_at: datetime,
        *,
        now: datetime,
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, *, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: List[str] = field(default_factory=list)


class AuthService:
    """Login, step-up verification, refresh rotation and account flows."""

    def __init__(
        self,
        store: IdentityStore,
        cache,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email = email
        self.logger = logger
        self._clock = clock or utc_now
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.tokens = TokenIssuer(settings)
        self.rbac = RBACResolver(store, settings)

        tolerance = timedelta(seconds=settings.freshness_tolerance_seconds)
        cooldown = timedelta(seconds=settings.resend_cooldown_seconds)
        self.two_factor_freshness = FreshnessGuard(
            "two_factor", cache=cache, clock=self._clock, tolerance=tolerance
        )
        self.two_factor_throttle = ThrottleGuard(
            "two_factor",
            cache=cache,
            clock=self._clock,
            cooldown=cooldown,
            max_attempts=settings.resend_daily_limit,
        )
        self.confirmation_freshness = FreshnessGuard(
            "email_confirmation", cache=cache, clock=self._clock, tolerance=tolerance
        )
        self.confirmation_throttle = ThrottleGuard(
            "email_confirmation",
            cache=cache,
            clock=self._clock,
            cooldown=cooldown,
            max_attempts=settings.resend_daily_limit,
        )
        self.password_reset_freshness = FreshnessGuard(
            "password_reset", cache=cache, clock=self._clock, tolerance=tolerance
        )
        self.password_reset_throttle = ThrottleGuard(
            "password_reset",
            cache=cache,
            clock=self._clock,
            cooldown=cooldown,
            max_attempts=settings.resend_daily_limit,
        )
        self.step_up = StepUpSessions(
            cache=cache,
            clock=self._clock,
            ttl=timedelta(minutes=settings.step_up_ttl_minutes),
        )
        self.email_codes = EmailCodeProvider(
            self.two_factor_freshness,
            cache=cache,
            clock=self._clock,
            ttl=timedelta(minutes=settings.two_factor_code_ttl_minutes),
        )
        # Emailed one-time tokens when no shared cache is configured
        self._confirmations: Dict[str, dict] = {}
        self._state_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------ passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def check_password(self, user: User, password: str) -> bool:
        """Verify a password, honoring and updating the lockout counter."""
        now = self._now()
        if user.lockout_end and user.lockout_end > now:
            self.logger.warning(
                "login_locked_out", user_id=user.id, lockout_end=user.lockout_end.isoformat()
            )
            return False
        if not self.verify_password(user.id, password):
            updated = self.store.record_failed_login(
                user.id,
                max_attempts=self.settings.lockout_max_failed_attempts,
                lockout_duration=timedelta(minutes=self.settings.lockout_minutes),
                now=now,
            )
            if updated and updated.lockout_end and updated.lockout_end > now:
                self.logger.warning("account_locked", user_id=user.id)
            return False
        if user.access_failed_count or user.lockout_end:
            self.store.reset_failed_logins(user.id)
        return True

    # -------------------------------------------------------------- sessions

    def _user_roles(self, user: User) -> List[str]:
        return self.rbac.get_user_roles(user.id)

    async def authenticate(
        self, email: str, password: str
    ) -> Union[SessionTokens, TwoFactorChallenge]:
        if not (email or "").strip() or not password:
            raise ValidationError("email and password are required")
        user = self.store.get_user_by_email(email)
        if not user or user.is_deleted or not user.is_active:
            self.logger.info("login_failed", reason="unknown_user", email=redact_email(email))
            raise InvalidCredentialsError()
        if not self.check_password(user, password):
            self.logger.info("login_failed", reason="bad_credentials", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.email_confirmed:
            self.logger.info("login_failed", reason="email_unconfirmed", user_id=user.id)
            raise InvalidCredentialsError()

        if not user.two_factor_enabled:
            return await self.issue_session(user)

        channel = (
            StepUpChannel.AUTHENTICATOR if user.authenticator_enabled else StepUpChannel.EMAIL
        )
        session = await self.step_up.create(user.id, channel)
        if channel is StepUpChannel.EMAIL:
            try:
                await self._deliver_code(user)
            except ServerError:
                await self.step_up.discard(user.id)
                raise
        self.logger.info("two_factor_challenge_issued", user_id=user.id, channel=channel.value)
        return TwoFactorChallenge(channel=channel.value, step_up_token=session.token)

    async def _deliver_code(self, user: User) -> None:
        code = await self.email_codes.issue(user)
        delivered = False
        if self.email:
            try:
                delivered = await asyncio.to_thread(
                    self.email.send_two_factor_code,
                    user.email,
                    code,
                    ttl_minutes=self.settings.two_factor_code_ttl_minutes,
                )
            except Exception as exc:
                self.logger.error(
                    "two_factor_delivery_error", user_id=user.id, error=str(exc)
                )
        if not delivered:
            self.logger.error("two_factor_delivery_failed", user_id=user.id)
            raise ServerError(
                "Unable to deliver the verification code",
                error_code="two_factor_delivery_failed",
            )

    async def issue_session(self, user: User) -> SessionTokens:
        self.tokens.ensure_configured()
        now = self._now()
        access_token, expires_in = self.tokens.issue_access_token(
            user, self._user_roles(user), now=now
        )
        refresh_token = new_refresh_token()
        self.store.add_refresh_token(
            RefreshToken.new(user.id, refresh_token, REFRESH_TOKEN_LIFETIME, now=now)
        )
        self.logger.info("session_issued", user_id=user.id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
        )

    async def refresh(self, refresh_token: str) -> SessionTokens:
        if not refresh_token:
            raise InvalidOrExpiredTokenError()
        now = self._now()
        row = self.store.get_refresh_token(refresh_token)
        if not row or not row.is_active(now):
            self.logger.info("refresh_token_rejected", reason="inactive")
            raise InvalidOrExpiredTokenError()
        user = self.store.get_user(row.user_id)
        if not user or user.is_deleted or not user.is_active:
            self.logger.info("refresh_token_rejected", reason="user_inactive", user_id=row.user_id)
            raise InvalidOrExpiredTokenError()
        self.tokens.ensure_configured()

        new_token = new_refresh_token()
        rotated = self.store.rotate_refresh_token(
            refresh_token, new_token, now + REFRESH_TOKEN_LIFETIME, now=now
        )
        if rotated is None:
            self.logger.warning("refresh_token_race_lost", user_id=user.id)
            raise InvalidOrExpiredTokenError()
        access_token, expires_in = self.tokens.issue_access_token(
            user, self._user_roles(user), now=now
        )
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=new_token,
            expires_in=expires_in,
        )

    async def revoke(self, refresh_token: str) -> bool:
        if not refresh_token:
            return False
        now = self._now()
        row = self.store.get_refresh_token(refresh_token)
        if not row or not row.is_active(now):
            return False
        revoked = self.store.revoke_refresh_token(refresh_token, now=now)
        if revoked:
            self.logger.info("refresh_token_revoked", user_id=row.user_id)
        return revoked

    async def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, now=self._now())
        self.logger.info("refresh_tokens_revoked", user_id=user_id, count=count)
        return count

    def authenticate_bearer(self, header: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to the calling user."""
        if not header or not header.lower().startswith("bearer "):
            raise AuthenticationError("missing bearer token")
        token = header.split(" ", 1)[1].strip()
        payload = self.tokens.decode(token)
        if not payload:
            raise AuthenticationError("invalid access token")
        user = self.store.get_user(str(payload.get("sub")))
        if not user or user.is_deleted or not user.is_active:
            raise AuthenticationError("invalid access token")
        roles = payload.get("role") or []
        if isinstance(roles, str):
            roles = [roles]
        return AuthContext(user_id=user.id, email=user.email, roles=list(roles))

    # --------------------------------------------------------------- step-up

    async def _pending_session(self, email: str, step_up_token: str):
        user = self.store.get_user_by_email(email or "")
        if not user or user.is_deleted or not user.is_active:
            raise InvalidSessionError()
        session = await self.step_up.get(user.id)
        if (
            not session
            or session.verified
            or not tokens_match(session.token, step_up_token or "")
        ):
            self.logger.info("two_factor_session_invalid", user_id=user.id)
            raise InvalidSessionError()
        return user, session

    async def verify(
        self, email: str, step_up_token: str, code: str, channel
    ) -> SessionTokens:
        channel = StepUpChannel.parse(channel)
        user, session = await self._pending_session(email, step_up_token)
        if session.channel != channel.value:
            self.logger.info(
                "two_factor_channel_mismatch",
                user_id=user.id,
                expected=session.channel,
                presented=channel.value,
            )
            raise InvalidSessionError()

        if channel is StepUpChannel.AUTHENTICATOR:
            if not user.authenticator_secret:
                raise InvalidCodeError()
            valid = verify_totp(user.authenticator_secret, code, at=self._now().timestamp())
        else:
            valid = await self.email_codes.validate(user, code)
        if not valid:
            self.logger.info("two_factor_code_rejected", user_id=user.id, channel=channel.value)
            raise InvalidCodeError()

        self.tokens.ensure_configured()
        if not await self.step_up.consume(user.id, session.token):
            raise InvalidSessionError()
        await self.email_codes.clear(user)
        await self.two_factor_throttle.clear(user.email)
        self.logger.info("two_factor_verified", user_id=user.id, channel=channel.value)
        return await self.issue_session(user)

    async def resend_code(self, email: str, step_up_token: str) -> ResendResult:
        user, session = await self._pending_session(email, step_up_token)
        if session.channel != StepUpChannel.EMAIL.value:
            raise ValidationError(
                "codes can only be resent for the email channel",
                detail={"channel": session.channel},
            )
        await self.two_factor_throttle.ensure_allowed(user.email)
        await self.two_factor_throttle.record_attempt(user.email)
        await self._deliver_code(user)
        self.logger.info("two_factor_code_resent", user_id=user.id)
        return ResendResult(
            channel=session.channel,
            step_up_token=session.token,
            cooldown_seconds=self.settings.resend_cooldown_seconds,
        )

    async def step_up_state(self, user_id: str) -> StepUpState:
        session = await self.step_up.get(user_id)
        if session is None:
            return StepUpState.NONE_REQUIRED
        if session.verified:
            return StepUpState.VERIFIED
        return StepUpState.PENDING_VERIFICATION

    # --------------------------------------------------------- authenticator

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def _notify(self, send: Callable[..., bool], user: User, *args) -> None:
        """Send a best-effort notification; failures are logged, never raised."""
        if not self.email:
            return
        try:
            delivered = await asyncio.to_thread(send, user.email, *args)
        except Exception as exc:
            self.logger.warning(
                "notification_email_failed",
                user_id=user.id,
                notification=getattr(send, "__name__", "unknown"),
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.warning(
                "notification_email_failed",
                user_id=user.id,
                notification=getattr(send, "__name__", "unknown"),
            )

    async def setup_authenticator(self, user_id: str) -> AuthenticatorSetup:
        user = self._require_user(user_id)
        secret = generate_secret()
        user.authenticator_secret = secret
        self.store.update_user(user)
        self.logger.info("authenticator_setup_started", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_authenticator_setup_started, user)
        return AuthenticatorSetup(
            secret_key=secret,
            provisioning_uri=provisioning_uri(
                secret, user.email, self.settings.authenticator_issuer
            ),
            manual_entry_key=format_manual_key(secret),
        )

    async def enable_authenticator(self, user_id: str, code: str) -> bool:
        user = self._require_user(user_id)
        if not user.authenticator_secret:
            raise ValidationError("authenticator setup has not been started")
        if not verify_totp(user.authenticator_secret, code, at=self._now().timestamp()):
            self.logger.info("authenticator_enable_code_rejected", user_id=user.id)
            raise InvalidCodeError()
        user.authenticator_enabled = True
        user.two_factor_enabled = True
        self.store.update_user(user)
        self.logger.info("authenticator_enabled", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_authenticator_enabled, user)
        return True

    async def disable_authenticator(self, user_id: str) -> bool:
        user = self._require_user(user_id)
        user.authenticator_secret = None
        user.authenticator_enabled = False
        user.two_factor_enabled = False
        self.store.update_user(user)
        await self.step_up.discard(user.id)
        await self.revoke_all_for_user(user.id)
        self.logger.info("authenticator_disabled", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_authenticator_disabled, user)
        return True

    def authenticator_status(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        return {
            "enabled": user.authenticator_enabled,
            "configured": bool(user.authenticator_secret),
            "two_factor_enabled": user.two_factor_enabled,
        }

    async def enable_two_factor(self, user_id: str) -> bool:
        """Turn on emailed login codes. Enabling twice is a no-op."""
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            return True
        user.two_factor_enabled = True
        self.store.update_user(user)
        self.logger.info("two_factor_enabled", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_two_factor_enabled, user)
        return True

    async def disable_two_factor(self, user_id: str) -> bool:
        """Turn off the second factor; a configured authenticator stays configured."""
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            return True
        user.two_factor_enabled = False
        self.store.update_user(user)
        await self.step_up.discard(user.id)
        self.logger.info("two_factor_disabled", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_two_factor_disabled, user)
        return True

    # -------------------------------------------------------------- accounts

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        cleaned = (email or "").strip()
        if "@" not in cleaned or cleaned.startswith("@") or cleaned.endswith("@"):
            raise ValidationError("a valid email address is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        try:
            user = self.store.create_user(
                cleaned, first_name=first_name or "", last_name=last_name or ""
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return user

    @staticmethod
    def _hash_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    async def _save_confirmation(self, token_hash: str, payload: dict, ttl: timedelta) -> None:
        if self.cache:
            await self.cache.set_confirmation_token(
                token_hash, payload, int(ttl.total_seconds())
            )
            return
        now = self._now().timestamp()
        with self._state_lock:
            expired = [
                key for key, entry in self._confirmations.items()
                if float(entry.get("expires_at", 0)) <= now
            ]
            for key in expired:
                self._confirmations.pop(key, None)
            self._confirmations[token_hash] = payload

    async def _load_confirmation(self, token_hash: str) -> Optional[dict]:
        if self.cache:
            return await self.cache.get_confirmation_token(token_hash)
        with self._state_lock:
            return self._confirmations.get(token_hash)

    async def _drop_confirmation(self, token_hash: str) -> None:
        if self.cache:
            await self.cache.delete_confirmation_token(token_hash)
            return
        with self._state_lock:
            self._confirmations.pop(token_hash, None)

    async def send_confirmation_email(self, email: str) -> bool:
        normalized = (email or "").strip().lower()
        if not normalized:
            raise ValidationError("email is required", detail={"field": "email"})
        await self.confirmation_throttle.ensure_allowed(normalized)
        await self.confirmation_throttle.record_attempt(normalized)

        user = self.store.get_user_by_email(normalized)
        if not user or user.is_deleted or not user.is_active or user.email_confirmed:
            self.logger.info("confirmation_email_skipped", email=redact_email(normalized))
            return False

        token = secrets.token_urlsafe(32)
        issued_at = self._now()
        ttl = timedelta(hours=self.settings.confirmation_token_ttl_hours)
        await self._save_confirmation(
            self._hash_token(token),
            {
                "purpose": CONFIRMATION_PURPOSE,
                "user_id": user.id,
                "email": normalized,
                "issued_at": issued_at.timestamp(),
                "expires_at": (issued_at + ttl).timestamp(),
            },
            ttl,
        )
        await self.confirmation_freshness.store(normalized, issued_at)
        if not self.email:
            self.logger.warning("confirmation_email_unavailable", user_id=user.id)
            return False
        try:
            delivered = await asyncio.to_thread(
                self.email.send_email_confirmation,
                user.email,
                token,
                ttl_hours=self.settings.confirmation_token_ttl_hours,
            )
        except Exception as exc:
            self.logger.error("confirmation_email_failed", user_id=user.id, error=str(exc))
            return False
        self.logger.info("confirmation_email_sent", user_id=user.id, delivered=delivered)
        return delivered

    async def confirm_email(self, email: str, token: str) -> bool:
        normalized = (email or "").strip().lower()
        if not normalized or not token:
            raise ValidationError("email and token are required")
        token_hash = self._hash_token(token)
        payload = await self._load_confirmation(token_hash)
        now = self._now()
        if (
            not payload
            or payload.get("purpose") != CONFIRMATION_PURPOSE
            or payload.get("email") != normalized
            or float(payload.get("expires_at", 0)) <= now.timestamp()
        ):
            self.logger.info("email_confirmation_rejected", reason="unknown_or_expired")
            raise InvalidOrExpiredTokenError()
        issued_at = datetime.fromtimestamp(float(payload["issued_at"]), tz=timezone.utc)
        if not await self.confirmation_freshness.is_latest(normalized, issued_at):
            raise InvalidOrExpiredTokenError()
        user = self.store.mark_email_confirmed(payload["user_id"])
        if not user:
            raise InvalidOrExpiredTokenError()
        await self._drop_confirmation(token_hash)
        await self.confirmation_freshness.clear(normalized)
        await self.confirmation_throttle.clear(normalized)
        self.logger.info("email_confirmed", user_id=user.id)
        return True

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> bool:
        user = self._require_user(user_id)
        if not new_password:
            raise ValidationError("new password is required", detail={"field": "new_password"})
        if not self.verify_password(user.id, current_password or ""):
            self.logger.info("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect")
        self.save_password(user.id, new_password)
        user.security_stamp = uuid.uuid4().hex
        self.store.update_user(user)
        await self.revoke_all_for_user(user.id)
        self.logger.info("password_changed", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_password_changed, user)
        return True

    async def forgot_password(self, email: str) -> bool:
        """Email a password reset link. Returns False when nothing was sent."""
        normalized = (email or "").strip().lower()
        if not normalized:
            raise ValidationError("email is required", detail={"field": "email"})
        await self.password_reset_throttle.ensure_allowed(normalized)
        await self.password_reset_throttle.record_attempt(normalized)

        user = self.store.get_user_by_email(normalized)
        if not user or user.is_deleted or not user.is_active:
            self.logger.info("password_reset_skipped", email=redact_email(normalized))
            return False

        token = secrets.token_urlsafe(32)
        issued_at = self._now()
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        await self._save_confirmation(
            self._hash_token(token),
            {
                "purpose": RESET_PURPOSE,
                "user_id": user.id,
                "email": normalized,
                "issued_at": issued_at.timestamp(),
                "expires_at": (issued_at + ttl).timestamp(),
            },
            ttl,
        )
        await self.password_reset_freshness.store(normalized, issued_at)
        if not self.email:
            self.logger.warning("password_reset_email_unavailable", user_id=user.id)
            return False
        try:
            delivered = await asyncio.to_thread(
                self.email.send_password_reset,
                user.email,
                token,
                ttl_minutes=self.settings.password_reset_ttl_minutes,
            )
        except Exception as exc:
            self.logger.error("password_reset_email_failed", user_id=user.id, error=str(exc))
            return False
        self.logger.info("password_reset_email_sent", user_id=user.id, delivered=delivered)
        return delivered

    async def reset_password(self, email: str, token: str, new_password: str) -> bool:
        normalized = (email or "").strip().lower()
        if not normalized or not token:
            raise ValidationError("email and token are required")
        if not new_password:
            raise ValidationError("new password is required", detail={"field": "new_password"})
        token_hash = self._hash_token(token)
        payload = await self._load_confirmation(token_hash)
        if (
            not payload
            or payload.get("purpose") != RESET_PURPOSE
            or payload.get("email") != normalized
            or float(payload.get("expires_at", 0)) <= self._now().timestamp()
        ):
            self.logger.info("password_reset_rejected", reason="unknown_or_expired")
            raise InvalidOrExpiredTokenError()
        issued_at = datetime.fromtimestamp(float(payload["issued_at"]), tz=timezone.utc)
        if not await self.password_reset_freshness.is_latest(normalized, issued_at):
            raise InvalidOrExpiredTokenError()
        user = self.store.get_user(payload["user_id"])
        if not user or user.is_deleted or not user.is_active:
            raise InvalidOrExpiredTokenError()

        await self._drop_confirmation(token_hash)
        self.save_password(user.id, new_password)
        user.security_stamp = uuid.uuid4().hex
        self.store.update_user(user)
        self.store.reset_failed_logins(user.id)
        await self.step_up.discard(user.id)
        await self.revoke_all_for_user(user.id)
        await self.password_reset_freshness.clear(normalized)
        await self.password_reset_throttle.clear(normalized)
        self.logger.info("password_reset_completed", user_id=user.id)
        if self.email:
            await self._notify(self.email.send_password_changed, user)
        return True
