from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class SystemRoles:
    SUPER_ADMIN = "SuperAdmin"
    DEPARTMENT_ADMIN = "DepartmentAdmin"
    PENDING_USER = "PendingUser"


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    email_confirmed: bool = False
    two_factor_enabled: bool = False
    authenticator_enabled: bool = False
    authenticator_secret: Optional[str] = None
    security_stamp: str = field(default_factory=lambda: uuid.uuid4().hex)
    access_failed_count: int = 0
    lockout_end: Optional[datetime] = None
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by_token: Optional[str] = None

    @classmethod
    def new(
        cls, user_id: str, token: str, lifetime: timedelta, *, now: datetime | None = None
    ) -> "RefreshToken":
        issued = now or _utcnow()
        return cls(
            id=_new_id(),
            user_id=user_id,
            token=token,
            created_at=issued,
            expires_at=issued + lifetime,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now


@dataclass
class Department:
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Role:
    id: str
    name: str
    department_id: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class UserRoleMapping:
    id: str
    user_id: str
    role_id: str
    department_id: Optional[str] = None
    assigned_by_email: Optional[str] = None
    assigned_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True


@dataclass
class Feature:
    id: str
    name: str
    description: Optional[str] = None
    parent_feature_id: Optional[str] = None
    is_main_menu: bool = True
    display_order: int = 0
    icon: Optional[str] = None
    route_url: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class Page:
    id: str
    name: str
    url: str
    description: Optional[str] = None
    display_order: int = 0
    api_endpoint: Optional[str] = None
    http_method: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class Permission:
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class RoleFeatureMapping:
    id: str
    role_id: str
    feature_id: str
    department_id: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class RolePagePermissionMapping:
    id: str
    role_id: str
    page_id: str
    permission_id: str
    department_id: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class PageFeatureMapping:
    id: str
    page_id: str
    feature_id: str
    department_id: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False


@dataclass
class StepUpSession:
    """Second-factor login attempt, keyed by user id.

    ``verified`` flips once the challenge is answered; a verified session can
    never be consumed again.
    """

    user_id: str
    token: str
    channel: str
    expires_at: datetime
    verified: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "token": self.token,
            "channel": self.channel,
            "expires_at": self.expires_at.isoformat(),
            "verified": "1" if self.verified else "0",
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "StepUpSession":
        return cls(
            user_id=payload["user_id"],
            token=payload["token"],
            channel=payload["channel"],
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            verified=str(payload.get("verified", "0")) == "1",
        )


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class TwoFactorChallenge:
    channel: str
    step_up_token: str
    requires_two_factor: bool = True


@dataclass
class ResendResult:
    channel: str
    step_up_token: str
    cooldown_seconds: int


@dataclass
class AuthenticatorSetup:
    secret_key: str
    provisioning_uri: str
    manual_entry_key: str


@dataclass
class PageAccess:
    id: str
    name: str
    url: str
    display_order: int = 0
    description: Optional[str] = None
    api_endpoint: Optional[str] = None
    http_method: Optional[str] = None
    permissions: List[str] = field(default_factory=list)


@dataclass
class MenuPage:
    id: str
    name: str
    url: str
    display_order: int = 0
    description: Optional[str] = None
    api_endpoint: Optional[str] = None
    http_method: Optional[str] = None


@dataclass
class MenuNode:
    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    route_url: Optional[str] = None
    display_order: int = 0
    level: int = 0
    children: List["MenuNode"] = field(default_factory=list)
    pages: List[MenuPage] = field(default_factory=list)


@dataclass
class DepartmentInfo:
    id: str
    name: str
    description: Optional[str] = None
