from __future__ import annotations

import base64
import hashlib
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Department,
    Feature,
    Page,
    PageFeatureMapping,
    Permission,
    RefreshToken,
    Role,
    RoleFeatureMapping,
    RolePagePermissionMapping,
    User,
    UserRoleMapping,
)


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str | None) -> Fernet:
    """Fernet cipher for authenticator secrets; ephemeral when no key is given."""
    if not key_material:
        return Fernet(Fernet.generate_key())
    try:
        return Fernet(_derive_cipher_key(key_material))
    except Exception as exc:
        raise RuntimeError("Unable to initialize authenticator secret cipher") from exc


class MemoryStore:
    """In-process identity store, refresh ledger and RBAC tables."""

    def __init__(self, *, secret_key_material: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.departments: Dict[str, Department] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, UserRoleMapping] = {}
        self.features: Dict[str, Feature] = {}
        self.pages: Dict[str, Page] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_features: Dict[str, RoleFeatureMapping] = {}
        self.role_page_permissions: Dict[str, RolePagePermissionMapping] = {}
        self.page_features: Dict[str, PageFeatureMapping] = {}
        # RLock for all data operations; refresh rotation relies on it for atomicity
        self._data_lock = threading.RLock()
        self._cipher = build_secret_cipher(secret_key_material)

    # ------------------------------------------------------------------ users

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("authenticator_secret_decrypt_failed")
            return None

    def _public_user(self, stored: User) -> User:
        return replace(stored, authenticator_secret=self._decrypt_secret(stored.authenticator_secret))

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        email_confirmed: bool = False,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email.lower() == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email.strip(),
                first_name=first_name,
                last_name=last_name,
                email_confirmed=email_confirmed,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            stored = self.users.get(user_id)
            return self._public_user(stored) if stored else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            stored = next(
                (u for u in self.users.values() if u.email.lower() == normalized), None
            )
            return self._public_user(stored) if stored else None

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            self.users[user.id] = replace(
                user, authenticator_secret=self._encrypt_secret(user.authenticator_secret)
            )
            return replace(user)

    def mark_email_confirmed(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            stored = self.users.get(user_id)
            if not stored:
                return None
            stored.email_confirmed = True
            return self._public_user(stored)

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            stored = self.users.get(user_id)
            if not stored:
                return None
            stored.access_failed_count += 1
            if stored.access_failed_count >= max_attempts:
                stored.lockout_end = now + lockout_duration
                stored.access_failed_count = 0
            return self._public_user(stored)

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            stored = self.users.get(user_id)
            if stored:
                stored.access_failed_count = 0
                stored.lockout_end = None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # ---------------------------------------------------------- refresh ledger

    def add_refresh_token(self, row: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if row.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": row.user_id})
            if row.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[row.token] = replace(row)
            return row

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            return replace(row) if row else None

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: str,
        new_expires_at: datetime,
        *,
        now: datetime,
    ) -> Optional[RefreshToken]:
        """Revoke ``old_token`` and insert its replacement in one critical section.

        Returns the new row, or None when the old token is unknown, revoked or
        expired (including when a concurrent caller rotated it first).
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token)
            if not old or not old.is_active(now):
                return None
            if new_token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            old.is_revoked = True
            old.revoked_at = now
            old.replaced_by_token = new_token
            new_row = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=old.user_id,
                token=new_token,
                created_at=now,
                expires_at=new_expires_at,
            )
            self.refresh_tokens[new_token] = new_row
            return replace(new_row)

    def revoke_refresh_token(self, token: str, *, now: datetime) -> bool:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if not row or row.is_revoked:
                return False
            row.is_revoked = True
            row.revoked_at = now
            return True

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and not row.is_revoked:
                    row.is_revoked = True
                    row.revoked_at = now
                    revoked += 1
            return revoked

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            rows = [replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id]
            return sorted(rows, key=lambda r: r.created_at)

    # ------------------------------------------------------ reference entities

    def create_department(self, name: str, *, description: Optional[str] = None) -> Department:
        with self._data_lock:
            if any(d.name.lower() == name.lower() and not d.is_deleted for d in self.departments.values()):
                raise ConstraintViolation("department already exists", {"field": "name"})
            dept = Department(id=str(uuid.uuid4()), name=name, description=description)
            self.departments[dept.id] = dept
            return dept

    def create_role(
        self,
        name: str,
        *,
        department_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            if any(r.name.lower() == name.lower() and not r.is_deleted for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                department_id=department_id,
                description=description,
            )
            self.roles[role.id] = role
            return role

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next(
                (r for r in self.roles.values() if r.name.lower() == name.lower() and not r.is_deleted),
                None,
            )

    def soft_delete_role(self, role_id: str) -> bool:
        """Soft-delete a role together with the mapping rows it owns."""
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role or role.is_deleted:
                return False
            role.is_deleted = True
            role.is_active = False
            for table in (self.role_features, self.role_page_permissions):
                for row in table.values():
                    if row.role_id == role_id:
                        row.is_deleted = True
                        row.is_active = False
            for mapping in self.user_roles.values():
                if mapping.role_id == role_id:
                    mapping.is_active = False
            return True

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        *,
        department_id: Optional[str] = None,
        assigned_by_email: Optional[str] = None,
        assigned_at: Optional[datetime] = None,
    ) -> UserRoleMapping:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            mapping = UserRoleMapping(
                id=str(uuid.uuid4()),
                user_id=user_id,
                role_id=role_id,
                department_id=department_id,
                assigned_by_email=assigned_by_email,
                assigned_at=assigned_at or datetime.now(timezone.utc),
            )
            self.user_roles[mapping.id] = mapping
            return mapping

    def create_feature(self, name: str, **fields) -> Feature:
        with self._data_lock:
            feature = Feature(id=str(uuid.uuid4()), name=name, **fields)
            self.features[feature.id] = feature
            return feature

    def create_page(self, name: str, url: str, **fields) -> Page:
        with self._data_lock:
            page = Page(id=str(uuid.uuid4()), name=name, url=url, **fields)
            self.pages[page.id] = page
            return page

    def create_permission(self, name: str, **fields) -> Permission:
        with self._data_lock:
            permission = Permission(id=str(uuid.uuid4()), name=name, **fields)
            self.permissions[permission.id] = permission
            return permission

    def map_role_feature(
        self, role_id: str, feature_id: str, *, department_id: Optional[str] = None
    ) -> RoleFeatureMapping:
        with self._data_lock:
            row = RoleFeatureMapping(
                id=str(uuid.uuid4()),
                role_id=role_id,
                feature_id=feature_id,
                department_id=department_id,
            )
            self.role_features[row.id] = row
            return row

    def map_role_page_permission(
        self,
        role_id: str,
        page_id: str,
        permission_id: str,
        *,
        department_id: Optional[str] = None,
    ) -> RolePagePermissionMapping:
        with self._data_lock:
            row = RolePagePermissionMapping(
                id=str(uuid.uuid4()),
                role_id=role_id,
                page_id=page_id,
                permission_id=permission_id,
                department_id=department_id,
            )
            self.role_page_permissions[row.id] = row
            return row

    def map_page_feature(
        self, page_id: str, feature_id: str, *, department_id: Optional[str] = None
    ) -> PageFeatureMapping:
        with self._data_lock:
            row = PageFeatureMapping(
                id=str(uuid.uuid4()),
                page_id=page_id,
                feature_id=feature_id,
                department_id=department_id,
            )
            self.page_features[row.id] = row
            return row

    # ------------------------------------------------------- resolver queries

    def list_user_role_mappings(self, user_id: str) -> List[UserRoleMapping]:
        with self._data_lock:
            rows = [
                replace(m)
                for m in self.user_roles.values()
                if m.user_id == user_id and m.is_active
            ]
            return sorted(rows, key=lambda m: (m.assigned_at, m.id))

    def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        with self._data_lock:
            return [replace(self.roles[rid]) for rid in set(role_ids) if rid in self.roles]

    def get_department(self, department_id: str) -> Optional[Department]:
        with self._data_lock:
            dept = self.departments.get(department_id)
            return replace(dept) if dept else None

    def list_role_feature_mappings(self, role_ids: Iterable[str]) -> List[RoleFeatureMapping]:
        wanted = set(role_ids)
        with self._data_lock:
            return [
                replace(r)
                for r in self.role_features.values()
                if r.role_id in wanted and r.is_active and not r.is_deleted
            ]

    def list_role_page_permission_mappings(
        self, role_ids: Iterable[str]
    ) -> List[RolePagePermissionMapping]:
        wanted = set(role_ids)
        with self._data_lock:
            return [
                replace(r)
                for r in self.role_page_permissions.values()
                if r.role_id in wanted and r.is_active and not r.is_deleted
            ]

    def list_page_feature_mappings(self, feature_ids: Iterable[str]) -> List[PageFeatureMapping]:
        wanted = set(feature_ids)
        with self._data_lock:
            return [
                replace(r)
                for r in self.page_features.values()
                if r.feature_id in wanted and r.is_active and not r.is_deleted
            ]

    def get_features(self, feature_ids: Iterable[str]) -> List[Feature]:
        with self._data_lock:
            return [replace(self.features[fid]) for fid in set(feature_ids) if fid in self.features]

    def get_pages(self, page_ids: Iterable[str]) -> List[Page]:
        with self._data_lock:
            return [replace(self.pages[pid]) for pid in set(page_ids) if pid in self.pages]

    def get_permissions(self, permission_ids: Iterable[str]) -> List[Permission]:
        with self._data_lock:
            return [
                replace(self.permissions[pid])
                for pid in set(permission_ids)
                if pid in self.permissions
            ]
