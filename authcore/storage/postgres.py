from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from cryptography.fernet import InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import build_secret_cipher
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        email_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        authenticator_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        authenticator_secret TEXT,
        security_stamp TEXT NOT NULL,
        access_failed_count INTEGER NOT NULL DEFAULT 0,
        lockout_end TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_ci ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by_token TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS department (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        department_id UUID REFERENCES department(id),
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_role_name_ci ON app_role (lower(name)) WHERE NOT is_deleted",
    """
    CREATE TABLE IF NOT EXISTS user_role_mapping (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        role_id UUID NOT NULL REFERENCES app_role(id),
        department_id UUID REFERENCES department(id),
        assigned_by_email TEXT,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feature (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        parent_feature_id UUID REFERENCES feature(id),
        is_main_menu BOOLEAN NOT NULL DEFAULT TRUE,
        display_order INTEGER NOT NULL DEFAULT 0,
        icon TEXT,
        route_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        description TEXT,
        display_order INTEGER NOT NULL DEFAULT 0,
        api_endpoint TEXT,
        http_method TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_feature_mapping (
        id UUID PRIMARY KEY,
        role_id UUID NOT NULL REFERENCES app_role(id),
        feature_id UUID NOT NULL REFERENCES feature(id),
        department_id UUID REFERENCES department(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_page_permission_mapping (
        id UUID PRIMARY KEY,
        role_id UUID NOT NULL REFERENCES app_role(id),
        page_id UUID NOT NULL REFERENCES page(id),
        permission_id UUID NOT NULL REFERENCES permission(id),
        department_id UUID REFERENCES department(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page_feature_mapping (
        id UUID PRIMARY KEY,
        page_id UUID NOT NULL REFERENCES page(id),
        feature_id UUID NOT NULL REFERENCES feature(id),
        department_id UUID REFERENCES department(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
)


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed identity store, refresh ledger and RBAC tables."""

    def __init__(self, dsn: str, *, secret_key_material: str | None = None) -> None:
        if not secret_key_material:
            # An ephemeral key would make stored authenticator secrets unreadable after restart
            raise RuntimeError(
                "MFA_ENCRYPTION_KEY or JWT_SECRET is required for the Postgres store"
            )
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(secret_key_material)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

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

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            email_confirmed=row.get("email_confirmed", False),
            two_factor_enabled=row.get("two_factor_enabled", False),
            authenticator_enabled=row.get("authenticator_enabled", False),
            authenticator_secret=self._decrypt_secret(row.get("authenticator_secret")),
            security_stamp=row.get("security_stamp") or uuid.uuid4().hex,
            access_failed_count=row.get("access_failed_count", 0),
            lockout_end=row.get("lockout_end"),
            is_active=row.get("is_active", True),
            is_deleted=row.get("is_deleted", False),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        email_confirmed: bool = False,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip(),
            first_name=first_name,
            last_name=last_name,
            email_confirmed=email_confirmed,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, email_confirmed,
                                          security_stamp, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.email_confirmed,
                        user.security_stamp,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)",
                ((email or "").strip(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user: User) -> User:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET email = %s, first_name = %s, last_name = %s, email_confirmed = %s,
                    two_factor_enabled = %s, authenticator_enabled = %s,
                    authenticator_secret = %s, security_stamp = %s,
                    access_failed_count = %s, lockout_end = %s,
                    is_active = %s, is_deleted = %s
                WHERE id = %s
                """,
                (
                    user.email,
                    user.first_name,
                    user.last_name,
                    user.email_confirmed,
                    user.two_factor_enabled,
                    user.authenticator_enabled,
                    self._encrypt_secret(user.authenticator_secret),
                    user.security_stamp,
                    user.access_failed_count,
                    user.lockout_end,
                    user.is_active,
                    user.is_deleted,
                    user.id,
                ),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user.id})
        return user

    def mark_email_confirmed(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_confirmed = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET access_failed_count = CASE
                        WHEN access_failed_count + 1 >= %s THEN 0
                        ELSE access_failed_count + 1 END,
                    lockout_end = CASE
                        WHEN access_failed_count + 1 >= %s THEN %s
                        ELSE lockout_end END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, max_attempts, now + lockout_duration, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def reset_failed_logins(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET access_failed_count = 0, lockout_end = NULL WHERE id = %s",
                (user_id,),
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # ---------------------------------------------------------- refresh ledger

    @staticmethod
    def _row_to_refresh(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            is_revoked=row["is_revoked"],
            revoked_at=row.get("revoked_at"),
            replaced_by_token=row.get("replaced_by_token"),
        )

    def add_refresh_token(self, row: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (row.id, row.user_id, row.token, row.expires_at, row.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token already exists", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": row.user_id}) from exc
        return row

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def rotate_refresh_token(
        self,
        old_token: str,
        new_token: str,
        new_expires_at: datetime,
        *,
        now: datetime,
    ) -> Optional[RefreshToken]:
        """Revoke and replace a refresh token inside one transaction.

        The conditional UPDATE takes the row lock; a concurrent rotation of the
        same token re-evaluates ``NOT is_revoked`` after the first commits and
        matches nothing.
        """
        new_id = str(uuid.uuid4())
        with self._connect() as conn:
            with conn.transaction():
                old = conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE, revoked_at = %s, replaced_by_token = %s
                    WHERE token = %s AND NOT is_revoked AND expires_at > %s
                    RETURNING user_id
                    """,
                    (now, new_token, old_token, now),
                ).fetchone()
                if not old:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id, old["user_id"], new_token, new_expires_at, now),
                ).fetchone()
        return self._row_to_refresh(row)

    def revoke_refresh_token(self, token: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE token = %s AND NOT is_revoked
                """,
                (now, token),
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND NOT is_revoked
                """,
                (now, user_id),
            )
            return result.rowcount

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh(r) for r in rows]

    # ------------------------------------------------------ reference entities

    def create_department(self, name: str, *, description: Optional[str] = None) -> Department:
        dept = Department(id=str(uuid.uuid4()), name=name, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO department (id, name, description) VALUES (%s, %s, %s)",
                    (dept.id, dept.name, dept.description),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("department already exists", {"field": "name"}) from exc
        return dept

    def create_role(
        self,
        name: str,
        *,
        department_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        role = Role(
            id=str(uuid.uuid4()),
            name=name,
            department_id=department_id,
            description=description,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_role (id, name, department_id, description)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (role.id, role.name, role.department_id, role.description),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("role already exists", {"field": "name"}) from exc
        return role

    @staticmethod
    def _row_to_role(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            department_id=_opt_str(row.get("department_id")),
            description=row.get("description"),
            is_active=row.get("is_active", True),
            is_deleted=row.get("is_deleted", False),
        )

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_role WHERE lower(name) = lower(%s) AND NOT is_deleted",
                (name,),
            ).fetchone()
        return self._row_to_role(row) if row else None

    def soft_delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                result = conn.execute(
                    """
                    UPDATE app_role SET is_deleted = TRUE, is_active = FALSE
                    WHERE id = %s AND NOT is_deleted
                    """,
                    (role_id,),
                )
                if result.rowcount == 0:
                    return False
                for table in ("role_feature_mapping", "role_page_permission_mapping"):
                    conn.execute(
                        f"UPDATE {table} SET is_deleted = TRUE, is_active = FALSE WHERE role_id = %s",
                        (role_id,),
                    )
                conn.execute(
                    "UPDATE user_role_mapping SET is_active = FALSE WHERE role_id = %s",
                    (role_id,),
                )
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
        mapping = UserRoleMapping(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role_id=role_id,
            department_id=department_id,
            assigned_by_email=assigned_by_email,
            assigned_at=assigned_at or datetime.now(timezone.utc),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role_mapping
                        (id, user_id, role_id, department_id, assigned_by_email, assigned_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        mapping.id,
                        mapping.user_id,
                        mapping.role_id,
                        mapping.department_id,
                        mapping.assigned_by_email,
                        mapping.assigned_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role_id": role_id}
            ) from exc
        return mapping

    def create_feature(self, name: str, **fields) -> Feature:
        feature = Feature(id=str(uuid.uuid4()), name=name, **fields)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO feature (id, name, description, parent_feature_id, is_main_menu,
                                     display_order, icon, route_url, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    feature.id,
                    feature.name,
                    feature.description,
                    feature.parent_feature_id,
                    feature.is_main_menu,
                    feature.display_order,
                    feature.icon,
                    feature.route_url,
                    feature.is_active,
                ),
            )
        return feature

    def create_page(self, name: str, url: str, **fields) -> Page:
        page = Page(id=str(uuid.uuid4()), name=name, url=url, **fields)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO page (id, name, url, description, display_order, api_endpoint,
                                  http_method, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    page.id,
                    page.name,
                    page.url,
                    page.description,
                    page.display_order,
                    page.api_endpoint,
                    page.http_method,
                    page.is_active,
                ),
            )
        return page

    def create_permission(self, name: str, **fields) -> Permission:
        permission = Permission(id=str(uuid.uuid4()), name=name, **fields)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO permission (id, name, description, is_active) VALUES (%s, %s, %s, %s)",
                (permission.id, permission.name, permission.description, permission.is_active),
            )
        return permission

    def map_role_feature(
        self, role_id: str, feature_id: str, *, department_id: Optional[str] = None
    ) -> RoleFeatureMapping:
        row = RoleFeatureMapping(
            id=str(uuid.uuid4()), role_id=role_id, feature_id=feature_id, department_id=department_id
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role_feature_mapping (id, role_id, feature_id, department_id)
                VALUES (%s, %s, %s, %s)
                """,
                (row.id, row.role_id, row.feature_id, row.department_id),
            )
        return row

    def map_role_page_permission(
        self,
        role_id: str,
        page_id: str,
        permission_id: str,
        *,
        department_id: Optional[str] = None,
    ) -> RolePagePermissionMapping:
        row = RolePagePermissionMapping(
            id=str(uuid.uuid4()),
            role_id=role_id,
            page_id=page_id,
            permission_id=permission_id,
            department_id=department_id,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role_page_permission_mapping
                    (id, role_id, page_id, permission_id, department_id)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (row.id, row.role_id, row.page_id, row.permission_id, row.department_id),
            )
        return row

    def map_page_feature(
        self, page_id: str, feature_id: str, *, department_id: Optional[str] = None
    ) -> PageFeatureMapping:
        row = PageFeatureMapping(
            id=str(uuid.uuid4()), page_id=page_id, feature_id=feature_id, department_id=department_id
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO page_feature_mapping (id, page_id, feature_id, department_id)
                VALUES (%s, %s, %s, %s)
                """,
                (row.id, row.page_id, row.feature_id, row.department_id),
            )
        return row

    # ------------------------------------------------------- resolver queries

    def list_user_role_mappings(self, user_id: str) -> List[UserRoleMapping]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_role_mapping
                WHERE user_id = %s AND is_active
                ORDER BY assigned_at, id
                """,
                (user_id,),
            ).fetchall()
        return [
            UserRoleMapping(
                id=str(r["id"]),
                user_id=str(r["user_id"]),
                role_id=str(r["role_id"]),
                department_id=_opt_str(r.get("department_id")),
                assigned_by_email=r.get("assigned_by_email"),
                assigned_at=r["assigned_at"],
                is_active=r["is_active"],
            )
            for r in rows
        ]

    def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        ids = list(set(role_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_role WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [self._row_to_role(r) for r in rows]

    def get_department(self, department_id: str) -> Optional[Department]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM department WHERE id = %s", (department_id,)
            ).fetchone()
        if not row:
            return None
        return Department(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            is_active=row.get("is_active", True),
            is_deleted=row.get("is_deleted", False),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    def list_role_feature_mappings(self, role_ids: Iterable[str]) -> List[RoleFeatureMapping]:
        ids = list(set(role_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM role_feature_mapping
                WHERE role_id = ANY(%s::uuid[]) AND is_active AND NOT is_deleted
                """,
                (ids,),
            ).fetchall()
        return [
            RoleFeatureMapping(
                id=str(r["id"]),
                role_id=str(r["role_id"]),
                feature_id=str(r["feature_id"]),
                department_id=_opt_str(r.get("department_id")),
            )
            for r in rows
        ]

    def list_role_page_permission_mappings(
        self, role_ids: Iterable[str]
    ) -> List[RolePagePermissionMapping]:
        ids = list(set(role_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM role_page_permission_mapping
                WHERE role_id = ANY(%s::uuid[]) AND is_active AND NOT is_deleted
                """,
                (ids,),
            ).fetchall()
        return [
            RolePagePermissionMapping(
                id=str(r["id"]),
                role_id=str(r["role_id"]),
                page_id=str(r["page_id"]),
                permission_id=str(r["permission_id"]),
                department_id=_opt_str(r.get("department_id")),
            )
            for r in rows
        ]

    def list_page_feature_mappings(self, feature_ids: Iterable[str]) -> List[PageFeatureMapping]:
        ids = list(set(feature_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM page_feature_mapping
                WHERE feature_id = ANY(%s::uuid[]) AND is_active AND NOT is_deleted
                """,
                (ids,),
            ).fetchall()
        return [
            PageFeatureMapping(
                id=str(r["id"]),
                page_id=str(r["page_id"]),
                feature_id=str(r["feature_id"]),
                department_id=_opt_str(r.get("department_id")),
            )
            for r in rows
        ]

    def get_features(self, feature_ids: Iterable[str]) -> List[Feature]:
        ids = list(set(feature_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM feature WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [
            Feature(
                id=str(r["id"]),
                name=r["name"],
                description=r.get("description"),
                parent_feature_id=_opt_str(r.get("parent_feature_id")),
                is_main_menu=r["is_main_menu"],
                display_order=r["display_order"],
                icon=r.get("icon"),
                route_url=r.get("route_url"),
                is_active=r["is_active"],
                is_deleted=r["is_deleted"],
            )
            for r in rows
        ]

    def get_pages(self, page_ids: Iterable[str]) -> List[Page]:
        ids = list(set(page_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM page WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [
            Page(
                id=str(r["id"]),
                name=r["name"],
                url=r["url"],
                description=r.get("description"),
                display_order=r["display_order"],
                api_endpoint=r.get("api_endpoint"),
                http_method=r.get("http_method"),
                is_active=r["is_active"],
                is_deleted=r["is_deleted"],
            )
            for r in rows
        ]

    def get_permissions(self, permission_ids: Iterable[str]) -> List[Permission]:
        ids = list(set(permission_ids))
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [
            Permission(
                id=str(r["id"]),
                name=r["name"],
                description=r.get("description"),
                is_active=r["is_active"],
                is_deleted=r["is_deleted"],
            )
            for r in rows
        ]
