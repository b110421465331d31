"""Role-based access resolution: permissions, page access and navigation menus.

Every query starts from the user's active role mappings. A SuperAdmin sees
the grants attached to the SuperAdmin role that carry no department, and
nothing else. Everyone else sees grants for their roles that are either
department-independent or scoped to their effective department.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ValidationError
from authcore.storage.models import (
    DepartmentInfo,
    Feature,
    MenuNode,
    MenuPage,
    Page,
    PageAccess,
    SystemRoles,
)

logger = get_logger(__name__)


def _parse_id(value, *, field_name: str = "user_id") -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"invalid {field_name}", detail={field_name: str(value)})


def _live(entity) -> bool:
    return bool(entity) and entity.is_active and not entity.is_deleted


def _sort_key(item):
    return (item.display_order, item.name.lower())


@dataclass
class AccessScope:
    role_ids: List[str] = field(default_factory=list)
    role_names: List[str] = field(default_factory=list)
    is_super_admin: bool = False
    grant_role_ids: List[str] = field(default_factory=list)
    department_id: Optional[str] = None
    department_ids: Set[str] = field(default_factory=set)
    # Departments a scoped grant may name and still apply
    allowed_departments: Set[str] = field(default_factory=set)

    @property
    def empty(self) -> bool:
        return not self.role_ids

    def admits(self, department_id: Optional[str]) -> bool:
        if department_id is None:
            return True
        if self.is_super_admin:
            return False
        return department_id in self.allowed_departments


class RBACResolver:
    def __init__(self, store, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.union_departments = bool(settings and settings.rbac_union_departments)

    # scope

    def _scope(self, user_id: str) -> AccessScope:
        mappings = self.store.list_user_role_mappings(user_id)
        if not mappings:
            return AccessScope()
        roles = {role.id: role for role in self.store.get_roles(m.role_id for m in mappings)}
        live_mappings = [m for m in mappings if _live(roles.get(m.role_id))]
        if not live_mappings:
            return AccessScope()

        scope = AccessScope()
        for mapping in live_mappings:
            role = roles[mapping.role_id]
            if role.id not in scope.role_ids:
                scope.role_ids.append(role.id)
                scope.role_names.append(role.name)
            if mapping.department_id:
                scope.department_ids.add(mapping.department_id)
        super_ids = [
            rid
            for rid in scope.role_ids
            if roles[rid].name.lower() == SystemRoles.SUPER_ADMIN.lower()
        ]
        scope.is_super_admin = bool(super_ids)
        # Mappings arrive ordered by assignment time, then id
        scope.department_id = live_mappings[0].department_id
        if scope.is_super_admin:
            scope.grant_role_ids = super_ids
        else:
            scope.grant_role_ids = list(scope.role_ids)
            if self.union_departments:
                scope.allowed_departments = set(scope.department_ids)
            elif scope.department_id:
                scope.allowed_departments = {scope.department_id}
        return scope

    # page grants

    def _page_grants(self, scope: AccessScope) -> Dict[str, Set[str]]:
        """Map accessible page id to the permission ids granted on it."""
        grants: Dict[str, Set[str]] = {}
        if scope.empty:
            return grants
        for row in self.store.list_role_page_permission_mappings(scope.grant_role_ids):
            if scope.admits(row.department_id):
                grants.setdefault(row.page_id, set()).add(row.permission_id)
        return grants

    def _load_pages(self, scope: AccessScope) -> List[PageAccess]:
        grants = self._page_grants(scope)
        if not grants:
            return []
        pages = {p.id: p for p in self.store.get_pages(grants) if _live(p)}
        permission_ids = {pid for ids in grants.values() for pid in ids}
        permissions = {
            p.id: p for p in self.store.get_permissions(permission_ids) if _live(p)
        }
        result = []
        for page_id, page in pages.items():
            names = {permissions[pid].name for pid in grants[page_id] if pid in permissions}
            if not names:
                continue
            result.append(self._page_access(page, sorted(names, key=lambda n: (n.lower(), n))))
        return sorted(result, key=_sort_key)

    @staticmethod
    def _page_access(page: Page, permissions: List[str]) -> PageAccess:
        return PageAccess(
            id=page.id,
            name=page.name,
            url=page.url,
            display_order=page.display_order,
            description=page.description,
            api_endpoint=page.api_endpoint,
            http_method=page.http_method,
            permissions=permissions,
        )

    # public queries

    def resolve_permissions(self, user_id) -> Set[str]:
        scope = self._scope(_parse_id(user_id))
        return {name for page in self._load_pages(scope) for name in page.permissions}

    def resolve_pages(self, user_id) -> List[PageAccess]:
        return self._load_pages(self._scope(_parse_id(user_id)))

    def _find_page(self, user_id, page_name: str) -> Optional[PageAccess]:
        uid = _parse_id(user_id)
        wanted = (page_name or "").strip().lower()
        if not wanted:
            return None
        for page in self._load_pages(self._scope(uid)):
            if page.name.lower() == wanted:
                return page
        return None

    def check_page_access(self, user_id, page_name: str) -> bool:
        return self._find_page(user_id, page_name) is not None

    def get_page_permissions(self, user_id, page_name: str) -> List[str]:
        page = self._find_page(user_id, page_name)
        return list(page.permissions) if page else []

    def has_permission(self, user_id, permission_name: str) -> bool:
        """True for any name when the user is SuperAdmin, unlike ``resolve_permissions``."""
        uid = _parse_id(user_id)
        scope = self._scope(uid)
        if scope.is_super_admin:
            return True
        wanted = (permission_name or "").strip().lower()
        return any(
            name.lower() == wanted
            for page in self._load_pages(scope)
            for name in page.permissions
        )

    def has_department_access(self, user_id, department_id) -> bool:
        uid = _parse_id(user_id)
        dept = _parse_id(department_id, field_name="department_id")
        scope = self._scope(uid)
        if scope.empty:
            return False
        if scope.is_super_admin:
            return True
        mappings = [
            m for m in self.store.list_user_role_mappings(uid) if m.role_id in scope.role_ids
        ]
        return any(m.department_id is None or m.department_id == dept for m in mappings)

    def get_user_roles(self, user_id) -> List[str]:
        scope = self._scope(_parse_id(user_id))
        return sorted(scope.role_names, key=lambda n: (n.lower(), n))

    def get_user_department(self, user_id) -> Optional[DepartmentInfo]:
        scope = self._scope(_parse_id(user_id))
        if not scope.department_id:
            return None
        dept = self.store.get_department(scope.department_id)
        if not _live(dept):
            return None
        return DepartmentInfo(id=dept.id, name=dept.name, description=dept.description)

    # menu

    def resolve_menu(self, user_id) -> List[MenuNode]:
        scope = self._scope(_parse_id(user_id))
        if scope.empty:
            return []
        feature_ids = {
            row.feature_id
            for row in self.store.list_role_feature_mappings(scope.grant_role_ids)
            if scope.admits(row.department_id)
        }
        if not feature_ids:
            return []
        arena: Dict[str, Feature] = {
            f.id: f for f in self.store.get_features(feature_ids) if _live(f)
        }
        children: Dict[str, List[Feature]] = {}
        for feature in arena.values():
            if feature.parent_feature_id:
                children.setdefault(feature.parent_feature_id, []).append(feature)

        accessible_pages = {page.id: page for page in self._load_pages(scope)}
        pages_by_feature: Dict[str, List[MenuPage]] = {}
        seen_pairs = set()
        for row in self.store.list_page_feature_mappings(arena):
            page = accessible_pages.get(row.page_id)
            if page is None or not scope.admits(row.department_id):
                continue
            if (row.feature_id, row.page_id) in seen_pairs:
                continue
            seen_pairs.add((row.feature_id, row.page_id))
            pages_by_feature.setdefault(row.feature_id, []).append(
                MenuPage(
                    id=page.id,
                    name=page.name,
                    url=page.url,
                    display_order=page.display_order,
                    description=page.description,
                    api_endpoint=page.api_endpoint,
                    http_method=page.http_method,
                )
            )

        visited: Set[str] = set()

        def build(feature: Feature, level: int) -> Optional[MenuNode]:
            if feature.id in visited:
                logger.warning("menu_cycle_detected", feature_id=feature.id)
                return None
            visited.add(feature.id)
            node = MenuNode(
                id=feature.id,
                name=feature.name,
                description=feature.description,
                icon=feature.icon,
                route_url=feature.route_url,
                display_order=feature.display_order,
                level=level,
            )
            for child in sorted(children.get(feature.id, []), key=_sort_key):
                child_node = build(child, level + 1)
                if child_node is not None:
                    node.children.append(child_node)
            node.pages = sorted(pages_by_feature.get(feature.id, []), key=_sort_key)
            if not node.pages and not node.children:
                return None
            return node

        roots = [
            f for f in arena.values() if f.is_main_menu and f.parent_feature_id is None
        ]
        menu = []
        for root in sorted(roots, key=_sort_key):
            node = build(root, 0)
            if node is not None:
                menu.append(node)
        return menu

    def get_navigation(self, user_id) -> dict:
        uid = _parse_id(user_id)
        return {
            "roles": self.get_user_roles(uid),
            "department": self.get_user_department(uid),
            "menu": self.resolve_menu(uid),
        }
