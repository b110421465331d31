"""Department-scoped permission, page and menu resolution."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from authcore.config import Settings
from authcore.service.errors import ValidationError
from authcore.service.rbac import RBACResolver
from authcore.storage.memory import MemoryStore
from authcore.storage.models import DepartmentInfo, SystemRoles

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class Catalog:
    """Two departments, a Viewer role and a SuperAdmin role over a small page set."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.finance = store.create_department("Finance", description="Money")
        self.hr = store.create_department("HR")
        self.viewer = store.create_role("Viewer")
        self.super_admin = store.create_role(SystemRoles.SUPER_ADMIN)

        self.view = store.create_permission("View")
        self.edit = store.create_permission("edit")
        self.export = store.create_permission("Export")

        self.ledger = store.create_page("Ledger", "/ledger", display_order=2)
        self.payroll = store.create_page("Payroll", "/payroll", display_order=1)
        self.users = store.create_page("Users", "/users", display_order=1)
        self.settings_page = store.create_page("Settings", "/settings")

        store.map_role_page_permission(self.viewer.id, self.ledger.id, self.view.id, department_id=self.finance.id)
        store.map_role_page_permission(self.viewer.id, self.ledger.id, self.edit.id, department_id=self.finance.id)
        store.map_role_page_permission(self.viewer.id, self.payroll.id, self.view.id, department_id=self.hr.id)
        store.map_role_page_permission(self.viewer.id, self.users.id, self.view.id)
        store.map_role_page_permission(self.super_admin.id, self.settings_page.id, self.export.id)
        # Department-scoped SuperAdmin grants never apply
        store.map_role_page_permission(
            self.super_admin.id, self.ledger.id, self.export.id, department_id=self.finance.id
        )

        self.admin_menu = store.create_feature("Admin", display_order=0)
        self.reports = store.create_feature("Reports", display_order=1)
        self.monthly = store.create_feature(
            "Monthly", parent_feature_id=self.reports.id, is_main_menu=False
        )
        self.empty = store.create_feature("Empty", display_order=5)
        self.hr_only = store.create_feature("HR Tools", display_order=3)
        for feature in (self.admin_menu, self.reports, self.monthly, self.empty):
            store.map_role_feature(self.viewer.id, feature.id)
        store.map_role_feature(self.viewer.id, self.hr_only.id, department_id=self.hr.id)
        store.map_role_feature(self.super_admin.id, self.admin_menu.id)

        store.map_page_feature(self.users.id, self.admin_menu.id)
        store.map_page_feature(self.users.id, self.admin_menu.id)
        store.map_page_feature(self.settings_page.id, self.admin_menu.id)
        store.map_page_feature(self.ledger.id, self.monthly.id)
        store.map_page_feature(self.payroll.id, self.reports.id)
        store.map_page_feature(self.payroll.id, self.hr_only.id)

    def user(self, email: str, *assignments):
        """Create a user and assign ``(role, department)`` pairs in order."""
        user = self.store.create_user(email, email_confirmed=True)
        for offset, (role, department) in enumerate(assignments):
            self.store.assign_role(
                user.id,
                role.id,
                department_id=department.id if department else None,
                assigned_at=T0 + timedelta(minutes=offset),
            )
        return user


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def catalog(store):
    return Catalog(store)


@pytest.fixture
def resolver(store):
    return RBACResolver(store)


class TestDepartmentScope:
    def test_grants_limited_to_effective_department(self, catalog, resolver):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))

        pages = resolver.resolve_pages(user.id)

        assert [page.name for page in pages] == ["Users", "Ledger"]
        assert pages[1].permissions == ["edit", "View"]
        assert resolver.resolve_permissions(user.id) == {"View", "edit"}

    def test_other_department_sees_its_own_pages(self, catalog, resolver):
        user = catalog.user("hr@x.com", (catalog.viewer, catalog.hr))

        assert [page.name for page in resolver.resolve_pages(user.id)] == ["Payroll", "Users"]

    def test_first_assignment_decides_department(self, catalog, resolver):
        user = catalog.user(
            "both@x.com", (catalog.viewer, catalog.finance), (catalog.viewer, catalog.hr)
        )

        assert not resolver.check_page_access(user.id, "Payroll")
        assert resolver.get_user_department(user.id) == DepartmentInfo(
            id=catalog.finance.id, name="Finance", description="Money"
        )

    def test_union_setting_spans_all_assigned_departments(self, catalog, store):
        resolver = RBACResolver(store, Settings(rbac_union_departments=True))
        user = catalog.user(
            "both@x.com", (catalog.viewer, catalog.finance), (catalog.viewer, catalog.hr)
        )

        assert [page.name for page in resolver.resolve_pages(user.id)] == [
            "Payroll",
            "Users",
            "Ledger",
        ]

    def test_department_less_assignment_sees_only_global_grants(self, catalog, resolver):
        user = catalog.user("global@x.com", (catalog.viewer, None))

        assert [page.name for page in resolver.resolve_pages(user.id)] == ["Users"]
        assert resolver.get_user_department(user.id) is None

    def test_department_access(self, catalog, resolver):
        scoped = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))
        unscoped = catalog.user("global@x.com", (catalog.viewer, None))
        nobody = catalog.user("none@x.com")

        assert resolver.has_department_access(scoped.id, catalog.finance.id)
        assert not resolver.has_department_access(scoped.id, catalog.hr.id)
        assert resolver.has_department_access(unscoped.id, catalog.hr.id)
        assert not resolver.has_department_access(nobody.id, catalog.finance.id)


class TestSuperAdmin:
    def test_sees_only_department_independent_super_admin_grants(self, catalog, resolver):
        user = catalog.user(
            "root@x.com", (catalog.super_admin, None), (catalog.viewer, catalog.finance)
        )

        assert [page.name for page in resolver.resolve_pages(user.id)] == ["Settings"]
        assert resolver.resolve_permissions(user.id) == {"Export"}
        assert resolver.get_user_roles(user.id) == ["SuperAdmin", "Viewer"]

    def test_has_every_permission_and_department(self, catalog, resolver):
        user = catalog.user("root@x.com", (catalog.super_admin, None))

        assert resolver.has_permission(user.id, "anything")
        assert resolver.has_department_access(user.id, catalog.hr.id)


class TestPageQueries:
    def test_page_lookup_is_case_insensitive(self, catalog, resolver):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))

        assert resolver.check_page_access(user.id, "ledger")
        assert resolver.get_page_permissions(user.id, "LEDGER") == ["edit", "View"]
        assert not resolver.check_page_access(user.id, "Settings")
        assert resolver.get_page_permissions(user.id, "Settings") == []
        assert not resolver.check_page_access(user.id, "")

    def test_has_permission(self, catalog, resolver):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))

        assert resolver.has_permission(user.id, "EDIT")
        assert not resolver.has_permission(user.id, "Export")

    def test_page_without_live_permission_is_hidden(self, catalog, resolver, store):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))
        store.permissions[catalog.view.id].is_active = False

        assert [page.name for page in resolver.resolve_pages(user.id)] == ["Ledger"]

    def test_deleted_page_is_hidden(self, catalog, resolver, store):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))
        store.pages[catalog.users.id].is_deleted = True

        assert not resolver.check_page_access(user.id, "Users")

    def test_soft_deleted_role_grants_nothing(self, catalog, resolver, store):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))
        store.soft_delete_role(catalog.viewer.id)

        assert resolver.resolve_pages(user.id) == []
        assert resolver.get_user_roles(user.id) == []
        assert resolver.resolve_menu(user.id) == []

    def test_unknown_user_has_nothing(self, catalog, resolver):
        stranger = str(uuid.uuid4())

        assert resolver.resolve_permissions(stranger) == set()
        assert resolver.get_user_roles(stranger) == []
        assert not resolver.has_permission(stranger, "View")

    def test_malformed_user_id_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolver.resolve_permissions("not-a-uuid")
        with pytest.raises(ValidationError):
            resolver.has_department_access(str(uuid.uuid4()), "nope")


class TestMenu:
    def test_menu_tree(self, catalog, resolver):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))

        menu = resolver.resolve_menu(user.id)

        assert [node.name for node in menu] == ["Admin", "Reports"]
        admin, reports = menu
        assert admin.level == 0
        assert [page.name for page in admin.pages] == ["Users"]
        assert admin.children == []
        assert reports.pages == []
        assert [child.name for child in reports.children] == ["Monthly"]
        monthly = reports.children[0]
        assert monthly.level == 1
        assert [page.url for page in monthly.pages] == ["/ledger"]

    def test_department_scoped_features_follow_the_department(self, catalog, resolver):
        user = catalog.user("hr@x.com", (catalog.viewer, catalog.hr))

        names = [node.name for node in resolver.resolve_menu(user.id)]

        assert names == ["Admin", "Reports", "HR Tools"]

    def test_super_admin_menu(self, catalog, resolver):
        user = catalog.user("root@x.com", (catalog.super_admin, None))

        menu = resolver.resolve_menu(user.id)

        assert [node.name for node in menu] == ["Admin"]
        assert [page.name for page in menu[0].pages] == ["Settings"]

    def test_parent_whose_children_resolve_to_no_pages_is_absent(self, catalog, resolver, store):
        archive = store.create_feature("Archive", display_order=4)
        old_payroll = store.create_feature(
            "Old Payroll", parent_feature_id=archive.id, is_main_menu=False
        )
        for feature in (archive, old_payroll):
            store.map_role_feature(catalog.viewer.id, feature.id)
        store.map_page_feature(catalog.payroll.id, old_payroll.id)
        finance_user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))
        hr_user = catalog.user("hr@x.com", (catalog.viewer, catalog.hr))

        finance_menu = resolver.resolve_menu(finance_user.id)

        assert [node.name for node in finance_menu] == ["Admin", "Reports"]
        assert all(
            child.name != "Old Payroll" for node in finance_menu for child in node.children
        )
        hr_archive = [node for node in resolver.resolve_menu(hr_user.id) if node.name == "Archive"]
        assert [child.name for child in hr_archive[0].children] == ["Old Payroll"]
        assert hr_archive[0].pages == []

    def test_cyclic_features_do_not_loop(self, catalog, resolver, store):
        first = store.create_feature("Loop A")
        second = store.create_feature("Loop B", parent_feature_id=first.id)
        store.features[first.id].parent_feature_id = second.id
        for feature in (first, second):
            store.map_role_feature(catalog.viewer.id, feature.id)
            store.map_page_feature(catalog.users.id, feature.id)
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))

        names = [node.name for node in resolver.resolve_menu(user.id)]

        assert "Loop A" not in names
        assert "Loop B" not in names

    def test_navigation_bundle(self, catalog, resolver):
        user = catalog.user("fin@x.com", (catalog.viewer, catalog.finance))

        navigation = resolver.get_navigation(user.id)

        assert navigation["roles"] == ["Viewer"]
        assert navigation["department"].name == "Finance"
        assert [node.name for node in navigation["menu"]] == ["Admin", "Reports"]
