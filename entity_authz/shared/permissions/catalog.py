import logging
import threading
from enum import Enum
from typing import Callable, Iterable

from entity_authz.shared.exceptions import (
    PermissionNotFoundError,
    RoleConflictError,
    RoleNotFoundError,
    SystemRoleImmutableError,
)

from .models import PermissionDefinition, Role, ScopeType

logger = logging.getLogger(__name__)


class Permission(Enum):
    """
    Defines all permissions available on the platform.

    Permissions follow the pattern: ACTION_RESOURCE
    Common actions: VIEW, EDIT, MANAGE, DELETE, ASSIGN
    """

    # Event permissions
    VIEW_EVENT = "view_event"
    EDIT_EVENT_DETAILS = "edit_event_details"
    EDIT_EVENT_LOGISTICS = "edit_event_logistics"  # Load-in times, riders, travel
    MANAGE_EVENT_STAFF = "manage_event_staff"
    ASSIGN_EVENT_ROLES = "assign_event_roles"
    MANAGE_TICKETING = "manage_ticketing"
    DELETE_EVENT = "delete_event"

    # Venue permissions
    VIEW_VENUE = "view_venue"
    EDIT_VENUE = "edit_venue"  # Venue profile itself, not its events
    DELETE_VENUE = "delete_venue"
    MANAGE_BOOKINGS = "manage_bookings"

    # Site map permissions
    VIEW_SITE_MAP = "view_site_map"
    EDIT_SITE_MAP = "edit_site_map"

    # Organization / agency permissions
    MANAGE_MEMBERS = "manage_members"
    MANAGE_ROLES = "manage_roles"  # Grant and revoke roles in a scope
    MANAGE_BILLING = "manage_billing"
    EDIT_ORGANIZATION = "edit_organization"
    DELETE_ORGANIZATION = "delete_organization"

    # Tours and reporting
    MANAGE_TOUR = "manage_tour"
    VIEW_ANALYTICS = "view_analytics"


# Permissions that must only be evaluated on the exact entity they were
# granted on. Everything else flows down the entity hierarchy.
NON_INHERITABLE_PERMISSIONS: frozenset[Permission] = frozenset(
    {
        Permission.DELETE_EVENT,
        Permission.EDIT_VENUE,
        Permission.DELETE_VENUE,
        Permission.MANAGE_BILLING,
        Permission.EDIT_ORGANIZATION,
        Permission.DELETE_ORGANIZATION,
    }
)

VIEW_PERMISSIONS: frozenset[Permission] = frozenset(
    p for p in Permission if p.name.startswith("VIEW_")
)

ROLE_PERMISSIONS: dict[str, tuple[ScopeType, bool, frozenset[Permission]]] = {
    # name: (scope, is_system, permissions)
    "super_admin": (ScopeType.GLOBAL, True, frozenset(Permission)),
    "platform_support": (ScopeType.GLOBAL, False, VIEW_PERMISSIONS),
    "organization_owner": (
        ScopeType.ENTITY,
        False,
        frozenset(Permission) - {Permission.MANAGE_TOUR},
    ),
    "venue_owner": (
        ScopeType.ENTITY,
        False,
        frozenset(
            {
                Permission.VIEW_VENUE,
                Permission.EDIT_VENUE,
                Permission.DELETE_VENUE,
                Permission.MANAGE_BOOKINGS,
                Permission.MANAGE_ROLES,
                Permission.MANAGE_MEMBERS,
                Permission.VIEW_EVENT,
                Permission.EDIT_EVENT_DETAILS,
                Permission.EDIT_EVENT_LOGISTICS,
                Permission.MANAGE_EVENT_STAFF,
                Permission.ASSIGN_EVENT_ROLES,
                Permission.MANAGE_TICKETING,
                Permission.VIEW_SITE_MAP,
                Permission.EDIT_SITE_MAP,
                Permission.VIEW_ANALYTICS,
            }
        ),
    ),
    "venue_manager": (
        ScopeType.ENTITY,
        False,
        frozenset(
            {
                Permission.VIEW_VENUE,
                Permission.VIEW_EVENT,
                Permission.EDIT_EVENT_DETAILS,
                Permission.EDIT_EVENT_LOGISTICS,
                Permission.MANAGE_EVENT_STAFF,
                Permission.MANAGE_BOOKINGS,
                Permission.VIEW_SITE_MAP,
                Permission.EDIT_SITE_MAP,
            }
        ),
    ),
    "event_coordinator": (
        ScopeType.ENTITY,
        False,
        frozenset(
            {
                Permission.VIEW_EVENT,
                Permission.EDIT_EVENT_DETAILS,
                Permission.EDIT_EVENT_LOGISTICS,
                Permission.ASSIGN_EVENT_ROLES,
                Permission.MANAGE_EVENT_STAFF,
                Permission.MANAGE_ROLES,
            }
        ),
    ),
    "event_staff": (
        ScopeType.ENTITY,
        False,
        frozenset({Permission.VIEW_EVENT, Permission.VIEW_SITE_MAP}),
    ),
    "agency_manager": (
        ScopeType.ENTITY,
        False,
        frozenset(
            {
                Permission.MANAGE_MEMBERS,
                Permission.MANAGE_ROLES,
                Permission.MANAGE_BOOKINGS,
                Permission.VIEW_ANALYTICS,
            }
        ),
    ),
    "tour_manager": (
        ScopeType.ENTITY,
        False,
        frozenset(
            {
                Permission.MANAGE_TOUR,
                Permission.VIEW_EVENT,
                Permission.EDIT_EVENT_LOGISTICS,
                Permission.MANAGE_EVENT_STAFF,
            }
        ),
    ),
}


class PermissionCatalog:
    """Static registry of permission keys and their inheritance flag."""

    def __init__(self, definitions: Iterable[PermissionDefinition]):
        self._definitions: dict[str, PermissionDefinition] = {}
        for definition in definitions:
            if definition.key in self._definitions:
                raise ValueError(f"Duplicate permission key: {definition.key}")
            self._definitions[definition.key] = definition

    @staticmethod
    def normalize_key(key: "Permission | str") -> str:
        """Accept a Permission member, its value, or its uppercase name."""
        if isinstance(key, Permission):
            return key.value
        return str(key).strip().lower()

    def permission_exists(self, key: "Permission | str") -> bool:
        return self.normalize_key(key) in self._definitions

    def get_permission(self, key: "Permission | str") -> PermissionDefinition:
        definition = self._definitions.get(self.normalize_key(key))
        if definition is None:
            raise PermissionNotFoundError(f"Permission '{key}' is not registered")
        return definition

    def is_inheritable(self, key: "Permission | str") -> bool:
        definition = self._definitions.get(self.normalize_key(key))
        return definition.inheritable if definition else False

    def keys(self) -> frozenset[str]:
        return frozenset(self._definitions)

    def list_permissions(self) -> list[PermissionDefinition]:
        return sorted(self._definitions.values(), key=lambda d: d.key)

    def __len__(self) -> int:
        return len(self._definitions)


class RoleRegistry:
    """
    Role definitions and the permission set each role grants.

    Read-only on the request path. Administrative writes notify change
    listeners so cached role expansions can be dropped.
    """

    def __init__(self, catalog: PermissionCatalog, roles: Iterable[Role] = ()):
        self.catalog = catalog
        self._by_name: dict[str, Role] = {}
        self._by_id: dict[str, Role] = {}
        self._listeners: list[Callable[[], object]] = []
        self._lock = threading.Lock()
        for role in roles:
            self._store(self._validated(role))

    def get_role(self, name: str) -> Role:
        role = self._by_name.get(name)
        if role is None:
            raise RoleNotFoundError(f"Role '{name}' not found")
        return role

    def get_role_by_id(self, role_id: str) -> Role | None:
        return self._by_id.get(role_id)

    def list_roles(self) -> list[Role]:
        return sorted(self._by_name.values(), key=lambda r: r.name)

    def system_role_ids(self) -> frozenset[str]:
        return frozenset(r.id for r in self._by_id.values() if r.is_system and r.is_global)

    def add_change_listener(self, listener: Callable[[], object]) -> None:
        self._listeners.append(listener)

    # Administrative path

    def add_role(self, role: Role) -> Role:
        role = self._validated(role)
        with self._lock:
            if role.name in self._by_name:
                raise RoleConflictError(f"Role '{role.name}' already exists")
            self._store(role)
        logger.info(f"Registered role {role.name} ({role.scope_type.value})")
        self._notify()
        return role

    def replace_role_permissions(
        self, name: str, permissions: Iterable["Permission | str"]
    ) -> Role:
        with self._lock:
            role = self.get_role(name)
            if role.is_system:
                raise SystemRoleImmutableError(
                    f"Permissions of system role '{name}' cannot be changed"
                )
            updated = self._validated(
                role.model_copy(update={"permissions": frozenset(permissions)})
            )
            self._store(updated)
        logger.info(f"Replaced permissions of role {name}")
        self._notify()
        return updated

    def remove_role(self, name: str) -> Role:
        with self._lock:
            role = self.get_role(name)
            if role.is_system:
                raise SystemRoleImmutableError(f"System role '{name}' cannot be deleted")
            del self._by_name[role.name]
            del self._by_id[role.id]
        logger.info(f"Removed role {name}")
        self._notify()
        return role

    def _validated(self, role: Role) -> Role:
        keys = frozenset(self.catalog.normalize_key(p) for p in role.permissions)
        for key in keys:
            if not self.catalog.permission_exists(key):
                raise PermissionNotFoundError(
                    f"Role '{role.name}' references unknown permission '{key}'"
                )
        return role.model_copy(update={"permissions": keys})

    def _store(self, role: Role) -> None:
        self._by_name[role.name] = role
        self._by_id[role.id] = role

    def _notify(self) -> None:
        for listener in self._listeners:
            listener()


def build_default_catalog() -> PermissionCatalog:
    """Catalog covering every Permission member."""
    return PermissionCatalog(
        PermissionDefinition(
            key=permission.value,
            inheritable=permission not in NON_INHERITABLE_PERMISSIONS,
        )
        for permission in Permission
    )


def build_default_registry(catalog: PermissionCatalog | None = None) -> RoleRegistry:
    """Registry with the platform's built-in roles."""
    catalog = catalog or build_default_catalog()
    roles = [
        Role(
            id=name,
            name=name,
            scope_type=scope,
            is_system=is_system,
            permissions=frozenset(p.value for p in permissions),
        )
        for name, (scope, is_system, permissions) in ROLE_PERMISSIONS.items()
    ]
    return RoleRegistry(catalog, roles)
