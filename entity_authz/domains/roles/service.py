# entity_authz/domains/roles/service.py
import logging
from typing import Iterable, List, Optional

from entity_authz.shared.exceptions import (
    AuthorizationError,
    DependencyUnavailableError,
    UnauthorizedError,
)
from entity_authz.shared.permissions.audit import (
    AuditAction,
    AuditEvent,
    AuditSink,
    emit,
)
from entity_authz.shared.permissions.catalog import Permission, RoleRegistry
from entity_authz.shared.permissions.models import Role, ScopeType
from entity_authz.shared.permissions.services import PermissionResolutionEngine

logger = logging.getLogger(__name__)


class RoleService:
    """
    Administrative path for role definitions.

    Only system users may create, change or delete roles. The registry
    notifies its listeners on every change, which clears the resolution cache.
    """

    def __init__(
        self,
        engine: PermissionResolutionEngine,
        registry: RoleRegistry,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.engine = engine
        self.registry = registry
        self.audit_sink = audit_sink

    def list_roles(self) -> List[Role]:
        return self.registry.list_roles()

    def get_role(self, name: str) -> Role:
        return self.registry.get_role(name)

    async def create_role(
        self,
        acting_user_id: str,
        name: str,
        scope_type: ScopeType,
        permissions: Iterable[Permission | str],
        description: str = "",
    ) -> Role:
        """
        Register a new, non-system role.

        Raises:
            UnauthorizedError: Acting user is not a system user
            RoleConflictError: A role with this name exists
            PermissionNotFoundError: A permission is not in the catalog
        """
        await self._require_system_user(acting_user_id)
        if not name.strip():
            raise AuthorizationError("Role name is required")

        role = self.registry.add_role(
            Role(
                name=name.strip(),
                scope_type=scope_type,
                is_system=False,
                permissions=frozenset(
                    self.registry.catalog.normalize_key(p) for p in permissions
                ),
                description=description,
            )
        )
        self._audit(AuditAction.ROLE_CREATED, acting_user_id, role)
        return role

    async def update_role_permissions(
        self,
        acting_user_id: str,
        name: str,
        permissions: Iterable[Permission | str],
    ) -> Role:
        """
        Replace the permission set of a role.

        Raises:
            UnauthorizedError: Acting user is not a system user
            RoleNotFoundError: Role is not registered
            SystemRoleImmutableError: Role is a system role
            PermissionNotFoundError: A permission is not in the catalog
        """
        await self._require_system_user(acting_user_id)
        role = self.registry.replace_role_permissions(name, permissions)
        self._audit(AuditAction.ROLE_UPDATED, acting_user_id, role)
        return role

    async def delete_role(self, acting_user_id: str, name: str) -> Role:
        """
        Remove a non-system role.

        Existing assignments of the role stop contributing permissions; they
        are kept for audit.
        """
        await self._require_system_user(acting_user_id)
        role = self.registry.remove_role(name)
        self._audit(AuditAction.ROLE_DELETED, acting_user_id, role)
        return role

    async def _require_system_user(self, acting_user_id: str) -> None:
        decision = await self.engine.check_system_override(acting_user_id)
        if decision.degraded:
            raise DependencyUnavailableError("Could not verify role administration rights")
        if not decision.allowed:
            logger.warning(f"User {acting_user_id} denied role administration")
            raise UnauthorizedError("Only system administrators can manage roles")

    def _audit(self, action: AuditAction, acting_user_id: str, role: Role) -> None:
        emit(
            self.audit_sink,
            AuditEvent(
                action=action,
                actor_id=acting_user_id,
                role_name=role.name,
                details={
                    "scope_type": role.scope_type.value,
                    "permissions": sorted(role.permissions),
                },
            ),
        )
