"""
Entity-scoped permission system.

Resolves "user + permission + entity" to allow/deny from global roles,
entity-scoped roles and the entity hierarchy.

Usage:
    from entity_authz.shared.permissions import (
        EntityType,
        Permission,
        require_entity_permission,
    )

    @router.patch("/events/{entity_id}/logistics")
    async def edit_logistics(
        entity_id: str,
        principal_id: str = Depends(
            require_entity_permission(
                Permission.EDIT_EVENT_LOGISTICS, EntityType.EVENT
            )
        ),
    ):
        pass
"""

from .audit import AuditAction, AuditEvent, AuditSink, LoggingAuditSink
from .cache import ResolutionCache
from .catalog import (
    ROLE_PERMISSIONS,
    Permission,
    PermissionCatalog,
    RoleRegistry,
    build_default_catalog,
    build_default_registry,
)
from .dependencies import require_entity_permission
from .hierarchy import HierarchyResolver, HierarchySource, InMemoryHierarchySource
from .models import (
    Assignment,
    DecisionReason,
    EntityRef,
    EntityType,
    PermissionDecision,
    PermissionDefinition,
    Role,
    ScopeType,
)
from .repository import AssignmentRepository, InMemoryAssignmentRepository
from .services import PermissionResolutionEngine

__all__ = [
    "Assignment",
    "AssignmentRepository",
    "AuditAction",
    "AuditEvent",
    "AuditSink",
    "DecisionReason",
    "EntityRef",
    "EntityType",
    "HierarchyResolver",
    "HierarchySource",
    "InMemoryAssignmentRepository",
    "InMemoryHierarchySource",
    "LoggingAuditSink",
    "Permission",
    "PermissionCatalog",
    "PermissionDecision",
    "PermissionDefinition",
    "PermissionResolutionEngine",
    "ROLE_PERMISSIONS",
    "ResolutionCache",
    "Role",
    "RoleRegistry",
    "ScopeType",
    "build_default_catalog",
    "build_default_registry",
    "require_entity_permission",
]
