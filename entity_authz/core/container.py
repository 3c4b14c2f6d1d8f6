# entity_authz/core/container.py
import time
from dataclasses import dataclass
from typing import Callable, Optional

from entity_authz.core.settings import Settings, settings as default_settings
from entity_authz.domains.assignments.service import AssignmentManager
from entity_authz.domains.roles.service import RoleService
from entity_authz.shared.permissions.audit import AuditSink, LoggingAuditSink
from entity_authz.shared.permissions.cache import ResolutionCache
from entity_authz.shared.permissions.catalog import RoleRegistry, build_default_registry
from entity_authz.shared.permissions.hierarchy import HierarchyResolver, HierarchySource
from entity_authz.shared.permissions.repository import (
    AssignmentRepository,
    Clock,
    utcnow,
)
from entity_authz.shared.permissions.services import PermissionResolutionEngine


@dataclass
class AuthzContainer:
    """Everything one application instance needs to make decisions."""

    settings: Settings
    registry: RoleRegistry
    repository: AssignmentRepository
    hierarchy: HierarchyResolver
    cache: ResolutionCache
    audit_sink: AuditSink
    engine: PermissionResolutionEngine
    assignments: AssignmentManager
    roles: RoleService


def build_container(
    repository: AssignmentRepository,
    hierarchy_source: HierarchySource,
    *,
    registry: Optional[RoleRegistry] = None,
    audit_sink: Optional[AuditSink] = None,
    app_settings: Optional[Settings] = None,
    clock: Clock = utcnow,
    cache_clock: Callable[[], float] = time.monotonic,
) -> AuthzContainer:
    """
    Wire the engine and its collaborators.

    The cache belongs to the returned container; two containers never share
    cached decisions.
    """
    app_settings = app_settings or default_settings
    registry = registry or build_default_registry()
    audit_sink = audit_sink or LoggingAuditSink()
    timeout = app_settings.AUTHZ_DEPENDENCY_TIMEOUT_SECONDS

    cache = ResolutionCache(
        ttl_seconds=app_settings.AUTHZ_CACHE_TTL_SECONDS,
        max_entries=app_settings.AUTHZ_CACHE_MAX_ENTRIES,
        clock=cache_clock,
    )
    registry.add_change_listener(cache.clear)

    hierarchy = HierarchyResolver(
        hierarchy_source,
        timeout=timeout,
        max_depth=app_settings.AUTHZ_MAX_HIERARCHY_DEPTH,
        walk_timeout=app_settings.AUTHZ_HIERARCHY_WALK_TIMEOUT_SECONDS,
        audit_sink=audit_sink,
    )
    engine = PermissionResolutionEngine(
        registry.catalog,
        registry,
        repository,
        hierarchy,
        cache,
        timeout=timeout,
        audit_sink=audit_sink,
        clock=clock,
    )
    assignments = AssignmentManager(
        engine,
        registry,
        repository,
        cache,
        manage_roles_permission=app_settings.AUTHZ_MANAGE_ROLES_PERMISSION,
        timeout=timeout,
        audit_sink=audit_sink,
        clock=clock,
    )
    roles = RoleService(engine, registry, audit_sink)

    return AuthzContainer(
        settings=app_settings,
        registry=registry,
        repository=repository,
        hierarchy=hierarchy,
        cache=cache,
        audit_sink=audit_sink,
        engine=engine,
        assignments=assignments,
        roles=roles,
    )
