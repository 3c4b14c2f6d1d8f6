"""
Permission Resolution Engine.

Answers "may this user do X on this entity?" from role assignments, the
role registry and the entity hierarchy:

1. An active global system role (super admin) allows everything.
2. Global role assignments plus assignments on the exact entity are unioned.
3. Inheritable permissions are also looked up on each ancestor entity,
   nearest first, until satisfied.
4. Anything else is a deny.

Single checks and capability listings go through the same expansion step, so
``get_capabilities`` is always the set of keys ``has_permission`` allows.
"""

import logging
from collections import defaultdict
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from entity_authz.shared.exceptions import (
    DependencyUnavailableError,
    InvalidEntityTypeError,
)

from .audit import AuditAction, AuditEvent, AuditSink, emit
from .cache import CAPABILITIES, Generation, ResolutionCache
from .catalog import Permission, PermissionCatalog, RoleRegistry
from .hierarchy import HierarchyResolver
from .models import (
    Assignment,
    DecisionReason,
    EntityRef,
    EntityType,
    PermissionDecision,
    PermissionValidationResult,
    Role,
)
from .repository import AssignmentRepository, Clock, call_dependency, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Expansion:
    """Permissions a user holds on one entity, with where each came from."""

    granted: set[str] = field(default_factory=set)
    sources: dict[str, Optional[EntityRef]] = field(default_factory=dict)
    system_override: bool = False
    valid_until: Optional[datetime] = None

    def bound(self, assignment: Assignment) -> None:
        """Shrink the validity window to the assignment's expiry."""
        if assignment.expires_at is None:
            return
        if self.valid_until is None or assignment.expires_at < self.valid_until:
            self.valid_until = assignment.expires_at

    def add(self, keys: Iterable[str], source: Optional[EntityRef]) -> None:
        for key in keys:
            if key not in self.granted:
                self.granted.add(key)
                self.sources[key] = source


class PermissionResolutionEngine:
    """
    Central allow/deny decision function.

    ``has_permission`` and ``get_capabilities`` never raise: unknown users,
    entities and permission keys resolve to a deny, and a failing
    collaborator fails closed. Use ``check_permission`` when the caller must
    tell a policy deny from a degraded dependency.
    """

    def __init__(
        self,
        catalog: PermissionCatalog,
        registry: RoleRegistry,
        repository: AssignmentRepository,
        hierarchy: HierarchyResolver,
        cache: Optional[ResolutionCache] = None,
        *,
        timeout: float = 0.5,
        audit_sink: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ):
        self.catalog = catalog
        self.registry = registry
        self.repository = repository
        self.hierarchy = hierarchy
        self.cache = cache
        self.timeout = timeout
        self.audit_sink = audit_sink
        self.clock = clock

    # ------------------------------------------------------------------
    # Single-key checks
    # ------------------------------------------------------------------

    async def has_permission(
        self,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        permission_key: Permission | str,
    ) -> bool:
        decision = await self.check_permission(
            user_id, entity_type, entity_id, permission_key
        )
        return decision.allowed

    async def check_permission(
        self,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        permission_key: Permission | str,
    ) -> PermissionDecision:
        """
        Evaluate one permission and report why.

        Args:
            user_id: Authenticated principal id
            entity_type: Entity type (loose spellings accepted)
            entity_id: Entity id
            permission_key: Permission member, value or uppercase name

        Returns:
            PermissionDecision; ``allowed`` is False on any uncertainty
        """
        key = self.catalog.normalize_key(permission_key)
        if not self.catalog.permission_exists(key):
            logger.warning(f"Permission check for unregistered key '{permission_key}'")
            return PermissionDecision(
                allowed=False, reason=DecisionReason.UNKNOWN_PERMISSION, permission=key
            )

        try:
            entity = EntityRef.of(entity_type, entity_id)
        except InvalidEntityTypeError:
            logger.warning(f"Permission check on unknown entity type {entity_type!r}")
            return PermissionDecision(
                allowed=False, reason=DecisionReason.INVALID_ENTITY, permission=key
            )

        generation = None
        if self.cache is not None:
            cached = self.cache.get(user_id, entity.entity_type, entity.entity_id, key)
            if cached is not None:
                return cached
            generation = self.cache.generation(user_id)

        try:
            expansion = await self._expand(user_id, entity, wanted=frozenset({key}))
        except DependencyUnavailableError as e:
            self._report_degraded(user_id, entity, e)
            return PermissionDecision(
                allowed=False,
                reason=DecisionReason.DEPENDENCY_UNAVAILABLE,
                permission=key,
            )

        decision = self._decide(key, entity, expansion)
        self._remember(user_id, entity, decision, key, expansion, generation)
        return decision

    # ------------------------------------------------------------------
    # Batch checks
    # ------------------------------------------------------------------

    async def get_capabilities(
        self,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
    ) -> frozenset[str]:
        """Every permission key the user holds on the entity."""
        try:
            entity = EntityRef.of(entity_type, entity_id)
        except InvalidEntityTypeError:
            logger.warning(f"Capability listing on unknown entity type {entity_type!r}")
            return frozenset()

        generation = None
        if self.cache is not None:
            cached = self.cache.get(user_id, entity.entity_type, entity.entity_id)
            if cached is not None:
                return cached
            generation = self.cache.generation(user_id)

        try:
            expansion = await self._expand(user_id, entity, wanted=None)
        except DependencyUnavailableError as e:
            self._report_degraded(user_id, entity, e)
            return frozenset()

        capabilities = frozenset(expansion.granted)
        self._remember(
            user_id, entity, capabilities, CAPABILITIES, expansion, generation
        )
        return capabilities

    async def validate_permissions(
        self,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        required: Iterable[Permission | str],
    ) -> PermissionValidationResult:
        """Check several permissions and list the ones that are missing."""
        keys = [self.catalog.normalize_key(k) for k in required]
        capabilities = await self.get_capabilities(user_id, entity_type, entity_id)
        missing = [k for k in keys if k not in capabilities]
        return PermissionValidationResult(
            is_valid=not missing,
            required=keys,
            missing=missing,
            reason=f"Missing permissions: {', '.join(missing)}" if missing else None,
        )

    async def has_any_permission(
        self,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        permissions: Iterable[Permission | str],
    ) -> bool:
        capabilities = await self.get_capabilities(user_id, entity_type, entity_id)
        return any(self.catalog.normalize_key(p) in capabilities for p in permissions)

    async def has_all_permissions(
        self,
        user_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        permissions: Iterable[Permission | str],
    ) -> bool:
        result = await self.validate_permissions(
            user_id, entity_type, entity_id, permissions
        )
        return result.is_valid

    # ------------------------------------------------------------------
    # Role membership
    # ------------------------------------------------------------------

    async def has_role(
        self,
        user_id: str,
        role_name: str,
        entity_type: EntityType | str | None = None,
        entity_id: Optional[str] = None,
    ) -> bool:
        """
        Check whether a user holds a role directly in a scope.

        No inheritance: a venue_manager on a Venue is not a venue_manager on
        its Events.

        Raises:
            RoleNotFoundError: If the role is not registered
            InvalidEntityTypeError: If the entity type is unknown
        """
        role = self.registry.get_role(role_name)
        try:
            if entity_type is None or entity_id is None:
                assignments = await call_dependency(
                    self.repository.find_active_assignments(user_id),
                    self.timeout,
                    "Assignment lookup",
                )
                assignments = [a for a in assignments if a.is_global]
            else:
                entity = EntityRef.of(entity_type, entity_id)
                assignments = await call_dependency(
                    self.repository.find_active_assignments_for_entity(
                        user_id, entity.entity_type, entity.entity_id
                    ),
                    self.timeout,
                    "Assignment lookup",
                )
        except DependencyUnavailableError as e:
            self._report_degraded(user_id, None, e)
            return False

        now = self.clock()
        return any(a.role_id == role.id and a.is_active(now) for a in assignments)

    async def is_system_user(self, user_id: str) -> bool:
        """True when the user holds an active global system role."""
        return (await self.check_system_override(user_id)).allowed

    async def check_system_override(self, user_id: str) -> PermissionDecision:
        """Decision for the system-role override alone, used for global grants."""
        try:
            pairs = await self._active_role_pairs(user_id)
        except DependencyUnavailableError as e:
            self._report_degraded(user_id, None, e)
            return PermissionDecision(
                allowed=False,
                reason=DecisionReason.DEPENDENCY_UNAVAILABLE,
                permission=CAPABILITIES,
            )
        if any(self._is_system_pair(a, r) for a, r in pairs):
            return PermissionDecision(
                allowed=True,
                reason=DecisionReason.SYSTEM_OVERRIDE,
                permission=CAPABILITIES,
            )
        return PermissionDecision(
            allowed=False, reason=DecisionReason.DENIED, permission=CAPABILITIES
        )

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------

    async def _active_role_pairs(self, user_id: str) -> list[tuple[Assignment, Role]]:
        assignments = await call_dependency(
            self.repository.find_active_assignments(user_id),
            self.timeout,
            "Assignment lookup",
        )
        now = self.clock()
        pairs: list[tuple[Assignment, Role]] = []
        for assignment in assignments:
            if not assignment.is_active(now):
                continue
            role = self.registry.get_role_by_id(assignment.role_id)
            if role is None:
                logger.warning(
                    f"Assignment {assignment.id} references unknown role {assignment.role_id}"
                )
                continue
            if role.is_global != assignment.is_global:
                # Scope mismatch can only come from a bad write; never honor it.
                logger.warning(
                    f"Ignoring assignment {assignment.id}: scope does not match role {role.name}"
                )
                continue
            pairs.append((assignment, role))
        return pairs

    @staticmethod
    def _is_system_pair(assignment: Assignment, role: Role) -> bool:
        return role.is_system and role.is_global and assignment.is_global

    async def _expand(
        self,
        user_id: str,
        entity: EntityRef,
        wanted: Optional[frozenset[str]],
    ) -> Expansion:
        """
        Collect the permissions a user holds on an entity.

        With ``wanted`` set, stops as soon as every wanted key is granted.
        With ``wanted=None``, builds the complete capability set.
        """
        expansion = Expansion()
        pairs = await self._active_role_pairs(user_id)
        for assignment, _ in pairs:
            expansion.bound(assignment)

        if any(self._is_system_pair(a, r) for a, r in pairs):
            expansion.system_override = True
            expansion.add(self.catalog.keys(), None)
            return expansion

        by_entity: dict[EntityRef, set[str]] = defaultdict(set)
        for assignment, role in pairs:
            if assignment.is_global:
                expansion.add(role.permissions, None)
            else:
                by_entity[assignment.entity].update(role.permissions)

        expansion.add(by_entity.pop(entity, ()), entity)

        candidates = self.catalog.keys() if wanted is None else wanted
        looking_for = {
            k for k in candidates if self.catalog.is_inheritable(k)
        } - expansion.granted
        if not looking_for:
            return expansion

        async with aclosing(
            self.hierarchy.iter_ancestors(entity.entity_type, entity.entity_id)
        ) as ancestors:
            async for ancestor in ancestors:
                found = by_entity.get(ancestor, set()) & looking_for
                if found:
                    expansion.add(found, ancestor)
                    looking_for -= found
                if not looking_for:
                    break

        return expansion

    def _decide(
        self, key: str, entity: EntityRef, expansion: Expansion
    ) -> PermissionDecision:
        if expansion.system_override:
            return PermissionDecision(
                allowed=True, reason=DecisionReason.SYSTEM_OVERRIDE, permission=key
            )
        if key not in expansion.granted:
            return PermissionDecision(
                allowed=False, reason=DecisionReason.DENIED, permission=key
            )
        source = expansion.sources.get(key)
        reason = (
            DecisionReason.INHERITED
            if source is not None and source != entity
            else DecisionReason.GRANTED
        )
        return PermissionDecision(
            allowed=True, reason=reason, permission=key, granted_at=source
        )

    def _remember(
        self,
        user_id: str,
        entity: EntityRef,
        value: object,
        key: str,
        expansion: Expansion,
        generation: Optional[Generation],
    ) -> None:
        if self.cache is None:
            return
        ttl = None
        if expansion.valid_until is not None:
            # A cached answer must not outlive the assignments it was built from.
            ttl = (expansion.valid_until - self.clock()).total_seconds()
        self.cache.set(
            user_id,
            entity.entity_type,
            entity.entity_id,
            value,
            key,
            ttl_seconds=ttl,
            generation=generation,
        )

    def _report_degraded(
        self,
        user_id: str,
        entity: Optional[EntityRef],
        error: DependencyUnavailableError,
    ) -> None:
        logger.error(
            f"Authorization dependency unavailable for user {user_id}"
            f"{f' on {entity}' if entity else ''}; failing closed: {error.message}"
        )
        emit(
            self.audit_sink,
            AuditEvent(
                action=AuditAction.DEPENDENCY_UNAVAILABLE,
                target_user_id=user_id,
                entity_type=entity.entity_type.value if entity else None,
                entity_id=entity.entity_id if entity else None,
                details={"error": error.message},
            ),
        )
