# entity_authz/domains/assignments/service.py
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Hashable, Optional

from entity_authz.shared.exceptions import (
    AssignmentNotFoundError,
    DependencyUnavailableError,
    InvalidAssignmentError,
    InvalidScopeError,
    UnauthorizedError,
)
from entity_authz.shared.permissions.audit import (
    AuditAction,
    AuditEvent,
    AuditSink,
    emit,
)
from entity_authz.shared.permissions.cache import ResolutionCache
from entity_authz.shared.permissions.catalog import RoleRegistry
from entity_authz.shared.permissions.models import (
    Assignment,
    EntityRef,
    EntityType,
    RevokeResult,
    Role,
    as_utc,
)
from entity_authz.shared.permissions.repository import (
    AssignmentRepository,
    Clock,
    call_dependency,
    utcnow,
)
from entity_authz.shared.permissions.services import PermissionResolutionEngine

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: defaultdict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class AssignmentManager:
    """
    Grants and revokes roles.

    Every write authorizes itself through the resolution engine, is
    serialized per (user, entity) scope, and drops the target user's cached
    decisions afterwards.
    """

    def __init__(
        self,
        engine: PermissionResolutionEngine,
        registry: RoleRegistry,
        repository: AssignmentRepository,
        cache: Optional[ResolutionCache] = None,
        *,
        manage_roles_permission: str = "manage_roles",
        timeout: float = 0.5,
        audit_sink: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ):
        self.engine = engine
        self.registry = registry
        self.repository = repository
        self.cache = cache
        self.manage_roles_permission = manage_roles_permission
        self.timeout = timeout
        self.audit_sink = audit_sink
        self.clock = clock
        self._locks = KeyedLocks()

    async def assign_role(
        self,
        acting_user_id: str,
        target_user_id: str,
        role_name: str,
        entity_type: EntityType | str | None = None,
        entity_id: Optional[str] = None,
        *,
        expires_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Assignment:
        """
        Grant a role to a user, globally or on one entity.

        Re-assigning a role the user already holds actively in the same scope
        refreshes the existing assignment instead of adding a second one.

        Args:
            acting_user_id: Principal performing the grant
            target_user_id: User receiving the role
            role_name: Registered role name
            entity_type: Entity type for entity-scoped roles, else None
            entity_id: Entity id for entity-scoped roles, else None
            expires_at: Optional expiry, must be in the future (naive means UTC)
            notes: Optional free-text note

        Returns:
            The created or refreshed assignment

        Raises:
            RoleNotFoundError: Role is not registered
            InvalidScopeError: Entity context does not match the role scope
            InvalidAssignmentError: Expiry is not in the future
            UnauthorizedError: Acting user may not grant in this scope
            DependencyUnavailableError: Repository failed or timed out
        """
        role = self.registry.get_role(role_name)
        entity = self._resolve_scope(role, entity_type, entity_id)

        expires_at = as_utc(expires_at)
        now = self.clock()
        if expires_at is not None and expires_at <= now:
            raise InvalidAssignmentError("Assignment expiry must be in the future")

        await self.ensure_can_manage(acting_user_id, entity, action="grant")

        async with self._locks.hold(self._lock_key(target_user_id, entity)):
            existing = await self._find_active(target_user_id, role, entity)
            if existing is not None:
                assignment = existing.model_copy(
                    update={
                        "granted_by": acting_user_id,
                        "granted_at": self.clock(),
                        "expires_at": expires_at,
                        "notes": notes if notes is not None else existing.notes,
                    }
                )
                assignment = await call_dependency(
                    self.repository.update(assignment),
                    self.timeout,
                    "Assignment update",
                )
                action = AuditAction.ROLE_REFRESHED
            else:
                assignment = await call_dependency(
                    self.repository.insert(
                        Assignment(
                            user_id=target_user_id,
                            role_id=role.id,
                            entity_type=entity.entity_type if entity else None,
                            entity_id=entity.entity_id if entity else None,
                            granted_by=acting_user_id,
                            granted_at=self.clock(),
                            expires_at=expires_at,
                            notes=notes,
                        )
                    ),
                    self.timeout,
                    "Assignment insert",
                )
                action = AuditAction.ROLE_GRANTED

            self._invalidate(target_user_id)

        logger.info(
            f"{action.value}: {role.name} to user {target_user_id} "
            f"on {entity or 'global scope'} by {acting_user_id}"
        )
        self._audit(action, acting_user_id, assignment, role)
        return assignment

    async def revoke_role(self, acting_user_id: str, assignment_id: str) -> RevokeResult:
        """
        Revoke an assignment by marking it expired.

        Revoking an assignment that is already inactive succeeds without a
        write and reports ``revoked=False``.

        Raises:
            AssignmentNotFoundError: No assignment with this id
            UnauthorizedError: Acting user may not revoke in this scope
            DependencyUnavailableError: Repository failed or timed out
        """
        assignment = await self._get(assignment_id)
        await self.ensure_can_manage(acting_user_id, assignment.entity, action="revoke")

        async with self._locks.hold(self._lock_key(assignment.user_id, assignment.entity)):
            # Re-read under the lock; a concurrent write may have changed it.
            assignment = await self._get(assignment_id)
            now = self.clock()
            if not assignment.is_active(now):
                return RevokeResult(
                    assignment=assignment,
                    revoked=False,
                    message="Assignment is already inactive",
                )

            revoked = await call_dependency(
                self.repository.revoke(assignment_id, now),
                self.timeout,
                "Assignment revoke",
            )
            if revoked is None:
                raise AssignmentNotFoundError(f"Assignment {assignment_id} not found")

            self._invalidate(assignment.user_id)

        role = self.registry.get_role_by_id(revoked.role_id)
        logger.info(
            f"Revoked assignment {assignment_id} of user {revoked.user_id} "
            f"by {acting_user_id}"
        )
        self._audit(AuditAction.ROLE_REVOKED, acting_user_id, revoked, role)
        return RevokeResult(assignment=revoked, revoked=True, message="Assignment revoked")

    async def list_assignments(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        *,
        include_inactive: bool = False,
    ) -> list[Assignment]:
        """Assignments on one entity, newest first."""
        entity = EntityRef.of(entity_type, entity_id)
        assignments = await call_dependency(
            self.repository.find_for_entity(entity.entity_type, entity.entity_id),
            self.timeout,
            "Assignment listing",
        )
        return self._filtered(assignments, include_inactive)

    async def list_user_assignments(
        self, user_id: str, *, include_inactive: bool = False
    ) -> list[Assignment]:
        """Every assignment of one user, newest first."""
        assignments = await call_dependency(
            self.repository.find_for_user(user_id),
            self.timeout,
            "Assignment listing",
        )
        return self._filtered(assignments, include_inactive)

    async def get_users_with_role(
        self,
        role_name: str,
        entity_type: EntityType | str | None = None,
        entity_id: Optional[str] = None,
    ) -> list[str]:
        """Ids of users holding a role actively in one scope."""
        role = self.registry.get_role(role_name)
        entity = self._resolve_scope(role, entity_type, entity_id)
        assignments = await call_dependency(
            self.repository.find_for_role(
                role.id,
                entity.entity_type if entity else None,
                entity.entity_id if entity else None,
            ),
            self.timeout,
            "Assignment listing",
        )
        now = self.clock()
        return sorted({a.user_id for a in assignments if a.is_active(now)})

    @staticmethod
    def _resolve_scope(
        role: Role,
        entity_type: EntityType | str | None,
        entity_id: Optional[str],
    ) -> Optional[EntityRef]:
        """Validate the entity context against the role's scope type."""
        if (entity_type is None) != (entity_id is None):
            raise InvalidScopeError("entity_type and entity_id must be given together")

        if role.is_global:
            if entity_type is not None:
                raise InvalidScopeError(
                    f"Role '{role.name}' is global and cannot be assigned on an entity"
                )
            return None

        if entity_type is None:
            raise InvalidScopeError(f"Role '{role.name}' requires an entity context")
        return EntityRef.of(entity_type, entity_id)

    async def ensure_can_manage(
        self, acting_user_id: str, entity: Optional[EntityRef], action: str
    ) -> None:
        """
        Require role-management authority in a scope.

        Entity scopes need the manage-roles permission on the entity (directly
        or inherited); the global scope needs the system-role override.

        Raises:
            UnauthorizedError: Authority is missing
            DependencyUnavailableError: Authority could not be verified
        """
        if entity is None:
            decision = await self.engine.check_system_override(acting_user_id)
        else:
            decision = await self.engine.check_permission(
                acting_user_id,
                entity.entity_type,
                entity.entity_id,
                self.manage_roles_permission,
            )
        if decision.degraded:
            raise DependencyUnavailableError(
                f"Could not verify role {action} authority of user {acting_user_id}"
            )
        if not decision.allowed:
            scope = str(entity) if entity else "global scope"
            logger.warning(f"User {acting_user_id} denied role {action} on {scope}")
            raise UnauthorizedError(f"Not authorized to {action} roles on {scope}")

    async def _find_active(
        self, user_id: str, role: Role, entity: Optional[EntityRef]
    ) -> Optional[Assignment]:
        if entity is None:
            candidates = await call_dependency(
                self.repository.find_active_assignments(user_id),
                self.timeout,
                "Assignment lookup",
            )
        else:
            candidates = await call_dependency(
                self.repository.find_active_assignments_for_entity(
                    user_id, entity.entity_type, entity.entity_id
                ),
                self.timeout,
                "Assignment lookup",
            )
        now = self.clock()
        for candidate in candidates:
            if (
                candidate.role_id == role.id
                and candidate.entity == entity
                and candidate.is_active(now)
            ):
                return candidate
        return None

    async def _get(self, assignment_id: str) -> Assignment:
        assignment = await call_dependency(
            self.repository.get(assignment_id), self.timeout, "Assignment lookup"
        )
        if assignment is None:
            raise AssignmentNotFoundError(f"Assignment {assignment_id} not found")
        return assignment

    def _filtered(
        self, assignments: list[Assignment], include_inactive: bool
    ) -> list[Assignment]:
        now = self.clock()
        kept = [a for a in assignments if include_inactive or a.is_active(now)]
        return sorted(kept, key=lambda a: a.granted_at, reverse=True)

    @staticmethod
    def _lock_key(user_id: str, entity: Optional[EntityRef]) -> tuple:
        if entity is None:
            return (user_id, None, None)
        return (user_id, entity.entity_type, entity.entity_id)

    def _invalidate(self, user_id: str) -> None:
        # Descendants of the entity are not tracked, so the whole partition goes.
        if self.cache is not None:
            self.cache.invalidate_user(user_id)

    def _audit(
        self,
        action: AuditAction,
        acting_user_id: str,
        assignment: Assignment,
        role: Optional[Role],
    ) -> None:
        emit(
            self.audit_sink,
            AuditEvent(
                action=action,
                actor_id=acting_user_id,
                target_user_id=assignment.user_id,
                role_name=role.name if role else assignment.role_id,
                assignment_id=assignment.id,
                entity_type=assignment.entity_type.value if assignment.entity_type else None,
                entity_id=assignment.entity_id,
                details={
                    "expires_at": (
                        assignment.expires_at.isoformat() if assignment.expires_at else None
                    ),
                    "notes": assignment.notes,
                },
            ),
        )
