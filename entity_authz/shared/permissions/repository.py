import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from entity_authz.shared.exceptions import DependencyUnavailableError

from .models import Assignment, EntityType

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def call_dependency(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """
    Await a collaborator call within a time budget.

    Raises:
        DependencyUnavailableError: If the call times out or fails
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise DependencyUnavailableError(f"{what} timed out after {timeout}s")
    except DependencyUnavailableError:
        raise
    except Exception as e:
        raise DependencyUnavailableError(f"{what} failed: {e}") from e


class AssignmentRepository(ABC):
    """
    Read/write access to user-role-entity grants.

    The concrete store lives outside this package. "Active" means
    ``expires_at`` is null or in the future at the time of the call; the
    engine re-checks activity itself, so an implementation that returns a
    just-expired row does not leak access.
    """

    @abstractmethod
    async def find_active_assignments(self, user_id: str) -> list[Assignment]:
        """All active assignments of a user, global and entity-scoped."""

    @abstractmethod
    async def find_active_assignments_for_entity(
        self, user_id: str, entity_type: EntityType, entity_id: str
    ) -> list[Assignment]:
        """Active assignments of a user scoped to exactly this entity."""

    @abstractmethod
    async def insert(self, assignment: Assignment) -> Assignment:
        pass

    @abstractmethod
    async def update(self, assignment: Assignment) -> Assignment:
        pass

    @abstractmethod
    async def revoke(self, assignment_id: str, revoked_at: datetime) -> Optional[Assignment]:
        """Mark an assignment inactive by setting ``expires_at``."""

    @abstractmethod
    async def get(self, assignment_id: str) -> Optional[Assignment]:
        pass

    @abstractmethod
    async def find_for_entity(
        self, entity_type: EntityType, entity_id: str
    ) -> list[Assignment]:
        """Every assignment on an entity, active or not."""

    @abstractmethod
    async def find_for_user(self, user_id: str) -> list[Assignment]:
        """Every assignment of a user, active or not."""

    @abstractmethod
    async def find_for_role(
        self,
        role_id: str,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[str] = None,
    ) -> list[Assignment]:
        """Every assignment of a role in one scope (global when no entity)."""


class InMemoryAssignmentRepository(AssignmentRepository):
    """Dictionary-backed repository for local wiring and tests."""

    def __init__(self, clock: Clock = utcnow, assignments: Iterable[Assignment] = ()):
        self._rows: dict[str, Assignment] = {a.id: a for a in assignments}
        self._clock = clock

    async def find_active_assignments(self, user_id: str) -> list[Assignment]:
        now = self._clock()
        return [
            a for a in self._rows.values() if a.user_id == user_id and a.is_active(now)
        ]

    async def find_active_assignments_for_entity(
        self, user_id: str, entity_type: EntityType, entity_id: str
    ) -> list[Assignment]:
        now = self._clock()
        return [
            a
            for a in self._rows.values()
            if a.user_id == user_id
            and a.entity_type == entity_type
            and a.entity_id == entity_id
            and a.is_active(now)
        ]

    async def insert(self, assignment: Assignment) -> Assignment:
        if assignment.id in self._rows:
            raise ValueError(f"Assignment {assignment.id} already exists")
        self._rows[assignment.id] = assignment
        return assignment

    async def update(self, assignment: Assignment) -> Assignment:
        if assignment.id not in self._rows:
            raise KeyError(assignment.id)
        self._rows[assignment.id] = assignment
        return assignment

    async def revoke(self, assignment_id: str, revoked_at: datetime) -> Optional[Assignment]:
        current = self._rows.get(assignment_id)
        if current is None:
            return None
        revoked = current.model_copy(update={"expires_at": revoked_at})
        self._rows[assignment_id] = revoked
        return revoked

    async def get(self, assignment_id: str) -> Optional[Assignment]:
        return self._rows.get(assignment_id)

    async def find_for_entity(
        self, entity_type: EntityType, entity_id: str
    ) -> list[Assignment]:
        return [
            a
            for a in self._rows.values()
            if a.entity_type == entity_type and a.entity_id == entity_id
        ]

    async def find_for_user(self, user_id: str) -> list[Assignment]:
        return [a for a in self._rows.values() if a.user_id == user_id]

    async def find_for_role(
        self,
        role_id: str,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[str] = None,
    ) -> list[Assignment]:
        return [
            a
            for a in self._rows.values()
            if a.role_id == role_id
            and a.entity_type == entity_type
            and a.entity_id == entity_id
        ]
