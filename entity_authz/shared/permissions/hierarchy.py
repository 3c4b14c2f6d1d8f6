"""
Entity hierarchy resolution.

Entities form a forest: an Event belongs to a Venue, a Venue to an
Organization, a SiteMap to an Event, and so on. The engine only reads these
links through a ``HierarchySource``; the owning domain maintains them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from entity_authz.shared.exceptions import DependencyUnavailableError

from .audit import AuditAction, AuditEvent, AuditSink, emit
from .models import EntityRef, EntityType
from .repository import call_dependency

logger = logging.getLogger(__name__)


class HierarchySource(ABC):
    """Parent lookup for a single entity."""

    @abstractmethod
    async def get_parent(
        self, entity_type: EntityType, entity_id: str
    ) -> Optional[EntityRef]:
        """Return the direct parent, or None for roots and unknown entities."""


class InMemoryHierarchySource(HierarchySource):
    """Parent links held in a dictionary, for local wiring and tests."""

    def __init__(self) -> None:
        self._parents: dict[EntityRef, EntityRef] = {}

    def link(
        self,
        child_type: EntityType | str,
        child_id: str,
        parent_type: EntityType | str,
        parent_id: str,
    ) -> None:
        self._parents[EntityRef.of(child_type, child_id)] = EntityRef.of(
            parent_type, parent_id
        )

    def unlink(self, child_type: EntityType | str, child_id: str) -> None:
        self._parents.pop(EntityRef.of(child_type, child_id), None)

    async def get_parent(
        self, entity_type: EntityType, entity_id: str
    ) -> Optional[EntityRef]:
        return self._parents.get(EntityRef(entity_type=entity_type, entity_id=entity_id))


class HierarchyResolver:
    """
    Produces the ordered ancestor chain of an entity, nearest first.

    The walk keeps a visited set. A revisited node means the relationship
    data contains a cycle: the walk stops, the partial chain is returned and
    a ``cycle_detected`` event is emitted so operators can repair the data.
    A chain longer than ``max_depth`` is cut off the same way and reported as
    ``hierarchy_truncated``.

    ``timeout`` bounds each parent lookup; ``walk_timeout`` bounds the whole
    walk, so a deep chain of slow lookups still fails within one budget.
    """

    def __init__(
        self,
        source: HierarchySource,
        *,
        timeout: float,
        max_depth: int,
        walk_timeout: Optional[float] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.source = source
        self.timeout = timeout
        self.max_depth = max_depth
        self.walk_timeout = walk_timeout
        self.audit_sink = audit_sink

    async def ancestor_chain(
        self, entity_type: EntityType, entity_id: str
    ) -> list[EntityRef]:
        """
        Walk parent links up to the root.

        Args:
            entity_type: Type of the starting entity
            entity_id: Id of the starting entity

        Returns:
            Ancestors nearest first; empty for roots and unknown entities

        Raises:
            DependencyUnavailableError: If the hierarchy source fails or the
                walk runs out of time
        """
        return [ref async for ref in self.iter_ancestors(entity_type, entity_id)]

    async def iter_ancestors(
        self, entity_type: EntityType, entity_id: str
    ) -> AsyncIterator[EntityRef]:
        """Lazy form of ``ancestor_chain``; callers may stop early."""
        start = EntityRef(entity_type=entity_type, entity_id=entity_id)
        visited: set[EntityRef] = {start}
        chain: list[EntityRef] = []
        current = start

        loop = asyncio.get_running_loop()
        deadline = None if self.walk_timeout is None else loop.time() + self.walk_timeout

        while True:
            budget = self.timeout
            if deadline is not None:
                budget = min(budget, deadline - loop.time())
                if budget <= 0:
                    raise DependencyUnavailableError(
                        f"Hierarchy walk from {start} exceeded {self.walk_timeout}s "
                        f"after {len(chain)} ancestors"
                    )

            parent = await call_dependency(
                self.source.get_parent(current.entity_type, current.entity_id),
                budget,
                f"Hierarchy lookup for {current}",
            )
            if parent is None:
                return

            if parent in visited:
                self._report_cycle(start, parent, chain)
                return

            if len(chain) >= self.max_depth:
                self._report_truncated(start, parent, chain)
                return

            visited.add(parent)
            chain.append(parent)
            yield parent
            current = parent

    def _report_cycle(
        self, start: EntityRef, revisited: EntityRef, chain: list[EntityRef]
    ) -> None:
        logger.warning(
            f"Entity hierarchy cycle detected from {start} at {revisited}; "
            f"using partial chain of {len(chain)} ancestors"
        )
        emit(
            self.audit_sink,
            AuditEvent(
                action=AuditAction.CYCLE_DETECTED,
                entity_type=start.entity_type.value,
                entity_id=start.entity_id,
                details={
                    "revisited": str(revisited),
                    "chain": [str(ref) for ref in chain],
                },
            ),
        )

    def _report_truncated(
        self, start: EntityRef, next_ancestor: EntityRef, chain: list[EntityRef]
    ) -> None:
        logger.warning(
            f"Ancestor chain of {start} exceeds {self.max_depth} levels; truncating"
        )
        emit(
            self.audit_sink,
            AuditEvent(
                action=AuditAction.HIERARCHY_TRUNCATED,
                entity_type=start.entity_type.value,
                entity_id=start.entity_id,
                details={
                    "max_depth": self.max_depth,
                    "next_ancestor": str(next_ancestor),
                    "chain": [str(ref) for ref in chain],
                },
            ),
        )
