"""
Tests for AssignmentManager (grant, refresh, revoke and listing).
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from entity_authz.domains.assignments.service import KeyedLocks
from entity_authz.shared.exceptions import (
    AssignmentNotFoundError,
    DependencyUnavailableError,
    InvalidAssignmentError,
    InvalidEntityTypeError,
    InvalidScopeError,
    RoleNotFoundError,
    UnauthorizedError,
)
from entity_authz.shared.permissions.audit import AuditAction
from entity_authz.shared.permissions.catalog import Permission
from entity_authz.shared.permissions.models import EntityType
from tests.fixtures.authz_fixtures import (
    NOW,
    OUTSIDER,
    SUPER_ADMIN,
    VENUE_MANAGER,
    make_assignment,
    seed,
)


class TestAssignRole:
    """Test granting roles."""

    @pytest.mark.asyncio
    async def test_super_admin_grants_entity_role(self, manager, repository, audit_sink):
        # Act
        assignment = await manager.assign_role(
            SUPER_ADMIN, VENUE_MANAGER, "venue_manager", "Venue", "V1", notes="Summer season"
        )

        # Assert
        assert assignment.user_id == VENUE_MANAGER
        assert assignment.role_id == "venue_manager"
        assert assignment.entity_type == EntityType.VENUE
        assert assignment.entity_id == "V1"
        assert assignment.granted_by == SUPER_ADMIN
        assert assignment.granted_at == NOW
        assert assignment.notes == "Summer season"
        assert await repository.get(assignment.id) == assignment

        events = audit_sink.of_action(AuditAction.ROLE_GRANTED)
        assert len(events) == 1
        assert events[0].actor_id == SUPER_ADMIN
        assert events[0].target_user_id == VENUE_MANAGER
        assert events[0].role_name == "venue_manager"
        assert events[0].entity_type == "venue"

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, manager, audit_sink):
        """Test that granting the same role twice leaves one active assignment."""
        first = await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        second = await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")

        active = await manager.list_assignments(EntityType.VENUE, "V1")
        assert len(active) == 1
        assert second.id == first.id
        assert len(audit_sink.of_action(AuditAction.ROLE_GRANTED)) == 1
        assert len(audit_sink.of_action(AuditAction.ROLE_REFRESHED)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_grants_create_one_row(self, manager):
        await asyncio.gather(
            *[
                manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
                for _ in range(5)
            ]
        )

        assert len(await manager.list_assignments(EntityType.VENUE, "V1")) == 1
        assert len(manager._locks) == 0

    @pytest.mark.asyncio
    async def test_refresh_updates_expiry_and_keeps_notes(self, manager, clock):
        first = await manager.assign_role(
            SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1",
            expires_at=NOW + timedelta(days=1), notes="Trial",
        )
        clock.advance(hours=1)

        refreshed = await manager.assign_role(
            SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1",
            expires_at=NOW + timedelta(days=30),
        )

        assert refreshed.id == first.id
        assert refreshed.expires_at == NOW + timedelta(days=30)
        assert refreshed.granted_at == NOW + timedelta(hours=1)
        assert refreshed.notes == "Trial"

    @pytest.mark.asyncio
    async def test_expired_assignment_is_not_refreshed(self, manager, repository):
        """Test that a lapsed grant is kept for audit and a new row is written."""
        lapsed = make_assignment(
            VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1",
            expires_at=NOW - timedelta(days=1),
        )
        await seed(repository, lapsed)

        assignment = await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")

        assert assignment.id != lapsed.id
        assert len(await manager.list_assignments(EntityType.VENUE, "V1", include_inactive=True)) == 2

    @pytest.mark.asyncio
    async def test_same_role_on_different_entities(self, manager):
        await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V2")

        assert len(await manager.list_user_assignments(VENUE_MANAGER)) == 2

    @pytest.mark.asyncio
    async def test_unauthorized_assigner_writes_nothing(self, manager, repository, audit_sink):
        """Test an assigner without manage_roles on the venue is rejected."""
        with pytest.raises(UnauthorizedError) as exc_info:
            await manager.assign_role(OUTSIDER, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")

        assert exc_info.value.status_code == 403
        assert await repository.find_for_entity(EntityType.VENUE, "V1") == []
        assert audit_sink.of_action(AuditAction.ROLE_GRANTED) == []

    @pytest.mark.asyncio
    async def test_venue_manager_cannot_grant_roles(self, manager, repository):
        await seed(repository, make_assignment(VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1"))

        with pytest.raises(UnauthorizedError):
            await manager.assign_role(VENUE_MANAGER, OUTSIDER, "event_staff", EntityType.EVENT, "E1")

    @pytest.mark.asyncio
    async def test_manage_roles_is_inherited_by_child_entities(self, manager, repository):
        """Test a venue owner granting roles on the venue and on its events."""
        await seed(repository, make_assignment("owner-1", "venue_owner", EntityType.VENUE, "V1"))

        on_venue = await manager.assign_role("owner-1", VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        on_event = await manager.assign_role("owner-1", OUTSIDER, "event_staff", EntityType.EVENT, "E1")

        assert on_venue.granted_by == "owner-1"
        assert on_event.entity_id == "E1"
        with pytest.raises(UnauthorizedError):
            await manager.assign_role("owner-1", OUTSIDER, "event_staff", EntityType.EVENT, "E9")

    @pytest.mark.asyncio
    async def test_global_roles_require_system_user(self, manager, repository):
        await seed(repository, make_assignment("owner-1", "organization_owner", EntityType.ORGANIZATION, "O1"))

        with pytest.raises(UnauthorizedError):
            await manager.assign_role("owner-1", OUTSIDER, "platform_support")

        assignment = await manager.assign_role(SUPER_ADMIN, OUTSIDER, "platform_support")
        assert assignment.is_global is True

    @pytest.mark.asyncio
    async def test_grant_takes_effect_immediately(self, manager, engine):
        """Test a cached deny is dropped when the role is granted."""
        assert await engine.has_permission(VENUE_MANAGER, EntityType.EVENT, "E1", Permission.EDIT_EVENT_LOGISTICS) is False

        await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")

        assert await engine.has_permission(VENUE_MANAGER, EntityType.EVENT, "E1", Permission.EDIT_EVENT_LOGISTICS) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "role_name, entity_type, entity_id",
        [
            ("platform_support", EntityType.VENUE, "V1"),
            ("venue_manager", None, None),
            ("venue_manager", EntityType.VENUE, None),
            ("venue_manager", None, "V1"),
        ],
    )
    async def test_scope_mismatch(self, manager, repository, role_name, entity_type, entity_id):
        with pytest.raises(InvalidScopeError):
            await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, role_name, entity_type, entity_id)

        assert await repository.find_for_user(VENUE_MANAGER) == []

    @pytest.mark.asyncio
    async def test_unknown_role(self, manager):
        with pytest.raises(RoleNotFoundError):
            await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "roadie", EntityType.VENUE, "V1")

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, manager):
        with pytest.raises(InvalidEntityTypeError):
            await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", "stadium", "S1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=-1)])
    async def test_expiry_must_be_in_future(self, manager, offset):
        with pytest.raises(InvalidAssignmentError):
            await manager.assign_role(
                SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1",
                expires_at=NOW + offset,
            )

    @pytest.mark.asyncio
    async def test_naive_expiry_is_read_as_utc(self, manager, engine):
        assignment = await manager.assign_role(
            SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1",
            expires_at=(NOW + timedelta(days=1)).replace(tzinfo=None),
        )

        assert assignment.expires_at == NOW + timedelta(days=1)
        assert assignment.expires_at.tzinfo is not None
        assert await engine.has_permission(VENUE_MANAGER, EntityType.VENUE, "V1", Permission.VIEW_VENUE) is True

        with pytest.raises(InvalidAssignmentError):
            await manager.assign_role(
                SUPER_ADMIN, OUTSIDER, "venue_manager", EntityType.VENUE, "V1",
                expires_at=(NOW - timedelta(minutes=1)).replace(tzinfo=None),
            )

    @pytest.mark.asyncio
    async def test_repository_failure_surfaces_as_unavailable(self, manager, repository):
        with patch.object(repository, "insert", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(DependencyUnavailableError) as exc_info:
                await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_unverifiable_authority_surfaces_as_unavailable(self, manager, repository):
        """Test the assigner check fails closed with 503, not 403."""
        with patch.object(
            repository, "find_active_assignments", AsyncMock(side_effect=ConnectionError())
        ):
            with pytest.raises(DependencyUnavailableError):
                await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")


class TestRevokeRole:
    """Test revoking assignments."""

    @pytest.mark.asyncio
    async def test_revoke_marks_assignment_expired(self, manager, engine, audit_sink):
        assignment = await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        assert await engine.has_permission(VENUE_MANAGER, EntityType.EVENT, "E1", Permission.VIEW_EVENT) is True

        result = await manager.revoke_role(SUPER_ADMIN, assignment.id)

        assert result.revoked is True
        assert result.assignment.expires_at == NOW
        assert await engine.has_permission(VENUE_MANAGER, EntityType.EVENT, "E1", Permission.VIEW_EVENT) is False
        assert await manager.list_assignments(EntityType.VENUE, "V1") == []
        assert len(await manager.list_assignments(EntityType.VENUE, "V1", include_inactive=True)) == 1
        assert len(audit_sink.of_action(AuditAction.ROLE_REVOKED)) == 1

    @pytest.mark.asyncio
    async def test_revoking_inactive_assignment_is_a_no_op(self, manager, audit_sink):
        assignment = await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        await manager.revoke_role(SUPER_ADMIN, assignment.id)

        result = await manager.revoke_role(SUPER_ADMIN, assignment.id)

        assert result.revoked is False
        assert result.message == "Assignment is already inactive"
        assert len(audit_sink.of_action(AuditAction.ROLE_REVOKED)) == 1

    @pytest.mark.asyncio
    async def test_revoke_unknown_assignment(self, manager):
        with pytest.raises(AssignmentNotFoundError):
            await manager.revoke_role(SUPER_ADMIN, "no-such-assignment")

    @pytest.mark.asyncio
    async def test_revoke_requires_authority(self, manager, repository):
        assignment = make_assignment(VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        await seed(repository, assignment)

        with pytest.raises(UnauthorizedError):
            await manager.revoke_role(VENUE_MANAGER, assignment.id)

        assert (await repository.get(assignment.id)).expires_at is None

    @pytest.mark.asyncio
    async def test_global_revoke_requires_system_user(self, manager, repository):
        support = make_assignment("support-1", "platform_support")
        await seed(repository, support, make_assignment("owner-1", "venue_owner", EntityType.VENUE, "V1"))

        with pytest.raises(UnauthorizedError):
            await manager.revoke_role("owner-1", support.id)

        result = await manager.revoke_role(SUPER_ADMIN, support.id)
        assert result.revoked is True


class TestListing:
    """Test assignment listing and role membership queries."""

    @pytest.mark.asyncio
    async def test_list_assignments_newest_first(self, manager, clock):
        await manager.assign_role(SUPER_ADMIN, "u-a", "event_staff", EntityType.EVENT, "E1")
        clock.advance(minutes=5)
        await manager.assign_role(SUPER_ADMIN, "u-b", "event_staff", EntityType.EVENT, "E1")

        listed = await manager.list_assignments(EntityType.EVENT, "E1")

        assert [a.user_id for a in listed] == ["u-b", "u-a"]

    @pytest.mark.asyncio
    async def test_get_users_with_role(self, manager):
        await manager.assign_role(SUPER_ADMIN, "u-b", "event_staff", EntityType.EVENT, "E1")
        await manager.assign_role(SUPER_ADMIN, "u-a", "event_staff", EntityType.EVENT, "E1")
        await manager.assign_role(SUPER_ADMIN, "u-c", "event_staff", EntityType.EVENT, "E2")
        revoked = await manager.assign_role(SUPER_ADMIN, "u-d", "event_staff", EntityType.EVENT, "E1")
        await manager.revoke_role(SUPER_ADMIN, revoked.id)

        assert await manager.get_users_with_role("event_staff", EntityType.EVENT, "E1") == ["u-a", "u-b"]
        assert await manager.get_users_with_role("super_admin") == [SUPER_ADMIN]


class TestConcurrentAssignAndRevoke:
    """Test a grant and a revoke racing on the same (user, role, entity)."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("revoke_first", [True, False])
    async def test_outcome_matches_stored_state(self, manager, engine, revoke_first):
        original = await manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        assert await engine.has_permission(VENUE_MANAGER, EntityType.EVENT, "E1", Permission.VIEW_EVENT) is True

        grant = manager.assign_role(SUPER_ADMIN, VENUE_MANAGER, "venue_manager", EntityType.VENUE, "V1")
        revoke = manager.revoke_role(SUPER_ADMIN, original.id)

        # Act
        await asyncio.gather(*((revoke, grant) if revoke_first else (grant, revoke)))

        # Assert
        active = await manager.list_assignments(EntityType.VENUE, "V1")
        assert len(active) <= 1
        assert await engine.has_permission(
            VENUE_MANAGER, EntityType.EVENT, "E1", Permission.VIEW_EVENT
        ) is bool(active)
        assert await engine.get_capabilities(VENUE_MANAGER, EntityType.VENUE, "V1") == (
            engine.registry.get_role("venue_manager").permissions if active else frozenset()
        )
        assert len(manager._locks) == 0


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_locks_serialize_same_key(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold(("u1", "venue", "V1")):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")

        assert len(locks) == 0
