"""
Tests for shared permissions models (EntityType, EntityRef, Assignment).
"""

from datetime import timedelta, timezone

import pytest

from entity_authz.shared.exceptions import InvalidEntityTypeError
from entity_authz.shared.permissions.models import (
    DecisionReason,
    EntityRef,
    EntityType,
    PermissionDecision,
)
from tests.fixtures.authz_fixtures import NOW, make_assignment


class TestEntityTypeParse:
    """Test normalization of loosely spelled entity types."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("event", EntityType.EVENT),
            ("Event", EntityType.EVENT),
            ("EVENT", EntityType.EVENT),
            ("Venue", EntityType.VENUE),
            ("PerformanceAgency", EntityType.PERFORMANCE_AGENCY),
            ("StaffingAgency", EntityType.STAFFING_AGENCY),
            ("site_map", EntityType.SITE_MAP),
            ("site-map", EntityType.SITE_MAP),
            ("SiteMap", EntityType.SITE_MAP),
            (" organization ", EntityType.ORGANIZATION),
        ],
    )
    def test_parse_accepts_legacy_spellings(self, raw, expected):
        """Test that historical spellings map onto enum members."""
        assert EntityType.parse(raw) is expected

    def test_parse_returns_members_unchanged(self):
        assert EntityType.parse(EntityType.TOUR) is EntityType.TOUR

    @pytest.mark.parametrize("raw", ["", "   ", "stadium", "Eventt", None, 42])
    def test_parse_rejects_unknown_types(self, raw):
        """Test that unknown entity types raise instead of passing through."""
        with pytest.raises(InvalidEntityTypeError):
            EntityType.parse(raw)


class TestEntityRef:
    def test_of_normalizes_type(self):
        ref = EntityRef.of("Venue", "V1")

        assert ref.entity_type == EntityType.VENUE
        assert ref.entity_id == "V1"
        assert str(ref) == "venue:V1"

    def test_refs_are_hashable_and_compare_by_value(self):
        assert EntityRef.of("event", "E1") == EntityRef.of(EntityType.EVENT, "E1")
        assert len({EntityRef.of("event", "E1"), EntityRef.of("Event", "E1")}) == 1


class TestAssignment:
    """Test assignment activity and scope helpers."""

    def test_assignment_without_expiry_is_active(self):
        assignment = make_assignment("u", "event_staff", EntityType.EVENT, "E1")
        assert assignment.is_active(NOW) is True

    def test_assignment_expiring_in_future_is_active(self):
        assignment = make_assignment(
            "u", "event_staff", EntityType.EVENT, "E1", expires_at=NOW + timedelta(seconds=1)
        )
        assert assignment.is_active(NOW) is True

    def test_assignment_expiring_now_is_inactive(self):
        """Test that the expiry instant itself already counts as expired."""
        assignment = make_assignment(
            "u", "event_staff", EntityType.EVENT, "E1", expires_at=NOW
        )
        assert assignment.is_active(NOW) is False

    def test_assignment_expired_one_second_ago_is_inactive(self):
        assignment = make_assignment(
            "u", "event_staff", EntityType.EVENT, "E1", expires_at=NOW - timedelta(seconds=1)
        )
        assert assignment.is_active(NOW) is False

    def test_naive_timestamps_are_read_as_utc(self):
        assignment = make_assignment(
            "u", "event_staff", EntityType.EVENT, "E1",
            granted_at=NOW.replace(tzinfo=None),
            expires_at=(NOW + timedelta(seconds=1)).replace(tzinfo=None),
        )

        assert assignment.granted_at == NOW
        assert assignment.expires_at.tzinfo is not None
        assert assignment.is_active(NOW) is True
        assert assignment.is_active(NOW + timedelta(seconds=1)) is False

    def test_aware_timestamps_keep_their_offset(self):
        offset = timezone(timedelta(hours=11))
        assignment = make_assignment(
            "u", "event_staff", EntityType.EVENT, "E1",
            expires_at=NOW.astimezone(offset),
        )

        assert assignment.expires_at.utcoffset() == timedelta(hours=11)
        assert assignment.is_active(NOW) is False

    def test_global_assignment_has_no_entity(self):
        assignment = make_assignment("u", "super_admin")

        assert assignment.is_global is True
        assert assignment.entity is None

    def test_entity_assignment_matches_its_entity_only(self):
        assignment = make_assignment("u", "venue_manager", EntityType.VENUE, "V1")

        assert assignment.is_global is False
        assert assignment.entity == EntityRef.of("venue", "V1")
        assert assignment.matches(EntityRef.of("venue", "V1")) is True
        assert assignment.matches(EntityRef.of("venue", "V2")) is False
        assert assignment.matches(EntityRef.of("event", "V1")) is False


class TestPermissionDecision:
    def test_only_dependency_failures_are_degraded(self):
        degraded = PermissionDecision(
            allowed=False,
            reason=DecisionReason.DEPENDENCY_UNAVAILABLE,
            permission="view_event",
        )
        denied = PermissionDecision(
            allowed=False, reason=DecisionReason.DENIED, permission="view_event"
        )

        assert degraded.degraded is True
        assert denied.degraded is False
