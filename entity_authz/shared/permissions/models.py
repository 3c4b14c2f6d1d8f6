import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from entity_authz.shared.exceptions import InvalidEntityTypeError

_ENTITY_TYPE_SEPARATORS = re.compile(r"[\s\-]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read a naive timestamp as UTC; aware timestamps pass through."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EntityType(str, Enum):
    """
    Closed set of entity types that can carry scoped role assignments.

    Route handlers historically passed these around as loose strings
    ('Event', 'PerformanceAgency', 'site_map', ...). ``parse`` accepts those
    spellings and maps them onto a member.
    """

    ORGANIZATION = "organization"
    VENUE = "venue"
    EVENT = "event"
    TOUR = "tour"
    ARTIST = "artist"
    PERFORMANCE_AGENCY = "performance_agency"
    STAFFING_AGENCY = "staffing_agency"
    SITE_MAP = "site_map"

    @classmethod
    def parse(cls, value: "EntityType | str") -> "EntityType":
        """
        Normalize a loosely spelled entity type.

        Raises:
            InvalidEntityTypeError: If the value names no known entity type
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise InvalidEntityTypeError(f"Unknown entity type: {value!r}")

        candidate = _CAMEL_BOUNDARY.sub("_", value.strip())
        candidate = _ENTITY_TYPE_SEPARATORS.sub("_", candidate).lower()
        try:
            return cls(candidate)
        except ValueError:
            raise InvalidEntityTypeError(f"Unknown entity type: {value!r}")


class ScopeType(str, Enum):
    """Where a role applies."""

    GLOBAL = "global"
    ENTITY = "entity"


class EntityRef(BaseModel):
    """A single entity instance, e.g. Venue ``v-123``."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str

    @classmethod
    def of(cls, entity_type: EntityType | str, entity_id: str) -> "EntityRef":
        return cls(entity_type=EntityType.parse(entity_type), entity_id=str(entity_id))

    def __str__(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"


class PermissionDefinition(BaseModel):
    """Immutable catalog entry."""

    model_config = ConfigDict(frozen=True)

    key: str
    inheritable: bool = True
    description: str = ""


class Role(BaseModel):
    """A named bundle of permissions with a fixed scope type."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    scope_type: ScopeType
    is_system: bool = False
    permissions: frozenset[str] = frozenset()
    description: str = ""

    @property
    def is_global(self) -> bool:
        return self.scope_type == ScopeType.GLOBAL


class Assignment(BaseModel):
    """
    A grant of one role to one user, optionally scoped to one entity.

    Assignments are never physically deleted by the engine: revocation sets
    ``expires_at`` so the row stays available for audit.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    role_id: str
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: datetime
    expires_at: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("granted_at", "expires_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def entity(self) -> Optional[EntityRef]:
        if self.entity_type is None or self.entity_id is None:
            return None
        return EntityRef(entity_type=self.entity_type, entity_id=self.entity_id)

    @property
    def is_global(self) -> bool:
        return self.entity_type is None and self.entity_id is None

    def is_active(self, now: datetime) -> bool:
        """Active iff it has no expiry or the expiry is strictly in the future."""
        return self.expires_at is None or self.expires_at > now

    def matches(self, entity: EntityRef) -> bool:
        return self.entity_type == entity.entity_type and self.entity_id == entity.entity_id


class DecisionReason(str, Enum):
    """Why a permission check resolved the way it did."""

    SYSTEM_OVERRIDE = "system_override"
    GRANTED = "granted"
    INHERITED = "inherited"
    DENIED = "denied"
    UNKNOWN_PERMISSION = "unknown_permission"
    INVALID_ENTITY = "invalid_entity"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class PermissionDecision(BaseModel):
    """Outcome of a single permission check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: DecisionReason
    permission: str
    granted_at: Optional[EntityRef] = None

    @property
    def degraded(self) -> bool:
        """True when the deny came from a failing dependency, not from policy."""
        return self.reason == DecisionReason.DEPENDENCY_UNAVAILABLE


class PermissionValidationResult(BaseModel):
    """Result of checking several permissions at once."""

    is_valid: bool
    required: list[str]
    missing: list[str]
    reason: Optional[str] = None


class RevokeResult(BaseModel):
    """Result of a revoke call."""

    assignment: Assignment
    revoked: bool
    message: str
