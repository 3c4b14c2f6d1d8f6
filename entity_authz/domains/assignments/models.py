from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from entity_authz.shared.permissions.models import Assignment, as_utc


class AssignRoleRequest(BaseModel):
    """Request body for granting a role."""

    user_id: str = Field(..., min_length=1, description="User receiving the role")
    role_name: str = Field(..., min_length=1)
    expires_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("expires_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are read as UTC."""
        return as_utc(value)


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    role_name: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    granted_by: Optional[str] = None
    granted_at: str
    expires_at: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool

    @classmethod
    def from_assignment(
        cls, assignment: Assignment, role_name: Optional[str], now: datetime
    ) -> "AssignmentResponse":
        return cls(
            id=assignment.id,
            user_id=assignment.user_id,
            role_id=assignment.role_id,
            role_name=role_name,
            entity_type=(
                assignment.entity_type.value if assignment.entity_type else None
            ),
            entity_id=assignment.entity_id,
            granted_by=assignment.granted_by,
            granted_at=assignment.granted_at.isoformat(),
            expires_at=(
                assignment.expires_at.isoformat() if assignment.expires_at else None
            ),
            notes=assignment.notes,
            is_active=assignment.is_active(now),
        )


class AssignmentListResponse(BaseModel):
    assignments: List[AssignmentResponse]
    total: int


class RevokeResponse(BaseModel):
    message: str
    revoked: bool
    assignment: AssignmentResponse


class CapabilitiesResponse(BaseModel):
    entity_type: str
    entity_id: str
    permissions: List[str]
