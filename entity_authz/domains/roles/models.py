from typing import List

from pydantic import BaseModel, Field

from entity_authz.shared.permissions.models import Role, ScopeType


class RoleResponse(BaseModel):
    id: str
    name: str
    scope_type: ScopeType
    is_system: bool
    permissions: List[str]
    description: str = ""

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            scope_type=role.scope_type,
            is_system=role.is_system,
            permissions=sorted(role.permissions),
            description=role.description,
        )


class RoleListResponse(BaseModel):
    roles: List[RoleResponse]


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scope_type: ScopeType
    permissions: List[str] = Field(default_factory=list)
    description: str = ""


class RolePermissionsUpdateRequest(BaseModel):
    permissions: List[str]
