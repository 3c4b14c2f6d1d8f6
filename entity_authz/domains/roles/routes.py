from fastapi import APIRouter, Depends, status

from entity_authz.core.dependencies import get_principal_id, get_role_service
from entity_authz.domains.roles.models import (
    RoleCreateRequest,
    RoleListResponse,
    RolePermissionsUpdateRequest,
    RoleResponse,
)
from entity_authz.domains.roles.service import RoleService

router = APIRouter(prefix="/roles", tags=["Roles"])


@router.get(
    "",
    response_model=RoleListResponse,
    status_code=status.HTTP_200_OK,
    summary="List roles",
)
async def list_roles(
    principal_id: str = Depends(get_principal_id),
    service: RoleService = Depends(get_role_service),
) -> RoleListResponse:
    return RoleListResponse(
        roles=[RoleResponse.from_role(r) for r in service.list_roles()]
    )


@router.post(
    "",
    response_model=RoleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a role",
)
async def create_role(
    request: RoleCreateRequest,
    principal_id: str = Depends(get_principal_id),
    service: RoleService = Depends(get_role_service),
) -> RoleResponse:
    """Create a custom role. Requires a system role."""
    role = await service.create_role(
        principal_id,
        request.name,
        request.scope_type,
        request.permissions,
        request.description,
    )
    return RoleResponse.from_role(role)


@router.put(
    "/{role_name}/permissions",
    response_model=RoleResponse,
    status_code=status.HTTP_200_OK,
    summary="Replace a role's permissions",
)
async def update_role_permissions(
    role_name: str,
    request: RolePermissionsUpdateRequest,
    principal_id: str = Depends(get_principal_id),
    service: RoleService = Depends(get_role_service),
) -> RoleResponse:
    role = await service.update_role_permissions(
        principal_id, role_name, request.permissions
    )
    return RoleResponse.from_role(role)


@router.delete(
    "/{role_name}",
    response_model=RoleResponse,
    status_code=status.HTTP_200_OK,
    summary="Delete a custom role",
)
async def delete_role(
    role_name: str,
    principal_id: str = Depends(get_principal_id),
    service: RoleService = Depends(get_role_service),
) -> RoleResponse:
    role = await service.delete_role(principal_id, role_name)
    return RoleResponse.from_role(role)
