from fastapi import APIRouter, Depends, Query, status

from entity_authz.core.dependencies import (
    get_assignment_manager,
    get_engine,
    get_principal_id,
)
from entity_authz.domains.assignments.models import (
    AssignmentListResponse,
    AssignmentResponse,
    AssignRoleRequest,
    CapabilitiesResponse,
    RevokeResponse,
)
from entity_authz.domains.assignments.service import AssignmentManager
from entity_authz.shared.permissions.models import Assignment, EntityRef, EntityType
from entity_authz.shared.permissions.services import PermissionResolutionEngine

router = APIRouter(tags=["Role Assignments"])


def _to_response(manager: AssignmentManager, assignment: Assignment) -> AssignmentResponse:
    role = manager.registry.get_role_by_id(assignment.role_id)
    return AssignmentResponse.from_assignment(
        assignment, role.name if role else None, manager.clock()
    )


@router.get(
    "/entities/{entity_type}/{entity_id}/assignments",
    response_model=AssignmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List role assignments on an entity",
)
async def list_entity_assignments(
    entity_type: str,
    entity_id: str,
    include_inactive: bool = Query(False, description="Include expired/revoked rows"),
    principal_id: str = Depends(get_principal_id),
    manager: AssignmentManager = Depends(get_assignment_manager),
) -> AssignmentListResponse:
    """
    List who holds which role on an entity.

    Requires the manage-roles permission on the entity.
    """
    entity = EntityRef.of(entity_type, entity_id)
    await manager.ensure_can_manage(principal_id, entity, action="list")

    assignments = await manager.list_assignments(
        entity.entity_type, entity.entity_id, include_inactive=include_inactive
    )
    return AssignmentListResponse(
        assignments=[_to_response(manager, a) for a in assignments],
        total=len(assignments),
    )


@router.post(
    "/entities/{entity_type}/{entity_id}/assignments",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Grant an entity-scoped role",
)
async def assign_entity_role(
    entity_type: str,
    entity_id: str,
    request: AssignRoleRequest,
    principal_id: str = Depends(get_principal_id),
    manager: AssignmentManager = Depends(get_assignment_manager),
) -> AssignmentResponse:
    """
    Grant a role on one entity.

    Granting a role the user already holds refreshes the existing assignment.
    """
    assignment = await manager.assign_role(
        principal_id,
        request.user_id,
        request.role_name,
        entity_type,
        entity_id,
        expires_at=request.expires_at,
        notes=request.notes,
    )
    return _to_response(manager, assignment)


@router.post(
    "/assignments/global",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Grant a global role",
)
async def assign_global_role(
    request: AssignRoleRequest,
    principal_id: str = Depends(get_principal_id),
    manager: AssignmentManager = Depends(get_assignment_manager),
) -> AssignmentResponse:
    """Grant a platform-wide role. Only system users may do this."""
    assignment = await manager.assign_role(
        principal_id,
        request.user_id,
        request.role_name,
        expires_at=request.expires_at,
        notes=request.notes,
    )
    return _to_response(manager, assignment)


@router.delete(
    "/assignments/{assignment_id}",
    response_model=RevokeResponse,
    status_code=status.HTTP_200_OK,
    summary="Revoke a role assignment",
)
async def revoke_assignment(
    assignment_id: str,
    principal_id: str = Depends(get_principal_id),
    manager: AssignmentManager = Depends(get_assignment_manager),
) -> RevokeResponse:
    """Mark an assignment expired. The row is kept for audit."""
    result = await manager.revoke_role(principal_id, assignment_id)
    return RevokeResponse(
        message=result.message,
        revoked=result.revoked,
        assignment=_to_response(manager, result.assignment),
    )


@router.get(
    "/entities/{entity_type}/{entity_id}/capabilities",
    response_model=CapabilitiesResponse,
    status_code=status.HTTP_200_OK,
    summary="List the caller's permissions on an entity",
)
async def get_my_capabilities(
    entity_type: str,
    entity_id: str,
    principal_id: str = Depends(get_principal_id),
    engine: PermissionResolutionEngine = Depends(get_engine),
) -> CapabilitiesResponse:
    """Permissions the caller holds on the entity, for driving UI affordances."""
    entity = EntityType.parse(entity_type)
    capabilities = await engine.get_capabilities(principal_id, entity, entity_id)
    return CapabilitiesResponse(
        entity_type=entity.value,
        entity_id=entity_id,
        permissions=sorted(capabilities),
    )
