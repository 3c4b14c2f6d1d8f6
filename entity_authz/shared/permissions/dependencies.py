from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, status

from entity_authz.core.dependencies import get_engine, get_principal_id
from entity_authz.shared.exceptions import DependencyUnavailableError

from .catalog import Permission
from .models import EntityType
from .services import PermissionResolutionEngine


def require_entity_permission(
    permission: Permission | str,
    entity_type: EntityType | str,
) -> Callable[..., Awaitable[str]]:
    """
    Dependency factory for entity-scoped authorization.

    Creates a dependency that validates the caller holds ``permission`` on
    the entity named by the ``entity_id`` path parameter.

    Args:
        permission: The permission required to access the endpoint
        entity_type: Type of the entity the route operates on

    Returns:
        Async dependency function that validates permission and returns the
        principal id
    """
    entity_type = EntityType.parse(entity_type)
    permission_key = (
        permission.value if isinstance(permission, Permission) else str(permission)
    )

    async def check_permission(
        entity_id: str,
        principal_id: str = Depends(get_principal_id),
        engine: PermissionResolutionEngine = Depends(get_engine),
    ) -> str:
        """
        Validate the principal has the required permission on the entity.

        Raises:
            HTTPException: 403 if denied, 503 if the decision was degraded
        """
        decision = await engine.check_permission(
            principal_id, entity_type, entity_id, permission_key
        )
        if decision.allowed:
            return principal_id

        if decision.degraded:
            raise DependencyUnavailableError(
                "Authorization is temporarily unavailable"
            )

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient permissions: {decision.permission} required",
        )

    return check_permission
