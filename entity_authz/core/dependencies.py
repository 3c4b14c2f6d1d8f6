# entity_authz/core/dependencies.py
from typing import TYPE_CHECKING

from fastapi import Depends, Request

from entity_authz.shared.exceptions import MissingPrincipalError

if TYPE_CHECKING:
    from entity_authz.core.container import AuthzContainer
    from entity_authz.domains.assignments.service import AssignmentManager
    from entity_authz.domains.roles.service import RoleService
    from entity_authz.shared.permissions.services import PermissionResolutionEngine


def get_container(request: Request) -> "AuthzContainer":
    """Container installed on the application by ``create_app``."""
    return request.app.state.authz


def get_engine(
    container: "AuthzContainer" = Depends(get_container),
) -> "PermissionResolutionEngine":
    return container.engine


def get_assignment_manager(
    container: "AuthzContainer" = Depends(get_container),
) -> "AssignmentManager":
    return container.assignments


def get_role_service(
    container: "AuthzContainer" = Depends(get_container),
) -> "RoleService":
    return container.roles


def get_principal_id(request: Request) -> str:
    """
    Principal id of the caller.

    Authentication happens upstream: the host's auth middleware verifies the
    session and stores the user id on ``request.state.principal_id``.
    """
    principal_id = getattr(request.state, "principal_id", None)
    if not principal_id:
        raise MissingPrincipalError()
    return str(principal_id)
