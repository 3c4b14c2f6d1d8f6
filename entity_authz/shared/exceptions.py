# entity_authz/shared/exceptions.py
from fastapi import HTTPException, status


class BaseHTTPException(HTTPException):
    """
    Base for errors that carry their own HTTP status and default message.

    Subclasses set ``status_code`` and ``message`` as class attributes so
    service code can raise them directly and routes return them unchanged.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or type(self).message
        super().__init__(status_code=type(self).status_code, detail=self.message)

    def __str__(self) -> str:
        return self.message


# Authentication
class MissingPrincipalError(BaseHTTPException):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Missing authenticated principal"


# Authorization / configuration errors
class AuthorizationError(BaseHTTPException):
    """Base class for authorization engine errors surfaced to callers."""

    status_code = status.HTTP_400_BAD_REQUEST
    message = "Authorization request is invalid"


class InvalidScopeError(AuthorizationError):
    """Role scope type does not match the supplied entity context."""

    message = "Role scope does not match the supplied entity context"


class InvalidEntityTypeError(AuthorizationError):
    message = "Unknown entity type"


class InvalidAssignmentError(AuthorizationError):
    message = "Invalid role assignment"


class RoleNotFoundError(AuthorizationError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Role not found"


class PermissionNotFoundError(AuthorizationError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Permission not found"


class AssignmentNotFoundError(AuthorizationError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Role assignment not found"


class UnauthorizedError(AuthorizationError):
    """Acting user lacks the authority to grant or revoke in that scope."""

    status_code = status.HTTP_403_FORBIDDEN
    message = "Not authorized to manage roles in this scope"


class SystemRoleImmutableError(AuthorizationError):
    status_code = status.HTTP_409_CONFLICT
    message = "System roles cannot be modified"


class RoleConflictError(AuthorizationError):
    status_code = status.HTTP_409_CONFLICT
    message = "A role with this name already exists"


# Dependency errors
class DependencyUnavailableError(BaseHTTPException):
    """Assignment repository or hierarchy source failed or timed out."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    message = "Authorization dependency unavailable"
