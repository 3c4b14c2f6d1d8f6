from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entity_authz.core.container import AuthzContainer, build_container
from entity_authz.core.settings import configure_logging, settings
from entity_authz.domains.assignments.routes import router as assignments_router
from entity_authz.domains.roles.routes import router as roles_router
from entity_authz.shared.permissions.hierarchy import InMemoryHierarchySource
from entity_authz.shared.permissions.repository import InMemoryAssignmentRepository


def create_app(container: Optional[AuthzContainer] = None) -> FastAPI:
    """
    Build the authorization API around a wired container.

    Without a container the app runs on in-memory storage, which is only
    useful for local development.
    """
    configure_logging(settings.AUTHZ_LOG_LEVEL)

    if container is None:
        container = build_container(
            InMemoryAssignmentRepository(), InMemoryHierarchySource()
        )

    app = FastAPI(
        title="Entity Authorization API",
        description="Entity-scoped role and permission resolution",
        version="0.1.0",
    )
    app.state.authz = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(roles_router, prefix="/api/v1")
    app.include_router(assignments_router, prefix="/api/v1")

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"message": "Entity Authorization API is running"}

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
