"""
Global pytest configuration and fixtures for the entity authorization test suite.
"""

from typing import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from entity_authz.core.container import AuthzContainer
from entity_authz.core.dependencies import get_principal_id
from entity_authz.main import create_app

# Import fixtures from fixture modules
from tests.fixtures.authz_fixtures import *  # noqa: F403, F401
from tests.fixtures.authz_fixtures import SUPER_ADMIN


@pytest.fixture
def app(container: AuthzContainer) -> FastAPI:
    """Application wired to the test container."""
    return create_app(container)


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """Test client acting as the super admin unless a test says otherwise."""
    app.dependency_overrides[get_principal_id] = lambda: SUPER_ADMIN
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
