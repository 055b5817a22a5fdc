import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.store.memory import InMemoryEntityStore
from app.services.workflows.service import get_workflow_service
from tests.helpers.services import RecordingSink, build_service


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(store, sink):
    return build_service(store, sink=sink)


@pytest.fixture
def client():
    """Test client that runs the app lifespan around each test."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_service(store, sink):
    """Route the API at an isolated in-memory service."""
    workflow_service = build_service(store, sink=sink)
    app.dependency_overrides[get_workflow_service] = lambda: workflow_service
    try:
        yield workflow_service
    finally:
        app.dependency_overrides.pop(get_workflow_service, None)
