"""
StudySync - Test Configuration and Fixtures
"""
import os
from typing import AsyncGenerator, Generator

import pytest
from faker import Faker
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# Set testing environment
os.environ['ENVIRONMENT'] = 'testing'
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['BCRYPT_ROUNDS'] = '4'
os.environ['CREATE_INDEXES_ON_STARTUP'] = 'false'
os.environ.pop('DATABASE_URL', None)
os.environ.pop('DATABASE_NAME', None)

from auth import AuthService, Identity
from main import app, get_auth, get_store
from tests.mocks.memory_store import InMemoryDocumentStore

fake = Faker()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Fresh in-memory document store for each test"""
    return InMemoryDocumentStore()


@pytest.fixture
def auth(store: InMemoryDocumentStore) -> AuthService:
    return AuthService(store)


@pytest.fixture
def author() -> Identity:
    return Identity(uid='u1', email='author@example.com', display_name='Asha Rao')


@pytest.fixture
def other_user() -> Identity:
    return Identity(uid='u2', email='other@example.com', display_name='Ravi Kumar')


@pytest.fixture
def signup_data() -> dict:
    return {
        'name': fake.name(),
        'email': fake.email(),
        'password': 'securePassword123',
    }


@pytest.fixture
def override_dependencies(store: InMemoryDocumentStore, auth: AuthService) -> Generator[None, None, None]:
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_auth] = lambda: auth
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client(override_dependencies) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client wired to the in-memory store"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac


@pytest.fixture
def ws_client(override_dependencies) -> Generator[TestClient, None, None]:
    """Synchronous client for the live feed websockets"""
    with TestClient(app) as tc:
        yield tc


@pytest.fixture
def auth_headers(auth: AuthService, author: Identity) -> dict:
    """Bearer header for an account created directly through the auth service"""
    session = auth.create_identity(author.email, 'securePassword123', author.display_name)
    return {'Authorization': f'Bearer {session.access_token}'}
