"""
Shared fixtures for the support chat tests.

The Mongo repositories are replaced by in-memory versions (see fakes.py) so
the service, router and gateway run without a database. Repository tests
mock the Motor collection instead.
"""

from contextlib import asynccontextmanager

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from fakes import InMemoryConversationRepository, InMemoryUserRepository
from support_chat.main import create_app
from support_chat.models.user import Role
from support_chat.routers.chat import get_socket_chat_service
from support_chat.routers.conversations import get_chat_service
from support_chat.schemas.user import CurrentUser
from support_chat.services.chat_service import ChatService
from support_chat.services.delivery import DeliveryService
from support_chat.utils.realtime_bus import NoopBus
from support_chat.utils.security import create_access_token
from support_chat.utils.websocket_manager import ConnectionManager


@pytest.fixture
def admin_id():
    return str(ObjectId())


@pytest.fixture
def user_id():
    return str(ObjectId())


@pytest.fixture
def stranger_id():
    return str(ObjectId())


@pytest.fixture
def admin(admin_id):
    return CurrentUser(id=admin_id, role=Role.ADMIN)


@pytest.fixture
def user(user_id):
    return CurrentUser(id=user_id, role=Role.USER)


@pytest.fixture
def stranger(stranger_id):
    """A second client with no stake in the user's conversation."""
    return CurrentUser(id=stranger_id, role=Role.USER)


@pytest.fixture
def users_repo(admin_id, user_id, stranger_id):
    return InMemoryUserRepository([
        {"_id": admin_id, "name": "Agency Admin", "email": "admin@agency.test", "avatar": None, "role": "admin"},
        {"_id": user_id, "name": "Uma User", "email": "uma@example.com", "avatar": "https://cdn.test/u.png", "role": "user"},
        {"_id": stranger_id, "name": "Victor", "email": "victor@example.com", "avatar": None, "role": "user"},
    ])


@pytest.fixture
def conversations_repo():
    return InMemoryConversationRepository()


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def delivery(connections):
    return DeliveryService(connections, NoopBus())


@pytest.fixture
def service(conversations_repo, users_repo, delivery):
    return ChatService(conversations_repo, users_repo, delivery, support_admin_id=None)


@pytest.fixture
def app(service, connections, delivery):
    """Application wired to the in-memory service, with no Mongo or Redis lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.bus = NoopBus()
        app.state.connections = connections
        app.state.delivery = delivery
        yield

    application = create_app(lifespan_handler=test_lifespan)
    application.dependency_overrides[get_chat_service] = lambda: service
    application.dependency_overrides[get_socket_chat_service] = lambda: service
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def headers_for():
    def _headers(identity: CurrentUser) -> dict:
        return {"Authorization": f"Bearer {create_access_token(identity.id, identity.role.value)}"}
    return _headers


@pytest.fixture
def ws_url_for():
    def _url(identity: CurrentUser) -> str:
        return f"/ws?token={create_access_token(identity.id, identity.role.value)}"
    return _url
