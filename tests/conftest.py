import json

import httpx
import pytest

from delivery_client.cart import CartStore
from delivery_client.clients import DeliveryApiClient
from delivery_client.models import Product, User
from delivery_client.session import Session
from delivery_client.storage import LocalStorage
from mock_services import mock_delivery_api

BACKEND_URL = "http://backend/"


# ═══════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════

@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "storage.json"))


@pytest.fixture
def session(storage):
    """Authenticated session with a fixed token (for MockTransport handlers)."""
    s = Session(storage)
    s.login("tok_test", User(id=1, name="Cliente Teste", email="cliente@example.com"))
    return s


@pytest.fixture
def cart(storage):
    return CartStore(storage)


@pytest.fixture
def burger():
    return Product(id=1, name="X-Burger", description="Pão, carne, queijo", price=2500)


@pytest.fixture
def fries():
    return Product(id=2, name="Batata Frita", price=1200)


@pytest.fixture
def backend():
    """Mock delivery backend with fresh seed data."""
    mock_delivery_api.state.reset()
    yield mock_delivery_api.state
    mock_delivery_api.state.reset()


@pytest.fixture
def backend_session(storage, backend):
    """Session holding a token the mock backend accepts."""
    s = Session(storage)
    token = backend.issue_token("cliente@example.com")
    s.login(token, User(id=1, name="Cliente Teste", email="cliente@example.com"))
    return s


@pytest.fixture
def backend_api(backend_session):
    return DeliveryApiClient(backend_session, base_url=BACKEND_URL,
                             transport=httpx.ASGITransport(app=mock_delivery_api.app))


def json_response(payload, status_code=200):
    return httpx.Response(status_code, json=payload)


def mock_api(session, handler):
    """API client whose requests are answered by `handler(request) -> httpx.Response`."""
    return DeliveryApiClient(session, base_url=BACKEND_URL, transport=httpx.MockTransport(handler))


def request_body(request: httpx.Request) -> dict:
    return json.loads(request.content) if request.content else {}
