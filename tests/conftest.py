import json

import pytest
import requests
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from catering_pos.auth import Principal, issue_token
from catering_pos.billing import BillRenderer
from catering_pos.database import create_document, get_db
from catering_pos.lifecycle import OrderLifecycle
from catering_pos.main import app
from catering_pos.schemas import Customer, OrderItemIn, Product
from catering_pos.settings import Settings, get_settings
from catering_pos.whatsapp import WhatsAppGateway
from catering_pos.whatsapp_routes import get_gateway


def make_response(status_code: int, body) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode() if not isinstance(body, bytes) else body
    response.headers["Content-Type"] = "application/json"
    return response


class FakeProvider:
    """Stands in for requests.Session in front of the WhatsApp service."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.raise_exc = None

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers})
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return make_response(*self.fail_with)
        if "/message/" in url:
            return make_response(200, {"success": True, "messageId": f"wamid-{len(self.sent)}"})
        if "/session/qr/" in url and url.endswith("/image"):
            return make_response(200, b"\x89PNG fake")
        return make_response(200, {"success": True, "isReady": True})

    @property
    def sent(self):
        return [c for c in self.calls if "/message/" in c["url"]]


@pytest.fixture
def settings():
    return Settings(
        JWT_SECRET="test-secret",
        WHATSAPP_API_URL="http://whatsapp.test",
        WHATSAPP_API_KEY="test-key",
        WHATSAPP_SESSION_ID="test-session",
        BUSINESS_NAME="Test Catering",
        AUTO_SEND_BILL_DELAY=0,
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["catering_test"]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(settings, provider):
    return WhatsAppGateway(settings, http=provider)


@pytest.fixture
def renderer(settings):
    return BillRenderer(settings)


@pytest.fixture
def lifecycle(db, renderer, gateway, settings):
    return OrderLifecycle(db, renderer, gateway, currency=settings.CURRENCY_SYMBOL, business_name=settings.BUSINESS_NAME)


CATALOG = [
    {"name": "Chicken Biryani", "description": "Rice", "category": "Main Course", "price": 10},
    {"name": "Samosa", "description": "Pastry", "category": "Starters", "price": 5, "isVegetarian": True},
    {
        "name": "Family Feast",
        "description": "Feeds four",
        "category": "Deals",
        "price": 40,
        "items": ["Chicken Biryani", "4 Naan", "Raita"],
    },
]


@pytest.fixture
async def products(db):
    ids = {}
    for p in CATALOG:
        doc = await create_document(db, "products", Product(**p).to_document())
        ids[doc["name"]] = doc["id"]
    return ids


@pytest.fixture
def customer():
    return Customer(name="Ayesha Khan", whatsapp="+44 7700 900123", address="12 High Street, Leeds")


@pytest.fixture
def make_order(lifecycle, products, customer):
    async def _make(lines=(("Chicken Biryani", 2), ("Samosa", 1)), **kwargs):
        items = [OrderItemIn(product_id=products[name], quantity=qty) for name, qty in lines]
        return await lifecycle.create_order(customer, items, **kwargs)
    return _make


def token_for(settings, role="admin", user_id="user-1", **kwargs):
    token, _ = issue_token(Principal(user_id=user_id, role=role, **kwargs), settings)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db, settings, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin(settings):
    return token_for(settings, "admin", "admin-1")


@pytest.fixture
def staff(settings):
    return token_for(settings, "staff", "staff-1", branch="Leeds")
