"""Shared fixtures: in-memory database, API client, stubbed Cloud API"""
import os

# Must be set before the database module creates its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_BACKEND"] = "database"

import httpx
import pytest
from fastapi.testclient import TestClient

import whatsapp_router
from database import Base, engine, SessionLocal, Trip
from main import app
from whatsapp import get_http_client, get_retry_policy, RetryPolicy

ENV_VARS = [
    "WHATSAPP_ACCESS_TOKEN",
    "WHATSAPP_PHONE_NUMBER_ID",
    "WHATSAPP_BUSINESS_ACCOUNT_ID",
    "FB_APP_SECRET",
    "WHATSAPP_RELAY_BASE_URL",
    "WHATSAPP_FUNCTIONS_URL",
    "WHATSAPP_FUNCTIONS_TOKEN",
    "APP_ENV",
    "PRIMARY_ADMIN_EMAIL",
    "ALLOWED_ORIGINS",
    "RATE_LIMIT_WINDOW_SECONDS",
    "RATE_LIMIT_MAX_REQUESTS",
]

PRIMARY_ADMIN = "admin@tripnezt.in"


@pytest.fixture(autouse=True)
def fresh_db(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    whatsapp_router._rate_limiter = None
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def whatsapp_env(monkeypatch):
    monkeypatch.setenv("WHATSAPP_ACCESS_TOKEN", "test-token")
    monkeypatch.setenv("WHATSAPP_PHONE_NUMBER_ID", "1234567890")


@pytest.fixture
def make_trip(db):
    def _make(**overrides):
        values = dict(
            title="Spiti Valley Expedition",
            location="Kaza",
            state="Himachal Pradesh",
            price=15999,
            duration=7,
            duration_type="Nights",
            categories=["mountains"],
            total_seats=10,
            booked_seats=0,
            auto_approve=False,
            waitlist_threshold=2,
        )
        values.update(overrides)
        trip = Trip(**values)
        db.add(trip)
        db.commit()
        db.refresh(trip)
        return trip
    return _make


class CloudApiStub:
    """Scripted responses for the WhatsApp Cloud API"""

    def __init__(self, responses=None):
        # Each item: (status, json) or an exception instance
        self.responses = list(responses or [(200, {"messages": [{"id": "wamid.TEST1"}]})])
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        item = self.responses[index]
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body, request=request)


@pytest.fixture
def cloud_api():
    """Route Cloud API calls made through get_http_client to a stub"""
    stub = CloudApiStub()

    async def _client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(stub)) as http_client:
            yield http_client

    app.dependency_overrides[get_http_client] = _client
    app.dependency_overrides[get_retry_policy] = lambda: RetryPolicy(max_retries=3, retry_delay=0)
    return stub


def _signup(client, email, password="secret123", **extra):
    response = client.post("/auth/signup", json={"email": email, "password": password, **extra})
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def signup(client):
    return lambda email, **extra: _signup(client, email, **extra)


@pytest.fixture
def admin_headers(client):
    data = _signup(client, PRIMARY_ADMIN, name="Primary Admin", apply_as_admin=True)
    return {"Authorization": f"Bearer {data['token']}"}


@pytest.fixture
def user_headers(client):
    data = _signup(client, "asha@example.com", name="Asha Verma", phone_number="9876543210")
    return {"Authorization": f"Bearer {data['token']}"}
