"""POST /api/send-whatsapp"""
import json

import httpx

from rate_limiter import FixedWindowRateLimiter, MemoryWindowStore
from whatsapp_router import get_rate_limiter
from main import app

URL = "/api/send-whatsapp"


def test_preflight(client):
    response = client.options(URL)
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"
    assert response.headers["X-Frame-Options"] == "DENY"


def test_other_methods_not_allowed(client):
    for method in ("GET", "PUT", "DELETE"):
        response = client.request(method, URL)
        assert response.status_code == 405
        assert response.headers["Allow"] == "POST"
        assert response.json() == {"error": "Method not allowed"}


def test_validation_errors(client, whatsapp_env):
    response = client.post(URL, json={"phoneNumber": "12345"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation failed"
    assert body["details"] == ["Invalid phone number format", "Message or template name is required"]
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_missing_credentials(client):
    response = client.post(URL, json={"phoneNumber": "9876543210", "message": "Namaste"})
    assert response.status_code == 500
    assert response.json()["error"] == "WhatsApp Business credentials not configured"
    assert "WHATSAPP_ACCESS_TOKEN" in response.json()["hint"]


def test_text_message(client, whatsapp_env, cloud_api):
    response = client.post(URL, json={"phoneNumber": "98765 43210", "message": "Namaste\x07 from Tripnezt"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "messageId": "wamid.TEST1",
        "phone": "+919876543210",
        "type": "text",
    }
    sent = json.loads(cloud_api.requests[0].content)
    assert sent["to"] == "+919876543210"
    assert sent["text"] == {"body": "Namaste from Tripnezt"}
    assert response.headers["X-RateLimit-Remaining"] == "9"


def test_template_message(client, whatsapp_env, cloud_api):
    response = client.post(URL, json={
        "phoneNumber": "9876543210",
        "templateName": "hello_world",
        "templateData": {"languageCode": "en_US"},
    })

    assert response.status_code == 200
    assert response.json()["type"] == "template"
    sent = json.loads(cloud_api.requests[0].content)
    assert sent["type"] == "template"
    assert sent["template"] == {"name": "hello_world", "language": {"code": "en_US"}, "components": []}


def test_upstream_auth_failure_not_retried(client, whatsapp_env, cloud_api):
    cloud_api.responses = [(401, {"error": {"message": "Invalid OAuth access token"}})]

    response = client.post(URL, json={"phoneNumber": "9876543210", "message": "Namaste"})

    assert response.status_code == 401
    assert response.json() == {
        "error": "WhatsApp API authentication failed",
        "details": "Access token may be expired or invalid",
    }
    assert len(cloud_api.requests) == 1


def test_upstream_server_error_retried(client, whatsapp_env, cloud_api):
    cloud_api.responses = [(500, {"error": {"message": "Temporary failure"}})]

    response = client.post(URL, json={"phoneNumber": "9876543210", "message": "Namaste"})

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to send WhatsApp message"
    assert len(cloud_api.requests) == 3


def test_upstream_timeout(client, whatsapp_env, cloud_api):
    cloud_api.responses = [httpx.ReadTimeout("timed out")]

    response = client.post(URL, json={"phoneNumber": "9876543210", "message": "Namaste"})

    assert response.status_code == 504
    assert response.json()["error"] == "WhatsApp API request timed out"


def test_debug_field_only_in_development(client, whatsapp_env, cloud_api, monkeypatch):
    cloud_api.responses = [(400, {"error": {"message": "Bad parameter"}})]
    body = {"phoneNumber": "9876543210", "message": "Namaste"}

    assert "debug" not in client.post(URL, json=body).json()

    monkeypatch.setenv("APP_ENV", "development")
    response = client.post(URL, json=body)
    assert response.status_code == 400
    assert response.json()["debug"] == "WhatsApp API returned 400"


def test_rate_limit_per_client_ip(client):
    for _ in range(10):
        assert client.post(URL, json={}).status_code == 400

    response = client.post(URL, json={})
    assert response.status_code == 429
    assert response.json()["error"] == "Too many requests"
    retry_after = int(response.headers["Retry-After"])
    assert 0 < retry_after <= 60
    assert response.json()["retryAfter"] == retry_after
    assert response.headers["X-RateLimit-Remaining"] == "0"

    # A different forwarded client has its own window
    other = client.post(URL, json={}, headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
    assert other.status_code == 400


def test_rate_limiter_can_be_swapped(client):
    limiter = FixedWindowRateLimiter(MemoryWindowStore(), max_requests=1)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    assert client.post(URL, json={}).status_code == 400
    assert client.post(URL, json={}).status_code == 429
