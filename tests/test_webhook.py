"""Delivery-status webhook"""
import hashlib
import hmac
import json

from database import WhatsAppMessage, log_whatsapp_message


def status_event(message_id, status, **extra):
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"statuses": [{"id": message_id, "status": status, **extra}]}}]}],
    }


def test_verification(client):
    params = {"hub.mode": "subscribe", "hub.verify_token": "tripnezt_verify_123", "hub.challenge": "42"}
    response = client.get("/webhook", params=params)
    assert response.status_code == 200
    assert response.text == "42"

    params["hub.verify_token"] = "wrong"
    assert client.get("/webhook", params=params).status_code == 403


def test_status_moves_forward_only(client, db):
    log_whatsapp_message(db, "+919876543210", "sent", message="Namaste", message_id="wamid.1")

    response = client.post("/webhook", json=status_event("wamid.1", "read"))
    assert response.json()["updated"] == 1

    client.post("/webhook", json=status_event("wamid.1", "delivered"))
    db.expire_all()
    assert db.query(WhatsAppMessage).one().status == "read"


def test_failed_status_records_error(client, db):
    log_whatsapp_message(db, "+919876543210", "sent", message_id="wamid.2")

    client.post("/webhook", json=status_event("wamid.2", "failed", errors=[{"code": 131026}]))

    db.expire_all()
    entry = db.query(WhatsAppMessage).one()
    assert entry.status == "failed"
    assert "131026" in entry.error


def test_inbound_messages_are_ignored(client):
    body = {"entry": [{"changes": [{"value": {"messages": [{"from": "919876543210", "text": {"body": "Hi"}}]}}]}]}
    assert client.post("/webhook", json=body).json() == {"status": "no_status_update"}


def test_non_object_body_is_rejected(client):
    assert client.post("/webhook", json=[{"statuses": []}]).status_code == 400
    assert client.post("/webhook", content=b"not json").status_code == 400


def test_signature_checked_when_secret_set(client, db, monkeypatch):
    monkeypatch.setenv("FB_APP_SECRET", "app-secret")
    log_whatsapp_message(db, "+919876543210", "sent", message_id="wamid.3")
    body = json.dumps(status_event("wamid.3", "delivered")).encode()

    response = client.post("/webhook", content=body, headers={"X-Hub-Signature-256": "sha256=bad"})
    assert response.status_code == 403

    signature = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    response = client.post("/webhook", content=body, headers={
        "X-Hub-Signature-256": signature, "Content-Type": "application/json"
    })
    assert response.json()["updated"] == 1
