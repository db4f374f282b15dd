import time

import requests

import scheduled_jobs
from database import Booking, RateLimitWindow, WhatsAppMessage, log_whatsapp_message


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


def test_sync_skipped_without_credentials(db):
    log_whatsapp_message(db, "+919876543210", "sent", message_id="wamid.1")
    assert scheduled_jobs.sync_message_status(db) == 0


def test_sync_updates_changed_statuses(db, whatsapp_env, monkeypatch):
    log_whatsapp_message(db, "+919876543210", "sent", message_id="wamid.1")
    log_whatsapp_message(db, "+919876543211", "sent", message_id="wamid.2")
    log_whatsapp_message(db, "+919876543212", "sent", message_id="wamid.3")
    statuses = {"wamid.1": "delivered", "wamid.2": "sent"}

    def fake_get(url, headers, params, timeout):
        message_id = url.rsplit("/", 1)[-1]
        if message_id not in statuses:
            raise requests.ConnectionError("unreachable")
        assert headers["Authorization"] == "Bearer test-token"
        return FakeResponse({"id": message_id, "status": statuses[message_id]})

    monkeypatch.setattr(scheduled_jobs.requests, "get", fake_get)

    assert scheduled_jobs.sync_message_status(db) == 1
    by_id = {m.message_id: m.status for m in db.query(WhatsAppMessage).all()}
    assert by_id == {"wamid.1": "delivered", "wamid.2": "sent", "wamid.3": "sent"}


def test_reconcile_job_exit_codes(db, make_trip):
    trip = make_trip(booked_seats=3)
    db.add(Booking(trip_id=trip.id, user_name="Asha Verma", whatsapp_number="+919876543210",
                   travel_date="2026-11-20", guests=2, status="Approved"))
    db.commit()

    assert scheduled_jobs.main(["reconcile-seats"]) == 1
    assert scheduled_jobs.main(["reconcile-seats", "--fix"]) == 0
    assert scheduled_jobs.main(["reconcile-seats"]) == 0

    db.refresh(trip)
    assert trip.booked_seats == 2


def test_prune_rate_limits_job(db):
    now = time.time()
    db.add(RateLimitWindow(key="198.51.100.1", window_start=now - 3600, count=10))
    db.add(RateLimitWindow(key="198.51.100.2", window_start=now, count=1))
    db.commit()

    assert scheduled_jobs.main(["prune-rate-limits"]) == 0

    db.expire_all()
    assert [row.key for row in db.query(RateLimitWindow).all()] == ["198.51.100.2"]
