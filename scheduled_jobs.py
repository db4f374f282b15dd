#!/usr/bin/env python3
"""
Scheduled maintenance jobs for the TripNezt Booking API

Usage:
    python scheduled_jobs.py sync-status          # run every 5 minutes
    python scheduled_jobs.py reconcile-seats [--fix]
    python scheduled_jobs.py prune-rate-limits   # run hourly

sync-status:
1. Loads up to 100 logged WhatsApp messages still marked 'sent'
2. Looks each one up on the Cloud API
3. Stores any status change (delivered, read, failed...)

reconcile-seats:
Compares each trip's booked_seats with its approved bookings and
reports (or with --fix, repairs) any drift.

prune-rate-limits:
Deletes rate-limit windows that have expired.
"""
import sys
import argparse
import requests
from datetime import datetime
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from booking_engine import reconcile_seats
from rate_limiter import create_rate_limiter
from database import SessionLocal, WhatsAppMessage, init_db
from whatsapp import (
    WHATSAPP_API_URL, WHATSAPP_API_VERSION, REQUEST_TIMEOUT,
    get_whatsapp_credentials, generate_appsecret_proof
)

SYNC_BATCH_SIZE = 100


def fetch_status(message_id: str, credentials) -> str:
    """Get the current delivery status of one message"""
    url = f"{WHATSAPP_API_URL}/{WHATSAPP_API_VERSION}/{message_id}"
    params = {}
    if credentials.app_secret:
        params["appsecret_proof"] = generate_appsecret_proof(credentials.access_token, credentials.app_secret)

    response = requests.get(
        url,
        headers={"Authorization": f"Bearer {credentials.access_token}"},
        params=params,
        timeout=REQUEST_TIMEOUT
    )
    response.raise_for_status()
    return response.json().get("status")


def sync_message_status(db, limit: int = SYNC_BATCH_SIZE) -> int:
    """
    Refresh statuses of messages still marked 'sent'.

    Returns:
        Number of messages whose status changed
    """
    credentials = get_whatsapp_credentials()
    if not credentials.access_token:
        print("[Sync] WhatsApp credentials not configured, skipping sync")
        return 0

    pending = db.query(WhatsAppMessage).filter(
        WhatsAppMessage.status == "sent",
        WhatsAppMessage.message_id.isnot(None)
    ).order_by(WhatsAppMessage.sent_at.desc()).limit(limit).all()

    changed = 0
    for entry in pending:
        try:
            new_status = fetch_status(entry.message_id, credentials)
        except requests.RequestException as e:
            print(f"[Sync] Failed to sync message {entry.message_id}: {e}")
            continue

        if new_status and new_status != entry.status:
            entry.status = new_status
            entry.last_updated = datetime.utcnow()
            changed += 1

    db.commit()
    print(f"[Sync] Checked {len(pending)} messages, {changed} updated")
    return changed


def main(argv=None):
    """Entry point for the scheduled jobs"""
    parser = argparse.ArgumentParser(description="TripNezt scheduled jobs")
    subparsers = parser.add_subparsers(dest="job", required=True)
    subparsers.add_parser("sync-status", help="Sync WhatsApp delivery statuses")
    reconcile = subparsers.add_parser("reconcile-seats", help="Check trip seat counters against approved bookings")
    reconcile.add_argument("--fix", action="store_true", help="Reset drifted counters")
    subparsers.add_parser("prune-rate-limits", help="Delete expired rate-limit windows")
    args = parser.parse_args(argv)

    print("\n" + "="*60)
    print(f"SCHEDULED JOB: {args.job}")
    print(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("="*60 + "\n")

    init_db()
    db = SessionLocal()
    try:
        if args.job == "sync-status":
            sync_message_status(db)
        elif args.job == "prune-rate-limits":
            removed = create_rate_limiter().prune()
            print(f"[RateLimit] {removed} expired window(s) removed")
        else:
            drift = reconcile_seats(db, fix=args.fix)
            print(f"[Reconcile] {len(drift)} trip(s) drifted")
            if drift and not args.fix:
                return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
