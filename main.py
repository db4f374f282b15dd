"""
TripNezt Booking API
Main FastAPI application integrating:
- Booking admission and seat accounting
- Lead status management with audit log
- WhatsApp notification relay (REST endpoint + callable functions)
- Delivery-status webhook from Meta
"""
import os
import hmac
import hashlib
from datetime import datetime
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from database import init_db, get_db, WhatsAppMessage
from api_router import router as api_router
from auth import router as auth_router, users_router
from functions_router import router as functions_router
from whatsapp_router import router as whatsapp_router

# Configuration
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "tripnezt_verify_123")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# Delivery states in the order Meta reports them
STATUS_ORDER = ["sent", "delivered", "read"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize on startup"""
    # Startup
    print("Starting up TripNezt Booking API...")
    init_db()
    yield
    # Shutdown
    print("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="TripNezt Booking API",
    description="Trip bookings, seat accounting, lead management and WhatsApp notifications",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials="*" not in ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(api_router)
app.include_router(whatsapp_router)
app.include_router(functions_router)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "running",
        "system": "TripNezt Booking API",
        "version": "1.0.0",
        "components": {
            "bookings": True,
            "whatsapp_configured": bool(os.getenv("WHATSAPP_ACCESS_TOKEN") and os.getenv("WHATSAPP_PHONE_NUMBER_ID")),
            "rate_limit_backend": os.getenv("RATE_LIMIT_BACKEND", "database")
        }
    }


def verify_signature(body: bytes, signature: str) -> bool:
    """Check Meta's X-Hub-Signature-256 header against FB_APP_SECRET"""
    app_secret = os.getenv("FB_APP_SECRET")
    if not app_secret:
        return True
    expected = "sha256=" + hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def apply_status_update(db, status: dict) -> bool:
    """Move a logged message forward to the reported delivery state"""
    message_id = status.get("id")
    new_status = status.get("status", "unknown")
    entry = db.query(WhatsAppMessage).filter(WhatsAppMessage.message_id == message_id).first()
    if entry is None:
        return False

    # Webhooks can arrive out of order; never move sent <- delivered <- read backwards
    if entry.status in STATUS_ORDER and new_status in STATUS_ORDER:
        if STATUS_ORDER.index(new_status) <= STATUS_ORDER.index(entry.status):
            return False

    entry.status = new_status
    if new_status == "failed":
        entry.error = str(status.get("errors", []))
    entry.last_updated = datetime.utcnow()
    return True


@app.get("/webhook")
async def verify_webhook(request: Request):
    """Webhook verification for Meta WhatsApp"""
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge")

    if mode == "subscribe" and token == WHATSAPP_VERIFY_TOKEN:
        print("Webhook verified successfully!")
        return Response(content=challenge, media_type="text/plain")

    raise HTTPException(status_code=403, detail="Verification failed")


@app.post("/webhook")
async def handle_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle delivery-status callbacks for messages sent by the relay.
    Inbound customer messages are acknowledged and ignored.
    """
    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get("x-hub-signature-256", "")):
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    entry = (body.get("entry") or [{}])[0]
    changes = (entry.get("changes") or [{}])[0]
    value = changes.get("value", {})

    statuses = value.get("statuses", [])
    if not statuses:
        return {"status": "no_status_update"}

    updated = 0
    for status in statuses:
        print(f"[STATUS] {status.get('status', 'unknown').upper()} for message {status.get('id', '')}")
        if apply_status_update(db, status):
            updated += 1
    db.commit()

    return {"status": "status_update_processed", "statuses": len(statuses), "updated": updated}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
