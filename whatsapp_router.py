"""
POST /api/send-whatsapp
Relays a text or template message to the WhatsApp Cloud API with
rate limiting, validation, retry/backoff and per-status error mapping.
"""
import os
import httpx
from typing import Optional, Dict, Any
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from rate_limiter import FixedWindowRateLimiter, create_rate_limiter
from whatsapp import (
    WhatsAppError, RetryPolicy, get_retry_policy, get_http_client, get_whatsapp_credentials,
    validate_send_request, format_phone_number, sanitize_message, generate_default_message,
    build_text_payload, build_template_payload, send_with_retry, extract_message_id, describe_error
)

router = APIRouter(tags=["whatsapp"])

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}

_rate_limiter: Optional[FixedWindowRateLimiter] = None


def get_rate_limiter() -> FixedWindowRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = create_rate_limiter()
    return _rate_limiter


def is_development() -> bool:
    return os.getenv("APP_ENV", "").lower() == "development"


def response_headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = dict(SECURITY_HEADERS)
    headers.update({
        "Access-Control-Allow-Origin": os.getenv("ALLOWED_ORIGINS", "*"),
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    })
    if extra:
        headers.update(extra)
    return headers


def _respond(status_code: int, content: Dict[str, Any], extra_headers: Optional[Dict[str, str]] = None):
    return JSONResponse(status_code=status_code, content=content, headers=response_headers(extra_headers))


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket address"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@router.options("/api/send-whatsapp")
async def send_whatsapp_preflight():
    return Response(status_code=200, headers=response_headers())


@router.api_route("/api/send-whatsapp", methods=["GET", "PUT", "PATCH", "DELETE"])
async def send_whatsapp_method_not_allowed():
    return _respond(405, {"error": "Method not allowed"}, {"Allow": "POST"})


@router.post("/api/send-whatsapp")
async def send_whatsapp(
    request: Request,
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
    client: httpx.AsyncClient = Depends(get_http_client),
    policy: RetryPolicy = Depends(get_retry_policy)
):
    """
    Send a WhatsApp message.

    Body:
    - phoneNumber: recipient, 10-15 digits after removing separators
    - message: text body (max 4096 chars)
    - templateName: approved template, used when no message is given
    - templateData: {languageCode, components} for template messages
    """
    limit = limiter.check(client_ip(request))
    if not limit.allowed:
        return _respond(
            429,
            {"error": "Too many requests", "retryAfter": limit.retry_after},
            {"Retry-After": str(limit.retry_after), "X-RateLimit-Remaining": "0"}
        )

    try:
        body = await request.json()
    except ValueError:
        body = None

    errors = validate_send_request(body)
    if errors:
        return _respond(400, {"error": "Validation failed", "details": errors})

    credentials = get_whatsapp_credentials()
    if not credentials.configured:
        print("[WhatsApp Error] WhatsApp credentials not configured")
        return _respond(500, {
            "error": "WhatsApp Business credentials not configured",
            "hint": "Please set WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID environment variables"
        })

    phone = format_phone_number(body["phoneNumber"])
    message = body.get("message")
    template_name = body.get("templateName")
    template_data = body.get("templateData") or {}

    if template_name and not message:
        payload = build_template_payload(
            phone, template_name, template_data.get("languageCode"), template_data.get("components")
        )
        message_type = "template"
    else:
        payload = build_text_payload(phone, sanitize_message(message) or generate_default_message(template_name))
        message_type = "text"

    try:
        response = await send_with_retry(
            client, credentials, payload,
            max_retries=policy.max_retries, retry_delay=policy.retry_delay
        )
    except WhatsAppError as e:
        print(f"[WhatsApp Error] {e} (status={e.status_code}, details={e.details})")
        status_code, error, details = describe_error(e)
        content = {"error": error, "details": details}
        if is_development():
            content["debug"] = str(e)
        return _respond(status_code, content)

    message_id = extract_message_id(response)
    print(f"[WhatsApp] Message sent successfully: {message_id}")
    return _respond(
        200,
        {"success": True, "messageId": message_id, "phone": phone, "type": message_type},
        {"X-RateLimit-Remaining": str(limit.remaining)}
    )
