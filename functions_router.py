"""
Callable WhatsApp functions
POST /functions/{name} with {"data": {...}} -> {"result": {...}}
Errors -> {"error": {"status": "UNAUTHENTICATED", "message": "..."}}

Every function requires a signed-in caller. Sends are logged to
whatsapp_messages whether they succeed or fail.
"""
import httpx
from typing import Optional, Dict, Any
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import resolve_user
from database import get_db, User, log_whatsapp_message
from notifier import DeliveryError
from whatsapp import (
    WhatsAppError, get_whatsapp_credentials, get_http_client, format_phone_number,
    generate_default_message, build_text_payload, build_template_payload,
    post_message, fetch_message_status, extract_message_id
)

router = APIRouter(prefix="/functions", tags=["functions"])

HTTP_STATUS = {
    "invalid-argument": 400,
    "failed-precondition": 400,
    "unauthenticated": 401,
    "not-found": 404,
    "internal": 500,
}


class FunctionError(Exception):
    """Error returned to callable clients with a code from HTTP_STATUS"""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"status": self.code.upper().replace("-", "_"), "message": self.message}}


def _require_caller(caller: Optional[User], message: str) -> User:
    if caller is None:
        raise FunctionError("unauthenticated", message)
    return caller


def _require_credentials():
    credentials = get_whatsapp_credentials()
    if not credentials.configured:
        raise FunctionError(
            "failed-precondition",
            "WhatsApp Business credentials not configured. Please set up environment variables."
        )
    return credentials


def _error_text(error: WhatsAppError) -> str:
    return error.details or str(error)


async def send_whatsapp_message(db: Session, caller: Optional[User], data: Dict[str, Any],
                                client: httpx.AsyncClient) -> Dict[str, Any]:
    """Send a text message; a missing message falls back to the template's default text"""
    caller = _require_caller(caller, "You must be logged in to send WhatsApp messages")

    phone_number = data.get("phoneNumber")
    message = data.get("message")
    template_name = data.get("templateName")
    if not phone_number:
        raise FunctionError("invalid-argument", "Phone number is required")
    if not message and not template_name:
        raise FunctionError("invalid-argument", "Message or template name is required")

    credentials = _require_credentials()
    phone = format_phone_number(phone_number)
    body = message or generate_default_message(template_name)
    print(f"[Functions] sendWhatsAppMessage by {caller.id} to {phone}")

    try:
        response = await post_message(client, credentials, build_text_payload(phone, body))
    except WhatsAppError as e:
        print(f"[Functions] WhatsApp API Error: {_error_text(e)}")
        log_whatsapp_message(db, phone, "failed", message=body, template_name=template_name,
                             sent_by=caller.id, error=_error_text(e))
        raise FunctionError("internal", f"Failed to send WhatsApp message: {_error_text(e)}")

    message_id = extract_message_id(response)
    log_whatsapp_message(db, phone, "sent", message=body, template_name=template_name,
                         message_id=message_id, sent_by=caller.id)
    return {"success": True, "messageId": message_id}


async def send_template_message(db: Session, caller: Optional[User], data: Dict[str, Any],
                                client: httpx.AsyncClient) -> Dict[str, Any]:
    """Send a pre-approved template message"""
    caller = _require_caller(caller, "You must be logged in to send template messages")

    phone_number = data.get("phoneNumber")
    template_name = data.get("templateName")
    if not phone_number or not template_name:
        raise FunctionError("invalid-argument", "Phone number and template name are required")

    credentials = _require_credentials()
    phone = format_phone_number(phone_number)
    payload = build_template_payload(phone, template_name, data.get("languageCode"), data.get("components"))

    try:
        response = await post_message(client, credentials, payload)
    except WhatsAppError as e:
        print(f"[Functions] Template Message Error: {_error_text(e)}")
        log_whatsapp_message(db, phone, "failed", template_name=template_name, message_type="template",
                             sent_by=caller.id, error=_error_text(e))
        raise FunctionError("internal", "Failed to send template message")

    message_id = extract_message_id(response)
    log_whatsapp_message(db, phone, "sent", template_name=template_name, message_type="template",
                         message_id=message_id, sent_by=caller.id)
    return {"success": True, "messageId": message_id}


async def get_message_status(db: Session, caller: Optional[User], data: Dict[str, Any],
                             client: httpx.AsyncClient) -> Dict[str, Any]:
    _require_caller(caller, "Authentication required")

    message_id = data.get("messageId")
    if not message_id:
        raise FunctionError("invalid-argument", "Message ID is required")

    credentials = _require_credentials()
    try:
        response = await fetch_message_status(client, credentials, message_id)
    except WhatsAppError as e:
        print(f"[Functions] Status lookup failed for {message_id}: {_error_text(e)}")
        raise FunctionError("internal", "Failed to get message status")

    return {"success": True, "status": response.get("status")}


FUNCTIONS = {
    "sendWhatsAppMessage": send_whatsapp_message,
    "sendTemplateMessage": send_template_message,
    "getMessageStatus": get_message_status,
}


def local_function_invoker(db: Session, caller: Optional[User], client: httpx.AsyncClient):
    """In-process invoker for the relay's function transport"""

    async def invoke(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await FUNCTIONS[name](db, caller, data, client)
        except FunctionError as e:
            raise DeliveryError(f"{e.code}: {e.message}", transport="functions", status_code=e.http_status)

    return invoke


@router.post("/{name}")
async def call_function(
    name: str,
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    client: httpx.AsyncClient = Depends(get_http_client)
):
    """Callable function entry point"""
    try:
        function = FUNCTIONS.get(name)
        if function is None:
            raise FunctionError("not-found", f"Function '{name}' not found")

        try:
            caller = resolve_user(db, authorization)
        except HTTPException as e:
            raise FunctionError("unauthenticated", str(e.detail))

        try:
            body = await request.json()
        except ValueError:
            body = None
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            if caller is not None:
                raise FunctionError("invalid-argument", "Request body must contain a 'data' object")
            # Let the function report its own sign-in error
            data = {}

        result = await function(db, caller, data, client)
        return {"result": result}

    except FunctionError as e:
        return JSONResponse(status_code=e.http_status, content=e.to_dict())
