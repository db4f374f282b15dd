"""
WhatsApp Business Cloud API client

- Phone validation and formatting
- Text / template payload builders
- Single-attempt send with 10s timeout
- Exponential backoff retry (client errors are never retried)
- Mapping of upstream failures to HTTP status and user-facing messages
"""
import os
import re
import hmac
import asyncio
import hashlib
import httpx
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Tuple

# WhatsApp Business API Configuration
WHATSAPP_API_URL = "https://graph.facebook.com"
WHATSAPP_API_VERSION = "v18.0"
REQUEST_TIMEOUT = 10.0  # seconds
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # base delay between retries (seconds)

MAX_MESSAGE_LENGTH = 4096
DEFAULT_COUNTRY_CODE = "91"

PHONE_PATTERN = re.compile(r"^\d{10,15}$")
TEMPLATE_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
PHONE_SEPARATORS = re.compile(r"[\s\-().]")
CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")

DEFAULT_MESSAGES = {
    "welcome": "Namaste! 🙏\n\nGreetings from Tripnezt - Your Trusted Travel Partner!\n\nThank you for your interest in our travel packages.\n\nHow can I assist you today?",
    "booking_confirmed": "Your booking has been confirmed! 🎉\n\nThank you for choosing Tripnezt for your travel adventure.\n\nWe will send you detailed information shortly.",
    "payment_reminder": "Payment Reminder 💰\n\nThis is a friendly reminder regarding your pending payment.\n\nPlease let us know if you have any questions.",
    "trip_reminder": "Trip Reminder ✈️\n\nYour exciting journey is just around the corner!\n\nPlease ensure all your travel documents are ready.",
    "follow_up": "Following up on your inquiry 👋\n\nWe wanted to check if you have any questions about our travel packages.\n\nFeel free to reach out!",
    "custom": "Thank you for contacting Tripnezt!\n\nWe will get back to you shortly.\n\n- Tripnezt Team",
}


@dataclass
class WhatsAppCredentials:
    access_token: Optional[str]
    phone_number_id: Optional[str]
    business_account_id: Optional[str] = None
    app_secret: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)


@dataclass
class RetryPolicy:
    max_retries: int = MAX_RETRIES
    retry_delay: float = RETRY_DELAY


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy()


async def get_http_client():
    """Per-request HTTP client for Cloud API calls"""
    async with httpx.AsyncClient() as client:
        yield client


def get_whatsapp_credentials() -> WhatsAppCredentials:
    """Read credentials from the environment at call time"""
    return WhatsAppCredentials(
        access_token=os.getenv("WHATSAPP_ACCESS_TOKEN"),
        phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID"),
        business_account_id=os.getenv("WHATSAPP_BUSINESS_ACCOUNT_ID"),
        app_secret=os.getenv("FB_APP_SECRET"),
    )


class WhatsAppError(Exception):
    """
    Failure talking to the Cloud API.

    kind is one of: client (upstream 4xx), server (upstream 5xx),
    network, timeout.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, kind: str = "server",
                 details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind
        self.details = details or message

    @property
    def retryable(self) -> bool:
        return self.kind != "client"


# ============== Phone Numbers ==============

def validate_phone_number(phone: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Validate a phone number for the REST endpoint.
    Returns (cleaned, None) or (None, error).
    """
    if not phone or not isinstance(phone, str):
        return None, "Phone number is required"

    cleaned = PHONE_SEPARATORS.sub("", phone.strip())
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]

    if not PHONE_PATTERN.match(cleaned):
        return None, "Invalid phone number format"
    return cleaned, None


def format_phone_number(phone: str) -> str:
    """
    Format a phone number for the WhatsApp API: digits only, Indian
    country code added to 10-digit numbers, '+' prefix.
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 10:
        cleaned = DEFAULT_COUNTRY_CODE + cleaned
    return "+" + cleaned


def sanitize_message(message: Any) -> str:
    """Strip control characters, keeping emojis and formatting"""
    if not message or not isinstance(message, str):
        return ""
    # Newlines and tabs are formatting, not control input
    return CONTROL_CHARS.sub(lambda m: m.group(0) if m.group(0) in "\n\t" else "", message).strip()


def generate_default_message(template_name: Optional[str]) -> str:
    return DEFAULT_MESSAGES.get(template_name or "", DEFAULT_MESSAGES["welcome"])


# ============== Payloads ==============

def build_text_payload(phone: str, body: str) -> Dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": phone,
        "type": "text",
        "text": {"body": body}
    }


def build_template_payload(phone: str, template_name: str, language_code: Optional[str] = None,
                           components: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "to": phone,
        "type": "template",
        "template": {
            "name": template_name,
            "language": {"code": language_code or "en"},
            "components": components or []
        }
    }


def validate_send_request(body: Any) -> List[str]:
    """Validate a send-whatsapp request body, returning every problem found"""
    if not isinstance(body, dict):
        return ["Request body must be a JSON object"]

    errors = []
    phone = body.get("phoneNumber")
    message = body.get("message")
    template_name = body.get("templateName")

    if not phone:
        errors.append("Phone number is required")
    else:
        _, phone_error = validate_phone_number(phone)
        if phone_error:
            errors.append(phone_error)

    if not message and not template_name:
        errors.append("Message or template name is required")

    if message and not isinstance(message, str):
        errors.append("Message must be a string")
    elif message and len(message) > MAX_MESSAGE_LENGTH:
        errors.append(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")

    if template_name and not isinstance(template_name, str):
        errors.append("Template name must be a string")
    elif template_name and not TEMPLATE_NAME_PATTERN.match(template_name):
        errors.append("Invalid template name format (only lowercase letters, numbers, and underscores allowed)")

    template_data = body.get("templateData")
    if template_data is not None and not isinstance(template_data, dict):
        errors.append("Template data must be an object")

    return errors


# ============== Transport ==============

def generate_appsecret_proof(access_token: str, app_secret: str) -> str:
    """Generate appsecret_proof for Meta API authentication"""
    return hmac.new(
        app_secret.encode('utf-8'),
        access_token.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


def _auth(credentials: WhatsAppCredentials) -> Tuple[Dict[str, str], Dict[str, str]]:
    headers = {
        "Authorization": f"Bearer {credentials.access_token}",
        "Content-Type": "application/json"
    }
    params = {}
    if credentials.app_secret:
        params["appsecret_proof"] = generate_appsecret_proof(credentials.access_token, credentials.app_secret)
    return headers, params


def _raise_for_response(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    details = error.get("message") if isinstance(error, dict) else None
    kind = "client" if 400 <= response.status_code < 500 else "server"
    raise WhatsAppError(
        f"WhatsApp API returned {response.status_code}",
        status_code=response.status_code,
        kind=kind,
        details=details or response.text
    )


async def post_message(client: httpx.AsyncClient, credentials: WhatsAppCredentials,
                       payload: Dict[str, Any]) -> Dict[str, Any]:
    """Single send attempt to the Cloud API"""
    url = f"{WHATSAPP_API_URL}/{WHATSAPP_API_VERSION}/{credentials.phone_number_id}/messages"
    headers, params = _auth(credentials)

    try:
        response = await client.post(url, json=payload, headers=headers, params=params, timeout=REQUEST_TIMEOUT)
    except httpx.TimeoutException as e:
        raise WhatsAppError("WhatsApp API request timed out", kind="timeout", details=str(e))
    except httpx.HTTPError as e:
        raise WhatsAppError(f"WhatsApp API request failed: {e}", kind="network")

    _raise_for_response(response)
    return response.json()


async def send_with_retry(client: httpx.AsyncClient, credentials: WhatsAppCredentials, payload: Dict[str, Any],
                          max_retries: int = MAX_RETRIES, retry_delay: float = RETRY_DELAY,
                          sleep=asyncio.sleep) -> Dict[str, Any]:
    """
    Send with exponential backoff: retry_delay * 2^(attempt-1) between
    attempts. Client errors (4xx) are raised immediately; after the last
    attempt the last error is raised.
    """
    last_error = None
    for attempt in range(1, max_retries + 1):
        try:
            return await post_message(client, credentials, payload)
        except WhatsAppError as e:
            last_error = e
            if not e.retryable:
                raise

            print(f"[WhatsApp] Retry attempt {attempt}/{max_retries}: {e}")
            if attempt < max_retries:
                await sleep(retry_delay * 2 ** (attempt - 1))

    raise last_error


async def fetch_message_status(client: httpx.AsyncClient, credentials: WhatsAppCredentials,
                               message_id: str) -> Dict[str, Any]:
    """Look up a sent message on the Cloud API"""
    url = f"{WHATSAPP_API_URL}/{WHATSAPP_API_VERSION}/{message_id}"
    headers, params = _auth(credentials)
    try:
        response = await client.get(url, headers=headers, params=params, timeout=REQUEST_TIMEOUT)
    except httpx.TimeoutException as e:
        raise WhatsAppError("WhatsApp API request timed out", kind="timeout", details=str(e))
    except httpx.HTTPError as e:
        raise WhatsAppError(f"WhatsApp API request failed: {e}", kind="network")

    _raise_for_response(response)
    return response.json()


def extract_message_id(response_data: Dict[str, Any]) -> Optional[str]:
    messages = response_data.get("messages") or [{}]
    return messages[0].get("id")


def describe_error(error: WhatsAppError) -> Tuple[int, str, str]:
    """Map a Cloud API failure to (http status, error, details)"""
    if error.kind == "timeout":
        return 504, "WhatsApp API request timed out", "Please try again"
    if error.status_code == 400:
        return 400, "Invalid request to WhatsApp API", error.details
    if error.status_code == 401:
        return 401, "WhatsApp API authentication failed", "Access token may be expired or invalid"
    if error.status_code == 403:
        return 403, "WhatsApp API access denied", "Check permissions for your WhatsApp Business account"
    if error.status_code == 404:
        return 404, "WhatsApp Business phone number not found", "Verify the phone number ID is correct"
    return 500, "Failed to send WhatsApp message", error.details
