"""
Notification Relay
Formats lead messages and dispatches them through one of two transports:

(a) RestTransport     - POST {base_url}/api/send-whatsapp
(b) FunctionTransport - the sendWhatsAppMessage callable function, invoked
                        over HTTP or in-process

(a) is preferred when a base URL is configured; any failure of (a) falls
back to (b). Template sends and status lookups only exist on (b).
"""
import os
import httpx
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List, Callable, Awaitable

from message_templates import format_message
from whatsapp import format_phone_number

TRANSPORT_TIMEOUT = 30.0

FunctionInvoker = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class DeliveryError(Exception):
    """A transport could not deliver the message"""

    def __init__(self, message: str, transport: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.transport = transport
        self.status_code = status_code


@asynccontextmanager
async def _client_session(client: Optional[httpx.AsyncClient]):
    if client is not None:
        yield client
    else:
        async with httpx.AsyncClient(timeout=TRANSPORT_TIMEOUT) as session:
            yield session


class RestTransport:
    """Same-origin REST endpoint backed by the WhatsApp Cloud API"""
    name = "rest"

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def send(self, phone: str, message: Optional[str] = None,
                   template_name: Optional[str] = None) -> Dict[str, Any]:
        body = {"phoneNumber": phone, "message": message, "templateName": template_name}
        async with _client_session(self.client) as client:
            try:
                response = await client.post(f"{self.base_url}/api/send-whatsapp", json=body)
            except httpx.HTTPError as e:
                raise DeliveryError(f"REST transport request failed: {e}", transport=self.name)

        if response.status_code >= 400:
            raise DeliveryError(
                f"REST transport returned {response.status_code}: {response.text}",
                transport=self.name,
                status_code=response.status_code
            )
        return response.json()


def http_function_invoker(functions_url: str, id_token: Optional[str] = None,
                          client: Optional[httpx.AsyncClient] = None) -> FunctionInvoker:
    """Invoke callable functions at {functions_url}/{name} with a {"data": ...} envelope"""
    base_url = functions_url.rstrip("/")

    async def invoke(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {id_token}"} if id_token else {}
        async with _client_session(client) as session:
            try:
                response = await session.post(f"{base_url}/{name}", json={"data": data}, headers=headers)
            except httpx.HTTPError as e:
                raise DeliveryError(f"Function '{name}' request failed: {e}", transport="functions")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or "error" in body:
            error = body.get("error") or {}
            raise DeliveryError(
                f"Function '{name}' failed: {error.get('status', response.status_code)} {error.get('message', '')}".strip(),
                transport="functions",
                status_code=response.status_code
            )
        return body.get("result", {})

    return invoke


class FunctionTransport:
    """Callable RPC to the backend send functions"""
    name = "functions"

    def __init__(self, invoke: FunctionInvoker):
        self.invoke = invoke

    async def send(self, phone: str, message: Optional[str] = None,
                   template_name: Optional[str] = None) -> Dict[str, Any]:
        return await self.invoke("sendWhatsAppMessage", {
            "phoneNumber": phone,
            "message": message,
            "templateName": template_name
        })


class NotificationRelay:
    """Transport selection with fallback from REST to functions"""

    def __init__(self, rest: Optional[RestTransport] = None, functions: Optional[FunctionTransport] = None):
        self.rest = rest
        self.functions = functions

    @classmethod
    def from_env(cls, client: Optional[httpx.AsyncClient] = None,
                 functions: Optional[FunctionTransport] = None) -> "NotificationRelay":
        """
        WHATSAPP_RELAY_BASE_URL enables the REST transport.
        WHATSAPP_FUNCTIONS_URL / WHATSAPP_FUNCTIONS_TOKEN configure the
        HTTP function transport unless one is passed in.
        """
        base_url = os.getenv("WHATSAPP_RELAY_BASE_URL", "").strip()
        rest = RestTransport(base_url, client=client) if base_url else None

        if functions is None:
            functions_url = os.getenv("WHATSAPP_FUNCTIONS_URL", "").strip()
            if functions_url:
                functions = FunctionTransport(http_function_invoker(
                    functions_url, os.getenv("WHATSAPP_FUNCTIONS_TOKEN"), client=client
                ))
        return cls(rest=rest, functions=functions)

    def _require_functions(self) -> FunctionTransport:
        if self.functions is None:
            raise DeliveryError("No WhatsApp function transport configured", transport="functions")
        return self.functions

    async def send_message(self, phone: str, message: Optional[str] = None,
                           template_name: Optional[str] = None) -> Dict[str, Any]:
        """Send a text message: REST first when configured, functions otherwise"""
        if self.rest is not None:
            try:
                return await self.rest.send(phone, message, template_name)
            except DeliveryError as e:
                print(f"[Relay] REST transport failed, falling back to functions: {e}")

        return await self._require_functions().send(phone, message, template_name)

    async def send_template_message(self, phone: str, template_name: str, language_code: str = "en",
                                    components: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Send a pre-approved template message"""
        return await self._require_functions().invoke("sendTemplateMessage", {
            "phoneNumber": phone,
            "templateName": template_name,
            "languageCode": language_code,
            "components": components or []
        })

    async def get_message_status(self, message_id: str) -> Dict[str, Any]:
        return await self._require_functions().invoke("getMessageStatus", {"messageId": message_id})

    async def send_lead_message(self, lead: Dict[str, Any], template_key: str,
                                substitutions: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Fill a message template for a lead and send it.

        Args:
            lead: booking/lead record with whatsapp_number or phone_number
            template_key: key from MESSAGE_TEMPLATES
            substitutions: placeholder values, e.g. {"name": "Asha"}
        """
        message = format_message(template_key, substitutions)
        raw_phone = lead.get("whatsapp_number") or lead.get("phone_number")
        if not raw_phone:
            raise DeliveryError("Lead has no WhatsApp number")

        phone = format_phone_number(raw_phone)
        return await self.send_message(phone, message, template_key)
