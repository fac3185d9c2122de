import base64
import logging
import re
from typing import Any, Optional, Union

import requests

from .errors import DeliveryError, UpstreamError
from .pricing import format_money
from .settings import Settings

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:[^;,]+;base64,")


def strip_data_url(payload: str) -> str:
    return DATA_URL_PREFIX.sub("", payload, count=1)


def format_phone_number(phone_number: str) -> str:
    return re.sub(r"\D", "", phone_number or "")


def bill_caption(order: dict, currency: str = "£", business_name: str = "us") -> str:
    return (
        "📄 *Your Order Bill*\n"
        f"Order #: {order['orderNumber']}\n"
        f"Total Amount: {format_money(order['finalAmount'], currency)}\n"
        f"Status: {order['status'].upper()}\n\n"
        f"Thank you for choosing {business_name}! 🍽️\n\n"
        "For any queries, please contact us."
    )


class WhatsAppGateway:
    """
    Thin client for the external WhatsApp session service.

    The gateway does not own the provider session: it passes session
    operations through and reports failures, it never starts a session or
    retries a send on its own.
    """

    def __init__(self, settings: Settings, http: Optional[requests.Session] = None):
        self.base_url = settings.WHATSAPP_API_URL.rstrip("/")
        self.api_key = settings.WHATSAPP_API_KEY
        self.session_id = settings.WHATSAPP_SESSION_ID
        self.timeout = settings.WHATSAPP_TIMEOUT
        self.http = http or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _send(self, endpoint: str, method: str = "GET", json: Any = None) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.http.request(method, url, json=json, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("WhatsApp API unreachable at %s: %s", url, e)
            raise UpstreamError(f"WhatsApp API unreachable: {e}", detail=str(e)) from e
        if not response.ok:
            detail = self._error_detail(response)
            logger.error("WhatsApp API error %s on %s: %s", response.status_code, endpoint, detail)
            raise DeliveryError(f"WhatsApp API failed: {detail}", detail=detail)
        return response

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason or str(response.status_code)
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body)
        return str(body)

    def make_request(self, endpoint: str, method: str = "GET", json: Any = None) -> Any:
        response = self._send(endpoint, method, json)
        try:
            return response.json()
        except ValueError:
            raise UpstreamError(f"WhatsApp API returned a non-JSON body for {endpoint}")

    # Session pass-through

    def get_session_status(self) -> Any:
        return self.make_request(f"/session/status/{self.session_id}")

    def start_session(self) -> Any:
        return self.make_request(f"/session/start/{self.session_id}")

    def stop_session(self) -> Any:
        return self.make_request(f"/session/stop/{self.session_id}")

    def restart_session(self) -> Any:
        return self.make_request(f"/session/restart/{self.session_id}")

    def get_qr_code(self) -> Any:
        return self.make_request(f"/session/qr/{self.session_id}")

    def get_qr_code_image(self) -> bytes:
        return self._send(f"/session/qr/{self.session_id}/image").content

    def request_pairing_code(self, body: dict) -> Any:
        return self.make_request(f"/session/requestPairingCode/{self.session_id}", method="POST", json=body)

    def ping(self) -> Any:
        return self.make_request("/ping")

    # Messaging

    def send_message(self, phone_number: str, message: str) -> Any:
        payload = {"phoneNumber": format_phone_number(phone_number), "message": message}
        return self.make_request(f"/message/text/{self.session_id}", method="POST", json=payload)

    def send_image(
        self,
        phone_number: str,
        image: Union[bytes, str],
        filename: str = "image.png",
        caption: str = "",
        mimetype: str = "image/png",
    ) -> str:
        """Upload an image attachment and return the provider message id."""
        if isinstance(image, bytes):
            media = base64.b64encode(image).decode("ascii")
        else:
            media = strip_data_url(image)
        payload = {
            "phoneNumber": format_phone_number(phone_number),
            "mediaData": media,
            "mimeType": mimetype,
            "filename": filename,
            "caption": caption,
        }
        result = self.make_request(f"/message/media-base64/{self.session_id}", method="POST", json=payload)
        if isinstance(result, dict) and result.get("success") is False:
            detail = str(result.get("error") or result.get("message") or result)
            logger.error("WhatsApp API refused media send: %s", detail)
            raise DeliveryError(f"WhatsApp API failed: {detail}", detail=detail)
        message_id = self._message_id(result)
        if not message_id:
            raise DeliveryError("WhatsApp API did not return a message id", detail=str(result))
        return message_id

    @staticmethod
    def _message_id(result: Any) -> Optional[str]:
        if not isinstance(result, dict):
            return None
        for source in (result, result.get("data")):
            if isinstance(source, dict):
                value = source.get("messageId") or source.get("id")
                if value:
                    return str(value)
        return None
