"""
SMS gateway client (Infobip-compatible "advanced text" API).

Sends one single-destination message per call. The gateway accepts the
request and reports a per-message status group; REJECTED/UNDELIVERABLE
groups are permanent failures, anything HTTP-level is classified by status.
"""

import logging
import re

import requests

from clients.gateway_errors import GatewayError, is_transient_exception, is_transient_status

logger = logging.getLogger(__name__)

_ACCEPTED_GROUPS = {"PENDING", "DELIVERED"}
_NON_DIGITS = re.compile(r"\D")


class SMSGatewayError(GatewayError):
    """Raised when SMS gateway request fails."""


def format_phone_number(phone: str, default_country_code: str) -> str:
    """
    Normalize a local or international number to E.164.

    "067 051 141" with country code "382" becomes "+38267051141".

    Raises:
        ValueError: If the number has no digits
    """
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        raise ValueError(f"Phone number has no digits: {phone!r}")

    if phone.strip().startswith("+") or digits.startswith(default_country_code):
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if digits.startswith("0"):
        return f"+{default_country_code}{digits[1:]}"
    return f"+{default_country_code}{digits}"


class SMSGatewayClient:
    """
    Send SMS via HTTP gateway with App key authentication.

    Usage:
        client = SMSGatewayClient(base_url, api_key, sender_id="+38267051141")
        message_id = client.send_sms("067051141", "Your part has arrived.")
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        sender_id: str,
        default_country_code: str = "382",
        timeout: float = 10,
    ):
        """
        Initialize with gateway credentials.

        Raises:
            ValueError: If any credential is empty
        """
        if not base_url:
            raise ValueError("base_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not sender_id:
            raise ValueError("sender_id is required")

        self.endpoint = f"{base_url.rstrip('/')}/sms/2/text/advanced"
        self.api_key = api_key
        self.sender_id = sender_id
        self.default_country_code = default_country_code
        self.timeout = timeout

    def send_sms(self, phone: str, message: str) -> str | None:
        """
        Send one SMS.

        Args:
            phone: Destination number, local or international
            message: Message text

        Returns:
            Gateway message id

        Raises:
            SMSGatewayError: On gateway failure or rejection
        """
        try:
            destination = format_phone_number(phone, self.default_country_code)
        except ValueError as e:
            raise SMSGatewayError(str(e), transient=False) from e

        payload = {
            "messages": [
                {
                    "from": self.sender_id,
                    "destinations": [{"to": destination}],
                    "text": message,
                }
            ]
        }
        headers = {
            "Authorization": f"App {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            response = requests.post(
                self.endpoint, json=payload, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"SMS gateway connection failed: {e}")
            raise SMSGatewayError(
                f"Connection failed: {e}", transient=is_transient_exception(e)
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            response_data = {}

        if response.status_code >= 300:
            error_msg = (
                response_data.get("requestError", {})
                .get("serviceException", {})
                .get("text", f"HTTP {response.status_code}")
            )
            logger.error(f"SMS gateway error ({response.status_code}): {error_msg}")
            raise SMSGatewayError(
                f"Gateway error: {error_msg}",
                transient=is_transient_status(response.status_code),
                status_code=response.status_code,
            )

        messages = response_data.get("messages") or []
        if not messages:
            raise SMSGatewayError(
                "Unexpected response from gateway", transient=True, status_code=response.status_code
            )

        status = messages[0].get("status", {})
        group = status.get("groupName", "")
        if group not in _ACCEPTED_GROUPS:
            description = status.get("description", "Unknown status")
            logger.error(f"SMS to {destination} rejected: {group} {description}")
            raise SMSGatewayError(
                f"Message rejected: {description}", transient=False, status_code=response.status_code
            )

        message_id = messages[0].get("messageId")
        logger.info(f"SMS sent to {destination} (message_id={message_id})")
        return message_id
