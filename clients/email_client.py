"""
Email gateway client for sending emails via HTTP gateway.

Uses HMAC-SHA256 signature for request authentication. Failures are
raised as EmailGatewayError with a transient flag so callers can decide
whether to retry.
"""

import hashlib
import hmac
import json
import logging

import requests

from clients.gateway_errors import GatewayError, is_transient_exception, is_transient_status

logger = logging.getLogger(__name__)


class EmailGatewayError(GatewayError):
    """Raised when email gateway request fails."""


class EmailGatewayClient:
    """Send emails via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout: float = 10):
        """
        Initialize with gateway credentials.

        Args:
            gateway_url: Full URL to the email gateway endpoint
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            timeout: Request timeout in seconds

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.timeout = timeout

    def _sign_and_send(self, payload: dict) -> dict:
        """
        Sign payload with HMAC and send to gateway.

        Args:
            payload: Dict to send as JSON

        Returns:
            Parsed gateway response

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        signature = hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": signature,
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(
                f"Connection failed: {e}", transient=is_transient_exception(e)
            ) from e

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Email gateway returned invalid JSON: {response.text[:300]}")
            raise EmailGatewayError(
                "Invalid response from gateway",
                transient=is_transient_status(response.status_code),
                status_code=response.status_code,
            )

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error ({response.status_code}): {error_msg}")
            raise EmailGatewayError(
                f"Gateway error: {error_msg}",
                transient=is_transient_status(response.status_code),
                status_code=response.status_code,
            )

        return response_data

    def send_email(self, to: str, subject: str, body: str) -> str | None:
        """
        Send a plain-text email via gateway.

        Args:
            to: Recipient email address
            subject: Email subject line
            body: Plain text email body

        Returns:
            Gateway message id, if the gateway reports one

        Raises:
            EmailGatewayError: On gateway failure
        """
        payload = {
            "type": "custom",
            "email": to,
            "subject": subject,
            "body": body,
            "sender": "system",
        }
        response_data = self._sign_and_send(payload)
        message_id = response_data.get("message_id")
        logger.info(f"Email sent to {to}: {subject}")
        return message_id
