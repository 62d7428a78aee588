"""
Channel adapters: the only blocking calls in the notification path.

Each adapter wraps one gateway client behind a common deliver() contract and
translates gateway failures into ChannelTransientError (retry) or
ChannelPermanentError (record and stop).
"""

import logging
from abc import ABC, abstractmethod

from clients.email_client import EmailGatewayClient
from clients.gateway_errors import GatewayError
from clients.sms_client import SMSGatewayClient
from core.exceptions import ChannelPermanentError, ChannelTransientError
from core.models import Channel
from core.templates import RenderedMessage

logger = logging.getLogger(__name__)


def _translate(error: GatewayError) -> Exception:
    if error.transient:
        return ChannelTransientError(str(error))
    return ChannelPermanentError(str(error))


class ChannelAdapter(ABC):
    """Sends one rendered message to one address."""

    channel: Channel

    @abstractmethod
    def deliver(self, address: str, message: RenderedMessage) -> str | None:
        """
        Send a rendered message.

        Returns:
            Provider message id, if any

        Raises:
            ChannelTransientError: Retryable failure
            ChannelPermanentError: Non-retryable failure
        """


class SMSChannel(ChannelAdapter):
    """SendSMS(phone, body) over the SMS gateway."""

    channel = Channel.SMS

    def __init__(self, client: SMSGatewayClient):
        self._client = client

    def send_sms(self, phone: str, body: str) -> str | None:
        try:
            return self._client.send_sms(phone, body)
        except GatewayError as e:
            raise _translate(e) from e

    def deliver(self, address: str, message: RenderedMessage) -> str | None:
        return self.send_sms(address, message.body)


class EmailChannel(ChannelAdapter):
    """SendEmail(address, subject, body) over the email gateway."""

    channel = Channel.EMAIL

    def __init__(self, client: EmailGatewayClient):
        self._client = client

    def send_email(self, address: str, subject: str, body: str) -> str | None:
        try:
            return self._client.send_email(to=address, subject=subject, body=body)
        except GatewayError as e:
            raise _translate(e) from e

    def deliver(self, address: str, message: RenderedMessage) -> str | None:
        return self.send_email(address, message.subject or "", message.body)
