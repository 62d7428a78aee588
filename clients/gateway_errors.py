"""Errors shared by the outbound HTTP gateway clients."""

import requests


class GatewayError(Exception):
    """
    Outbound gateway request failed.

    transient=True means the same request may succeed later (timeouts,
    connection resets, 5xx, 429). transient=False means the gateway refused
    this message and retrying will not help.
    """

    def __init__(self, message: str, transient: bool, status_code: int | None = None):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)


def is_transient_status(status_code: int) -> bool:
    """HTTP statuses worth retrying."""
    return status_code >= 500 or status_code in (408, 429)


def is_transient_exception(exc: requests.exceptions.RequestException) -> bool:
    """Network-level failures worth retrying."""
    return isinstance(
        exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)
    )
