"""
Error types raised by the remote gateway, and translation from SDK errors.
"""

from __future__ import annotations

from botocore import exceptions as botocore_exceptions
from google.api_core import exceptions as google_exceptions
import requests

_TRANSIENT_GOOGLE_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    google_exceptions.Aborted,
    google_exceptions.GatewayTimeout,
    google_exceptions.RetryError,
)

_TRANSIENT_BOTOCORE_ERRORS = (
    botocore_exceptions.EndpointConnectionError,
    botocore_exceptions.ConnectionClosedError,
    botocore_exceptions.ReadTimeoutError,
    botocore_exceptions.ConnectTimeoutError,
)

_THROTTLING_CODES = {"Throttling", "ThrottlingException", "SlowDown", "RequestTimeout"}


class GatewayError(Exception):
    """
    A failed read, write, delete, upload or download.

    `transient` marks failures worth retrying (network, unavailable, deadline)
    as opposed to permanent ones (permission, not found, bad request).
    """

    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


def translate_error(exc: Exception) -> GatewayError:
    """Maps an SDK or transport exception onto a GatewayError."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, _TRANSIENT_GOOGLE_ERRORS):
        return GatewayError(str(exc), transient=True)
    if isinstance(exc, google_exceptions.GoogleAPICallError):
        return GatewayError(str(exc), transient=False)
    if isinstance(exc, _TRANSIENT_BOTOCORE_ERRORS):
        return GatewayError(str(exc), transient=True)
    if isinstance(exc, botocore_exceptions.ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        transient = status >= 500 or error.get("Code") in _THROTTLING_CODES
        return GatewayError(str(exc), transient=transient)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return GatewayError(str(exc), transient=True)
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else 0
        return GatewayError(str(exc), transient=status >= 500 or status == 429)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return GatewayError(str(exc), transient=True)
    return GatewayError(f"{type(exc).__name__}: {exc}", transient=False)
