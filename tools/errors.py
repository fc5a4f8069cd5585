import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx


class ConfigurationError(Exception):
    """Raised at startup when settings or rule sets are malformed."""


class RuleConfigurationError(ConfigurationError):
    """Raised when a field rule set or override has an invalid shape."""


class DeliveryError(Exception):
    """Raised by delivery clients when one attempt fails.

    Carries the HTTP status code when the destination answered with a
    non-2xx response, so the retry engine can classify it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class MappingError:
    """A per-field mapping problem. Collected on the result, never raised."""
    field: str
    reason: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"field": self.field, "reason": self.reason}
        if self.value is not None:
            data["value"] = self.value
        return data


class ErrorKind:
    """Delivery error kinds. Status-bearing kinds are built per status code."""
    NETWORK_ERROR = "NETWORK_ERROR"
    GATEWAY_TIMEOUT = "504_TIMEOUT"
    REQUEST_TIMEOUT = "408_TIMEOUT"
    RATE_LIMITED = "429_RATE_LIMITED"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    CORS_ERROR = "CORS_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    MAX_QUEUE_RETRIES_EXCEEDED = "MAX_QUEUE_RETRIES_EXCEEDED"

    @staticmethod
    def server_error(status: int) -> str:
        return f"{status}_SERVER_ERROR"

    @staticmethod
    def client_error(status: int) -> str:
        return f"{status}_CLIENT_ERROR"


DEFAULT_RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    "500_SERVER_ERROR",
    "502_SERVER_ERROR",
    "503_SERVER_ERROR",
    ErrorKind.GATEWAY_TIMEOUT,
    ErrorKind.RATE_LIMITED,
})


@dataclass
class ErrorAnalysis:
    """Outcome of classifying one failed delivery attempt."""
    kind: str
    retryable: bool
    severity: str
    message: str
    status_code: Optional[int] = None
    original: Optional[BaseException] = field(default=None, repr=False)


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, DeliveryError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def classify_error(error: BaseException, retryable_kinds=frozenset()) -> ErrorAnalysis:
    """
    Classify a raised delivery failure into an error kind.

    Args:
        error: Exception raised by the delivery client
        retryable_kinds: Extra kinds the caller wants retried; unioned with
            the default decision, never used to make a kind non-retryable

    Returns:
        ErrorAnalysis with kind, retryability and severity
    """
    message = str(error) or type(error).__name__
    status = _status_of(error)

    if status is not None:
        if status >= 500:
            kind, retryable, severity = ErrorKind.server_error(status), True, "high"
            if status == 504:
                kind = ErrorKind.GATEWAY_TIMEOUT
        elif status == 429:
            kind, retryable, severity = ErrorKind.RATE_LIMITED, True, "medium"
        elif status == 408:
            kind, retryable, severity = ErrorKind.REQUEST_TIMEOUT, True, "medium"
        elif status >= 400:
            kind, retryable, severity = ErrorKind.client_error(status), False, "low"
        else:
            kind, retryable, severity = ErrorKind.UNKNOWN_ERROR, False, "medium"
    elif isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        kind, retryable, severity = ErrorKind.GATEWAY_TIMEOUT, True, "medium"
    elif isinstance(error, (httpx.TransportError, ConnectionError)):
        kind, retryable, severity = ErrorKind.NETWORK_ERROR, True, "high"
    elif isinstance(error, json.JSONDecodeError) or "JSON" in message or "parse" in message.lower():
        kind, retryable, severity = ErrorKind.JSON_PARSE_ERROR, False, "low"
    elif "CORS" in message:
        kind, retryable, severity = ErrorKind.CORS_ERROR, False, "high"
    elif "timeout" in message.lower():
        kind, retryable, severity = ErrorKind.GATEWAY_TIMEOUT, True, "medium"
    else:
        kind, retryable, severity = ErrorKind.UNKNOWN_ERROR, False, "medium"

    if kind in retryable_kinds:
        retryable = True

    return ErrorAnalysis(
        kind=kind,
        retryable=retryable,
        severity=severity,
        message=message,
        status_code=status,
        original=error,
    )
