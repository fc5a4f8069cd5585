import pytest
import asyncio
import json
import os
import sys

import httpx

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tools.errors import DeliveryError, ErrorKind, MappingError, classify_error


class TestClassifyError:
    """Test delivery error classification."""

    @pytest.mark.parametrize("status, kind, retryable", [
        (500, "500_SERVER_ERROR", True),
        (503, "503_SERVER_ERROR", True),
        (504, "504_TIMEOUT", True),
        (429, "429_RATE_LIMITED", True),
        (408, "408_TIMEOUT", True),
        (400, "400_CLIENT_ERROR", False),
        (404, "404_CLIENT_ERROR", False),
    ])
    def test_status_codes(self, status, kind, retryable):
        analysis = classify_error(DeliveryError(f"HTTP {status}", status_code=status))

        assert analysis.kind == kind
        assert analysis.retryable is retryable
        assert analysis.status_code == status

    def test_httpx_status_error(self):
        request = httpx.Request("POST", "https://crm.example.com/hook")
        response = httpx.Response(502, request=request)
        error = httpx.HTTPStatusError("Bad gateway", request=request, response=response)

        assert classify_error(error).kind == "502_SERVER_ERROR"

    def test_network_errors(self):
        assert classify_error(httpx.ConnectError("connection refused")).kind == ErrorKind.NETWORK_ERROR
        assert classify_error(ConnectionResetError()).kind == ErrorKind.NETWORK_ERROR

    def test_timeouts(self):
        assert classify_error(httpx.ReadTimeout("read timed out")).kind == ErrorKind.GATEWAY_TIMEOUT
        assert classify_error(asyncio.TimeoutError()).kind == ErrorKind.GATEWAY_TIMEOUT

    def test_parse_errors(self):
        error = json.JSONDecodeError("Expecting value", "<html>", 0)

        analysis = classify_error(error)

        assert analysis.kind == ErrorKind.JSON_PARSE_ERROR
        assert analysis.retryable is False

    def test_unknown(self):
        analysis = classify_error(RuntimeError("something odd"))

        assert analysis.kind == ErrorKind.UNKNOWN_ERROR
        assert analysis.retryable is False
        assert analysis.message == "something odd"

    def test_retryable_kinds_only_widen(self):
        """Test the caller list adds retryable kinds but never removes them."""
        assert classify_error(DeliveryError("x", status_code=400), {"400_CLIENT_ERROR"}).retryable is True
        assert classify_error(DeliveryError("x", status_code=500), {"400_CLIENT_ERROR"}).retryable is True


class TestMappingError:

    def test_to_dict(self):
        assert MappingError("email", "Invalid email format", "x").to_dict() == {
            "field": "email", "reason": "Invalid email format", "value": "x"
        }
        assert MappingError("phone", "Required field missing").to_dict() == {
            "field": "phone", "reason": "Required field missing"
        }

if __name__ == "__main__":
    # Run tests
    pytest.main([__file__, "-v"])
