import json
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from tools.errors import ConfigurationError, DeliveryError

DEFAULT_USER_AGENT = "LeadIntakeRelay/1.0"


class CrmWebhookClient:
    """Posts canonical lead records to a CRM inbound-webhook URL.

    One call is one attempt; retries belong to the RetryEngine. The client
    is bound to a single destination and knows nothing about retry state.
    """

    def __init__(
        self,
        webhook_url: str,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not webhook_url:
            raise ConfigurationError("webhook_url is required")
        self.webhook_url = webhook_url
        self.user_agent = user_agent
        self.headers = dict(headers or {})
        self._transport = transport

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
        }
        headers.update(self.headers)
        headers.update(extra or {})
        return headers

    async def __call__(self, payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send one delivery attempt.

        Args:
            payload: JSON-serializable record
            options: ``timeout`` in seconds and optional ``headers``

        Returns:
            Decoded JSON response body, or {} when the body is not JSON

        Raises:
            DeliveryError: on any non-2xx response
            httpx.TransportError: on network failures and timeouts
        """
        options = options or {}
        timeout = options.get("timeout", 10.0)

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await client.post(
                self.webhook_url,
                headers=self._get_headers(options.get("headers")),
                json=payload,
            )

        if not response.is_success:
            raise DeliveryError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            return response.json()
        except json.JSONDecodeError:
            logger.debug(f"CRM webhook returned a non-JSON body ({len(response.content)} bytes)")
            return {}

    def describe(self) -> Dict[str, Any]:
        return {
            "webhook_url": self.webhook_url,
            "user_agent": self.user_agent,
            "supported_methods": ["POST"],
            "expected_content_type": "application/json",
        }
