from typing import Any, Optional

import httpx

from gateway.logging_config import get_logger

logger = get_logger("forwarder")


class ForwarderError(Exception):
    """Automation webhook could not produce a reply.

    kind is one of "unavailable", "timeout", "bad_response".
    """

    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"Forwarder {kind}: {detail}" if detail else f"Forwarder {kind}")


def extract_reply(data: Any) -> Optional[str]:
    """Pull reply text out of a webhook response body."""
    if isinstance(data, str):
        return data.strip() or None
    if isinstance(data, dict):
        reply = data.get("message") or data.get("reply")
        if isinstance(reply, str) and reply.strip():
            return reply.strip()
    return None


class Forwarder:
    """Submits live chat messages to the automation webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "Forwarder":
        return cls(webhook_url=settings.forwarder_webhook_url, timeout=settings.forwarder_timeout_seconds)

    async def forward(self, payload: dict) -> Optional[str]:
        """POST payload to the webhook and return its reply text, if any."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException as e:
            raise ForwarderError("timeout", str(e)) from e
        except httpx.HTTPError as e:
            raise ForwarderError("unavailable", str(e)) from e

        if response.status_code >= 500:
            raise ForwarderError("unavailable", f"status {response.status_code}")
        if not response.is_success:
            raise ForwarderError("bad_response", f"status {response.status_code}")

        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError:
            data = response.text

        reply = extract_reply(data)
        if reply is None:
            logger.info("No reply message in webhook response", extra={"context": {"user_id": payload.get("from")}})
        return reply
