from typing import Optional

import httpx

from gateway.logging_config import get_logger

logger = get_logger("dispatcher")

USER_ID_SUFFIX = "@c.us"


def normalize_user_id(raw_user_id: Optional[str]) -> Optional[str]:
    """Turn a bare phone number into a chat id; leave full ids untouched."""
    user_id = str(raw_user_id or "").strip()
    if not user_id:
        return None
    if "@" in user_id:
        return user_id
    return f"{user_id}{USER_ID_SUFFIX}"


class Dispatcher:
    """Delivers outbound text to a chat participant through the transport service."""

    def __init__(
        self,
        api_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.token = token
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "Dispatcher":
        return cls(
            api_url=settings.transport_api_url,
            token=settings.transport_api_token,
            timeout=settings.transport_timeout_seconds,
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def send(self, user_id: str, text: str) -> bool:
        """Send text to user_id. Never raises; returns False on any failure."""
        chat_id = normalize_user_id(user_id)
        if not chat_id or not text:
            logger.warning(f"Dispatcher.send: missing user_id={user_id!r} or text")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.api_url,
                    json={"chatId": chat_id, "message": text.strip()},
                    headers=self._headers(),
                )
            if response.is_success:
                return True
            logger.warning(
                "Transport rejected message",
                extra={"context": {"user_id": chat_id, "status": response.status_code, "body": response.text[:200]}},
            )
            return False
        except httpx.HTTPError as e:
            logger.error(f"Dispatcher send failed for {chat_id}: {e}")
            return False
