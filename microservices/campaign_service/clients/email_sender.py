"""
Email Relay Client

Channel sender that hands rendered campaign email to an HTTP mail relay.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import DispatchConfig

from ..models import OutboundMessage, SendResult

logger = logging.getLogger(__name__)


class EmailSenderClient:
    """Client for the email relay"""

    def __init__(self, config: Optional[DispatchConfig] = None):
        self.config = config or DispatchConfig.from_env()
        self.send_url = self.config.email_relay_url
        self.timeout = self.config.http_timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.email_api_key:
            headers["Authorization"] = f"Bearer {self.config.email_api_key}"
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.send_url, json=payload, headers=self._headers())
            response.raise_for_status()
            return response.json() if response.content else {}

    async def send(self, message: OutboundMessage, sender: str) -> SendResult:
        """Send one email through the relay"""
        payload = {
            "message_id": message.message_id,
            "from": self.config.email_from_address,
            "from_name": sender,
            "to": message.recipient_address,
            "subject": message.subject or "",
            "html": message.content,
        }

        try:
            data = await self._post(payload)
        except httpx.HTTPStatusError as e:
            logger.error(f"Email relay rejected message {message.message_id}: {e.response.text}")
            return SendResult(
                success=False,
                provider_status_code=str(e.response.status_code),
                provider_message=e.response.text or f"Email relay HTTP {e.response.status_code}",
            )
        except httpx.TransportError as e:
            logger.error(f"Email relay unreachable for message {message.message_id}: {e}")
            return SendResult(
                success=False,
                provider_status_code="transport",
                provider_message=f"Email relay unreachable: {e}",
            )

        return SendResult(
            success=True,
            provider_status_code="accepted",
            provider_message_id=data.get("id") or data.get("message_id"),
            raw=data,
        )
