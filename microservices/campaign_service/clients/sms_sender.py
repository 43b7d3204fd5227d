"""
SMS Gateway Client

Channel sender for the SMS gateway. The gateway answers with a numeric
status: positive values are the number of accepted messages, zero or
negative values are error codes.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import DispatchConfig

from ..models import OutboundMessage, SendResult

logger = logging.getLogger(__name__)


SMS_ERROR_MESSAGES = {
    "-1": "General provider error",
    "-2": "Invalid provider username or password",
    "-3": "Insufficient provider credit",
    "-4": "Invalid phone number",
    "-5": "Empty message",
    "-6": "Invalid sender name",
    "-10": "Message too long",
}


def describe_sms_status(status: Any, fallback: Optional[str] = None) -> str:
    """Human readable reason for a non-success gateway status"""
    code = str(status)
    if code in SMS_ERROR_MESSAGES:
        return SMS_ERROR_MESSAGES[code]
    return fallback or f"Unknown provider error ({code})"


def is_sms_success(status: Any) -> bool:
    try:
        return int(status) > 0
    except (TypeError, ValueError):
        return False


class SmsSenderClient:
    """Client for the SMS gateway"""

    def __init__(self, config: Optional[DispatchConfig] = None):
        self.config = config or DispatchConfig.from_env()
        self.send_url = self.config.sms_gateway_url
        self.timeout = self.config.http_timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.send_url, json=payload)
            response.raise_for_status()
            return response.json()

    async def send(self, message: OutboundMessage, sender: str) -> SendResult:
        """
        Send one SMS.

        Args:
            message: Outbound message with recipient phone and final content
            sender: Sender name shown to the recipient

        Returns:
            SendResult with the gateway status mapped to a reason
        """
        payload = {
            "key": self.config.sms_api_key,
            "user": self.config.sms_username,
            "pass": self.config.sms_password,
            "sender": sender,
            "recipient": message.recipient_address,
            "msg": message.content,
        }

        try:
            data = await self._post(payload)
        except httpx.HTTPStatusError as e:
            logger.error(f"SMS gateway rejected message {message.message_id}: {e.response.text}")
            return SendResult(
                success=False,
                provider_status_code=str(e.response.status_code),
                provider_message=f"SMS gateway HTTP {e.response.status_code}",
            )
        except httpx.TransportError as e:
            logger.error(f"SMS gateway unreachable for message {message.message_id}: {e}")
            return SendResult(
                success=False,
                provider_status_code="transport",
                provider_message=f"SMS gateway unreachable: {e}",
            )

        status = data.get("status")
        if is_sms_success(status):
            return SendResult(
                success=True,
                provider_status_code=str(status),
                provider_message=data.get("message"),
                raw=data,
            )

        reason = describe_sms_status(status, data.get("message"))
        logger.warning(f"SMS for message {message.message_id} failed: {reason}")
        return SendResult(
            success=False,
            provider_status_code=str(status),
            provider_message=reason,
            raw=data,
        )
