"""
NATS Event Bus

Event-driven messaging for the campaign platform on NATS JetStream (nats-py).
Events are JSON documents published on a subject equal to the event type.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext

from core.config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


logger = logging.getLogger(__name__)


class NATSEventBus:
    """
    NATS JetStream event bus.

    Streams are created lazily per subject prefix (campaign.* -> campaign-stream).
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as the connection name)
            config: Optional infrastructure config
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.url = self.config.resolved_nats_url

        self._client: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._streams: List[str] = []
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.url}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._client = await nats.connect(
                servers=[self.url],
                name=self.service_name,
                max_reconnect_attempts=5,
            )
            self._js = self._client.jetstream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def _ensure_stream(self, subject: str) -> str:
        prefix = subject.split(".")[0]
        stream_name = f"{prefix}-stream"
        if stream_name in self._streams:
            return stream_name
        try:
            await self._js.add_stream(name=stream_name, subjects=[f"{prefix}.>"])
        except Exception as e:
            # Stream may already exist with a different config
            logger.debug(f"Stream creation note: {e}")
        self._streams.append(stream_name)
        return stream_name

    async def publish(self, subject: str, payload: Dict[str, Any]) -> bool:
        """Publish a JSON payload on a subject"""
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            stream_name = await self._ensure_stream(subject)
            data = json.dumps(payload, cls=DecimalEncoder).encode()
            ack = await self._js.publish(subject, data)
            logger.debug(f"Published {subject} to stream {stream_name}, seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing to {subject}: {e}")
            return False

    async def close(self):
        """Drain and close the NATS connection"""
        if self._client:
            try:
                await self._client.drain()
            except Exception as e:
                logger.warning(f"Error draining NATS connection: {e}")
            self._client = None
            self._js = None

        self._is_connected = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._is_connected
