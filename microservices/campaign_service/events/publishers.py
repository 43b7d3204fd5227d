"""
Campaign Event Publishers

Publishes events to NATS JetStream.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..protocols import EventBusProtocol
from .models import (
    BehavioralEventData,
    CampaignCancelledEventData,
    CampaignCompletedEventData,
    CampaignEventType,
    CampaignScheduledEventData,
    CampaignSendingEventData,
    ContactConsentEventData,
)

logger = logging.getLogger(__name__)


class CampaignEventPublisher:
    """Publisher for campaign service events"""

    def __init__(self, event_bus: Optional[EventBusProtocol] = None):
        self.event_bus = event_bus
        self.source = "campaign_service"

    async def publish(
        self,
        event_type: CampaignEventType,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to NATS.

        Args:
            event_type: The event type enum
            data: Event data payload

        Returns:
            True if published successfully, False otherwise
        """
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = {
                "event_type": event_type.value,
                "source": self.source,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": data,
            }

            published = await self.event_bus.publish(event_type.value, event)
            logger.debug(f"Published event: {event_type.value}")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_campaign_scheduled(
        self,
        campaign_id: str,
        owner_id: str,
        scheduled_at: datetime,
        job_id: str,
    ) -> bool:
        """Publish campaign.scheduled event"""
        data = CampaignScheduledEventData(
            campaign_id=campaign_id,
            owner_id=owner_id,
            scheduled_at=scheduled_at.isoformat(),
            job_id=job_id,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(CampaignEventType.SCHEDULED, data.model_dump(mode="json"))

    async def publish_campaign_sending(
        self,
        campaign_id: str,
        channel: str,
        recipient_count: int,
    ) -> bool:
        """Publish campaign.sending event"""
        data = CampaignSendingEventData(
            campaign_id=campaign_id,
            channel=channel,
            recipient_count=recipient_count,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(CampaignEventType.SENDING, data.model_dump(mode="json"))

    async def publish_campaign_finished(
        self,
        campaign_id: str,
        status: str,
        total_contacts: int = 0,
        success_count: int = 0,
        failure_count: int = 0,
        reason: Optional[str] = None,
    ) -> bool:
        """Publish campaign.completed or campaign.failed"""
        data = CampaignCompletedEventData(
            campaign_id=campaign_id,
            status=status,
            total_contacts=total_contacts,
            success_count=success_count,
            failure_count=failure_count,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        )
        event_type = (
            CampaignEventType.FAILED if status == "failed" else CampaignEventType.COMPLETED
        )
        return await self.publish(event_type, data.model_dump(mode="json"))

    async def publish_campaign_cancelled(self, campaign_id: str) -> bool:
        """Publish campaign.cancelled event"""
        data = CampaignCancelledEventData(
            campaign_id=campaign_id,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(CampaignEventType.CANCELLED, data.model_dump(mode="json"))

    # ====================
    # Consent Events
    # ====================

    async def publish_consent_changed(
        self,
        contact_id: str,
        owner_id: str,
        scope: str,
        unsubscribed: bool,
    ) -> bool:
        """Publish campaign.contact.unsubscribed or campaign.contact.resubscribed"""
        data = ContactConsentEventData(
            contact_id=contact_id,
            owner_id=owner_id,
            scope=scope,
            timestamp=datetime.now(timezone.utc),
        )
        event_type = (
            CampaignEventType.CONTACT_UNSUBSCRIBED
            if unsubscribed
            else CampaignEventType.CONTACT_RESUBSCRIBED
        )
        return await self.publish(event_type, data.model_dump(mode="json"))


class BehavioralEventPublisher:
    """
    Bounded fire-and-forget outbox for automation events.

    emit() never awaits: events are queued and a background task drains them
    to the event bus. When the queue is full the event is dropped with a
    warning. Bus errors are logged and never reach the caller.
    """

    def __init__(
        self,
        event_bus: Optional[EventBusProtocol] = None,
        max_queue_size: int = 1000,
    ):
        self.event_bus = event_bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._task: Optional[asyncio.Task] = None
        self.published_count = 0
        self.dropped_count = 0

    def emit(self, contact_id: str, event_type: str, data: Dict[str, Any]) -> bool:
        """Queue a behavioral event; returns False when it was dropped"""
        payload = BehavioralEventData(
            contact_id=contact_id,
            event_type=event_type,
            data=data,
            timestamp=datetime.now(timezone.utc),
        ).model_dump(mode="json")

        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.warning(
                f"Behavioral event queue full, dropping {event_type} for contact {contact_id}"
            )
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the background drain task"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain_loop())
            logger.info("Behavioral event publisher started")

    async def _drain_loop(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self._publish(payload)
            finally:
                self._queue.task_done()

    async def _publish(self, payload: Dict[str, Any]) -> None:
        if not self.event_bus:
            logger.debug("Event bus not configured, skipping behavioral event")
            return
        try:
            if await self.event_bus.publish(CampaignEventType.BEHAVIORAL.value, payload):
                self.published_count += 1
            else:
                logger.warning(f"Behavioral event not published: {payload['event_type']}")
        except Exception as e:
            logger.error(f"Failed to publish behavioral event {payload['event_type']}: {e}")

    async def flush(self) -> List[Dict[str, Any]]:
        """Publish everything queued so far and return the drained payloads"""
        drained: List[Dict[str, Any]] = []
        while not self._queue.empty():
            payload = self._queue.get_nowait()
            try:
                await self._publish(payload)
                drained.append(payload)
            finally:
                self._queue.task_done()
        return drained

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain what is left within timeout, then stop the background task"""
        if self._task is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Behavioral event publisher stopped with {self.pending} events pending"
                )
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Behavioral event publisher stopped")
