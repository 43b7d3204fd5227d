"""
Campaign Service Business Logic

Campaign state machine (DRAFT -> SCHEDULED -> SENDING -> SENT | FAILED),
job submission, dispatch aggregation and delivery receipts.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .batch_dispatcher import BatchDispatcher
from .events.publishers import CampaignEventPublisher
from .job_queue import CampaignJobQueue
from .models import (
    Campaign,
    CampaignStatus,
    DispatchSummary,
    Job,
    MessageStatus,
    OutboundMessage,
    RecipientStatus,
)
from .protocols import (
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    CampaignValidationError,
    InvalidCampaignStateError,
    MessageNotFoundError,
    TransientJobError,
)

logger = logging.getLogger(__name__)


class CampaignService:
    """Campaign service business logic layer"""

    DEFAULT_STUCK_AFTER = timedelta(minutes=60)

    # Receipt status -> recipient statuses it may advance from
    RECEIPT_TRANSITIONS = {
        MessageStatus.DELIVERED: (RecipientStatus.DELIVERED, [RecipientStatus.SENT]),
        MessageStatus.BOUNCED: (
            RecipientStatus.BOUNCED,
            [RecipientStatus.SENT, RecipientStatus.DELIVERED],
        ),
    }

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        dispatcher: BatchDispatcher,
        job_queue: Optional[CampaignJobQueue] = None,
        event_publisher: Optional[CampaignEventPublisher] = None,
        stuck_after: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.stuck_after = stuck_after or self.DEFAULT_STUCK_AFTER
        self.job_queue = job_queue
        self.event_publisher = event_publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _require_queue(self) -> CampaignJobQueue:
        if self.job_queue is None:
            raise RuntimeError("Job queue not configured")
        return self.job_queue

    async def get_campaign(self, campaign_id: str, owner_id: Optional[str] = None) -> Campaign:
        """Get campaign, optionally scoped to its owner"""
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign or (owner_id and campaign.owner_id != owner_id):
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        return campaign

    # ====================
    # Dispatch
    # ====================

    async def send(self, campaign_id: str, attempt: int = 1) -> DispatchSummary:
        """
        Run a campaign to completion.

        Moves the campaign to SENDING (stamping sent_at once), hands every
        recipient to the batch dispatcher and settles the campaign as SENT
        when at least one recipient succeeded, FAILED otherwise. A campaign
        already SENDING is re-entered without restamping sent_at; recipients
        resolved by an earlier attempt are not sent again.
        """
        campaign = await self.get_campaign(campaign_id)

        if campaign.status.is_terminal:
            raise InvalidCampaignStateError(
                f"Campaign {campaign_id} is already {campaign.status.value}",
                campaign.status,
            )

        recipients = await self.repository.get_recipients(campaign_id)
        if not recipients:
            raise CampaignValidationError("Campaign has no recipients", "recipients")

        if campaign.status == CampaignStatus.SENDING:
            logger.info(f"Campaign {campaign_id} re-entering dispatch (attempt {attempt})")
        else:
            updated = await self.repository.update_campaign_status(
                campaign_id, CampaignStatus.SENDING, sent_at=self._clock()
            )
            if updated is None:
                raise TransientJobError(f"Campaign {campaign_id} could not be moved to sending")
            campaign = updated
            if self.event_publisher:
                await self.event_publisher.publish_campaign_sending(
                    campaign_id, campaign.channel.value, len(recipients)
                )

        logger.info(
            f"Dispatching campaign {campaign_id} ({campaign.channel.value}) to {len(recipients)} recipients"
        )
        results = await self.dispatcher.dispatch(campaign, recipients, attempt=attempt)

        success_count = sum(1 for r in results if r.status.is_success)
        failure_count = len(results) - success_count
        status = CampaignStatus.FAILED if success_count == 0 else CampaignStatus.SENT

        await self.repository.update_campaign_status(
            campaign_id, status, completed_at=self._clock()
        )

        if self.event_publisher:
            await self.event_publisher.publish_campaign_finished(
                campaign_id,
                status.value,
                total_contacts=len(results),
                success_count=success_count,
                failure_count=failure_count,
            )

        logger.info(
            f"Campaign {campaign_id} {status.value}: {success_count} sent, {failure_count} failed"
        )
        return DispatchSummary(
            campaign_id=campaign_id,
            total_contacts=len(results),
            success_count=success_count,
            failure_count=failure_count,
            status=status,
            results=results,
        )

    async def mark_failed(self, campaign_id: str, reason: str) -> Optional[Campaign]:
        """Settle a campaign as FAILED after its job ran out of attempts"""
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            logger.warning(f"Cannot mark missing campaign {campaign_id} as failed")
            return None
        if campaign.status.is_terminal:
            logger.warning(
                f"Campaign {campaign_id} already {campaign.status.value}, not marking failed"
            )
            return campaign

        campaign = await self.repository.update_campaign_status(
            campaign_id, CampaignStatus.FAILED, completed_at=self._clock()
        )

        if self.event_publisher:
            await self.event_publisher.publish_campaign_finished(
                campaign_id, CampaignStatus.FAILED.value, reason=reason
            )

        logger.error(f"Campaign {campaign_id} marked failed: {reason}")
        return campaign

    # ====================
    # Job Submission
    # ====================

    async def _validate_dispatchable(self, campaign: Campaign) -> None:
        if campaign.status.is_terminal or campaign.status == CampaignStatus.SENDING:
            raise InvalidCampaignStateError(
                f"Campaign {campaign.campaign_id} is {campaign.status.value}",
                campaign.status,
            )
        if await self.repository.count_recipients(campaign.campaign_id) == 0:
            raise CampaignValidationError("Campaign has no recipients", "recipients")

    async def send_now(self, campaign_id: str, owner_id: str) -> Job:
        """Queue an immediate dispatch job"""
        campaign = await self.get_campaign(campaign_id, owner_id)
        await self._validate_dispatchable(campaign)

        job = await self._require_queue().enqueue(campaign_id, owner_id)
        logger.info(f"Campaign {campaign_id} queued for immediate send (job {job.job_id})")
        return job

    async def schedule(self, campaign_id: str, owner_id: str, scheduled_at: datetime) -> Job:
        """Queue a delayed dispatch job and move the campaign to SCHEDULED"""
        campaign = await self.get_campaign(campaign_id, owner_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidCampaignStateError(
                "Only draft campaigns can be scheduled", campaign.status
            )
        await self._validate_dispatchable(campaign)

        job = await self._require_queue().schedule(campaign_id, owner_id, scheduled_at)
        await self.repository.update_campaign_status(
            campaign_id, CampaignStatus.SCHEDULED, scheduled_at=scheduled_at
        )

        if self.event_publisher:
            await self.event_publisher.publish_campaign_scheduled(
                campaign_id, owner_id, scheduled_at, job.job_id
            )

        logger.info(f"Campaign scheduled: {campaign_id} at {scheduled_at} (job {job.job_id})")
        return job

    async def cancel(self, campaign_id: str, owner_id: Optional[str] = None) -> bool:
        """
        Cancel the campaign's pending job.

        Returns True and reverts the campaign to DRAFT when a waiting or
        delayed job was removed, False when there was nothing to cancel.
        """
        await self.get_campaign(campaign_id, owner_id)

        if not await self._require_queue().cancel(campaign_id):
            return False

        await self.repository.update_campaign_status(
            campaign_id, CampaignStatus.DRAFT, scheduled_at=None
        )
        if self.event_publisher:
            await self.event_publisher.publish_campaign_cancelled(campaign_id)

        logger.info(f"Campaign cancelled: {campaign_id}")
        return True

    async def find_stuck_campaigns(
        self,
        older_than: Optional[timedelta] = None,
        owner_id: Optional[str] = None,
    ) -> List[Campaign]:
        """SENDING campaigns past the threshold with no open job, optionally for one owner"""
        cutoff = self._clock() - (older_than or self.stuck_after)
        candidates = await self.repository.list_campaigns_by_status(
            CampaignStatus.SENDING, sent_before=cutoff
        )
        if owner_id is not None:
            candidates = [c for c in candidates if c.owner_id == owner_id]

        queue = self._require_queue()
        stuck = [c for c in candidates if not await queue.has_open_job(c.campaign_id)]
        if stuck:
            logger.warning(f"Found {len(stuck)} stuck campaigns")
        return stuck

    # ====================
    # Delivery Receipts
    # ====================

    async def apply_delivery_receipt(
        self,
        message_id: str,
        status: MessageStatus,
        provider_message_id: Optional[str] = None,
    ) -> OutboundMessage:
        """Apply a provider DELIVERED / BOUNCED receipt to a sent message"""
        if status not in self.RECEIPT_TRANSITIONS:
            raise CampaignValidationError("Receipt status must be delivered or bounced", "status")

        message = await self.repository.get_message(message_id)
        if not message:
            raise MessageNotFoundError(f"Message not found: {message_id}")

        if message.status not in (MessageStatus.SENT, MessageStatus.DELIVERED):
            logger.warning(
                f"Ignoring {status.value} receipt for message {message_id} in {message.status.value}"
            )
            return message

        updates = {"status": status}
        if status == MessageStatus.DELIVERED:
            updates["delivered_at"] = self._clock()
        if provider_message_id:
            updates["provider_message_id"] = provider_message_id
        message = await self.repository.update_message(message_id, **updates) or message

        recipient_status, from_statuses = self.RECEIPT_TRANSITIONS[status]
        await self.repository.advance_recipient_status(
            message.campaign_id, message.contact_id, recipient_status, from_statuses
        )

        logger.info(f"Message {message_id} {status.value}")
        return message
