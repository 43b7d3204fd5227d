"""
Batch Dispatcher

Splits a campaign's recipients into channel-sized batches and drives the
per-recipient send pipeline: consent gate, template substitution, link
rewriting, unsubscribe footer, channel sender, status recording.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from core.config import DispatchConfig, LinkConfig

from .consent_service import ConsentService
from .link_tracking_service import LinkTrackingService
from .models import (
    Campaign,
    CampaignRecipient,
    ChannelType,
    Contact,
    MessageStatus,
    OutboundMessage,
    RecipientResult,
    RecipientStatus,
)
from .protocols import (
    CampaignRepositoryProtocol,
    ChannelSenderProtocol,
    GatingError,
    InsufficientCreditError,
    ProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

TEMPLATE_FIELDS = {
    "firstName": "first_name",
    "first_name": "first_name",
    "lastName": "last_name",
    "last_name": "last_name",
    "email": "email",
    "phone": "phone",
    "company": "company",
}


def substitute_variables(template: Optional[str], contact: Contact) -> str:
    """Fill contact placeholders; unknown placeholders are left untouched"""
    if not template:
        return template or ""

    def replace(match: re.Match) -> str:
        field = TEMPLATE_FIELDS.get(match.group(1))
        if field is None:
            return match.group(0)
        return getattr(contact, field) or ""

    return VARIABLE_PATTERN.sub(replace, template)


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchDispatcher:
    """Throttled, concurrent per-recipient fan-out for one campaign"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        link_tracking: LinkTrackingService,
        consent: ConsentService,
        senders: Dict[ChannelType, ChannelSenderProtocol],
        config: Optional[DispatchConfig] = None,
        link_config: Optional[LinkConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.link_tracking = link_tracking
        self.consent = consent
        self.senders = senders
        self.config = config or DispatchConfig()
        self.link_config = link_config or link_tracking.config
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ====================
    # Dispatch
    # ====================

    async def dispatch(
        self,
        campaign: Campaign,
        recipients: List[CampaignRecipient],
        attempt: int = 1,
    ) -> List[RecipientResult]:
        """
        Send a campaign to its recipients.

        Recipients already resolved by an earlier attempt are reported from
        their stored status and not sent again. Pending recipients are sent
        batch by batch; sends inside a batch run concurrently and one failure
        never aborts its siblings.

        Args:
            campaign: Campaign being sent
            recipients: All recipients of the campaign
            attempt: Job attempt number, stamped on outbound messages

        Returns:
            One RecipientResult per recipient
        """
        throttle = self.config.throttle_for(campaign.channel.value.upper())

        results: List[RecipientResult] = [
            RecipientResult(contact_id=r.contact_id, status=r.status, error=r.error)
            for r in recipients
            if r.status != RecipientStatus.PENDING
        ]
        pending = [r for r in recipients if r.status == RecipientStatus.PENDING]
        if len(results):
            logger.info(
                f"Campaign {campaign.campaign_id}: skipping {len(results)} recipients resolved earlier"
            )

        batches = chunk(pending, throttle.batch_size)
        for index, batch in enumerate(batches):
            logger.debug(
                f"Campaign {campaign.campaign_id}: batch {index + 1}/{len(batches)} ({len(batch)} recipients)"
            )
            outcomes = await asyncio.gather(
                *(self._send_one(campaign, recipient, attempt) for recipient in batch),
                return_exceptions=True,
            )

            for recipient, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    # Recording the failure itself broke; fail the whole attempt
                    logger.error(
                        f"Campaign {campaign.campaign_id}: could not record outcome for contact "
                        f"{recipient.contact_id}: {outcome}"
                    )
                    raise outcome
                results.append(outcome)

            if index < len(batches) - 1:
                await self._sleep(throttle.delay_seconds)

        return results

    # ====================
    # Per-Recipient Pipeline
    # ====================

    async def _send_one(
        self,
        campaign: Campaign,
        recipient: CampaignRecipient,
        attempt: int,
    ) -> RecipientResult:
        """
        Run the pipeline for one recipient.

        Every error ends in a terminal recipient status; only a failure to
        record that status escapes.
        """
        contact_id = recipient.contact_id
        message: Optional[OutboundMessage] = None
        try:
            # Consent is read at send time so opt-outs between batches apply
            contact = await self.repository.get_contact(contact_id)
            refusal = self._refusal(campaign, contact)
            if refusal is not None:
                return await self._record_failure(campaign, contact_id, refusal)

            message = await self.repository.save_message(
                self._build_message(campaign, contact, attempt)
            )
            await self._render(campaign, contact_id, message)
            return await self._deliver(campaign, contact_id, message)
        except Exception as e:
            logger.error(
                f"Campaign {campaign.campaign_id}: unexpected error for contact {contact_id}: {e}"
            )
            message_id = message.message_id if message else None
            if message is not None and message.status == MessageStatus.PENDING:
                message.status = MessageStatus.FAILED
                await self.repository.update_message(
                    message_id,
                    status=MessageStatus.FAILED,
                    provider_response={"error": str(e)},
                )
            return await self._record_failure(campaign, contact_id, e, message_id)

    def _refusal(self, campaign: Campaign, contact: Optional[Contact]) -> Optional[Exception]:
        if not ConsentService.can_send(contact, campaign.channel):
            reason = (
                "Contact not found"
                if contact is None
                else f"Contact has opted out of {campaign.channel.value} messages"
            )
            return GatingError(reason)

        if campaign.channel not in self.senders:
            return ProviderError(f"{campaign.channel.value.capitalize()} channel not supported")

        if not self._address(campaign, contact):
            missing = "phone number" if campaign.channel == ChannelType.SMS else "email address"
            return ProviderError(f"No {missing} for contact")
        return None

    @staticmethod
    def _address(campaign: Campaign, contact: Contact) -> Optional[str]:
        return contact.phone if campaign.channel == ChannelType.SMS else contact.email

    def _build_message(self, campaign: Campaign, contact: Contact, attempt: int) -> OutboundMessage:
        return OutboundMessage(
            campaign_id=campaign.campaign_id,
            contact_id=contact.contact_id,
            owner_id=campaign.owner_id,
            channel=campaign.channel,
            attempt=attempt,
            recipient_address=self._address(campaign, contact),
            subject=substitute_variables(campaign.subject, contact) or None,
            content=substitute_variables(campaign.content, contact),
            sender=campaign.sender_name or self.config.default_sender_name,
            created_at=self._clock(),
        )

    async def _render(self, campaign: Campaign, contact_id: str, message: OutboundMessage) -> None:
        """Tracked links, self-service footer and open pixel"""
        rewritten = await self.link_tracking.rewrite(
            campaign.owner_id, message.content, message.message_id, contact_id
        )
        body = await self.consent.append_self_service_link(
            campaign.owner_id, contact_id, rewritten.content, campaign.channel
        )
        if campaign.channel == ChannelType.EMAIL:
            body += self._open_pixel(message.message_id)
        message.content = body
        await self.repository.update_message(message.message_id, content=body)

    async def _deliver(
        self, campaign: Campaign, contact_id: str, message: OutboundMessage
    ) -> RecipientResult:
        sender = self.senders[campaign.channel]
        reserved = False
        try:
            if campaign.channel == ChannelType.SMS:
                if not await self.repository.reserve_sms_credit(campaign.owner_id):
                    raise InsufficientCreditError("No SMS credit available")
                reserved = True
            result = await sender.send(message, message.sender)
        except Exception as e:
            message.status = MessageStatus.FAILED
            if reserved:
                await self.repository.refund_sms_credit(campaign.owner_id)
            await self.repository.update_message(
                message.message_id,
                status=MessageStatus.FAILED,
                provider_response={"error": str(e)},
            )
            return await self._record_failure(campaign, contact_id, e, message.message_id)

        if not result.success:
            message.status = MessageStatus.FAILED
            if reserved:
                await self.repository.refund_sms_credit(campaign.owner_id)
            reason = result.provider_message or "Provider rejected message"
            await self.repository.update_message(
                message.message_id,
                status=MessageStatus.FAILED,
                provider_status_code=result.provider_status_code,
                provider_response=result.raw or {"message": reason},
            )
            return await self._record_failure(
                campaign,
                contact_id,
                ProviderError(reason, result.provider_status_code),
                message.message_id,
            )

        message.status = MessageStatus.SENT
        now = self._clock()
        await self.repository.update_message(
            message.message_id,
            status=MessageStatus.SENT,
            sent_at=now,
            provider_status_code=result.provider_status_code,
            provider_message_id=result.provider_message_id,
            provider_response=result.raw,
        )
        if not await self.repository.update_recipient_if_pending(
            campaign.campaign_id, contact_id, RecipientStatus.SENT, sent_at=now, error=None
        ):
            logger.warning(
                f"Campaign {campaign.campaign_id}: contact {contact_id} was already resolved"
            )

        return RecipientResult(
            contact_id=contact_id,
            status=RecipientStatus.SENT,
            message_id=message.message_id,
        )

    async def _record_failure(
        self,
        campaign: Campaign,
        contact_id: str,
        error: Exception,
        message_id: Optional[str] = None,
    ) -> RecipientResult:
        logger.info(
            f"Campaign {campaign.campaign_id}: contact {contact_id} failed "
            f"({type(error).__name__}: {error})"
        )
        await self.repository.update_recipient_if_pending(
            campaign.campaign_id,
            contact_id,
            RecipientStatus.FAILED,
            failed_at=self._clock(),
            error=str(error),
        )
        return RecipientResult(
            contact_id=contact_id,
            status=RecipientStatus.FAILED,
            message_id=message_id,
            error=str(error),
        )

    def _open_pixel(self, message_id: str) -> str:
        base = self.link_config.tracking_base_url.rstrip("/")
        return (
            f'<img src="{base}/api/v1/track/open/{message_id}" '
            'width="1" height="1" alt="" style="display:none;" />'
        )
