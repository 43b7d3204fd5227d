"""
Consent Gate

Per-contact, per-channel opt-out checks and the token-based self-service
unsubscribe / resubscribe flow.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from core.config import ConsentConfig, LinkConfig

from .events.publishers import CampaignEventPublisher
from .link_tracking_service import LinkTrackingService
from .models import (
    ChannelType,
    ConsentAction,
    ConsentAuditLog,
    ConsentScope,
    Contact,
    TokenDetails,
    UnsubscribeToken,
)
from .protocols import (
    CampaignRepositoryProtocol,
    ContactNotFoundError,
    InvalidUnsubscribeTokenError,
)

logger = logging.getLogger(__name__)


def scope_for_channel(channel: ChannelType) -> ConsentScope:
    if channel == ChannelType.SMS:
        return ConsentScope.SMS
    if channel == ChannelType.EMAIL:
        return ConsentScope.EMAIL
    return ConsentScope.BOTH


def _flags_for_scope(scope: ConsentScope, value: bool) -> dict:
    if scope == ConsentScope.EMAIL:
        return {"email_opted_out": value}
    if scope == ConsentScope.SMS:
        return {"sms_opted_out": value}
    return {"email_opted_out": value, "sms_opted_out": value}


class ConsentService:
    """Consent gate and self-service unsubscribe flow"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        link_tracking: LinkTrackingService,
        config: Optional[ConsentConfig] = None,
        link_config: Optional[LinkConfig] = None,
        event_publisher: Optional[CampaignEventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.link_tracking = link_tracking
        self.config = config or ConsentConfig()
        self.link_config = link_config or link_tracking.config
        self.event_publisher = event_publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ====================
    # Gate
    # ====================

    @staticmethod
    def can_send(
        contact: Optional[Contact], channel: Union[ChannelType, ConsentScope]
    ) -> bool:
        """
        Local consent check consulted before every send.

        Returns False for a missing contact or when the channel's opt-out
        flag is set. BOTH requires neither flag to be set. Channels without
        a consent flag (push) are always allowed.
        """
        if contact is None:
            return False

        value = getattr(channel, "value", channel)
        if value == ConsentScope.EMAIL.value:
            return not contact.email_opted_out
        if value == ConsentScope.SMS.value:
            return not contact.sms_opted_out
        if value == ConsentScope.BOTH.value:
            return not (contact.email_opted_out or contact.sms_opted_out)
        return True

    # ====================
    # Tokens and Links
    # ====================

    def _generate_token(self, contact_id: str, owner_id: str) -> str:
        seed = f"{contact_id}-{owner_id}-{self._clock().timestamp()}-{secrets.token_hex(8)}"
        return hashlib.sha256(seed.encode()).hexdigest()[:16]

    async def create_or_reuse_token(
        self, owner_id: str, contact_id: str, scope: ConsentScope
    ) -> UnsubscribeToken:
        """Reuse the active token for (contact, owner, scope) or mint one"""
        existing = await self.repository.find_active_unsubscribe_token(contact_id, owner_id, scope)
        if existing:
            return existing

        token = UnsubscribeToken(
            token=self._generate_token(contact_id, owner_id),
            contact_id=contact_id,
            owner_id=owner_id,
            scope=scope,
            created_at=self._clock(),
        )
        return await self.repository.save_unsubscribe_token(token)

    def unsubscribe_url(self, token: str) -> str:
        return f"{self.link_config.client_url.rstrip('/')}/unsubscribe/{token}"

    async def append_self_service_link(
        self,
        owner_id: str,
        contact_id: str,
        content: str,
        channel: ChannelType,
    ) -> str:
        """Append a short-linked unsubscribe footer suited to the channel"""
        if channel not in (ChannelType.EMAIL, ChannelType.SMS):
            return content

        token = await self.create_or_reuse_token(owner_id, contact_id, scope_for_channel(channel))
        link = await self.link_tracking.get_or_create_short_link(
            owner_id,
            self.unsubscribe_url(token.token),
            expires_in_days=self.link_config.unsubscribe_link_expiry_days,
        )
        short_url = self.link_tracking.short_url_for_code(link.short_code)

        if channel == ChannelType.EMAIL:
            footer = (
                '\n\n<p style="font-size:12px;color:#888888;">'
                f'To stop receiving these emails, <a href="{short_url}">unsubscribe here</a>.'
                "</p>"
            )
        else:
            footer = f"\n\nUnsubscribe: {short_url}"
        return content + footer

    # ====================
    # Self-Service Flow
    # ====================

    async def unsubscribe(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Contact:
        """Consume an active token and set the opt-out flag(s) for its scope"""
        record = await self.repository.get_unsubscribe_token(token)
        if not record or not record.is_active:
            raise InvalidUnsubscribeTokenError("Unsubscribe token is invalid or already used")

        now = self._clock()
        contact = await self.repository.update_contact_consent(
            record.contact_id,
            unsubscribed_at=now,
            **_flags_for_scope(record.scope, True),
        )
        if not contact:
            raise ContactNotFoundError(f"Contact {record.contact_id} not found")

        await self._audit(record, ConsentAction.UNSUBSCRIBE, ip_address, user_agent)
        await self.repository.deactivate_unsubscribe_token(token, now)

        logger.info(f"Contact {record.contact_id} unsubscribed ({record.scope.value})")
        if self.event_publisher:
            await self.event_publisher.publish_consent_changed(
                record.contact_id, record.owner_id, record.scope.value, unsubscribed=True
            )
        return contact

    async def resubscribe(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Contact:
        """
        Clear the opt-out flag(s) for the token's scope.

        The token does not need to be active unless
        ConsentConfig.resubscribe_requires_active_token is set.
        """
        record = await self.repository.get_unsubscribe_token(token)
        if not record:
            raise InvalidUnsubscribeTokenError("Unsubscribe token not found")

        if not record.is_active:
            if self.config.resubscribe_requires_active_token:
                raise InvalidUnsubscribeTokenError("Unsubscribe token is no longer active")
            logger.warning(
                f"Resubscribe accepted with inactive token for contact {record.contact_id}"
            )

        contact = await self.repository.update_contact_consent(
            record.contact_id,
            resubscribed_at=self._clock(),
            **_flags_for_scope(record.scope, False),
        )
        if not contact:
            raise ContactNotFoundError(f"Contact {record.contact_id} not found")

        await self._audit(record, ConsentAction.RESUBSCRIBE, ip_address, user_agent)

        logger.info(f"Contact {record.contact_id} resubscribed ({record.scope.value})")
        if self.event_publisher:
            await self.event_publisher.publish_consent_changed(
                record.contact_id, record.owner_id, record.scope.value, unsubscribed=False
            )
        return contact

    async def _audit(
        self,
        record: UnsubscribeToken,
        action: ConsentAction,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        await self.repository.save_consent_log(
            ConsentAuditLog(
                contact_id=record.contact_id,
                owner_id=record.owner_id,
                action=action,
                scope=record.scope,
                token=record.token,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=self._clock(),
            )
        )

    async def get_token_details(self, token: str) -> TokenDetails:
        """Token and current flags for the self-service page"""
        record = await self.repository.get_unsubscribe_token(token)
        if not record:
            raise InvalidUnsubscribeTokenError("Unsubscribe token not found")

        contact = await self.repository.get_contact(record.contact_id)
        if not contact:
            raise ContactNotFoundError(f"Contact {record.contact_id} not found")

        return TokenDetails(
            token=record.token,
            contact_id=record.contact_id,
            owner_id=record.owner_id,
            scope=record.scope,
            is_active=record.is_active,
            email_opted_out=contact.email_opted_out,
            sms_opted_out=contact.sms_opted_out,
            email=contact.email,
            phone=contact.phone,
        )

    async def get_status(self, contact_id: str, scope: ConsentScope = ConsentScope.BOTH) -> bool:
        """Whether the contact is unsubscribed for the scope"""
        contact = await self.repository.get_contact(contact_id)
        if not contact:
            raise ContactNotFoundError(f"Contact {contact_id} not found")

        if scope == ConsentScope.EMAIL:
            return contact.email_opted_out
        if scope == ConsentScope.SMS:
            return contact.sms_opted_out
        return contact.email_opted_out and contact.sms_opted_out
