"""
Campaign Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from .models import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    ConsentAuditLog,
    ConsentScope,
    Contact,
    ContactSession,
    Job,
    JobState,
    LinkClick,
    OutboundMessage,
    RecipientLinkToken,
    RecipientStatus,
    SendResult,
    SessionEvent,
    ShortLink,
    UnsubscribeToken,
)


# ====================
# Repository Protocol
# ====================


class CampaignRepositoryProtocol(Protocol):
    """Protocol for campaign data repository"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    # Campaigns
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Save a campaign"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        ...

    async def update_campaign_status(
        self, campaign_id: str, status: CampaignStatus, **kwargs
    ) -> Optional[Campaign]:
        """Update campaign status and any extra columns"""
        ...

    async def list_campaigns_by_status(
        self, status: CampaignStatus, sent_before: Optional[datetime] = None
    ) -> List[Campaign]:
        """List campaigns in a status, optionally sent before a time"""
        ...

    # Contacts
    async def save_contact(self, contact: Contact) -> Contact:
        """Save a contact"""
        ...

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Get contact by ID"""
        ...

    async def update_contact_consent(
        self, contact_id: str, **kwargs
    ) -> Optional[Contact]:
        """Update consent flags and timestamps"""
        ...

    # Recipients
    async def save_recipients(
        self, campaign_id: str, recipients: List[CampaignRecipient]
    ) -> List[CampaignRecipient]:
        """Save campaign recipients"""
        ...

    async def get_recipients(self, campaign_id: str) -> List[CampaignRecipient]:
        """Get campaign recipients"""
        ...

    async def count_recipients(self, campaign_id: str) -> int:
        """Count campaign recipients"""
        ...

    async def update_recipient_if_pending(
        self, campaign_id: str, contact_id: str, status: RecipientStatus, **kwargs
    ) -> bool:
        """Atomically resolve a recipient only while it is still PENDING"""
        ...

    async def advance_recipient_status(
        self,
        campaign_id: str,
        contact_id: str,
        status: RecipientStatus,
        from_statuses: List[RecipientStatus],
    ) -> bool:
        """Move a recipient forward when its current status is one of from_statuses"""
        ...

    # Outbound messages
    async def save_message(self, message: OutboundMessage) -> OutboundMessage:
        """Save an outbound message"""
        ...

    async def get_message(self, message_id: str) -> Optional[OutboundMessage]:
        """Get outbound message by ID"""
        ...

    async def update_message(
        self, message_id: str, **kwargs
    ) -> Optional[OutboundMessage]:
        """Update outbound message fields"""
        ...

    async def list_messages(self, campaign_id: str) -> List[OutboundMessage]:
        """List outbound messages for a campaign"""
        ...

    # SMS credit
    async def reserve_sms_credit(self, owner_id: str, amount: int = 1) -> bool:
        """Atomically decrement the balance if it covers amount"""
        ...

    async def refund_sms_credit(self, owner_id: str, amount: int = 1) -> None:
        """Give back a reserved credit"""
        ...

    # Short links
    async def find_active_short_link(
        self, owner_id: str, original_url: str, now: datetime
    ) -> Optional[ShortLink]:
        """Find an unexpired short link for (owner, url)"""
        ...

    async def short_code_exists(self, short_code: str) -> bool:
        """Check short code uniqueness"""
        ...

    async def save_short_link(self, link: ShortLink) -> ShortLink:
        """Save a short link"""
        ...

    async def get_short_link(self, link_id: str) -> Optional[ShortLink]:
        """Get short link by ID"""
        ...

    async def get_short_link_by_code(self, short_code: str) -> Optional[ShortLink]:
        """Get short link by short code"""
        ...

    async def delete_expired_short_links(self, now: datetime) -> int:
        """Delete expired short links"""
        ...

    # Recipient tokens and clicks
    async def save_link_token(self, token: RecipientLinkToken) -> RecipientLinkToken:
        """Save a recipient link token"""
        ...

    async def get_link_token(self, token: str) -> Optional[RecipientLinkToken]:
        """Get a recipient link token by its token string"""
        ...

    async def list_link_tokens(self, message_ids: List[str]) -> List[RecipientLinkToken]:
        """List tokens issued for the given messages"""
        ...

    async def save_link_click(self, click: LinkClick) -> LinkClick:
        """Append a click"""
        ...

    async def list_clicks_for_link(
        self, link_id: str, since: Optional[datetime] = None
    ) -> List[LinkClick]:
        """List clicks on a short link"""
        ...

    async def list_clicks_for_tokens(self, token_ids: List[str]) -> List[LinkClick]:
        """List clicks on the given tokens"""
        ...

    # Sessions
    async def get_latest_session(
        self, contact_id: str, seen_since: datetime
    ) -> Optional[ContactSession]:
        """Most recent session for a contact seen since a time"""
        ...

    async def get_session(self, session_id: str) -> Optional[ContactSession]:
        """Get session by ID"""
        ...

    async def save_session(self, session: ContactSession) -> ContactSession:
        """Save a session"""
        ...

    async def touch_session(self, session_id: str, last_seen: datetime) -> None:
        """Bump session last_seen"""
        ...

    async def save_session_event(self, event: SessionEvent) -> SessionEvent:
        """Append a session event"""
        ...

    # Consent
    async def find_active_unsubscribe_token(
        self, contact_id: str, owner_id: str, scope: ConsentScope
    ) -> Optional[UnsubscribeToken]:
        """Find an active token for (contact, owner, scope)"""
        ...

    async def get_unsubscribe_token(self, token: str) -> Optional[UnsubscribeToken]:
        """Get unsubscribe token"""
        ...

    async def save_unsubscribe_token(self, token: UnsubscribeToken) -> UnsubscribeToken:
        """Save unsubscribe token"""
        ...

    async def deactivate_unsubscribe_token(self, token: str, used_at: datetime) -> None:
        """Mark a token used"""
        ...

    async def save_consent_log(self, log: ConsentAuditLog) -> ConsentAuditLog:
        """Append a consent audit row"""
        ...


# ====================
# Job Broker Protocol
# ====================


class JobBrokerProtocol(Protocol):
    """Protocol for the durable dispatch job broker"""

    async def add(self, job: Job) -> Job:
        """Store a job as waiting or delayed"""
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        """Get job by ID"""
        ...

    async def find(self, campaign_id: str, states: List[JobState]) -> List[Job]:
        """Find jobs for a campaign in the given states"""
        ...

    async def remove(self, job_id: str) -> bool:
        """Remove a job"""
        ...

    async def counts(self) -> Dict[JobState, int]:
        """Count jobs per state"""
        ...

    async def claim_next(self, now: datetime, lock_until: datetime) -> Optional[Job]:
        """Promote due delayed jobs and claim the next waiting job, locked until lock_until"""
        ...

    async def extend_lock(self, job: Job, lock_until: datetime) -> bool:
        """Push back the lock of an active job; False when it is no longer active"""
        ...

    async def find_stalled(self, now: datetime) -> List[Job]:
        """Active jobs whose lock expired at or before now"""
        ...

    async def complete(self, job: Job, finished_at: datetime, keep: int) -> None:
        """Move an active job to completed, trimming beyond keep"""
        ...

    async def fail(self, job: Job, error: str, finished_at: datetime, keep: int) -> None:
        """Move an active job to failed, trimming beyond keep"""
        ...

    async def retry_later(self, job: Job, run_at: datetime, error: str) -> None:
        """Move an active job back to delayed"""
        ...

    async def clean(self, state: JobState, finished_before: datetime) -> int:
        """Remove finished jobs older than a cutoff"""
        ...


# ====================
# Collaborator Protocols
# ====================


class ChannelSenderProtocol(Protocol):
    """Protocol for email/SMS provider adapters"""

    async def send(self, message: OutboundMessage, sender: str) -> SendResult:
        """Send one message"""
        ...


class EventBusProtocol(Protocol):
    """Protocol for event bus operations"""

    async def publish(self, subject: str, payload: Dict[str, Any]) -> bool:
        """Publish a payload on a subject"""
        ...

    async def close(self) -> None:
        """Close event bus connection"""
        ...


class BehavioralEventPublisherProtocol(Protocol):
    """Protocol for the fire-and-forget automation event outbox"""

    def emit(self, contact_id: str, event_type: str, data: Dict[str, Any]) -> bool:
        """Enqueue an event without waiting; False when dropped"""
        ...


# ====================
# Custom Exceptions
# ====================


class CampaignServiceError(Exception):
    """Base exception for campaign service errors"""
    pass


class CampaignNotFoundError(CampaignServiceError):
    """Raised when campaign is not found"""
    pass


class InvalidCampaignStateError(CampaignServiceError):
    """Raised when campaign is in invalid state for operation"""

    def __init__(self, message: str, current_status: Optional[CampaignStatus] = None):
        super().__init__(message)
        self.current_status = current_status


class CampaignValidationError(CampaignServiceError):
    """Raised when campaign validation fails"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ContactNotFoundError(CampaignServiceError):
    """Raised when contact is not found"""
    pass


class MessageNotFoundError(CampaignServiceError):
    """Raised when an outbound message is not found"""
    pass


class GatingError(CampaignServiceError):
    """Raised when a contact has opted out of the channel"""
    pass


class ProviderError(CampaignServiceError):
    """Raised when a channel provider rejects a send"""

    def __init__(self, message: str, status_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code


class InsufficientCreditError(ProviderError):
    """Raised when the owner has no SMS credit left"""
    pass


class LinkNotFoundError(CampaignServiceError):
    """Raised when a tracking token or short code is unknown"""
    pass


class ExpiredLinkError(CampaignServiceError):
    """Raised when a short link has expired"""
    pass


class LinkGenerationError(CampaignServiceError):
    """Raised when no unique short code could be generated"""
    pass


class InvalidUnsubscribeTokenError(CampaignServiceError):
    """Raised when an unsubscribe token is missing or already used"""
    pass


class TransientJobError(CampaignServiceError):
    """Raised for job-level failures that the queue retries"""
    pass


__all__ = [
    "CampaignRepositoryProtocol",
    "JobBrokerProtocol",
    "ChannelSenderProtocol",
    "EventBusProtocol",
    "BehavioralEventPublisherProtocol",
    "CampaignServiceError",
    "CampaignNotFoundError",
    "InvalidCampaignStateError",
    "CampaignValidationError",
    "ContactNotFoundError",
    "MessageNotFoundError",
    "GatingError",
    "ProviderError",
    "InsufficientCreditError",
    "LinkNotFoundError",
    "ExpiredLinkError",
    "LinkGenerationError",
    "InvalidUnsubscribeTokenError",
    "TransientJobError",
]
