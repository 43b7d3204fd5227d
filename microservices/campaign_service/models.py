"""
Campaign Service Data Models

Canonical data structures for campaign dispatch, link attribution,
consent and the dispatch job queue.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

def _now() -> datetime:
    return datetime.now(timezone.utc)

# =============================================================================
# ENUMS
# =============================================================================

class ChannelType(str, Enum):
    """Delivery medium"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"

class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CampaignStatus.SENT, CampaignStatus.FAILED)

class RecipientStatus(str, Enum):
    """Per-recipient delivery status"""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        """SENT or better"""
        return self in (
            RecipientStatus.SENT,
            RecipientStatus.DELIVERED,
            RecipientStatus.OPENED,
            RecipientStatus.CLICKED,
        )

class MessageStatus(str, Enum):
    """Outbound message status at the channel provider"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"
    BOUNCED = "bounced"

class ConsentScope(str, Enum):
    """Channels covered by an unsubscribe token"""
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"

class ConsentAction(str, Enum):
    """Audited consent change"""
    UNSUBSCRIBE = "unsubscribe"
    RESUBSCRIBE = "resubscribe"

class JobState(str, Enum):
    """Dispatch job state in the broker"""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

class BehavioralEventType(str, Enum):
    """Behavioral events emitted to the automation engine"""
    SMS_LINK_CLICKED = "SMS_LINK_CLICKED"
    EMAIL_LINK_CLICKED = "EMAIL_LINK_CLICKED"
    EMAIL_OPENED = "EMAIL_OPENED"

# =============================================================================
# BASE MODELS
# =============================================================================

class BaseContract(BaseModel):
    """Base model for all contracts"""

    model_config = {
        "from_attributes": True,
    }

# =============================================================================
# CAMPAIGN MODELS
# =============================================================================

class Campaign(BaseContract):
    """Core Campaign model"""
    campaign_id: str = Field(default_factory=lambda: f"cmp_{uuid4().hex[:16]}")
    owner_id: str
    name: str = Field(..., min_length=1, max_length=255)
    channel: ChannelType
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)

    # Content
    subject: Optional[str] = Field(None, max_length=500)
    content: str
    sender_name: Optional[str] = Field(None, max_length=100)

    # Lifecycle
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

class Contact(BaseContract):
    """Campaign contact with per-channel consent flags"""
    contact_id: str = Field(default_factory=lambda: f"ctc_{uuid4().hex[:16]}")
    owner_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None

    # Consent
    email_opted_out: bool = False
    sms_opted_out: bool = False
    unsubscribed_at: Optional[datetime] = None
    resubscribed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_now)

class CampaignRecipient(BaseContract):
    """(campaign, contact) pair with delivery status"""
    campaign_id: str
    contact_id: str
    status: RecipientStatus = Field(default=RecipientStatus.PENDING)
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)

class OutboundMessage(BaseContract):
    """One channel message per (recipient, attempt)"""
    message_id: str = Field(default_factory=lambda: f"msg_{uuid4().hex[:16]}")
    campaign_id: str
    contact_id: str
    owner_id: str
    channel: ChannelType
    attempt: int = Field(default=1, ge=1)

    # Payload
    recipient_address: Optional[str] = Field(None, description="Email or phone number")
    subject: Optional[str] = None
    content: str = ""
    sender: Optional[str] = None

    # Provider
    status: MessageStatus = Field(default=MessageStatus.PENDING)
    provider_status_code: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider_response: Dict[str, Any] = Field(default_factory=dict)

    # Timestamps
    created_at: datetime = Field(default_factory=_now)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None

# =============================================================================
# LINK ATTRIBUTION MODELS
# =============================================================================

class ShortLink(BaseContract):
    """Owner-scoped canonical short link"""
    link_id: str = Field(default_factory=lambda: f"lnk_{uuid4().hex[:16]}")
    owner_id: str
    original_url: str
    short_code: str = Field(..., min_length=1, max_length=32)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (at or _now())

class RecipientLinkToken(BaseContract):
    """Per-recipient, per-occurrence tracking token"""
    token_id: str = Field(default_factory=lambda: f"tok_{uuid4().hex[:16]}")
    token: str
    message_id: str
    link_id: str
    contact_id: str
    created_at: datetime = Field(default_factory=_now)

class LinkClick(BaseContract):
    """Append-only click record"""
    click_id: str = Field(default_factory=lambda: f"clk_{uuid4().hex[:16]}")
    link_id: str
    token_id: Optional[str] = None
    contact_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    clicked_at: datetime = Field(default_factory=_now)

class ContactSession(BaseContract):
    """Rolling identity-correlation window for a contact"""
    session_id: str
    contact_id: str
    owner_id: Optional[str] = None
    first_seen: datetime = Field(default_factory=_now)
    last_seen: datetime = Field(default_factory=_now)

class SessionEvent(BaseContract):
    """On-site activity stitched to a contact session"""
    event_id: str = Field(default_factory=lambda: f"sev_{uuid4().hex[:16]}")
    session_id: str
    contact_id: str
    event_type: str = Field(..., min_length=1, max_length=100)
    page_url: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)

# =============================================================================
# CONSENT MODELS
# =============================================================================

class UnsubscribeToken(BaseContract):
    """Self-service unsubscribe token"""
    token: str
    contact_id: str
    owner_id: str
    scope: ConsentScope
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    used_at: Optional[datetime] = None

class ConsentAuditLog(BaseContract):
    """Audit row for every consent change"""
    log_id: str = Field(default_factory=lambda: f"cal_{uuid4().hex[:16]}")
    contact_id: str
    owner_id: str
    action: ConsentAction
    scope: ConsentScope
    token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

# =============================================================================
# JOB QUEUE MODELS
# =============================================================================

class Job(BaseContract):
    """Campaign dispatch job"""
    job_id: str = Field(default_factory=lambda: uuid4().hex)
    campaign_id: str
    owner_id: str
    state: JobState = Field(default=JobState.WAITING)
    priority: int = Field(default=1, ge=1)
    attempts_made: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    run_at: datetime = Field(default_factory=_now)
    created_at: datetime = Field(default_factory=_now)
    processed_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None

class QueueStats(BaseContract):
    """Job counts per state"""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

class SweepResult(BaseContract):
    """Jobs removed by a retention sweep"""
    completed_removed: int = 0
    failed_removed: int = 0

# =============================================================================
# RESULT MODELS
# =============================================================================

class SendResult(BaseContract):
    """Channel sender call/response contract"""
    success: bool
    provider_status_code: Optional[str] = None
    provider_message: Optional[str] = None
    provider_message_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

class RecipientResult(BaseContract):
    """Outcome of one recipient send"""
    contact_id: str
    status: RecipientStatus
    message_id: Optional[str] = None
    error: Optional[str] = None

class DispatchSummary(BaseContract):
    """Aggregate outcome of a campaign send"""
    campaign_id: str
    total_contacts: int
    success_count: int
    failure_count: int
    status: CampaignStatus
    results: List[RecipientResult] = Field(default_factory=list)

class LinkMapping(BaseContract):
    """One rewritten URL occurrence"""
    original_url: str
    short_url: str
    token: str

class RewriteResult(BaseContract):
    """Rewritten content plus per-occurrence mappings"""
    content: str
    links: List[LinkMapping] = Field(default_factory=list)

class ClickResolution(BaseContract):
    """Redirect target for a resolved click"""
    original_url: str
    contact_id: str
    session_id: str

class DailyClicks(BaseContract):
    day: str
    clicks: int

class LinkStats(BaseContract):
    """Click aggregation for a short link"""
    link_id: str
    original_url: str
    short_code: str
    total_clicks: int = 0
    unique_clicks: int = 0
    clicks_by_day: List[DailyClicks] = Field(default_factory=list)

class RecipientClickStats(BaseContract):
    """Click activity for one recipient token"""
    contact_id: str
    token: str
    original_url: str
    click_count: int = 0
    first_click: Optional[datetime] = None
    last_click: Optional[datetime] = None

class EngagementLinkStats(BaseContract):
    """Per-recipient click aggregation for a message or campaign"""
    scope_id: str
    total_recipients: int = 0
    total_clicks: int = 0
    clicked_recipients: int = 0
    click_rate: float = 0.0
    recipients: List[RecipientClickStats] = Field(default_factory=list)

class TokenDetails(BaseContract):
    """Unsubscribe token details for the self-service page"""
    token: str
    contact_id: str
    owner_id: str
    scope: ConsentScope
    is_active: bool
    email_opted_out: bool
    sms_opted_out: bool
    email: Optional[str] = None
    phone: Optional[str] = None

# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class ScheduleRequest(BaseContract):
    """Request to schedule a campaign"""
    scheduled_at: datetime

class SweepRequest(BaseContract):
    """Retention sweep thresholds"""
    max_age_completed_hours: int = Field(default=24, ge=0)
    max_age_failed_days: int = Field(default=7, ge=0)

class SessionEventRequest(BaseContract):
    """On-site activity posted by the tracking script"""
    session_id: Optional[str] = None
    event_type: str = Field(..., min_length=1, max_length=100)
    page_url: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

class DeliveryReceiptRequest(BaseContract):
    """Delivery receipt pushed by a channel provider"""
    message_id: str
    status: MessageStatus
    provider_message_id: Optional[str] = None

class JobResponse(BaseContract):
    job: Job
    message: str

class CancelResponse(BaseContract):
    campaign_id: str
    cancelled: bool

class ConsentStatusResponse(BaseContract):
    contact_id: str
    scope: ConsentScope
    unsubscribed: bool

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)

class ReadinessResponse(BaseModel):
    """Readiness check response"""
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)

class LivenessResponse(BaseModel):
    """Liveness check response"""
    alive: bool
    uptime_seconds: float

__all__ = [
    # Enums
    "ChannelType",
    "CampaignStatus",
    "RecipientStatus",
    "MessageStatus",
    "ConsentScope",
    "ConsentAction",
    "JobState",
    "BehavioralEventType",
    # Core Models
    "BaseContract",
    "Campaign",
    "Contact",
    "CampaignRecipient",
    "OutboundMessage",
    "ShortLink",
    "RecipientLinkToken",
    "LinkClick",
    "ContactSession",
    "SessionEvent",
    "UnsubscribeToken",
    "ConsentAuditLog",
    "Job",
    # Results
    "QueueStats",
    "SweepResult",
    "SendResult",
    "RecipientResult",
    "DispatchSummary",
    "LinkMapping",
    "RewriteResult",
    "ClickResolution",
    "DailyClicks",
    "LinkStats",
    "RecipientClickStats",
    "EngagementLinkStats",
    "TokenDetails",
    # Request/Response
    "ScheduleRequest",
    "SweepRequest",
    "SessionEventRequest",
    "DeliveryReceiptRequest",
    "JobResponse",
    "CancelResponse",
    "ConsentStatusResponse",
    "HealthResponse",
    "ReadinessResponse",
    "LivenessResponse",
]
