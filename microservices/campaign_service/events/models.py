"""
Campaign Event Data Models

Event type definitions and data structures for campaign service events.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event Type Definitions
# =============================================================================


class CampaignEventType(str, Enum):
    """
    Events published by campaign_service.

    These are the authoritative event types for this service.
    Other services should reference these when subscribing.
    """
    # Campaign lifecycle events
    SCHEDULED = "campaign.scheduled"
    SENDING = "campaign.sending"
    COMPLETED = "campaign.completed"
    FAILED = "campaign.failed"
    CANCELLED = "campaign.cancelled"

    # Consent events
    CONTACT_UNSUBSCRIBED = "campaign.contact.unsubscribed"
    CONTACT_RESUBSCRIBED = "campaign.contact.resubscribed"

    # Behavioral events consumed by the automation engine
    BEHAVIORAL = "automation.behavioral"


# =============================================================================
# Event Data Models - Published Events
# =============================================================================


class CampaignScheduledEventData(BaseModel):
    """campaign.scheduled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    owner_id: str = Field(..., description="Owner ID")
    scheduled_at: str = Field(..., description="Scheduled execution time (ISO format)")
    job_id: str = Field(..., description="Dispatch job ID")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignSendingEventData(BaseModel):
    """campaign.sending event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    channel: str = Field(..., description="Delivery channel")
    recipient_count: int = Field(..., description="Recipients targeted")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCompletedEventData(BaseModel):
    """campaign.completed / campaign.failed event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    status: str = Field(..., description="Terminal campaign status")
    total_contacts: int = Field(0, description="Recipients targeted")
    success_count: int = Field(0, description="Recipients sent")
    failure_count: int = Field(0, description="Recipients failed")
    reason: Optional[str] = Field(None, description="Failure reason for job exhaustion")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class CampaignCancelledEventData(BaseModel):
    """campaign.cancelled event data"""
    campaign_id: str = Field(..., description="Campaign ID")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class ContactConsentEventData(BaseModel):
    """campaign.contact.* consent event data"""
    contact_id: str = Field(..., description="Contact ID")
    owner_id: str = Field(..., description="Owner ID")
    scope: str = Field(..., description="email, sms or both")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")


class BehavioralEventData(BaseModel):
    """automation.behavioral event data"""
    contact_id: str = Field(..., description="Contact ID")
    event_type: str = Field(..., description="e.g. SMS_LINK_CLICKED")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    timestamp: Optional[datetime] = Field(None, description="Event timestamp")
