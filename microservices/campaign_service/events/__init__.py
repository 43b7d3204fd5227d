"""
Campaign Service Events

Event models and publishers for campaign service.
"""

from .models import (
    CampaignEventType,
    CampaignScheduledEventData,
    CampaignSendingEventData,
    CampaignCompletedEventData,
    CampaignCancelledEventData,
    ContactConsentEventData,
    BehavioralEventData,
)
from .publishers import BehavioralEventPublisher, CampaignEventPublisher

__all__ = [
    # Event Types
    "CampaignEventType",
    # Event Data Models
    "CampaignScheduledEventData",
    "CampaignSendingEventData",
    "CampaignCompletedEventData",
    "CampaignCancelledEventData",
    "ContactConsentEventData",
    "BehavioralEventData",
    # Publishers
    "BehavioralEventPublisher",
    "CampaignEventPublisher",
]
