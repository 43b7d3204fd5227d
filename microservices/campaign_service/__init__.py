"""
Campaign Service

Bulk campaign dispatch microservice providing:
- Campaign send state machine with immediate and scheduled jobs
- Throttled email and SMS batch dispatch
- Per-recipient link attribution and session stitching
- Consent gate and self-service unsubscribe

Port: 8251
"""

__version__ = "1.0.0"
__service__ = "campaign_service"
