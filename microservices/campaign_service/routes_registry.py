"""
Campaign Service Routes Registry

Defines service metadata and the routes exposed by the service.
"""

SERVICE_METADATA = {
    "service_name": "campaign_service",
    "version": "1.0.0",
    "tags": ['campaign', 'dispatch', 'tracking', 'v1'],
    "capabilities": ['campaign_dispatch', 'link_tracking', 'consent_management'],
}

ROUTES = [
    {"path": "/health", "methods": ["GET"], "description": "Health check"},
    {"path": "/health/ready", "methods": ["GET"], "description": "Readiness check"},
    {"path": "/health/live", "methods": ["GET"], "description": "Liveness check"},
    {"path": "/api/v1/campaigns/{campaign_id}/send", "methods": ["POST"], "description": "Queue immediate send"},
    {"path": "/api/v1/campaigns/{campaign_id}/schedule", "methods": ["POST"], "description": "Schedule send"},
    {"path": "/api/v1/campaigns/{campaign_id}/cancel", "methods": ["POST"], "description": "Cancel pending send"},
    {"path": "/api/v1/campaigns/{campaign_id}/link-stats", "methods": ["GET"], "description": "Campaign click stats"},
    {"path": "/api/v1/campaigns/stuck", "methods": ["GET"], "description": "Caller's stuck campaigns"},
    {"path": "/api/v1/queue/stats", "methods": ["GET"], "description": "Job counts (operator only)"},
    {"path": "/api/v1/queue/sweep", "methods": ["POST"], "description": "Remove old jobs (operator only)"},
    {"path": "/l/{key}", "methods": ["GET"], "description": "Tracked link redirect"},
    {"path": "/api/v1/track/event", "methods": ["POST"], "description": "Session event"},
    {"path": "/api/v1/track/open/{message_id}", "methods": ["GET"], "description": "Open pixel"},
    {"path": "/api/v1/links/{link_id}/stats", "methods": ["GET"], "description": "Short link stats"},
    {"path": "/api/v1/messages/{message_id}/link-stats", "methods": ["GET"], "description": "Message click stats"},
    {"path": "/api/v1/links/cleanup", "methods": ["POST"], "description": "Delete expired links"},
    {"path": "/api/v1/unsubscribe/{token}", "methods": ["GET", "POST"], "description": "Self-service unsubscribe"},
    {"path": "/api/v1/resubscribe/{token}", "methods": ["POST"], "description": "Self-service resubscribe"},
    {"path": "/api/v1/contacts/{contact_id}/consent", "methods": ["GET"], "description": "Consent status"},
    {"path": "/api/v1/webhooks/delivery", "methods": ["POST"], "description": "Provider delivery receipts"},
]


__all__ = ["SERVICE_METADATA", "ROUTES"]
