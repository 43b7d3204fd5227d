"""
Campaign Service Main Application

FastAPI application for campaign dispatch, link tracking and consent.
Port: 8251
"""

import base64
import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from core.config import get_settings

from .campaign_service import CampaignService
from .consent_service import ConsentService
from .factory import CampaignServiceFactory
from .job_queue import CampaignJobQueue
from .link_tracking_service import LinkTrackingService
from .models import (
    Campaign,
    CancelResponse,
    ConsentScope,
    ConsentStatusResponse,
    DeliveryReceiptRequest,
    EngagementLinkStats,
    HealthResponse,
    JobResponse,
    LinkStats,
    LivenessResponse,
    QueueStats,
    ReadinessResponse,
    ScheduleRequest,
    SessionEvent,
    SessionEventRequest,
    SweepRequest,
    SweepResult,
    TokenDetails,
)
from .protocols import (
    CampaignNotFoundError,
    CampaignServiceError,
    CampaignValidationError,
    ContactNotFoundError,
    ExpiredLinkError,
    InvalidCampaignStateError,
    InvalidUnsubscribeTokenError,
    LinkNotFoundError,
    MessageNotFoundError,
)
from .routes_registry import SERVICE_METADATA

settings = get_settings()

# Configure logging
settings.logging.configure()
logger = logging.getLogger(__name__)

# Service configuration
SERVICE_NAME = settings.service_name
SERVICE_PORT = settings.port
SERVICE_VERSION = SERVICE_METADATA["version"]

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[CampaignServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    # Initialize factory
    factory = CampaignServiceFactory(settings)
    await factory.initialize()

    if settings.run_workers:
        await factory.start_worker()

    yield

    # Cleanup
    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Campaign Service",
    description="Bulk email and SMS campaign dispatch with link attribution and consent management",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(CampaignNotFoundError)
async def campaign_not_found_handler(request: Request, exc: CampaignNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ContactNotFoundError)
async def contact_not_found_handler(request: Request, exc: ContactNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(MessageNotFoundError)
async def message_not_found_handler(request: Request, exc: MessageNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(LinkNotFoundError)
async def link_not_found_handler(request: Request, exc: LinkNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ExpiredLinkError)
async def expired_link_handler(request: Request, exc: ExpiredLinkError):
    return _error(status.HTTP_410_GONE, exc)


@app.exception_handler(InvalidCampaignStateError)
async def invalid_state_handler(request: Request, exc: InvalidCampaignStateError):
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(CampaignValidationError)
async def validation_error_handler(request: Request, exc: CampaignValidationError):
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)


@app.exception_handler(InvalidUnsubscribeTokenError)
async def invalid_token_handler(request: Request, exc: InvalidUnsubscribeTokenError):
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(CampaignServiceError)
async def service_error_handler(request: Request, exc: CampaignServiceError):
    logger.error(f"Unhandled service error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc), "type": type(exc).__name__},
    )


# ====================
# Dependencies
# ====================


def get_factory_instance() -> CampaignServiceFactory:
    """Get the initialized factory"""
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_service(f: CampaignServiceFactory = Depends(get_factory_instance)) -> CampaignService:
    return f.service


def get_job_queue(f: CampaignServiceFactory = Depends(get_factory_instance)) -> CampaignJobQueue:
    return f.job_queue


def get_link_tracking(
    f: CampaignServiceFactory = Depends(get_factory_instance),
) -> LinkTrackingService:
    return f.link_tracking


def get_consent(f: CampaignServiceFactory = Depends(get_factory_instance)) -> ConsentService:
    return f.consent


def get_owner_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """Owner identity forwarded by the gateway"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )
    return x_user_id


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# ====================
# Health Endpoints
# ====================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = {}

    if factory:
        db_healthy = await factory.repository.health_check()
        dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"

        redis_healthy = await factory.broker.health_check()
        dependencies["redis"] = "healthy" if redis_healthy else "unhealthy"

        if factory.nats_client:
            dependencies["nats"] = "healthy" if factory.nats_client.is_connected else "unhealthy"
        else:
            dependencies["nats"] = "not_configured"

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        dependencies=dependencies,
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    checks = {}
    details = {}

    if factory:
        checks["database"] = await factory.repository.health_check()
        details["database"] = "Connected" if checks["database"] else "Connection failed"

        checks["redis"] = await factory.broker.health_check()
        details["redis"] = "Connected" if checks["redis"] else "Connection failed"

        if factory.nats_client:
            checks["nats"] = factory.nats_client.is_connected
            details["nats"] = "Connected" if checks["nats"] else "Disconnected"
        else:
            checks["nats"] = True  # Optional
            details["nats"] = "Not configured (optional)"
    else:
        checks["factory"] = False
        details["factory"] = "Factory not initialized"

    ready = all(checks.get(k, False) for k in ["database", "redis"])

    return ReadinessResponse(
        ready=ready,
        checks=checks,
        details=details,
    )


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(
        alive=True,
        uptime_seconds=time.time() - startup_time,
    )


# ====================
# Campaign Dispatch Endpoints
# ====================


@app.post(
    "/api/v1/campaigns/{campaign_id}/send",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Campaigns"],
)
async def send_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_service),
    owner_id: str = Depends(get_owner_id),
):
    """Queue a campaign for immediate dispatch"""
    job = await service.send_now(campaign_id, owner_id)
    return JobResponse(job=job, message="Campaign queued for sending")


@app.post(
    "/api/v1/campaigns/{campaign_id}/schedule",
    response_model=JobResponse,
    tags=["Campaigns"],
)
async def schedule_campaign(
    campaign_id: str,
    request: ScheduleRequest,
    service: CampaignService = Depends(get_service),
    owner_id: str = Depends(get_owner_id),
):
    """Schedule a draft campaign for later dispatch"""
    job = await service.schedule(campaign_id, owner_id, request.scheduled_at)
    return JobResponse(job=job, message="Campaign scheduled")


@app.post(
    "/api/v1/campaigns/{campaign_id}/cancel",
    response_model=CancelResponse,
    tags=["Campaigns"],
)
async def cancel_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_service),
    owner_id: str = Depends(get_owner_id),
):
    """Cancel a campaign's pending job and return it to draft"""
    cancelled = await service.cancel(campaign_id, owner_id)
    return CancelResponse(campaign_id=campaign_id, cancelled=cancelled)


@app.get(
    "/api/v1/campaigns/stuck",
    response_model=List[Campaign],
    tags=["Campaigns"],
)
async def list_stuck_campaigns(
    older_than_minutes: Optional[int] = Query(None, ge=1),
    service: CampaignService = Depends(get_service),
    owner_id: str = Depends(get_owner_id),
):
    """The caller's campaigns stuck in sending with no job left to finish them"""
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes else None
    return await service.find_stuck_campaigns(older_than, owner_id=owner_id)


@app.get(
    "/api/v1/campaigns/{campaign_id}/link-stats",
    response_model=EngagementLinkStats,
    tags=["Tracking"],
)
async def get_campaign_link_stats(
    campaign_id: str,
    service: CampaignService = Depends(get_service),
    link_tracking: LinkTrackingService = Depends(get_link_tracking),
    owner_id: str = Depends(get_owner_id),
):
    """Per-recipient click statistics for a campaign"""
    await service.get_campaign(campaign_id, owner_id)
    return await link_tracking.campaign_link_stats(campaign_id)


# ====================
# Queue Endpoints (operator only, not tenant scoped)
# ====================


@app.get("/api/v1/queue/stats", response_model=QueueStats, tags=["Queue"])
async def get_queue_stats(job_queue: CampaignJobQueue = Depends(get_job_queue)):
    """Job counts per state across all tenants; for operators behind the gateway"""
    return await job_queue.stats()


@app.post("/api/v1/queue/sweep", response_model=SweepResult, tags=["Queue"])
async def sweep_queue(
    request: Optional[SweepRequest] = None,
    job_queue: CampaignJobQueue = Depends(get_job_queue),
):
    """Remove old completed and failed jobs of all tenants; for operators behind the gateway"""
    request = request or SweepRequest()
    return await job_queue.sweep(request.max_age_completed_hours, request.max_age_failed_days)


# ====================
# Link Tracking Endpoints
# ====================


@app.get("/l/{key}", tags=["Tracking"])
async def follow_link(
    key: str,
    request: Request,
    link_tracking: LinkTrackingService = Depends(get_link_tracking),
):
    """
    Redirect a tracked link.

    Recipient tokens record a click and set the session cookie; plain
    short codes (unsubscribe links) only redirect.
    """
    meta = _client_meta(request)
    try:
        resolution = await link_tracking.resolve_click(
            key,
            ip_address=meta["ip_address"],
            user_agent=meta["user_agent"],
            referer=request.headers.get("referer"),
        )
    except LinkNotFoundError:
        original_url = await link_tracking.resolve_short_code(key)
        return RedirectResponse(original_url, status_code=status.HTTP_302_FOUND)

    response = RedirectResponse(resolution.original_url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        key=link_tracking.config.session_cookie_name,
        value=resolution.session_id,
        max_age=link_tracking.config.session_window_days * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
    )
    return response


@app.post("/api/v1/track/event", response_model=SessionEvent, tags=["Tracking"])
async def track_session_event(
    body: SessionEventRequest,
    request: Request,
    link_tracking: LinkTrackingService = Depends(get_link_tracking),
):
    """Attach on-site activity to the visitor's session"""
    session_id = body.session_id or request.cookies.get(link_tracking.config.session_cookie_name)
    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No session")

    event = await link_tracking.record_session_event(
        session_id, body.event_type, body.data, body.page_url
    )
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return event


@app.get("/api/v1/track/open/{message_id}", tags=["Tracking"])
async def track_open(
    message_id: str,
    link_tracking: LinkTrackingService = Depends(get_link_tracking),
):
    """Email open pixel"""
    await link_tracking.record_open(message_id)
    return Response(
        content=TRACKING_PIXEL,
        media_type="image/gif",
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


@app.get("/api/v1/links/{link_id}/stats", response_model=LinkStats, tags=["Tracking"])
async def get_link_stats(
    link_id: str,
    link_tracking: LinkTrackingService = Depends(get_link_tracking),
):
    """Click totals for a short link"""
    return await link_tracking.link_stats(link_id)


@app.get(
    "/api/v1/messages/{message_id}/link-stats",
    response_model=EngagementLinkStats,
    tags=["Tracking"],
)
async def get_message_link_stats(
    message_id: str,
    link_tracking: LinkTrackingService = Depends(get_link_tracking),
):
    """Per-recipient click statistics for one message"""
    return await link_tracking.message_link_stats(message_id)


@app.post("/api/v1/links/cleanup", tags=["Tracking"])
async def cleanup_links(link_tracking: LinkTrackingService = Depends(get_link_tracking)):
    """Delete expired short links"""
    deleted = await link_tracking.cleanup_expired_links()
    return {"deleted": deleted}


# ====================
# Consent Endpoints
# ====================


@app.get("/api/v1/unsubscribe/{token}", response_model=TokenDetails, tags=["Consent"])
async def get_unsubscribe_token(
    token: str,
    consent: ConsentService = Depends(get_consent),
):
    """Token details for the self-service unsubscribe page"""
    return await consent.get_token_details(token)


@app.post("/api/v1/unsubscribe/{token}", tags=["Consent"])
async def unsubscribe(
    token: str,
    request: Request,
    consent: ConsentService = Depends(get_consent),
):
    """Opt a contact out using their unsubscribe token"""
    contact = await consent.unsubscribe(token, **_client_meta(request))
    return {
        "message": "Unsubscribed successfully",
        "contact_id": contact.contact_id,
        "email_opted_out": contact.email_opted_out,
        "sms_opted_out": contact.sms_opted_out,
    }


@app.post("/api/v1/resubscribe/{token}", tags=["Consent"])
async def resubscribe(
    token: str,
    request: Request,
    consent: ConsentService = Depends(get_consent),
):
    """Opt a contact back in using their unsubscribe token"""
    contact = await consent.resubscribe(token, **_client_meta(request))
    return {
        "message": "Resubscribed successfully",
        "contact_id": contact.contact_id,
        "email_opted_out": contact.email_opted_out,
        "sms_opted_out": contact.sms_opted_out,
    }


@app.get(
    "/api/v1/contacts/{contact_id}/consent",
    response_model=ConsentStatusResponse,
    tags=["Consent"],
)
async def get_consent_status(
    contact_id: str,
    scope: ConsentScope = Query(ConsentScope.BOTH),
    consent: ConsentService = Depends(get_consent),
):
    """Whether a contact is unsubscribed for a scope"""
    unsubscribed = await consent.get_status(contact_id, scope)
    return ConsentStatusResponse(contact_id=contact_id, scope=scope, unsubscribed=unsubscribed)


# ====================
# Provider Webhooks
# ====================


@app.post("/api/v1/webhooks/delivery", tags=["Webhooks"])
async def delivery_receipt(
    request: DeliveryReceiptRequest,
    service: CampaignService = Depends(get_service),
):
    """Delivered / bounced receipts pushed by providers"""
    message = await service.apply_delivery_receipt(
        request.message_id, request.status, request.provider_message_id
    )
    return {"message_id": message.message_id, "status": message.status.value}


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.campaign_service.main:app",
        host=settings.host,
        port=SERVICE_PORT,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    main()
