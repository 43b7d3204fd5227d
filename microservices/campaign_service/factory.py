"""
Campaign Service Factory

Factory for creating campaign service instances with proper dependency injection.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

import redis.asyncio as redis

from core.config import CampaignServiceConfig, get_settings
from core.nats_client import NATSEventBus
from core.redis_client import close_redis_client, get_redis_client

from .batch_dispatcher import BatchDispatcher
from .campaign_repository import CampaignRepository
from .campaign_service import CampaignService
from .clients.email_sender import EmailSenderClient
from .clients.sms_sender import SmsSenderClient
from .consent_service import ConsentService
from .events.publishers import BehavioralEventPublisher, CampaignEventPublisher
from .job_broker import RedisJobBroker
from .job_queue import CampaignJobQueue
from .link_tracking_service import LinkTrackingService
from .models import ChannelType
from .protocols import ChannelSenderProtocol
from .worker import CampaignWorker

logger = logging.getLogger(__name__)


class CampaignServiceFactory:
    """Factory for creating campaign service components"""

    def __init__(self, settings: Optional[CampaignServiceConfig] = None):
        self.settings = settings or get_settings()
        self._repository: Optional[CampaignRepository] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._redis: Optional[redis.Redis] = None
        self._broker: Optional[RedisJobBroker] = None
        self._job_queue: Optional[CampaignJobQueue] = None
        self._event_publisher: Optional[CampaignEventPublisher] = None
        self._behavioral_publisher: Optional[BehavioralEventPublisher] = None
        self._link_tracking: Optional[LinkTrackingService] = None
        self._consent: Optional[ConsentService] = None
        self._dispatcher: Optional[BatchDispatcher] = None
        self._service: Optional[CampaignService] = None
        self._worker: Optional[CampaignWorker] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Campaign Service components...")
        infra = self.settings.infrastructure

        # Initialize repository
        self._repository = CampaignRepository(config=infra)
        await self._repository.initialize()

        # Initialize NATS client
        if infra.nats_enabled:
            try:
                self._nats_client = NATSEventBus(
                    service_name=self.settings.service_name,
                    config=infra,
                )
                await self._nats_client.connect()
                logger.info("NATS client connected")
            except Exception as e:
                logger.warning(f"NATS client initialization failed: {e}")
                self._nats_client = None

        self._event_publisher = CampaignEventPublisher(self._nats_client)
        self._behavioral_publisher = BehavioralEventPublisher(
            self._nats_client,
            max_queue_size=self.settings.links.behavioral_queue_size,
        )
        await self._behavioral_publisher.start()

        # Initialize job queue
        self._redis = await get_redis_client(infra)
        self._broker = RedisJobBroker(self._redis, self.settings.queue.queue_name)
        self._job_queue = CampaignJobQueue(self._broker, self.settings.queue)

        # Initialize link tracking and consent
        self._link_tracking = LinkTrackingService(
            repository=self._repository,
            config=self.settings.links,
            behavioral_publisher=self._behavioral_publisher,
        )
        self._consent = ConsentService(
            repository=self._repository,
            link_tracking=self._link_tracking,
            config=self.settings.consent,
            link_config=self.settings.links,
            event_publisher=self._event_publisher,
        )

        # Initialize dispatcher and main service
        senders: Dict[ChannelType, ChannelSenderProtocol] = {
            ChannelType.EMAIL: EmailSenderClient(self.settings.dispatch),
            ChannelType.SMS: SmsSenderClient(self.settings.dispatch),
        }
        self._dispatcher = BatchDispatcher(
            repository=self._repository,
            link_tracking=self._link_tracking,
            consent=self._consent,
            senders=senders,
            config=self.settings.dispatch,
            link_config=self.settings.links,
        )
        self._service = CampaignService(
            repository=self._repository,
            dispatcher=self._dispatcher,
            job_queue=self._job_queue,
            event_publisher=self._event_publisher,
            stuck_after=timedelta(minutes=self.settings.queue.stuck_after_minutes),
        )

        self._worker = CampaignWorker(
            job_queue=self._job_queue,
            campaign_service=self._service,
            concurrency=self.settings.queue.worker_concurrency,
            poll_interval=self.settings.queue.poll_interval_seconds,
        )

        logger.info("Campaign Service components initialized")

    async def start_worker(self) -> None:
        """Start the dispatch worker pool"""
        await self.worker.start()

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Campaign Service components...")

        if self._worker:
            await self._worker.stop()

        if self._behavioral_publisher:
            await self._behavioral_publisher.stop()

        if self._nats_client:
            await self._nats_client.close()

        if self._redis:
            await close_redis_client()

        if self._repository:
            await self._repository.close()

        logger.info("Campaign Service components closed")

    @property
    def repository(self) -> CampaignRepository:
        """Get campaign repository"""
        if not self._repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._repository

    @property
    def service(self) -> CampaignService:
        """Get campaign service"""
        if not self._service:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._service

    @property
    def job_queue(self) -> CampaignJobQueue:
        """Get job queue"""
        if not self._job_queue:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._job_queue

    @property
    def broker(self) -> RedisJobBroker:
        """Get job broker"""
        if not self._broker:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._broker

    @property
    def link_tracking(self) -> LinkTrackingService:
        """Get link tracking service"""
        if not self._link_tracking:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._link_tracking

    @property
    def consent(self) -> ConsentService:
        """Get consent service"""
        if not self._consent:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._consent

    @property
    def worker(self) -> CampaignWorker:
        """Get dispatch worker pool"""
        if not self._worker:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._worker

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client

    @property
    def event_publisher(self) -> Optional[CampaignEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


__all__ = [
    "CampaignServiceFactory",
]
