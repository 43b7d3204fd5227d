"""
Component Test Fixtures for Campaign Service

Provides fixtures for component testing with mocked dependencies:
in-memory repository, job broker, event bus and channel senders, and a
controllable clock. The real services are wired on top of them.
"""

import pytest
from collections import Counter
from datetime import datetime, timezone, timedelta
from typing import List, Optional, Dict, Any
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import ConsentConfig, DispatchConfig, LinkConfig, QueueConfig
from microservices.campaign_service.batch_dispatcher import BatchDispatcher
from microservices.campaign_service.campaign_service import CampaignService
from microservices.campaign_service.consent_service import ConsentService
from microservices.campaign_service.events.publishers import (
    BehavioralEventPublisher,
    CampaignEventPublisher,
)
from microservices.campaign_service.job_queue import CampaignJobQueue
from microservices.campaign_service.link_tracking_service import LinkTrackingService
from microservices.campaign_service.worker import CampaignWorker
from tests.contracts.campaign.data_contract import (
    # Enums
    ChannelType,
    CampaignStatus,
    RecipientStatus,
    ConsentScope,
    JobState,
    # Models
    Campaign,
    Contact,
    CampaignRecipient,
    OutboundMessage,
    ShortLink,
    RecipientLinkToken,
    LinkClick,
    ContactSession,
    SessionEvent,
    UnsubscribeToken,
    ConsentAuditLog,
    Job,
    SendResult,
    # Factory
    CampaignTestDataFactory,
)


START_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ====================
# Clock and Sleep
# ====================


class FakeClock:
    """Deterministic clock shared by services under test"""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays without waiting"""

    def __init__(self):
        self.calls: List[float] = []
        # Optional coroutine function run on every pause
        self.on_sleep = None

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.on_sleep is not None:
            await self.on_sleep(seconds)


# ====================
# Mock Repository
# ====================


class MockCampaignRepository:
    """Mock repository for component testing"""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.contacts: Dict[str, Contact] = {}
        self.recipients: Dict[str, List[CampaignRecipient]] = {}
        self.messages: Dict[str, OutboundMessage] = {}
        self.sms_credits: Dict[str, int] = {}
        self.short_links: Dict[str, ShortLink] = {}
        self.link_tokens: Dict[str, RecipientLinkToken] = {}
        self.clicks: List[LinkClick] = []
        self.sessions: Dict[str, ContactSession] = {}
        self.session_events: List[SessionEvent] = []
        self.unsubscribe_tokens: Dict[str, UnsubscribeToken] = {}
        self.consent_logs: List[ConsentAuditLog] = []

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True

    # Campaigns
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.campaigns.get(campaign_id)

    async def update_campaign_status(
        self, campaign_id: str, status: CampaignStatus, **kwargs
    ) -> Optional[Campaign]:
        campaign = self.campaigns.get(campaign_id)
        if campaign:
            campaign.status = status
            campaign.updated_at = datetime.now(timezone.utc)
            for key, value in kwargs.items():
                if hasattr(campaign, key):
                    setattr(campaign, key, value)
        return campaign

    async def list_campaigns_by_status(
        self, status: CampaignStatus, sent_before: Optional[datetime] = None
    ) -> List[Campaign]:
        results = [c for c in self.campaigns.values() if c.status == status]
        if sent_before:
            results = [c for c in results if c.sent_at and c.sent_at < sent_before]
        return results

    # Contacts
    async def save_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.contact_id] = contact
        return contact

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        contact = self.contacts.get(contact_id)
        return contact.model_copy() if contact else None

    async def update_contact_consent(self, contact_id: str, **kwargs) -> Optional[Contact]:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        for key, value in kwargs.items():
            setattr(contact, key, value)
        return contact.model_copy()

    # Recipients
    async def save_recipients(
        self, campaign_id: str, recipients: List[CampaignRecipient]
    ) -> List[CampaignRecipient]:
        self.recipients[campaign_id] = list(recipients)
        return recipients

    async def get_recipients(self, campaign_id: str) -> List[CampaignRecipient]:
        return [r.model_copy() for r in self.recipients.get(campaign_id, [])]

    async def count_recipients(self, campaign_id: str) -> int:
        return len(self.recipients.get(campaign_id, []))

    def _find_recipient(self, campaign_id: str, contact_id: str) -> Optional[CampaignRecipient]:
        for recipient in self.recipients.get(campaign_id, []):
            if recipient.contact_id == contact_id:
                return recipient
        return None

    async def update_recipient_if_pending(
        self, campaign_id: str, contact_id: str, status: RecipientStatus, **kwargs
    ) -> bool:
        recipient = self._find_recipient(campaign_id, contact_id)
        if not recipient or recipient.status != RecipientStatus.PENDING:
            return False
        recipient.status = status
        for key, value in kwargs.items():
            setattr(recipient, key, value)
        return True

    async def advance_recipient_status(
        self,
        campaign_id: str,
        contact_id: str,
        status: RecipientStatus,
        from_statuses: List[RecipientStatus],
    ) -> bool:
        recipient = self._find_recipient(campaign_id, contact_id)
        if not recipient or recipient.status not in from_statuses:
            return False
        recipient.status = status
        return True

    def recipient_status(self, campaign_id: str, contact_id: str) -> Optional[RecipientStatus]:
        recipient = self._find_recipient(campaign_id, contact_id)
        return recipient.status if recipient else None

    # Outbound messages
    async def save_message(self, message: OutboundMessage) -> OutboundMessage:
        self.messages[message.message_id] = message
        return message

    async def get_message(self, message_id: str) -> Optional[OutboundMessage]:
        return self.messages.get(message_id)

    async def update_message(self, message_id: str, **kwargs) -> Optional[OutboundMessage]:
        message = self.messages.get(message_id)
        if message:
            for key, value in kwargs.items():
                setattr(message, key, value)
        return message

    async def list_messages(self, campaign_id: str) -> List[OutboundMessage]:
        return [m for m in self.messages.values() if m.campaign_id == campaign_id]

    # SMS credit
    async def reserve_sms_credit(self, owner_id: str, amount: int = 1) -> bool:
        balance = self.sms_credits.get(owner_id, 0)
        if balance < amount:
            return False
        self.sms_credits[owner_id] = balance - amount
        return True

    async def refund_sms_credit(self, owner_id: str, amount: int = 1) -> None:
        self.sms_credits[owner_id] = self.sms_credits.get(owner_id, 0) + amount

    # Short links
    async def find_active_short_link(
        self, owner_id: str, original_url: str, now: datetime
    ) -> Optional[ShortLink]:
        for link in self.short_links.values():
            if (
                link.owner_id == owner_id
                and link.original_url == original_url
                and not link.is_expired(now)
            ):
                return link
        return None

    async def short_code_exists(self, short_code: str) -> bool:
        return any(link.short_code == short_code for link in self.short_links.values())

    async def save_short_link(self, link: ShortLink) -> ShortLink:
        self.short_links[link.link_id] = link
        return link

    async def get_short_link(self, link_id: str) -> Optional[ShortLink]:
        return self.short_links.get(link_id)

    async def get_short_link_by_code(self, short_code: str) -> Optional[ShortLink]:
        for link in self.short_links.values():
            if link.short_code == short_code:
                return link
        return None

    async def delete_expired_short_links(self, now: datetime) -> int:
        expired = [lid for lid, link in self.short_links.items() if link.is_expired(now)]
        for link_id in expired:
            del self.short_links[link_id]
        return len(expired)

    # Recipient tokens and clicks
    async def save_link_token(self, token: RecipientLinkToken) -> RecipientLinkToken:
        self.link_tokens[token.token] = token
        return token

    async def get_link_token(self, token: str) -> Optional[RecipientLinkToken]:
        return self.link_tokens.get(token)

    async def list_link_tokens(self, message_ids: List[str]) -> List[RecipientLinkToken]:
        return [t for t in self.link_tokens.values() if t.message_id in message_ids]

    async def save_link_click(self, click: LinkClick) -> LinkClick:
        self.clicks.append(click)
        return click

    async def list_clicks_for_link(
        self, link_id: str, since: Optional[datetime] = None
    ) -> List[LinkClick]:
        return [
            c for c in self.clicks
            if c.link_id == link_id and (since is None or c.clicked_at >= since)
        ]

    async def list_clicks_for_tokens(self, token_ids: List[str]) -> List[LinkClick]:
        return [c for c in self.clicks if c.token_id in token_ids]

    # Sessions
    async def get_latest_session(
        self, contact_id: str, seen_since: datetime
    ) -> Optional[ContactSession]:
        candidates = [
            s for s in self.sessions.values()
            if s.contact_id == contact_id and s.last_seen > seen_since
        ]
        return max(candidates, key=lambda s: s.last_seen) if candidates else None

    async def get_session(self, session_id: str) -> Optional[ContactSession]:
        return self.sessions.get(session_id)

    async def save_session(self, session: ContactSession) -> ContactSession:
        self.sessions[session.session_id] = session
        return session

    async def touch_session(self, session_id: str, last_seen: datetime) -> None:
        session = self.sessions.get(session_id)
        if session:
            session.last_seen = last_seen

    async def save_session_event(self, event: SessionEvent) -> SessionEvent:
        self.session_events.append(event)
        return event

    # Consent
    async def find_active_unsubscribe_token(
        self, contact_id: str, owner_id: str, scope: ConsentScope
    ) -> Optional[UnsubscribeToken]:
        for token in self.unsubscribe_tokens.values():
            if (
                token.contact_id == contact_id
                and token.owner_id == owner_id
                and token.scope == scope
                and token.is_active
            ):
                return token
        return None

    async def get_unsubscribe_token(self, token: str) -> Optional[UnsubscribeToken]:
        return self.unsubscribe_tokens.get(token)

    async def save_unsubscribe_token(self, token: UnsubscribeToken) -> UnsubscribeToken:
        self.unsubscribe_tokens[token.token] = token
        return token

    async def deactivate_unsubscribe_token(self, token: str, used_at: datetime) -> None:
        record = self.unsubscribe_tokens.get(token)
        if record:
            record.is_active = False
            record.used_at = used_at

    async def save_consent_log(self, log: ConsentAuditLog) -> ConsentAuditLog:
        self.consent_logs.append(log)
        return log


# ====================
# Mock Job Broker
# ====================


class InMemoryJobBroker:
    """Dict-backed job broker with the same state rules as the Redis broker"""

    def __init__(self):
        self.jobs: Dict[str, Job] = {}

    async def health_check(self) -> bool:
        return True

    async def add(self, job: Job) -> Job:
        self.jobs[job.job_id] = job.model_copy()
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    async def find(self, campaign_id: str, states: List[JobState]) -> List[Job]:
        jobs = [
            j.model_copy() for j in self.jobs.values()
            if j.campaign_id == campaign_id and j.state in states
        ]
        return sorted(jobs, key=lambda j: j.created_at)

    async def remove(self, job_id: str) -> bool:
        return self.jobs.pop(job_id, None) is not None

    async def counts(self) -> Dict[JobState, int]:
        counter = Counter(j.state for j in self.jobs.values())
        return {state: counter.get(state, 0) for state in JobState}

    async def claim_next(self, now: datetime, lock_until: datetime) -> Optional[Job]:
        for job in self.jobs.values():
            if job.state == JobState.DELAYED and job.run_at <= now:
                job.state = JobState.WAITING

        waiting = [j for j in self.jobs.values() if j.state == JobState.WAITING]
        if not waiting:
            return None

        job = min(waiting, key=lambda j: (j.priority, j.created_at))
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.processed_at = now
        job.lock_expires_at = lock_until
        return job.model_copy()

    async def extend_lock(self, job: Job, lock_until: datetime) -> bool:
        stored = self.jobs.get(job.job_id)
        if stored is None or stored.state != JobState.ACTIVE:
            return False
        stored.lock_expires_at = lock_until
        job.lock_expires_at = lock_until
        return True

    async def find_stalled(self, now: datetime) -> List[Job]:
        return [
            j.model_copy() for j in self.jobs.values()
            if j.state == JobState.ACTIVE and j.lock_expires_at and j.lock_expires_at <= now
        ]

    def _prune(self, state: JobState, keep: int) -> None:
        finished = sorted(
            (j for j in self.jobs.values() if j.state == state),
            key=lambda j: j.finished_at,
        )
        for job in finished[: max(len(finished) - keep, 0)]:
            del self.jobs[job.job_id]

    async def complete(self, job: Job, finished_at: datetime, keep: int) -> None:
        stored = self.jobs[job.job_id]
        stored.state = JobState.COMPLETED
        stored.finished_at = finished_at
        stored.lock_expires_at = None
        self._prune(JobState.COMPLETED, keep)

    async def fail(self, job: Job, error: str, finished_at: datetime, keep: int) -> None:
        stored = self.jobs[job.job_id]
        stored.state = JobState.FAILED
        stored.finished_at = finished_at
        stored.lock_expires_at = None
        stored.last_error = error
        self._prune(JobState.FAILED, keep)

    async def retry_later(self, job: Job, run_at: datetime, error: str) -> None:
        stored = self.jobs[job.job_id]
        stored.state = JobState.DELAYED
        stored.lock_expires_at = None
        stored.run_at = run_at
        stored.last_error = error

    async def clean(self, state: JobState, finished_before: datetime) -> int:
        old = [
            j.job_id for j in self.jobs.values()
            if j.state == state and j.finished_at and j.finished_at <= finished_before
        ]
        for job_id in old:
            del self.jobs[job_id]
        return len(old)

    def in_state(self, state: JobState) -> List[Job]:
        return [j for j in self.jobs.values() if j.state == state]


# ====================
# Mock Event Bus and Senders
# ====================


class MockEventBus:
    """Mock NATS event bus"""

    def __init__(self):
        self.published_events: List[Dict[str, Any]] = []
        self.fail_publish = False

    async def publish(self, subject: str, payload: Dict[str, Any]) -> bool:
        if self.fail_publish:
            raise ConnectionError("NATS unavailable")
        self.published_events.append({"subject": subject, "payload": payload})
        return True

    async def close(self):
        pass

    @property
    def is_connected(self) -> bool:
        return True

    def subjects(self) -> List[str]:
        return [e["subject"] for e in self.published_events]

    def get_events_by_subject(self, subject: str) -> List[Dict[str, Any]]:
        return [e["payload"] for e in self.published_events if e["subject"] == subject]


class MockChannelSender:
    """Channel sender that records messages and answers from a script"""

    def __init__(self):
        self.sent: List[OutboundMessage] = []
        self.senders: List[str] = []
        self.fail_addresses: Dict[str, str] = {}
        self.raise_for: Dict[str, Exception] = {}

    async def send(self, message: OutboundMessage, sender: str) -> SendResult:
        self.sent.append(message.model_copy())
        self.senders.append(sender)
        address = message.recipient_address
        if address in self.raise_for:
            raise self.raise_for[address]
        if address in self.fail_addresses:
            return SendResult(
                success=False,
                provider_status_code="-4",
                provider_message=self.fail_addresses[address],
            )
        return SendResult(
            success=True,
            provider_status_code="1",
            provider_message_id=f"prov_{len(self.sent)}",
        )

    def content_for(self, address: str) -> Optional[str]:
        for message in self.sent:
            if message.recipient_address == address:
                return message.content
        return None


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Provide test data factory"""
    return CampaignTestDataFactory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def mock_repository():
    """Provide mock repository"""
    return MockCampaignRepository()


@pytest.fixture
def mock_broker():
    return InMemoryJobBroker()


@pytest.fixture
def mock_event_bus():
    """Provide mock event bus"""
    return MockEventBus()


@pytest.fixture
def email_sender():
    return MockChannelSender()


@pytest.fixture
def sms_sender():
    return MockChannelSender()


@pytest.fixture
def link_config():
    return LinkConfig(
        client_url="https://app.example.com",
        tracking_base_url="https://track.example.com",
    )


@pytest.fixture
def queue_config():
    return QueueConfig()


@pytest.fixture
def event_publisher(mock_event_bus):
    return CampaignEventPublisher(mock_event_bus)


@pytest.fixture
def behavioral_publisher(mock_event_bus):
    return BehavioralEventPublisher(mock_event_bus, max_queue_size=100)


@pytest.fixture
def link_tracking(mock_repository, link_config, behavioral_publisher, clock):
    return LinkTrackingService(
        repository=mock_repository,
        config=link_config,
        behavioral_publisher=behavioral_publisher,
        clock=clock,
    )


@pytest.fixture
def consent_service(mock_repository, link_tracking, link_config, event_publisher, clock):
    return ConsentService(
        repository=mock_repository,
        link_tracking=link_tracking,
        config=ConsentConfig(),
        link_config=link_config,
        event_publisher=event_publisher,
        clock=clock,
    )


@pytest.fixture
def dispatcher(
    mock_repository,
    link_tracking,
    consent_service,
    email_sender,
    sms_sender,
    link_config,
    recording_sleep,
    clock,
):
    return BatchDispatcher(
        repository=mock_repository,
        link_tracking=link_tracking,
        consent=consent_service,
        senders={ChannelType.EMAIL: email_sender, ChannelType.SMS: sms_sender},
        config=DispatchConfig(),
        link_config=link_config,
        sleep=recording_sleep,
        clock=clock,
    )


@pytest.fixture
def job_queue(mock_broker, queue_config, clock):
    return CampaignJobQueue(mock_broker, queue_config, clock=clock)


@pytest.fixture
def campaign_service(mock_repository, dispatcher, job_queue, event_publisher, clock):
    """Provide CampaignService with mocked dependencies"""
    return CampaignService(
        repository=mock_repository,
        dispatcher=dispatcher,
        job_queue=job_queue,
        event_publisher=event_publisher,
        clock=clock,
    )


@pytest.fixture
def worker(job_queue, campaign_service):
    return CampaignWorker(job_queue, campaign_service, concurrency=1, poll_interval=0.01)


@pytest.fixture
def seed_campaign(mock_repository, factory):
    """Store a campaign with contacts and pending recipients"""

    async def _seed(
        channel: ChannelType = ChannelType.EMAIL,
        contacts: int = 2,
        sms_credit: int = 100,
        **campaign_kwargs,
    ):
        campaign = factory.make_campaign(channel=channel, **campaign_kwargs)
        await mock_repository.save_campaign(campaign)
        people = factory.make_contacts(contacts, owner_id=campaign.owner_id)
        for contact in people:
            await mock_repository.save_contact(contact)
        await mock_repository.save_recipients(
            campaign.campaign_id, factory.make_recipients(campaign.campaign_id, people)
        )
        mock_repository.sms_credits[campaign.owner_id] = sms_credit
        return campaign, people

    return _seed
