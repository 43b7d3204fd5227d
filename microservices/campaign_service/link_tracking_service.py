"""
Link Attribution Engine

Rewrites URLs in outbound content into per-recipient tracking tokens backed
by owner-scoped short links, records clicks, and stitches post-click
activity to a rolling contact session.
"""

import logging
import re
import secrets
import string
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from core.config import LinkConfig

from .models import (
    BehavioralEventType,
    ChannelType,
    ClickResolution,
    ContactSession,
    DailyClicks,
    EngagementLinkStats,
    LinkClick,
    LinkMapping,
    LinkStats,
    RecipientClickStats,
    RecipientLinkToken,
    RecipientStatus,
    RewriteResult,
    SessionEvent,
    ShortLink,
)
from .protocols import (
    BehavioralEventPublisherProtocol,
    CampaignRepositoryProtocol,
    ExpiredLinkError,
    LinkGenerationError,
    LinkNotFoundError,
)

logger = logging.getLogger(__name__)


URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")
SHORT_CODE_ALPHABET = string.ascii_letters + string.digits


def extract_urls(content: str) -> List[str]:
    """Every absolute URL occurrence in content, repeats included"""
    return URL_PATTERN.findall(content or "")


def generate_short_code(length: int = 6) -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def generate_token() -> str:
    """32 hex chars, used for recipient tokens and session ids"""
    return secrets.token_hex(16)


class LinkTrackingService:
    """Short links, recipient tokens, clicks and sessions"""

    SHORT_CODE_LENGTH = 6
    MAX_SHORT_CODE_ATTEMPTS = 10
    STATS_WINDOW_DAYS = 30

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        config: Optional[LinkConfig] = None,
        behavioral_publisher: Optional[BehavioralEventPublisherProtocol] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.config = config or LinkConfig()
        self.behavioral_publisher = behavioral_publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # ====================
    # Short Links
    # ====================

    def short_url_for_token(self, token: str) -> str:
        return f"{self.config.short_link_base}/{token}"

    def short_url_for_code(self, short_code: str) -> str:
        return f"{self.config.short_link_base}/{short_code}"

    async def get_or_create_short_link(
        self,
        owner_id: str,
        original_url: str,
        expires_in_days: Optional[int] = None,
    ) -> ShortLink:
        """Reuse the owner's unexpired short link for the URL or create one"""
        now = self.now()
        existing = await self.repository.find_active_short_link(owner_id, original_url, now)
        if existing:
            return existing

        short_code = None
        for _ in range(self.MAX_SHORT_CODE_ATTEMPTS):
            candidate = generate_short_code(self.SHORT_CODE_LENGTH)
            if not await self.repository.short_code_exists(candidate):
                short_code = candidate
                break

        if short_code is None:
            raise LinkGenerationError(
                f"Could not generate a unique short code after {self.MAX_SHORT_CODE_ATTEMPTS} attempts"
            )

        expires_at = now + timedelta(days=expires_in_days) if expires_in_days else None
        link = ShortLink(
            owner_id=owner_id,
            original_url=original_url,
            short_code=short_code,
            expires_at=expires_at,
            created_at=now,
        )
        saved = await self.repository.save_short_link(link)
        logger.debug(f"Created short link {saved.short_code} for owner {owner_id}")
        return saved

    async def rewrite(
        self,
        owner_id: str,
        content: str,
        message_id: str,
        contact_id: str,
    ) -> RewriteResult:
        """
        Replace every URL occurrence with a fresh recipient token URL.

        Repeated URLs share one ShortLink but each occurrence gets its own
        token. Replacement is positional over the original content, so a
        short URL is never substituted again.

        Args:
            owner_id: Tenant that owns the links
            content: Rendered message content
            message_id: Outbound message the tokens belong to
            contact_id: Recipient contact

        Returns:
            RewriteResult with rewritten content and per-occurrence mappings
        """
        if not content:
            return RewriteResult(content=content or "")

        parts: List[str] = []
        mappings: List[LinkMapping] = []
        position = 0

        for match in URL_PATTERN.finditer(content):
            original_url = match.group(0)
            link = await self.get_or_create_short_link(owner_id, original_url)
            token = await self.repository.save_link_token(
                RecipientLinkToken(
                    token=generate_token(),
                    message_id=message_id,
                    link_id=link.link_id,
                    contact_id=contact_id,
                    created_at=self.now(),
                )
            )
            short_url = self.short_url_for_token(token.token)

            parts.append(content[position:match.start()])
            parts.append(short_url)
            position = match.end()

            mappings.append(
                LinkMapping(original_url=original_url, short_url=short_url, token=token.token)
            )

        parts.append(content[position:])
        return RewriteResult(content="".join(parts), links=mappings)

    # ====================
    # Click Resolution
    # ====================

    async def resolve_click(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> ClickResolution:
        """Record a click on a recipient token and return the redirect target"""
        link_token = await self.repository.get_link_token(token)
        if not link_token:
            raise LinkNotFoundError("Link not found")

        link = await self.repository.get_short_link(link_token.link_id)
        if not link:
            raise LinkNotFoundError("Link not found")

        now = self.now()
        if link.is_expired(now):
            raise ExpiredLinkError("Link has expired")

        session_id = await self.get_or_create_session(link_token.contact_id, link.owner_id)

        await self.repository.save_link_click(
            LinkClick(
                link_id=link.link_id,
                token_id=link_token.token_id,
                contact_id=link_token.contact_id,
                session_id=session_id,
                ip_address=ip_address,
                user_agent=user_agent,
                referer=referer,
                clicked_at=now,
            )
        )

        message = await self.repository.get_message(link_token.message_id)
        event_type = BehavioralEventType.SMS_LINK_CLICKED
        if message:
            if message.channel == ChannelType.EMAIL:
                event_type = BehavioralEventType.EMAIL_LINK_CLICKED
            await self.repository.advance_recipient_status(
                message.campaign_id,
                message.contact_id,
                RecipientStatus.CLICKED,
                [RecipientStatus.SENT, RecipientStatus.DELIVERED, RecipientStatus.OPENED],
            )

        self._emit(
            link_token.contact_id,
            event_type.value,
            {
                "original_url": link.original_url,
                "link_id": link.link_id,
                "message_id": link_token.message_id,
            },
        )

        return ClickResolution(
            original_url=link.original_url,
            contact_id=link_token.contact_id,
            session_id=session_id,
        )

    async def resolve_short_code(self, short_code: str) -> str:
        """Redirect target for an untokenized short link"""
        link = await self.repository.get_short_link_by_code(short_code)
        if not link:
            raise LinkNotFoundError("Link not found")
        if link.is_expired(self.now()):
            raise ExpiredLinkError("Link has expired")
        return link.original_url

    async def record_open(self, message_id: str) -> bool:
        """Open-pixel hit for an email message"""
        message = await self.repository.get_message(message_id)
        if not message:
            return False

        if message.opened_at is None:
            await self.repository.update_message(message_id, opened_at=self.now())
        await self.repository.advance_recipient_status(
            message.campaign_id,
            message.contact_id,
            RecipientStatus.OPENED,
            [RecipientStatus.SENT, RecipientStatus.DELIVERED],
        )
        self._emit(
            message.contact_id,
            BehavioralEventType.EMAIL_OPENED.value,
            {"message_id": message_id, "campaign_id": message.campaign_id},
        )
        return True

    # ====================
    # Sessions
    # ====================

    async def get_or_create_session(self, contact_id: str, owner_id: Optional[str] = None) -> str:
        """Reuse the contact's session seen within the window, else mint one"""
        now = self.now()
        window_start = now - timedelta(days=self.config.session_window_days)

        session = await self.repository.get_latest_session(contact_id, window_start)
        if session:
            await self.repository.touch_session(session.session_id, now)
            return session.session_id

        session = ContactSession(
            session_id=generate_token(),
            contact_id=contact_id,
            owner_id=owner_id,
            first_seen=now,
            last_seen=now,
        )
        await self.repository.save_session(session)
        logger.debug(f"Created session {session.session_id} for contact {contact_id}")
        return session.session_id

    async def record_session_event(
        self,
        session_id: str,
        event_type: str,
        data: Optional[Dict] = None,
        page_url: Optional[str] = None,
    ) -> Optional[SessionEvent]:
        """Append on-site activity to a known session; None when unknown"""
        session = await self.repository.get_session(session_id)
        if not session:
            logger.warning(f"Session not found: {session_id}")
            return None

        now = self.now()
        await self.repository.touch_session(session_id, now)
        event = await self.repository.save_session_event(
            SessionEvent(
                session_id=session_id,
                contact_id=session.contact_id,
                event_type=event_type,
                page_url=page_url,
                data=data or {},
                created_at=now,
            )
        )

        self._emit(
            session.contact_id,
            event_type,
            {**(data or {}), "page_url": page_url, "session_id": session_id},
        )
        return event

    def _emit(self, contact_id: str, event_type: str, data: Dict) -> None:
        if not self.behavioral_publisher:
            logger.debug("Behavioral publisher not configured, skipping event")
            return
        self.behavioral_publisher.emit(contact_id, event_type, data)

    # ====================
    # Statistics
    # ====================

    async def link_stats(self, link_id: str) -> LinkStats:
        """Total, unique-by-contact and per-day clicks for a short link"""
        link = await self.repository.get_short_link(link_id)
        if not link:
            raise LinkNotFoundError("Link not found")

        clicks = await self.repository.list_clicks_for_link(link_id)
        unique_contacts = {c.contact_id for c in clicks if c.contact_id}

        since = self.now() - timedelta(days=self.STATS_WINDOW_DAYS)
        per_day = Counter(
            c.clicked_at.date().isoformat() for c in clicks if c.clicked_at >= since
        )
        clicks_by_day = [
            DailyClicks(day=day, clicks=count)
            for day, count in sorted(per_day.items(), reverse=True)
        ]

        return LinkStats(
            link_id=link.link_id,
            original_url=link.original_url,
            short_code=link.short_code,
            total_clicks=len(clicks),
            unique_clicks=len(unique_contacts),
            clicks_by_day=clicks_by_day,
        )

    async def message_link_stats(self, message_id: str) -> EngagementLinkStats:
        """Per-recipient click activity for one outbound message"""
        tokens = await self.repository.list_link_tokens([message_id])
        return await self._engagement_stats(message_id, tokens)

    async def campaign_link_stats(self, campaign_id: str) -> EngagementLinkStats:
        """Per-recipient click activity across a campaign's messages"""
        messages = await self.repository.list_messages(campaign_id)
        tokens = await self.repository.list_link_tokens([m.message_id for m in messages])
        return await self._engagement_stats(campaign_id, tokens)

    async def _engagement_stats(
        self, scope_id: str, tokens: List[RecipientLinkToken]
    ) -> EngagementLinkStats:
        clicks = await self.repository.list_clicks_for_tokens([t.token_id for t in tokens])
        clicks_by_token: Dict[str, List[LinkClick]] = {}
        for click in clicks:
            clicks_by_token.setdefault(click.token_id, []).append(click)

        links: Dict[str, ShortLink] = {}
        rows: List[RecipientClickStats] = []
        for token in tokens:
            if token.link_id not in links:
                link = await self.repository.get_short_link(token.link_id)
                if link:
                    links[token.link_id] = link
            token_clicks = sorted(
                clicks_by_token.get(token.token_id, []), key=lambda c: c.clicked_at
            )
            rows.append(
                RecipientClickStats(
                    contact_id=token.contact_id,
                    token=token.token,
                    original_url=links[token.link_id].original_url if token.link_id in links else "",
                    click_count=len(token_clicks),
                    first_click=token_clicks[0].clicked_at if token_clicks else None,
                    last_click=token_clicks[-1].clicked_at if token_clicks else None,
                )
            )

        recipients = {row.contact_id for row in rows}
        clicked = {row.contact_id for row in rows if row.click_count > 0}

        return EngagementLinkStats(
            scope_id=scope_id,
            total_recipients=len(recipients),
            total_clicks=len(clicks),
            clicked_recipients=len(clicked),
            click_rate=(len(clicked) / len(recipients) * 100) if recipients else 0.0,
            recipients=rows,
        )

    # ====================
    # Maintenance
    # ====================

    async def cleanup_expired_links(self) -> int:
        """Delete expired short links"""
        count = await self.repository.delete_expired_short_links(self.now())
        logger.info(f"Cleaned up {count} expired links")
        return count
