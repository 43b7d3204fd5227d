"""
Campaign Service Data Repository

Data access layer - PostgreSQL (Async)
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from core.config import InfraConfig
from core.postgres_client import PostgresClientWrapper, get_postgres_client

from .models import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    ConsentAuditLog,
    ConsentScope,
    Contact,
    ContactSession,
    LinkClick,
    OutboundMessage,
    RecipientLinkToken,
    RecipientStatus,
    SessionEvent,
    ShortLink,
    UnsubscribeToken,
)

logger = logging.getLogger(__name__)


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


def _json_field(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _param(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json_dumps(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _set_clauses(updates: Dict[str, Any], start: int = 1) -> Tuple[str, List[Any]]:
    """Build "col = $n" clauses from a dict of column updates"""
    clauses = []
    params = []
    for offset, (key, value) in enumerate(updates.items()):
        clauses.append(f"{key} = ${start + offset}")
        params.append(_param(value))
    return ", ".join(clauses), params


class CampaignRepository:
    """Campaign service data repository - PostgreSQL (Async)"""

    def __init__(
        self,
        db: Optional[PostgresClientWrapper] = None,
        config: Optional[InfraConfig] = None,
    ):
        self.config = config or InfraConfig.from_env()
        self.db = db
        self.schema = self.config.postgres_schema

        # Table names
        self.campaigns_table = "campaigns"
        self.contacts_table = "contacts"
        self.recipients_table = "campaign_recipients"
        self.messages_table = "outbound_messages"
        self.credits_table = "owner_credits"
        self.short_links_table = "short_links"
        self.link_tokens_table = "recipient_link_tokens"
        self.link_clicks_table = "link_clicks"
        self.sessions_table = "contact_sessions"
        self.session_events_table = "session_events"
        self.unsubscribe_tokens_table = "unsubscribe_tokens"
        self.consent_log_table = "consent_audit_log"

    def _table(self, name: str) -> str:
        return f"{self.schema}.{name}"

    async def initialize(self):
        """Initialize database connection"""
        if self.db is None:
            self.db = await get_postgres_client("campaign_service", self.config)
        else:
            await self.db.connect()
        logger.info("Campaign repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        if self.db is not None:
            await self.db.close()
        logger.info("Campaign repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        try:
            result = await self.db.query_row("SELECT 1 as healthy")
            return result is not None
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    async def _update_returning(
        self, table: str, key_column: str, key: str, updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        set_sql, params = _set_clauses(updates)
        params.append(key)
        query = f'''
            UPDATE {self._table(table)}
            SET {set_sql}
            WHERE {key_column} = ${len(params)}
            RETURNING *
        '''
        return await self.db.query_row(query, params=params)

    # ====================
    # Campaigns
    # ====================

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Save a campaign"""
        try:
            query = f'''
                INSERT INTO {self._table(self.campaigns_table)} (
                    campaign_id, owner_id, name, channel, status, subject,
                    content, sender_name, scheduled_at, sent_at, completed_at,
                    created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13
                )
                ON CONFLICT (campaign_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    channel = EXCLUDED.channel,
                    status = EXCLUDED.status,
                    subject = EXCLUDED.subject,
                    content = EXCLUDED.content,
                    sender_name = EXCLUDED.sender_name,
                    scheduled_at = EXCLUDED.scheduled_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''
            params = [
                campaign.campaign_id,
                campaign.owner_id,
                campaign.name,
                campaign.channel.value,
                campaign.status.value,
                campaign.subject,
                campaign.content,
                campaign.sender_name,
                campaign.scheduled_at,
                campaign.sent_at,
                campaign.completed_at,
                campaign.created_at,
                datetime.now(timezone.utc),
            ]
            row = await self.db.query_row(query, params=params)
            return Campaign.model_validate(row) if row else campaign

        except Exception as e:
            logger.error(f"Error saving campaign: {e}", exc_info=True)
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.campaigns_table)}
                WHERE campaign_id = $1
            '''
            row = await self.db.query_row(query, params=[campaign_id])
            return Campaign.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def update_campaign_status(
        self, campaign_id: str, status: CampaignStatus, **kwargs
    ) -> Optional[Campaign]:
        """Update campaign status and any extra columns"""
        try:
            updates = {"status": status, **kwargs, "updated_at": datetime.now(timezone.utc)}
            row = await self._update_returning(
                self.campaigns_table, "campaign_id", campaign_id, updates
            )
            return Campaign.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error updating campaign {campaign_id}: {e}")
            raise

    async def list_campaigns_by_status(
        self, status: CampaignStatus, sent_before: Optional[datetime] = None
    ) -> List[Campaign]:
        """List campaigns in a status, optionally sent before a time"""
        try:
            conditions = ["status = $1"]
            params: List[Any] = [status.value]
            if sent_before is not None:
                params.append(sent_before)
                conditions.append(f"sent_at < ${len(params)}")

            query = f'''
                SELECT * FROM {self._table(self.campaigns_table)}
                WHERE {" AND ".join(conditions)}
                ORDER BY sent_at ASC
            '''
            rows = await self.db.query(query, params=params)
            return [Campaign.model_validate(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing {status.value} campaigns: {e}")
            raise

    # ====================
    # Contacts
    # ====================

    async def save_contact(self, contact: Contact) -> Contact:
        """Save a contact"""
        try:
            query = f'''
                INSERT INTO {self._table(self.contacts_table)} (
                    contact_id, owner_id, first_name, last_name, email, phone,
                    company, email_opted_out, sms_opted_out, unsubscribed_at,
                    resubscribed_at, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (contact_id) DO UPDATE SET
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    email = EXCLUDED.email,
                    phone = EXCLUDED.phone,
                    company = EXCLUDED.company
                RETURNING *
            '''
            params = [
                contact.contact_id,
                contact.owner_id,
                contact.first_name,
                contact.last_name,
                contact.email,
                contact.phone,
                contact.company,
                contact.email_opted_out,
                contact.sms_opted_out,
                contact.unsubscribed_at,
                contact.resubscribed_at,
                contact.created_at,
            ]
            row = await self.db.query_row(query, params=params)
            return Contact.model_validate(row) if row else contact

        except Exception as e:
            logger.error(f"Error saving contact: {e}")
            raise

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Get contact by ID"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.contacts_table)}
                WHERE contact_id = $1
            '''
            row = await self.db.query_row(query, params=[contact_id])
            return Contact.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting contact {contact_id}: {e}")
            raise

    async def update_contact_consent(self, contact_id: str, **kwargs) -> Optional[Contact]:
        """Update consent flags and timestamps"""
        try:
            row = await self._update_returning(
                self.contacts_table, "contact_id", contact_id, kwargs
            )
            return Contact.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error updating consent for contact {contact_id}: {e}")
            raise

    # ====================
    # Recipients
    # ====================

    async def save_recipients(
        self, campaign_id: str, recipients: List[CampaignRecipient]
    ) -> List[CampaignRecipient]:
        """Save campaign recipients"""
        try:
            query = f'''
                INSERT INTO {self._table(self.recipients_table)} (
                    campaign_id, contact_id, status, sent_at, failed_at, error, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (campaign_id, contact_id) DO NOTHING
            '''
            await self.db.execute_many(
                query,
                [
                    [
                        campaign_id,
                        r.contact_id,
                        r.status.value,
                        r.sent_at,
                        r.failed_at,
                        r.error,
                        r.updated_at,
                    ]
                    for r in recipients
                ],
            )
            return await self.get_recipients(campaign_id)

        except Exception as e:
            logger.error(f"Error saving recipients for campaign {campaign_id}: {e}")
            raise

    async def get_recipients(self, campaign_id: str) -> List[CampaignRecipient]:
        """Get campaign recipients"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.recipients_table)}
                WHERE campaign_id = $1
                ORDER BY contact_id
            '''
            rows = await self.db.query(query, params=[campaign_id])
            return [CampaignRecipient.model_validate(row) for row in rows]

        except Exception as e:
            logger.error(f"Error getting recipients for campaign {campaign_id}: {e}")
            raise

    async def count_recipients(self, campaign_id: str) -> int:
        """Count campaign recipients"""
        try:
            query = f'''
                SELECT COUNT(*) FROM {self._table(self.recipients_table)}
                WHERE campaign_id = $1
            '''
            return int(await self.db.fetchval(query, params=[campaign_id]) or 0)

        except Exception as e:
            logger.error(f"Error counting recipients for campaign {campaign_id}: {e}")
            raise

    async def update_recipient_if_pending(
        self, campaign_id: str, contact_id: str, status: RecipientStatus, **kwargs
    ) -> bool:
        """Atomically resolve a recipient only while it is still PENDING"""
        try:
            updates = {"status": status, **kwargs, "updated_at": datetime.now(timezone.utc)}
            set_sql, params = _set_clauses(updates)
            params.extend([campaign_id, contact_id, RecipientStatus.PENDING.value])
            n = len(params)
            query = f'''
                UPDATE {self._table(self.recipients_table)}
                SET {set_sql}
                WHERE campaign_id = ${n - 2} AND contact_id = ${n - 1} AND status = ${n}
            '''
            return await self.db.execute(query, params=params) > 0

        except Exception as e:
            logger.error(f"Error updating recipient {contact_id} of campaign {campaign_id}: {e}")
            raise

    async def advance_recipient_status(
        self,
        campaign_id: str,
        contact_id: str,
        status: RecipientStatus,
        from_statuses: List[RecipientStatus],
    ) -> bool:
        """Move a recipient forward when its current status is one of from_statuses"""
        try:
            query = f'''
                UPDATE {self._table(self.recipients_table)}
                SET status = $1, updated_at = $2
                WHERE campaign_id = $3 AND contact_id = $4 AND status = ANY($5::text[])
            '''
            params = [
                status.value,
                datetime.now(timezone.utc),
                campaign_id,
                contact_id,
                [s.value for s in from_statuses],
            ]
            return await self.db.execute(query, params=params) > 0

        except Exception as e:
            logger.error(f"Error advancing recipient {contact_id} of campaign {campaign_id}: {e}")
            raise

    # ====================
    # Outbound Messages
    # ====================

    def _row_to_message(self, row: Dict[str, Any]) -> OutboundMessage:
        row = dict(row)
        row["provider_response"] = _json_field(row.get("provider_response"))
        return OutboundMessage.model_validate(row)

    async def save_message(self, message: OutboundMessage) -> OutboundMessage:
        """Save an outbound message"""
        try:
            query = f'''
                INSERT INTO {self._table(self.messages_table)} (
                    message_id, campaign_id, contact_id, owner_id, channel, attempt,
                    recipient_address, subject, content, sender, status,
                    provider_status_code, provider_message_id, provider_response,
                    created_at, sent_at, delivered_at, opened_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16, $17, $18
                )
                RETURNING *
            '''
            params = [
                message.message_id,
                message.campaign_id,
                message.contact_id,
                message.owner_id,
                message.channel.value,
                message.attempt,
                message.recipient_address,
                message.subject,
                message.content,
                message.sender,
                message.status.value,
                message.provider_status_code,
                message.provider_message_id,
                json_dumps(message.provider_response),
                message.created_at,
                message.sent_at,
                message.delivered_at,
                message.opened_at,
            ]
            row = await self.db.query_row(query, params=params)
            return self._row_to_message(row) if row else message

        except Exception as e:
            logger.error(f"Error saving message: {e}")
            raise

    async def get_message(self, message_id: str) -> Optional[OutboundMessage]:
        """Get outbound message by ID"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.messages_table)}
                WHERE message_id = $1
            '''
            row = await self.db.query_row(query, params=[message_id])
            return self._row_to_message(row) if row else None

        except Exception as e:
            logger.error(f"Error getting message {message_id}: {e}")
            raise

    async def update_message(self, message_id: str, **kwargs) -> Optional[OutboundMessage]:
        """Update outbound message fields"""
        try:
            if not kwargs:
                return await self.get_message(message_id)
            row = await self._update_returning(
                self.messages_table, "message_id", message_id, kwargs
            )
            return self._row_to_message(row) if row else None

        except Exception as e:
            logger.error(f"Error updating message {message_id}: {e}")
            raise

    async def list_messages(self, campaign_id: str) -> List[OutboundMessage]:
        """List outbound messages for a campaign"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.messages_table)}
                WHERE campaign_id = $1
                ORDER BY created_at ASC
            '''
            rows = await self.db.query(query, params=[campaign_id])
            return [self._row_to_message(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing messages for campaign {campaign_id}: {e}")
            raise

    # ====================
    # SMS Credit
    # ====================

    async def reserve_sms_credit(self, owner_id: str, amount: int = 1) -> bool:
        """Atomically decrement the balance if it covers amount"""
        try:
            query = f'''
                UPDATE {self._table(self.credits_table)}
                SET sms_balance = sms_balance - $2, updated_at = $3
                WHERE owner_id = $1 AND sms_balance >= $2
            '''
            params = [owner_id, amount, datetime.now(timezone.utc)]
            return await self.db.execute(query, params=params) > 0

        except Exception as e:
            logger.error(f"Error reserving SMS credit for owner {owner_id}: {e}")
            raise

    async def refund_sms_credit(self, owner_id: str, amount: int = 1) -> None:
        """Give back a reserved credit"""
        try:
            query = f'''
                UPDATE {self._table(self.credits_table)}
                SET sms_balance = sms_balance + $2, updated_at = $3
                WHERE owner_id = $1
            '''
            await self.db.execute(query, params=[owner_id, amount, datetime.now(timezone.utc)])

        except Exception as e:
            logger.error(f"Error refunding SMS credit for owner {owner_id}: {e}")
            raise

    # ====================
    # Short Links
    # ====================

    async def find_active_short_link(
        self, owner_id: str, original_url: str, now: datetime
    ) -> Optional[ShortLink]:
        """Find an unexpired short link for (owner, url)"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.short_links_table)}
                WHERE owner_id = $1 AND original_url = $2
                  AND (expires_at IS NULL OR expires_at > $3)
                ORDER BY created_at DESC
                LIMIT 1
            '''
            row = await self.db.query_row(query, params=[owner_id, original_url, now])
            return ShortLink.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error finding short link for owner {owner_id}: {e}")
            raise

    async def short_code_exists(self, short_code: str) -> bool:
        """Check short code uniqueness"""
        try:
            query = f'''
                SELECT EXISTS(
                    SELECT 1 FROM {self._table(self.short_links_table)} WHERE short_code = $1
                )
            '''
            return bool(await self.db.fetchval(query, params=[short_code]))

        except Exception as e:
            logger.error(f"Error checking short code {short_code}: {e}")
            raise

    async def save_short_link(self, link: ShortLink) -> ShortLink:
        """Save a short link"""
        try:
            query = f'''
                INSERT INTO {self._table(self.short_links_table)} (
                    link_id, owner_id, original_url, short_code, expires_at, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
            '''
            params = [
                link.link_id,
                link.owner_id,
                link.original_url,
                link.short_code,
                link.expires_at,
                link.created_at,
            ]
            row = await self.db.query_row(query, params=params)
            return ShortLink.model_validate(row) if row else link

        except Exception as e:
            logger.error(f"Error saving short link: {e}")
            raise

    async def get_short_link(self, link_id: str) -> Optional[ShortLink]:
        """Get short link by ID"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.short_links_table)}
                WHERE link_id = $1
            '''
            row = await self.db.query_row(query, params=[link_id])
            return ShortLink.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting short link {link_id}: {e}")
            raise

    async def get_short_link_by_code(self, short_code: str) -> Optional[ShortLink]:
        """Get short link by short code"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.short_links_table)}
                WHERE short_code = $1
            '''
            row = await self.db.query_row(query, params=[short_code])
            return ShortLink.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting short link by code {short_code}: {e}")
            raise

    async def delete_expired_short_links(self, now: datetime) -> int:
        """Delete expired short links"""
        try:
            query = f'''
                DELETE FROM {self._table(self.short_links_table)}
                WHERE expires_at IS NOT NULL AND expires_at <= $1
            '''
            return await self.db.execute(query, params=[now])

        except Exception as e:
            logger.error(f"Error deleting expired short links: {e}")
            raise

    # ====================
    # Recipient Tokens and Clicks
    # ====================

    async def save_link_token(self, token: RecipientLinkToken) -> RecipientLinkToken:
        """Save a recipient link token"""
        try:
            query = f'''
                INSERT INTO {self._table(self.link_tokens_table)} (
                    token_id, token, message_id, link_id, contact_id, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
            '''
            params = [
                token.token_id,
                token.token,
                token.message_id,
                token.link_id,
                token.contact_id,
                token.created_at,
            ]
            row = await self.db.query_row(query, params=params)
            return RecipientLinkToken.model_validate(row) if row else token

        except Exception as e:
            logger.error(f"Error saving link token: {e}")
            raise

    async def get_link_token(self, token: str) -> Optional[RecipientLinkToken]:
        """Get a recipient link token by its token string"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.link_tokens_table)}
                WHERE token = $1
            '''
            row = await self.db.query_row(query, params=[token])
            return RecipientLinkToken.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting link token: {e}")
            raise

    async def list_link_tokens(self, message_ids: List[str]) -> List[RecipientLinkToken]:
        """List tokens issued for the given messages"""
        if not message_ids:
            return []
        try:
            query = f'''
                SELECT * FROM {self._table(self.link_tokens_table)}
                WHERE message_id = ANY($1::text[])
                ORDER BY created_at ASC
            '''
            rows = await self.db.query(query, params=[message_ids])
            return [RecipientLinkToken.model_validate(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing link tokens: {e}")
            raise

    async def save_link_click(self, click: LinkClick) -> LinkClick:
        """Append a click"""
        try:
            query = f'''
                INSERT INTO {self._table(self.link_clicks_table)} (
                    click_id, link_id, token_id, contact_id, session_id,
                    ip_address, user_agent, referer, clicked_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
            '''
            params = [
                click.click_id,
                click.link_id,
                click.token_id,
                click.contact_id,
                click.session_id,
                click.ip_address,
                click.user_agent,
                click.referer,
                click.clicked_at,
            ]
            row = await self.db.query_row(query, params=params)
            return LinkClick.model_validate(row) if row else click

        except Exception as e:
            logger.error(f"Error saving link click: {e}")
            raise

    async def list_clicks_for_link(
        self, link_id: str, since: Optional[datetime] = None
    ) -> List[LinkClick]:
        """List clicks on a short link"""
        try:
            params: List[Any] = [link_id]
            since_sql = ""
            if since is not None:
                params.append(since)
                since_sql = "AND clicked_at >= $2"
            query = f'''
                SELECT * FROM {self._table(self.link_clicks_table)}
                WHERE link_id = $1 {since_sql}
                ORDER BY clicked_at ASC
            '''
            rows = await self.db.query(query, params=params)
            return [LinkClick.model_validate(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing clicks for link {link_id}: {e}")
            raise

    async def list_clicks_for_tokens(self, token_ids: List[str]) -> List[LinkClick]:
        """List clicks on the given tokens"""
        if not token_ids:
            return []
        try:
            query = f'''
                SELECT * FROM {self._table(self.link_clicks_table)}
                WHERE token_id = ANY($1::text[])
                ORDER BY clicked_at ASC
            '''
            rows = await self.db.query(query, params=[token_ids])
            return [LinkClick.model_validate(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing clicks for tokens: {e}")
            raise

    # ====================
    # Sessions
    # ====================

    async def get_latest_session(
        self, contact_id: str, seen_since: datetime
    ) -> Optional[ContactSession]:
        """Most recent session for a contact seen since a time"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.sessions_table)}
                WHERE contact_id = $1 AND last_seen > $2
                ORDER BY last_seen DESC
                LIMIT 1
            '''
            row = await self.db.query_row(query, params=[contact_id, seen_since])
            return ContactSession.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting session for contact {contact_id}: {e}")
            raise

    async def get_session(self, session_id: str) -> Optional[ContactSession]:
        """Get session by ID"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.sessions_table)}
                WHERE session_id = $1
            '''
            row = await self.db.query_row(query, params=[session_id])
            return ContactSession.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting session {session_id}: {e}")
            raise

    async def save_session(self, session: ContactSession) -> ContactSession:
        """Save a session"""
        try:
            query = f'''
                INSERT INTO {self._table(self.sessions_table)} (
                    session_id, contact_id, owner_id, first_seen, last_seen
                ) VALUES ($1, $2, $3, $4, $5)
                RETURNING *
            '''
            params = [
                session.session_id,
                session.contact_id,
                session.owner_id,
                session.first_seen,
                session.last_seen,
            ]
            row = await self.db.query_row(query, params=params)
            return ContactSession.model_validate(row) if row else session

        except Exception as e:
            logger.error(f"Error saving session: {e}")
            raise

    async def touch_session(self, session_id: str, last_seen: datetime) -> None:
        """Bump session last_seen"""
        try:
            query = f'''
                UPDATE {self._table(self.sessions_table)}
                SET last_seen = $1
                WHERE session_id = $2
            '''
            await self.db.execute(query, params=[last_seen, session_id])

        except Exception as e:
            logger.error(f"Error touching session {session_id}: {e}")
            raise

    async def save_session_event(self, event: SessionEvent) -> SessionEvent:
        """Append a session event"""
        try:
            query = f'''
                INSERT INTO {self._table(self.session_events_table)} (
                    event_id, session_id, contact_id, event_type, page_url, data, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
            '''
            params = [
                event.event_id,
                event.session_id,
                event.contact_id,
                event.event_type,
                event.page_url,
                json_dumps(event.data),
                event.created_at,
            ]
            row = await self.db.query_row(query, params=params)
            if not row:
                return event
            row["data"] = _json_field(row.get("data"))
            return SessionEvent.model_validate(row)

        except Exception as e:
            logger.error(f"Error saving session event: {e}")
            raise

    # ====================
    # Consent
    # ====================

    async def find_active_unsubscribe_token(
        self, contact_id: str, owner_id: str, scope: ConsentScope
    ) -> Optional[UnsubscribeToken]:
        """Find an active token for (contact, owner, scope)"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.unsubscribe_tokens_table)}
                WHERE contact_id = $1 AND owner_id = $2 AND scope = $3 AND is_active = TRUE
                ORDER BY created_at DESC
                LIMIT 1
            '''
            row = await self.db.query_row(query, params=[contact_id, owner_id, scope.value])
            return UnsubscribeToken.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error finding unsubscribe token for contact {contact_id}: {e}")
            raise

    async def get_unsubscribe_token(self, token: str) -> Optional[UnsubscribeToken]:
        """Get unsubscribe token"""
        try:
            query = f'''
                SELECT * FROM {self._table(self.unsubscribe_tokens_table)}
                WHERE token = $1
            '''
            row = await self.db.query_row(query, params=[token])
            return UnsubscribeToken.model_validate(row) if row else None

        except Exception as e:
            logger.error(f"Error getting unsubscribe token: {e}")
            raise

    async def save_unsubscribe_token(self, token: UnsubscribeToken) -> UnsubscribeToken:
        """Save unsubscribe token"""
        try:
            query = f'''
                INSERT INTO {self._table(self.unsubscribe_tokens_table)} (
                    token, contact_id, owner_id, scope, is_active, created_at, used_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
            '''
            params = [
                token.token,
                token.contact_id,
                token.owner_id,
                token.scope.value,
                token.is_active,
                token.created_at,
                token.used_at,
            ]
            row = await self.db.query_row(query, params=params)
            return UnsubscribeToken.model_validate(row) if row else token

        except Exception as e:
            logger.error(f"Error saving unsubscribe token: {e}")
            raise

    async def deactivate_unsubscribe_token(self, token: str, used_at: datetime) -> None:
        """Mark a token used"""
        try:
            query = f'''
                UPDATE {self._table(self.unsubscribe_tokens_table)}
                SET is_active = FALSE, used_at = $1
                WHERE token = $2
            '''
            await self.db.execute(query, params=[used_at, token])

        except Exception as e:
            logger.error(f"Error deactivating unsubscribe token: {e}")
            raise

    async def save_consent_log(self, log: ConsentAuditLog) -> ConsentAuditLog:
        """Append a consent audit row"""
        try:
            query = f'''
                INSERT INTO {self._table(self.consent_log_table)} (
                    log_id, contact_id, owner_id, action, scope, token,
                    ip_address, user_agent, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
            '''
            params = [
                log.log_id,
                log.contact_id,
                log.owner_id,
                log.action.value,
                log.scope.value,
                log.token,
                log.ip_address,
                log.user_agent,
                log.created_at,
            ]
            row = await self.db.query_row(query, params=params)
            return ConsentAuditLog.model_validate(row) if row else log

        except Exception as e:
            logger.error(f"Error saving consent log: {e}")
            raise
