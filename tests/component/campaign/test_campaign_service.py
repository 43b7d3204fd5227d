"""
Component Tests for Campaign Service

Tests the campaign state machine, job submission, stuck campaign
detection and provider delivery receipts with mocked dependencies.
"""

import pytest
from datetime import timedelta

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_service.protocols import (
    CampaignNotFoundError,
    CampaignValidationError,
    InvalidCampaignStateError,
    LinkGenerationError,
    MessageNotFoundError,
)
from tests.contracts.campaign.data_contract import (
    CampaignStatus,
    ChannelType,
    JobState,
    MessageStatus,
    RecipientStatus,
)


class TestSend:
    """Tests for running a campaign to completion"""

    @pytest.mark.asyncio
    async def test_send_moves_draft_to_sent(
        self, campaign_service, mock_repository, mock_event_bus, seed_campaign, clock
    ):
        # Given
        campaign, _ = await seed_campaign(ChannelType.EMAIL, contacts=2)

        # When
        summary = await campaign_service.send(campaign.campaign_id)

        # Then
        stored = mock_repository.campaigns[campaign.campaign_id]
        assert summary.status == CampaignStatus.SENT
        assert summary.success_count == 2
        assert summary.failure_count == 0
        assert stored.status == CampaignStatus.SENT
        assert stored.sent_at == clock()
        assert stored.completed_at == clock()
        assert mock_event_bus.subjects() == ["campaign.sending", "campaign.completed"]

    @pytest.mark.asyncio
    async def test_partial_failure_is_sent(
        self, campaign_service, mock_repository, seed_campaign
    ):
        campaign, contacts = await seed_campaign(ChannelType.EMAIL, contacts=3)
        contacts[0].email_opted_out = True

        summary = await campaign_service.send(campaign.campaign_id)

        assert summary.status == CampaignStatus.SENT
        assert summary.success_count == 2
        assert summary.failure_count == 1

    @pytest.mark.asyncio
    async def test_zero_successes_is_failed(
        self, campaign_service, mock_repository, mock_event_bus, seed_campaign
    ):
        campaign, contacts = await seed_campaign(ChannelType.EMAIL, contacts=2)
        for contact in contacts:
            contact.email_opted_out = True

        summary = await campaign_service.send(campaign.campaign_id)

        assert summary.status == CampaignStatus.FAILED
        assert mock_repository.campaigns[campaign.campaign_id].status == CampaignStatus.FAILED
        assert mock_event_bus.get_events_by_subject("campaign.failed")[0]["data"]["failure_count"] == 2

    @pytest.mark.asyncio
    async def test_terminal_campaign_rejected(self, campaign_service, seed_campaign):
        campaign, _ = await seed_campaign(status=CampaignStatus.SENT)

        with pytest.raises(InvalidCampaignStateError):
            await campaign_service.send(campaign.campaign_id)

    @pytest.mark.asyncio
    async def test_empty_recipients_rejected_before_sending(
        self, campaign_service, mock_repository, seed_campaign
    ):
        campaign, _ = await seed_campaign(contacts=0)

        with pytest.raises(CampaignValidationError):
            await campaign_service.send(campaign.campaign_id)
        assert mock_repository.campaigns[campaign.campaign_id].status == CampaignStatus.DRAFT
        assert mock_repository.campaigns[campaign.campaign_id].sent_at is None

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, campaign_service):
        with pytest.raises(CampaignNotFoundError):
            await campaign_service.send("cmp_missing")

    @pytest.mark.asyncio
    async def test_reentry_keeps_original_sent_at(
        self, campaign_service, mock_repository, seed_campaign, clock
    ):
        # Given: a campaign left in SENDING by an earlier attempt
        campaign, _ = await seed_campaign(contacts=1)
        first_sent_at = clock()
        await mock_repository.update_campaign_status(
            campaign.campaign_id, CampaignStatus.SENDING, sent_at=first_sent_at
        )
        clock.advance(minutes=5)

        # When
        await campaign_service.send(campaign.campaign_id, attempt=2)

        # Then
        stored = mock_repository.campaigns[campaign.campaign_id]
        assert stored.sent_at == first_sent_at
        assert stored.completed_at == clock()

    @pytest.mark.asyncio
    async def test_pipeline_error_leaves_no_pending_rows(
        self, campaign_service, mock_repository, link_tracking, seed_campaign, monkeypatch
    ):
        # Given: link rewriting fails once during a two-recipient email send
        campaign, _ = await seed_campaign(ChannelType.EMAIL, contacts=2)
        real_rewrite = link_tracking.rewrite
        calls = []

        async def rewrite_once_broken(owner_id, content, message_id, contact_id):
            calls.append(contact_id)
            if len(calls) == 1:
                raise LinkGenerationError("short code space exhausted")
            return await real_rewrite(owner_id, content, message_id, contact_id)

        monkeypatch.setattr(link_tracking, "rewrite", rewrite_once_broken)

        # When
        summary = await campaign_service.send(campaign.campaign_id)

        # Then: a terminal campaign has only terminal recipients and messages
        recipients = await mock_repository.get_recipients(campaign.campaign_id)
        assert mock_repository.campaigns[campaign.campaign_id].status == CampaignStatus.SENT
        assert sorted(r.status.value for r in recipients) == ["failed", "sent"]
        assert all(m.status != MessageStatus.PENDING for m in mock_repository.messages.values())
        assert summary.failure_count == 1

    @pytest.mark.asyncio
    async def test_repeated_url_shares_link_but_not_tokens(
        self, campaign_service, mock_repository, seed_campaign
    ):
        # Given: one URL appearing twice in the content, two recipients
        campaign, _ = await seed_campaign(
            ChannelType.EMAIL, contacts=2, content="see http://a.x/p and again http://a.x/p"
        )

        # When
        await campaign_service.send(campaign.campaign_id)

        # Then: one canonical short link, one token per occurrence per recipient
        links = [
            link for link in mock_repository.short_links.values()
            if link.original_url == "http://a.x/p"
        ]
        assert len(links) == 1
        tokens = list(mock_repository.link_tokens.values())
        assert len(tokens) == 4
        assert len({t.token for t in tokens}) == 4
        assert {t.link_id for t in tokens} == {links[0].link_id}
        for message in mock_repository.messages.values():
            assert "http://a.x/p" not in message.content


class TestJobSubmission:
    """Tests for send_now, schedule and cancel"""

    @pytest.mark.asyncio
    async def test_send_now_enqueues_job(self, campaign_service, mock_broker, seed_campaign):
        campaign, _ = await seed_campaign()

        job = await campaign_service.send_now(campaign.campaign_id, campaign.owner_id)

        assert job.state == JobState.WAITING
        assert job.campaign_id == campaign.campaign_id
        assert job.job_id in mock_broker.jobs

    @pytest.mark.asyncio
    async def test_send_now_checks_owner(self, campaign_service, seed_campaign):
        campaign, _ = await seed_campaign()

        with pytest.raises(CampaignNotFoundError):
            await campaign_service.send_now(campaign.campaign_id, "usr_other")

    @pytest.mark.asyncio
    async def test_send_now_rejects_empty_campaign(
        self, campaign_service, mock_broker, seed_campaign
    ):
        campaign, _ = await seed_campaign(contacts=0)

        with pytest.raises(CampaignValidationError):
            await campaign_service.send_now(campaign.campaign_id, campaign.owner_id)
        assert mock_broker.jobs == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [CampaignStatus.SENDING, CampaignStatus.SENT, CampaignStatus.FAILED]
    )
    async def test_send_now_rejects_running_or_finished(
        self, campaign_service, seed_campaign, status
    ):
        campaign, _ = await seed_campaign(status=status)

        with pytest.raises(InvalidCampaignStateError):
            await campaign_service.send_now(campaign.campaign_id, campaign.owner_id)

    @pytest.mark.asyncio
    async def test_schedule_draft(
        self, campaign_service, mock_repository, mock_event_bus, seed_campaign, clock
    ):
        campaign, _ = await seed_campaign()
        at_time = clock() + timedelta(days=1)

        job = await campaign_service.schedule(campaign.campaign_id, campaign.owner_id, at_time)

        stored = mock_repository.campaigns[campaign.campaign_id]
        assert job.state == JobState.DELAYED
        assert stored.status == CampaignStatus.SCHEDULED
        assert stored.scheduled_at == at_time
        event = mock_event_bus.get_events_by_subject("campaign.scheduled")[0]
        assert event["data"]["job_id"] == job.job_id

    @pytest.mark.asyncio
    async def test_schedule_past_time_leaves_campaign_untouched(
        self, campaign_service, mock_repository, seed_campaign, clock
    ):
        campaign, _ = await seed_campaign()

        with pytest.raises(CampaignValidationError):
            await campaign_service.schedule(
                campaign.campaign_id, campaign.owner_id, clock() - timedelta(minutes=1)
            )
        assert mock_repository.campaigns[campaign.campaign_id].status == CampaignStatus.DRAFT

    @pytest.mark.asyncio
    async def test_only_draft_can_be_scheduled(self, campaign_service, seed_campaign, clock):
        campaign, _ = await seed_campaign(status=CampaignStatus.SCHEDULED)

        with pytest.raises(InvalidCampaignStateError):
            await campaign_service.schedule(
                campaign.campaign_id, campaign.owner_id, clock() + timedelta(hours=1)
            )

    @pytest.mark.asyncio
    async def test_cancel_reverts_to_draft(
        self, campaign_service, mock_repository, mock_broker, mock_event_bus, seed_campaign, clock
    ):
        # Given: a scheduled campaign
        campaign, _ = await seed_campaign()
        await campaign_service.schedule(
            campaign.campaign_id, campaign.owner_id, clock() + timedelta(hours=1)
        )

        # When
        cancelled = await campaign_service.cancel(campaign.campaign_id, campaign.owner_id)

        # Then
        stored = mock_repository.campaigns[campaign.campaign_id]
        assert cancelled is True
        assert stored.status == CampaignStatus.DRAFT
        assert stored.scheduled_at is None
        assert mock_broker.jobs == {}
        assert "campaign.cancelled" in mock_event_bus.subjects()

    @pytest.mark.asyncio
    async def test_cancelled_schedule_never_sends(
        self, campaign_service, worker, mock_repository, seed_campaign, clock
    ):
        # Given: a campaign scheduled an hour out, then cancelled
        campaign, contacts = await seed_campaign(ChannelType.EMAIL, contacts=2)
        await campaign_service.schedule(
            campaign.campaign_id, campaign.owner_id, clock() + timedelta(hours=1)
        )
        await campaign_service.cancel(campaign.campaign_id, campaign.owner_id)

        # When: the scheduled time passes
        clock.advance(hours=2)
        processed = await worker.run_once()

        # Then
        assert processed is False
        assert mock_repository.messages == {}
        for contact in contacts:
            assert mock_repository.recipient_status(
                campaign.campaign_id, contact.contact_id
            ) == RecipientStatus.PENDING
        assert mock_repository.campaigns[campaign.campaign_id].status == CampaignStatus.DRAFT

    @pytest.mark.asyncio
    async def test_cancel_after_claim_returns_false(
        self, campaign_service, job_queue, mock_repository, seed_campaign
    ):
        campaign, _ = await seed_campaign()
        await campaign_service.send_now(campaign.campaign_id, campaign.owner_id)
        await job_queue.claim_next()

        assert await campaign_service.cancel(campaign.campaign_id) is False
        assert mock_repository.campaigns[campaign.campaign_id].status == CampaignStatus.DRAFT


class TestStuckCampaigns:
    """Tests for detecting campaigns stuck in SENDING"""

    @pytest.mark.asyncio
    async def test_sending_without_job_is_stuck(
        self, campaign_service, mock_repository, seed_campaign, clock
    ):
        campaign, _ = await seed_campaign()
        await mock_repository.update_campaign_status(
            campaign.campaign_id, CampaignStatus.SENDING, sent_at=clock()
        )
        clock.advance(minutes=61)

        stuck = await campaign_service.find_stuck_campaigns()

        assert [c.campaign_id for c in stuck] == [campaign.campaign_id]

    @pytest.mark.asyncio
    async def test_recent_or_queued_campaigns_are_not_stuck(
        self, campaign_service, job_queue, mock_repository, seed_campaign, clock
    ):
        # Given: one campaign that just started and one with a retry pending
        recent, _ = await seed_campaign()
        retrying, _ = await seed_campaign()
        for campaign in (recent, retrying):
            await mock_repository.update_campaign_status(
                campaign.campaign_id, CampaignStatus.SENDING, sent_at=clock()
            )
        await job_queue.enqueue(retrying.campaign_id, retrying.owner_id, delay=3600)
        clock.advance(minutes=30)

        # Then
        assert await campaign_service.find_stuck_campaigns() == []
        clock.advance(minutes=31)
        stuck = await campaign_service.find_stuck_campaigns()
        assert [c.campaign_id for c in stuck] == [recent.campaign_id]

    @pytest.mark.asyncio
    async def test_custom_threshold(self, campaign_service, mock_repository, seed_campaign, clock):
        campaign, _ = await seed_campaign()
        await mock_repository.update_campaign_status(
            campaign.campaign_id, CampaignStatus.SENDING, sent_at=clock()
        )
        clock.advance(minutes=6)

        stuck = await campaign_service.find_stuck_campaigns(timedelta(minutes=5))

        assert len(stuck) == 1

    @pytest.mark.asyncio
    async def test_job_held_by_dead_worker_is_stuck(
        self, campaign_service, job_queue, mock_repository, seed_campaign, clock
    ):
        # Given: a worker claimed the job, moved the campaign to SENDING and died
        campaign, _ = await seed_campaign()
        await campaign_service.send_now(campaign.campaign_id, campaign.owner_id)
        await job_queue.claim_next()
        await mock_repository.update_campaign_status(
            campaign.campaign_id, CampaignStatus.SENDING, sent_at=clock()
        )

        # When / Then: the live lock keeps it open, the expired lock does not
        clock.advance(minutes=2)
        assert await campaign_service.find_stuck_campaigns(timedelta(minutes=1)) == []
        clock.advance(minutes=59)
        stuck = await campaign_service.find_stuck_campaigns()
        assert [c.campaign_id for c in stuck] == [campaign.campaign_id]

    @pytest.mark.asyncio
    async def test_stuck_list_filtered_by_owner(
        self, campaign_service, mock_repository, seed_campaign, clock
    ):
        campaign, _ = await seed_campaign()
        await mock_repository.update_campaign_status(
            campaign.campaign_id, CampaignStatus.SENDING, sent_at=clock()
        )
        clock.advance(minutes=61)

        assert await campaign_service.find_stuck_campaigns(owner_id="usr_other") == []
        mine = await campaign_service.find_stuck_campaigns(owner_id=campaign.owner_id)
        assert [c.campaign_id for c in mine] == [campaign.campaign_id]


class TestMarkFailed:
    """Tests for job exhaustion"""

    @pytest.mark.asyncio
    async def test_mark_failed_stamps_completion(
        self, campaign_service, mock_repository, mock_event_bus, seed_campaign, clock
    ):
        campaign, _ = await seed_campaign(status=CampaignStatus.SENDING)

        updated = await campaign_service.mark_failed(campaign.campaign_id, "gateway down")

        assert updated.status == CampaignStatus.FAILED
        assert updated.completed_at == clock()
        event = mock_event_bus.get_events_by_subject("campaign.failed")[0]
        assert event["data"]["reason"] == "gateway down"

    @pytest.mark.asyncio
    async def test_terminal_campaign_unchanged(self, campaign_service, seed_campaign):
        campaign, _ = await seed_campaign(status=CampaignStatus.SENT)

        updated = await campaign_service.mark_failed(campaign.campaign_id, "late failure")

        assert updated.status == CampaignStatus.SENT

    @pytest.mark.asyncio
    async def test_missing_campaign(self, campaign_service):
        assert await campaign_service.mark_failed("cmp_missing", "gone") is None


class TestDeliveryReceipts:
    """Tests for provider delivered / bounced receipts"""

    @pytest.fixture
    async def sent_campaign(self, campaign_service, mock_repository, seed_campaign):
        campaign, contacts = await seed_campaign(ChannelType.SMS, contacts=1)
        summary = await campaign_service.send(campaign.campaign_id)
        return campaign, contacts[0], summary.results[0].message_id

    @pytest.mark.asyncio
    async def test_delivered_receipt(self, campaign_service, mock_repository, sent_campaign, clock):
        campaign, contact, message_id = sent_campaign

        message = await campaign_service.apply_delivery_receipt(
            message_id, MessageStatus.DELIVERED, provider_message_id="gw_42"
        )

        assert message.status == MessageStatus.DELIVERED
        assert message.delivered_at == clock()
        assert message.provider_message_id == "gw_42"
        assert mock_repository.recipient_status(
            campaign.campaign_id, contact.contact_id
        ) == RecipientStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_bounce_after_delivery(self, campaign_service, mock_repository, sent_campaign):
        campaign, contact, message_id = sent_campaign

        await campaign_service.apply_delivery_receipt(message_id, MessageStatus.DELIVERED)
        await campaign_service.apply_delivery_receipt(message_id, MessageStatus.BOUNCED)

        assert mock_repository.messages[message_id].status == MessageStatus.BOUNCED
        assert mock_repository.recipient_status(
            campaign.campaign_id, contact.contact_id
        ) == RecipientStatus.BOUNCED

    @pytest.mark.asyncio
    async def test_receipt_does_not_downgrade_click(
        self, campaign_service, mock_repository, sent_campaign
    ):
        campaign, contact, message_id = sent_campaign
        await mock_repository.advance_recipient_status(
            campaign.campaign_id, contact.contact_id, RecipientStatus.CLICKED, [RecipientStatus.SENT]
        )

        await campaign_service.apply_delivery_receipt(message_id, MessageStatus.DELIVERED)

        assert mock_repository.recipient_status(
            campaign.campaign_id, contact.contact_id
        ) == RecipientStatus.CLICKED

    @pytest.mark.asyncio
    async def test_receipt_status_must_be_final(self, campaign_service, sent_campaign):
        _, _, message_id = sent_campaign

        with pytest.raises(CampaignValidationError):
            await campaign_service.apply_delivery_receipt(message_id, MessageStatus.SENT)

    @pytest.mark.asyncio
    async def test_unknown_message(self, campaign_service):
        with pytest.raises(MessageNotFoundError):
            await campaign_service.apply_delivery_receipt("msg_missing", MessageStatus.DELIVERED)

    @pytest.mark.asyncio
    async def test_failed_message_ignores_receipt(
        self, campaign_service, mock_repository, factory
    ):
        message = factory.make_message(status=MessageStatus.FAILED)
        await mock_repository.save_message(message)

        result = await campaign_service.apply_delivery_receipt(
            message.message_id, MessageStatus.DELIVERED
        )

        assert result.status == MessageStatus.FAILED
