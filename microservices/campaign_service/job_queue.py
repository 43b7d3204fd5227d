"""
Campaign Job Queue

Thin adapter over a durable job broker: immediate and delayed dispatch jobs,
cancellation, retry with exponential backoff, retention and sweeping.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from core.config import QueueConfig

from .models import Job, JobState, QueueStats, SweepResult
from .protocols import CampaignValidationError, JobBrokerProtocol

logger = logging.getLogger(__name__)

IMMEDIATE_PRIORITY = 1
SCHEDULED_PRIORITY = 2

OPEN_STATES = [JobState.WAITING, JobState.DELAYED, JobState.ACTIVE]
CANCELLABLE_STATES = [JobState.WAITING, JobState.DELAYED]

STALLED_ERROR = "Job stalled: worker lock expired"


class CampaignJobQueue:
    """Enqueue, schedule, cancel and account for campaign dispatch jobs"""

    def __init__(
        self,
        broker: JobBrokerProtocol,
        config: Optional[QueueConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.broker = broker
        self.config = config or QueueConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def backoff_delay(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt: base, 2*base, 4*base..."""
        return self.config.backoff_base_seconds * (2 ** max(attempts_made - 1, 0))

    # ====================
    # Producers
    # ====================

    async def enqueue(
        self,
        campaign_id: str,
        owner_id: str,
        delay: float = 0,
        priority: int = IMMEDIATE_PRIORITY,
    ) -> Job:
        """
        Add a dispatch job.

        A positive delay (seconds) parks the job as DELAYED until it is due.
        Enqueuing the same campaign twice yields two jobs.
        """
        now = self.now()
        job = Job(
            campaign_id=campaign_id,
            owner_id=owner_id,
            state=JobState.DELAYED if delay > 0 else JobState.WAITING,
            priority=priority,
            max_attempts=self.config.max_attempts,
            run_at=now + timedelta(seconds=max(delay, 0)),
            created_at=now,
        )
        job = await self.broker.add(job)
        logger.info(
            f"Enqueued job {job.job_id} for campaign {campaign_id} "
            f"({job.state.value}, priority {priority}, delay {delay:.0f}s)"
        )
        return job

    async def schedule(self, campaign_id: str, owner_id: str, at_time: datetime) -> Job:
        """Enqueue a delayed job that becomes due at at_time"""
        if at_time.tzinfo is None:
            at_time = at_time.replace(tzinfo=timezone.utc)

        delay = (at_time - self.now()).total_seconds()
        if delay <= 0:
            raise CampaignValidationError("Scheduled time must be in the future", "scheduled_at")

        return await self.enqueue(campaign_id, owner_id, delay=delay, priority=SCHEDULED_PRIORITY)

    async def cancel(self, campaign_id: str) -> bool:
        """Remove the first waiting or delayed job for the campaign"""
        jobs = await self.broker.find(campaign_id, CANCELLABLE_STATES)
        if not jobs:
            logger.info(f"No cancellable job for campaign {campaign_id}")
            return False

        job = min(jobs, key=lambda j: j.created_at)
        removed = await self.broker.remove(job.job_id)
        if removed:
            logger.info(f"Cancelled job {job.job_id} for campaign {campaign_id}")
        return removed

    async def has_open_job(self, campaign_id: str) -> bool:
        """True while a job for the campaign is waiting, delayed or held under a live lock"""
        now = self.now()
        return any(
            not self.is_stalled(job, now)
            for job in await self.broker.find(campaign_id, OPEN_STATES)
        )

    # ====================
    # Consumers
    # ====================

    def lock_until(self) -> datetime:
        return self.now() + timedelta(seconds=self.config.lock_duration_seconds)

    @staticmethod
    def is_stalled(job: Job, now: datetime) -> bool:
        return (
            job.state == JobState.ACTIVE
            and job.lock_expires_at is not None
            and job.lock_expires_at <= now
        )

    async def claim_next(self) -> Optional[Job]:
        return await self.broker.claim_next(self.now(), self.lock_until())

    async def extend_lock(self, job: Job) -> bool:
        extended = await self.broker.extend_lock(job, self.lock_until())
        if not extended:
            logger.warning(f"Job {job.job_id} is no longer active, lock not extended")
        return extended

    async def recover_stalled(self) -> List[Tuple[Job, bool]]:
        """
        Release active jobs whose worker stopped renewing the lock.

        Each stalled job counts as a failed attempt. Returns (job, requeued)
        pairs; requeued is False when the job ran out of attempts.
        """
        recovered = []
        for job in await self.broker.find_stalled(self.now()):
            logger.warning(
                f"Job {job.job_id} stalled (campaign {job.campaign_id}), lock expired at {job.lock_expires_at}"
            )
            requeued = await self.handle_failure(job, STALLED_ERROR)
            recovered.append((job, requeued))
        return recovered

    async def complete(self, job: Job) -> None:
        await self.broker.complete(job, self.now(), keep=self.config.keep_completed)
        logger.info(f"Job {job.job_id} completed (campaign {job.campaign_id})")

    async def handle_failure(self, job: Job, error: str) -> bool:
        """
        Record a failed attempt.

        Returns True when the job was re-queued with backoff, False when the
        attempt ceiling was reached and the job moved to FAILED.
        """
        if job.attempts_made < job.max_attempts:
            delay = self.backoff_delay(job.attempts_made)
            await self.broker.retry_later(job, self.now() + timedelta(seconds=delay), error)
            logger.warning(
                f"Job {job.job_id} attempt {job.attempts_made}/{job.max_attempts} failed, "
                f"retrying in {delay:.0f}s: {error}"
            )
            return True

        await self.broker.fail(job, error, self.now(), keep=self.config.keep_failed)
        logger.error(
            f"Job {job.job_id} failed after {job.attempts_made} attempts (campaign {job.campaign_id}): {error}"
        )
        return False

    # ====================
    # Accounting
    # ====================

    async def stats(self) -> QueueStats:
        counts = await self.broker.counts()
        return QueueStats(
            waiting=counts.get(JobState.WAITING, 0),
            active=counts.get(JobState.ACTIVE, 0),
            completed=counts.get(JobState.COMPLETED, 0),
            failed=counts.get(JobState.FAILED, 0),
            delayed=counts.get(JobState.DELAYED, 0),
        )

    async def sweep(
        self,
        max_age_completed_hours: Optional[float] = None,
        max_age_failed_days: Optional[float] = None,
    ) -> SweepResult:
        """Remove completed and failed jobs older than the given ages"""
        if max_age_completed_hours is None:
            max_age_completed_hours = self.config.completed_max_age_hours
        if max_age_failed_days is None:
            max_age_failed_days = self.config.failed_max_age_days

        now = self.now()
        completed_removed = await self.broker.clean(
            JobState.COMPLETED, now - timedelta(hours=max_age_completed_hours)
        )
        failed_removed = await self.broker.clean(
            JobState.FAILED, now - timedelta(days=max_age_failed_days)
        )

        logger.info(
            f"Queue sweep removed {completed_removed} completed and {failed_removed} failed jobs"
        )
        return SweepResult(completed_removed=completed_removed, failed_removed=failed_removed)
