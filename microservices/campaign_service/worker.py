"""
Campaign Dispatch Worker

Pool of async workers that claim dispatch jobs from the queue and run them
through CampaignService.send, releasing jobs whose worker died.
"""

import asyncio
import logging
from typing import List, Optional

from .campaign_service import CampaignService
from .job_queue import STALLED_ERROR, CampaignJobQueue
from .models import DispatchSummary, Job
from .protocols import CampaignServiceError

logger = logging.getLogger(__name__)


class CampaignWorker:
    """Polls the job queue with a fixed number of concurrent workers"""

    def __init__(
        self,
        job_queue: CampaignJobQueue,
        campaign_service: CampaignService,
        concurrency: int = 2,
        poll_interval: float = 1.0,
    ):
        self.job_queue = job_queue
        self.campaign_service = campaign_service
        self.concurrency = max(concurrency, 1)
        self.poll_interval = poll_interval
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def process_job(self, job: Job) -> Optional[DispatchSummary]:
        """
        Run one claimed job.

        The job lock is renewed while the dispatch runs. Any exception from
        the dispatch is a job-level failure: the job is re-queued with
        backoff while attempts remain, otherwise the campaign is marked
        FAILED and the job moves to the failed set.
        """
        logger.info(
            f"Processing job {job.job_id} for campaign {job.campaign_id} "
            f"(attempt {job.attempts_made}/{job.max_attempts})"
        )
        renewer = asyncio.create_task(self._keep_lock(job))
        try:
            summary = await self.campaign_service.send(job.campaign_id, attempt=job.attempts_made)
        except Exception as e:
            await self._fail_job(job, f"{type(e).__name__}: {e}")
            return None
        finally:
            renewer.cancel()
            await asyncio.gather(renewer, return_exceptions=True)

        await self.job_queue.complete(job)
        return summary

    async def _fail_job(self, job: Job, error: str) -> None:
        if not await self.job_queue.handle_failure(job, error):
            await self._mark_campaign_failed(job, error)

    async def _mark_campaign_failed(self, job: Job, error: str) -> None:
        try:
            await self.campaign_service.mark_failed(job.campaign_id, error)
        except CampaignServiceError as mark_error:
            logger.warning(f"Could not mark campaign {job.campaign_id} failed: {mark_error}")

    async def _keep_lock(self, job: Job) -> None:
        interval = max(self.job_queue.config.lock_duration_seconds / 2, 1)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.job_queue.extend_lock(job)
            except Exception as e:
                logger.warning(f"Could not extend lock of job {job.job_id}: {e}")

    async def recover_stalled(self) -> int:
        """Re-queue or fail jobs left active by a dead worker"""
        recovered = await self.job_queue.recover_stalled()
        for job, requeued in recovered:
            if not requeued:
                await self._mark_campaign_failed(job, STALLED_ERROR)
        return len(recovered)

    async def run_once(self) -> bool:
        """Claim and process a single job; False when nothing was due"""
        await self.recover_stalled()
        job = await self.job_queue.claim_next()
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def _worker_loop(self, index: int) -> None:
        logger.info(f"Campaign worker {index} started")
        while self._running:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Campaign worker {index} error: {e}")
                processed = False
            if not processed:
                await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(i)) for i in range(self.concurrency)
        ]
        logger.info(f"Campaign worker pool started ({self.concurrency} workers)")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Campaign worker pool stopped")
