"""
Redis Job Broker

Durable storage for campaign dispatch jobs.

Layout (prefix = queue name):
    {prefix}:job:{job_id}         hash: data (job JSON), campaign_id, wait_score
    {prefix}:waiting              zset scored by priority then creation time
    {prefix}:delayed              zset scored by run_at
    {prefix}:active               zset scored by lock expiry
    {prefix}:completed|failed     zset scored by finished_at
    {prefix}:campaign:{id}        set of job ids per campaign
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .models import Job, JobState

logger = logging.getLogger(__name__)

PRIORITY_WEIGHT = 10 ** 13

redis_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    reraise=True,
)

# Promote due delayed jobs, then move the best waiting job to active,
# scored by the time its lock expires.
CLAIM_SCRIPT = """
local due = redis.call('zrangebyscore', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(due) do
    local score = redis.call('hget', ARGV[2] .. id, 'wait_score')
    redis.call('zrem', KEYS[1], id)
    if score then
        redis.call('zadd', KEYS[2], score, id)
    end
end
local head = redis.call('zrange', KEYS[2], 0, 0)
if #head == 0 then
    return false
end
local id = head[1]
redis.call('zrem', KEYS[2], id)
redis.call('zadd', KEYS[3], ARGV[3], id)
return id
"""

# Drop ids from a finished zset: ARGV[1] = 'rank' keeps the newest N,
# ARGV[1] = 'score' removes everything scored at or below the cutoff.
PRUNE_SCRIPT = """
local ids
if ARGV[1] == 'rank' then
    local excess = redis.call('zcard', KEYS[1]) - tonumber(ARGV[2])
    if excess <= 0 then
        return 0
    end
    ids = redis.call('zrange', KEYS[1], 0, excess - 1)
else
    ids = redis.call('zrangebyscore', KEYS[1], '-inf', ARGV[2])
end
for _, id in ipairs(ids) do
    local campaign_id = redis.call('hget', ARGV[3] .. id, 'campaign_id')
    if campaign_id then
        redis.call('srem', ARGV[4] .. campaign_id, id)
    end
    redis.call('del', ARGV[3] .. id)
    redis.call('zrem', KEYS[1], id)
end
return #ids
"""

REMOVE_SCRIPT = """
local removed = 0
for i = 1, #KEYS do
    removed = removed + redis.call('zrem', KEYS[i], ARGV[1])
end
if removed == 0 then
    return 0
end
local campaign_id = redis.call('hget', ARGV[2] .. ARGV[1], 'campaign_id')
if campaign_id then
    redis.call('srem', ARGV[3] .. campaign_id, ARGV[1])
end
redis.call('del', ARGV[2] .. ARGV[1])
return 1
"""

# Re-score an active job's lock and store its data; 0 when it left active.
EXTEND_SCRIPT = """
if not redis.call('zscore', KEYS[1], ARGV[1]) then
    return 0
end
redis.call('zadd', KEYS[1], ARGV[2], ARGV[1])
redis.call('hset', KEYS[2], 'data', ARGV[3])
return 1
"""


def _score(dt: datetime) -> float:
    return dt.timestamp()


def _wait_score(job: Job) -> float:
    return job.priority * PRIORITY_WEIGHT + int(job.created_at.timestamp() * 1000)


class RedisJobBroker:
    """Job broker backed by Redis sorted sets"""

    def __init__(self, client: redis.Redis, queue_name: str = "campaign-dispatch"):
        self.client = client
        self.prefix = queue_name
        self._claim = client.register_script(CLAIM_SCRIPT)
        self._prune = client.register_script(PRUNE_SCRIPT)
        self._remove = client.register_script(REMOVE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)

    def _state_key(self, state: JobState) -> str:
        return f"{self.prefix}:{state.value}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    @property
    def _job_prefix(self) -> str:
        return f"{self.prefix}:job:"

    @property
    def _campaign_prefix(self) -> str:
        return f"{self.prefix}:campaign:"

    def _job_fields(self, job: Job) -> Dict[str, str]:
        return {
            "data": job.model_dump_json(),
            "campaign_id": job.campaign_id,
            "wait_score": str(_wait_score(job)),
        }

    async def _load(self, job_id: str) -> Optional[Job]:
        data = await self.client.hget(self._job_key(job_id), "data")
        if not data:
            return None
        return Job.model_validate_json(data)

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    # ====================
    # Producers
    # ====================

    @redis_retry
    async def add(self, job: Job) -> Job:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job.job_id), mapping=self._job_fields(job))
                pipe.sadd(f"{self._campaign_prefix}{job.campaign_id}", job.job_id)
                if job.state == JobState.DELAYED:
                    pipe.zadd(self._state_key(JobState.DELAYED), {job.job_id: _score(job.run_at)})
                else:
                    pipe.zadd(self._state_key(JobState.WAITING), {job.job_id: _wait_score(job)})
                await pipe.execute()
            return job
        except Exception as e:
            logger.error(f"Error adding job {job.job_id}: {e}")
            raise

    @redis_retry
    async def get(self, job_id: str) -> Optional[Job]:
        try:
            return await self._load(job_id)
        except Exception as e:
            logger.error(f"Error getting job {job_id}: {e}")
            raise

    @redis_retry
    async def find(self, campaign_id: str, states: List[JobState]) -> List[Job]:
        try:
            job_ids = await self.client.smembers(f"{self._campaign_prefix}{campaign_id}")
            jobs = []
            for job_id in job_ids:
                job = await self._load(job_id)
                if job and job.state in states:
                    jobs.append(job)
            return sorted(jobs, key=lambda j: j.created_at)
        except Exception as e:
            logger.error(f"Error finding jobs for campaign {campaign_id}: {e}")
            raise

    @redis_retry
    async def remove(self, job_id: str) -> bool:
        try:
            removed = await self._remove(
                keys=[self._state_key(state) for state in JobState],
                args=[job_id, self._job_prefix, self._campaign_prefix],
            )
            return bool(removed)
        except Exception as e:
            logger.error(f"Error removing job {job_id}: {e}")
            raise

    @redis_retry
    async def counts(self) -> Dict[JobState, int]:
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for state in JobState:
                    pipe.zcard(self._state_key(state))
                results = await pipe.execute()
            return {state: int(count) for state, count in zip(JobState, results)}
        except Exception as e:
            logger.error(f"Error counting jobs: {e}")
            raise

    # ====================
    # Consumers
    # ====================

    @redis_retry
    async def claim_next(self, now: datetime, lock_until: datetime) -> Optional[Job]:
        try:
            job_id = await self._claim(
                keys=[
                    self._state_key(JobState.DELAYED),
                    self._state_key(JobState.WAITING),
                    self._state_key(JobState.ACTIVE),
                ],
                args=[_score(now), self._job_prefix, _score(lock_until)],
            )
            if not job_id:
                return None

            job = await self._load(job_id)
            if job is None:
                await self.client.zrem(self._state_key(JobState.ACTIVE), job_id)
                logger.warning(f"Claimed job {job_id} has no data, dropped")
                return None

            job.state = JobState.ACTIVE
            job.attempts_made += 1
            job.processed_at = now
            job.lock_expires_at = lock_until
            await self.client.hset(self._job_key(job.job_id), "data", job.model_dump_json())
            return job
        except Exception as e:
            logger.error(f"Error claiming next job: {e}")
            raise

    @redis_retry
    async def extend_lock(self, job: Job, lock_until: datetime) -> bool:
        try:
            job.lock_expires_at = lock_until
            extended = await self._extend(
                keys=[self._state_key(JobState.ACTIVE), self._job_key(job.job_id)],
                args=[job.job_id, _score(lock_until), job.model_dump_json()],
            )
            return bool(extended)
        except Exception as e:
            logger.error(f"Error extending lock of job {job.job_id}: {e}")
            raise

    @redis_retry
    async def find_stalled(self, now: datetime) -> List[Job]:
        try:
            job_ids = await self.client.zrangebyscore(
                self._state_key(JobState.ACTIVE), "-inf", _score(now)
            )
            jobs = []
            for job_id in job_ids:
                job = await self._load(job_id)
                if job:
                    jobs.append(job)
            return jobs
        except Exception as e:
            logger.error(f"Error finding stalled jobs: {e}")
            raise

    async def _finish(
        self, job: Job, state: JobState, finished_at: datetime, keep: int
    ) -> None:
        job.state = state
        job.finished_at = finished_at
        job.lock_expires_at = None
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._state_key(JobState.ACTIVE), job.job_id)
            pipe.hset(self._job_key(job.job_id), "data", job.model_dump_json())
            pipe.zadd(self._state_key(state), {job.job_id: _score(finished_at)})
            await pipe.execute()
        await self._prune(
            keys=[self._state_key(state)],
            args=["rank", keep, self._job_prefix, self._campaign_prefix],
        )

    @redis_retry
    async def complete(self, job: Job, finished_at: datetime, keep: int) -> None:
        try:
            await self._finish(job, JobState.COMPLETED, finished_at, keep)
        except Exception as e:
            logger.error(f"Error completing job {job.job_id}: {e}")
            raise

    @redis_retry
    async def fail(self, job: Job, error: str, finished_at: datetime, keep: int) -> None:
        try:
            job.last_error = error
            await self._finish(job, JobState.FAILED, finished_at, keep)
        except Exception as e:
            logger.error(f"Error failing job {job.job_id}: {e}")
            raise

    @redis_retry
    async def retry_later(self, job: Job, run_at: datetime, error: str) -> None:
        try:
            job.state = JobState.DELAYED
            job.lock_expires_at = None
            job.run_at = run_at
            job.last_error = error
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zrem(self._state_key(JobState.ACTIVE), job.job_id)
                pipe.hset(self._job_key(job.job_id), "data", job.model_dump_json())
                pipe.zadd(self._state_key(JobState.DELAYED), {job.job_id: _score(run_at)})
                await pipe.execute()
        except Exception as e:
            logger.error(f"Error re-queueing job {job.job_id}: {e}")
            raise

    @redis_retry
    async def clean(self, state: JobState, finished_before: datetime) -> int:
        try:
            removed = await self._prune(
                keys=[self._state_key(state)],
                args=["score", _score(finished_before), self._job_prefix, self._campaign_prefix],
            )
            return int(removed)
        except Exception as e:
            logger.error(f"Error cleaning {state.value} jobs: {e}")
            raise
