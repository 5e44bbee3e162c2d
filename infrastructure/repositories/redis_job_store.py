"""
Redis-backed job store for multi-process worker deployments.

Key layout (prefix defaults to "feedbackhub"):
    {prefix}:job:{job_id}              JSON job record
    {prefix}:jobs                      ZSET job_id -> created_at (listing index)
    {prefix}:lane:{lane}:wait          LIST of ready job ids (RPUSH / LPOP, FIFO)
    {prefix}:lane:{lane}:delayed       ZSET job_id -> run_at
    {prefix}:lane:{lane}:active        ZSET job_id -> lease expiry
    {prefix}:lane:{lane}:completed     ZSET job_id -> completed_at
    {prefix}:lane:{lane}:failed        ZSET job_id -> completed_at

Claim, commit, lease renewal and stall recovery run as Lua scripts so each
is a single atomic step on the server. Job keys are addressed from inside the scripts,
which ties a lane to one Redis node (no cluster sharding of a lane).
"""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis_async
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.exceptions import ClaimLostError, StoreUnavailableError
from feedback_hub.jobs.models import Job, JobStatus, Lane
from infrastructure.repositories.job_store import STALLED_ERROR, STALLED_LIMIT_ERROR, JobStore

logger = logging.getLogger(__name__)


# Promote due delayed jobs, pop the next ready one and claim it.
# KEYS: wait, delayed, active
# ARGV: now, worker_id, lease_seconds, job key prefix
CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  redis.call('RPUSH', KEYS[1], id)
end
while true do
  local id = redis.call('LPOP', KEYS[1])
  if not id then return false end
  local key = ARGV[4] .. id
  local raw = redis.call('GET', key)
  if raw then
    local job = cjson.decode(raw)
    if job['status'] == 'pending' then
      local now = tonumber(ARGV[1])
      local expires = now + tonumber(ARGV[3])
      job['status'] = 'active'
      job['attempts_made'] = job['attempts_made'] + 1
      job['started_at'] = now
      job['locked_by'] = ARGV[2]
      job['lease_expires_at'] = expires
      local encoded = cjson.encode(job)
      redis.call('SET', key, encoded)
      redis.call('ZADD', KEYS[3], expires, id)
      return encoded
    end
  end
end
"""

# Replace a job record only while the caller still holds the claim.
# KEYS: job key, active, target
# ARGV: worker_id, new job json, job_id, target kind (list|zset|none),
#       target score, remove from active (1|0)
COMMIT_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local job = cjson.decode(raw)
if job['status'] ~= 'active' or job['locked_by'] ~= ARGV[1] then return 0 end
redis.call('SET', KEYS[1], ARGV[2])
if ARGV[6] == '1' then redis.call('ZREM', KEYS[2], ARGV[3]) end
if ARGV[4] == 'list' then
  redis.call('RPUSH', KEYS[3], ARGV[3])
elseif ARGV[4] == 'zset' then
  redis.call('ZADD', KEYS[3], tonumber(ARGV[5]), ARGV[3])
end
return 1
"""

# Update fields of a claimed job and optionally extend its lease, without
# replacing the rest of the record.
# KEYS: job key, active
# ARGV: worker_id, fields json, job_id, lease expiry ('' keeps the lease)
PATCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local job = cjson.decode(raw)
if job['status'] ~= 'active' or job['locked_by'] ~= ARGV[1] then return 0 end
for name, value in pairs(cjson.decode(ARGV[2])) do
  job[name] = value
end
redis.call('SET', KEYS[1], cjson.encode(job))
if ARGV[4] ~= '' then
  redis.call('ZADD', KEYS[2], tonumber(ARGV[4]), ARGV[3])
end
return 1
"""

# Recover expired claims in one lane.
# KEYS: active, wait, failed
# ARGV: now, job key prefix, stalled error, stalled-limit error
REAP_SCRIPT = """
local now = tonumber(ARGV[1])
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1])
local out = {}
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  local raw = redis.call('GET', key)
  if raw then
    local job = cjson.decode(raw)
    if job['status'] == 'active' then
      job['stalled_count'] = (job['stalled_count'] or 0) + 1
      job['locked_by'] = cjson.null
      job['lease_expires_at'] = cjson.null
      if job['attempts_made'] < job['max_attempts'] then
        job['status'] = 'pending'
        job['run_at'] = now
        job['error'] = ARGV[3]
        redis.call('RPUSH', KEYS[2], id)
      else
        job['status'] = 'failed'
        job['completed_at'] = now
        job['error'] = ARGV[4]
        redis.call('ZADD', KEYS[3], now, id)
      end
      local encoded = cjson.encode(job)
      redis.call('SET', key, encoded)
      table.insert(out, encoded)
    end
  end
end
return out
"""


@contextmanager
def _store_errors(operation: str):
    """Translate broker connectivity failures into StoreUnavailableError."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, OSError) as e:
        logger.error(f"Job store unavailable during {operation}: {e}")
        raise StoreUnavailableError(
            "Job store unavailable", details={"operation": operation}
        ) from e


class RedisJobStore(JobStore):
    """
    Job store backed by a Redis server.

    Features:
    - Atomic claim via Lua (no two workers hold the same job)
    - Delayed scheduling for retries and initial delays
    - Lease-based stall detection
    - Terminal sets per lane for listing and counts
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        prefix: str = "feedbackhub",
        client: Optional[redis_async.Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize Redis job store.

        Args:
            host: Redis host
            port: Redis port
            password: Redis password (optional)
            db: Redis database number
            prefix: Namespace for all keys
            client: Pre-built client (tests, shared pools)
            clock: Time source in epoch seconds
        """
        super().__init__(clock)
        self._host = host
        self._port = port
        self._password = password or None
        self._db = db
        self._prefix = prefix
        self._redis = client
        self._claim = None
        self._commit = None
        self._patch = None
        self._reap = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    @property
    def _job_key_prefix(self) -> str:
        return f"{self._prefix}:job:"

    def _index_key(self) -> str:
        return f"{self._prefix}:jobs"

    def _lane_key(self, lane: Lane, part: str) -> str:
        return f"{self._prefix}:lane:{lane.value}:{part}"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def _connect(self) -> redis_async.Redis:
        client = redis_async.Redis(
            host=self._host,
            port=self._port,
            password=self._password,
            db=self._db,
            decode_responses=True,
            socket_connect_timeout=5.0,
            socket_keepalive=True,
        )
        await client.ping()
        logger.info(f"RedisJobStore connected to {self._host}:{self._port}/{self._db}")
        return client

    async def _get_redis(self) -> redis_async.Redis:
        if self._redis is None:
            with _store_errors("connect"):
                self._redis = await self._connect()
        if self._claim is None:
            self._claim = self._redis.register_script(CLAIM_SCRIPT)
            self._commit = self._redis.register_script(COMMIT_SCRIPT)
            self._patch = self._redis.register_script(PATCH_SCRIPT)
            self._reap = self._redis.register_script(REAP_SCRIPT)
        return self._redis

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            with _store_errors("ping"):
                return bool(await client.ping())
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._claim = self._commit = self._patch = self._reap = None
            logger.info("RedisJobStore connection closed")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(job: Job) -> str:
        return json.dumps(job.to_dict())

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Job]:
        if not raw:
            return None
        return Job.from_dict(json.loads(raw))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def add(self, job: Job) -> Job:
        client = await self._get_redis()
        now = self.now()
        with _store_errors("add"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.job_id), self._encode(job))
                pipe.zadd(self._index_key(), {job.job_id: job.created_at})
                if job.run_at is not None and job.run_at > now:
                    pipe.zadd(self._lane_key(job.lane, "delayed"), {job.job_id: job.run_at})
                else:
                    pipe.rpush(self._lane_key(job.lane, "wait"), job.job_id)
                await pipe.execute()
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        client = await self._get_redis()
        with _store_errors("get"):
            raw = await client.get(self._job_key(job_id))
        return self._decode(raw)

    async def claim(self, lane: Lane, worker_id: str, lease_seconds: float) -> Optional[Job]:
        await self._get_redis()
        with _store_errors("claim"):
            raw = await self._claim(
                keys=[
                    self._lane_key(lane, "wait"),
                    self._lane_key(lane, "delayed"),
                    self._lane_key(lane, "active"),
                ],
                args=[self.now(), worker_id, lease_seconds, self._job_key_prefix],
            )
        return self._decode(raw)

    async def _commit_update(
        self,
        job: Job,
        worker_id: str,
        target_key: str,
        target_kind: str,
        score: float = 0.0,
        remove_active: bool = False,
    ) -> bool:
        await self._get_redis()
        with _store_errors("commit"):
            applied = await self._commit(
                keys=[
                    self._job_key(job.job_id),
                    self._lane_key(job.lane, "active"),
                    target_key,
                ],
                args=[
                    worker_id,
                    self._encode(job),
                    job.job_id,
                    target_kind,
                    score,
                    "1" if remove_active else "0",
                ],
            )
        return bool(applied)

    async def _patch_claimed(
        self,
        job: Job,
        worker_id: str,
        fields: Dict[str, Any],
        lease_expires_at: Optional[float] = None,
    ) -> bool:
        await self._get_redis()
        with _store_errors("patch"):
            applied = await self._patch(
                keys=[self._job_key(job.job_id), self._lane_key(job.lane, "active")],
                args=[
                    worker_id,
                    json.dumps(fields),
                    job.job_id,
                    "" if lease_expires_at is None else lease_expires_at,
                ],
            )
        return bool(applied)

    async def heartbeat(self, job: Job, worker_id: str, lease_seconds: float) -> bool:
        expires = self.now() + lease_seconds
        held = await self._patch_claimed(
            job, worker_id, {"lease_expires_at": expires}, lease_expires_at=expires
        )
        if held:
            job.lease_expires_at = expires
        return held

    async def update_progress(self, job: Job, worker_id: str, progress: Dict[str, Any]) -> bool:
        progress = dict(progress)
        saved = await self._patch_claimed(job, worker_id, {"progress": progress})
        if saved:
            job.progress = progress
        return saved

    async def complete(self, job: Job, worker_id: str, result: Optional[Dict[str, Any]] = None) -> Job:
        now = self.now()
        done = replace(
            job,
            status=JobStatus.COMPLETED,
            completed_at=now,
            result=result,
            locked_by=None,
            lease_expires_at=None,
        )
        applied = await self._commit_update(
            done,
            worker_id,
            self._lane_key(job.lane, "completed"),
            "zset",
            score=now,
            remove_active=True,
        )
        if not applied:
            raise ClaimLostError(
                f"Worker {worker_id} no longer holds job {job.job_id}",
                details={"job_id": job.job_id},
            )
        return done

    async def fail(self, job: Job, worker_id: str, error: str, retry: bool = True) -> Job:
        now = self.now()
        run_at = self.next_run_at(job, now, retry)
        failed = replace(job, error=error, locked_by=None, lease_expires_at=None)

        if run_at is None:
            failed.status = JobStatus.FAILED
            failed.completed_at = now
            target_key, target_kind, score = self._lane_key(job.lane, "failed"), "zset", now
        else:
            failed.status = JobStatus.PENDING
            failed.run_at = run_at
            if run_at > now:
                target_key, target_kind, score = self._lane_key(job.lane, "delayed"), "zset", run_at
            else:
                target_key, target_kind, score = self._lane_key(job.lane, "wait"), "list", 0.0

        applied = await self._commit_update(
            failed, worker_id, target_key, target_kind, score=score, remove_active=True
        )
        if not applied:
            raise ClaimLostError(
                f"Worker {worker_id} no longer holds job {job.job_id}",
                details={"job_id": job.job_id},
            )
        return failed

    async def reap_stalled(self, lane: Lane) -> List[Job]:
        await self._get_redis()
        with _store_errors("reap_stalled"):
            raw_jobs = await self._reap(
                keys=[
                    self._lane_key(lane, "active"),
                    self._lane_key(lane, "wait"),
                    self._lane_key(lane, "failed"),
                ],
                args=[self.now(), self._job_key_prefix, STALLED_ERROR, STALLED_LIMIT_ERROR],
            )
        return [self._decode(raw) for raw in raw_jobs or []]

    async def list_jobs(
        self,
        lane: Optional[Lane] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100,
    ) -> List[Job]:
        client = await self._get_redis()
        with _store_errors("list_jobs"):
            # Over-fetch when filtering; the index holds every job.
            fetch = limit if lane is None and status is None else max(limit * 10, 500)
            job_ids = await client.zrevrange(self._index_key(), 0, fetch - 1)
            if not job_ids:
                return []
            raws = await client.mget([self._job_key(job_id) for job_id in job_ids])

        jobs = []
        for raw in raws:
            job = self._decode(raw)
            if job is None:
                continue
            if lane and job.lane != lane:
                continue
            if status and job.status != status:
                continue
            jobs.append(job)
            if len(jobs) >= limit:
                break
        return jobs

    async def counts(self) -> Dict[str, Dict[str, int]]:
        client = await self._get_redis()
        result: Dict[str, Dict[str, int]] = {}
        with _store_errors("counts"):
            async with client.pipeline(transaction=False) as pipe:
                for lane in Lane:
                    pipe.llen(self._lane_key(lane, "wait"))
                    pipe.zcard(self._lane_key(lane, "delayed"))
                    pipe.zcard(self._lane_key(lane, "active"))
                    pipe.zcard(self._lane_key(lane, "completed"))
                    pipe.zcard(self._lane_key(lane, "failed"))
                values = await pipe.execute()

        for i, lane in enumerate(Lane):
            waiting, delayed, active, completed, failed = values[i * 5:(i + 1) * 5]
            result[lane.value] = {
                JobStatus.PENDING.value: waiting + delayed,
                JobStatus.ACTIVE.value: active,
                JobStatus.COMPLETED.value: completed,
                JobStatus.FAILED.value: failed,
            }
        return result
