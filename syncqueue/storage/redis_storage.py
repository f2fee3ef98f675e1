# syncqueue/storage/redis_storage.py
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, Iterator, List, Optional

import redis

from .base import JobStorage
from ..common.exceptions import JobNotFoundError, StoreUnavailableError
from ..common.job import Job, as_utc
from ..common.retry import RetryPolicy
from ..common.states import (
    ALL_STATES,
    BaseState,
    CancelledState,
    CompletedState,
    PendingState,
    RunningState,
)
from ..serialization.base import BaseSerializer
from ..serialization.json_serializer import JsonSerializer

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Scans the pending set in (priority desc, created asc) order and claims the
# first job whose scheduled time has arrived. Scripts run atomically, so two
# callers can never both see the same member.
_CLAIM_SCRIPT = """
local pending_key = KEYS[1]
local running_key = KEYS[2]
local prefix = ARGV[1]
local now_ts = tonumber(ARGV[2])
local now_iso = ARGV[3]
local history_entry = ARGV[4]
local batch = 100
local offset = 0

while true do
    local members = redis.call('ZRANGE', pending_key, offset, offset + batch - 1)
    if #members == 0 then
        return false
    end
    for _, member in ipairs(members) do
        local job_id = string.match(member, '^[^|]*|(.*)$')
        local job_key = prefix .. 'job:' .. job_id
        local scheduled_ts = tonumber(redis.call('HGET', job_key, 'scheduled_ts'))
        if scheduled_ts and scheduled_ts <= now_ts then
            redis.call('ZREM', pending_key, member)
            redis.call('ZADD', running_key, now_ts, job_id)
            redis.call('HSET', job_key, 'status', 'running', 'started_at', now_iso, 'updated_at', now_iso)
            redis.call('SREM', prefix .. 'status:pending', job_id)
            redis.call('SADD', prefix .. 'status:running', job_id)
            redis.call('RPUSH', prefix .. 'history:' .. job_id, history_entry)
            return redis.call('HGETALL', job_key)
        end
    end
    offset = offset + batch
end
"""

# Moves a job between statuses only if it is still in the status (and claim)
# the caller read, keeping the index structures in step.
_TRANSITION_SCRIPT = """
local job_key = KEYS[1]
local job_id = ARGV[1]
local expected_status = ARGV[2]
local expected_started_at = ARGV[3]
local new_status = ARGV[4]
local prefix = ARGV[5]
local history_entry = ARGV[6]

local current = redis.call('HGET', job_key, 'status')
if not current then
    return -1
end
if current ~= expected_status then
    return 0
end
if expected_started_at ~= '' and redis.call('HGET', job_key, 'started_at') ~= expected_started_at then
    return 0
end

for i = 7, #ARGV, 2 do
    redis.call('HSET', job_key, ARGV[i], ARGV[i + 1])
end
redis.call('HSET', job_key, 'status', new_status)

redis.call('SREM', prefix .. 'status:' .. current, job_id)
redis.call('SADD', prefix .. 'status:' .. new_status, job_id)
redis.call('ZREM', prefix .. 'running', job_id)

local sort_key = redis.call('HGET', job_key, 'sort_key')
redis.call('ZREM', prefix .. 'pending', sort_key)
if new_status == 'pending' then
    local priority = tonumber(redis.call('HGET', job_key, 'priority'))
    redis.call('ZADD', prefix .. 'pending', -priority, sort_key)
end
redis.call('RPUSH', prefix .. 'history:' .. job_id, history_entry)
return 1
"""

_DATETIME_FIELDS = {"scheduled_for", "started_at", "completed_at", "created_at", "updated_at"}
_INT_FIELDS = {"priority", "retry_count", "max_retries"}
_PAYLOAD_FIELDS = {"options", "result"}


class RedisStorage(JobStorage):
    def __init__(
        self,
        connection_pool=None,
        redis_client=None,
        retry_policy: Optional[RetryPolicy] = None,
        serializer: Optional[BaseSerializer] = None,
        key_prefix: str = "syncqueue:",
    ):
        if redis_client:
            connection_pool = redis_client.connection_pool
        if connection_pool:
            # Decoding is a property of the pool's connections, not the client
            if not connection_pool.connection_kwargs.get("decode_responses", False):
                connection_pool = redis.ConnectionPool(
                    connection_class=connection_pool.connection_class,
                    **{**connection_pool.connection_kwargs, "decode_responses": True},
                )
            self.redis_client = redis.Redis(connection_pool=connection_pool)
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )

        self.retry_policy = retry_policy or RetryPolicy()
        self.serializer = serializer or JsonSerializer()
        self.prefix = key_prefix
        self.claim_script = self.redis_client.register_script(_CLAIM_SCRIPT)
        self.transition_script = self.redis_client.register_script(_TRANSITION_SCRIPT)

    # --- Keys ---

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def _history_key(self, job_id: str) -> str:
        return f"{self.prefix}history:{job_id}"

    def _status_key(self, status: str) -> str:
        return f"{self.prefix}status:{status}"

    @property
    def _pending_key(self) -> str:
        return f"{self.prefix}pending"

    @property
    def _running_key(self) -> str:
        return f"{self.prefix}running"

    @property
    def _jobs_key(self) -> str:
        return f"{self.prefix}jobs"

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            logger.warning(f"Job store unavailable: {exc}")
            raise StoreUnavailableError(str(exc)) from exc

    # --- Encoding ---

    @staticmethod
    def _micros(value: datetime) -> int:
        return (value - _EPOCH) // timedelta(microseconds=1)

    def _encode_field(self, field_name: str, value: Any) -> str:
        if field_name in _PAYLOAD_FIELDS:
            encoded = self.serializer.serialize_payload(value)
            return "" if encoded is None else encoded
        if value is None:
            return ""
        if isinstance(value, datetime):
            return as_utc(value).isoformat()
        return str(value)

    def _encode_fields(self, fields: Dict[str, Any]) -> Dict[str, str]:
        mapping = {name: self._encode_field(name, value) for name, value in fields.items()}
        if fields.get("scheduled_for") is not None:
            mapping["scheduled_ts"] = repr(as_utc(fields["scheduled_for"]).timestamp())
        return mapping

    def _serialize_job_for_storage(self, job: Job) -> Dict[str, str]:
        job_dict = self._encode_fields(dict(job.__dict__))
        # Equal scores order lexicographically, so zero-padded creation time
        # breaks priority ties oldest first.
        job_dict["sort_key"] = f"{self._micros(job.created_at):020d}|{job.id}"
        return job_dict

    def _deserialize_job_from_storage(self, job_data: Dict[str, str]) -> Job:
        job_dict: Dict[str, Any] = {}
        for key, value in job_data.items():
            if key in ("sort_key", "scheduled_ts"):
                continue
            if key in _DATETIME_FIELDS:
                job_dict[key] = datetime.fromisoformat(value) if value else None
            elif key in _INT_FIELDS:
                job_dict[key] = int(value)
            elif key in _PAYLOAD_FIELDS:
                job_dict[key] = self.serializer.deserialize_payload(value)
            elif key == "error_message":
                job_dict[key] = value or None
            else:
                job_dict[key] = value
        return Job(**job_dict)

    def _history_entry(self, state: BaseState) -> str:
        return json.dumps(
            {
                "state": state.name,
                "timestamp": state.created_at.isoformat(),
                "data": state.serialize_data(),
            },
            default=str,
        )

    # --- Transitions ---

    def _transition(self, job: Job, expected_status: str, state: BaseState) -> bool:
        fields = state.job_fields()
        fields.pop("status")
        fields["updated_at"] = state.created_at
        if "retry_count" not in fields:
            fields["retry_count"] = job.retry_count
        args: List[str] = [
            job.id,
            expected_status,
            self._encode_field("started_at", job.started_at),
            state.name,
            self.prefix,
            self._history_entry(state),
        ]
        for name, value in self._encode_fields(fields).items():
            args.extend([name, value])
        result = self.transition_script(keys=[self._job_key(job.id)], args=args)
        if result == -1:
            raise JobNotFoundError(f"Job '{job.id}' does not exist.")
        return result == 1

    def _get_running(
        self, job_id: str, action: str, started_at: Optional[datetime]
    ) -> Optional[Job]:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' does not exist.")
        if job.status != RunningState.NAME:
            logger.warning(
                f"Ignoring {action} report for job {job_id}: status is {job.status}, not running."
            )
            return None
        if started_at is not None and job.started_at != as_utc(started_at):
            logger.warning(
                f"Ignoring {action} report for job {job_id}: claim from {started_at} was superseded."
            )
            return None
        return job

    def _fail(self, job: Job, error_message: str, now: datetime) -> bool:
        state = self.retry_policy.elect_state(job, error_message, now)
        return self._transition(job, RunningState.NAME, state)

    # --- JobStorage ---

    def enqueue(self, job: Job) -> str:
        job_key = self._job_key(job.id)
        with self._translate_errors():
            if self.redis_client.exists(job_key):
                raise ValueError(f"Job '{job.id}' already exists.")
            job_dict = self._serialize_job_for_storage(job)
            with self.redis_client.pipeline() as pipe:
                pipe.hset(job_key, mapping=job_dict)
                if job.status == PendingState.NAME:
                    pipe.zadd(self._pending_key, {job_dict["sort_key"]: -job.priority})
                pipe.sadd(self._status_key(job.status), job.id)
                pipe.zadd(self._jobs_key, {job.id: job.created_at.timestamp()})
                pipe.rpush(
                    self._history_key(job.id),
                    self._history_entry(
                        PendingState(job.scheduled_for, created_at=job.created_at)
                    ),
                )
                pipe.execute()
        return job.id

    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[Job]:
        now = as_utc(now)
        with self._translate_errors():
            raw = self.claim_script(
                keys=[self._pending_key, self._running_key],
                args=[
                    self.prefix,
                    repr(now.timestamp()),
                    now.isoformat(),
                    self._history_entry(RunningState(created_at=now)),
                ],
            )
        if not raw:
            return None
        job_data = dict(zip(raw[::2], raw[1::2]))
        job = self._deserialize_job_from_storage(job_data)
        logger.debug(f"Claimed job {job.id} ({job.type}, priority {job.priority})")
        return job

    def report_success(
        self,
        job_id: str,
        result: Any = None,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now)
        with self._translate_errors():
            job = self._get_running(job_id, "success", started_at)
            if job is None:
                return False
            if not self._transition(
                job, RunningState.NAME, CompletedState(result, created_at=now)
            ):
                logger.warning(f"Ignoring success report for job {job_id}: job changed concurrently.")
                return False
            return True

    def report_failure(
        self,
        job_id: str,
        error_message: str,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now)
        with self._translate_errors():
            job = self._get_running(job_id, "failure", started_at)
            if job is None:
                return False
            if not self._fail(job, error_message, now):
                logger.warning(f"Ignoring failure report for job {job_id}: job changed concurrently.")
                return False
            return True

    def recover_stale_jobs(
        self, timeout: timedelta, now: Optional[datetime] = None, limit: int = 100
    ) -> int:
        now = as_utc(now)
        cutoff = now - timeout
        message = f"Job exceeded processing timeout of {timeout}"
        recovered = 0
        with self._translate_errors():
            job_ids = self.redis_client.zrangebyscore(
                self._running_key, "-inf", f"({cutoff.timestamp()!r}", start=0, num=limit
            )
            for job_id in job_ids:
                job = self.get_job(job_id)
                if job is None or job.status != RunningState.NAME:
                    continue
                if self._fail(job, message, now):
                    recovered += 1
                    logger.info(f"Recovered stale job {job_id}")
        return recovered

    def cancel_pending_jobs(
        self, job_type: Optional[str] = None, now: Optional[datetime] = None
    ) -> int:
        now = as_utc(now)
        cancelled = 0
        with self._translate_errors():
            for job_id in self.redis_client.smembers(self._status_key(PendingState.NAME)):
                job = self.get_job(job_id)
                if job is None or (job_type is not None and job.type != job_type):
                    continue
                state = CancelledState(created_at=now, reason="Cancelled by operator")
                if self._transition(job, PendingState.NAME, state):
                    cancelled += 1
        return cancelled

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._translate_errors():
            job_data = self.redis_client.hgetall(self._job_key(job_id))
        if not job_data:
            return None
        return self._deserialize_job_from_storage(job_data)

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        start: int = 0,
        count: int = 20,
    ) -> List[Job]:
        with self._translate_errors():
            if status is None and job_type is None:
                job_ids = self.redis_client.zrevrange(self._jobs_key, start, start + count - 1)
                return [job for job in map(self.get_job, job_ids) if job]

            if status is not None:
                candidates = [
                    job for job in map(self.get_job, self.redis_client.smembers(self._status_key(status))) if job
                ]
            else:
                candidates = [
                    job for job in map(self.get_job, self.redis_client.zrange(self._jobs_key, 0, -1)) if job
                ]
        jobs = [job for job in candidates if job_type is None or job.type == job_type]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[start : start + count]

    def get_status_counts(self) -> Dict[str, int]:
        with self._translate_errors():
            return {
                state: self.redis_client.scard(self._status_key(state)) for state in ALL_STATES
            }

    def get_job_history(self, job_id: str) -> List[dict]:
        with self._translate_errors():
            entries = self.redis_client.lrange(self._history_key(job_id), 0, -1)
        return [json.loads(entry) for entry in entries]
