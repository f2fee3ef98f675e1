import pytest
import threading
from datetime import UTC, datetime, timedelta

redis = pytest.importorskip("redis")

from syncqueue.common.exceptions import JobNotFoundError, StoreUnavailableError
from syncqueue.common.job import Job
from syncqueue.common.retry import RetryPolicy
from syncqueue.storage.redis_storage import RedisStorage

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


# --- Fixtures ---
@pytest.fixture
def redis_client():
    r = redis.Redis(host="localhost", port=6379, db=15)
    try:
        r.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis server not running on localhost:6379")
    r.flushdb()  # Clear database before each test
    return r


@pytest.fixture
def redis_storage(redis_client):
    return RedisStorage(
        connection_pool=redis_client.connection_pool,
        retry_policy=RetryPolicy(backoff_base=timedelta(0)),
    )


def _job(job_type="court", created_at=T0, **kwargs):
    return Job(type=job_type, created_at=created_at, scheduled_for=created_at, **kwargs)


def test_redis_storage_enqueue_indexes_job(redis_storage, redis_client):
    job_id = redis_storage.enqueue(_job(options={"jurisdiction": "CA"}, priority=7))

    stored = redis_client.hgetall(f"syncqueue:job:{job_id}")
    assert stored[b"type"] == b"court"
    assert stored[b"status"] == b"pending"
    assert redis_client.zcard("syncqueue:pending") == 1
    assert redis_client.sismember("syncqueue:status:pending", job_id)

    job = redis_storage.get_job(job_id)
    assert job.options == {"jurisdiction": "CA"}
    assert job.priority == 7
    assert job.scheduled_for == T0


def test_redis_storage_rejects_duplicate_ids(redis_storage):
    job = _job()
    redis_storage.enqueue(job)
    with pytest.raises(ValueError):
        redis_storage.enqueue(job)


def test_redis_storage_claim_order_and_gating(redis_storage):
    low = redis_storage.enqueue(_job(priority=1))
    high = redis_storage.enqueue(_job(priority=9, created_at=T0 + timedelta(seconds=1)))
    tie_newer = redis_storage.enqueue(_job(priority=5, created_at=T0 + timedelta(seconds=3)))
    tie_older = redis_storage.enqueue(_job(priority=5, created_at=T0 + timedelta(seconds=2)))
    future = redis_storage.enqueue(
        Job(type="cleanup", priority=100, created_at=T0, scheduled_for=T0 + timedelta(hours=2))
    )

    now = T0 + timedelta(minutes=1)
    claimed = [redis_storage.claim_next_job(now).id for _ in range(4)]
    assert claimed == [high, tie_older, tie_newer, low]
    assert redis_storage.claim_next_job(now) is None

    job = redis_storage.claim_next_job(T0 + timedelta(hours=2))
    assert job.id == future
    assert job.status == "running"
    assert job.started_at == T0 + timedelta(hours=2)


def test_redis_storage_success_is_idempotent(redis_storage):
    job_id = redis_storage.enqueue(_job())
    redis_storage.claim_next_job(T0)

    assert redis_storage.report_success(job_id, {"x": 1}, now=T0)
    assert not redis_storage.report_success(job_id, {"x": 2}, now=T0)

    job = redis_storage.get_job(job_id)
    assert job.status == "completed"
    assert job.result == {"x": 1}
    assert redis_storage.get_status_counts()["completed"] == 1


def test_redis_storage_failure_retries_then_fails(redis_storage, redis_client):
    job_id = redis_storage.enqueue(_job(max_retries=2))

    redis_storage.claim_next_job(T0)
    assert redis_storage.report_failure(job_id, "boom", now=T0)
    job = redis_storage.get_job(job_id)
    assert job.status == "pending"
    assert job.retry_count == 1
    assert job.started_at is None
    assert redis_client.zcard("syncqueue:pending") == 1

    redis_storage.claim_next_job(T0)
    assert redis_storage.report_failure(job_id, "boom again", now=T0)
    job = redis_storage.get_job(job_id)
    assert job.status == "failed"
    assert job.retry_count == 2
    assert job.error_message == "boom again"
    assert redis_client.zcard("syncqueue:pending") == 0
    assert redis_client.zcard("syncqueue:running") == 0


def test_redis_storage_unknown_job(redis_storage):
    with pytest.raises(JobNotFoundError):
        redis_storage.report_failure("missing", "boom")


def test_redis_storage_recover_and_cancel(redis_storage):
    stale = redis_storage.enqueue(_job("judge", max_retries=3))
    queued = redis_storage.enqueue(_job("decision", created_at=T0 + timedelta(seconds=1)))
    redis_storage.claim_next_job(T0)

    assert redis_storage.recover_stale_jobs(timedelta(minutes=10), now=T0 + timedelta(minutes=5)) == 0
    assert redis_storage.recover_stale_jobs(timedelta(minutes=10), now=T0 + timedelta(minutes=11)) == 1
    assert redis_storage.get_job(stale).status == "pending"

    assert redis_storage.cancel_pending_jobs("decision", now=T0) == 1
    assert redis_storage.get_job(queued).status == "cancelled"
    assert [entry["state"] for entry in redis_storage.get_job_history(stale)] == [
        "pending",
        "running",
        "pending",
    ]


def test_redis_storage_ignores_report_from_superseded_claim(redis_storage):
    job_id = redis_storage.enqueue(_job("judge", max_retries=3))
    first = redis_storage.claim_next_job(T0)
    assert redis_storage.recover_stale_jobs(timedelta(minutes=10), now=T0 + timedelta(minutes=11)) == 1
    second = redis_storage.claim_next_job(T0 + timedelta(minutes=12))
    assert second.id == job_id

    late = T0 + timedelta(minutes=13)
    assert not redis_storage.report_success(job_id, {"from": "first"}, now=late, started_at=first.started_at)
    job = redis_storage.get_job(job_id)
    assert job.status == "running"
    assert job.started_at == second.started_at

    assert redis_storage.report_success(job_id, {"from": "second"}, now=late, started_at=second.started_at)
    assert redis_storage.get_job(job_id).result == {"from": "second"}


def test_redis_storage_concurrent_claims(redis_storage):
    job_ids = {redis_storage.enqueue(_job(created_at=T0 + timedelta(seconds=i))) for i in range(8)}
    claimed = []
    lock = threading.Lock()

    def claimant():
        while True:
            job = redis_storage.claim_next_job(T0 + timedelta(minutes=1))
            if job is None:
                return
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=claimant) for _ in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == len(set(claimed))
    assert set(claimed) == job_ids


def test_redis_storage_unreachable_server_is_retryable():
    storage = RedisStorage(redis_client=redis.Redis(host="localhost", port=1, socket_connect_timeout=0.1))
    with pytest.raises(StoreUnavailableError):
        storage.claim_next_job(T0)
