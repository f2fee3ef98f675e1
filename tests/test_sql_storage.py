import pytest
from datetime import UTC, datetime, timedelta

sqlalchemy = pytest.importorskip("sqlalchemy")
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from syncqueue.common.exceptions import StoreUnavailableError
from syncqueue.common.job import Job
from syncqueue.storage.sql_storage import JobHistoryModel, JobModel, SqlStorage

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def _make_storage() -> SqlStorage:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlStorage(engine=engine, create_tables=True)


def test_sql_storage_requires_url_or_engine():
    with pytest.raises(ValueError):
        SqlStorage()


def test_sql_storage_sqlite_uses_local_claim_lock():
    storage = _make_storage()
    assert not storage._supports_skip_locked
    assert storage._claim_lock is not None


def test_sql_storage_persists_payloads_as_json():
    storage = _make_storage()
    job_id = storage.enqueue(
        Job(type="decision", options={"maxDecisionsPerJudge": 30}, created_at=T0)
    )
    storage.claim_next_job(T0)
    storage.report_success(job_id, ["a", "b"], now=T0)

    with storage._session_factory() as session:
        row = session.get(JobModel, job_id)
        assert row.options == '{"maxDecisionsPerJudge": 30}'
        assert row.result == '["a", "b"]'
        states = session.execute(
            sqlalchemy.select(JobHistoryModel.state)
            .where(JobHistoryModel.job_id == job_id)
            .order_by(JobHistoryModel.id)
        ).scalars().all()
        assert states == ["pending", "running", "completed"]


def test_sql_storage_returns_aware_timestamps():
    storage = _make_storage()
    job_id = storage.enqueue(Job(type="court", created_at=T0))
    claimed = storage.claim_next_job(T0 + timedelta(seconds=1))

    assert claimed.created_at == T0
    assert claimed.created_at.tzinfo is not None
    assert claimed.started_at == T0 + timedelta(seconds=1)
    assert storage.get_job(job_id).updated_at == T0 + timedelta(seconds=1)


def test_sql_storage_rejects_duplicate_ids():
    storage = _make_storage()
    job = Job(type="court", created_at=T0)
    storage.enqueue(job)
    with pytest.raises(ValueError, match="already exists"):
        storage.enqueue(job)


def test_sql_storage_unavailable_store_is_retryable(monkeypatch):
    storage = _make_storage()

    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(storage, "_session_factory", broken_session)
    with pytest.raises(StoreUnavailableError, match="connection refused"):
        storage.get_job("anything")


def _shared_stores(tmp_path, claim_attempts):
    url = f"sqlite+pysqlite:///{tmp_path / 'shared.db'}"
    ours = SqlStorage(engine=create_engine(url), claim_attempts=claim_attempts)
    theirs = SqlStorage(engine=create_engine(url))
    return ours, theirs


def _steal_on_first_claim_update(ours, theirs):
    """Lets the other store claim the selected row just before our UPDATE runs."""
    stolen = []

    def before_execute(conn, cursor, statement, parameters, context, executemany):
        if not stolen and statement.startswith("UPDATE sync_queue"):
            stolen.append(theirs.claim_next_job(T0))

    event.listen(ours.engine, "before_cursor_execute", before_execute)
    return stolen


def test_sql_storage_claim_moves_on_after_losing_a_race(tmp_path):
    ours, theirs = _shared_stores(tmp_path, claim_attempts=2)
    first = ours.enqueue(Job(type="court", created_at=T0))
    second = ours.enqueue(Job(type="court", created_at=T0 + timedelta(seconds=1)))
    stolen = _steal_on_first_claim_update(ours, theirs)

    claimed = ours.claim_next_job(T0 + timedelta(minutes=1))

    assert stolen[0].id == first
    assert claimed.id == second
    assert [entry["state"] for entry in ours.get_job_history(first)] == ["pending", "running"]


def test_sql_storage_logs_when_claim_attempts_run_out(tmp_path, caplog):
    ours, theirs = _shared_stores(tmp_path, claim_attempts=1)
    ours.enqueue(Job(type="court", created_at=T0))
    ours.enqueue(Job(type="court", created_at=T0 + timedelta(seconds=1)))
    _steal_on_first_claim_update(ours, theirs)

    with caplog.at_level("WARNING", logger="syncqueue.storage.sql_storage"):
        assert ours.claim_next_job(T0 + timedelta(minutes=1)) is None

    assert "Gave up claiming" in caplog.text
    assert ours.get_status_counts()["pending"] == 1
