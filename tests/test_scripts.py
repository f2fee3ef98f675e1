import argparse
import pytest
from datetime import UTC, datetime, timedelta

import run_recover_stale_jobs
import run_worker
from syncqueue.common.job import Job
from tests import test_tasks


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "SYNCQUEUE_STORAGE",
        "SYNCQUEUE_DATABASE_URL",
        "SYNCQUEUE_REDIS_URL",
        "SYNCQUEUE_STALE_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_recover_script_reports_nothing_to_do(tmp_path, capsys):
    pytest.importorskip("sqlalchemy")
    url = f"sqlite:///{tmp_path / 'queue.db'}"

    recovered = run_recover_stale_jobs.main(["--storage", "sql", "--database-url", url])

    assert recovered == 0
    assert "No stale jobs recovered." in capsys.readouterr().out


def test_recover_script_requeues_stale_job(tmp_path, capsys):
    pytest.importorskip("sqlalchemy")
    from syncqueue.storage.sql_storage import SqlStorage

    url = f"sqlite:///{tmp_path / 'queue.db'}"
    storage = SqlStorage(connection_url=url)
    claimed_at = datetime.now(UTC) - timedelta(hours=2)
    job_id = storage.enqueue(Job(type="judge", created_at=claimed_at))
    assert storage.claim_next_job(claimed_at).id == job_id

    recovered = run_recover_stale_jobs.main(
        ["--storage", "sql", "--database-url", url, "--timeout-seconds", "3600"]
    )

    assert recovered == 1
    assert "Recovered 1 stale jobs." in capsys.readouterr().out
    assert storage.get_job(job_id).status == "pending"


def test_worker_script_parses_handlers():
    args = run_worker.build_arg_parser().parse_args(
        ["--handler", "court=tests.test_tasks:success_task", "--stale-timeout", "0"]
    )
    assert args.handlers == [("court", "tests.test_tasks:success_task")]

    worker = run_worker.build_worker(args)
    assert worker.registry.resolve("court") is test_tasks.success_task
    assert worker.stale_timeout_seconds is None


def test_worker_script_rejects_malformed_handler():
    with pytest.raises(argparse.ArgumentTypeError):
        run_worker.parse_handler("court")
