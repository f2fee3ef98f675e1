# syncqueue/storage/sql_storage.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    DateTime,
    Engine,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from syncqueue.common.exceptions import JobNotFoundError, StoreUnavailableError
from syncqueue.common.job import Job, as_utc
from syncqueue.common.retry import RetryPolicy
from syncqueue.common.states import (
    ALL_STATES,
    BaseState,
    CancelledState,
    CompletedState,
    PendingState,
    RunningState,
)
from syncqueue.serialization.base import BaseSerializer
from syncqueue.serialization.json_serializer import JsonSerializer
from syncqueue.storage.base import JobStorage

logger = logging.getLogger(__name__)

# Columns holding opaque payloads; they pass through the serializer.
_PAYLOAD_FIELDS = {"options", "result"}


class Base(DeclarativeBase):
    pass


class JobModel(Base):
    __tablename__ = "sync_queue"
    __table_args__ = (
        # Claim path: pending rows by priority, then age
        Index("ix_sync_queue_claim", "status", "priority", "created_at"),
        Index("ix_sync_queue_status_started", "status", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(50), index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    options: Mapped[Optional[str]] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    result: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class JobHistoryModel(Base):
    __tablename__ = "sync_queue_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), index=True)
    state: Mapped[str] = mapped_column(String(20), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    data: Mapped[str] = mapped_column(Text, default="{}")


class SqlStorage(JobStorage):
    def __init__(
        self,
        connection_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
        retry_policy: Optional[RetryPolicy] = None,
        serializer: Optional[BaseSerializer] = None,
        claim_attempts: int = 5,
    ) -> None:
        if engine is None and connection_url is None:
            raise ValueError("connection_url or engine is required")
        self.engine = engine or create_engine(connection_url)
        self.retry_policy = retry_policy or RetryPolicy()
        self.serializer = serializer or JsonSerializer()
        self.claim_attempts = claim_attempts
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            with self._translate_errors():
                Base.metadata.create_all(self.engine)

        self._supports_skip_locked = self.engine.dialect.name in {
            "postgresql",
            "mysql",
            "mariadb",
        }
        # Without SKIP LOCKED, claims from this process take turns; the
        # conditional UPDATE still guards against other processes.
        self._claim_lock = None if self._supports_skip_locked else threading.Lock()

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            logger.warning(f"Job store unavailable: {exc}")
            raise StoreUnavailableError(str(exc)) from exc

    def _job_from_model(self, model: JobModel) -> Job:
        return Job(
            id=model.id,
            type=model.type,
            status=model.status,
            options=self.serializer.deserialize_payload(model.options),
            priority=model.priority,
            scheduled_for=model.scheduled_for,
            started_at=as_utc(model.started_at) if model.started_at else None,
            completed_at=as_utc(model.completed_at) if model.completed_at else None,
            result=self.serializer.deserialize_payload(model.result),
            error_message=model.error_message,
            retry_count=model.retry_count,
            max_retries=model.max_retries,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _job_for_election(self, model: JobModel) -> Job:
        return Job(
            id=model.id,
            type=model.type,
            status=model.status,
            retry_count=model.retry_count,
            max_retries=model.max_retries,
            created_at=model.created_at,
        )

    def _record_history(self, session: Session, job_id: str, state: BaseState) -> None:
        session.add(
            JobHistoryModel(
                job_id=job_id,
                state=state.name,
                timestamp=state.created_at,
                data=self.serializer.serialize_state_data(state.serialize_data()),
            )
        )

    def _apply_state(self, session: Session, model: JobModel, state: BaseState) -> None:
        for field_name, value in state.job_fields().items():
            if field_name in _PAYLOAD_FIELDS:
                value = self.serializer.serialize_payload(value)
            setattr(model, field_name, value)
        model.updated_at = state.created_at
        self._record_history(session, model.id, state)

    def _apply_failure(
        self, session: Session, model: JobModel, error_message: str, now: datetime
    ) -> None:
        job = self._job_for_election(model)
        state = self.retry_policy.elect_state(job, error_message, now)
        model.retry_count = job.retry_count
        self._apply_state(session, model, state)

    def enqueue(self, job: Job) -> str:
        try:
            self._insert(job)
        except IntegrityError as exc:
            raise ValueError(f"Job '{job.id}' already exists.") from exc
        return job.id

    def _insert(self, job: Job) -> None:
        with self._translate_errors(), self._session_factory.begin() as session:
            session.add(
                JobModel(
                    id=job.id,
                    type=job.type,
                    status=job.status,
                    options=self.serializer.serialize_payload(job.options),
                    priority=job.priority,
                    scheduled_for=job.scheduled_for,
                    started_at=job.started_at,
                    completed_at=job.completed_at,
                    result=self.serializer.serialize_payload(job.result),
                    error_message=job.error_message,
                    retry_count=job.retry_count,
                    max_retries=job.max_retries,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                )
            )
            self._record_history(
                session, job.id, PendingState(job.scheduled_for, created_at=job.created_at)
            )

    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[Job]:
        now = as_utc(now)
        guard = self._claim_lock if self._claim_lock is not None else nullcontext()
        with self._translate_errors(), guard:
            for _ in range(self.claim_attempts):
                with self._session_factory.begin() as session:
                    query = (
                        select(JobModel)
                        .where(
                            JobModel.status == PendingState.NAME,
                            JobModel.scheduled_for <= now,
                        )
                        .order_by(JobModel.priority.desc(), JobModel.created_at.asc())
                        .limit(1)
                    )
                    if self._supports_skip_locked:
                        query = query.with_for_update(skip_locked=True)

                    model = session.execute(query).scalar_one_or_none()
                    if model is None:
                        return None

                    updated = session.execute(
                        update(JobModel)
                        .where(
                            JobModel.id == model.id,
                            JobModel.status == PendingState.NAME,
                        )
                        .values(status=RunningState.NAME, started_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount != 1:
                        # Another process won this row between select and update
                        logger.debug(f"Lost claim race for job {model.id}; retrying")
                        continue

                    session.refresh(model)
                    self._record_history(session, model.id, RunningState(created_at=now))
                    logger.debug(
                        f"Claimed job {model.id} ({model.type}, priority {model.priority})"
                    )
                    return self._job_from_model(model)
        logger.warning(
            f"Gave up claiming after losing {self.claim_attempts} races in a row; eligible jobs may remain."
        )
        return None

    def _get_running(
        self, session: Session, job_id: str, action: str, started_at: Optional[datetime]
    ) -> Optional[JobModel]:
        model = session.get(JobModel, job_id, with_for_update=True)
        if model is None:
            raise JobNotFoundError(f"Job '{job_id}' does not exist.")
        if model.status != RunningState.NAME:
            logger.warning(
                f"Ignoring {action} report for job {job_id}: status is {model.status}, not running."
            )
            return None
        if started_at is not None and as_utc(model.started_at) != as_utc(started_at):
            logger.warning(
                f"Ignoring {action} report for job {job_id}: claim from {started_at} was superseded."
            )
            return None
        return model

    def report_success(
        self,
        job_id: str,
        result: Any = None,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now)
        with self._translate_errors(), self._session_factory.begin() as session:
            model = self._get_running(session, job_id, "success", started_at)
            if model is None:
                return False
            self._apply_state(session, model, CompletedState(result, created_at=now))
            return True

    def report_failure(
        self,
        job_id: str,
        error_message: str,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now)
        with self._translate_errors(), self._session_factory.begin() as session:
            model = self._get_running(session, job_id, "failure", started_at)
            if model is None:
                return False
            self._apply_failure(session, model, error_message, now)
            return True

    def recover_stale_jobs(
        self, timeout: timedelta, now: Optional[datetime] = None, limit: int = 100
    ) -> int:
        now = as_utc(now)
        cutoff = now - timeout
        message = f"Job exceeded processing timeout of {timeout}"
        with self._translate_errors(), self._session_factory.begin() as session:
            query = (
                select(JobModel)
                .where(
                    JobModel.status == RunningState.NAME,
                    JobModel.started_at.is_not(None),
                    JobModel.started_at < cutoff,
                )
                .order_by(JobModel.started_at)
                .limit(limit)
            )
            if self._supports_skip_locked:
                query = query.with_for_update(skip_locked=True)

            rows = session.execute(query).scalars().all()
            for model in rows:
                self._apply_failure(session, model, message, now)
                logger.info(f"Recovered stale job {model.id}; now {model.status}")
            return len(rows)

    def cancel_pending_jobs(
        self, job_type: Optional[str] = None, now: Optional[datetime] = None
    ) -> int:
        now = as_utc(now)
        with self._translate_errors(), self._session_factory.begin() as session:
            query = select(JobModel).where(JobModel.status == PendingState.NAME)
            if job_type is not None:
                query = query.where(JobModel.type == job_type)
            if self._supports_skip_locked:
                query = query.with_for_update(skip_locked=True)

            rows = session.execute(query).scalars().all()
            for model in rows:
                self._apply_state(
                    session,
                    model,
                    CancelledState(created_at=now, reason="Cancelled by operator"),
                )
            return len(rows)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._translate_errors(), self._session_factory() as session:
            model = session.get(JobModel, job_id)
            return self._job_from_model(model) if model else None

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        start: int = 0,
        count: int = 20,
    ) -> List[Job]:
        query = select(JobModel)
        if status is not None:
            query = query.where(JobModel.status == status)
        if job_type is not None:
            query = query.where(JobModel.type == job_type)
        query = query.order_by(JobModel.created_at.desc()).offset(start).limit(count)
        with self._translate_errors(), self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._job_from_model(row) for row in rows]

    def get_status_counts(self) -> Dict[str, int]:
        with self._translate_errors(), self._session_factory() as session:
            rows = session.execute(
                select(JobModel.status, func.count(JobModel.id)).group_by(JobModel.status)
            ).all()
            counts = {state: 0 for state in ALL_STATES}
            for status, count in rows:
                counts[status] = int(count)
            return counts

    def get_job_history(self, job_id: str) -> List[dict]:
        with self._translate_errors(), self._session_factory() as session:
            rows = (
                session.execute(
                    select(JobHistoryModel)
                    .where(JobHistoryModel.job_id == job_id)
                    .order_by(JobHistoryModel.id)
                )
                .scalars()
                .all()
            )
            return [
                {
                    "state": row.state,
                    "timestamp": as_utc(row.timestamp).isoformat(),
                    "data": self.serializer.deserialize_state_data(row.data),
                }
                for row in rows
            ]
