# jobdispatch/storage/sql_storage.py
from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    DateTime,
    Engine,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.exceptions import BrokerUnavailableError
from jobdispatch.common.job import Job
from jobdispatch.common.states import (
    BaseState,
    FailedState,
    ProcessingState,
    QueuedState,
    TERMINAL_STATES,
)
from jobdispatch.serialization.json_serializer import JsonSerializer
from jobdispatch.storage.base import (
    DEFAULT_VISIBILITY_TIMEOUT,
    JobStorage,
    UPDATABLE_FIELDS,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class JobModel(Base):
    __tablename__ = "jobdispatch_jobs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    queue_name: Mapped[str] = mapped_column(String(100), index=True)
    payload: Mapped[str] = mapped_column(Text)
    max_attempts: Mapped[int] = mapped_column(Integer)
    backoff: Mapped[str] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), index=True)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    state_data: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class JobHistoryModel(Base):
    __tablename__ = "jobdispatch_job_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(128), index=True)
    state: Mapped[str] = mapped_column(String(20), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    data: Mapped[str] = mapped_column(Text, default="{}")


class QueueEntryModel(Base):
    __tablename__ = "jobdispatch_job_queues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    queue: Mapped[str] = mapped_column(String(100), index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, index=True)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), index=True
    )
    worker_id: Mapped[Optional[str]] = mapped_column(String(100))


class SqlStorage(JobStorage):
    def __init__(
        self,
        connection_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        poll_interval: float = 0.05,
    ) -> None:
        super().__init__(visibility_timeout)
        if engine is None and connection_url is None:
            raise ValueError("connection_url or engine is required")
        self.engine = engine or create_engine(connection_url)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.serializer = JsonSerializer()
        self.poll_interval = poll_interval
        if create_tables:
            Base.metadata.create_all(self.engine)

        self._supports_skip_locked = self.engine.dialect.name in {
            "postgresql",
            "mysql",
            "mariadb",
        }

    def _job_from_model(self, model: JobModel) -> Job:
        return Job(
            id=model.id,
            queue_name=model.queue_name,
            payload=self.serializer.deserialize_payload(model.payload),
            max_attempts=model.max_attempts,
            backoff=BackoffPolicy.from_value(
                self.serializer.deserialize_state_data(model.backoff)
            )
            or BackoffPolicy(),
            priority=model.priority,
            status=model.status,
            attempt=model.attempt,
            last_error=model.last_error,
            state_data=self.serializer.deserialize_state_data(model.state_data),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _record_history(self, session: Session, job_id: str, state: BaseState) -> None:
        entry = JobHistoryModel(
            job_id=job_id,
            state=state.name,
            timestamp=datetime.now(UTC),
            data=self.serializer.serialize_state_data(state.serialize_data()),
        )
        session.add(entry)

    def _apply_state(self, session: Session, job: JobModel, state: BaseState) -> None:
        job.status = state.name
        job.state_data = self.serializer.serialize_state_data(state.serialize_data())
        job.updated_at = datetime.now(UTC)
        if isinstance(state, FailedState):
            job.last_error = state.error
        self._record_history(session, job.id, state)

    def _upsert_queue_entry(
        self,
        session: Session,
        job: JobModel,
        delay: float = 0.0,
    ) -> None:
        now = datetime.now(UTC)
        available_at = now + timedelta(seconds=delay)
        entry = session.execute(
            select(QueueEntryModel).where(QueueEntryModel.job_id == job.id)
        ).scalar_one_or_none()
        if entry:
            entry.queue = job.queue_name
            entry.status = QueuedState.NAME
            entry.priority = job.priority
            entry.enqueued_at = now
            entry.available_at = available_at
            entry.fetched_at = None
            entry.lease_expires_at = None
            entry.worker_id = None
            return

        session.add(
            QueueEntryModel(
                job_id=job.id,
                queue=job.queue_name,
                status=QueuedState.NAME,
                priority=job.priority,
                enqueued_at=now,
                available_at=available_at,
            )
        )

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"SQL broker ping failed: {e}")
            return False

    def close(self) -> None:
        self.engine.dispose()

    def enqueue(self, job: Job) -> str:
        try:
            with self._session_factory.begin() as session:
                if session.get(JobModel, job.id) is not None:
                    return job.id
                model = JobModel(
                    id=job.id,
                    queue_name=job.queue_name,
                    payload=self.serializer.serialize_payload(job.payload),
                    max_attempts=job.max_attempts,
                    backoff=self.serializer.serialize_state_data(job.backoff.to_dict()),
                    priority=job.priority,
                    status=QueuedState.NAME,
                    attempt=job.attempt,
                    last_error=job.last_error,
                    state_data=self.serializer.serialize_state_data(job.state_data),
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                )
                session.add(model)
                self._upsert_queue_entry(session, model)
                self._record_history(session, job.id, QueuedState())
        except OperationalError as e:
            raise BrokerUnavailableError(f"Could not enqueue job {job.id}: {e}") from e
        return job.id

    def dequeue(
        self, queue_name: str, timeout_seconds: float, worker_id: str
    ) -> Optional[Job]:
        deadline = time.monotonic() + timeout_seconds
        while True:
            with self._session_factory.begin() as session:
                now = datetime.now(UTC)
                self._reclaim(session, now, queue_name=queue_name)
                query = (
                    select(QueueEntryModel)
                    .where(
                        QueueEntryModel.queue == queue_name,
                        QueueEntryModel.status == QueuedState.NAME,
                        QueueEntryModel.available_at <= now,
                    )
                    .order_by(
                        QueueEntryModel.priority.desc(),
                        QueueEntryModel.enqueued_at,
                        QueueEntryModel.id,
                    )
                    .limit(1)
                )
                if self._supports_skip_locked:
                    query = query.with_for_update(skip_locked=True)

                entry = session.execute(query).scalar_one_or_none()
                if entry:
                    updated = session.execute(
                        update(QueueEntryModel)
                        .where(
                            QueueEntryModel.id == entry.id,
                            QueueEntryModel.status == QueuedState.NAME,
                        )
                        .values(
                            status=ProcessingState.NAME,
                            fetched_at=now,
                            lease_expires_at=now
                            + timedelta(seconds=self.visibility_timeout),
                            worker_id=worker_id,
                        )
                    )
                    if updated.rowcount == 1:
                        job = session.get(JobModel, entry.job_id)
                        if job:
                            job.attempt += 1
                            self._apply_state(session, job, ProcessingState(worker_id))
                            return self._job_from_model(job)

                        session.execute(
                            delete(QueueEntryModel).where(QueueEntryModel.id == entry.id)
                        )

            if timeout_seconds <= 0 or time.monotonic() >= deadline:
                return None
            time.sleep(self.poll_interval)

    def _reclaim(
        self,
        session: Session,
        cutoff: datetime,
        queue_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[str]:
        query = (
            select(QueueEntryModel)
            .where(
                QueueEntryModel.status == ProcessingState.NAME,
                QueueEntryModel.lease_expires_at.is_not(None),
                QueueEntryModel.lease_expires_at <= cutoff,
            )
            .order_by(QueueEntryModel.lease_expires_at)
            .limit(limit)
        )
        if queue_name is not None:
            query = query.where(QueueEntryModel.queue == queue_name)
        if self._supports_skip_locked:
            query = query.with_for_update(skip_locked=True)

        recovered: List[str] = []
        for entry in session.execute(query).scalars().all():
            job = session.get(JobModel, entry.job_id)
            if not job:
                session.delete(entry)
                continue

            if job.attempt >= job.max_attempts:
                self._apply_state(
                    session,
                    job,
                    FailedState("LeaseExpired", "visibility timeout expired"),
                )
                session.delete(entry)
            else:
                self._apply_state(session, job, QueuedState(reason="Lease expired"))
                self._upsert_queue_entry(session, job)
            recovered.append(job.id)
        return recovered

    def recover_stuck_jobs(
        self, max_age_seconds: Optional[float] = None, limit: int = 100
    ) -> List[str]:
        now = datetime.now(UTC)
        cutoff = now
        if max_age_seconds is not None:
            cutoff = now - timedelta(seconds=max_age_seconds - self.visibility_timeout)
        with self._session_factory.begin() as session:
            return self._reclaim(session, cutoff, limit=limit)

    def release(self, job_id: str) -> bool:
        with self._session_factory.begin() as session:
            job = session.get(JobModel, job_id)
            if not job or job.status != ProcessingState.NAME:
                return False
            job.attempt = max(job.attempt - 1, 0)
            self._apply_state(
                session, job, QueuedState(reason="Released by stopping worker")
            )
            self._upsert_queue_entry(session, job)
            return True

    def acknowledge(self, job_id: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                delete(QueueEntryModel).where(QueueEntryModel.job_id == job_id)
            )
            job = session.get(JobModel, job_id)
            if job is None or job.status not in TERMINAL_STATES:
                return
            keep = self._retention_limit(job.queue_name, job.status)
            if keep is None:
                return
            expired = session.execute(
                select(JobModel.id)
                .where(
                    JobModel.queue_name == job.queue_name,
                    JobModel.status == job.status,
                )
                .order_by(JobModel.updated_at.desc(), JobModel.id.desc())
                .offset(keep)
            ).scalars().all()
            if expired:
                session.execute(
                    delete(JobHistoryModel).where(JobHistoryModel.job_id.in_(expired))
                )
                session.execute(delete(JobModel).where(JobModel.id.in_(expired)))

    def set_job_state(
        self, job_id: str, state: BaseState, expected_old_state: Optional[str] = None
    ) -> bool:
        with self._session_factory.begin() as session:
            job = session.get(JobModel, job_id)
            if not job:
                return False
            if expected_old_state and job.status != expected_old_state:
                return False

            self._apply_state(session, job, state)
            if isinstance(state, QueuedState):
                self._upsert_queue_entry(session, job, state.delay)
            return True

    def get_job_data(self, job_id: str) -> Optional[Job]:
        with self._session_factory() as session:
            model = session.get(JobModel, job_id)
            return self._job_from_model(model) if model else None

    def get_job_ids_by_state(
        self, state_name: str, start: int, count: int
    ) -> List[str]:
        with self._session_factory() as session:
            rows = session.execute(
                select(JobModel.id)
                .where(JobModel.status == state_name)
                .order_by(JobModel.created_at.desc())
                .offset(start)
                .limit(count)
            ).scalars()
            return list(rows)

    def get_state_job_count(self, state_name: str) -> int:
        with self._session_factory() as session:
            result = session.execute(
                select(func.count(JobModel.id)).where(JobModel.status == state_name)
            ).scalar_one()
            return int(result or 0)

    def update_job_field(self, job_id: str, field_name: str, value: Any) -> None:
        if field_name not in UPDATABLE_FIELDS:
            raise ValueError(f"Unsupported field update: {field_name}")
        with self._session_factory.begin() as session:
            session.execute(
                update(JobModel)
                .where(JobModel.id == job_id)
                .values({field_name: value, "updated_at": datetime.now(UTC)})
            )

    def get_job_history(self, job_id: str) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
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
                    "timestamp": row.timestamp.isoformat(),
                    "data": self.serializer.deserialize_state_data(row.data),
                }
                for row in rows
            ]
