"""Persisted run history: an append-only event log in SQLAlchemy.

Every state change of a Run is one row in ``run_events``. ``RunStore.load``
replays a run's rows into a ``RunRecord``; nothing is ever updated in place,
so the trail survives failures and cancellations as far as it got.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .events import RunListener
from .model import Job, JobResult, Run, RunStatus, StepResult
from .settings import DATABASE_URL

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RunEvent(Base):
    __tablename__ = "run_events"
    __table_args__ = (sa.UniqueConstraint("run_id", "seq", name="uq_run_events_run_seq"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    kind: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    job: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    step: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    payload: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)


# ----------------------------------------------------------------------
# Replayed view
# ----------------------------------------------------------------------

@dataclass
class JobRecord:
    name: str
    status: str = "pending"
    reason: Optional[str] = None
    steps: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RunRecord:
    id: str
    pipeline: str = ""
    event: Dict[str, Any] = field(default_factory=dict)
    status: str = RunStatus.PENDING.value
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    jobs: Dict[str, JobRecord] = field(default_factory=dict)
    cleanup: List[Dict[str, Any]] = field(default_factory=list)

    def _job(self, name: str) -> JobRecord:
        if name not in self.jobs:
            self.jobs[name] = JobRecord(name=name)
        return self.jobs[name]

    def apply(self, ev: RunEvent) -> None:
        p = ev.payload or {}
        self.updated_at = ev.created_at
        if ev.kind == "run.created":
            self.pipeline = p.get("pipeline", "")
            self.event = p.get("event", {})
            self.created_at = ev.created_at
            for name in p.get("jobs", []):
                self._job(name)
        elif ev.kind == "run.status":
            self.status = p.get("status", self.status)
            self.reason = p.get("reason")
        elif ev.kind == "job.status" and ev.job:
            job = self._job(ev.job)
            job.status = p.get("status", job.status)
            job.reason = p.get("reason")
        elif ev.kind == "step.finished" and ev.job:
            self._job(ev.job).steps.append(p)
        elif ev.kind == "cleanup.step":
            self.cleanup.append(p)
        else:
            logger.debug("run %s: ignoring event kind %s", self.id, ev.kind)


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------

def _make_engine(url: str) -> sa.Engine:
    if not url.startswith("sqlite"):
        return sa.create_engine(url, pool_pre_ping=True)

    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    db_path = sa.engine.make_url(url).database
    if not db_path or db_path == ":memory:":
        kwargs["poolclass"] = StaticPool
    else:
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return sa.create_engine(url, **kwargs)


class RunStore:
    def __init__(self, url: str = DATABASE_URL):
        self.url = url
        self.engine = _make_engine(url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        # seq allocation + insert must be atomic per process
        self._write_lock = threading.Lock()

    def append(
        self,
        run_id: str,
        kind: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._write_lock, self.Session.begin() as s:
            last = s.scalar(sa.select(sa.func.max(RunEvent.seq)).where(RunEvent.run_id == run_id))
            seq = (last or 0) + 1
            s.add(RunEvent(run_id=run_id, seq=seq, kind=kind, job=job, step=step, payload=payload or {}))
        return seq

    def events(self, run_id: str) -> List[RunEvent]:
        with self.Session() as s:
            rows = s.scalars(
                sa.select(RunEvent).where(RunEvent.run_id == run_id).order_by(RunEvent.seq)
            ).all()
            return list(rows)

    def load(self, run_id: str) -> Optional[RunRecord]:
        rows = self.events(run_id)
        if not rows:
            return None
        record = RunRecord(id=run_id)
        for ev in rows:
            record.apply(ev)
        return record

    def list_runs(self, limit: int = 50) -> List[RunRecord]:
        """Most recent runs first."""
        with self.Session() as s:
            ids = s.scalars(
                sa.select(RunEvent.run_id)
                .where(RunEvent.kind == "run.created")
                .order_by(RunEvent.id.desc())
                .limit(limit)
            ).all()
        return [r for r in (self.load(run_id) for run_id in ids) if r is not None]

    def close(self) -> None:
        self.engine.dispose()


class StoreListener(RunListener):
    """
    Writes run events into a RunStore. Output arrives already redacted.

    A failed write is retried; if it still fails the event is logged at
    ERROR and its (run id, kind) is kept in ``lost`` so callers can tell
    the persisted trail is incomplete.
    """

    def __init__(self, store: RunStore, *, retries: int = 2, retry_delay: float = 0.1):
        self.store = store
        self.retries = retries
        self.retry_delay = retry_delay
        self.lost: List[Tuple[str, str]] = []

    def _append(self, run_id: str, kind: str, **kwargs) -> None:
        for attempt in range(self.retries + 1):
            try:
                self.store.append(run_id, kind, **kwargs)
                return
            except SQLAlchemyError as e:
                if attempt < self.retries:
                    logger.warning("run %s: writing %s failed (%s), retrying", run_id, kind, e)
                    time.sleep(self.retry_delay * (2 ** attempt))
                    continue
                logger.error("run %s: %s event lost after %d attempt(s): %s", run_id, kind, attempt + 1, e)
                self.lost.append((run_id, kind))

    def run_status(self, run: Run, status: RunStatus, reason: Optional[str] = None) -> None:
        if status == RunStatus.TRIGGERED:
            self._append(
                run.id,
                "run.created",
                payload={
                    "pipeline": run.definition.name,
                    "event": {
                        "event_type": run.event.event_type,
                        "ref": run.event.ref,
                        "sha": run.event.sha,
                        "repository": run.event.repository,
                    },
                    "jobs": run.definition.job_names,
                },
            )
        self._append(run.id, "run.status", payload={"status": status.value, "reason": reason})

    def job_started(self, run: Run, job: Job) -> None:
        self._append(run.id, "job.status", job=job.name, payload={"status": "running", "reason": None})

    def job_finished(self, run: Run, result: JobResult) -> None:
        self._append(
            run.id,
            "job.status",
            job=result.name,
            payload={
                "status": result.status.value,
                "reason": result.reason,
                "duration": round(result.duration, 3),
            },
        )

    def step_finished(self, run: Run, job: Job, result: StepResult) -> None:
        self._append(run.id, "step.finished", job=job.name, step=result.name, payload=result.to_dict())

    def cleanup_step(self, run: Run, result: StepResult) -> None:
        self._append(run.id, "cleanup.step", step=result.name, payload=result.to_dict())
