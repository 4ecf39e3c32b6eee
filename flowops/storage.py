"""
Snapshot Storage Layer for the FlowOps Simulator.

Stores mirror the engine's published snapshots so the HTTP API can serve
the latest run, the run history, metrics and logs. Two implementations
are provided:

- InMemoryStore: thread-safe dictionaries, lost on restart
- DatabaseStore: SQLAlchemy tables pipeline_runs, pipeline_steps, metrics
  and logs; every snapshot is written in one transaction

Run status is always derived from the run's steps when a store is read;
the ``status`` column of ``pipeline_runs`` is only a denormalised copy for
external readers.

Logs are returned oldest-first: the most recent ``limit`` entries in
ascending id order.

Stores are never written from the hub directly. ``SnapshotRecorder`` queues
published snapshots and a writer thread hands them to the store, so a slow
database cannot hold up the scheduler loop.

Classes:
    SnapshotStore: Interface shared by the stores
    InMemoryStore: Thread-safe in-memory store
    DatabaseStore: SQLAlchemy-backed durable store
    SnapshotRecorder: Hub observer writing snapshots on a background thread

Version: 0.1.0
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from threading import Condition, RLock, Thread
from typing import Deque, Dict, List, Optional, Sequence

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings, StorageBackend
from .logger import LoggerInterface, StandardLogger
from .models import (
    LogEntry,
    LogEntryLevel,
    Metric,
    PipelineView,
    Run,
    Snapshot,
    Step,
    StepStatus,
)

MAX_LOG_PAGE = 50


class SnapshotStore(ABC):
    """Interface of the snapshot sinks read by the HTTP API."""

    @abstractmethod
    def record(self, snapshot: Snapshot) -> None:
        """Persist the state carried by ``snapshot``."""

    @abstractmethod
    def latest_run(self) -> Optional[PipelineView]:
        """Return the most recent run with its steps."""

    @abstractmethod
    def list_runs(self, limit: int = 20) -> List[Run]:
        """Return up to ``limit`` runs, newest first."""

    @abstractmethod
    def get_metrics(self) -> List[Metric]:
        """Return all metrics ordered by id."""

    @abstractmethod
    def get_logs(self, limit: int = MAX_LOG_PAGE) -> List[LogEntry]:
        """Return the most recent ``limit`` logs, oldest first."""

    @abstractmethod
    def last_ids(self) -> Dict[str, int]:
        """Return the highest stored run, step and log ids (0 when empty)."""

    def close(self) -> None:
        """Release resources held by the store."""


class InMemoryStore(SnapshotStore):
    """
    Thread-safe in-memory snapshot store.

    Attributes:
        _runs (OrderedDict[int, PipelineView]): Run history indexed by id
        _metrics (Dict[int, Metric]): Metrics indexed by id
        _logs (Deque[LogEntry]): Bounded log history
        _lock (RLock): Reentrant lock for thread safety

    Thread Safety:
        All public methods may be called concurrently from request handlers
        and the simulation loop.
    """

    def __init__(self, run_history: int = 100, log_history: int = 500) -> None:
        self._runs: "OrderedDict[int, PipelineView]" = OrderedDict()
        self._metrics: Dict[int, Metric] = {}
        self._logs: Deque[LogEntry] = deque(maxlen=log_history)
        self._run_history = run_history
        self._lock = RLock()

    def record(self, snapshot: Snapshot) -> None:
        with self._lock:
            if snapshot.run is not None:
                self._runs[snapshot.run.id] = PipelineView(
                    run=snapshot.run, steps=snapshot.steps
                )
                self._runs.move_to_end(snapshot.run.id)
                while len(self._runs) > self._run_history:
                    self._runs.popitem(last=False)
            for metric in snapshot.metrics:
                self._metrics[metric.id] = metric
            last_id = self._logs[-1].id if self._logs else 0
            self._logs.extend(entry for entry in snapshot.logs if entry.id > last_id)

    def latest_run(self) -> Optional[PipelineView]:
        with self._lock:
            if not self._runs:
                return None
            view = next(reversed(self._runs.values()))
            return _with_derived_status(view.run, view.steps)

    def list_runs(self, limit: int = 20) -> List[Run]:
        with self._lock:
            views = list(reversed(self._runs.values()))[:limit]
            return [_with_derived_status(v.run, v.steps).run for v in views]

    def get_metrics(self) -> List[Metric]:
        with self._lock:
            return [self._metrics[key].model_copy() for key in sorted(self._metrics)]

    def get_logs(self, limit: int = MAX_LOG_PAGE) -> List[LogEntry]:
        with self._lock:
            limit = max(0, min(limit, MAX_LOG_PAGE))
            if not limit:
                return []
            return [entry.model_copy() for entry in list(self._logs)[-limit:]]

    def last_ids(self) -> Dict[str, int]:
        with self._lock:
            step_ids = [step.id for view in self._runs.values() for step in view.steps]
            return {
                "run": max(self._runs, default=0),
                "step": max(step_ids, default=0),
                "log": self._logs[-1].id if self._logs else 0,
            }


Base = declarative_base()


class PipelineRunRow(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, autoincrement=False)
    status = Column(String(20), nullable=False)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))


class PipelineStepRow(Base):
    __tablename__ = "pipeline_steps"

    id = Column(Integer, primary_key=True, autoincrement=False)
    # Referential intent only; no foreign key constraint
    run_id = Column(Integer, nullable=False, index=True)
    name = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)
    duration = Column(Integer)


class MetricRow(Base):
    __tablename__ = "metrics"

    id = Column(Integer, primary_key=True, autoincrement=False)
    label = Column(String(64), nullable=False, unique=True)
    value = Column(String(64), nullable=False)
    trend = Column(String(32))
    description = Column(Text)


class LogRow(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, autoincrement=False)
    level = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True))


class DatabaseStore(SnapshotStore):
    """
    SQLAlchemy-backed snapshot store.

    Each ``record`` call runs in a single transaction, so a snapshot's
    run, steps, metrics and new logs are written together or not at all.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        options = {}
        if database_url.startswith("sqlite") and (
            ":memory:" in database_url or database_url.rstrip("/") == "sqlite:"
        ):
            # One shared connection so every thread sees the same database
            options = {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            }
        self.engine = create_engine(database_url, echo=echo, **options)
        self._session = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = RLock()
        self._last_log_id: Optional[int] = None

    def init_db(self) -> None:
        """Create the tables if they do not exist yet."""
        Base.metadata.create_all(self.engine)

    def record(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._write(snapshot)

    def _write(self, snapshot: Snapshot) -> None:
        with self._session.begin() as session:
            if self._last_log_id is None:
                self._last_log_id = session.scalar(select(func.max(LogRow.id))) or 0
            if snapshot.run is not None:
                session.merge(
                    PipelineRunRow(
                        id=snapshot.run.id,
                        status=snapshot.run.status.value,
                        start_time=snapshot.run.start_time,
                        end_time=snapshot.run.end_time,
                    )
                )
            for step in snapshot.steps:
                session.merge(
                    PipelineStepRow(
                        id=step.id,
                        run_id=step.run_id,
                        name=step.name,
                        status=step.status.value,
                        duration=step.duration,
                    )
                )
            for metric in snapshot.metrics:
                session.merge(
                    MetricRow(
                        id=metric.id,
                        label=metric.label,
                        value=metric.value,
                        trend=metric.trend,
                        description=metric.description,
                    )
                )
            new_logs = [entry for entry in snapshot.logs if entry.id > self._last_log_id]
            for entry in new_logs:
                session.merge(
                    LogRow(
                        id=entry.id,
                        level=entry.level.value,
                        message=entry.message,
                        timestamp=entry.timestamp,
                    )
                )
        # Only advance the high-water mark once the rows are committed
        if new_logs:
            self._last_log_id = new_logs[-1].id

    def latest_run(self) -> Optional[PipelineView]:
        with self._lock, self._session() as session:
            row = session.scalar(
                select(PipelineRunRow).order_by(PipelineRunRow.id.desc()).limit(1)
            )
            if row is None:
                return None
            return self._view(session, row)

    def list_runs(self, limit: int = 20) -> List[Run]:
        with self._lock, self._session() as session:
            rows = session.scalars(
                select(PipelineRunRow).order_by(PipelineRunRow.id.desc()).limit(limit)
            ).all()
            return [self._view(session, row).run for row in rows]

    def get_metrics(self) -> List[Metric]:
        with self._lock, self._session() as session:
            rows = session.scalars(select(MetricRow).order_by(MetricRow.id)).all()
            return [
                Metric(
                    id=row.id,
                    label=row.label,
                    value=row.value,
                    trend=row.trend,
                    description=row.description,
                )
                for row in rows
            ]

    def get_logs(self, limit: int = MAX_LOG_PAGE) -> List[LogEntry]:
        limit = max(0, min(limit, MAX_LOG_PAGE))
        if not limit:
            return []
        with self._lock, self._session() as session:
            rows = session.scalars(
                select(LogRow).order_by(LogRow.id.desc()).limit(limit)
            ).all()
            return [
                LogEntry(
                    id=row.id,
                    level=LogEntryLevel(row.level),
                    message=row.message,
                    timestamp=row.timestamp,
                )
                for row in reversed(rows)
            ]

    def last_ids(self) -> Dict[str, int]:
        with self._lock, self._session() as session:
            return {
                "run": session.scalar(select(func.max(PipelineRunRow.id))) or 0,
                "step": session.scalar(select(func.max(PipelineStepRow.id))) or 0,
                "log": session.scalar(select(func.max(LogRow.id))) or 0,
            }

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _view(session, row: PipelineRunRow) -> PipelineView:
        step_rows = session.scalars(
            select(PipelineStepRow)
            .where(PipelineStepRow.run_id == row.id)
            .order_by(PipelineStepRow.id)
        ).all()
        steps = [
            Step(
                id=s.id,
                run_id=s.run_id,
                name=s.name,
                status=StepStatus(s.status),
                duration=s.duration,
            )
            for s in step_rows
        ]
        return PipelineView(
            run=Run.from_steps(row.id, steps, row.start_time, row.end_time),
            steps=steps,
        )


def _with_derived_status(run: Run, steps: List[Step]) -> PipelineView:
    steps = [step.model_copy() for step in steps]
    return PipelineView(
        run=Run.from_steps(run.id, steps, run.start_time, run.end_time),
        steps=steps,
    )


def coalesce_snapshots(batch: Sequence[Snapshot]) -> List[Snapshot]:
    """
    Reduce a batch of snapshots to the latest one per run.

    Each kept snapshot carries every log entry its run showed anywhere in
    the batch, in ascending id order, so no entry is skipped when earlier
    snapshots are dropped.
    """
    latest: "OrderedDict[Optional[int], Snapshot]" = OrderedDict()
    logs: Dict[Optional[int], Dict[int, LogEntry]] = {}
    for snapshot in batch:
        key = snapshot.run.id if snapshot.run is not None else None
        latest[key] = snapshot
        entries = logs.setdefault(key, {})
        for entry in snapshot.logs:
            entries[entry.id] = entry
    return [
        snapshot.model_copy(
            update={"logs": [logs[key][i] for i in sorted(logs[key])]}
        )
        for key, snapshot in latest.items()
    ]


class SnapshotRecorder:
    """
    Non-blocking hub observer feeding a ``SnapshotStore``.

    Calling the recorder only appends the snapshot to a pending list. A
    daemon writer thread drains the list, coalesces it and records the
    result, so store latency never reaches the thread that published.

    Attributes:
        store (SnapshotStore): Destination of the recorded snapshots
        logger (LoggerInterface): Receives failed writes
    """

    def __init__(
        self, store: SnapshotStore, logger: Optional[LoggerInterface] = None
    ) -> None:
        self.store = store
        self.logger = logger or StandardLogger()
        self._pending: List[Snapshot] = []
        self._busy = False
        self._closed = False
        self._condition = Condition()
        self._thread: Optional[Thread] = None

    def __call__(self, snapshot: Snapshot) -> None:
        with self._condition:
            if self._closed:
                return
            self._pending.append(snapshot)
            self._condition.notify_all()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._condition:
            if self._thread is not None:
                return
            self._closed = False
            self._thread = Thread(
                target=self._run, name="flowops-recorder", daemon=True
            )
            self._thread.start()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued snapshot has been written; False on timeout."""
        with self._condition:
            return self._condition.wait_for(
                lambda: not self._pending and not self._busy, timeout
            )

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Write what is still queued, then stop the writer thread."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

    def _run(self) -> None:
        while True:
            with self._condition:
                self._condition.wait_for(lambda: self._pending or self._closed)
                if not self._pending:
                    return
                batch, self._pending = self._pending, []
                self._busy = True
            try:
                for snapshot in coalesce_snapshots(batch):
                    try:
                        self.store.record(snapshot)
                    except Exception as e:
                        self.logger.exception(
                            f"Snapshot write failed: {e}",
                            run_id=snapshot.cycle_count,
                            error=str(e),
                        )
            finally:
                with self._condition:
                    self._busy = False
                    self._condition.notify_all()


def build_store(
    settings: Settings, logger: Optional[LoggerInterface] = None
) -> SnapshotStore:
    """
    Create the store selected by ``settings``.

    A database backend that is not configured or cannot be reached falls
    back to ``InMemoryStore`` with a warning instead of failing startup.
    """
    logger = logger or StandardLogger()
    if settings.storage_backend != StorageBackend.database:
        return InMemoryStore()
    if not settings.database_url:
        logger.warning(
            "Database storage requested without a database URL, using memory store"
        )
        return InMemoryStore()
    try:
        store = DatabaseStore(settings.database_url)
        store.init_db()
    except (SQLAlchemyError, ImportError) as e:
        logger.warning(
            f"Database unavailable, using memory store: {e}",
            error=str(e),
        )
        return InMemoryStore()
    logger.info("Database snapshot store ready")
    return store
