"""SQLite engine, sessions and job-table housekeeping.

Startup runs ``initialize_database``: create the candle/job/result tables,
then fail any job a previous process left in ``running`` (a sweep killed
mid-flight never reaches ``_finish_job``). ``prune_jobs`` and
``table_counts`` back the ``perpsim prune-jobs`` command and ``/api/health``.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine, delete, event, func, select, text, update
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import settings

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted: the process stopped before the job finished"

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


class Base(DeclarativeBase):
    pass


def build_engine(url: str) -> Engine:
    """SQLite engine shared between API threads and sweep workers."""
    new_engine = create_engine(url, connect_args={"check_same_thread": False}, pool_pre_ping=True)

    @event.listens_for(new_engine, "connect")
    def _on_connect(dbapi_conn, _record) -> None:
        # WAL keeps /api reads going while a sweep writes its ranked rows;
        # foreign_keys makes job deletes cascade to optimization_result.
        cursor = dbapi_conn.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    return new_engine


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on any exception."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Job housekeeping ──────────────────────────────────────────────────────────

def fail_interrupted_jobs() -> int:
    """Mark jobs still ``running`` as failed. Returns how many were updated."""
    from perpsim.data.models import BacktestJob, JobStatus

    with get_db_session() as session:
        updated = session.execute(
            update(BacktestJob)
            .where(BacktestJob.status == JobStatus.RUNNING.value)
            .values(status=JobStatus.FAILED.value, error=INTERRUPTED_ERROR, completed_at=int(time.time()))
        ).rowcount
    if updated:
        logger.warning("Marked %d interrupted job(s) as failed", updated)
    return updated


def prune_jobs(older_than_seconds: int, now: int | None = None) -> int:
    """Delete finished jobs (and their sweep rows) created before the cutoff."""
    from perpsim.data.models import BacktestJob, JobStatus, OptimizationResult

    cutoff = (now if now is not None else int(time.time())) - older_than_seconds
    with get_db_session() as session:
        stale = (
            select(BacktestJob.id)
            .where(BacktestJob.created_at < cutoff)
            .where(BacktestJob.status != JobStatus.RUNNING.value)
        )
        job_ids = list(session.execute(stale).scalars())
        if not job_ids:
            return 0
        session.execute(delete(OptimizationResult).where(OptimizationResult.job_id.in_(job_ids)))
        session.execute(delete(BacktestJob).where(BacktestJob.id.in_(job_ids)))
    logger.info("Pruned %d job(s) created before %d", len(job_ids), cutoff)
    return len(job_ids)


def table_counts() -> dict[str, int]:
    from perpsim.data.models import BacktestJob, Candle, OptimizationResult

    with get_db_session() as session:
        return {
            model.__tablename__: session.execute(select(func.count()).select_from(model)).scalar_one()
            for model in (Candle, BacktestJob, OptimizationResult)
        }


def initialize_database() -> None:
    """Create tables, verify the connection and recover interrupted jobs."""
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)

    import perpsim.data.models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))

    fail_interrupted_jobs()
    logger.info("Database ready at %s", settings.db_path)
