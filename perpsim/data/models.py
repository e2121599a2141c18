"""SQLAlchemy 2.x ORM models.

Tables
──────
Candle              perpetual-contract OHLCV storage (WITHOUT ROWID, clustered B-tree)
BacktestJob         one row per backtest or sweep request, with its JSON result
OptimizationResult  one row per ranked sweep combination
"""
from __future__ import annotations

import enum

from sqlalchemy import BigInteger, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from perpsim.data.database import Base


# ─────────────────────────────────────────────────────────────────────────────
# Candle table
# ─────────────────────────────────────────────────────────────────────────────

class Candle(Base):
    """Persisted OHLCV candle.

    open_time and close_time are Unix epoch milliseconds UTC, the unit the
    exchange reports. The composite PK rejects duplicate bars.
    """

    __tablename__ = "candle"
    __table_args__ = ({"sqlite_with_rowid": False},)

    symbol:    Mapped[str] = mapped_column(String(32), primary_key=True, nullable=False)
    timeframe: Mapped[str] = mapped_column(String(8),  primary_key=True, nullable=False)
    open_time: Mapped[int] = mapped_column(BigInteger, primary_key=True, nullable=False)

    close_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    open:   Mapped[float] = mapped_column(Float, nullable=False)
    high:   Mapped[float] = mapped_column(Float, nullable=False)
    low:    Mapped[float] = mapped_column(Float, nullable=False)
    close:  Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Candle {self.symbol}/{self.timeframe} @ {self.open_time} C={self.close}>"


# ─────────────────────────────────────────────────────────────────────────────
# Backtest jobs
# ─────────────────────────────────────────────────────────────────────────────

class JobStatus(str, enum.Enum):
    RUNNING   = "running"
    COMPLETE  = "complete"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class JobKind(str, enum.Enum):
    BACKTEST = "backtest"
    SWEEP    = "sweep"


class BacktestJob(Base):
    """A stored backtest or sweep run.

    request_json holds the config the run was started with; response_json the
    serialized BacktestResult or SweepReport once finished.
    """

    __tablename__ = "backtest_job"
    __table_args__ = (
        Index("idx_job_sym_tf_created", "symbol", "timeframe", "created_at"),
    )

    id:        Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind:      Mapped[str] = mapped_column(String(16), nullable=False, default=JobKind.BACKTEST.value)
    symbol:    Mapped[str] = mapped_column(String(32), nullable=False)
    timeframe: Mapped[str] = mapped_column(String(8),  nullable=False)
    strategy_name: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.RUNNING.value)

    request_json:  Mapped[str] = mapped_column(Text, nullable=False)
    response_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error:         Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at:   Mapped[int] = mapped_column(BigInteger, nullable=False)  # epoch UTC
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<BacktestJob {self.id} {self.kind} {self.symbol}/{self.timeframe} status={self.status}>"


class OptimizationResult(Base):
    """One evaluated sweep combination, stored in rank order."""

    __tablename__ = "optimization_result"
    __table_args__ = (
        Index("idx_opt_job_rank", "job_id", "rank"),
    )

    id:     Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("backtest_job.id", ondelete="CASCADE"), nullable=False)
    rank:   Mapped[int] = mapped_column(Integer, nullable=False)
    combination_index: Mapped[int] = mapped_column(Integer, nullable=False)

    target_metric: Mapped[str] = mapped_column(String(32), nullable=False)
    score:         Mapped[float] = mapped_column(Float, nullable=False)
    params_json:   Mapped[str] = mapped_column(Text, nullable=False)
    metrics_json:  Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<OptimizationResult job={self.job_id} rank={self.rank} score={self.score}>"
