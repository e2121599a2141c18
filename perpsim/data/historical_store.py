"""Historical Data Store: DB-only candle access for backtests and sweeps.

All reads come from the ``candle`` table and are returned as
``perpsim.backtesting.types.Candle`` values in ascending ``open_time`` order,
ready to hand to the engine. Writes go through ``store_candles`` and are
INSERT OR IGNORE on the (symbol, timeframe, open_time) primary key, so
re-importing an overlapping file or API page never duplicates bars.

Error model
───────────
• InsufficientDataError is raised when the DB has fewer rows than requested.
  Callers surface it rather than passing a short series to the engine.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from sqlalchemy import func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased

from perpsim.backtesting.types import Candle
from perpsim.data.database import get_db_session
from perpsim.data.models import Candle as CandleRow
from perpsim.errors import PerpsimError

logger = logging.getLogger(__name__)

_INSERT_BATCH_SIZE = 500


# ── Exceptions ────────────────────────────────────────────────────────────────


class InsufficientDataError(PerpsimError, ValueError):
    """Raised when the database has fewer candles than the caller required."""

    def __init__(self, symbol: str, timeframe: str, available: int, requested: int) -> None:
        self.symbol    = symbol
        self.timeframe = timeframe
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient historical data for {symbol}/{timeframe}: "
            f"{available} candles stored, {requested} required"
        )


def _row_to_candle(row: CandleRow) -> Candle:
    return Candle(
        open_time=row.open_time,
        close_time=row.close_time,
        open=row.open,
        high=row.high,
        low=row.low,
        close=row.close,
        volume=row.volume,
    )


# ── HistoricalDataStore ───────────────────────────────────────────────────────


class HistoricalDataStore:
    """Stateless candle repository; every call opens its own session."""

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        count: int,
        end_time: int | None = None,
    ) -> list[Candle]:
        """Return the most recent *count* candles (open_time <= end_time) ascending.

        Raises
        ------
        InsufficientDataError
            When fewer than *count* candles are stored.
        """
        with get_db_session() as session:
            query = (
                select(CandleRow)
                .where(CandleRow.symbol    == symbol)
                .where(CandleRow.timeframe == timeframe)
            )
            if end_time is not None:
                query = query.where(CandleRow.open_time <= end_time)

            # Newest *count* rows first, then re-sorted ascending.
            subq = query.order_by(CandleRow.open_time.desc()).limit(count).subquery()
            candle_alias = aliased(CandleRow, subq)
            rows = session.execute(
                select(candle_alias).order_by(candle_alias.open_time.asc())
            ).scalars().all()

            if len(rows) < count:
                raise InsufficientDataError(symbol, timeframe, len(rows), count)

            return [_row_to_candle(r) for r in rows]

    def get_candles_range(
        self,
        symbol: str,
        timeframe: str,
        start_time: int,
        end_time: int,
        min_candles: int = 1,
    ) -> list[Candle]:
        """Return all candles with start_time <= open_time <= end_time, ascending."""
        with get_db_session() as session:
            rows = session.execute(
                select(CandleRow)
                .where(CandleRow.symbol    == symbol)
                .where(CandleRow.timeframe == timeframe)
                .where(CandleRow.open_time >= start_time)
                .where(CandleRow.open_time <= end_time)
                .order_by(CandleRow.open_time.asc())
            ).scalars().all()

            if len(rows) < min_candles:
                raise InsufficientDataError(symbol, timeframe, len(rows), min_candles)

            return [_row_to_candle(r) for r in rows]

    def store_candles(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle | Mapping[str, Any]],
    ) -> int:
        """INSERT OR IGNORE *candles*. Returns the number of new rows."""
        rows = []
        for candle in candles:
            if not isinstance(candle, Candle):
                candle = Candle.from_mapping(candle)
            rows.append({"symbol": symbol, "timeframe": timeframe, **candle.to_dict()})
        if not rows:
            return 0

        inserted = 0
        with get_db_session() as session:
            for i in range(0, len(rows), _INSERT_BATCH_SIZE):
                batch = rows[i : i + _INSERT_BATCH_SIZE]
                stmt = sqlite_insert(CandleRow).values(batch).on_conflict_do_nothing()
                inserted += session.execute(stmt).rowcount

        logger.info("Stored %d/%d candles for %s/%s", inserted, len(rows), symbol, timeframe)
        return inserted

    def count_candles(self, symbol: str, timeframe: str) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count())
                .select_from(CandleRow)
                .where(CandleRow.symbol    == symbol)
                .where(CandleRow.timeframe == timeframe)
            ).scalar_one()

    def has_sufficient_data(self, symbol: str, timeframe: str, min_candles: int) -> bool:
        """Return True if at least *min_candles* rows exist for this partition.

        COUNT over a LIMIT subquery stops scanning at the N-th row.
        """
        with get_db_session() as session:
            count: int = session.execute(
                text(
                    "SELECT COUNT(*) FROM ("
                    "  SELECT 1 FROM candle"
                    "  WHERE symbol = :sym AND timeframe = :tf"
                    "  LIMIT :lim"
                    ")"
                ),
                {"sym": symbol, "tf": timeframe, "lim": min_candles},
            ).scalar_one()
        return count >= min_candles
