"""Backtest API.

Endpoints
─────────
POST /api/backtest                   run one backtest, store it as a job
POST /api/backtest/optimize          run a parameter sweep, store ranked results
GET  /api/backtest/{job_id}          stored job with its result
GET  /api/backtest/{job_id}/results  top ranked sweep combinations
"""
from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import settings
from perpsim.api.auth import require_api_key
from perpsim.backtesting.service import BacktestService
from perpsim.errors import JobNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/backtest", tags=["backtest"], dependencies=[Depends(require_api_key)])
service = BacktestService(models_dir=settings.data_dir / "models")


class BacktestRequest(BaseModel):
    symbol: str = settings.default_symbol
    timeframe: str = settings.default_timeframe
    strategy_name: str = "bbrsi_v1"
    strategy_params: dict[str, Any] = Field(default_factory=dict)
    risk: dict[str, Any] = Field(default_factory=dict)
    initial_capital: float = Field(default=1000.0, gt=0)
    model_name: str | None = None
    candle_count: int | None = Field(default=None, ge=1)
    start_time: int | None = None
    end_time: int | None = None
    # Inline candles bypass the candle store.
    candles: list[dict[str, Any]] | None = None


class RiskBacktestRequest(BacktestRequest):
    # Present switches on risk-managed sizing and stop-losses; {} takes the defaults.
    risk_management: dict[str, Any] | None = None


class SweepRequest(BacktestRequest):
    param_space: dict[str, list[Any] | dict[str, Any]] = Field(default_factory=dict)
    method: Literal["grid", "random"] = "grid"
    target_metric: str = "total_profit_loss"
    # Unset runs the full grid.
    max_combinations: int | None = Field(default=None, ge=1)
    samples: int = Field(default=25, ge=1)
    seed: int | None = None
    max_workers: int = Field(default=1, ge=1, le=32)


def _run(submit, payload: BacktestRequest) -> dict[str, Any]:
    try:
        job_id = submit(payload.model_dump(mode="json"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Unexpected backtest error for %s/%s", payload.symbol, payload.timeframe)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    return service.get_job(job_id)


@router.post("")
def submit_backtest(payload: RiskBacktestRequest) -> dict[str, Any]:
    return _run(service.submit_backtest, payload)


@router.post("/optimize")
def submit_sweep(payload: SweepRequest) -> dict[str, Any]:
    return _run(service.submit_sweep, payload)


@router.get("/{job_id:int}")
def get_backtest_job(job_id: int) -> dict[str, Any]:
    try:
        return service.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None


@router.get("/{job_id:int}/results")
def get_sweep_results(job_id: int, limit: int = Query(default=10, ge=1, le=1000)) -> dict[str, Any]:
    try:
        results = service.get_sweep_results(job_id, limit=limit)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None
    return {"job_id": job_id, "count": len(results), "results": results}
