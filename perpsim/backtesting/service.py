from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Mapping

from perpsim.backtesting.dataset import list_optimized_models, load_optimized_parameters
from perpsim.backtesting.engine import Backtester, parse_candles
from perpsim.backtesting.optimization import Optimizer, ParameterRange, SweepReport, validate_space
from perpsim.backtesting.risk import RiskAwareBacktester, RiskManagementSettings
from perpsim.backtesting.types import BacktestConfig, Candle, RiskParameters, StrategyParameters
from perpsim.data.database import get_db_session
from perpsim.data.historical_store import HistoricalDataStore, InsufficientDataError
from perpsim.data.models import BacktestJob, JobKind, JobStatus, OptimizationResult
from perpsim.errors import JobNotFoundError
from perpsim.signals.signal_manager import STRATEGIES

logger = logging.getLogger(__name__)

DEFAULT_CANDLE_COUNT = 500


def _build_section(cls: type, values: Mapping[str, Any] | None, section: str) -> Any:
    values = dict(values or {})
    unknown = sorted(set(values) - cls.field_names())
    if unknown:
        raise ValueError(f"Unknown {section} parameters: {unknown}")
    return cls(**values)


def build_config(payload: Mapping[str, Any]) -> BacktestConfig:
    """Build a validated BacktestConfig from a request mapping."""
    strategy_name = payload.get("strategy_name", "bbrsi_v1")
    if strategy_name not in STRATEGIES:
        raise ValueError(f"Unsupported strategy '{strategy_name}'; expected one of {sorted(STRATEGIES)}")
    return BacktestConfig(
        symbol=payload["symbol"],
        timeframe=payload["timeframe"],
        strategy_name=strategy_name,
        strategy_params=_build_section(StrategyParameters, payload.get("strategy_params"), "strategy"),
        risk=_build_section(RiskParameters, payload.get("risk"), "risk"),
        initial_capital=float(payload.get("initial_capital", 1000.0)),
    )


def parse_param_space(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Lists stay candidate lists; ``{min, max, step, type}`` mappings become ranges."""
    return {
        name: ParameterRange.from_dict(bounds) if isinstance(bounds, Mapping) else list(bounds)
        for name, bounds in raw.items()
    }


class BacktestService:
    def __init__(
        self,
        store: HistoricalDataStore | None = None,
        models_dir: str | Path | None = None,
    ) -> None:
        self.store = store or HistoricalDataStore()
        self.models_dir = Path(models_dir) if models_dir else None

    # ── Config and data ───────────────────────────────────────────────────────

    def resolve_config(self, payload: Mapping[str, Any]) -> BacktestConfig:
        config = build_config(payload)
        model_name = payload.get("model_name")
        if model_name:
            config = load_optimized_parameters(self._model_path(model_name), config)
        return config

    def _model_path(self, model_name: str) -> Path:
        if self.models_dir is None:
            raise ValueError("No optimized parameter directory is configured")
        for model in list_optimized_models(self.models_dir):
            if model["name"] == model_name:
                return Path(model["path"])
        raise ValueError(f"Unknown optimized parameter model '{model_name}'")

    def load_candles(self, config: BacktestConfig, payload: Mapping[str, Any]) -> list[Candle]:
        if payload.get("candles"):
            return parse_candles(payload["candles"])

        # The engine needs lookback + 1 candles.
        needed = Backtester(config).lookback + 1
        if not self.store.has_sufficient_data(config.symbol, config.timeframe, needed):
            available = self.store.count_candles(config.symbol, config.timeframe)
            raise InsufficientDataError(config.symbol, config.timeframe, available, needed)

        start_time = payload.get("start_time")
        end_time = payload.get("end_time")
        if start_time is not None and end_time is not None:
            return self.store.get_candles_range(config.symbol, config.timeframe, int(start_time), int(end_time))
        count = int(payload.get("candle_count") or DEFAULT_CANDLE_COUNT)
        return self.store.get_candles(config.symbol, config.timeframe, count, end_time=end_time)

    # ── Jobs ──────────────────────────────────────────────────────────────────

    def submit_backtest(self, payload: Mapping[str, Any]) -> int:
        config = self.resolve_config(payload)
        risk_management = payload.get("risk_management")
        risk_settings = None
        if risk_management is not None:
            risk_settings = _build_section(RiskManagementSettings, risk_management, "risk management")
        candles = self.load_candles(config, payload)
        request: dict[str, Any] = {"config": config.to_dict()}
        if risk_settings is not None:
            request["risk_management"] = risk_settings.to_dict()
        job_id = self._create_job(JobKind.BACKTEST, config, request)

        if risk_settings is None:
            backtester = Backtester(config)
        else:
            backtester = RiskAwareBacktester(config, risk_settings)
        try:
            result = backtester.run(candles)
        except Exception as exc:
            logger.error("Backtest job %d failed: %s", job_id, exc)
            self._finish_job(job_id, JobStatus.FAILED, error=str(exc))
            return job_id

        self._finish_job(job_id, JobStatus.COMPLETE, response=result.to_dict())
        return job_id

    def submit_sweep(
        self,
        payload: Mapping[str, Any],
        cancel_event: threading.Event | None = None,
    ) -> int:
        config = self.resolve_config(payload)
        candles = self.load_candles(config, payload)
        space = parse_param_space(payload.get("param_space") or {})
        method = payload.get("method", "grid")
        if method not in {"grid", "random"}:
            raise ValueError(f"Unsupported sweep method '{method}'")
        validate_space(space)
        optimizer = Optimizer(max_workers=int(payload.get("max_workers", 1)))
        request = {
            "config": config.to_dict(),
            "method": method,
            "target_metric": payload.get("target_metric", "total_profit_loss"),
            "param_space": payload.get("param_space") or {},
        }
        job_id = self._create_job(JobKind.SWEEP, config, request)

        try:
            if method == "grid":
                report = optimizer.grid_search(
                    base_config=config,
                    candles=candles,
                    param_space=space,
                    target_metric=request["target_metric"],
                    max_combinations=payload.get("max_combinations"),
                    cancel_event=cancel_event,
                )
            else:
                report = optimizer.random_search(
                    base_config=config,
                    candles=candles,
                    param_space=space,
                    target_metric=request["target_metric"],
                    samples=int(payload.get("samples", 25)),
                    seed=payload.get("seed"),
                    cancel_event=cancel_event,
                )
        except Exception as exc:
            logger.error("Sweep job %d failed: %s", job_id, exc)
            self._finish_job(job_id, JobStatus.FAILED, error=str(exc))
            return job_id

        self._save_sweep_results(job_id, report)
        status = JobStatus.CANCELLED if report.cancelled else JobStatus.COMPLETE
        self._finish_job(job_id, status, response=report.to_dict())
        return job_id

    def get_job(self, job_id: int) -> dict[str, Any]:
        with get_db_session() as session:
            job = session.get(BacktestJob, job_id)
            if not job:
                raise JobNotFoundError(f"Job {job_id} not found")
            return {
                "job_id": job.id,
                "kind": job.kind,
                "status": job.status,
                "symbol": job.symbol,
                "timeframe": job.timeframe,
                "strategy_name": job.strategy_name,
                "response": json.loads(job.response_json) if job.response_json else None,
                "error": job.error,
                "created_at": job.created_at,
                "completed_at": job.completed_at,
            }

    def get_sweep_results(self, job_id: int, limit: int = 10) -> list[dict[str, Any]]:
        with get_db_session() as session:
            if not session.get(BacktestJob, job_id):
                raise JobNotFoundError(f"Job {job_id} not found")
            rows = (
                session.query(OptimizationResult)
                .filter(OptimizationResult.job_id == job_id)
                .order_by(OptimizationResult.rank.asc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "rank": row.rank,
                    "index": row.combination_index,
                    "target_metric": row.target_metric,
                    "score": row.score,
                    "params": json.loads(row.params_json),
                    "metrics": json.loads(row.metrics_json),
                }
                for row in rows
            ]

    def _create_job(self, kind: JobKind, config: BacktestConfig, request: dict[str, Any]) -> int:
        with get_db_session() as session:
            job = BacktestJob(
                kind=kind.value,
                symbol=config.symbol,
                timeframe=config.timeframe,
                strategy_name=config.strategy_name,
                status=JobStatus.RUNNING.value,
                request_json=json.dumps(request, default=str),
                created_at=int(time.time()),
            )
            session.add(job)
            session.flush()
            job_id = int(job.id)
        logger.info("Created %s job %d for %s/%s", kind.value, job_id, config.symbol, config.timeframe)
        return job_id

    def _finish_job(
        self,
        job_id: int,
        status: JobStatus,
        response: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        with get_db_session() as session:
            job = session.get(BacktestJob, job_id)
            if job:
                job.status = status.value
                job.response_json = json.dumps(response) if response is not None else None
                job.error = error
                job.completed_at = int(time.time())

    @staticmethod
    def _save_sweep_results(job_id: int, report: SweepReport) -> None:
        with get_db_session() as session:
            for rank, result in enumerate(report.results, start=1):
                session.add(
                    OptimizationResult(
                        job_id=job_id,
                        rank=rank,
                        combination_index=result.index,
                        target_metric=report.target_metric,
                        score=result.score,
                        params_json=json.dumps(result.params),
                        metrics_json=json.dumps(result.metrics.to_dict()),
                    )
                )
