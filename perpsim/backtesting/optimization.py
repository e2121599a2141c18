from __future__ import annotations

import itertools
import logging
import math
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence, Union

from perpsim.backtesting.engine import Backtester
from perpsim.backtesting.types import (
    BacktestConfig,
    Candle,
    Metrics,
    RiskParameters,
    StrategyParameters,
)

logger = logging.getLogger(__name__)

DEFAULT_METRIC = "total_profit_loss"
VALID_METRICS = ("total_profit_loss", "sharpe_ratio", "win_rate", "max_drawdown", "profit_factor")
MINIMIZED_METRICS = frozenset({"max_drawdown"})


@dataclass(frozen=True)
class ParameterRange:
    min: float
    max: float
    step: float = 1
    type: str = "float"

    def __post_init__(self) -> None:
        if self.type not in {"int", "float", "bool"}:
            raise ValueError(f"Unsupported range type '{self.type}'")
        if self.type != "bool" and (self.step <= 0 or self.max < self.min):
            raise ValueError(f"Invalid range {self.min}..{self.max} step {self.step}")

    @property
    def steps(self) -> int:
        return int(math.floor((self.max - self.min) / self.step + 1e-9)) + 1

    def _coerce(self, value: float) -> Any:
        if self.type == "int":
            return int(round(value))
        return round(value, 10)

    def values(self) -> list[Any]:
        if self.type == "bool":
            return [False, True]
        return [self._coerce(self.min + i * self.step) for i in range(self.steps)]

    def sample(self, rng: random.Random) -> Any:
        if self.type == "bool":
            return rng.random() >= 0.5
        return self._coerce(self.min + rng.randrange(self.steps) * self.step)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParameterRange":
        return cls(
            min=data["min"],
            max=data["max"],
            step=data.get("step", 1),
            type=data.get("type", "float"),
        )


ParameterSpace = Mapping[str, Union[Sequence[Any], ParameterRange]]


def normalize_metric(metric: str) -> str:
    if metric not in VALID_METRICS:
        logger.warning("%s is not a recognized metric; using %s instead", metric, DEFAULT_METRIC)
        return DEFAULT_METRIC
    return metric


def metric_value(metrics: Metrics, metric: str) -> float:
    value = float(getattr(metrics, metric))
    return value if math.isfinite(value) else 0.0


def is_better(metric: str, candidate: float, incumbent: float) -> bool:
    if metric in MINIMIZED_METRICS:
        return candidate < incumbent
    return candidate > incumbent


def validate_space(space: ParameterSpace) -> None:
    known = StrategyParameters.field_names() | RiskParameters.field_names()
    unknown = sorted(set(space) - known)
    if unknown:
        raise ValueError(f"Unknown parameters in search space: {unknown}")
    for name, choices in space.items():
        if not isinstance(choices, ParameterRange) and len(choices) == 0:
            raise ValueError(f"Parameter '{name}' has no candidate values")


def generate_grid(space: ParameterSpace) -> list[dict[str, Any]]:
    keys = sorted(space)
    axes = [space[k].values() if isinstance(space[k], ParameterRange) else list(space[k]) for k in keys]
    return [dict(zip(keys, vals)) for vals in itertools.product(*axes)]


def generate_random(space: ParameterSpace, samples: int, rng: random.Random) -> list[dict[str, Any]]:
    keys = sorted(space)
    combos = []
    for _ in range(samples):
        combo = {}
        for k in keys:
            choices = space[k]
            combo[k] = choices.sample(rng) if isinstance(choices, ParameterRange) else rng.choice(list(choices))
        combos.append(combo)
    return combos


def apply_parameters(base_config: BacktestConfig, params: Mapping[str, Any]) -> BacktestConfig:
    """Return a new config with *params* split onto strategy and risk fields."""
    strategy_fields = StrategyParameters.field_names()
    risk_fields = RiskParameters.field_names()
    strategy_updates = {k: v for k, v in params.items() if k in strategy_fields}
    risk_updates = {k: v for k, v in params.items() if k in risk_fields}
    return replace(
        base_config,
        strategy_params=replace(base_config.strategy_params, **strategy_updates),
        risk=replace(base_config.risk, **risk_updates),
    )


@dataclass(frozen=True)
class SweepResult:
    index: int
    params: dict[str, Any]
    metrics: Metrics
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "params": self.params, "score": self.score, "metrics": self.metrics.to_dict()}


@dataclass(frozen=True)
class SweepFailure:
    index: int
    params: dict[str, Any]
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "params": self.params, "error": self.error}


@dataclass
class SweepReport:
    target_metric: str
    combinations: int
    results: list[SweepResult] = field(default_factory=list)
    failures: list[SweepFailure] = field(default_factory=list)
    best: SweepResult | None = None
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_metric": self.target_metric,
            "combinations": self.combinations,
            "completed": len(self.results),
            "cancelled": self.cancelled,
            "best": self.best.to_dict() if self.best else None,
            "results": [r.to_dict() for r in self.results],
            "failures": [f.to_dict() for f in self.failures],
        }


class BestResultTracker:
    """Best-so-far result shared by sweep workers, updated under a lock."""

    def __init__(self, metric: str) -> None:
        self.metric = metric
        self._best: SweepResult | None = None
        self._lock = threading.Lock()

    @property
    def best(self) -> SweepResult | None:
        with self._lock:
            return self._best

    def offer(self, result: SweepResult) -> bool:
        with self._lock:
            current = self._best
            if (
                current is None
                or is_better(self.metric, result.score, current.score)
                or (result.score == current.score and result.index < current.index)
            ):
                self._best = result
                return True
            return False


def rank_results(results: Sequence[SweepResult], metric: str) -> list[SweepResult]:
    if metric in MINIMIZED_METRICS:
        return sorted(results, key=lambda r: (r.score, r.index))
    return sorted(results, key=lambda r: (-r.score, r.index))


class Optimizer:
    def __init__(self, max_workers: int = 1) -> None:
        self.max_workers = max(1, max_workers)

    def grid_search(
        self,
        base_config: BacktestConfig,
        candles: Sequence[Candle | Mapping[str, Any]],
        param_space: ParameterSpace,
        target_metric: str = DEFAULT_METRIC,
        max_combinations: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SweepReport:
        validate_space(param_space)
        combinations = generate_grid(param_space)
        if max_combinations is not None and len(combinations) > max_combinations:
            logger.warning("Grid has %d combinations; truncating to %d", len(combinations), max_combinations)
            combinations = combinations[:max_combinations]
        return self._run_candidates(base_config, candles, combinations, target_metric, cancel_event)

    def random_search(
        self,
        base_config: BacktestConfig,
        candles: Sequence[Candle | Mapping[str, Any]],
        param_space: ParameterSpace,
        target_metric: str = DEFAULT_METRIC,
        samples: int = 25,
        seed: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SweepReport:
        validate_space(param_space)
        combinations = generate_random(param_space, samples, random.Random(seed))
        return self._run_candidates(base_config, candles, combinations, target_metric, cancel_event)

    def _run_candidates(
        self,
        base_config: BacktestConfig,
        candles: Sequence[Candle | Mapping[str, Any]],
        candidates: list[dict[str, Any]],
        target_metric: str,
        cancel_event: threading.Event | None,
    ) -> SweepReport:
        metric = normalize_metric(target_metric)
        tracker = BestResultTracker(metric)
        report = SweepReport(target_metric=metric, combinations=len(candidates))
        logger.info("Starting sweep of %d combinations optimizing %s", len(candidates), metric)

        def run_one(index: int, params: dict[str, Any]) -> SweepResult | SweepFailure | None:
            if cancel_event is not None and cancel_event.is_set():
                return None
            try:
                config = apply_parameters(base_config, params)
                result = Backtester(config).run(candles)
            except Exception as exc:
                logger.warning("Combination %d failed %s: %s", index, params, exc)
                return SweepFailure(index=index, params=params, error=f"{type(exc).__name__}: {exc}")
            outcome = SweepResult(
                index=index,
                params=params,
                metrics=result.metrics,
                score=metric_value(result.metrics, metric),
            )
            if tracker.offer(outcome):
                logger.info("New best result at combination %d: %s=%s", index, metric, outcome.score)
            return outcome

        if self.max_workers == 1:
            outcomes = [run_one(i, p) for i, p in enumerate(candidates)]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [pool.submit(run_one, i, p) for i, p in enumerate(candidates)]
                outcomes = [f.result() for f in futures]

        for outcome in outcomes:
            if isinstance(outcome, SweepResult):
                report.results.append(outcome)
            elif isinstance(outcome, SweepFailure):
                report.failures.append(outcome)

        report.results = rank_results(report.results, metric)
        report.best = tracker.best
        report.cancelled = cancel_event is not None and cancel_event.is_set() and (
            len(report.results) + len(report.failures) < len(candidates)
        )
        logger.info(
            "Sweep finished: %d completed, %d failed, cancelled=%s",
            len(report.results),
            len(report.failures),
            report.cancelled,
        )
        return report
