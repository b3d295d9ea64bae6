"""
ema.py — Exponential moving averages, batch and streaming.

Batch EMA is seeded with the SMA of the first `period` values and padded
with NaN before that point. StreamingEMA produces the same numbers one
value at a time, reporting a running mean until it has seen `period`
values.

Usage:
    result = compute_ema(closes, period=12)
    result.values[result.valid_from:]

    live = StreamingEMA(period=12)
    update = live.update(101.5)
    update.is_stable, update.value
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger


MAX_PERIOD = 1000
MAX_VALUES = 100_000


# ─── Errors & Validation ──────────────────────────────────────────────────────


class EMAError(ValueError):
    """EMA failure carrying a machine-readable code."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def validate_config(period: Any, smoothing_factor: Optional[float] = None) -> None:
    if not isinstance(period, int) or isinstance(period, bool) or period <= 0:
        raise EMAError("Period must be a positive integer", "INVALID_PERIOD")
    if period > MAX_PERIOD:
        raise EMAError(f"Period cannot exceed {MAX_PERIOD}", "PERIOD_TOO_LARGE")
    if smoothing_factor is not None and not 0 < smoothing_factor <= 1:
        raise EMAError("Smoothing factor must be between 0 and 1", "INVALID_SMOOTHING_FACTOR")


def validate_values(values: Sequence[Any]) -> None:
    if len(values) == 0:
        raise EMAError("Values array cannot be empty", "EMPTY_VALUES")
    if len(values) > MAX_VALUES:
        raise EMAError(f"Values array too large (max {MAX_VALUES:,})", "VALUES_TOO_LARGE")
    for i, v in enumerate(values):
        if not isinstance(v, (int, float)) or isinstance(v, bool) or not math.isfinite(v):
            raise EMAError(f"Invalid value at index {i}: must be a finite number", "INVALID_VALUE")


def smoothing_factor(period: int) -> float:
    """α = 2 / (n + 1)"""
    return 2 / (period + 1)


# ─── Batch EMA ────────────────────────────────────────────────────────────────


@dataclass
class EMAResult:
    values: List[float]
    period: int
    valid_from: int
    smoothing_factor: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "values": [None if math.isnan(v) else v for v in self.values],
            "period": self.period,
            "valid_from": self.valid_from,
            "smoothing_factor": self.smoothing_factor,
        }


def compute_ema(
    values: Sequence[float],
    period: int,
    alpha: Optional[float] = None,
) -> EMAResult:
    validate_config(period, alpha)
    validate_values(values)
    if len(values) < period:
        raise EMAError(
            f"Insufficient data: need at least {period} values, got {len(values)}",
            "INSUFFICIENT_DATA",
        )

    k = alpha if alpha is not None else smoothing_factor(period)
    current = sum(values[:period]) / period
    out = [math.nan] * (period - 1) + [current]
    for v in values[period:]:
        current = v * k + current * (1 - k)
        out.append(current)
    return EMAResult(values=out, period=period, valid_from=period - 1, smoothing_factor=k)


def compute_multiple_ema(values: Sequence[float], periods: Sequence[int]) -> Dict[int, EMAResult]:
    validate_values(values)
    results: Dict[int, EMAResult] = {}
    for period in periods:
        try:
            results[period] = compute_ema(values, period)
        except EMAError as exc:
            logger.warning(f"Skipping EMA period {period}: {exc} ({exc.code})")
    return results


def ema_convergence_divergence(values: Sequence[float], fast: int, slow: int) -> List[float]:
    """fast EMA − slow EMA, NaN until both are valid."""
    fast_ema = compute_ema(values, fast)
    slow_ema = compute_ema(values, slow)
    valid_from = max(fast_ema.valid_from, slow_ema.valid_from)
    return [
        math.nan if i < valid_from else fast_ema.values[i] - slow_ema.values[i]
        for i in range(len(values))
    ]


# ─── Streaming EMA ────────────────────────────────────────────────────────────


@dataclass
class StreamingEMAUpdate:
    value: float
    is_stable: bool
    count: int
    change: float
    percent_change: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "is_stable": self.is_stable,
            "count": self.count,
            "change": self.change,
            "percent_change": self.percent_change,
        }


class StreamingEMA:
    """Incremental EMA over an unbounded stream of values."""

    _TIMING_WINDOW = 1000

    def __init__(self, period: int, alpha: Optional[float] = None) -> None:
        validate_config(period, alpha)
        self.period = period
        self.alpha = alpha if alpha is not None else smoothing_factor(period)
        self.reset()

    def reset(self) -> None:
        self.current = 0.0
        self.count = 0
        self._buffer: List[float] = []
        self._initialized = False
        self._update_times: List[float] = []
        self._started = time.perf_counter()

    @property
    def is_stable(self) -> bool:
        return self._initialized

    def update(self, value: float) -> StreamingEMAUpdate:
        t0 = time.perf_counter()
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            raise EMAError("Invalid input value: must be a finite number", "INVALID_INPUT")

        previous = self.current
        if not self._initialized:
            self._buffer.append(float(value))
            new = sum(self._buffer) / len(self._buffer)
            if len(self._buffer) >= self.period:
                self._initialized = True
        else:
            new = self.alpha * value + (1 - self.alpha) * self.current

        self.current = new
        self.count += 1
        change = new - previous

        self._update_times.append(time.perf_counter() - t0)
        if len(self._update_times) > self._TIMING_WINDOW:
            self._update_times.pop(0)

        return StreamingEMAUpdate(
            value=new,
            is_stable=self._initialized,
            count=self.count,
            change=change,
            percent_change=change / previous * 100 if previous else 0.0,
        )

    def batch_update(self, values: Sequence[float]) -> List[StreamingEMAUpdate]:
        validate_values(values)
        return [self.update(v) for v in values]

    @classmethod
    def from_batch(cls, values: Sequence[float], period: int, alpha: Optional[float] = None) -> "StreamingEMA":
        validate_values(values)
        ema = cls(period, alpha)
        for v in values:
            ema.update(v)
        return ema

    def update_config(self, period: int, alpha: Optional[float] = None) -> None:
        """Change period/alpha; resets all state."""
        validate_config(period, alpha)
        self.period = period
        self.alpha = alpha if alpha is not None else smoothing_factor(period)
        self.reset()

    def metrics(self) -> Dict[str, float]:
        elapsed = time.perf_counter() - self._started
        times_us = [t * 1e6 for t in self._update_times]
        return {
            "total_updates": self.count,
            "average_update_us": sum(times_us) / len(times_us) if times_us else 0.0,
            "max_update_us": max(times_us, default=0.0),
            "min_update_us": min(times_us, default=0.0),
            "updates_per_second": self.count / elapsed if elapsed > 0 else 0.0,
        }


class MultiPeriodStreamingEMA:
    """Several StreamingEMA instances fed from the same stream."""

    def __init__(self, periods: Sequence[int]) -> None:
        self._emas: Dict[int, StreamingEMA] = {p: StreamingEMA(p) for p in periods}

    @property
    def periods(self) -> List[int]:
        return sorted(self._emas)

    def update_all(self, value: float) -> Dict[int, StreamingEMAUpdate]:
        return {p: ema.update(value) for p, ema in self._emas.items()}

    def current_values(self) -> Dict[int, float]:
        return {p: ema.current for p, ema in self._emas.items()}

    def get(self, period: int) -> Optional[StreamingEMA]:
        return self._emas.get(period)

    def add_period(self, period: int) -> None:
        self._emas[period] = StreamingEMA(period)

    def remove_period(self, period: int) -> bool:
        return self._emas.pop(period, None) is not None

    def reset_all(self) -> None:
        for ema in self._emas.values():
            ema.reset()
