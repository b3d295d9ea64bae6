"""
data_validator.py — Quality checks for market data series.

Validates a chronological list of MarketDataPoint records and scores its
quality on five axes (completeness, consistency, accuracy, timeliness,
uniqueness). Three presets trade strictness for tolerance:

    strict   — 2h max gap, 10% max move, gaps/moves are errors
    normal   — 24h max gap, 20% max move
    relaxed  — 7d max gap, 50% max move, never fails validation

Usage:
    validator = DataValidator("normal")
    report = validator.validate(points, min_points=20)
    if not report.is_valid:
        logger.warning(report.errors)
"""

from __future__ import annotations

import math
import statistics
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger


HOUR_MS = 60 * 60 * 1000

OUTLIER_METHODS = ("iqr", "zscore", "modified_zscore")

QUALITY_WEIGHTS: Dict[str, float] = {
    "completeness": 0.25,
    "consistency": 0.25,
    "accuracy": 0.20,
    "timeliness": 0.15,
    "uniqueness": 0.15,
}


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class MarketDataPoint:
    timestamp: float        # epoch milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_candle(cls, candle: Any, timestamp: float) -> "MarketDataPoint":
        return cls(timestamp, candle.open, candle.high, candle.low, candle.close, candle.volume)


@dataclass
class ValidationConfig:
    level: str = "normal"
    max_time_gap_ms: float = 24 * HOUR_MS
    max_price_change: float = 0.20
    min_completeness: float = 0.95
    outlier_method: str = "iqr"
    outlier_threshold: float = 3.0


PRESETS: Dict[str, ValidationConfig] = {
    "strict": ValidationConfig("strict", 2 * HOUR_MS, 0.10, 0.98, "iqr", 2.5),
    "normal": ValidationConfig("normal", 24 * HOUR_MS, 0.20, 0.95, "iqr", 3.0),
    "relaxed": ValidationConfig("relaxed", 7 * 24 * HOUR_MS, 0.50, 0.80, "iqr", 4.0),
}


@dataclass
class QualityMetrics:
    completeness: float = 0.0
    consistency: float = 0.0
    accuracy: float = 0.0
    timeliness: float = 0.0
    uniqueness: float = 0.0

    def overall(self) -> float:
        return sum(getattr(self, name) * w for name, w in QUALITY_WEIGHTS.items())


@dataclass
class ValidationReport:
    is_valid: bool
    errors: List[str]
    quality_score: float
    suggestions: List[str] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _finite(*values: Any) -> bool:
    return all(
        isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
        for v in values
    )


def _is_valid_point(p: Any) -> bool:
    return p is not None and _finite(p.timestamp, p.open, p.high, p.low, p.close, p.volume)


def _ohlc_consistent(p: MarketDataPoint) -> bool:
    return p.high >= p.low and p.high >= max(p.open, p.close) and p.low <= min(p.open, p.close)


# ─── DataValidator ────────────────────────────────────────────────────────────

class DataValidator:
    """Validate market data against a preset or custom configuration."""

    def __init__(self, level: str = "normal", **overrides: Any) -> None:
        if level not in PRESETS:
            raise ValueError(f"Unknown validation level '{level}'. Choose: {list(PRESETS)}")
        self.config = replace(PRESETS[level])
        if overrides:
            self.update_config(**overrides)

    def update_config(self, **changes: Any) -> None:
        known = {f.name for f in fields(ValidationConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown config keys {sorted(unknown)}. Choose: {sorted(known)}")
        if "outlier_method" in changes and changes["outlier_method"] not in OUTLIER_METHODS:
            raise ValueError(f"Unknown outlier method. Choose: {list(OUTLIER_METHODS)}")
        self.config = replace(self.config, **changes)

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)

    # ── Full Series ────────────────────────────────────────────────────────

    def validate(self, data: Sequence[MarketDataPoint], min_points: int = 1) -> ValidationReport:
        if not data:
            return ValidationReport(False, ["Data array cannot be empty"], 0.0,
                                    ["Provide at least one data point"])
        if len(data) < min_points:
            return ValidationReport(
                False,
                [f"Insufficient data: need at least {min_points} points, got {len(data)}"],
                0.0,
                [f"Collect more historical data (minimum {min_points} points required)"],
            )

        structure_errors = self._validate_structure(data)
        valid = [p for p in data if _is_valid_point(p)]
        time_errors = self._validate_timestamps(valid)
        price_errors = self._validate_prices(valid)
        volume_errors = self._validate_volumes(valid)
        outliers = self.detect_outliers([p.close for p in valid])
        duplicates = self.detect_duplicates(valid)

        errors = structure_errors + time_errors + price_errors + volume_errors
        suggestions: List[str] = []
        if outliers:
            suggestions.append(f"Found {len(outliers)} potential outliers - consider data smoothing")
        if duplicates:
            suggestions.append(f"Found {len(duplicates)} duplicate entries - remove duplicates")
        if time_errors:
            suggestions.append("Ensure data is properly sorted by timestamp")

        metrics = self._quality_metrics(valid, len(data), len(outliers), len(duplicates), len(errors))
        score = metrics.overall()
        is_valid = not errors or self.config.level == "relaxed"
        if not is_valid:
            logger.debug(f"Validation failed with {len(errors)} errors (score={score:.3f})")

        return ValidationReport(
            is_valid=is_valid,
            errors=errors,
            quality_score=score,
            suggestions=suggestions,
            statistics={
                "data_points": len(data),
                "completeness": metrics.completeness,
                "meets_completeness": metrics.completeness >= self.config.min_completeness,
                "duplicates": len(duplicates),
                "outliers": len(outliers),
            },
        )

    def _validate_structure(self, data: Sequence[MarketDataPoint]) -> List[str]:
        errors = []
        for i, p in enumerate(data):
            if not _is_valid_point(p):
                errors.append(f"Invalid data structure at index {i}")
                if len(errors) >= 10:
                    break
        return errors

    def _validate_timestamps(self, data: Sequence[MarketDataPoint]) -> List[str]:
        errors = []
        for i in range(1, len(data)):
            gap = data[i].timestamp - data[i - 1].timestamp
            if gap <= 0:
                errors.append(f"Non-chronological data at index {i}")
            if gap > self.config.max_time_gap_ms and self.config.level == "strict":
                errors.append(f"Large time gap at index {i}: {gap:.0f}ms")
        return errors

    def _validate_prices(self, data: Sequence[MarketDataPoint]) -> List[str]:
        errors = []
        for i, p in enumerate(data):
            if p.high < p.low:
                errors.append(f"High < Low at index {i}")
            if p.high < max(p.open, p.close):
                errors.append(f"High price inconsistent at index {i}")
            if p.low > min(p.open, p.close):
                errors.append(f"Low price inconsistent at index {i}")
            if min(p.open, p.high, p.low, p.close) <= 0:
                errors.append(f"Non-positive prices at index {i}")
            if i > 0 and data[i - 1].close > 0 and self.config.level == "strict":
                change = abs(p.close - data[i - 1].close) / data[i - 1].close
                if change > self.config.max_price_change:
                    errors.append(f"Excessive price change at index {i}: {change * 100:.2f}%")
        return errors

    @staticmethod
    def _validate_volumes(data: Sequence[MarketDataPoint]) -> List[str]:
        return [f"Negative volume at index {i}" for i, p in enumerate(data) if p.volume < 0]

    # ── Outliers & Duplicates ──────────────────────────────────────────────

    def detect_outliers(self, values: Sequence[float]) -> List[int]:
        """Indices of outlying values; needs at least 10 values."""
        if len(values) < 10:
            return []
        method = self.config.outlier_method
        threshold = self.config.outlier_threshold

        if method == "iqr":
            ordered = sorted(values)
            q1 = ordered[int(len(ordered) * 0.25)]
            q3 = ordered[int(len(ordered) * 0.75)]
            iqr = q3 - q1
            lo, hi = q1 - 1.5 * iqr, q3 + 1.5 * iqr
            return [i for i, v in enumerate(values) if v < lo or v > hi]

        if method == "zscore":
            mean = statistics.fmean(values)
            sd = statistics.pstdev(values)
            if sd == 0:
                return []
            return [i for i, v in enumerate(values) if abs((v - mean) / sd) > threshold]

        median = statistics.median(values)
        mad = statistics.median([abs(v - median) for v in values])
        if mad == 0:
            return []
        return [i for i, v in enumerate(values) if abs(0.6745 * (v - median) / mad) > threshold]

    @staticmethod
    def detect_duplicates(data: Sequence[MarketDataPoint]) -> List[int]:
        seen = set()
        duplicates = []
        for i, p in enumerate(data):
            key = (p.timestamp, p.open, p.high, p.low, p.close, p.volume)
            if key in seen:
                duplicates.append(i)
            else:
                seen.add(key)
        return duplicates

    # ── Quality ────────────────────────────────────────────────────────────

    @staticmethod
    def _quality_metrics(
        data: Sequence[MarketDataPoint],
        total: int,
        outliers: int,
        duplicates: int,
        errors: int,
    ) -> QualityMetrics:
        consistent = sum(1 for p in data if _ohlc_consistent(p))
        timely = sum(1 for i in range(1, len(data)) if data[i].timestamp > data[i - 1].timestamp)
        return QualityMetrics(
            completeness=max(0.0, 1 - errors / total),
            consistency=consistent / total,
            accuracy=max(0.0, 1 - outliers / total),
            timeliness=timely / (len(data) - 1) if len(data) > 1 else 1.0,
            uniqueness=max(0.0, 1 - duplicates / total),
        )

    # ── Real-time ──────────────────────────────────────────────────────────

    def validate_realtime_point(
        self,
        point: MarketDataPoint,
        previous: Optional[MarketDataPoint] = None,
    ) -> Tuple[bool, List[str], List[str]]:
        """Check one incoming point; returns (is_valid, errors, warnings)."""
        errors: List[str] = []
        warnings: List[str] = []
        if not _is_valid_point(point):
            return False, ["Invalid data point structure"], warnings

        if point.high < point.low:
            errors.append("High price cannot be lower than low price")
        if point.high < max(point.open, point.close):
            errors.append("High price must be greater than or equal to open and close")
        if point.low > min(point.open, point.close):
            errors.append("Low price must be less than or equal to open and close")

        if previous is not None and _is_valid_point(previous):
            if previous.close:
                change = abs(point.close - previous.close) / previous.close
                if change > self.config.max_price_change:
                    message = f"{change * 100:.2f}%"
                    if self.config.level == "strict":
                        errors.append(f"Price change exceeds threshold: {message}")
                    else:
                        warnings.append(f"Large price change detected: {message}")
            gap = point.timestamp - previous.timestamp
            if gap > self.config.max_time_gap_ms:
                warnings.append(f"Large time gap detected: {gap:.0f}ms")
            if gap <= 0:
                errors.append("Data points must be in chronological order")

        if point.volume < 0:
            errors.append("Volume cannot be negative")
        return not errors, errors, warnings
