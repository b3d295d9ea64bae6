"""
Tests for data_validator.py — presets, full-series validation, outliers,
duplicates, quality scoring and real-time point checks.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import math
import pytest

from data_validator import (
    HOUR_MS,
    DataValidator,
    MarketDataPoint,
    QualityMetrics,
)
from session_store import Candle


def _points(n, start=1.0, step=0.001, gap=HOUR_MS):
    out = []
    price = start
    for i in range(n):
        out.append(MarketDataPoint(i * gap, price, price * 1.001, price * 0.999, price, 100.0))
        price += step
    return out


# ─── Config ───────────────────────────────────────────────────────────────────

class TestConfig:
    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown validation level"):
            DataValidator("paranoid")

    def test_preset_values(self):
        cfg = DataValidator("strict").get_config()
        assert cfg["max_time_gap_ms"] == 2 * HOUR_MS
        assert cfg["max_price_change"] == 0.10

    def test_overrides(self):
        v = DataValidator("normal", outlier_method="zscore", outlier_threshold=2.0)
        assert v.config.outlier_method == "zscore"
        assert v.config.outlier_threshold == 2.0

    def test_presets_not_mutated(self):
        DataValidator("normal", max_price_change=0.9)
        assert DataValidator("normal").config.max_price_change == 0.20

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown config keys"):
            DataValidator().update_config(foo=1)

    def test_unknown_outlier_method(self):
        with pytest.raises(ValueError, match="outlier method"):
            DataValidator().update_config(outlier_method="dbscan")


# ─── Full Series ──────────────────────────────────────────────────────────────

class TestValidate:
    def test_empty(self):
        report = DataValidator().validate([])
        assert report.is_valid is False
        assert report.quality_score == 0.0
        assert report.errors == ["Data array cannot be empty"]

    def test_insufficient(self):
        report = DataValidator().validate(_points(5), min_points=20)
        assert report.is_valid is False
        assert "Insufficient data" in report.errors[0]

    def test_clean_series(self):
        report = DataValidator().validate(_points(30))
        assert report.is_valid is True
        assert report.errors == []
        assert report.quality_score == pytest.approx(1.0)
        assert report.statistics["meets_completeness"] is True

    def test_non_chronological(self):
        pts = _points(5)
        pts[3], pts[2] = pts[2], pts[3]
        report = DataValidator().validate(pts)
        assert any("Non-chronological" in e for e in report.errors)
        assert "Ensure data is properly sorted by timestamp" in report.suggestions

    def test_inconsistent_ohlc(self):
        pts = _points(5)
        pts[1] = MarketDataPoint(pts[1].timestamp, 1.0, 0.9, 0.95, 1.0, 100)
        report = DataValidator().validate(pts)
        assert "High < Low at index 1" in report.errors
        assert report.is_valid is False

    def test_non_finite_structure(self):
        pts = _points(5)
        pts[2] = MarketDataPoint(pts[2].timestamp, math.nan, 1, 1, 1, 1)
        report = DataValidator().validate(pts)
        assert "Invalid data structure at index 2" in report.errors

    def test_negative_volume(self):
        pts = _points(3)
        pts[0] = MarketDataPoint(0, 1.0, 1.0, 1.0, 1.0, -5)
        assert "Negative volume at index 0" in DataValidator().validate(pts).errors

    def test_strict_flags_large_gap(self):
        pts = _points(3, gap=3 * HOUR_MS)
        report = DataValidator("strict").validate(pts)
        assert any("Large time gap" in e for e in report.errors)
        assert DataValidator("normal").validate(pts).is_valid is True

    def test_strict_flags_price_jump(self):
        pts = _points(3)
        pts[2] = MarketDataPoint(pts[2].timestamp, 1.5, 1.5, 1.5, 1.5, 100)
        assert any("Excessive price change" in e for e in DataValidator("strict").validate(pts).errors)

    def test_relaxed_never_fails(self):
        pts = _points(5)
        pts[1] = MarketDataPoint(pts[1].timestamp, 1.0, 0.9, 0.95, 1.0, 100)
        report = DataValidator("relaxed").validate(pts)
        assert report.is_valid is True
        assert report.errors

    def test_duplicates_reported(self):
        pts = _points(5)
        pts.append(pts[-1])
        report = DataValidator().validate(pts)
        assert report.statistics["duplicates"] == 1
        assert any("duplicate" in s for s in report.suggestions)


# ─── Outliers & Duplicates ────────────────────────────────────────────────────

class TestOutliers:
    values = [10.0, 10.1, 9.9, 10.2, 9.8, 10.0, 10.1, 9.9, 10.0, 50.0]

    def test_needs_ten(self):
        assert DataValidator().detect_outliers([1, 2, 100]) == []

    def test_iqr(self):
        assert DataValidator().detect_outliers(self.values) == [9]

    def test_zscore(self):
        v = DataValidator(outlier_method="zscore", outlier_threshold=2.5)
        assert v.detect_outliers(self.values) == [9]

    def test_zscore_flat(self):
        v = DataValidator(outlier_method="zscore")
        assert v.detect_outliers([1.0] * 12) == []

    def test_modified_zscore(self):
        v = DataValidator(outlier_method="modified_zscore")
        assert v.detect_outliers(self.values) == [9]

    def test_duplicates(self):
        p = MarketDataPoint(1, 1, 1, 1, 1, 1)
        assert DataValidator.detect_duplicates([p, p, MarketDataPoint(2, 1, 1, 1, 1, 1), p]) == [1, 3]


class TestQualityMetrics:
    def test_weighted_overall(self):
        m = QualityMetrics(1, 1, 1, 1, 1)
        assert m.overall() == pytest.approx(1.0)

    def test_partial(self):
        m = QualityMetrics(completeness=1.0)
        assert m.overall() == pytest.approx(0.25)


# ─── Real-time ────────────────────────────────────────────────────────────────

class TestRealtimePoint:
    def test_valid_point(self):
        prev, point = _points(2)
        ok, errors, warnings = DataValidator().validate_realtime_point(point, prev)
        assert ok is True
        assert errors == [] and warnings == []

    def test_invalid_structure(self):
        bad = MarketDataPoint(1, math.inf, 1, 1, 1, 1)
        ok, errors, _ = DataValidator().validate_realtime_point(bad)
        assert ok is False
        assert errors == ["Invalid data point structure"]

    def test_large_change_warning_when_normal(self):
        prev = MarketDataPoint(0, 1.0, 1.0, 1.0, 1.0, 1)
        point = MarketDataPoint(1, 1.5, 1.5, 1.5, 1.5, 1)
        ok, errors, warnings = DataValidator().validate_realtime_point(point, prev)
        assert ok is True
        assert warnings[0].startswith("Large price change detected")

    def test_large_change_error_when_strict(self):
        prev = MarketDataPoint(0, 1.0, 1.0, 1.0, 1.0, 1)
        point = MarketDataPoint(1, 1.5, 1.5, 1.5, 1.5, 1)
        ok, errors, _ = DataValidator("strict").validate_realtime_point(point, prev)
        assert ok is False
        assert errors[0].startswith("Price change exceeds threshold")

    def test_out_of_order(self):
        prev = MarketDataPoint(10, 1, 1, 1, 1, 1)
        point = MarketDataPoint(5, 1, 1, 1, 1, 1)
        ok, errors, _ = DataValidator().validate_realtime_point(point, prev)
        assert "Data points must be in chronological order" in errors

    def test_time_gap_warning(self):
        prev = MarketDataPoint(0, 1, 1, 1, 1, 1)
        point = MarketDataPoint(25 * HOUR_MS, 1, 1, 1, 1, 1)
        _, _, warnings = DataValidator().validate_realtime_point(point, prev)
        assert any("Large time gap" in w for w in warnings)

    def test_from_candle(self):
        p = MarketDataPoint.from_candle(Candle(open=1, high=2, low=0.5, close=1.5, volume=7), 123)
        assert (p.timestamp, p.high, p.volume) == (123, 2, 7)
