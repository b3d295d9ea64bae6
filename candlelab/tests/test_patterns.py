"""
Tests for patterns.py and pattern_analysis.py — fixed-threshold detectors,
the detect_patterns scan, and the volatility-adaptive single-candle grading.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

import patterns
from pattern_analysis import (
    PatternSignals,
    VolumeAnalysis,
    analyze_patterns,
    analyze_volume,
    average_range,
    recent_volatility,
    trend_context,
)
from patterns import (
    detect_doji,
    detect_engulfing,
    detect_evening_star,
    detect_flag_pattern,
    detect_hammer,
    detect_morning_star,
    detect_patterns,
    detect_three_black_crows,
    detect_three_white_soldiers,
    execute_detector_safely,
)
from session_store import Candle


def C(o, h, l, c, v=100.0, i=0):
    return Candle(open=o, high=h, low=l, close=c, volume=v, candle_index=i)


DOJI = C(1.0, 1.1, 0.9, 1.005)


# ─── Single / Two-candle ──────────────────────────────────────────────────────

class TestSimpleDetectors:
    def test_doji(self):
        result = detect_doji([DOJI], 0)
        assert result.name == "Doji"
        assert result.type == "reversal"
        assert result.confidence == 70
        assert result.strength == pytest.approx(0.7)

    def test_doji_zero_range(self):
        assert detect_doji([C(1, 1, 1, 1)], 0) is None

    def test_doji_out_of_range(self):
        assert detect_doji([DOJI], 5) is None

    def test_not_doji(self):
        assert detect_doji([C(1.0, 1.1, 0.9, 1.08)], 0) is None

    def test_hammer(self):
        result = detect_hammer([C(1.0, 1.025, 0.9, 1.02)], 0)
        assert result.name == "Hammer"
        assert result.confidence == 80

    def test_bullish_engulfing(self):
        candles = [C(1.05, 1.06, 0.99, 1.0), C(0.99, 1.07, 0.98, 1.06)]
        assert detect_engulfing(candles, 1).name == "Bullish Engulfing"

    def test_bearish_engulfing(self):
        candles = [C(1.0, 1.06, 0.99, 1.05), C(1.06, 1.07, 0.98, 0.99)]
        assert detect_engulfing(candles, 1).name == "Bearish Engulfing"

    def test_engulfing_needs_previous(self):
        assert detect_engulfing([C(1.0, 1.06, 0.99, 1.05)], 0) is None


# ─── Three-candle / Complex ───────────────────────────────────────────────────

class TestMultiCandleDetectors:
    def test_three_white_soldiers(self):
        candles = [C(1.0, 1.02, 0.99, 1.01), C(1.01, 1.03, 1.0, 1.02), C(1.02, 1.04, 1.01, 1.03)]
        result = detect_three_white_soldiers(candles, 2)
        assert result.name == "Three White Soldiers"
        assert result.type == "continuation"

    def test_three_black_crows(self):
        candles = [C(1.03, 1.04, 1.01, 1.02), C(1.02, 1.03, 1.0, 1.01), C(1.01, 1.02, 0.99, 1.0)]
        assert detect_three_black_crows(candles, 2).name == "Three Black Crows"

    def test_morning_star(self):
        candles = [C(1.1, 1.11, 0.99, 1.0), C(1.0, 1.02, 0.98, 1.005), C(1.0, 1.09, 0.99, 1.08)]
        assert detect_morning_star(candles, 2).name == "Morning Star"

    def test_evening_star(self):
        candles = [C(1.0, 1.11, 0.99, 1.1), C(1.1, 1.12, 1.08, 1.105), C(1.1, 1.11, 1.01, 1.02)]
        assert detect_evening_star(candles, 2).name == "Evening Star"

    def test_flag(self):
        pole = [C(1.0 + 0.05 * i, 1.05 + 0.05 * i, 1.0 + 0.05 * i, 1.05 + 0.05 * i) for i in range(4)]
        flag = [C(1.2, 1.21, 1.19, 1.2) for _ in range(5)]
        result = detect_flag_pattern(pole + flag, 8)
        assert result.name == "Flag Pattern"
        assert result.confidence == 65

    def test_complex_need_lookback(self):
        assert detect_flag_pattern([DOJI] * 5, 4) is None


# ─── detect_patterns ──────────────────────────────────────────────────────────

class TestDetectPatterns:
    def test_empty(self):
        assert detect_patterns([]) == []

    def test_duplicates_collapsed(self):
        found = detect_patterns([DOJI] * 10)
        assert [p.index for p in found] == [0, 3, 6, 9]
        assert all(p.name == "Doji" for p in found)

    def test_max_patterns(self):
        assert len(detect_patterns([DOJI] * 10, max_patterns=2)) == 2

    def test_min_confidence_filters(self):
        assert detect_patterns([DOJI] * 10, min_confidence=75) == []

    def test_lookback_limits_scan(self):
        found = detect_patterns([DOJI] * 10, lookback=2)
        assert [p.index for p in found] == [8]

    def test_sorted_by_confidence(self):
        candles = [C(1.05, 1.06, 0.99, 1.0), C(0.99, 1.07, 0.98, 1.06), DOJI]
        found = detect_patterns(candles)
        confidences = [p.confidence for p in found]
        assert confidences == sorted(confidences, reverse=True)
        assert found[0].name == "Bullish Engulfing"

    def test_failing_detector_skipped(self, monkeypatch):
        def boom(candles, index):
            raise RuntimeError("broken")

        monkeypatch.setitem(patterns.DETECTORS, "boom", boom)
        found = detect_patterns([DOJI] * 4)
        assert [p.name for p in found] == ["Doji", "Doji"]

    def test_execute_safely_returns_none(self):
        def boom(candles, index):
            raise ValueError("bad")

        assert execute_detector_safely(boom, [DOJI], 0, "boom") is None

    def test_to_dict(self):
        d = detect_doji([DOJI], 0).to_dict()
        assert d["description"] == "Doji pattern detected"
        assert d["index"] == 0


# ─── pattern_analysis ─────────────────────────────────────────────────────────

def _base_series():
    """Alternating candles with 0.02 range and 0.01 body."""
    out = []
    for i in range(6):
        if i % 2:
            out.append(C(1.005, 1.01, 0.99, 0.995, i=i))
        else:
            out.append(C(0.995, 1.01, 0.99, 1.005, i=i))
    return out


class TestAnalyzePatterns:
    def test_out_of_range(self):
        assert analyze_patterns([DOJI], 3) == PatternSignals()

    def test_three_white_soldiers(self):
        candles = [C(1.0, 1.02, 0.99, 1.01), C(1.01, 1.03, 1.0, 1.02), C(1.02, 1.04, 1.01, 1.03)]
        signal = analyze_patterns(candles, 2)
        assert signal == PatternSignals("Three White Soldiers", 0.85, False, True)

    def test_three_black_crows(self):
        candles = [C(1.03, 1.04, 1.01, 1.02), C(1.02, 1.03, 1.0, 1.01), C(1.01, 1.02, 0.99, 1.0)]
        signal = analyze_patterns(candles, 2)
        assert signal.pattern == "Three Black Crows"
        assert signal.is_continuation is True

    def test_doji_in_context(self):
        candles = _base_series() + [C(1.0, 1.01, 0.99, 1.0001, i=6)]
        signal = analyze_patterns(candles, 6)
        assert signal.pattern == "Doji"
        assert signal.is_reversal is True
        assert 0.5 <= signal.strength <= 0.95

    def test_tiny_candle_ignored(self):
        candles = _base_series() + [C(1.0, 1.001, 0.9995, 1.0, i=6)]
        assert analyze_patterns(candles, 6).pattern is None

    def test_strength_boosted_by_volume(self):
        quiet = _base_series() + [C(1.0, 1.01, 0.99, 1.0001, v=100, i=6)]
        loud = _base_series() + [C(1.0, 1.01, 0.99, 1.0001, v=1000, i=6)]
        assert analyze_patterns(loud, 6).strength > analyze_patterns(quiet, 6).strength

    def test_helpers(self):
        candles = _base_series()
        assert average_range(candles, 5) == pytest.approx(0.02)
        assert recent_volatility(candles[:1], 0) == 0.02
        assert trend_context(candles[:2], 1) == 0.0

    def test_zero_close_skipped_in_volatility(self):
        candles = _base_series() + [C(1.0, 1.01, 0.0, 0.0, i=6), C(1.0, 1.01, 0.99, 1.0001, i=7)]
        assert recent_volatility(candles, 7) >= 0.0
        assert analyze_patterns(candles, 7).strength >= 0.0

    def test_all_zero_closes(self):
        flat = [C(0.0, 0.0, 0.0, 0.0, i=i) for i in range(4)]
        assert recent_volatility(flat, 3) == 0.02
        assert analyze_patterns(flat, 3) == PatternSignals()


class TestAnalyzeVolume:
    def test_empty(self):
        assert analyze_volume([], 0) == VolumeAnalysis()

    def test_short_window(self):
        result = analyze_volume([C(1, 1, 1, 1.5)], 0)
        assert result.volume_weighted_price == 1.5
        assert result.volume_trend == "stable"

    def test_increasing(self):
        candles = [C(1.0 + i * 0.01, 1.01 + i * 0.01, 0.99 + i * 0.01, 1.0 + i * 0.01, v=100 * (i + 1), i=i)
                   for i in range(20)]
        result = analyze_volume(candles, 19)
        assert result.volume_trend == "increasing"
        assert result.on_balance_volume > 0
        assert result.volume_oscillator > 0

    def test_decreasing(self):
        candles = [C(1.0, 1.01, 0.99, 1.0, v=2000 - 100 * i, i=i) for i in range(20)]
        result = analyze_volume(candles, 19)
        assert result.volume_trend == "decreasing"
        assert result.on_balance_volume == 0.0

    def test_vwap_flat(self):
        candles = [C(1.0, 1.0, 1.0, 1.0, v=10) for _ in range(5)]
        assert analyze_volume(candles, 4).volume_weighted_price == pytest.approx(1.0)
