"""
Tests for indicators.py — scalar indicators, calculate_all snapshots
and the RSIIndicator series / streaming API.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import math
import pytest

from indicators import (
    RSIIndicator,
    TechnicalSnapshot,
    calculate_adx,
    calculate_all,
    calculate_atr,
    calculate_bollinger_bands,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_stochastic,
    ema_array,
    linear_slope,
)
from session_store import Candle


def _flat(n, price=100.0):
    return [Candle(open=price, high=price + 1, low=price - 1, close=price) for _ in range(n)]


def _rising(n, start=100.0, step=1.0):
    out = []
    for i in range(n):
        p = start + i * step
        out.append(Candle(open=p - step / 2, high=p, low=p - step, close=p, candle_index=i))
    return out


def _falling(n, start=200.0, step=1.0):
    out = []
    for i in range(n):
        p = start - i * step
        out.append(Candle(open=p + step / 2, high=p + step, low=p, close=p, candle_index=i))
    return out


# ─── Helpers ──────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_ema_array_seeded_with_first(self):
        out = ema_array([10, 10, 10], 5)
        assert out == [10.0, 10.0, 10.0]

    def test_ema_array_empty(self):
        assert ema_array([], 5) == []

    def test_ema_array_moves_toward_value(self):
        out = ema_array([0, 10], 3)
        assert out[1] == pytest.approx(5.0)

    def test_linear_slope(self):
        assert linear_slope([0, 1, 2, 3]) == pytest.approx(1.0)
        assert linear_slope([5]) == 0.0


# ─── Scalar Indicators ────────────────────────────────────────────────────────

class TestRSI:
    def test_insufficient_is_neutral(self):
        assert calculate_rsi(_rising(10)) == 50.0

    def test_all_gains(self):
        assert calculate_rsi(_rising(30)) == 100.0

    def test_all_losses(self):
        assert calculate_rsi(_falling(30)) == pytest.approx(0.0)

    def test_range(self):
        closes = [100, 102, 101, 103, 102, 104, 103, 105, 104, 106, 105, 107, 106, 108, 107, 109]
        candles = [Candle(open=c, high=c + 1, low=c - 1, close=c) for c in closes]
        assert 0 < calculate_rsi(candles) < 100


class TestMACD:
    def test_flat_is_zero(self):
        macd = calculate_macd(_flat(40))
        assert macd == {"line": 0.0, "signal": 0.0, "histogram": 0.0}

    def test_uptrend_positive_line(self):
        macd = calculate_macd(_rising(40))
        assert macd["line"] > 0
        assert macd["histogram"] == pytest.approx(macd["line"] - macd["signal"])

    def test_empty(self):
        assert calculate_macd([])["line"] == 0.0


class TestBollinger:
    def test_flat_bands_collapse(self):
        bands = calculate_bollinger_bands(_flat(25))
        assert bands["upper"] == bands["middle"] == bands["lower"] == 100.0
        assert bands["percent_b"] == 0.5

    def test_empty(self):
        assert calculate_bollinger_bands([])["middle"] == 0.0

    def test_population_std(self):
        candles = [Candle(open=c, high=c, low=c, close=c) for c in (1.0, 3.0)]
        bands = calculate_bollinger_bands(candles)
        assert bands["middle"] == 2.0
        assert bands["upper"] == pytest.approx(4.0)
        assert bands["lower"] == pytest.approx(0.0)

    def test_uses_last_period(self):
        candles = _flat(10, 50.0) + _flat(20, 100.0)
        assert calculate_bollinger_bands(candles)["middle"] == 100.0


class TestOtherIndicators:
    def test_ema_pair(self):
        ema = calculate_ema(_flat(30))
        assert ema == {"ema12": 100.0, "ema26": 100.0}

    def test_stochastic_insufficient(self):
        assert calculate_stochastic(_flat(5)) == {"k": 50.0, "d": 50.0}

    def test_stochastic_close_at_high(self):
        stoch = calculate_stochastic(_rising(20))
        assert stoch["k"] == pytest.approx(100.0)
        assert stoch["d"] == pytest.approx(100.0)

    def test_stochastic_flat_range(self):
        candles = [Candle(open=1, high=1, low=1, close=1) for _ in range(20)]
        assert calculate_stochastic(candles)["k"] == 50.0

    def test_atr_constant_range(self):
        assert calculate_atr(_flat(10)) == pytest.approx(2.0)

    def test_atr_single(self):
        assert calculate_atr(_flat(1)) == 0.0

    def test_adx_insufficient(self):
        assert calculate_adx(_flat(5)) == 25.0

    def test_adx_strong_trend(self):
        assert calculate_adx(_rising(30)) == pytest.approx(100.0)

    def test_adx_bounded(self):
        candles = _rising(15) + _falling(15, start=114)
        assert 0.0 <= calculate_adx(candles) <= 100.0


class TestCalculateAll:
    def test_empty_defaults(self):
        snap = calculate_all([], 0)
        assert snap == TechnicalSnapshot()
        assert snap.rsi == 50.0
        assert snap.adx == 25.0

    def test_negative_index(self):
        assert calculate_all(_flat(10), -1) == TechnicalSnapshot()

    def test_index_clamped(self):
        candles = _rising(30)
        assert calculate_all(candles, 100) == calculate_all(candles, 29)

    def test_only_past_candles_used(self):
        candles = _rising(30)
        snap_a = calculate_all(candles, 20)
        snap_b = calculate_all(candles[:21] + _falling(9), 20)
        assert snap_a == snap_b

    def test_to_dict_shape(self):
        d = calculate_all(_rising(60), 59).to_dict()
        assert set(d) == {"rsi", "macd", "bollinger", "ema", "stochastic", "atr", "adx"}
        assert set(d["macd"]) == {"line", "signal", "histogram"}
        assert set(d["bollinger"]) == {"upper", "middle", "lower"}


# ─── RSIIndicator ─────────────────────────────────────────────────────────────

class TestRSIIndicator:
    closes = [44.34, 44.09, 44.15, 43.61, 44.33, 44.83, 45.10, 45.42, 45.84,
              46.08, 45.89, 46.03, 45.61, 46.28, 46.28, 46.00, 46.03, 46.41,
              46.22, 45.64]

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            RSIIndicator(period=0)

    def test_invalid_smoothing(self):
        with pytest.raises(ValueError, match="Unknown smoothing"):
            RSIIndicator(smoothing="hull")

    def test_series_padding(self):
        values = RSIIndicator(period=14).series(self.closes)
        assert len(values) == len(self.closes)
        assert all(math.isnan(v) for v in values[:14])
        assert all(0 <= v <= 100 for v in values[14:])

    def test_series_insufficient(self):
        with pytest.raises(ValueError, match="Insufficient data"):
            RSIIndicator(period=14).series(self.closes[:10])

    @pytest.mark.parametrize("smoothing", ["wilder", "ema", "sma"])
    def test_smoothing_methods(self, smoothing):
        values = RSIIndicator(period=5, smoothing=smoothing).series(self.closes)
        assert 0 <= values[-1] <= 100

    def test_classify(self):
        rsi = RSIIndicator()
        assert rsi.classify(75) == "overbought"
        assert rsi.classify(25) == "oversold"
        assert rsi.classify(50) == "neutral"

    def test_analyze(self):
        result = RSIIndicator(period=14).analyze(self.closes)
        assert result.current == result.values[-1]
        assert result.level in {"overbought", "oversold", "neutral"}
        assert result.to_dict()["values"][0] is None

    def test_level_cross(self):
        rsi = RSIIndicator()
        assert rsi.detect_level_cross(72, 68) == {"level": 70, "direction": "up"}
        assert rsi.detect_level_cross(28, 32) == {"level": 30, "direction": "down"}
        assert rsi.detect_level_cross(50, 51) is None

    def test_divergence_needs_points(self):
        assert RSIIndicator().detect_divergence([1, 2], [50, 50]) is None

    def test_bearish_divergence(self):
        closes = [100 + i for i in range(10)]
        rsi_values = [80 - 2 * i for i in range(10)]
        div = RSIIndicator().detect_divergence(closes, rsi_values)
        assert div["type"] == "bearish"
        assert div["strength"] == 1.0

    def test_streaming_requires_init(self):
        with pytest.raises(RuntimeError):
            RSIIndicator().streaming_update(1.0, 0.9)

    def test_streaming_continues_series(self):
        rsi = RSIIndicator(period=14)
        rsi.initialize_streaming(self.closes[:-1])
        streamed = rsi.streaming_update(self.closes[-1], self.closes[-2])
        full = RSIIndicator(period=14).series(self.closes)
        assert streamed == pytest.approx(full[-1])

    def test_reset_streaming(self):
        rsi = RSIIndicator(period=14)
        rsi.initialize_streaming(self.closes)
        rsi.reset_streaming()
        with pytest.raises(RuntimeError):
            rsi.streaming_update(1, 1)
