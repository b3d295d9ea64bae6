"""
Tests for backtester.py — strategies, synthetic candles, the single-position
replay loop, statistics, strategy comparison and the BacktestRegistry.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import math
import pytest
from datetime import datetime

from backtester import (
    STRATEGY_MAP,
    BacktestConfig,
    Backtester,
    BacktestRegistry,
    BacktestResult,
    EquityPoint,
    Signal,
    Strategy,
    _cli_main,
    candle_time,
    filter_by_date,
    generate_synthetic_candles,
    get_strategy,
    moving_average_strategy,
    rsi_strategy,
    sma,
    window_rsi,
)
from session_store import Candle


def C(o, h, l, c, i=0, dt=None):
    return Candle(open=o, high=h, low=l, close=c, volume=100.0, candle_index=i, candle_datetime=dt)


def _closes(values):
    return [C(v, v + 0.5, v - 0.5, v, i=i) for i, v in enumerate(values)]


def scripted(signals, name="scripted"):
    """Strategy that emits the given {index: Signal} map."""
    def generate(candles, index):
        return signals.get(index)
    return Strategy(name, generate)


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def frictionless():
    return BacktestConfig(initial_capital=10_000.0, commission=0.0, slippage=0.0, risk_per_trade=0.02)


@pytest.fixture
def bt(frictionless):
    return Backtester(frictionless)


@pytest.fixture
def take_profit_candles():
    return [
        C(100, 101, 99, 100, 0, "2026-01-01T00:00:00"),
        C(100, 101, 99, 100, 1, "2026-01-02T00:00:00"),
        C(100, 111, 99, 105, 2, "2026-01-03T00:00:00"),
        C(105, 106, 104, 105, 3, "2026-01-04T00:00:00"),
    ]


@pytest.fixture
def synth():
    return generate_synthetic_candles(300, seed=7)


# ─── Helpers ──────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_sma(self):
        candles = _closes([1, 2, 3, 4])
        assert sma(candles, 3, 2) == pytest.approx(3.5)
        assert sma(candles, 0, 2) == 0.0

    def test_window_rsi_neutral_when_short(self):
        assert window_rsi(_closes([1, 2]), 1, 14) == 50.0

    def test_window_rsi_all_gains(self):
        assert window_rsi(_closes([1, 2, 3, 4]), 3, 3) == 100.0

    def test_candle_time_naive(self):
        assert candle_time(C(1, 1, 1, 1, dt="2026-01-01T08:00:00")) == datetime(2026, 1, 1, 8)

    def test_candle_time_converts_offset(self):
        ts = candle_time(C(1, 1, 1, 1, dt="2026-01-01T02:00:00+02:00"))
        assert ts == datetime(2026, 1, 1, 0)

    def test_candle_time_missing(self):
        assert candle_time(C(1, 1, 1, 1)) is None

    def test_filter_by_date(self, take_profit_candles):
        kept = filter_by_date(take_profit_candles, start=datetime(2026, 1, 2), end=datetime(2026, 1, 3))
        assert [c.candle_index for c in kept] == [1, 2]

    def test_filter_without_bounds_keeps_all(self, take_profit_candles):
        assert len(filter_by_date(take_profit_candles)) == 4

    def test_filter_drops_undated(self):
        assert filter_by_date([C(1, 1, 1, 1)], start=datetime(2026, 1, 1)) == []


# ─── Strategies ───────────────────────────────────────────────────────────────

class TestStrategies:
    def test_ma_needs_fast_below_slow(self):
        with pytest.raises(ValueError):
            moving_average_strategy(fast=5, slow=5)

    def test_ma_buy_on_cross_up(self):
        strat = moving_average_strategy(fast=2, slow=3)
        signal = strat.generate(_closes([10, 10, 10, 10, 13]), 4)
        assert signal.type == "buy"
        assert signal.stop_loss == pytest.approx(13 * 0.98)
        assert signal.take_profit == pytest.approx(13 * 1.04)

    def test_ma_sell_on_cross_down(self):
        strat = moving_average_strategy(fast=2, slow=3)
        assert strat.generate(_closes([10, 10, 10, 10, 7]), 4).type == "sell"

    def test_ma_warmup(self):
        strat = moving_average_strategy(fast=2, slow=3)
        assert strat.generate(_closes([10, 10, 13]), 2) is None

    def test_rsi_buy_on_oversold_exit(self):
        strat = rsi_strategy(period=3)
        signal = strat.generate(_closes([10, 9, 8, 7, 8]), 4)
        assert signal.type == "buy"

    def test_rsi_invalid_period(self):
        with pytest.raises(ValueError):
            rsi_strategy(period=0)

    def test_get_strategy_with_params(self):
        assert get_strategy("ma_crossover", fast=5, slow=10).name == "MA 5/10"

    def test_get_strategy_unknown(self):
        with pytest.raises(ValueError, match="Unknown strategy"):
            get_strategy("martingale")

    def test_strategy_map(self):
        assert set(STRATEGY_MAP) == {"ma_crossover", "rsi"}


# ─── Synthetic Candles ────────────────────────────────────────────────────────

class TestSyntheticCandles:
    def test_deterministic(self):
        a = generate_synthetic_candles(50, seed=1)
        b = generate_synthetic_candles(50, seed=1)
        assert [c.close for c in a] == [c.close for c in b]

    def test_ohlc_valid(self, synth):
        for c in synth:
            assert c.low <= min(c.open, c.close)
            assert c.high >= max(c.open, c.close)
            assert c.close > 0

    def test_continuous_opens(self, synth):
        for prev, cur in zip(synth, synth[1:]):
            assert cur.open == prev.close

    def test_timeframe_spacing(self):
        candles = generate_synthetic_candles(3, timeframe="5m", start=datetime(2026, 1, 5, 8))
        assert [c.candle_datetime for c in candles] == [
            "2026-01-05T08:00:00", "2026-01-05T08:05:00", "2026-01-05T08:10:00",
        ]

    def test_unknown_timeframe(self):
        with pytest.raises(ValueError, match="Unknown timeframe"):
            generate_synthetic_candles(10, timeframe="7m")


# ─── Backtest Loop ────────────────────────────────────────────────────────────

class TestRun:
    def test_take_profit_exit(self, bt, take_profit_candles):
        strat = scripted({1: Signal("buy", 0.8, 0.8, stop_loss=90, take_profit=110)})
        result = bt.run(strat, take_profit_candles)
        assert result.total_trades == 1
        trade = result.trades[0]
        assert trade.side == "long"
        assert trade.quantity == pytest.approx(20.0)
        assert trade.exit_price == pytest.approx(105.0)
        assert trade.pnl == pytest.approx(100.0)
        assert (trade.entry_index, trade.exit_index, trade.holding_bars) == (1, 2, 1)
        assert result.total_return == pytest.approx(0.01)
        assert result.win_rate == 1.0
        assert result.max_drawdown == 0.0

    def test_commission_deducted(self, take_profit_candles):
        bt = Backtester(BacktestConfig(commission=0.001, slippage=0.0))
        strat = scripted({1: Signal("buy", 0.8, 0.8, stop_loss=90, take_profit=110)})
        trade = bt.run(strat, take_profit_candles).trades[0]
        assert trade.commission == pytest.approx(20 * 105 * 0.001)
        assert trade.pnl == pytest.approx(100.0 - 2.1)

    def test_slippage_applied(self, take_profit_candles):
        bt = Backtester(BacktestConfig(commission=0.0, slippage=0.01))
        strat = scripted({1: Signal("buy", 0.8, 0.8, stop_loss=90, take_profit=110)})
        trade = bt.run(strat, take_profit_candles).trades[0]
        assert trade.entry_price == pytest.approx(101.0)
        assert trade.exit_price == pytest.approx(103.95)

    def test_open_position_closed_at_end(self, bt):
        candles = _closes([100, 100, 100, 102])
        strat = scripted({1: Signal("buy", 0.5, 0.5, stop_loss=50, take_profit=200)})
        result = bt.run(strat, candles)
        assert result.total_trades == 1
        assert result.trades[0].exit_index == 3
        assert result.trades[0].pnl == pytest.approx(8.0)

    def test_opposite_signal_reverses(self, bt):
        candles = _closes([100, 100, 101, 99])
        strat = scripted({
            1: Signal("buy", 0.5, 0.5, stop_loss=50, take_profit=200),
            2: Signal("sell", 0.5, 0.5, stop_loss=150, take_profit=10),
        })
        result = bt.run(strat, candles)
        assert [t.side for t in result.trades] == ["long", "short"]
        assert result.trades[1].pnl > 0

    def test_default_stops_when_missing(self, bt):
        candles = _closes([100, 100, 100])
        strat = scripted({1: Signal("buy", 0.5, 0.5)})
        trade = bt.run(strat, candles).trades[0]
        # 2% default stop distance on a 2% risk budget
        assert trade.quantity == pytest.approx(10_000 * 0.02 / 2.0)

    def test_no_trades(self, bt, take_profit_candles):
        result = bt.run(scripted({}), take_profit_candles)
        assert result == BacktestResult(strategy="scripted")

    def test_empty_candles(self, bt):
        with pytest.raises(ValueError, match="Not enough historical data"):
            bt.run(scripted({}), [])

    def test_date_window_excludes_everything(self, bt, take_profit_candles):
        cfg = BacktestConfig(start_date=datetime(2027, 1, 1))
        with pytest.raises(ValueError):
            bt.run(scripted({}), take_profit_candles, cfg)

    def test_invalid_capital(self):
        with pytest.raises(ValueError):
            Backtester(BacktestConfig(initial_capital=0))

    def test_run_by_name(self, synth):
        result = Backtester().run("ma_crossover", synth)
        assert result.strategy == "MA 20/50"

    def test_equity_curve_length(self, bt, synth):
        result = bt.run(get_strategy("rsi"), synth)
        assert len(result.equity_curve) == len(synth) - 1
        assert all(0 <= p.drawdown < 1 for p in result.equity_curve)

    def test_to_dict(self, bt, take_profit_candles):
        strat = scripted({1: Signal("buy", 0.8, 0.8, stop_loss=90, take_profit=110)})
        result = bt.run(strat, take_profit_candles)
        d = result.to_dict(include_curve=False)
        assert "equity_curve" not in d
        assert d["profit_factor"] is None
        assert d["trades"][0]["holding_bars"] == 1
        assert len(result.to_dict()["equity_curve"]) == 3

    def test_to_dict_infinite_ratios(self):
        result = BacktestResult(strategy="x", total_return=0.5, annualized_return=math.inf,
                                calmar_ratio=math.inf, sharpe_ratio=math.nan)
        d = result.to_dict(include_curve=False)
        assert d["total_return"] == 0.5
        assert d["annualized_return"] is None
        assert d["calmar_ratio"] is None
        assert d["sharpe_ratio"] is None


class TestMonthlyReturns:
    def test_buckets_by_month(self):
        curve = [
            EquityPoint("2026-01-01T00:00:00", 100.0, 0.0),
            EquityPoint("2026-01-31T00:00:00", 110.0, 0.0),
            EquityPoint(None, 500.0, 0.0),
            EquityPoint("2026-02-01T00:00:00", 110.0, 0.0),
            EquityPoint("2026-02-28T00:00:00", 99.0, 0.1),
        ]
        months = Backtester.monthly_returns(curve)
        assert [(m.year, m.month) for m in months] == [(2026, 1), (2026, 2)]
        assert months[0].return_ == pytest.approx(0.1)
        assert months[1].return_ == pytest.approx(-0.1)
        assert months[0].to_dict()["return"] == pytest.approx(0.1)


class TestCompareStrategies:
    def test_sorted_by_sharpe(self, synth):
        results = Backtester().compare_strategies(
            [get_strategy("ma_crossover", fast=5, slow=20), get_strategy("rsi")], synth,
        )
        assert len(results) == 2
        assert results[0].sharpe_ratio >= results[1].sharpe_ratio

    def test_failing_strategy_skipped(self, synth):
        def boom(candles, index):
            raise RuntimeError("broken")

        results = Backtester().compare_strategies([Strategy("boom", boom), get_strategy("rsi")], synth)
        assert [r.strategy for r in results] == ["RSI 14"]


# ─── Registry ─────────────────────────────────────────────────────────────────

class TestBacktestRegistry:
    @staticmethod
    def _result(name, sharpe, ret=0.1):
        return BacktestResult(strategy=name, sharpe_ratio=sharpe, total_return=ret,
                              max_drawdown=0.05, win_rate=0.5, total_trades=4)

    def test_store_assigns_ids(self):
        reg = BacktestRegistry()
        first = reg.store(self._result("A", 1.0), 10_000, 500)
        second = reg.store(self._result("B", 2.0), 10_000, 500)
        assert (first.record_id, second.record_id) == ("BT-000001", "BT-000002")
        assert first.final_capital == pytest.approx(11_000)
        assert reg.get("BT-000002") is second
        assert reg.count() == 2

    def test_query(self):
        reg = BacktestRegistry()
        reg.store(self._result("A", 0.5), 1000, 100)
        reg.store(self._result("A", 1.5), 1000, 100)
        reg.store(self._result("B", 2.5), 1000, 100)
        assert len(reg.query(strategy="A")) == 2
        assert [r.strategy for r in reg.query(min_sharpe=1.0)] == ["A", "B"]

    def test_best(self):
        reg = BacktestRegistry()
        reg.store(self._result("A", 0.5), 1000, 100)
        reg.store(self._result("B", 2.5), 1000, 100)
        assert reg.best().strategy == "B"
        assert BacktestRegistry().best() is None

    def test_best_unknown_metric(self):
        with pytest.raises(ValueError, match="Unknown metric"):
            BacktestRegistry().best(metric="luck")

    def test_summary(self):
        reg = BacktestRegistry()
        assert reg.summary() == {"count": 0}
        reg.store(self._result("A", 1.0), 1000, 100)
        reg.store(self._result("B", 3.0), 1000, 100)
        s = reg.summary()
        assert s["count"] == 2
        assert s["avg_sharpe"] == pytest.approx(2.0)
        assert s["max_sharpe"] == 3.0

    def test_clear_resets_counter(self):
        reg = BacktestRegistry()
        reg.store(self._result("A", 1.0), 1000, 100)
        reg.clear()
        assert reg.store(self._result("A", 1.0), 1000, 100).record_id == "BT-000001"

    def test_to_dict_rounded(self):
        record = BacktestRegistry().store(self._result("A", 1.234567), 1000, 100)
        assert record.to_dict()["sharpe_ratio"] == 1.2346


# ─── CLI ──────────────────────────────────────────────────────────────────────

class TestCli:
    def test_single_run(self, capsys):
        _cli_main(["--candles", "200", "--strategy", "rsi", "--register"])
        out = capsys.readouterr().out
        assert "Backtest Results | strategy=RSI 14" in out
        assert "Stored in BacktestRegistry as BT-000001" in out

    def test_compare(self, capsys):
        _cli_main(["--candles", "200", "--compare"])
        assert "Strategy Comparison" in capsys.readouterr().out
