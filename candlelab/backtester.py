"""
backtester.py — Single-position strategy backtester over OHLCV candles.

Replays candles against a signal-generating strategy and computes:
  - Per-trade P&L with slippage and commission
  - Equity curve and drawdown
  - Sharpe ratio (annualised), Calmar and recovery factors
  - Win rate / profit factor
  - Monthly returns

Usage:
    bt = Backtester()
    candles = generate_synthetic_candles(500, seed=42)
    result = bt.run(get_strategy("ma_crossover"), candles, BacktestConfig())
    print(result.sharpe_ratio, result.max_drawdown)
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from loguru import logger

from performance import (
    annualize_return,
    json_safe,
    profit_factor,
    sharpe_ratio,
    simple_returns,
)
from session_store import TIMEFRAME_DELTAS, Candle


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class Signal:
    type: str                       # "buy" or "sell"
    strength: float                 # 0–1
    confidence: float               # 0–1
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


@dataclass
class Strategy:
    name: str
    generate: Callable[[Sequence[Any], int], Optional[Signal]]


@dataclass
class BacktestConfig:
    initial_capital: float = 10_000.0
    commission: float = 0.001
    slippage: float = 0.0005
    max_positions: int = 1
    risk_per_trade: float = 0.02
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class Trade:
    """A closed position."""
    side: str           # "long" or "short"
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float
    commission: float
    slippage: float
    entry_index: int
    exit_index: int
    entry_date: Optional[str] = None
    exit_date: Optional[str] = None

    @property
    def holding_bars(self) -> int:
        return self.exit_index - self.entry_index

    @property
    def is_winner(self) -> bool:
        return self.pnl > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "commission": self.commission,
            "slippage": self.slippage,
            "entry_index": self.entry_index,
            "exit_index": self.exit_index,
            "entry_date": self.entry_date,
            "exit_date": self.exit_date,
            "holding_bars": self.holding_bars,
        }


@dataclass
class EquityPoint:
    date: Optional[str]
    equity: float
    drawdown: float     # fraction of peak


@dataclass
class MonthlyReturn:
    year: int
    month: int
    return_: float

    def to_dict(self) -> Dict[str, Any]:
        return {"year": self.year, "month": self.month, "return": self.return_}


@dataclass
class BacktestResult:
    strategy: str = ""
    total_return: float = 0.0
    annualized_return: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_trades: int = 0
    avg_trade_return: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    calmar_ratio: float = 0.0
    recovery_factor: float = 0.0
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    monthly_returns: List[MonthlyReturn] = field(default_factory=list)

    def to_dict(self, include_curve: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "strategy": self.strategy,
            "total_return": json_safe(self.total_return),
            "annualized_return": json_safe(self.annualized_return),
            "max_drawdown": self.max_drawdown,
            "sharpe_ratio": json_safe(self.sharpe_ratio),
            "win_rate": self.win_rate,
            "profit_factor": json_safe(self.profit_factor),
            "total_trades": self.total_trades,
            "avg_trade_return": self.avg_trade_return,
            "best_trade": self.best_trade,
            "worst_trade": self.worst_trade,
            "calmar_ratio": json_safe(self.calmar_ratio),
            "recovery_factor": json_safe(self.recovery_factor),
            "trades": [t.to_dict() for t in self.trades],
            "monthly_returns": [m.to_dict() for m in self.monthly_returns],
        }
        if include_curve:
            out["equity_curve"] = [
                {"date": p.date, "equity": p.equity, "drawdown": p.drawdown}
                for p in self.equity_curve
            ]
        return out


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _to_naive(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def candle_time(candle: Any) -> Optional[datetime]:
    """Parsed candle_datetime (naive UTC), or None if the candle has none."""
    raw = getattr(candle, "candle_datetime", None)
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return _to_naive(raw)
    return _to_naive(datetime.fromisoformat(raw))


def filter_by_date(
    candles: Sequence[Any],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Any]:
    """Candles inside [start, end]; undated candles are dropped once a bound is set."""
    if start is None and end is None:
        return list(candles)
    start = _to_naive(start) if start else None
    end = _to_naive(end) if end else None
    kept = []
    for c in candles:
        ts = candle_time(c)
        if ts is None:
            continue
        if (start is None or ts >= start) and (end is None or ts <= end):
            kept.append(c)
    return kept


def sma(candles: Sequence[Any], index: int, period: int) -> float:
    if index < period - 1:
        return 0.0
    return sum(c.close for c in candles[index - period + 1: index + 1]) / period


def window_rsi(candles: Sequence[Any], index: int, period: int) -> float:
    """Simple-average RSI over the `period` changes ending at index."""
    if index < period:
        return 50.0
    gains = losses = 0.0
    for i in range(index - period + 1, index + 1):
        change = candles[i].close - candles[i - 1].close
        if change > 0:
            gains += change
        else:
            losses -= change
    if losses == 0:
        return 100.0
    rs = (gains / period) / (losses / period)
    return 100 - 100 / (1 + rs)


# ─── Strategies ───────────────────────────────────────────────────────────────

def moving_average_strategy(fast: int = 20, slow: int = 50) -> Strategy:
    """Fast/slow SMA crossover."""
    if fast <= 0 or slow <= fast:
        raise ValueError("need 0 < fast < slow")

    def generate(candles: Sequence[Any], index: int) -> Optional[Signal]:
        if index < slow:
            return None
        fast_ma, slow_ma = sma(candles, index, fast), sma(candles, index, slow)
        prev_fast, prev_slow = sma(candles, index - 1, fast), sma(candles, index - 1, slow)
        close = candles[index].close
        if prev_fast <= prev_slow and fast_ma > slow_ma:
            return Signal("buy", 0.7, 0.6, close * 0.98, close * 1.04)
        if prev_fast >= prev_slow and fast_ma < slow_ma:
            return Signal("sell", 0.7, 0.6, close * 1.02, close * 0.96)
        return None

    return Strategy(f"MA {fast}/{slow}", generate)


def rsi_strategy(period: int = 14, overbought: float = 70, oversold: float = 30) -> Strategy:
    """Buy on a cross back above oversold, sell on a cross back below overbought."""
    if period <= 0:
        raise ValueError("period must be positive")

    def generate(candles: Sequence[Any], index: int) -> Optional[Signal]:
        if index < period + 1:
            return None
        rsi = window_rsi(candles, index, period)
        prev = window_rsi(candles, index - 1, period)
        close = candles[index].close
        if prev < oversold <= rsi:
            return Signal("buy", 0.8, 0.7, close * 0.97, close * 1.05)
        if prev > overbought >= rsi:
            return Signal("sell", 0.8, 0.7, close * 1.03, close * 0.95)
        return None

    return Strategy(f"RSI {period}", generate)


STRATEGY_MAP: Dict[str, Callable[..., Strategy]] = {
    "ma_crossover": moving_average_strategy,
    "rsi": rsi_strategy,
}


def get_strategy(name: str, **params: Any) -> Strategy:
    if name not in STRATEGY_MAP:
        raise ValueError(f"Unknown strategy '{name}'. Choose: {list(STRATEGY_MAP)}")
    return STRATEGY_MAP[name](**params)


# ─── Synthetic data ───────────────────────────────────────────────────────────

def generate_synthetic_candles(
    n: int = 500,
    start_price: float = 100.0,
    volatility: float = 0.02,
    drift: float = 0.0005,
    seed: Optional[int] = 42,
    timeframe: str = "1d",
    start: Optional[datetime] = None,
) -> List[Candle]:
    """GBM candles with valid OHLC relationships and datetimes."""
    if timeframe not in TIMEFRAME_DELTAS:
        raise ValueError(f"Unknown timeframe '{timeframe}'. Choose: {list(TIMEFRAME_DELTAS)}")
    rng = random.Random(seed)
    step = TIMEFRAME_DELTAS[timeframe]
    t0 = start or datetime(2026, 1, 1)
    candles: List[Candle] = []
    price = start_price
    for i in range(n):
        close = max(price * math.exp(rng.gauss(drift, volatility)), 0.01)
        high = close * (1 + abs(rng.gauss(0, volatility / 2)))
        low = close * (1 - abs(rng.gauss(0, volatility / 2)))
        candles.append(Candle(
            open=price,
            high=max(price, close, high),
            low=min(price, close, low),
            close=close,
            volume=rng.uniform(1e5, 1e7),
            candle_index=i,
            candle_datetime=(t0 + step * i).isoformat(),
        ))
        price = close
    logger.debug(f"Generated {len(candles)} synthetic {timeframe} candles")
    return candles


# ─── Backtester ───────────────────────────────────────────────────────────────

@dataclass
class _OpenPosition:
    side: str
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    entry_index: int
    entry_date: Optional[str]


class Backtester:
    """
    Simulates one strategy holding at most one position at a time.

    Args:
        config: Default BacktestConfig used when run() is not given one.
    """

    def __init__(self, config: Optional[BacktestConfig] = None) -> None:
        self.config = config or BacktestConfig()
        if self.config.initial_capital <= 0:
            raise ValueError("initial_capital must be positive")

    # ── Core backtest loop ─────────────────────────────────────────────────────

    def run(
        self,
        strategy: Union[Strategy, str],
        candles: Sequence[Any],
        config: Optional[BacktestConfig] = None,
    ) -> BacktestResult:
        """Replay candles with the given strategy."""
        if isinstance(strategy, str):
            strategy = get_strategy(strategy)
        config = config or self.config
        if config.initial_capital <= 0:
            raise ValueError("initial_capital must be positive")

        data = filter_by_date(candles, config.start_date, config.end_date)
        if not data:
            raise ValueError("Not enough historical data for a backtest")
        logger.info(f"Running backtest {strategy.name}: {len(data)} candles")

        trades: List[Trade] = []
        curve: List[EquityPoint] = []
        equity = config.initial_capital
        peak = equity
        position: Optional[_OpenPosition] = None

        for i in range(1, len(data)):
            candle = data[i]
            signal = strategy.generate(data[: i + 1], i)

            if position is not None and self._should_close(position, candle, signal):
                trade = self._close(position, candle, i, config)
                trades.append(trade)
                equity += trade.pnl
                position = None

            if position is None and signal is not None and len(trades) < config.max_positions * 100:
                position = self._open(signal, candle, i, equity, config)

            peak = max(peak, equity)
            drawdown = (peak - equity) / peak if peak > 0 else 0.0
            curve.append(EquityPoint(getattr(candle, "candle_datetime", None), equity, drawdown))

        if position is not None:
            trade = self._close(position, data[-1], len(data) - 1, config)
            trades.append(trade)
            equity += trade.pnl

        result = self._results(strategy.name, trades, curve, config)
        logger.info(
            f"Backtest complete: {result.total_trades} trades, strategy={strategy.name}, "
            f"return={result.total_return:+.4f}"
        )
        return result

    @staticmethod
    def _should_close(position: _OpenPosition, candle: Any, signal: Optional[Signal]) -> bool:
        if position.side == "long":
            if candle.low <= position.stop_loss or candle.high >= position.take_profit:
                return True
        else:
            if candle.high >= position.stop_loss or candle.low <= position.take_profit:
                return True
        if signal is not None:
            held = "buy" if position.side == "long" else "sell"
            return signal.type != held
        return False

    @staticmethod
    def _open(
        signal: Signal,
        candle: Any,
        index: int,
        equity: float,
        config: BacktestConfig,
    ) -> Optional[_OpenPosition]:
        is_buy = signal.type == "buy"
        entry = candle.close * (1 + config.slippage if is_buy else 1 - config.slippage)
        stop_loss = signal.stop_loss or entry * (0.98 if is_buy else 1.02)
        take_profit = signal.take_profit or entry * (1.04 if is_buy else 0.96)
        risk_per_unit = abs(entry - stop_loss)
        if risk_per_unit <= 0:
            logger.debug(f"Skipping signal at {index}: stop loss equals entry")
            return None
        return _OpenPosition(
            side="long" if is_buy else "short",
            entry_price=entry,
            quantity=equity * config.risk_per_trade / risk_per_unit,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_index=index,
            entry_date=getattr(candle, "candle_datetime", None),
        )

    @staticmethod
    def _close(position: _OpenPosition, candle: Any, index: int, config: BacktestConfig) -> Trade:
        is_long = position.side == "long"
        exit_price = candle.close * (1 - config.slippage if is_long else 1 + config.slippage)
        commission = position.quantity * exit_price * config.commission
        if is_long:
            pnl = (exit_price - position.entry_price) * position.quantity - commission
        else:
            pnl = (position.entry_price - exit_price) * position.quantity - commission
        notional = position.entry_price * position.quantity
        return Trade(
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            pnl=pnl,
            pnl_percent=pnl / notional if notional else 0.0,
            commission=commission,
            slippage=abs(exit_price - candle.close),
            entry_index=position.entry_index,
            exit_index=index,
            entry_date=position.entry_date,
            exit_date=getattr(candle, "candle_datetime", None),
        )

    # ── Statistics ────────────────────────────────────────────────────────────

    def _results(
        self,
        name: str,
        trades: List[Trade],
        curve: List[EquityPoint],
        config: BacktestConfig,
    ) -> BacktestResult:
        if not trades:
            return BacktestResult(strategy=name)

        pnls = [t.pnl for t in trades]
        total_pnl = sum(pnls)
        total_return = total_pnl / config.initial_capital
        annualized = annualize_return(total_return, len(curve))
        max_dd = max((p.drawdown for p in curve), default=0.0)
        returns = simple_returns([p.equity for p in curve])

        return BacktestResult(
            strategy=name,
            total_return=total_return,
            annualized_return=annualized,
            max_drawdown=max_dd,
            sharpe_ratio=sharpe_ratio(returns),
            win_rate=sum(1 for p in pnls if p > 0) / len(pnls),
            profit_factor=profit_factor(pnls),
            total_trades=len(trades),
            avg_trade_return=total_pnl / len(trades),
            best_trade=max(pnls),
            worst_trade=min(pnls),
            calmar_ratio=annualized / max_dd if max_dd else 0.0,
            recovery_factor=total_return / max_dd if max_dd else 0.0,
            trades=trades,
            equity_curve=curve,
            monthly_returns=self.monthly_returns(curve),
        )

    @staticmethod
    def monthly_returns(curve: Sequence[EquityPoint]) -> List[MonthlyReturn]:
        """(last − first) / first equity per calendar month, in curve order."""
        months: Dict[tuple, List[float]] = {}
        for point in curve:
            if point.date is None:
                continue
            ts = datetime.fromisoformat(point.date)
            bucket = months.setdefault((ts.year, ts.month), [point.equity, point.equity])
            bucket[1] = point.equity
        return [
            MonthlyReturn(year, month, (end - start) / start if start else 0.0)
            for (year, month), (start, end) in months.items()
        ]

    def compare_strategies(
        self,
        strategies: Sequence[Strategy],
        candles: Sequence[Any],
        config: Optional[BacktestConfig] = None,
    ) -> List[BacktestResult]:
        """Run each strategy on the same candles; best Sharpe first."""
        results: List[BacktestResult] = []
        for strategy in strategies:
            try:
                results.append(self.run(strategy, candles, config))
            except Exception as exc:
                logger.warning(f"Strategy {strategy.name} failed: {exc}")
        return sorted(results, key=lambda r: r.sharpe_ratio, reverse=True)


# ─── Backtest Registry ────────────────────────────────────────────────────────

@dataclass
class BacktestRecord:
    """Stored summary of a completed backtest run."""
    record_id: str
    strategy: str
    candles: int
    initial_capital: float
    final_capital: float
    total_return: float
    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    total_trades: int
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "strategy": self.strategy,
            "candles": self.candles,
            "initial_capital": round(self.initial_capital, 4),
            "final_capital": round(self.final_capital, 4),
            "total_return": round(self.total_return, 6),
            "sharpe_ratio": round(self.sharpe_ratio, 4),
            "max_drawdown": round(self.max_drawdown, 6),
            "win_rate": round(self.win_rate, 4),
            "total_trades": self.total_trades,
            "timestamp": self.timestamp,
        }


class BacktestRegistry:
    """
    In-memory registry of backtest results.

      - store(result, ...) → records result with unique ID
      - get(record_id) → retrieve by ID
      - query(strategy=..., min_sharpe=...) → filter records
      - best(metric="sharpe_ratio") → find top performer
    """

    VALID_METRICS = {"sharpe_ratio", "win_rate", "total_return", "final_capital", "total_trades"}

    def __init__(self) -> None:
        self._records: Dict[str, BacktestRecord] = {}
        self._counter: int = 0

    def store(
        self,
        result: BacktestResult,
        initial_capital: float,
        candles: int,
    ) -> BacktestRecord:
        """Store a backtest result and return the registry record."""
        self._counter += 1
        record_id = f"BT-{self._counter:06d}"
        record = BacktestRecord(
            record_id=record_id,
            strategy=result.strategy,
            candles=candles,
            initial_capital=initial_capital,
            final_capital=initial_capital * (1 + result.total_return),
            total_return=result.total_return,
            sharpe_ratio=result.sharpe_ratio,
            max_drawdown=result.max_drawdown,
            win_rate=result.win_rate,
            total_trades=result.total_trades,
        )
        self._records[record_id] = record
        logger.info(
            f"BacktestRegistry: stored {record_id} "
            f"strategy={result.strategy} sharpe={result.sharpe_ratio:.3f}"
        )
        return record

    def get(self, record_id: str) -> Optional[BacktestRecord]:
        return self._records.get(record_id)

    def query(
        self,
        strategy: Optional[str] = None,
        min_sharpe: Optional[float] = None,
    ) -> List[BacktestRecord]:
        """Filter registry records by strategy name and/or minimum Sharpe."""
        results = list(self._records.values())
        if strategy:
            results = [r for r in results if r.strategy == strategy]
        if min_sharpe is not None:
            results = [r for r in results if r.sharpe_ratio >= min_sharpe]
        return results

    def best(
        self,
        metric: str = "sharpe_ratio",
        strategy: Optional[str] = None,
    ) -> Optional[BacktestRecord]:
        """Return the record with the highest value for the given metric."""
        if metric not in self.VALID_METRICS:
            raise ValueError(f"Unknown metric {metric!r}. Choose: {sorted(self.VALID_METRICS)}")
        records = self.query(strategy=strategy)
        if not records:
            return None
        return max(records, key=lambda r: getattr(r, metric))

    def worst(
        self,
        metric: str = "max_drawdown",
        strategy: Optional[str] = None,
    ) -> Optional[BacktestRecord]:
        """Return the record with the deepest drawdown (or highest value of metric)."""
        records = self.query(strategy=strategy)
        if not records:
            return None
        return max(records, key=lambda r: getattr(r, metric))

    def all_records(self) -> List[BacktestRecord]:
        """All stored records, newest first."""
        return sorted(self._records.values(), key=lambda r: r.timestamp, reverse=True)

    def count(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records.clear()
        self._counter = 0
        logger.info("BacktestRegistry: cleared all records")

    def summary(self) -> Dict[str, float]:
        records = list(self._records.values())
        if not records:
            return {"count": 0}
        sharpes = [r.sharpe_ratio for r in records]
        drawdowns = [r.max_drawdown for r in records]
        win_rates = [r.win_rate for r in records]
        return {
            "count": len(records),
            "avg_sharpe": sum(sharpes) / len(sharpes),
            "max_sharpe": max(sharpes),
            "avg_drawdown": sum(drawdowns) / len(drawdowns),
            "max_drawdown": max(drawdowns),
            "avg_win_rate": sum(win_rates) / len(win_rates),
        }


# ─── CLI Entry Point ──────────────────────────────────────────────────────────

def _cli_main(argv: Optional[List[str]] = None) -> None:
    """
    Command-line interface for running backtests.

    Usage:
        python backtester.py --candles 500 --strategy ma_crossover
        python backtester.py --candles 1000 --compare
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="CandleLab — Backtester CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--candles", type=int, default=500, help="Number of synthetic candles")
    parser.add_argument(
        "--strategy",
        default="ma_crossover",
        choices=list(STRATEGY_MAP.keys()),
        help="Trading strategy to backtest",
    )
    parser.add_argument("--capital", type=float, default=10_000.0, help="Initial capital")
    parser.add_argument("--volatility", type=float, default=0.02, help="Simulated volatility")
    parser.add_argument("--drift", type=float, default=0.0005, help="Simulated price drift")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--register", action="store_true", help="Store result in BacktestRegistry")
    parser.add_argument("--compare", action="store_true", help="Compare all strategies")

    args = parser.parse_args(argv)

    config = BacktestConfig(initial_capital=args.capital)
    bt = Backtester(config)
    candles = generate_synthetic_candles(
        args.candles, volatility=args.volatility, drift=args.drift, seed=args.seed,
    )

    if args.compare:
        print(f"\n{'='*60}")
        print(f"Strategy Comparison | {args.candles} candles")
        print(f"{'='*60}")
        results = bt.compare_strategies([factory() for factory in STRATEGY_MAP.values()], candles)
        for r in results:
            print(
                f"{r.strategy:20s}  sharpe={r.sharpe_ratio:6.3f}  "
                f"dd={r.max_drawdown:6.2%}  "
                f"wr={r.win_rate:4.1%}  "
                f"ret={r.total_return:+7.2%}"
            )
        print()
        return

    result = bt.run(get_strategy(args.strategy), candles)

    print(f"\n{'='*60}")
    print(f"Backtest Results | strategy={result.strategy} | {args.candles} candles")
    print(f"{'='*60}")
    print(f"  Initial capital  : {args.capital:,.2f}")
    print(f"  Final capital    : {args.capital * (1 + result.total_return):,.2f}")
    print(f"  Total return     : {result.total_return:+.2%}")
    print(f"  Annualized       : {result.annualized_return:+.2%}")
    print(f"  Sharpe ratio     : {result.sharpe_ratio:.4f}")
    print(f"  Max drawdown     : {result.max_drawdown:.2%}")
    print(f"  Win rate         : {result.win_rate:.1%}")
    print(f"  Total trades     : {result.total_trades}")
    print(f"  Profit factor    : {result.profit_factor:.2f}")
    print()

    if args.register:
        registry = BacktestRegistry()
        record = registry.store(result, args.capital, len(candles))
        print(f"Stored in BacktestRegistry as {record.record_id}")


if __name__ == "__main__":
    _cli_main()
