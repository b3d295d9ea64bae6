"""
advanced_backtester.py — Multi-position portfolio backtester with risk analytics.

Where backtester.py holds one position sized by stop distance, this engine
lets a strategy object size, open and exit any number of positions, tracks
cash and mark-to-market equity separately, and reports the full set of
risk-adjusted metrics:

  - Sharpe / Sortino / Calmar / Treynor / information ratio
  - Beta, Jensen alpha and tracking error against an optional benchmark
  - VaR(95), expected shortfall, ulcer index
  - Monthly performance and drawdown periods

Usage:
    engine = AdvancedBacktester()
    result = engine.run(MeanReversionStrategy(), candles, AdvancedBacktestConfig())
    print(result.sortino_ratio, result.value_at_risk_95)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from itertools import count
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from backtester import BacktestConfig, filter_by_date, sma, window_rsi
from performance import (
    annualize_return,
    beta as calc_beta,
    expected_shortfall,
    information_ratio,
    jensen_alpha,
    json_safe,
    max_consecutive,
    mean,
    population_std,
    profit_factor,
    sharpe_ratio,
    simple_returns,
    sortino_ratio,
    tracking_error,
    ulcer_index,
    value_at_risk,
)

RISK_ADJUSTERS = {"low": 1.0, "medium": 0.75, "high": 0.5}
ROLLING_WINDOW = 20


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class AdvancedBacktestConfig(BacktestConfig):
    max_positions: int = 5
    leverage: float = 1.0
    margin_requirement: float = 1.0
    risk_free_rate: float = 0.02
    stop_loss_percent: float = 0.05     # used when a signal carries no stop
    take_profit_percent: float = 0.10


@dataclass
class AdvancedSignal:
    type: str                           # buy / sell / hold
    strength: float = 0.0
    confidence: float = 0.0
    reason: str = ""
    indicators: Dict[str, float] = field(default_factory=dict)
    risk_level: str = "medium"          # low / medium / high
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


@dataclass
class Position:
    id: str
    side: str                           # long / short
    quantity: float
    entry_price: float
    entry_index: int
    entry_date: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_reason: str = ""
    unrealized_pnl: float = 0.0
    max_favorable_excursion: float = 0.0
    max_adverse_excursion: float = 0.0

    @property
    def notional(self) -> float:
        return self.quantity * self.entry_price

    @property
    def market_value(self) -> float:
        return self.notional + self.unrealized_pnl

    def mark(self, price: float) -> None:
        diff = price - self.entry_price
        move = diff if self.side == "long" else -diff
        self.unrealized_pnl = move * self.quantity
        self.max_favorable_excursion = max(self.max_favorable_excursion, move)
        self.max_adverse_excursion = min(self.max_adverse_excursion, move)


@dataclass
class Portfolio:
    cash: float
    positions: List[Position] = field(default_factory=list)
    total_value: float = 0.0
    leverage: float = 0.0
    margin_requirement: float = 1.0

    @property
    def margin_used(self) -> float:
        return sum(p.notional for p in self.positions) * self.margin_requirement

    @property
    def free_margin(self) -> float:
        return self.total_value - self.margin_used

    def positions_value(self) -> float:
        return sum(p.market_value for p in self.positions)

    def revalue(self) -> None:
        self.total_value = self.cash + self.positions_value()
        exposure = sum(abs(p.notional) for p in self.positions)
        self.leverage = exposure / self.total_value if self.total_value > 0 else 1.0


@dataclass
class AdvancedTrade:
    id: str
    side: str
    entry_price: float
    exit_price: float
    quantity: float
    gross_pnl: float
    net_pnl: float
    pnl_percent: float
    commission: float
    slippage: float
    entry_index: int
    exit_index: int
    entry_date: Optional[str]
    exit_date: Optional[str]
    max_favorable_excursion: float
    max_adverse_excursion: float
    entry_reason: str
    exit_reason: str
    risk_reward_ratio: float
    volatility_during_trade: float

    @property
    def holding_bars(self) -> int:
        return self.exit_index - self.entry_index

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "side": self.side,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "gross_pnl": self.gross_pnl,
            "net_pnl": self.net_pnl,
            "pnl_percent": self.pnl_percent,
            "commission": self.commission,
            "slippage": self.slippage,
            "entry_index": self.entry_index,
            "exit_index": self.exit_index,
            "entry_date": self.entry_date,
            "exit_date": self.exit_date,
            "holding_bars": self.holding_bars,
            "max_favorable_excursion": self.max_favorable_excursion,
            "max_adverse_excursion": self.max_adverse_excursion,
            "entry_reason": self.entry_reason,
            "exit_reason": self.exit_reason,
            "risk_reward_ratio": self.risk_reward_ratio,
            "volatility_during_trade": self.volatility_during_trade,
        }


@dataclass
class AdvancedEquityPoint:
    index: int
    date: Optional[str]
    equity: float
    drawdown: float                 # currency below peak
    drawdown_percent: float         # fraction of peak
    rolling_return: float
    rolling_volatility: float
    rolling_sharpe: float
    long_positions: int
    short_positions: int
    cash: float
    leverage: float

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MonthlyPerformance:
    year: int
    month: int
    return_: float
    trades: int
    win_rate: float
    volatility: float
    max_drawdown: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "return": self.return_,
            "trades": self.trades,
            "win_rate": self.win_rate,
            "volatility": self.volatility,
            "max_drawdown": self.max_drawdown,
        }


@dataclass
class DrawdownPeriod:
    start_index: int
    end_index: int
    start_date: Optional[str]
    end_date: Optional[str]
    peak: float
    trough: float
    drawdown: float
    duration: int                   # bars from first decline to recovery
    recovery_time: int              # bars from peak to recovery

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class AdvancedBacktestResult:
    strategy: str = ""
    total_return: float = 0.0
    annualized_return: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_trades: int = 0
    avg_trade_return: float = 0.0
    avg_winning_trade: float = 0.0
    avg_losing_trade: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    information_ratio: float = 0.0
    treynor_ratio: float = 0.0
    jensen_alpha: float = 0.0
    beta: float = 1.0
    tracking_error: float = 0.0
    value_at_risk_95: float = 0.0
    expected_shortfall: float = 0.0
    ulcer_index: float = 0.0
    recovery_factor: float = 0.0
    best_month: float = 0.0
    worst_month: float = 0.0
    avg_monthly_return: float = 0.0
    monthly_win_rate: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    trades: List[AdvancedTrade] = field(default_factory=list)
    equity_curve: List[AdvancedEquityPoint] = field(default_factory=list)
    monthly_performance: List[MonthlyPerformance] = field(default_factory=list)
    drawdown_periods: List[DrawdownPeriod] = field(default_factory=list)

    _DETAIL_FIELDS = ("trades", "equity_curve", "monthly_performance", "drawdown_periods")

    def to_dict(self, include_curve: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, value in self.__dict__.items():
            if name in self._DETAIL_FIELDS:
                continue
            out[name] = json_safe(value) if isinstance(value, float) else value
        out["trades"] = [t.to_dict() for t in self.trades]
        out["monthly_performance"] = [m.to_dict() for m in self.monthly_performance]
        out["drawdown_periods"] = [d.to_dict() for d in self.drawdown_periods]
        if include_curve:
            out["equity_curve"] = [p.to_dict() for p in self.equity_curve]
        return out


# ─── Indicator Helpers ────────────────────────────────────────────────────────

def log_volatility(candles: Sequence[Any], index: int, period: int = 20) -> float:
    """Population std of log returns over the `period` bars ending at index."""
    if index < period:
        return 0.0
    returns = [
        math.log(candles[i].close / candles[i - 1].close)
        for i in range(index - period + 1, index + 1)
        if i > 0 and candles[i - 1].close > 0 and candles[i].close > 0
    ]
    return population_std(returns)


def momentum(candles: Sequence[Any], index: int, period: int) -> float:
    if index < period:
        return 0.0
    return candles[index].close - candles[index - period].close


def average_volume(candles: Sequence[Any], index: int, period: int = 20) -> float:
    if index < period - 1:
        return 0.0
    return sum(c.volume for c in candles[index - period + 1: index + 1]) / period


# ─── Strategies ───────────────────────────────────────────────────────────────

class AdvancedStrategy:
    """Base strategy: never trades, keeps positions until stop/target."""

    name = "Base"
    description = ""

    def __init__(self, **parameters: Any) -> None:
        self.parameters = parameters
        self.config: Optional[AdvancedBacktestConfig] = None

    def initialize(self, config: AdvancedBacktestConfig) -> None:
        self.config = config
        logger.debug(f"Initializing {self.name} with {self.parameters}")

    def generate_signal(
        self,
        candles: Sequence[Any],
        index: int,
        portfolio: Portfolio,
    ) -> Optional[AdvancedSignal]:
        return None

    def position_size(self, signal: AdvancedSignal, portfolio: Portfolio) -> float:
        return portfolio.total_value * 0.02 * signal.confidence

    def should_exit(self, position: Position, price: float, portfolio: Portfolio) -> bool:
        return False

    def on_trade(self, trade: AdvancedTrade) -> None:
        pass

    def on_market_close(self, date: Optional[str], portfolio: Portfolio) -> None:
        pass


class MeanReversionStrategy(AdvancedStrategy):
    """Fade deviations from the SMA when RSI confirms an extreme."""

    name = "Advanced Mean Reversion"
    description = "Mean reversion strategy with RSI and volatility filtering"

    def __init__(
        self,
        lookback: int = 20,
        entry_threshold: float = 0.02,
        exit_threshold: float = 0.01,
        rsi_period: int = 14,
        volatility_filter: bool = True,
    ) -> None:
        if lookback <= 0 or rsi_period <= 0 or entry_threshold <= 0:
            raise ValueError("lookback, rsi_period and entry_threshold must be positive")
        super().__init__(
            lookback=lookback,
            entry_threshold=entry_threshold,
            exit_threshold=exit_threshold,
            rsi_period=rsi_period,
            volatility_filter=volatility_filter,
        )
        self.lookback = lookback
        self.entry_threshold = entry_threshold
        self.exit_threshold = exit_threshold
        self.rsi_period = rsi_period
        self.volatility_filter = volatility_filter

    def generate_signal(self, candles, index, portfolio):
        if index < self.lookback + self.rsi_period:
            return None
        current = candles[index]
        closes = [c.close for c in candles[index - self.lookback: index + 1]]
        average = sum(closes) / len(closes)
        deviation = (current.close - average) / average
        rsi = window_rsi(candles, index, self.rsi_period)
        volatility = log_volatility(candles, index, 20)

        if self.volatility_filter and volatility > 0.03:
            return AdvancedSignal("hold", reason="High volatility filter", risk_level="high")

        indicators = {"deviation": deviation, "rsi": rsi, "volatility": volatility}
        risk = "medium" if volatility > 0.02 else "low"
        if deviation < -self.entry_threshold and rsi < 30:
            return AdvancedSignal(
                "buy",
                strength=abs(deviation) / self.entry_threshold,
                confidence=(30 - rsi) / 30,
                reason="Mean reversion buy signal",
                indicators=indicators,
                risk_level=risk,
                stop_loss=current.close * 0.95,
                take_profit=current.close * 1.05,
            )
        if deviation > self.entry_threshold and rsi > 70:
            return AdvancedSignal(
                "sell",
                strength=deviation / self.entry_threshold,
                confidence=(rsi - 70) / 30,
                reason="Mean reversion sell signal",
                indicators=indicators,
                risk_level=risk,
                stop_loss=current.close * 1.05,
                take_profit=current.close * 0.95,
            )
        return None

    def position_size(self, signal, portfolio):
        adjuster = RISK_ADJUSTERS.get(signal.risk_level, 1.0)
        return portfolio.total_value * 0.02 * signal.confidence * adjuster

    def should_exit(self, position, price, portfolio):
        change = (price - position.entry_price) / position.entry_price
        if position.side == "long":
            return change > self.exit_threshold or change < -0.03
        return change < -self.exit_threshold or change > 0.03


class MomentumStrategy(AdvancedStrategy):
    """MA crossover confirmed by momentum sign and volume."""

    name = "Advanced Momentum"
    description = "Momentum strategy with moving averages and volume confirmation"

    def __init__(
        self,
        fast_ma: int = 10,
        slow_ma: int = 30,
        momentum_period: int = 10,
        volume_filter: bool = True,
        min_volume: float = 0.8,
    ) -> None:
        if fast_ma <= 0 or slow_ma <= fast_ma:
            raise ValueError("need 0 < fast_ma < slow_ma")
        super().__init__(
            fast_ma=fast_ma,
            slow_ma=slow_ma,
            momentum_period=momentum_period,
            volume_filter=volume_filter,
            min_volume=min_volume,
        )
        self.fast_ma = fast_ma
        self.slow_ma = slow_ma
        self.momentum_period = momentum_period
        self.volume_filter = volume_filter
        self.min_volume = min_volume

    def generate_signal(self, candles, index, portfolio):
        if index < max(self.slow_ma, self.momentum_period):
            return None
        current = candles[index]
        fast, slow = sma(candles, index, self.fast_ma), sma(candles, index, self.slow_ma)
        prev_fast, prev_slow = sma(candles, index - 1, self.fast_ma), sma(candles, index - 1, self.slow_ma)
        mom = momentum(candles, index, self.momentum_period)
        avg_volume = average_volume(candles, index, 20)

        if self.volume_filter and current.volume < avg_volume * self.min_volume:
            return AdvancedSignal("hold", reason="Low volume filter")

        volume_ratio = current.volume / avg_volume if avg_volume > 0 else 1.0
        indicators = {"fast_ma": fast, "slow_ma": slow, "momentum": mom, "volume_ratio": volume_ratio}
        if prev_fast <= prev_slow and fast > slow and mom > 0:
            return AdvancedSignal(
                "buy",
                strength=min(1.0, (fast - slow) / slow * 100),
                confidence=min(1.0, volume_ratio),
                reason="Bullish MA crossover with positive momentum",
                indicators=indicators,
                stop_loss=current.close * 0.96,
                take_profit=current.close * 1.08,
            )
        if prev_fast >= prev_slow and fast < slow and mom < 0:
            return AdvancedSignal(
                "sell",
                strength=min(1.0, (slow - fast) / fast * 100),
                confidence=min(1.0, volume_ratio),
                reason="Bearish MA crossover with negative momentum",
                indicators=indicators,
                stop_loss=current.close * 1.04,
                take_profit=current.close * 0.92,
            )
        return None

    def position_size(self, signal, portfolio):
        return portfolio.total_value * 0.05 * signal.strength * signal.confidence

    def should_exit(self, position, price, portfolio):
        return abs((price - position.entry_price) / position.entry_price) > 0.05


ADVANCED_STRATEGY_MAP = {
    "mean_reversion": MeanReversionStrategy,
    "momentum": MomentumStrategy,
}


def get_advanced_strategy(name: str, **params: Any) -> AdvancedStrategy:
    if name not in ADVANCED_STRATEGY_MAP:
        raise ValueError(f"Unknown strategy '{name}'. Choose: {list(ADVANCED_STRATEGY_MAP)}")
    return ADVANCED_STRATEGY_MAP[name](**params)


# ─── Engine ───────────────────────────────────────────────────────────────────

class AdvancedBacktester:
    """Portfolio simulation: cash plus marked-to-market open positions."""

    def __init__(self, config: Optional[AdvancedBacktestConfig] = None) -> None:
        self.config = config or AdvancedBacktestConfig()
        self._ids = count(1)

    def run(
        self,
        strategy: AdvancedStrategy,
        candles: Sequence[Any],
        config: Optional[AdvancedBacktestConfig] = None,
        benchmark: Optional[Sequence[Any]] = None,
    ) -> AdvancedBacktestResult:
        config = config or self.config
        if config.initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        data = filter_by_date(candles, config.start_date, config.end_date)
        if not data:
            raise ValueError("No historical data available for the specified date range")

        logger.info(
            f"Starting advanced backtest {strategy.name}: {len(data)} candles, "
            f"capital={config.initial_capital:,.2f}"
        )
        strategy.initialize(config)
        portfolio = Portfolio(
            cash=config.initial_capital,
            total_value=config.initial_capital,
            margin_requirement=config.margin_requirement,
        )
        trades: List[AdvancedTrade] = []
        curve: List[AdvancedEquityPoint] = []
        peak = config.initial_capital

        for i in range(1, len(data)):
            candle = data[i]
            price = candle.close

            for position in portfolio.positions:
                position.mark(price)
            portfolio.revalue()

            self._check_exits(strategy, portfolio, data, i, config, trades)

            signal = strategy.generate_signal(data[: i + 1], i, portfolio)
            if signal is not None and signal.type in ("buy", "sell"):
                self._execute(signal, data, i, portfolio, config, strategy)

            portfolio.revalue()
            peak = max(peak, portfolio.total_value)
            drawdown = peak - portfolio.total_value
            rolling_return, rolling_vol = self._rolling(curve)
            curve.append(AdvancedEquityPoint(
                index=i,
                date=getattr(candle, "candle_datetime", None),
                equity=portfolio.total_value,
                drawdown=drawdown,
                drawdown_percent=drawdown / peak if peak > 0 else 0.0,
                rolling_return=rolling_return,
                rolling_volatility=rolling_vol,
                rolling_sharpe=rolling_return / rolling_vol if rolling_vol else 0.0,
                long_positions=sum(1 for p in portfolio.positions if p.side == "long"),
                short_positions=sum(1 for p in portfolio.positions if p.side == "short"),
                cash=portfolio.cash,
                leverage=portfolio.leverage,
            ))
            strategy.on_market_close(getattr(candle, "candle_datetime", None), portfolio)

        last = len(data) - 1
        for position in list(portfolio.positions):
            trade = self._close(position, data, last, portfolio, config, "End of backtest")
            trades.append(trade)
            strategy.on_trade(trade)
        portfolio.revalue()

        benchmark_returns = None
        if benchmark is not None:
            bench = filter_by_date(benchmark, config.start_date, config.end_date)
            benchmark_returns = simple_returns([c.close for c in bench])

        result = self._results(strategy.name, trades, curve, config, benchmark_returns)
        logger.info(
            f"Advanced backtest complete: {result.total_trades} trades, "
            f"return={result.total_return:+.4f}, sharpe={result.sharpe_ratio:.3f}"
        )
        return result

    # ── Position handling ──────────────────────────────────────────────────

    def _check_exits(
        self,
        strategy: AdvancedStrategy,
        portfolio: Portfolio,
        data: Sequence[Any],
        index: int,
        config: AdvancedBacktestConfig,
        trades: List[AdvancedTrade],
    ) -> None:
        price = data[index].close
        for position in list(portfolio.positions):
            reason = None
            is_long = position.side == "long"
            if position.stop_loss is not None and (
                (is_long and price <= position.stop_loss) or (not is_long and price >= position.stop_loss)
            ):
                reason = "Stop loss hit"
            elif position.take_profit is not None and (
                (is_long and price >= position.take_profit) or (not is_long and price <= position.take_profit)
            ):
                reason = "Take profit hit"
            elif strategy.should_exit(position, price, portfolio):
                reason = "Strategy exit"
            if reason:
                trade = self._close(position, data, index, portfolio, config, reason)
                trades.append(trade)
                strategy.on_trade(trade)

    def _execute(
        self,
        signal: AdvancedSignal,
        data: Sequence[Any],
        index: int,
        portfolio: Portfolio,
        config: AdvancedBacktestConfig,
        strategy: AdvancedStrategy,
    ) -> Optional[Position]:
        size = strategy.position_size(signal, portfolio)
        if size <= 0:
            return None
        if len(portfolio.positions) >= config.max_positions:
            logger.debug(f"Signal at {index} skipped: {config.max_positions} positions open")
            return None
        is_buy = signal.type == "buy"
        price = data[index].close * (1 + config.slippage if is_buy else 1 - config.slippage)
        commission = size * config.commission
        if portfolio.cash < size + commission:
            logger.debug(f"Signal at {index} skipped: insufficient cash")
            return None
        exposure = sum(p.notional for p in portfolio.positions) + size
        if portfolio.total_value > 0 and exposure / portfolio.total_value > config.leverage:
            logger.debug(f"Signal at {index} skipped: leverage limit {config.leverage}")
            return None

        stop_loss = signal.stop_loss
        take_profit = signal.take_profit
        if stop_loss is None and config.stop_loss_percent:
            stop_loss = price * (1 - config.stop_loss_percent if is_buy else 1 + config.stop_loss_percent)
        if take_profit is None and config.take_profit_percent:
            take_profit = price * (1 + config.take_profit_percent if is_buy else 1 - config.take_profit_percent)

        position = Position(
            id=f"pos-{next(self._ids)}",
            side="long" if is_buy else "short",
            quantity=size / price,
            entry_price=price,
            entry_index=index,
            entry_date=getattr(data[index], "candle_datetime", None),
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_reason=signal.reason or "Strategy signal",
        )
        portfolio.positions.append(position)
        portfolio.cash -= size + commission
        return position

    def _close(
        self,
        position: Position,
        data: Sequence[Any],
        index: int,
        portfolio: Portfolio,
        config: AdvancedBacktestConfig,
        reason: str,
    ) -> AdvancedTrade:
        price = data[index].close
        is_long = position.side == "long"
        exit_price = price * (1 - config.slippage if is_long else 1 + config.slippage)
        commission = position.quantity * exit_price * config.commission
        diff = exit_price - position.entry_price
        gross = (diff if is_long else -diff) * position.quantity
        net = gross - commission

        portfolio.positions.remove(position)
        portfolio.cash += position.notional + net

        closes = [c.close for c in data[position.entry_index: index + 1]]
        return AdvancedTrade(
            id=f"trade-{next(self._ids)}",
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            gross_pnl=gross,
            net_pnl=net,
            pnl_percent=net / position.notional if position.notional else 0.0,
            commission=commission,
            slippage=abs(exit_price - price),
            entry_index=position.entry_index,
            exit_index=index,
            entry_date=position.entry_date,
            exit_date=getattr(data[index], "candle_datetime", None),
            max_favorable_excursion=position.max_favorable_excursion,
            max_adverse_excursion=position.max_adverse_excursion,
            entry_reason=position.entry_reason,
            exit_reason=reason,
            risk_reward_ratio=position.max_favorable_excursion / abs(position.max_adverse_excursion or 1),
            volatility_during_trade=population_std(simple_returns(closes)),
        )

    @staticmethod
    def _rolling(curve: Sequence[AdvancedEquityPoint], period: int = ROLLING_WINDOW):
        """(return, volatility) over the last `period` recorded points."""
        if len(curve) < period:
            return 0.0, 0.0
        recent = [p.equity for p in curve[-period:]]
        rolling_return = (recent[-1] - recent[0]) / recent[0] if recent[0] else 0.0
        return rolling_return, population_std(simple_returns(recent))

    # ── Results ────────────────────────────────────────────────────────────

    def _results(
        self,
        name: str,
        trades: List[AdvancedTrade],
        curve: List[AdvancedEquityPoint],
        config: AdvancedBacktestConfig,
        benchmark_returns: Optional[List[float]],
    ) -> AdvancedBacktestResult:
        if not trades or not curve:
            return AdvancedBacktestResult(strategy=name, equity_curve=curve)

        rf = config.risk_free_rate
        total_return = (curve[-1].equity - config.initial_capital) / config.initial_capital
        annualized = annualize_return(total_return, len(curve))
        returns = simple_returns([p.equity for p in curve])
        max_dd = max(p.drawdown_percent for p in curve)

        pnls = [t.net_pnl for t in trades]
        winners = [p for p in pnls if p > 0]
        losers = [p for p in pnls if p < 0]

        beta_ = 1.0
        alpha = info_ratio = track_err = 0.0
        if benchmark_returns:
            beta_ = calc_beta(returns, benchmark_returns)
            alpha = jensen_alpha(returns, benchmark_returns, beta_, rf)
            info_ratio = information_ratio(returns, benchmark_returns)
            track_err = tracking_error(returns, benchmark_returns)

        monthly = self.monthly_performance(curve, trades)
        month_returns = [m.return_ for m in monthly]

        return AdvancedBacktestResult(
            strategy=name,
            total_return=total_return,
            annualized_return=annualized,
            max_drawdown=max_dd,
            sharpe_ratio=sharpe_ratio(returns, rf),
            sortino_ratio=sortino_ratio(returns, rf),
            calmar_ratio=annualized / max_dd if max_dd else 0.0,
            win_rate=len(winners) / len(trades),
            profit_factor=profit_factor(pnls),
            total_trades=len(trades),
            avg_trade_return=sum(pnls) / len(pnls),
            avg_winning_trade=mean(winners),
            avg_losing_trade=mean(losers),
            largest_win=max(pnls),
            largest_loss=min(pnls),
            information_ratio=info_ratio,
            treynor_ratio=annualized / beta_ if beta_ else 0.0,
            jensen_alpha=alpha,
            beta=beta_,
            tracking_error=track_err,
            value_at_risk_95=value_at_risk(returns, 0.05),
            expected_shortfall=expected_shortfall(returns, 0.05),
            ulcer_index=ulcer_index([p.drawdown_percent for p in curve]),
            recovery_factor=total_return / max_dd if max_dd else 0.0,
            best_month=max(month_returns, default=0.0),
            worst_month=min(month_returns, default=0.0),
            avg_monthly_return=mean(month_returns),
            monthly_win_rate=(
                sum(1 for r in month_returns if r > 0) / len(month_returns) if month_returns else 0.0
            ),
            max_consecutive_wins=max_consecutive(pnls, wins=True),
            max_consecutive_losses=max_consecutive(pnls, wins=False),
            trades=trades,
            equity_curve=curve,
            monthly_performance=monthly,
            drawdown_periods=self.drawdown_periods(curve),
        )

    @staticmethod
    def monthly_performance(
        curve: Sequence[AdvancedEquityPoint],
        trades: Sequence[AdvancedTrade] = (),
    ) -> List[MonthlyPerformance]:
        """Per calendar month: return, closed trades, up-bar rate, volatility, max DD."""
        buckets: Dict[tuple, List[AdvancedEquityPoint]] = {}
        for point in curve:
            if point.date is None:
                continue
            ts = datetime.fromisoformat(point.date)
            buckets.setdefault((ts.year, ts.month), []).append(point)

        trade_counts: Dict[tuple, int] = {}
        for t in trades:
            if t.exit_date is not None:
                ts = datetime.fromisoformat(t.exit_date)
                trade_counts[(ts.year, ts.month)] = trade_counts.get((ts.year, ts.month), 0) + 1

        out = []
        for key, points in buckets.items():
            equities = [p.equity for p in points]
            rets = simple_returns(equities)
            out.append(MonthlyPerformance(
                year=key[0],
                month=key[1],
                return_=(equities[-1] - equities[0]) / equities[0] if equities[0] else 0.0,
                trades=trade_counts.get(key, 0),
                win_rate=sum(1 for r in rets if r > 0) / len(rets) if rets else 0.0,
                volatility=population_std(rets),
                max_drawdown=max(p.drawdown_percent for p in points),
            ))
        return out

    @staticmethod
    def drawdown_periods(curve: Sequence[AdvancedEquityPoint]) -> List[DrawdownPeriod]:
        """Completed peak → trough → new-peak episodes; an unrecovered tail is not reported."""
        periods: List[DrawdownPeriod] = []
        if not curve:
            return periods
        peak = 0.0
        peak_pos = 0
        start_pos = 0
        in_drawdown = False
        for pos, point in enumerate(curve):
            if point.equity > peak:
                if in_drawdown:
                    trough = min(p.equity for p in curve[start_pos: pos + 1])
                    periods.append(DrawdownPeriod(
                        start_index=curve[start_pos].index,
                        end_index=point.index,
                        start_date=curve[start_pos].date,
                        end_date=point.date,
                        peak=peak,
                        trough=trough,
                        drawdown=(peak - trough) / peak if peak else 0.0,
                        duration=point.index - curve[start_pos].index,
                        recovery_time=point.index - curve[peak_pos].index,
                    ))
                    in_drawdown = False
                peak = point.equity
                peak_pos = pos
            elif not in_drawdown and point.equity < peak:
                in_drawdown = True
                start_pos = pos
        return periods
