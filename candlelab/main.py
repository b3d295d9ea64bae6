#!/usr/bin/env python3
"""
main.py — CandleLab entry point.

Commands:
    serve     Run the FastAPI service with uvicorn
    backtest  Backtest a strategy on synthetic candles and print the stats
    demo      Build an in-memory session and print indicators, patterns
              and predictions for its last candle

Usage:
    python main.py serve [--host 0.0.0.0] [--port 8000]
    python main.py backtest [--strategy rsi] [--candles 500] [--seed 42]
    python main.py demo [--candles 120]

Environment:
    CANDLELAB_* variables (see config.py); a local .env file is loaded first.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from loguru import logger

from backtester import STRATEGY_MAP, BacktestConfig, Backtester, generate_synthetic_candles, get_strategy
from config import Settings
from factors import build_prediction
from indicators import calculate_all
from neural_predictor import NeuralPredictor
from patterns import detect_patterns
from prediction_engine import PredictionEngine
from session_store import SessionStore


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="7 days",
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        )


# ─── Commands ─────────────────────────────────────────────────────────────────

def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from api_server import app, build_services, set_services

    set_services(build_services(settings))
    host = args.host or settings.api_host
    port = args.port or settings.api_port
    logger.info(f"Starting CandleLab API on {host}:{port} (db={settings.db_path})")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def cmd_backtest(args: argparse.Namespace, settings: Settings) -> int:
    config = BacktestConfig(initial_capital=args.capital)
    candles = generate_synthetic_candles(args.candles, seed=args.seed)
    result = Backtester(config).run(get_strategy(args.strategy), candles)

    print(f"\n{'='*60}")
    print(f"Backtest Results | strategy={result.strategy} | {args.candles} candles")
    print(f"{'='*60}")
    print(f"  Initial capital  : {args.capital:,.2f}")
    print(f"  Final capital    : {args.capital * (1 + result.total_return):,.2f}")
    print(f"  Total return     : {result.total_return:+.2%}")
    print(f"  Sharpe ratio     : {result.sharpe_ratio:.4f}")
    print(f"  Max drawdown     : {result.max_drawdown:.2%}")
    print(f"  Win rate         : {result.win_rate:.1%}")
    print(f"  Total trades     : {result.total_trades}")
    print()
    return 0


def cmd_demo(args: argparse.Namespace, settings: Settings) -> int:
    """Walk one synthetic session through the analytics stack."""
    store = SessionStore(":memory:")
    session = store.create_session("Demo session", "EURUSD", "5m", "2026-01-05", "08:00")
    for c in generate_synthetic_candles(
        args.candles, start_price=1.1, volatility=0.002, drift=0.0, seed=settings.random_seed,
        timeframe="5m",
    ):
        store.save_candle(session.id, c.candle_index, c.open, c.high, c.low, c.close, c.volume)
    candles = store.get_candles(session.id)
    idx = len(candles) - 1
    logger.info(f"Demo session {session.id} loaded with {len(candles)} candles")

    tech = calculate_all(candles, idx)
    print(f"\n{'='*60}")
    print(f"Session {session.session_name} | {session.pair} {session.timeframe} | {len(candles)} candles")
    print(f"{'='*60}")
    print(f"  Last close       : {candles[-1].close:.5f}")
    print(f"  RSI              : {tech.rsi:.2f}")
    print(f"  MACD histogram   : {tech.macd['histogram']:+.6f}")
    print(f"  Bollinger        : {tech.bollinger['lower']:.5f} .. {tech.bollinger['upper']:.5f}")
    print(f"  ADX              : {tech.adx:.2f}")

    found = detect_patterns(candles)
    print(f"\n  Patterns ({len(found)}):")
    for p in found:
        print(f"    {p.name:24s} {p.type:12s} conf={p.confidence:.0f} @ {p.index}")

    print("\n  Predictions:")
    ensemble = PredictionEngine().generate(candles, idx, 5)
    neural = NeuralPredictor(seed=settings.random_seed).predict(candles, idx, 5)
    rule_based = build_prediction(candles, idx, 5)
    for name, result in (
        ("ensemble", ensemble.result if ensemble else None),
        ("neural", neural),
        ("rule_based", rule_based),
    ):
        if result is None:
            print(f"    {name:12s} not enough candles")
            continue
        print(
            f"    {name:12s} {result.direction:4s} p={result.probability:5.1f}% "
            f"conf={result.confidence:5.1f}%"
        )
    print()
    store.close()
    return 0


# ─── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CandleLab — candle analytics toolkit")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind host (default: CANDLELAB_API_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: CANDLELAB_API_PORT)")
    serve.set_defaults(func=cmd_serve)

    backtest = sub.add_parser("backtest", help="Backtest a strategy on synthetic candles")
    backtest.add_argument("--strategy", default="ma_crossover", choices=list(STRATEGY_MAP.keys()))
    backtest.add_argument("--candles", type=int, default=500, help="Number of synthetic candles")
    backtest.add_argument("--capital", type=float, default=10_000.0, help="Initial capital")
    backtest.add_argument("--seed", type=int, default=42, help="Random seed")
    backtest.set_defaults(func=cmd_backtest)

    demo = sub.add_parser("demo", help="Analyse a synthetic in-memory session")
    demo.add_argument("--candles", type=int, default=120, help="Number of candles to generate")
    demo.set_defaults(func=cmd_demo)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_file)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
