"""
market_data.py — Historical candle feed for backtests and session imports.

Provides OHLCV candles from the Binance public klines endpoint (no API key)
with:
- Candle caching (300s TTL) to avoid rate limits
- Stale-cache, then synthetic fallback when the API is unreachable
- Synthetic random-walk candles for testing / offline mode
- Schema and quality checks (DataValidator) on every import

Usage:
    adapter = MarketDataAdapter()
    candles = await adapter.fetch_candles("BTCUSDT", "1h", limit=500)
    adapter.import_into_session(store, session.id, candles)
    report = adapter.quality_report(store.get_candles(session.id))
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from loguru import logger

from backtester import candle_time
from data_validator import DataValidator, MarketDataPoint, ValidationReport
from sanitizer import VALID_INTERVALS, CandleValidationError, validate_candle_schema
from session_store import TIMEFRAME_DELTAS, Candle, SessionStore


# ─── Constants ────────────────────────────────────────────────────────────────

BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
CACHE_TTL_SECONDS = 300.0
DEFAULT_TIMEOUT = 5.0
MAX_LIMIT = 1000
CRYPTO_QUOTES = ("USDT", "BUSD", "BTC", "ETH")
SYNTHETIC_VOLATILITY = 0.002
QUALITY_WARNING_SCORE = 0.8

# Base prices for synthetic fallback, matched by substring of the symbol
SYNTHETIC_BASE_PRICES: List[Tuple[str, float]] = [
    ("BTC", 50000.0),
    ("ETH", 3000.0),
    ("GBP", 1.3),
]
DEFAULT_BASE_PRICE = 1.1


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass
class CandleCacheEntry:
    """Cached candle series with TTL."""
    candles: List[Candle]
    source: str
    cached_at: float = field(default_factory=time.time)

    def is_fresh(self, ttl: float = CACHE_TTL_SECONDS) -> bool:
        return (time.time() - self.cached_at) < ttl


def is_crypto_symbol(symbol: str) -> bool:
    return symbol.upper().endswith(CRYPTO_QUOTES)


def synthetic_base_price(symbol: str) -> float:
    upper = symbol.upper()
    for key, price in SYNTHETIC_BASE_PRICES:
        if key in upper:
            return price
    return DEFAULT_BASE_PRICE


def parse_kline(symbol: str, index: int, kline: Sequence[Any]) -> Candle:
    """One Binance kline row → Candle (open time becomes candle_datetime)."""
    opened = datetime.fromtimestamp(int(kline[0]) / 1000, tz=timezone.utc)
    return Candle(
        open=float(kline[1]),
        high=float(kline[2]),
        low=float(kline[3]),
        close=float(kline[4]),
        volume=float(kline[5]),
        candle_index=index,
        session_id=f"historical:{symbol}",
        candle_datetime=opened.replace(tzinfo=None).isoformat(),
    )


def to_data_points(candles: Sequence[Candle]) -> List[MarketDataPoint]:
    """Candles stamped in epoch ms; undated candles fall back to their index."""
    points = []
    for c in candles:
        opened = candle_time(c)
        if opened is None:
            stamp = float(c.candle_index)
        else:
            stamp = opened.replace(tzinfo=timezone.utc).timestamp() * 1000
        points.append(MarketDataPoint.from_candle(c, stamp))
    return points


# ─── Market Data Adapter ──────────────────────────────────────────────────────


class MarketDataAdapter:
    """
    Fetch historical candles.

    Prioritizes Binance for crypto pairs; everything else (and every failed
    request) is served from cache or synthetic data. use_synthetic=True
    skips the network entirely (for testing).
    """

    def __init__(
        self,
        use_synthetic: bool = False,
        cache_ttl: float = CACHE_TTL_SECONDS,
        http_timeout: float = DEFAULT_TIMEOUT,
        seed: Optional[int] = None,
        validation_level: str = "normal",
    ):
        self.use_synthetic = use_synthetic
        self.cache_ttl = cache_ttl
        self.http_timeout = http_timeout
        self.seed = seed
        self.validator = DataValidator(validation_level)
        self._cache: Dict[Tuple[str, str, int], CandleCacheEntry] = {}

    # ─── Public API ──────────────────────────────────────────────────────────

    async def fetch_candles(self, symbol: str, interval: str, limit: int = 500) -> List[Candle]:
        """
        Fetch up to `limit` candles for symbol/interval, oldest first.

        Uses cache if fresh; calls Binance for crypto symbols otherwise.
        Falls back to stale cache, then synthetic, if the API call fails.
        """
        if interval not in VALID_INTERVALS:
            raise ValueError(f"Unknown interval '{interval}'. Choose: {list(VALID_INTERVALS)}")
        if limit < 1:
            raise ValueError("limit must be at least 1")
        symbol = symbol.upper()
        limit = min(limit, MAX_LIMIT)
        key = (symbol, interval, limit)

        cached = self._cache.get(key)
        if cached and cached.is_fresh(self.cache_ttl):
            logger.debug("Cache hit for {} {} ({} candles)", symbol, interval, len(cached.candles))
            return cached.candles

        if self.use_synthetic or not is_crypto_symbol(symbol):
            candles = self.synthetic_candles(symbol, interval, limit, self.seed)
            self._cache_candles(key, candles, "synthetic")
            return candles

        # Try live API
        try:
            candles = await self._fetch_binance_klines(symbol, interval, limit)
            self.quality_report(candles)
            self._cache_candles(key, candles, "binance")
            return candles
        except Exception as exc:
            if cached:
                logger.warning("Binance fetch failed for {}: {}. Using stale cache.", symbol, exc)
                return cached.candles
            logger.warning("Binance fetch failed for {}: {}. Using synthetic.", symbol, exc)
            candles = self.synthetic_candles(symbol, interval, limit, self.seed)
            self._cache_candles(key, candles, "synthetic")
            return candles

    def get_cached(self, symbol: str, interval: str, limit: int = 500) -> Optional[List[Candle]]:
        """Return cached candles without fetching (None if not cached or stale)."""
        cached = self._cache.get((symbol.upper(), interval, min(limit, MAX_LIMIT)))
        if cached and cached.is_fresh(self.cache_ttl):
            return cached.candles
        return None

    def cache_source(self, symbol: str, interval: str, limit: int = 500) -> Optional[str]:
        """'binance' or 'synthetic' for a cached series, None if absent."""
        cached = self._cache.get((symbol.upper(), interval, min(limit, MAX_LIMIT)))
        return cached.source if cached else None

    def invalidate_cache(self, symbol: Optional[str] = None) -> None:
        """Invalidate cache entries for symbol (or all if None)."""
        if symbol:
            for key in [k for k in self._cache if k[0] == symbol.upper()]:
                del self._cache[key]
        else:
            self._cache.clear()

    def import_into_session(
        self,
        store: SessionStore,
        session_id: str,
        candles: Sequence[Candle],
        start_index: Optional[int] = None,
    ) -> int:
        """
        Save candles into a session at consecutive indices.

        Every candle must pass the strict schema check before anything is
        written; a failing batch raises CandleValidationError and saves
        nothing. Starts after the session's last candle unless start_index
        is given. Returns the number of candles saved.
        """
        errors: List[str] = []
        for offset, c in enumerate(candles):
            try:
                validate_candle_schema({
                    "open": c.open, "high": c.high, "low": c.low, "close": c.close, "volume": c.volume,
                })
            except CandleValidationError as exc:
                errors.extend(f"Candle {offset}: {e}" for e in exc.errors)
        if errors:
            logger.warning(f"Rejected import into session {session_id}: {len(errors)} schema errors")
            raise CandleValidationError(errors)

        if candles:
            self.quality_report(candles)
        index = store.next_candle_index(session_id) if start_index is None else start_index
        for offset, c in enumerate(candles):
            store.save_candle(
                session_id, index + offset, c.open, c.high, c.low, c.close, c.volume, c.spread
            )
        logger.info(f"Imported {len(candles)} candles into session {session_id} from index {index}")
        return len(candles)

    def quality_report(
        self,
        candles: Sequence[Candle],
        validator: Optional[DataValidator] = None,
        min_points: int = 1,
    ) -> ValidationReport:
        """Run the DataValidator over a candle series and log poor results."""
        report = (validator or self.validator).validate(to_data_points(candles), min_points)
        if not report.is_valid:
            logger.warning(
                f"Candle data failed validation ({len(report.errors)} errors): {report.errors[:3]}"
            )
        elif report.quality_score < QUALITY_WARNING_SCORE:
            logger.warning(f"Low candle data quality: score={report.quality_score:.3f}")
        else:
            logger.debug(f"Candle data quality score={report.quality_score:.3f}")
        return report

    # ─── Binance API ─────────────────────────────────────────────────────────

    async def _fetch_binance_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """Call Binance klines endpoint."""
        params = {"symbol": symbol, "interval": interval, "limit": limit}
        async with httpx.AsyncClient(timeout=self.http_timeout) as client:
            resp = await client.get(BINANCE_KLINES_URL, params=params)
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, list) or not data:
            raise ValueError(f"Binance returned no klines for '{symbol}': {data}")

        candles = [parse_kline(symbol, i, row) for i, row in enumerate(data)]
        logger.debug("Binance {} {} → {} candles", symbol, interval, len(candles))
        return candles

    # ─── Synthetic Data ───────────────────────────────────────────────────────

    @staticmethod
    def synthetic_candles(
        symbol: str,
        interval: str,
        limit: int,
        seed: Optional[int] = None,
        end: Optional[datetime] = None,
    ) -> List[Candle]:
        """
        Random walk around the symbol's base price.

        Each close moves at most ±0.2% from its open; wicks extend up to
        0.1% beyond the body, so every candle satisfies low ≤ open/close ≤ high.
        """
        if interval not in TIMEFRAME_DELTAS:
            raise ValueError(f"Unknown interval '{interval}'. Choose: {list(TIMEFRAME_DELTAS)}")
        rng = random.Random(seed)
        step = TIMEFRAME_DELTAS[interval]
        end = end or datetime.now(timezone.utc).replace(tzinfo=None, second=0, microsecond=0)
        start = end - step * (limit - 1)

        price = synthetic_base_price(symbol)
        candles = []
        for i in range(limit):
            open_ = price
            close = open_ * (1 + rng.uniform(-SYNTHETIC_VOLATILITY, SYNTHETIC_VOLATILITY))
            high = max(open_, close) * (1 + rng.uniform(0, SYNTHETIC_VOLATILITY / 2))
            low = min(open_, close) * (1 - rng.uniform(0, SYNTHETIC_VOLATILITY / 2))
            candles.append(Candle(
                open=round(open_, 6),
                high=round(high, 6),
                low=round(low, 6),
                close=round(close, 6),
                volume=round(rng.uniform(100, 1000), 2),
                candle_index=i,
                session_id=f"synthetic:{symbol}",
                candle_datetime=(start + step * i).isoformat(),
            ))
            price = close
        logger.debug("Synthetic candles for {} {} → {}", symbol, interval, limit)
        return candles

    # ─── Cache Helpers ────────────────────────────────────────────────────────

    def _cache_candles(self, key: Tuple[str, str, int], candles: List[Candle], source: str) -> None:
        self._cache[key] = CandleCacheEntry(candles=candles, source=source)
