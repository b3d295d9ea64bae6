"""
patterns.py — Rule-based candlestick pattern detectors.

Every detector has the signature `detector(candles, index) -> PatternResult | None`
and looks only at candles up to and including `index`.

Single-candle : Doji, Hammer
Two-candle    : Bullish / Bearish Engulfing
Three-candle  : Three White Soldiers, Three Black Crows, Morning / Evening Star
Complex       : Double Top, Head and Shoulders, Flag Pattern

Usage:
    found = detect_patterns(candles, max_patterns=5, min_confidence=70)
    for p in found:
        print(p.index, p.name, p.confidence)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class PatternResult:
    name: str
    type: str               # "reversal" / "continuation"
    confidence: float       # 0–100
    index: int
    strength: float         # 0–1
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _result(name: str, type_: str, confidence: float, index: int) -> PatternResult:
    return PatternResult(
        name=name,
        type=type_,
        confidence=confidence,
        index=index,
        strength=confidence / 100,
        description=f"{name} pattern detected",
    )


# ─── Single-candle ────────────────────────────────────────────────────────────

def detect_doji(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 0 or index >= len(candles):
        return None
    c = candles[index]
    total = c.high - c.low
    if total <= 0:
        return None
    if abs(c.close - c.open) / total < 0.1:
        return _result("Doji", "reversal", 70, index)
    return None


def detect_hammer(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 0 or index >= len(candles):
        return None
    c = candles[index]
    body = abs(c.close - c.open)
    lower_wick = min(c.open, c.close) - c.low
    upper_wick = c.high - max(c.open, c.close)
    if lower_wick > body * 2 and upper_wick < body * 0.5:
        return _result("Hammer", "reversal", 80, index)
    return None


# ─── Two-candle ───────────────────────────────────────────────────────────────

def detect_engulfing(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 1 or index >= len(candles):
        return None
    prev, curr = candles[index - 1], candles[index]
    prev_bull = prev.close > prev.open
    curr_bull = curr.close > curr.open

    if not prev_bull and curr_bull and curr.open < prev.close and curr.close > prev.open:
        return _result("Bullish Engulfing", "reversal", 85, index)
    if prev_bull and not curr_bull and curr.open > prev.close and curr.close < prev.open:
        return _result("Bearish Engulfing", "reversal", 85, index)
    return None


# ─── Three-candle ─────────────────────────────────────────────────────────────

def detect_three_white_soldiers(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 2 or index >= len(candles):
        return None
    c1, c2, c3 = candles[index - 2], candles[index - 1], candles[index]
    if (all(c.close > c.open for c in (c1, c2, c3))
            and c2.close > c1.close and c3.close > c2.close):
        return _result("Three White Soldiers", "continuation", 75, index)
    return None


def detect_three_black_crows(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 2 or index >= len(candles):
        return None
    c1, c2, c3 = candles[index - 2], candles[index - 1], candles[index]
    if (all(c.close < c.open for c in (c1, c2, c3))
            and c2.close < c1.close and c3.close < c2.close):
        return _result("Three Black Crows", "continuation", 75, index)
    return None


def _small_body(c: Any) -> bool:
    return abs(c.close - c.open) < (c.high - c.low) * 0.3


def detect_morning_star(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 2 or index >= len(candles):
        return None
    c1, c2, c3 = candles[index - 2], candles[index - 1], candles[index]
    if (c1.close < c1.open and _small_body(c2) and c3.close > c3.open
            and c3.close > (c1.open + c1.close) / 2):
        return _result("Morning Star", "reversal", 80, index)
    return None


def detect_evening_star(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    if index < 2 or index >= len(candles):
        return None
    c1, c2, c3 = candles[index - 2], candles[index - 1], candles[index]
    if (c1.close > c1.open and _small_body(c2) and c3.close < c3.open
            and c3.close < (c1.open + c1.close) / 2):
        return _result("Evening Star", "reversal", 80, index)
    return None


# ─── Complex ──────────────────────────────────────────────────────────────────

def detect_double_top(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    lookback = 10
    if index < lookback or index >= len(candles):
        return None
    highs = [c.high for c in candles[index - lookback: index + 1]]
    ceiling = max(highs) * 0.98
    peaks = sum(
        1
        for i in range(1, len(highs) - 1)
        if highs[i] > highs[i - 1] and highs[i] > highs[i + 1] and highs[i] > ceiling
    )
    if peaks >= 2:
        return _result("Double Top", "reversal", 70, index)
    return None


def detect_head_and_shoulders(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    lookback = 15
    if index < lookback or index >= len(candles):
        return None
    highs = [c.high for c in candles[index - lookback: index + 1]]
    peaks = [
        (i, highs[i])
        for i in range(2, len(highs) - 2)
        if highs[i] > max(highs[i - 1], highs[i + 1], highs[i - 2], highs[i + 2])
    ]
    if len(peaks) < 3:
        return None
    ranked = sorted(peaks, key=lambda p: p[1], reverse=True)
    head, left, right = ranked[0], ranked[1], ranked[2]
    if left[0] < head[0] < right[0]:
        return _result("Head and Shoulders", "reversal", 75, index)
    return None


def detect_flag_pattern(candles: Sequence[Any], index: int) -> Optional[PatternResult]:
    lookback = 8
    if index < lookback or index >= len(candles):
        return None
    window = candles[index - lookback: index + 1]
    pole, flag = window[:4], window[4:]
    pole_range = max(c.high for c in pole) - min(c.low for c in pole)
    flag_range = max(c.high for c in flag) - min(c.low for c in flag)
    if flag_range < pole_range * 0.5:
        return _result("Flag Pattern", "continuation", 65, index)
    return None


DETECTORS: Dict[str, Callable[[Sequence[Any], int], Optional[PatternResult]]] = {
    "doji": detect_doji,
    "hammer": detect_hammer,
    "engulfing": detect_engulfing,
    "three_white_soldiers": detect_three_white_soldiers,
    "three_black_crows": detect_three_black_crows,
    "morning_star": detect_morning_star,
    "evening_star": detect_evening_star,
    "double_top": detect_double_top,
    "head_and_shoulders": detect_head_and_shoulders,
    "flag": detect_flag_pattern,
}


# ─── Utilities ────────────────────────────────────────────────────────────────

def is_duplicate(patterns: Sequence[PatternResult], new: PatternResult, index: int) -> bool:
    return any(p.name == new.name and abs(p.index - index) < 3 for p in patterns)


def sort_by_confidence(patterns: List[PatternResult]) -> List[PatternResult]:
    return sorted(patterns, key=lambda p: p.confidence, reverse=True)


def filter_by_confidence(patterns: Sequence[PatternResult], min_confidence: float) -> List[PatternResult]:
    return [p for p in patterns if p.confidence >= min_confidence]


def execute_detector_safely(
    detector: Callable[[Sequence[Any], int], Optional[PatternResult]],
    candles: Sequence[Any],
    index: int,
    name: str,
) -> Optional[PatternResult]:
    try:
        return detector(candles, index)
    except Exception as exc:
        logger.warning(f"Pattern detector {name} failed at index {index}: {exc}")
        return None


def detect_patterns(
    candles: Sequence[Any],
    max_patterns: int = 5,
    min_confidence: float = 60.0,
    lookback: Optional[int] = None,
) -> List[PatternResult]:
    """
    Scan candles with every detector and return the strongest patterns.

    Repeats of the same pattern within 3 candles are collapsed to the
    first occurrence.
    """
    if not candles:
        return []
    start = 0 if lookback is None else max(0, len(candles) - lookback)
    found: List[PatternResult] = []
    for index in range(start, len(candles)):
        for name, detector in DETECTORS.items():
            result = execute_detector_safely(detector, candles, index, name)
            if result is not None and not is_duplicate(found, result, index):
                found.append(result)

    ranked = sort_by_confidence(filter_by_confidence(found, min_confidence))
    logger.debug(f"Detected {len(found)} patterns, returning {min(len(ranked), max_patterns)}")
    return ranked[:max_patterns]
