"""
sanitizer.py — Input sanitization and candle validation for CandleLab.

Everything that enters a session (names, currency pairs, OHLCV values typed
by hand) passes through here before it reaches the store:
  - HTML escaping and script/handler stripping for free-text fields
  - Numeric parsing with clamping and rounding
  - OHLC relationship checks shared by the store and the API

Usage:
    name = sanitize_session_name("  <b>Morning</b> EURUSD ")
    errors = validate_candle_fields(open_=1.1, high=1.2, low=1.0, close=1.15, volume=10)
    if errors:
        raise CandleValidationError(errors)
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, List

from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

VALID_INTERVALS = ("1m", "5m", "15m", "30m", "1h", "4h", "1d")

MAX_PRICE = 1_000_000.0

HTML_ESCAPES: Dict[str, str] = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)
_DANGEROUS_BLOCKS = [
    re.compile(r"<script\b.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<iframe\b.*?</iframe>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<object\b.*?</object>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<embed\b[^>]*>", re.IGNORECASE),
]
_DIGITS = re.compile(r"\d")
_SPECIAL = re.compile(r"[^\w\s.\-]")
_NON_NUMERIC = re.compile(r"[^\d.\-]")


# ─── Exceptions ───────────────────────────────────────────────────────────────


class SanitizationError(ValueError):
    """Raised when an input cannot be coerced into a safe value."""


class CandleValidationError(SanitizationError):
    """Raised when OHLCV values violate the candle invariants."""

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid candle")


# ─── Strings ──────────────────────────────────────────────────────────────────


def escape_html(text: Any) -> str:
    """Replace HTML-significant characters with entities."""
    if not isinstance(text, str):
        text = str(text)
    return "".join(HTML_ESCAPES.get(ch, ch) for ch in text)


def sanitize_string(
    text: Any,
    allow_numbers: bool = True,
    allow_special_chars: bool = False,
    max_length: int = 1000,
) -> str:
    """
    Strip markup, control characters and script vectors from free text.

    Non-string input yields an empty string. The result is HTML-escaped so
    it can be echoed back to a browser unchanged.
    """
    if not isinstance(text, str):
        return ""

    cleaned = text.strip()
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = _JS_PROTOCOL.sub("", cleaned)
    cleaned = _EVENT_HANDLER.sub("", cleaned)
    for pattern in _DANGEROUS_BLOCKS:
        cleaned = pattern.sub("", cleaned)

    if not allow_numbers:
        cleaned = _DIGITS.sub("", cleaned)
    if not allow_special_chars:
        cleaned = _SPECIAL.sub("", cleaned)

    cleaned = cleaned[:max_length]
    return escape_html(cleaned)


def sanitize_session_name(name: Any) -> str:
    return sanitize_string(name, allow_numbers=True, allow_special_chars=False, max_length=100)


def sanitize_currency_pair(pair: Any) -> str:
    """EURUSD, btcusdt → BTCUSDT. Max 10 characters, letters and digits only."""
    if not isinstance(pair, str):
        return ""
    return sanitize_string(pair.strip().upper(), allow_numbers=True,
                           allow_special_chars=False, max_length=10)


# ─── Numbers ──────────────────────────────────────────────────────────────────


def sanitize_number(
    value: Any,
    min_value: float = -math.inf,
    max_value: float = math.inf,
    decimals: int = 8,
    allow_negative: bool = True,
) -> float:
    """
    Parse, clamp and round a numeric input.

    Strings are stripped of everything except digits, '.' and '-' before
    parsing. Raises SanitizationError for NaN, infinity or garbage.
    """
    if isinstance(value, bool):
        raise SanitizationError("Invalid numerical input")
    if isinstance(value, str):
        raw = _NON_NUMERIC.sub("", value)
        try:
            number = float(raw)
        except ValueError as exc:
            raise SanitizationError("Invalid numerical input") from exc
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        raise SanitizationError("Invalid numerical input")

    if not math.isfinite(number):
        raise SanitizationError("Invalid numerical input")
    if not allow_negative and number < 0:
        raise SanitizationError("Negative values are not allowed")

    number = max(min_value, min(max_value, number))
    return round(number, decimals)


def sanitize_numeric_input(text: Any) -> str:
    """
    Clean a numeric text field while the user is still typing.

    Keeps digits, the first decimal point and a leading minus sign, and
    truncates the fraction to 8 places. Returns a string, not a number.
    """
    if not isinstance(text, str):
        text = "" if text is None else str(text)
    raw = _NON_NUMERIC.sub("", text)

    negative = raw.startswith("-")
    raw = raw.replace("-", "")

    if "." in raw:
        whole, _, fraction = raw.partition(".")
        fraction = fraction.replace(".", "")[:8]
        raw = f"{whole}.{fraction}"

    return f"-{raw}" if negative else raw


# ─── Candle Validation ────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_candle_fields(
    open_: Any,
    high: Any,
    low: Any,
    close: Any,
    volume: Any,
    spread: Any = None,
) -> List[str]:
    """
    Check a hand-entered candle and return a list of human-readable errors.

    An empty list means the candle is valid.
    """
    errors: List[str] = []
    fields = {
        "Open price": open_,
        "High price": high,
        "Low price": low,
        "Close price": close,
        "Volume": volume,
    }
    for label, value in fields.items():
        if value is None or value == "":
            errors.append(f"{label} is required")
        elif not _is_number(value) or value < 0:
            errors.append(f"{label} must be a positive number")

    if spread is not None and (not _is_number(spread) or spread < 0):
        errors.append("Spread must be a positive number")

    if errors:
        return errors

    if high < max(open_, close):
        errors.append("High price must be greater than or equal to open and close prices")
    if low > min(open_, close):
        errors.append("Low price must be less than or equal to open and close prices")
    if high < low:
        errors.append("High price must be greater than or equal to low price")
    return errors


def validate_candle_schema(data: Dict[str, Any]) -> Dict[str, float]:
    """
    Strict schema check used for imported candles.

    Prices must lie in [0, 1e6], volume must be non-negative and the OHLC
    relationships must hold. Returns the normalised candle dict.
    """
    if not isinstance(data, dict):
        raise CandleValidationError(["Candle must be an object"])

    errors: List[str] = []
    out: Dict[str, float] = {}
    for key in ("open", "high", "low", "close"):
        value = data.get(key)
        if not _is_number(value):
            errors.append(f"{key} must be a number")
        elif not 0 <= value <= MAX_PRICE:
            errors.append(f"{key} must be between 0 and {MAX_PRICE:.0f}")
        else:
            out[key] = float(value)

    volume = data.get("volume")
    if not _is_number(volume) or volume < 0:
        errors.append("volume must be a non-negative number")
    else:
        out["volume"] = float(volume)

    timestamp = data.get("timestamp")
    if timestamp is not None:
        if not isinstance(timestamp, int) or isinstance(timestamp, bool) or timestamp <= 0:
            errors.append("timestamp must be a positive integer")
        else:
            out["timestamp"] = timestamp

    if not errors:
        o, h, l, c = out["open"], out["high"], out["low"], out["close"]
        if not (h >= l and h >= o and h >= c and l <= o and l <= c):
            errors.append("Invalid OHLC relationships")

    if errors:
        logger.debug("Candle schema rejected: {}", errors)
        raise CandleValidationError(errors)
    return out

