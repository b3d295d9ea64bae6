"""
session_store.py — SQLite store for trading sessions and their candles.

A session is a named replay of one currency pair on one timeframe, starting
at a fixed date/time. Candles are entered one index at a time; each candle's
datetime is derived from the session start plus index × timeframe.

Schema:
    sessions(id, session_name, pair, timeframe, start_date, start_time,
             current_candle_index, created_at, updated_at)
    candles(id, session_id → sessions.id ON DELETE CASCADE, candle_index,
            open, high, low, close, volume, spread, candle_datetime,
            UNIQUE(session_id, candle_index))

Usage:
    store = SessionStore()                      # in-memory
    session = store.create_session("London open", "EURUSD", "5m",
                                   "2026-01-05", "08:00")
    store.save_candle(session.id, 0, 1.1000, 1.1010, 1.0995, 1.1005, 1200)
    session, candles = store.load_session_with_candles(session.id)
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from sanitizer import (
    CandleValidationError,
    VALID_INTERVALS,
    sanitize_currency_pair,
    sanitize_session_name,
    validate_candle_fields,
)


# ─── Constants ────────────────────────────────────────────────────────────────

TIMEFRAME_DELTAS: Dict[str, timedelta] = {
    "1m": timedelta(minutes=1),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "4h": timedelta(hours=4),
    "1d": timedelta(days=1),
}

CANDLE_FIELDS = ("open", "high", "low", "close", "volume", "spread")

_CREATE_SESSIONS = """
CREATE TABLE IF NOT EXISTS sessions (
    id                   TEXT PRIMARY KEY,
    session_name         TEXT NOT NULL,
    pair                 TEXT NOT NULL,
    timeframe            TEXT NOT NULL,
    start_date           TEXT NOT NULL,
    start_time           TEXT NOT NULL,
    current_candle_index INTEGER NOT NULL DEFAULT 0,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
)
"""

_CREATE_CANDLES = """
CREATE TABLE IF NOT EXISTS candles (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    candle_index    INTEGER NOT NULL,
    open            REAL NOT NULL,
    high            REAL NOT NULL,
    low             REAL NOT NULL,
    close           REAL NOT NULL,
    volume          REAL NOT NULL,
    spread          REAL,
    candle_datetime TEXT NOT NULL,
    UNIQUE (session_id, candle_index)
)
"""

_CREATE_IDX_SESSION = "CREATE INDEX IF NOT EXISTS idx_candles_session ON candles(session_id)"


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass
class Candle:
    """OHLCV candle. Analytics only need the first five fields."""
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    candle_index: int = 0
    session_id: str = ""
    candle_datetime: Optional[str] = None
    spread: Optional[float] = None
    id: Optional[int] = None

    def body(self) -> float:
        return abs(self.close - self.open)

    def range(self) -> float:
        return self.high - self.low

    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    def is_bullish(self) -> bool:
        return self.close > self.open

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "candle_index": self.candle_index,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "spread": self.spread,
            "candle_datetime": self.candle_datetime,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Candle":
        return cls(
            open=row["open"],
            high=row["high"],
            low=row["low"],
            close=row["close"],
            volume=row["volume"],
            candle_index=row["candle_index"],
            session_id=row["session_id"],
            candle_datetime=row["candle_datetime"],
            spread=row["spread"],
            id=row["id"],
        )


@dataclass
class TradingSession:
    """A named candle-entry session for one pair and timeframe."""
    id: str
    session_name: str
    pair: str
    timeframe: str
    start_date: str
    start_time: str
    current_candle_index: int
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_name": self.session_name,
            "pair": self.pair,
            "timeframe": self.timeframe,
            "start_date": self.start_date,
            "start_time": self.start_time,
            "current_candle_index": self.current_candle_index,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TradingSession":
        return cls(
            id=row["id"],
            session_name=row["session_name"],
            pair=row["pair"],
            timeframe=row["timeframe"],
            start_date=row["start_date"],
            start_time=row["start_time"],
            current_candle_index=row["current_candle_index"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# ─── Exceptions ───────────────────────────────────────────────────────────────


class SessionStoreError(Exception):
    """Base exception for session store errors."""


class SessionNotFoundError(SessionStoreError):
    """Raised when a session id does not exist."""


# ─── Helpers ──────────────────────────────────────────────────────────────────


def calculate_candle_datetime(
    start_date: str,
    start_time: str,
    timeframe: str,
    candle_index: int,
) -> str:
    """Session start + candle_index × timeframe, as an ISO-8601 string."""
    if timeframe not in TIMEFRAME_DELTAS:
        raise ValueError(f"Unknown timeframe '{timeframe}'. Choose: {list(TIMEFRAME_DELTAS)}")
    start = _parse_start(start_date, start_time)
    return (start + TIMEFRAME_DELTAS[timeframe] * candle_index).isoformat()


def _parse_start(start_date: str, start_time: str) -> datetime:
    try:
        return datetime.strptime(f"{start_date} {start_time}", "%Y-%m-%d %H:%M")
    except ValueError as exc:
        raise ValueError(
            f"Invalid start '{start_date} {start_time}': expected YYYY-MM-DD and HH:MM"
        ) from exc


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── SessionStore ─────────────────────────────────────────────────────────────


class SessionStore:
    """
    SQLite-backed persistence for sessions and candles.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file, or ":memory:" (default).
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()
        logger.debug(f"SessionStore opened at {db_path}")

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute(_CREATE_SESSIONS)
            self._conn.execute(_CREATE_CANDLES)
            self._conn.execute(_CREATE_IDX_SESSION)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> "SessionStore":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ── Sessions ───────────────────────────────────────────────────────────

    def create_session(
        self,
        session_name: str,
        pair: str,
        timeframe: str,
        start_date: str,
        start_time: str,
    ) -> TradingSession:
        """
        Create a new session.

        Raises
        ------
        ValueError : if a field is blank, the timeframe is unknown or the
                     start date/time cannot be parsed.
        """
        raw = {
            "session_name": session_name,
            "pair": pair,
            "timeframe": timeframe,
            "start_date": start_date,
            "start_time": start_time,
        }
        for name, value in raw.items():
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} is required")

        name = sanitize_session_name(session_name)
        clean_pair = sanitize_currency_pair(pair)
        if not name:
            raise ValueError("session_name is required")
        if not clean_pair:
            raise ValueError("pair is required")
        timeframe = timeframe.strip()
        if timeframe not in VALID_INTERVALS:
            raise ValueError(f"Unknown timeframe '{timeframe}'. Choose: {list(VALID_INTERVALS)}")
        start_date, start_time = start_date.strip(), start_time.strip()
        _parse_start(start_date, start_time)

        now = _now()
        session = TradingSession(
            id=uuid.uuid4().hex,
            session_name=name,
            pair=clean_pair,
            timeframe=timeframe,
            start_date=start_date,
            start_time=start_time,
            current_candle_index=0,
            created_at=now,
            updated_at=now,
        )
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO sessions
                    (id, session_name, pair, timeframe, start_date, start_time,
                     current_candle_index, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (session.id, session.session_name, session.pair, session.timeframe,
                 session.start_date, session.start_time, 0, now, now),
            )
        logger.info(f"Session created: {session.id} {session.pair} {session.timeframe}")
        return session

    def get_session(self, session_id: str) -> TradingSession:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return TradingSession.from_row(row)

    def list_sessions(self) -> List[TradingSession]:
        """All sessions, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM sessions ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [TradingSession.from_row(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and all of its candles. Returns False if absent."""
        with self._conn:
            self._conn.execute("DELETE FROM candles WHERE session_id = ?", (session_id,))
            cur = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        if cur.rowcount:
            logger.info(f"Session deleted: {session_id}")
        return cur.rowcount > 0

    def load_session_with_candles(self, session_id: str) -> Tuple[TradingSession, List[Candle]]:
        return self.get_session(session_id), self.get_candles(session_id)

    # ── Candles ────────────────────────────────────────────────────────────

    def save_candle(
        self,
        session_id: str,
        candle_index: int,
        open_: float,
        high: float,
        low: float,
        close: float,
        volume: float,
        spread: Optional[float] = None,
    ) -> Candle:
        """
        Insert or replace the candle at candle_index.

        Raises
        ------
        SessionNotFoundError  : unknown session.
        CandleValidationError : OHLCV values violate the candle invariants.
        """
        session = self.get_session(session_id)
        if not isinstance(candle_index, int) or candle_index < 0:
            raise ValueError(f"candle_index must be a non-negative integer, got {candle_index!r}")

        errors = validate_candle_fields(open_, high, low, close, volume, spread)
        if errors:
            raise CandleValidationError(errors)

        candle_dt = calculate_candle_datetime(
            session.start_date, session.start_time, session.timeframe, candle_index
        )
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO candles
                    (session_id, candle_index, open, high, low, close,
                     volume, spread, candle_datetime)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, candle_index) DO UPDATE SET
                    open = excluded.open,
                    high = excluded.high,
                    low = excluded.low,
                    close = excluded.close,
                    volume = excluded.volume,
                    spread = excluded.spread,
                    candle_datetime = excluded.candle_datetime
                """,
                (session_id, candle_index, float(open_), float(high), float(low),
                 float(close), float(volume),
                 None if spread is None else float(spread), candle_dt),
            )
            self._conn.execute(
                """
                UPDATE sessions
                SET current_candle_index = MAX(current_candle_index, ?), updated_at = ?
                WHERE id = ?
                """,
                (candle_index, _now(), session_id),
            )
        logger.debug("Saved candle {} for session {}", candle_index, session_id)
        candle = self.get_candle(session_id, candle_index)
        if candle is None:
            raise SessionStoreError(
                f"Candle {candle_index} was not persisted for session {session_id}"
            )
        return candle

    def get_candle(self, session_id: str, candle_index: int) -> Optional[Candle]:
        row = self._conn.execute(
            "SELECT * FROM candles WHERE session_id = ? AND candle_index = ?",
            (session_id, candle_index),
        ).fetchone()
        return Candle.from_row(row) if row else None

    def get_candles(self, session_id: str) -> List[Candle]:
        """All candles for a session ordered by candle_index."""
        rows = self._conn.execute(
            "SELECT * FROM candles WHERE session_id = ? ORDER BY candle_index ASC",
            (session_id,),
        ).fetchall()
        return [Candle.from_row(r) for r in rows]

    def update_candle(self, session_id: str, candle_index: int, **fields: Any) -> Optional[Candle]:
        """
        Patch individual fields of an existing candle.

        Returns None when no candle exists at candle_index.
        """
        unknown = set(fields) - set(CANDLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown candle fields {sorted(unknown)}. Choose: {list(CANDLE_FIELDS)}")
        existing = self.get_candle(session_id, candle_index)
        if existing is None:
            return None
        merged = {name: getattr(existing, name) for name in CANDLE_FIELDS}
        merged.update(fields)
        return self.save_candle(
            session_id,
            candle_index,
            merged["open"],
            merged["high"],
            merged["low"],
            merged["close"],
            merged["volume"],
            merged["spread"],
        )

    def delete_candle(self, session_id: str, candle_index: int) -> bool:
        with self._conn:
            cur = self._conn.execute(
                "DELETE FROM candles WHERE session_id = ? AND candle_index = ?",
                (session_id, candle_index),
            )
        return cur.rowcount > 0

    def next_candle_index(self, session_id: str) -> int:
        row = self._conn.execute(
            "SELECT MAX(candle_index) AS m FROM candles WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return 0 if row["m"] is None else row["m"] + 1

    # ── Integrity & Stats ──────────────────────────────────────────────────

    def validate_data_integrity(self, session_id: str) -> Dict[str, Any]:
        """
        Compare the session's stored index with the candles actually saved.

        The session is consistent when its current_candle_index is at least
        the highest saved candle index.
        """
        session = self.get_session(session_id)
        row = self._conn.execute(
            "SELECT COUNT(*) AS n, MAX(candle_index) AS m FROM candles WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        expected_max = row["m"] if row["m"] is not None else 0
        session_index = session.current_candle_index
        result = {
            "is_consistent": session_index >= expected_max,
            "actual_candle_count": row["n"],
            "session_index": session_index,
            "expected_max_index": expected_max,
            "discrepancy": session_index - expected_max,
        }
        if not result["is_consistent"]:
            logger.warning(f"Session {session_id} index drift: {result}")
        return result

    def session_stats(self, session_id: str) -> Dict[str, Any]:
        self.get_session(session_id)
        candles = self.get_candles(session_id)
        if not candles:
            return {
                "candle_count": 0,
                "first_datetime": None,
                "last_datetime": None,
                "lowest_price": None,
                "highest_price": None,
                "total_volume": 0.0,
                "last_close": None,
            }
        return {
            "candle_count": len(candles),
            "first_datetime": candles[0].candle_datetime,
            "last_datetime": candles[-1].candle_datetime,
            "lowest_price": min(c.low for c in candles),
            "highest_price": max(c.high for c in candles),
            "total_volume": sum(c.volume for c in candles),
            "last_close": candles[-1].close,
        }
