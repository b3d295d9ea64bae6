"""
api_server.py — FastAPI service for CandleLab.

Endpoints:
    GET    /health
    POST   /sessions                          — create a session
    GET    /sessions                          — list sessions
    GET    /sessions/{id}                     — session + candles
    DELETE /sessions/{id}
    PUT    /sessions/{id}/candles/{index}     — insert or replace a candle
    PATCH  /sessions/{id}/candles/{index}     — update fields of a candle
    DELETE /sessions/{id}/candles/{index}
    GET    /sessions/{id}/candles
    POST   /sessions/{id}/import              — load historical candles
    GET    /sessions/{id}/integrity
    GET    /sessions/{id}/metrics
    GET    /sessions/{id}/indicators?index=
    GET    /sessions/{id}/patterns
    GET    /sessions/{id}/pattern-analysis?index=
    GET    /sessions/{id}/quality?level=        — data quality report
    POST   /sessions/{id}/predict             — ensemble / neural / rule_based
    POST   /predictions/neural/outcome        — report an actual outcome
    POST   /backtest
    POST   /backtest/compare
    POST   /backtest/advanced
    GET    /backtest/registry
    POST   /risk/metrics
    POST   /risk/position-size
    POST   /risk/stress-test
    POST   /risk/check-trade
    GET    /risk/limits/{profile}
    GET    /monitoring/cache
    GET    /monitoring/ensemble

Usage:
    uvicorn api_server:app --port 8000
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from advanced_backtester import (
    ADVANCED_STRATEGY_MAP,
    AdvancedBacktestConfig,
    AdvancedBacktester,
    get_advanced_strategy,
)
from cache import TTLCache
from backtester import (
    STRATEGY_MAP,
    BacktestConfig,
    Backtester,
    BacktestRegistry,
    generate_synthetic_candles,
    get_strategy,
)
from config import Settings
from data_validator import DataValidator
from factors import FactorModel, build_prediction
from feature_extraction import FeatureExtractor
from indicators import calculate_all
from market_data import MarketDataAdapter
from neural_predictor import NeuralPredictor
from pattern_analysis import analyze_patterns, analyze_volume
from patterns import detect_patterns
from prediction_engine import PredictionEngine
from risk_manager import RISK_PROFILES, RiskManager, risk_limits
from sanitizer import VALID_INTERVALS, SanitizationError
from session_metrics import SessionMetrics
from session_store import Candle, SessionNotFoundError, SessionStore, SessionStoreError

INTERVAL_MINUTES: Dict[str, int] = {
    "1m": 1, "5m": 5, "15m": 15, "30m": 30, "1h": 60, "4h": 240, "1d": 1440,
}
PREDICTION_MODELS = ("ensemble", "neural", "rule_based")


# ─── Services ─────────────────────────────────────────────────────────────────

@dataclass
class Services:
    """Everything a request handler needs, built once per process."""
    settings: Settings
    store: SessionStore
    metrics: SessionMetrics
    extractor: FeatureExtractor
    engine: PredictionEngine
    neural: NeuralPredictor
    factor_model: FactorModel
    market: MarketDataAdapter
    registry: BacktestRegistry = field(default_factory=BacktestRegistry)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or Settings.from_env()
    store = SessionStore(settings.db_path)
    extractor = FeatureExtractor(cache_size=settings.feature_cache_size)
    return Services(
        settings=settings,
        store=store,
        metrics=SessionMetrics(store, metrics_ttl=settings.metrics_ttl),
        extractor=extractor,
        engine=PredictionEngine(
            extractor=extractor,
            cache=TTLCache(max_size=settings.prediction_cache_size, ttl=settings.prediction_cache_ttl),
        ),
        neural=NeuralPredictor(seed=settings.random_seed),
        factor_model=FactorModel(),
        market=MarketDataAdapter(
            use_synthetic=settings.use_synthetic_data,
            cache_ttl=settings.market_cache_ttl,
            http_timeout=settings.http_timeout,
            seed=settings.random_seed,
            validation_level=settings.data_validation_level,
        ),
    )


# ─── App & Global Services ────────────────────────────────────────────────────

app = FastAPI(
    title="CandleLab API",
    description="Session candles, indicators, predictions, backtests and risk analytics",
    version="1.0.0",
)

_services: Optional[Services] = None


def get_services() -> Services:
    """Return the global services, building them from the environment on first use."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[Services]) -> None:
    """Override the global services (used in tests)."""
    global _services
    _services = services


# ─── Request Models ───────────────────────────────────────────────────────────

class SessionCreate(BaseModel):
    session_name: str
    pair: str
    timeframe: str = "5m"
    start_date: str
    start_time: str = "00:00"


class CandleIn(BaseModel):
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    spread: Optional[float] = None


class CandlePatch(BaseModel):
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None
    spread: Optional[float] = None


class ImportRequest(BaseModel):
    symbol: str
    interval: Optional[str] = None          # defaults to the session timeframe
    limit: int = Field(200, ge=1, le=1000)
    append: bool = False


class PredictRequest(BaseModel):
    model: str = "ensemble"
    index: Optional[int] = None
    interval: str = "5m"


class OutcomeRequest(BaseModel):
    example_index: int
    actual_direction: str


class BacktestRequest(BaseModel):
    strategy: str = "ma_crossover"
    params: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    candles: int = Field(500, ge=2, le=10_000)
    seed: Optional[int] = 42
    volatility: float = Field(0.02, gt=0)
    drift: float = 0.0005
    initial_capital: float = Field(10_000.0, gt=0)
    commission: float = Field(0.001, ge=0)
    slippage: float = Field(0.0005, ge=0)
    risk_per_trade: float = Field(0.02, gt=0, le=1)
    include_curve: bool = False
    store_record: bool = True


class CompareRequest(BaseModel):
    strategies: Optional[List[str]] = None
    session_id: Optional[str] = None
    candles: int = Field(500, ge=2, le=10_000)
    seed: Optional[int] = 42
    initial_capital: float = Field(10_000.0, gt=0)


class AdvancedBacktestRequest(BaseModel):
    strategy: str = "mean_reversion"
    params: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    candles: int = Field(500, ge=2, le=10_000)
    seed: Optional[int] = 42
    initial_capital: float = Field(100_000.0, gt=0)
    commission: float = Field(0.001, ge=0)
    slippage: float = Field(0.0005, ge=0)
    max_positions: int = Field(5, ge=1)
    leverage: float = Field(1.0, gt=0)
    risk_free_rate: float = 0.02
    stop_loss_percent: float = Field(0.05, gt=0)
    take_profit_percent: float = Field(0.10, gt=0)
    include_curve: bool = False


class RiskMetricsRequest(BaseModel):
    returns: List[float]
    benchmark_returns: Optional[List[float]] = None
    risk_free_rate: float = 0.02


class PositionSizeRequest(BaseModel):
    account_balance: float
    win_rate: float = Field(..., ge=0, le=1)
    avg_win: float
    avg_loss: float
    volatility: float
    risk_tolerance: float = Field(0.02, gt=0, le=1)


class StressPosition(BaseModel):
    size: float


class StressTestRequest(BaseModel):
    positions: List[StressPosition]
    correlation_matrix: Optional[List[List[float]]] = None


class TradeCheckRequest(BaseModel):
    position_value: float
    portfolio_value: float
    daily_pnl: float = 0.0
    current_drawdown: float = 0.0
    profile: str = "moderate"


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _session_candles(services: Services, session_id: str) -> List[Candle]:
    services.store.get_session(session_id)
    return services.store.get_candles(session_id)


def _resolve_index(candles: List[Candle], index: Optional[int]) -> int:
    if not candles:
        raise HTTPException(status_code=422, detail="Session has no candles")
    if index is None:
        return len(candles) - 1
    if not 0 <= index < len(candles):
        raise HTTPException(
            status_code=422, detail=f"index must be between 0 and {len(candles) - 1}"
        )
    return index


def _backtest_candles(
    services: Services, session_id: Optional[str], n: int, seed: Optional[int],
    volatility: float = 0.02, drift: float = 0.0005,
) -> List[Candle]:
    if session_id:
        return _session_candles(services, session_id)
    return generate_synthetic_candles(n, volatility=volatility, drift=drift, seed=seed)


def _invalidate(services: Services, session_id: str) -> None:
    services.metrics.invalidate(session_id)


# ─── Health ───────────────────────────────────────────────────────────────────

@app.get("/health", response_model=Dict[str, Any])
async def health() -> Dict[str, Any]:
    """Health check endpoint."""
    services = get_services()
    return {
        "status": "ok",
        "timestamp": _now(),
        "uptime_since": services.started_at,
        "sessions": len(services.store.list_sessions()),
    }


# ─── Sessions ─────────────────────────────────────────────────────────────────

@app.post("/sessions", status_code=201, response_model=Dict[str, Any])
async def create_session(body: SessionCreate) -> Dict[str, Any]:
    session = get_services().store.create_session(
        body.session_name, body.pair, body.timeframe, body.start_date, body.start_time
    )
    return session.to_dict()


@app.get("/sessions", response_model=List[Dict[str, Any]])
async def list_sessions() -> List[Dict[str, Any]]:
    return [s.to_dict() for s in get_services().store.list_sessions()]


@app.get("/sessions/{session_id}", response_model=Dict[str, Any])
async def get_session(session_id: str) -> Dict[str, Any]:
    session, candles = get_services().store.load_session_with_candles(session_id)
    return {"session": session.to_dict(), "candles": [c.to_dict() for c in candles]}


@app.delete("/sessions/{session_id}", response_model=Dict[str, Any])
async def delete_session(session_id: str) -> Dict[str, Any]:
    services = get_services()
    if not services.store.delete_session(session_id):
        raise SessionNotFoundError(f"Session '{session_id}' not found")
    _invalidate(services, session_id)
    return {"ok": True, "deleted": session_id}


# ─── Candles ──────────────────────────────────────────────────────────────────

@app.get("/sessions/{session_id}/candles", response_model=List[Dict[str, Any]])
async def list_candles(session_id: str) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in _session_candles(get_services(), session_id)]


@app.put("/sessions/{session_id}/candles/{index}", response_model=Dict[str, Any])
async def upsert_candle(session_id: str, index: int, body: CandleIn) -> Dict[str, Any]:
    services = get_services()
    candle = services.store.save_candle(
        session_id, index, body.open, body.high, body.low, body.close, body.volume, body.spread
    )
    _invalidate(services, session_id)
    return candle.to_dict()


@app.patch("/sessions/{session_id}/candles/{index}", response_model=Dict[str, Any])
async def patch_candle(session_id: str, index: int, body: CandlePatch) -> Dict[str, Any]:
    services = get_services()
    services.store.get_session(session_id)
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=422, detail="No candle fields to update")
    candle = services.store.update_candle(session_id, index, **fields)
    if candle is None:
        raise HTTPException(status_code=404, detail=f"Candle {index} not found")
    _invalidate(services, session_id)
    return candle.to_dict()


@app.delete("/sessions/{session_id}/candles/{index}", response_model=Dict[str, Any])
async def delete_candle(session_id: str, index: int) -> Dict[str, Any]:
    services = get_services()
    services.store.get_session(session_id)
    if not services.store.delete_candle(session_id, index):
        raise HTTPException(status_code=404, detail=f"Candle {index} not found")
    _invalidate(services, session_id)
    return {"ok": True, "deleted": index}


@app.post("/sessions/{session_id}/import", response_model=Dict[str, Any])
async def import_candles(session_id: str, body: ImportRequest) -> Dict[str, Any]:
    """Fetch historical candles and append them to the session."""
    services = get_services()
    session = services.store.get_session(session_id)
    existing = services.store.next_candle_index(session_id)
    if existing and not body.append:
        raise HTTPException(
            status_code=409,
            detail=f"Session already has candles up to index {existing - 1}; set append=true",
        )
    interval = body.interval or session.timeframe
    candles = await services.market.fetch_candles(body.symbol, interval, body.limit)
    imported = services.market.import_into_session(services.store, session_id, candles)
    _invalidate(services, session_id)
    return {
        "ok": True,
        "imported": imported,
        "source": services.market.cache_source(body.symbol, interval, body.limit),
        "next_index": services.store.next_candle_index(session_id),
    }


# ─── Analytics ────────────────────────────────────────────────────────────────

@app.get("/sessions/{session_id}/integrity", response_model=Dict[str, Any])
async def integrity(session_id: str) -> Dict[str, Any]:
    return get_services().store.validate_data_integrity(session_id)


@app.get("/sessions/{session_id}/metrics", response_model=Dict[str, Any])
async def session_metrics(session_id: str) -> Dict[str, Any]:
    services = get_services()
    services.store.get_session(session_id)
    return services.metrics.snapshot(session_id)


@app.get("/sessions/{session_id}/indicators", response_model=Dict[str, Any])
async def indicators(session_id: str, index: Optional[int] = Query(None)) -> Dict[str, Any]:
    candles = _session_candles(get_services(), session_id)
    idx = _resolve_index(candles, index)
    return {"index": idx, "indicators": calculate_all(candles, idx).to_dict()}


@app.get("/sessions/{session_id}/patterns", response_model=Dict[str, Any])
async def patterns(
    session_id: str,
    max_patterns: int = Query(5, ge=1, le=50),
    min_confidence: float = Query(60.0, ge=0, le=100),
) -> Dict[str, Any]:
    candles = _session_candles(get_services(), session_id)
    found = detect_patterns(candles, max_patterns=max_patterns, min_confidence=min_confidence)
    return {"count": len(found), "patterns": [p.to_dict() for p in found]}


@app.get("/sessions/{session_id}/pattern-analysis", response_model=Dict[str, Any])
async def pattern_analysis(session_id: str, index: Optional[int] = Query(None)) -> Dict[str, Any]:
    candles = _session_candles(get_services(), session_id)
    idx = _resolve_index(candles, index)
    return {
        "index": idx,
        "pattern": analyze_patterns(candles, idx).to_dict(),
        "volume": analyze_volume(candles, idx).to_dict(),
    }


@app.get("/sessions/{session_id}/quality", response_model=Dict[str, Any])
async def data_quality(
    session_id: str,
    level: Optional[str] = Query(None),
    min_points: int = Query(1, ge=1),
) -> Dict[str, Any]:
    """DataValidator report for the session's candles (strict / normal / relaxed)."""
    services = get_services()
    candles = _session_candles(services, session_id)
    validator = DataValidator(level) if level else services.market.validator
    report = services.market.quality_report(candles, validator, min_points=min_points)
    return {"level": validator.config.level, **report.to_dict()}


# ─── Predictions ──────────────────────────────────────────────────────────────

@app.post("/sessions/{session_id}/predict", response_model=Dict[str, Any])
async def predict(session_id: str, body: PredictRequest) -> Dict[str, Any]:
    if body.model not in PREDICTION_MODELS:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown model '{body.model}'. Choose: {list(PREDICTION_MODELS)}",
        )
    if body.interval not in VALID_INTERVALS:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown interval '{body.interval}'. Choose: {list(VALID_INTERVALS)}",
        )
    services = get_services()
    candles = _session_candles(services, session_id)
    idx = _resolve_index(candles, body.index)
    minutes = INTERVAL_MINUTES[body.interval]

    if body.model == "ensemble":
        prediction = services.engine.generate(candles, idx, minutes)
        payload = prediction.to_dict() if prediction else None
    elif body.model == "neural":
        result = services.neural.predict(candles, idx, minutes)
        payload = {"result": result.to_dict()} if result else None
    else:
        result = build_prediction(candles, idx, minutes, services.factor_model)
        payload = {"result": result.to_dict()} if result else None

    if payload is None:
        raise HTTPException(
            status_code=422,
            detail=f"Not enough candles for a {body.model} prediction at index {idx}",
        )
    payload.update({"model": body.model, "index": idx})
    return payload


@app.post("/predictions/neural/outcome", response_model=Dict[str, Any])
async def neural_outcome(body: OutcomeRequest) -> Dict[str, Any]:
    neural = get_services().neural
    if not neural.update_with_actual_result(body.example_index, body.actual_direction):
        raise HTTPException(status_code=404, detail=f"Example {body.example_index} not found")
    return {"ok": True, "stats": neural.network_stats()}


# ─── Backtesting ──────────────────────────────────────────────────────────────

@app.post("/backtest", response_model=Dict[str, Any])
async def backtest(body: BacktestRequest) -> Dict[str, Any]:
    services = get_services()
    try:
        strategy = get_strategy(body.strategy, **body.params)
    except TypeError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid strategy params: {exc}")
    candles = _backtest_candles(
        services, body.session_id, body.candles, body.seed, body.volatility, body.drift
    )
    config = BacktestConfig(
        initial_capital=body.initial_capital,
        commission=body.commission,
        slippage=body.slippage,
        risk_per_trade=body.risk_per_trade,
    )
    result = Backtester(config).run(strategy, candles)
    out = {"result": result.to_dict(include_curve=body.include_curve), "candles": len(candles)}
    if body.store_record:
        record = services.registry.store(result, body.initial_capital, len(candles))
        out["record_id"] = record.record_id
    return out


@app.post("/backtest/compare", response_model=Dict[str, Any])
async def compare(body: CompareRequest) -> Dict[str, Any]:
    names = body.strategies or list(STRATEGY_MAP)
    strategies = [get_strategy(name) for name in names]
    candles = _backtest_candles(get_services(), body.session_id, body.candles, body.seed)
    results = Backtester(BacktestConfig(initial_capital=body.initial_capital)).compare_strategies(
        strategies, candles
    )
    return {
        "candles": len(candles),
        "ranking": [r.to_dict(include_curve=False) for r in results],
    }


@app.post("/backtest/advanced", response_model=Dict[str, Any])
async def advanced_backtest(body: AdvancedBacktestRequest) -> Dict[str, Any]:
    if body.strategy not in ADVANCED_STRATEGY_MAP:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown strategy '{body.strategy}'. Choose: {list(ADVANCED_STRATEGY_MAP)}",
        )
    try:
        strategy = get_advanced_strategy(body.strategy, **body.params)
    except TypeError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid strategy params: {exc}")
    candles = _backtest_candles(get_services(), body.session_id, body.candles, body.seed)
    config = AdvancedBacktestConfig(
        initial_capital=body.initial_capital,
        commission=body.commission,
        slippage=body.slippage,
        max_positions=body.max_positions,
        leverage=body.leverage,
        risk_free_rate=body.risk_free_rate,
        stop_loss_percent=body.stop_loss_percent,
        take_profit_percent=body.take_profit_percent,
    )
    result = AdvancedBacktester(config).run(strategy, candles)
    return {"result": result.to_dict(include_curve=body.include_curve), "candles": len(candles)}


@app.get("/backtest/registry", response_model=Dict[str, Any])
async def backtest_registry(strategy: Optional[str] = None) -> Dict[str, Any]:
    registry = get_services().registry
    records = registry.query(strategy=strategy) if strategy else registry.all_records()
    return {"summary": registry.summary(), "records": [r.to_dict() for r in records]}


# ─── Risk ─────────────────────────────────────────────────────────────────────

@app.post("/risk/metrics", response_model=Dict[str, Any])
async def risk_metrics(body: RiskMetricsRequest) -> Dict[str, Any]:
    metrics = RiskManager().calculate_risk_metrics(
        body.returns, body.benchmark_returns, body.risk_free_rate
    )
    return metrics.to_dict()


@app.post("/risk/position-size", response_model=Dict[str, Any])
async def position_size(body: PositionSizeRequest) -> Dict[str, Any]:
    sizing = RiskManager().calculate_position_sizing(
        body.account_balance, body.win_rate, body.avg_win, body.avg_loss,
        body.volatility, body.risk_tolerance,
    )
    return sizing.to_dict()


@app.post("/risk/stress-test", response_model=Dict[str, Any])
async def stress_test(body: StressTestRequest) -> Dict[str, Any]:
    results = RiskManager().perform_stress_test(
        [p.model_dump() for p in body.positions], body.correlation_matrix
    )
    return {"scenarios": [r.to_dict() for r in results]}


@app.post("/risk/check-trade", response_model=Dict[str, Any])
async def check_trade(body: TradeCheckRequest) -> Dict[str, Any]:
    manager = RiskManager(profile=body.profile)
    allowed, reason = manager.check_trade(
        body.position_value, body.portfolio_value, body.daily_pnl, body.current_drawdown
    )
    return {"allowed": allowed, "reason": reason, "profile": body.profile}


@app.get("/risk/limits/{profile}", response_model=Dict[str, Any])
async def limits(profile: str) -> Dict[str, Any]:
    if profile not in RISK_PROFILES:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown risk profile '{profile}'. Choose: {list(RISK_PROFILES)}",
        )
    return {"profile": profile, **risk_limits(profile).to_dict()}


# ─── Monitoring ───────────────────────────────────────────────────────────────

@app.get("/monitoring/cache", response_model=Dict[str, Any])
async def monitoring_cache() -> Dict[str, Any]:
    services = get_services()
    return {
        "features": services.extractor.cache_stats(),
        "predictions": services.engine.cache.stats().to_dict(),
        "metrics": services.metrics.cache_stats(),
    }


@app.get("/monitoring/ensemble", response_model=Dict[str, Any])
async def monitoring_ensemble() -> Dict[str, Any]:
    services = get_services()
    return {
        "ensemble": services.engine.ensemble_info(),
        "neural": services.neural.network_stats(),
        "factor_weights": services.factor_model.get_weights(),
    }


# ─── Error Handlers ───────────────────────────────────────────────────────────

@app.exception_handler(SessionNotFoundError)
async def not_found_handler(request: Any, exc: SessionNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SessionStoreError)
async def store_error_handler(request: Any, exc: SessionStoreError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(SanitizationError)
async def sanitization_handler(request: Any, exc: SanitizationError) -> JSONResponse:
    errors = getattr(exc, "errors", None)
    content: Dict[str, Any] = {"detail": str(exc)}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(ValueError)
async def value_error_handler(request: Any, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_error_handler(request: Any, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {getattr(request, 'url', '?')}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal error: {exc}"},
    )
