from typing import List, Optional
from fastapi import FastAPI, BackgroundTasks, Query, HTTPException
from pydantic import BaseModel

from binance_klines import ArchiveRef, BinanceSymbol, KlineLoadError, KlineLoadRequest, plan_required_archives
from features import FeatureError, FeatureTransformConfig, build_feature_schema, horizon_conditioning
from kline_store import KlineStore
from pipeline_config import STORE_PATH, HistoricalKlinesConfig, get_logger, iso_to_ms, setup_logging
from store_sync import sync_symbol_from_archives

app = FastAPI(title="Kline Pipeline API")


class FeatureSchemaRequest(BaseModel):
    windows_seconds: List[int] = [5, 15, 60]
    max_duration_seconds: int = 86_400


class StoreSyncRequest(BaseModel):
    start: str               # ISO8601, day aligned recommended
    end: str                 # ISO8601, exclusive
    symbols: Optional[List[str]] = None  # default: all four
    store_path: Optional[str] = None
    strict: bool = True


def _parse_symbol(text: str) -> BinanceSymbol:
    try:
        return BinanceSymbol.parse(text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _parse_iso(text: str) -> int:
    try:
        return iso_to_ms(text)
    except (ValueError, OverflowError):
        raise HTTPException(status_code=400, detail=f"invalid ISO8601 timestamp: {text}")


def _archive_dict(a: ArchiveRef) -> dict:
    return {
        "kind": a.kind.value,
        "symbol": a.symbol.as_str(),
        "period_start_ts_ms_utc": a.period_start_ts_ms_utc,
        "period_end_ts_ms_utc_exclusive": a.period_end_ts_ms_utc_exclusive,
        "url": a.url,
        "relative_path": a.relative_path,
    }


@app.on_event("startup")
async def on_startup():
    setup_logging(verbose=True)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/archives/plan")
async def archives_plan(
    symbol: str = Query(..., description="e.g. BTCUSDT or BTC/USDT"),
    start: str = Query(..., description="ISO8601 start (inclusive)"),
    end: str = Query(..., description="ISO8601 end (exclusive)"),
):
    req = KlineLoadRequest(symbol=_parse_symbol(symbol), start_ts_ms_utc=_parse_iso(start), end_ts_ms_utc_exclusive=_parse_iso(end))
    try:
        archives = plan_required_archives(req, HistoricalKlinesConfig.from_env().base_url)
    except KlineLoadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"count": len(archives), "archives": [_archive_dict(a) for a in archives]}


@app.post("/features/schema")
async def features_schema(req: FeatureSchemaRequest):
    cfg = FeatureTransformConfig(windows_seconds=list(req.windows_seconds), max_duration_seconds=req.max_duration_seconds)
    try:
        schema = build_feature_schema(cfg)
    except FeatureError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "version": schema.version,
        "fingerprint": schema.fingerprint,
        "columns": [{"name": c.name, "dtype": c.dtype} for c in schema.columns],
    }


@app.get("/horizon")
async def horizon(
    horizon_seconds: int = Query(..., ge=0),
    max_duration_seconds: int = Query(86_400, ge=0),
):
    h = horizon_conditioning(horizon_seconds, max_duration_seconds)
    return {"log_horizon_norm": h.log_horizon_norm, "sqrt_horizon_norm": h.sqrt_horizon_norm}


@app.post("/store/sync")
async def store_sync_endpoint(req: StoreSyncRequest, background_tasks: BackgroundTasks):
    symbols = [_parse_symbol(s) for s in req.symbols] if req.symbols else list(BinanceSymbol)
    start_ms = _parse_iso(req.start)
    end_ms = _parse_iso(req.end)
    if end_ms <= start_ms:
        raise HTTPException(status_code=400, detail="end must be after start")
    store_path = req.store_path or STORE_PATH
    logger = get_logger()

    def task():
        cfg = HistoricalKlinesConfig.from_env()
        with KlineStore.open(store_path, logger) as store:
            for symbol in symbols:
                try:
                    sync_symbol_from_archives(store, symbol, start_ms, end_ms, cfg, strict=req.strict, logger=logger)
                except KlineLoadError as e:
                    logger.error(f"Store sync failed for {symbol.as_str()}: {e}")
                    raise

    background_tasks.add_task(task)
    return {"status": "scheduled", "symbols": [s.as_str() for s in symbols], "store_path": store_path}
