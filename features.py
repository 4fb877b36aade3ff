import math
import hashlib
import logging
import sqlite3
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from itertools import islice
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd
import pyarrow.parquet as pq

from binance_klines import BinanceSymbol, atomic_write_parquet
from pipeline_config import (
    MAX_REPORTED_GAP_RANGES,
    STEP_MS,
    expected_points,
    get_logger,
    ms_to_datetime,
)

FEATURE_SCHEMA_VERSION = 1
WEEK_SECONDS = 7 * 24 * 60 * 60

SYMBOLS: List[BinanceSymbol] = list(BinanceSymbol)
SYMBOL_CODES: List[str] = [s.code for s in SYMBOLS]
_SYMBOL_INDEX: Dict[int, int] = {s.symbol_id: i for i, s in enumerate(SYMBOLS)}

# Parquet key/value metadata written next to feature matrices
META_SCHEMA_VERSION = "feature_schema_version"
META_SCHEMA_FINGERPRINT = "feature_schema_fingerprint"
TS_COLUMN = "ts_ms_utc"

FEATURE_POINTS_SQL = """
    SELECT open_time_ms, symbol_id, high, low, close, quote_asset_volume
    FROM klines_1s
    WHERE open_time_ms >= ? AND open_time_ms < ?
    ORDER BY open_time_ms ASC, symbol_id ASC
"""


class GapPolicy(Enum):
    STRICT = "strict"
    REPORT_AND_SKIP = "report_and_skip"


@dataclass(frozen=True)
class FeatureColumn:
    name: str
    dtype: str = "f64"


@dataclass
class FeatureSchema:
    version: int
    fingerprint: str
    columns: List[FeatureColumn]

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


@dataclass
class FeatureRow:
    ts_ms_utc: int
    values: List[float]


@dataclass(frozen=True)
class FeatureTransformRequest:
    start_ts_ms_utc: int
    end_ts_ms_utc_exclusive: int


@dataclass
class FeatureTransformConfig:
    windows_seconds: List[int] = field(default_factory=lambda: [5, 15, 60])
    max_duration_seconds: int = 86_400
    gap_policy: GapPolicy = GapPolicy.STRICT
    schema_version: int = FEATURE_SCHEMA_VERSION


@dataclass
class FeatureTransformReport:
    input_points: int = 0
    output_points: int = 0
    skipped_points: int = 0
    # Half-open (start, end_exclusive) pairs, capped at MAX_REPORTED_GAP_RANGES
    gap_ranges: List[Tuple[int, int]] = field(default_factory=list)
    first_error: Optional[str] = None


@dataclass(frozen=True)
class HorizonConditioning:
    log_horizon_norm: float
    sqrt_horizon_norm: float


# --------------------------
# Errors
# --------------------------

class FeatureError(Exception):
    """Base class for feature schema and transform failures."""


class InvalidRequestError(FeatureError):
    pass


class InvalidConfigError(FeatureError):
    pass


class StoreQueryError(FeatureError):
    pass


class InvalidTimestampError(FeatureError):
    def __init__(self, ts_ms_utc: int):
        self.ts_ms_utc = ts_ms_utc
        super().__init__(f"invalid UTC timestamp: {ts_ms_utc}")


class UnknownSymbolIdError(FeatureError):
    def __init__(self, symbol_id: int, ts_ms_utc: int):
        self.symbol_id = symbol_id
        self.ts_ms_utc = ts_ms_utc
        super().__init__(f"invalid symbol_id {symbol_id} at {ts_ms_utc}")


class DuplicateSymbolInFrameError(FeatureError):
    def __init__(self, symbol_id: int, ts_ms_utc: int):
        self.symbol_id = symbol_id
        self.ts_ms_utc = ts_ms_utc
        super().__init__(f"duplicate symbol_id {symbol_id} at {ts_ms_utc}")


class IncompleteFrameError(FeatureError):
    def __init__(self, ts_ms_utc: int, missing_symbols: List[str]):
        self.ts_ms_utc = ts_ms_utc
        self.missing_symbols = missing_symbols
        super().__init__(f"incomplete timestamp frame at {ts_ms_utc}; missing symbols: {missing_symbols}")


class ContinuityGapError(FeatureError):
    """A second missing from the stream.

    A gap at the tail of the request reports the second after the last one seen as
    `expected_next_ts_ms_utc` and the exclusive request end as `actual_ts_ms_utc`.
    """

    def __init__(self, expected_next_ts_ms_utc: int, actual_ts_ms_utc: int, missing_points: int):
        self.expected_next_ts_ms_utc = expected_next_ts_ms_utc
        self.actual_ts_ms_utc = actual_ts_ms_utc
        self.missing_points = missing_points
        super().__init__(
            f"continuity gap detected from {expected_next_ts_ms_utc} to {actual_ts_ms_utc} "
            f"({missing_points} missing points)"
        )


class SchemaVersionMismatchError(FeatureError):
    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"schema version mismatch: expected {expected}, got {actual}")


class SchemaFingerprintMismatchError(FeatureError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"schema fingerprint mismatch: expected {expected}, got {actual}")


# --------------------------
# Schema
# --------------------------

def _validate_windows(windows: Sequence[int]) -> None:
    if not windows:
        raise InvalidConfigError("windows_seconds must not be empty")
    seen = set()
    for w in windows:
        if w <= 0:
            raise InvalidConfigError("windows_seconds entries must be > 0")
        if w in seen:
            raise InvalidConfigError("windows_seconds entries must be unique")
        seen.add(w)


def validate_config(cfg: FeatureTransformConfig) -> None:
    if cfg.max_duration_seconds <= 0:
        raise InvalidConfigError("max_duration_seconds must be > 0")
    if cfg.schema_version != FEATURE_SCHEMA_VERSION:
        raise InvalidConfigError(f"schema_version must equal FEATURE_SCHEMA_VERSION ({FEATURE_SCHEMA_VERSION})")
    _validate_windows(cfg.windows_seconds)


def validate_request(req: FeatureTransformRequest) -> None:
    if req.end_ts_ms_utc_exclusive <= req.start_ts_ms_utc:
        raise InvalidRequestError("end timestamp must be greater than start timestamp")
    if req.start_ts_ms_utc % STEP_MS != 0 or req.end_ts_ms_utc_exclusive % STEP_MS != 0:
        raise InvalidRequestError("request boundaries must be aligned to 1000ms")


def schema_fingerprint(cfg: FeatureTransformConfig, columns: Sequence[FeatureColumn]) -> str:
    h = hashlib.sha256()
    h.update(f"version:{cfg.schema_version};".encode("utf-8"))
    h.update(f"max_duration_seconds:{cfg.max_duration_seconds};".encode("utf-8"))
    h.update(b"windows:")
    for w in cfg.windows_seconds:
        h.update(f"{w},".encode("utf-8"))
    h.update(b";columns:")
    for col in columns:
        h.update(col.name.encode("utf-8"))
        h.update(b":f64;")
    return h.hexdigest()


def build_feature_schema(cfg: FeatureTransformConfig, logger: Optional[logging.Logger] = None) -> FeatureSchema:
    """Ordered feature columns for `cfg`, versioned and fingerprinted.

    Per symbol (fixed order): ret_1s, then ret_{w}s, range_{w}s, vol_{w}s and quote_vol_{w}s
    for every window. The matrix ends with the tow_sin/tow_cos time-of-week encoding.
    """
    _validate_windows(cfg.windows_seconds)
    windows = cfg.windows_seconds
    names: List[str] = []
    for code in SYMBOL_CODES:
        names.append(f"{code}_ret_1s")
        names.extend(f"{code}_ret_{w}s" for w in windows)
        names.extend(f"{code}_range_{w}s" for w in windows)
        names.extend(f"{code}_vol_{w}s" for w in windows)
        names.extend(f"{code}_quote_vol_{w}s" for w in windows)
    names.extend(["tow_sin", "tow_cos"])

    columns = [FeatureColumn(name=n) for n in names]
    fingerprint = schema_fingerprint(cfg, columns)
    get_logger(logger).info(
        f"Feature schema built: version={cfg.schema_version} windows={list(windows)} "
        f"columns={len(columns)} fingerprint={fingerprint}"
    )
    return FeatureSchema(version=cfg.schema_version, fingerprint=fingerprint, columns=columns)


def assert_schema_compatible(expected_version: int, expected_fingerprint: str, actual: FeatureSchema) -> None:
    if expected_version != actual.version:
        raise SchemaVersionMismatchError(expected_version, actual.version)
    if expected_fingerprint != actual.fingerprint:
        raise SchemaFingerprintMismatchError(expected_fingerprint, actual.fingerprint)


def horizon_conditioning(horizon_seconds: int, max_duration_seconds: int) -> HorizonConditioning:
    if max_duration_seconds == 0:
        return HorizonConditioning(log_horizon_norm=0.0, sqrt_horizon_norm=0.0)
    log_max = math.log(1.0 + max_duration_seconds)
    log_norm = math.log(1.0 + horizon_seconds) / log_max if log_max > 0 else 0.0
    sqrt_norm = math.sqrt(horizon_seconds) / math.sqrt(max_duration_seconds)
    return HorizonConditioning(log_horizon_norm=log_norm, sqrt_horizon_norm=sqrt_norm)


# --------------------------
# Rolling state
# --------------------------

@dataclass(frozen=True)
class KlinePoint:
    high: float
    low: float
    close: float
    quote_asset_volume: float


class Frame:
    """All symbol points sharing one timestamp."""

    def __init__(self, ts_ms_utc: int):
        self.ts_ms_utc = ts_ms_utc
        self.points: List[Optional[KlinePoint]] = [None] * len(SYMBOLS)

    def insert(self, symbol_id: int, point: KlinePoint) -> None:
        idx = _SYMBOL_INDEX.get(symbol_id)
        if idx is None:
            raise UnknownSymbolIdError(symbol_id, self.ts_ms_utc)
        if self.points[idx] is not None:
            raise DuplicateSymbolInFrameError(symbol_id, self.ts_ms_utc)
        self.points[idx] = point

    def missing_symbols(self) -> List[str]:
        return [SYMBOL_CODES[i].upper() for i, p in enumerate(self.points) if p is None]


def _ln(x: float) -> float:
    if x > 0:
        return math.log(x)
    if x == 0:
        return -math.inf
    return math.nan


def _ln_ratio(a: float, b: float) -> float:
    """ln(a / b) with IEEE division: a zero divisor gives +inf or nan instead of raising."""
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        same_sign = (a > 0) == (math.copysign(1.0, b) > 0)
        return math.inf if same_sign else math.nan
    return _ln(a / b)


class SymbolRollingState:
    def __init__(self, max_window: int):
        self.max_window = max_window
        self.closes: deque = deque(maxlen=max_window + 1)
        self.highs: deque = deque(maxlen=max_window + 1)
        self.lows: deque = deque(maxlen=max_window + 1)
        self.quote_volumes: deque = deque(maxlen=max_window + 1)
        self.returns: deque = deque(maxlen=max_window)

    def reset(self) -> None:
        self.closes.clear()
        self.highs.clear()
        self.lows.clear()
        self.quote_volumes.clear()
        self.returns.clear()

    def push(self, point: KlinePoint) -> None:
        if self.closes:
            self.returns.append(_ln_ratio(point.close, self.closes[-1]))
        self.closes.append(point.close)
        self.highs.append(point.high)
        self.lows.append(point.low)
        self.quote_volumes.append(point.quote_asset_volume)

    def is_warm(self, windows: Sequence[int]) -> bool:
        if len(self.closes) <= self.max_window or len(self.returns) < self.max_window:
            return False
        for w in windows:
            if (len(self.closes) <= w or len(self.highs) < w
                    or len(self.quote_volumes) < w or len(self.returns) < w):
                return False
        return True

    def ret_1s(self) -> float:
        return self.returns[-1]

    def ret_w(self, w: int) -> float:
        return _ln_ratio(self.closes[-1], self.closes[len(self.closes) - 1 - w])

    def range_w(self, w: int) -> float:
        start = len(self.highs) - w
        max_high = max(islice(self.highs, start, None))
        min_low = min(islice(self.lows, start, None))
        return _ln_ratio(max_high, min_low)

    def vol_w(self, w: int) -> float:
        window = list(islice(self.returns, len(self.returns) - w, None))
        mean = sum(window) / len(window)
        variance = sum((v - mean) * (v - mean) for v in window) / len(window)
        return math.sqrt(variance)

    def quote_vol_w(self, w: int) -> float:
        total = sum(islice(self.quote_volumes, len(self.quote_volumes) - w, None))
        return _ln(1.0 + total)

    def feature_values(self, windows: Sequence[int]) -> List[float]:
        values = [self.ret_1s()]
        values.extend(self.ret_w(w) for w in windows)
        values.extend(self.range_w(w) for w in windows)
        values.extend(self.vol_w(w) for w in windows)
        values.extend(self.quote_vol_w(w) for w in windows)
        return values


def time_of_week_encoding(ts_ms_utc: int) -> Tuple[float, float]:
    try:
        dt = ms_to_datetime(ts_ms_utc)
    except OverflowError:
        raise InvalidTimestampError(ts_ms_utc) from None
    seconds_of_week = dt.weekday() * 86_400 + dt.hour * 3600 + dt.minute * 60 + dt.second
    angle = 2.0 * math.pi * (seconds_of_week / WEEK_SECONDS)
    return math.sin(angle), math.cos(angle)


# --------------------------
# Transform
# --------------------------

class _TransformRun:
    """Mutable state of a single transform pass over an ordered point stream."""

    def __init__(self, req: FeatureTransformRequest, cfg: FeatureTransformConfig, logger: logging.Logger):
        self.req = req
        self.cfg = cfg
        self.logger = logger
        self.windows = list(cfg.windows_seconds)
        max_window = max(max(self.windows), 1)
        self.states = [SymbolRollingState(max_window) for _ in SYMBOLS]
        self.last_seen_ts: Optional[int] = None
        self.rows: List[FeatureRow] = []
        self.report = FeatureTransformReport(
            input_points=expected_points(req.start_ts_ms_utc, req.end_ts_ms_utc_exclusive)
        )

    def reset_segment(self) -> None:
        for state in self.states:
            state.reset()

    def _record_skip(self, start: int, end_exclusive: int, first_error: str) -> None:
        self.report.skipped_points += expected_points(start, end_exclusive)
        if len(self.report.gap_ranges) < MAX_REPORTED_GAP_RANGES:
            self.report.gap_ranges.append((start, end_exclusive))
        self.reset_segment()
        if self.report.first_error is None:
            self.report.first_error = first_error

    def handle_gap(self, expected_next: int, start: int, end_exclusive: int) -> None:
        if end_exclusive <= start:
            return
        missing = expected_points(start, end_exclusive)
        if self.cfg.gap_policy is GapPolicy.STRICT:
            raise ContinuityGapError(expected_next, end_exclusive, missing)
        self.logger.warning(
            f"Feature gap detected: expected_next={expected_next} range=[{start}, {end_exclusive}) missing={missing}; skipping"
        )
        self._record_skip(start, end_exclusive, f"continuity gap from {start} to {end_exclusive}")

    def handle_incomplete(self, ts: int, missing_symbols: List[str]) -> None:
        if self.cfg.gap_policy is GapPolicy.STRICT:
            raise IncompleteFrameError(ts, missing_symbols)
        self.logger.warning(f"Incomplete frame at {ts} missing={missing_symbols}; skipping")
        self._record_skip(ts, ts + STEP_MS, f"incomplete frame at {ts}")

    def process_frame(self, frame: Frame) -> None:
        ts = frame.ts_ms_utc
        if ts < self.req.start_ts_ms_utc or ts >= self.req.end_ts_ms_utc_exclusive:
            return

        if self.last_seen_ts is not None:
            expected = self.last_seen_ts + STEP_MS
            if ts != expected:
                self.handle_gap(expected, expected, ts)
        elif ts > self.req.start_ts_ms_utc:
            self.handle_gap(self.req.start_ts_ms_utc, self.req.start_ts_ms_utc, ts)

        # Advances even for incomplete frames so the next frame is not reported as a gap
        self.last_seen_ts = ts

        missing = frame.missing_symbols()
        if missing:
            self.handle_incomplete(ts, missing)
            return

        for state, point in zip(self.states, frame.points):
            state.push(point)

        if not all(state.is_warm(self.windows) for state in self.states):
            return

        values: List[float] = []
        for state in self.states:
            values.extend(state.feature_values(self.windows))
        values.extend(time_of_week_encoding(ts))
        self.rows.append(FeatureRow(ts_ms_utc=ts, values=values))

    def finish(self) -> None:
        end = self.req.end_ts_ms_utc_exclusive
        if self.last_seen_ts is not None:
            if self.last_seen_ts < end - STEP_MS:
                tail_start = self.last_seen_ts + STEP_MS
                self.handle_gap(tail_start, tail_start, end)
        elif self.report.input_points > 0:
            self.handle_gap(self.req.start_ts_ms_utc, self.req.start_ts_ms_utc, end)
        self.report.output_points = len(self.rows)


def transform_points(points: Iterable[Sequence], req: FeatureTransformRequest,
                     cfg: Optional[FeatureTransformConfig] = None,
                     logger: Optional[logging.Logger] = None) -> Tuple[FeatureSchema, List[FeatureRow], FeatureTransformReport]:
    """Transform `(ts, symbol_id, high, low, close, quote_asset_volume)` rows ordered by (ts, symbol_id)."""
    cfg = cfg or FeatureTransformConfig()
    logger = get_logger(logger)
    validate_request(req)
    validate_config(cfg)
    schema = build_feature_schema(cfg, logger)

    run = _TransformRun(req, cfg, logger)
    frame: Optional[Frame] = None
    for ts, symbol_id, high, low, close, quote_volume in points:
        if ts % STEP_MS != 0:
            raise InvalidTimestampError(ts)
        point = KlinePoint(high=high, low=low, close=close, quote_asset_volume=quote_volume)
        if frame is not None and frame.ts_ms_utc == ts:
            frame.insert(symbol_id, point)
            continue
        if frame is not None:
            run.process_frame(frame)
        frame = Frame(ts)
        frame.insert(symbol_id, point)
    if frame is not None:
        run.process_frame(frame)

    run.finish()
    report = run.report
    logger.info(
        f"Feature transform finished: input={report.input_points} output={report.output_points} "
        f"skipped={report.skipped_points} gap_ranges_reported={len(report.gap_ranges)}"
    )
    return schema, run.rows, report


def _iter_store_points(conn: sqlite3.Connection, req: FeatureTransformRequest) -> Iterator[Tuple]:
    try:
        cursor = conn.execute(FEATURE_POINTS_SQL, (req.start_ts_ms_utc, req.end_ts_ms_utc_exclusive))
        for row in cursor:
            yield row
    except sqlite3.Error as e:
        raise StoreQueryError(f"sqlite error: {e}") from e


def transform_store_range(store_path: str, req: FeatureTransformRequest,
                          cfg: Optional[FeatureTransformConfig] = None,
                          logger: Optional[logging.Logger] = None) -> Tuple[FeatureSchema, List[FeatureRow], FeatureTransformReport]:
    cfg = cfg or FeatureTransformConfig()
    logger = get_logger(logger)
    validate_request(req)
    validate_config(cfg)
    logger.info(
        f"Feature transform start: store={store_path} range=[{req.start_ts_ms_utc}, {req.end_ts_ms_utc_exclusive}) "
        f"windows={list(cfg.windows_seconds)} gap_policy={cfg.gap_policy.value}"
    )
    try:
        conn = sqlite3.connect(store_path)
    except sqlite3.Error as e:
        raise StoreQueryError(f"sqlite error: {e}") from e
    try:
        return transform_points(_iter_store_points(conn, req), req, cfg, logger)
    finally:
        conn.close()


def transform_store_range_for_training(store_path: str, req: FeatureTransformRequest,
                                       cfg: Optional[FeatureTransformConfig] = None,
                                       logger: Optional[logging.Logger] = None):
    return transform_store_range(store_path, req, cfg, logger)


def transform_store_range_for_runtime_cold_start(store_path: str, req: FeatureTransformRequest,
                                                 cfg: Optional[FeatureTransformConfig] = None,
                                                 logger: Optional[logging.Logger] = None):
    # Same code path as training so warm-up produces identical values
    return transform_store_range(store_path, req, cfg, logger)


# --------------------------
# Parquet
# --------------------------

def feature_rows_to_frame(schema: FeatureSchema, rows: Sequence[FeatureRow]) -> 'pd.DataFrame':
    names = schema.column_names
    df = pd.DataFrame([r.values for r in rows], columns=names, dtype="float64")
    df.insert(0, TS_COLUMN, pd.Series([r.ts_ms_utc for r in rows], dtype="int64"))
    return df


def write_feature_parquet(schema: FeatureSchema, rows: Sequence[FeatureRow], path: str,
                          logger: Optional[logging.Logger] = None) -> str:
    df = feature_rows_to_frame(schema, rows)
    atomic_write_parquet(df, path, metadata={
        META_SCHEMA_VERSION: schema.version,
        META_SCHEMA_FINGERPRINT: schema.fingerprint,
    })
    get_logger(logger).info(f"Saved {len(df)} feature rows ({len(schema.columns)} columns) -> {path}")
    return path


def read_feature_parquet(path: str, expected_version: int, expected_fingerprint: str) -> Tuple[FeatureSchema, 'pd.DataFrame']:
    """Load a feature matrix, rejecting incompatible files from their metadata before reading any rows."""
    file_schema = pq.read_schema(path)
    meta = file_schema.metadata or {}
    raw_version = meta.get(META_SCHEMA_VERSION.encode("utf-8"), b"0")
    try:
        version = int(raw_version.decode("utf-8"))
    except ValueError:
        version = 0
    fingerprint = meta.get(META_SCHEMA_FINGERPRINT.encode("utf-8"), b"").decode("utf-8")
    schema = FeatureSchema(
        version=version,
        fingerprint=fingerprint,
        columns=[FeatureColumn(name=n) for n in file_schema.names if n != TS_COLUMN],
    )
    assert_schema_compatible(expected_version, expected_fingerprint, schema)
    df = pq.read_table(path).to_pandas()
    return schema, df
