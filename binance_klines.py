import os
import io
import csv
import time
import hashlib
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import requests

from pipeline_config import (
    BINANCE_DATA_BASE_URL,
    MAX_REPORTED_GAP_RANGES,
    STEP_MS,
    HistoricalKlinesConfig,
    datetime_to_ms,
    expected_points,
    get_logger,
    ms_to_datetime,
    ms_to_iso,
)

T = TypeVar("T")

# Archive CSV layout (headerless); columns past the 11th are ignored
KLINE_COLUMNS = [
    "open_time_ms", "open", "high", "low", "close", "volume",
    "close_time_ms", "quote_asset_volume", "trade_count", "taker_buy_base_volume", "taker_buy_quote_volume",
]
MIN_RECORD_COLUMNS = 11
PARQUET_COMPRESSION = "zstd"


class BinanceSymbol(Enum):
    """Fixed symbol set. Declaration order is the feature column order; ids are the store contract."""
    BTCUSDT = (1, "btc")
    ETHUSDT = (2, "eth")
    SOLUSDT = (3, "sol")
    XRPUSDT = (4, "xrp")

    def __init__(self, symbol_id: int, code: str):
        self.symbol_id = symbol_id
        self.code = code

    def as_str(self) -> str:
        return self.name

    @classmethod
    def from_id(cls, symbol_id: int) -> Optional["BinanceSymbol"]:
        for sym in cls:
            if sym.symbol_id == symbol_id:
                return sym
        return None

    @classmethod
    def parse(cls, text: str) -> "BinanceSymbol":
        token = text.replace(" ", "").replace("/", "").replace("-", "").upper()
        try:
            return cls[token]
        except KeyError:
            raise ValueError(f"unsupported symbol '{text}'; expected one of {[s.name for s in cls]}") from None


class ArchiveKind(Enum):
    MONTHLY = "monthly"
    DAILY = "daily"


class LocalArchiveSource(Enum):
    CACHED = "cached"
    DOWNLOADED = "downloaded"


@dataclass(frozen=True)
class ArchiveRef:
    kind: ArchiveKind
    symbol: BinanceSymbol
    period_start_ts_ms_utc: int
    period_end_ts_ms_utc_exclusive: int
    url: str
    relative_path: str


@dataclass(frozen=True)
class LocalArchive:
    archive: ArchiveRef
    local_path: str
    source: LocalArchiveSource


@dataclass(frozen=True)
class Kline1s:
    open_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time_ms: int
    quote_asset_volume: float
    trade_count: int
    taker_buy_base_volume: float
    taker_buy_quote_volume: float


@dataclass(frozen=True)
class KlineLoadRequest:
    symbol: BinanceSymbol
    start_ts_ms_utc: int
    end_ts_ms_utc_exclusive: int


@dataclass
class KlineCoverageReport:
    expected_points: int
    actual_points: int
    missing_points: int
    duplicate_points_removed: int
    total_gap_ranges: int
    # Inclusive (first_missing_ms, last_missing_ms) pairs, capped at MAX_REPORTED_GAP_RANGES
    gap_ranges: List[Tuple[int, int]] = field(default_factory=list)


@dataclass
class KlineLoadResult:
    symbol: BinanceSymbol
    rows: List[Kline1s]
    coverage: KlineCoverageReport


# --------------------------
# Errors
# --------------------------

class KlineLoadError(Exception):
    """Base class for historical kline loading failures."""


class InvalidRequestError(KlineLoadError):
    pass


class InvalidTimestampError(KlineLoadError):
    def __init__(self, ts_ms: int):
        self.ts_ms = ts_ms
        super().__init__(f"invalid timestamp in request: {ts_ms}")


class ArchiveIOError(KlineLoadError):
    def __init__(self, path: str, error: OSError):
        self.path = path
        super().__init__(f"I/O error on {path}: {error}")


class HttpClientBuildError(KlineLoadError):
    pass


class HttpRequestError(KlineLoadError):
    def __init__(self, url: str, message: str):
        self.url = url
        self.message = message
        super().__init__(f"HTTP request failed for {url}: {message}")


class EmptyZipArchiveError(KlineLoadError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"archive at {path} has no entries")


class MissingCsvEntryError(KlineLoadError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"archive at {path} has no CSV entry")


class ZipArchiveError(KlineLoadError):
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"zip error for {path}: {message}")


class CsvFormatError(KlineLoadError):
    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"CSV error for {path}: {message}")


class InvalidRecordColumnsError(KlineLoadError):
    def __init__(self, found: int, expected: int = MIN_RECORD_COLUMNS):
        self.found = found
        self.expected = expected
        super().__init__(f"kline record has {found} columns, expected at least {expected}")


class ParseFieldError(KlineLoadError):
    def __init__(self, field_name: str, value: str):
        self.field = field_name
        self.value = value
        super().__init__(f"failed to parse field {field_name} value '{value}'")


class InvalidChecksumPayloadError(KlineLoadError):
    def __init__(self, url: str, payload: str):
        self.url = url
        self.payload = payload
        super().__init__(f"invalid checksum payload for {url}: {payload}")


class ChecksumMismatchError(KlineLoadError):
    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"checksum mismatch for {path}: expected {expected}, actual {actual}")


# --------------------------
# Request validation and planning
# --------------------------

def validate_request(req: KlineLoadRequest) -> None:
    if req.end_ts_ms_utc_exclusive <= req.start_ts_ms_utc:
        raise InvalidRequestError("end_ts_ms_utc_exclusive must be greater than start_ts_ms_utc")
    if req.start_ts_ms_utc % STEP_MS != 0 or req.end_ts_ms_utc_exclusive % STEP_MS != 0:
        raise InvalidRequestError("start/end timestamps must be 1000ms aligned")
    for ts in (req.start_ts_ms_utc, req.end_ts_ms_utc_exclusive):
        try:
            ms_to_datetime(ts)
        except OverflowError:
            raise InvalidTimestampError(ts) from None


def _day_start_ms(d: date) -> int:
    return datetime_to_ms(datetime(d.year, d.month, d.day, tzinfo=timezone.utc))


def _next_month(d: date) -> date:
    if d.month == 12:
        return date(d.year + 1, 1, 1)
    return date(d.year, d.month + 1, 1)


def _monthly_archive(symbol: BinanceSymbol, month: date, start_ms: int, end_ms: int, base_url: str) -> ArchiveRef:
    sym = symbol.as_str()
    filename = f"{sym}-1s-{month.year:04d}-{month.month:02d}.zip"
    return ArchiveRef(
        kind=ArchiveKind.MONTHLY,
        symbol=symbol,
        period_start_ts_ms_utc=start_ms,
        period_end_ts_ms_utc_exclusive=end_ms,
        url=f"{base_url}/monthly/klines/{sym}/1s/{filename}",
        relative_path=f"{sym}/1s/monthly/{filename}",
    )


def _daily_archive(symbol: BinanceSymbol, day: date, start_ms: int, end_ms: int, base_url: str) -> ArchiveRef:
    sym = symbol.as_str()
    filename = f"{sym}-1s-{day.year:04d}-{day.month:02d}-{day.day:02d}.zip"
    return ArchiveRef(
        kind=ArchiveKind.DAILY,
        symbol=symbol,
        period_start_ts_ms_utc=start_ms,
        period_end_ts_ms_utc_exclusive=end_ms,
        url=f"{base_url}/daily/klines/{sym}/1s/{filename}",
        relative_path=f"{sym}/1s/daily/{filename}",
    )


def plan_required_archives(req: KlineLoadRequest, base_url: str = BINANCE_DATA_BASE_URL) -> List[ArchiveRef]:
    """Minimal ordered list of archives covering [start, end).

    A calendar month fully inside the request is served by its monthly archive; any other
    month contributes one daily archive per overlapping day. Output is earliest-first.
    """
    validate_request(req)
    start, end = req.start_ts_ms_utc, req.end_ts_ms_utc_exclusive
    try:
        first = ms_to_datetime(start)
        last_inclusive = ms_to_datetime(end - 1)
        month = date(first.year, first.month, 1)
        end_month = date(last_inclusive.year, last_inclusive.month, 1)

        out: List[ArchiveRef] = []
        while month <= end_month:
            next_month = _next_month(month)
            month_start = _day_start_ms(month)
            month_end = _day_start_ms(next_month)
            if start <= month_start and end >= month_end:
                out.append(_monthly_archive(req.symbol, month, month_start, month_end, base_url))
            else:
                day = month
                while day < next_month:
                    day_start = _day_start_ms(day)
                    day_end = day_start + 86_400_000
                    if start < day_end and day_start < end:
                        out.append(_daily_archive(req.symbol, day, day_start, day_end, base_url))
                    day = date.fromordinal(day.toordinal() + 1)
            month = next_month
    except (OverflowError, ValueError):
        # Only reachable at the edge of the representable calendar (year 9999)
        raise InvalidTimestampError(end) from None
    return out


# --------------------------
# Remote fetch
# --------------------------

class HttpFetcher:
    """Fetches the raw body of a URL. Implementations raise HttpRequestError on any failure."""

    def get_bytes(self, url: str) -> bytes:
        raise NotImplementedError


class RequestsFetcher(HttpFetcher):
    def __init__(self, timeout_ms: int):
        if timeout_ms <= 0:
            raise HttpClientBuildError(f"HTTP client build error: timeout must be positive, got {timeout_ms}ms")
        self._timeout_sec = timeout_ms / 1000.0
        self._session = requests.Session()

    def get_bytes(self, url: str) -> bytes:
        try:
            resp = self._session.get(url, timeout=self._timeout_sec)
        except requests.RequestException as e:
            raise HttpRequestError(url, str(e)) from e
        if not 200 <= resp.status_code < 300:
            raise HttpRequestError(url, f"unexpected HTTP status {resp.status_code}")
        return resp.content


def backoff_delay_ms(retry_backoff_ms: int, attempt: int) -> int:
    """Sleep before retry number `attempt` (1-based); the exponent is capped at 10."""
    return retry_backoff_ms * (1 << min(attempt - 1, 10))


def _with_retry(cfg: HistoricalKlinesConfig, url: str, fn: Callable[[], T], logger: logging.Logger) -> T:
    attempt = 0
    while True:
        try:
            return fn()
        except HttpRequestError as e:
            if attempt >= cfg.max_retries:
                raise
            attempt += 1
            wait_ms = backoff_delay_ms(cfg.retry_backoff_ms, attempt)
            logger.warning(f"Fetch failed for {url} (retry {attempt}/{cfg.max_retries}): {e.message}; sleeping {wait_ms}ms")
            time.sleep(wait_ms / 1000.0)


def fetch_bytes_with_retry(fetcher: HttpFetcher, url: str, cfg: HistoricalKlinesConfig,
                           logger: Optional[logging.Logger] = None) -> bytes:
    return _with_retry(cfg, url, lambda: fetcher.get_bytes(url), get_logger(logger))


def parse_checksum_payload(url: str, payload: bytes) -> str:
    """First whitespace token of a .CHECKSUM sidecar, lowercased. Must be a 64-char hex SHA-256."""
    text = payload.decode("utf-8", errors="replace")
    tokens = text.split()
    if not tokens:
        raise InvalidChecksumPayloadError(url, text.strip())
    token = tokens[0]
    if len(token) != 64:
        raise InvalidChecksumPayloadError(url, text.strip())
    try:
        bytes.fromhex(token)
    except ValueError:
        raise InvalidChecksumPayloadError(url, text.strip()) from None
    return token.lower()


def fetch_checksum_with_retry(fetcher: HttpFetcher, checksum_url: str, cfg: HistoricalKlinesConfig,
                              logger: Optional[logging.Logger] = None) -> str:
    payload = fetch_bytes_with_retry(fetcher, checksum_url, cfg, logger)
    return parse_checksum_payload(checksum_url, payload)


# --------------------------
# IO helpers
# --------------------------

def hash_file_sha256(path: str) -> str:
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):
                h.update(chunk)
    except OSError as e:
        raise ArchiveIOError(path, e) from e
    return h.hexdigest()


def write_atomic(path: str, data: bytes) -> None:
    """Write bytes to <path>.tmp, fsync, then rename over path so readers never see a partial file."""
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        raise ArchiveIOError(path, e) from e


def atomic_write_parquet(df: 'pd.DataFrame', path: str, metadata: Optional[dict] = None) -> None:
    """Write a DataFrame to Parquet atomically, merging `metadata` into the file's key/value metadata."""
    table = pa.Table.from_pandas(df, preserve_index=False)
    if metadata:
        merged = dict(table.schema.metadata or {})
        merged.update({str(k).encode("utf-8"): str(v).encode("utf-8") for k, v in metadata.items()})
        table = table.replace_schema_metadata(merged)
    tmp_path = path + ".tmp"
    if os.path.exists(tmp_path):
        os.remove(tmp_path)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    pq.write_table(table, tmp_path, compression=PARQUET_COMPRESSION)
    os.replace(tmp_path, path)


# --------------------------
# Archive synchronization
# --------------------------

def _cached(archive: ArchiveRef, local_path: str, logger: logging.Logger) -> LocalArchive:
    logger.info(f"Archive cached: {archive.symbol.as_str()} {archive.kind.value} -> {local_path}")
    return LocalArchive(archive=archive, local_path=local_path, source=LocalArchiveSource.CACHED)


def sync_archives_with_fetcher(archives: Sequence[ArchiveRef], cfg: HistoricalKlinesConfig, fetcher: HttpFetcher,
                               logger: Optional[logging.Logger] = None) -> List[LocalArchive]:
    """Ensure a verified local copy of every archive, in the given order."""
    logger = get_logger(logger)
    local: List[LocalArchive] = []

    for archive in archives:
        local_path = os.path.join(cfg.data_root, archive.relative_path)
        parent = os.path.dirname(local_path)
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError(parent, e) from e

        checksum_url = f"{archive.url}.CHECKSUM"
        expected_checksum: Optional[str] = None
        if os.path.exists(local_path):
            if not cfg.verify_checksum:
                local.append(_cached(archive, local_path, logger))
                continue
            expected = fetch_checksum_with_retry(fetcher, checksum_url, cfg, logger)
            actual = hash_file_sha256(local_path)
            if actual == expected:
                local.append(_cached(archive, local_path, logger))
                continue
            logger.warning(
                f"Checksum failed for cached archive {local_path}: expected={expected} actual={actual}; re-downloading"
            )
            expected_checksum = expected

        data = fetch_bytes_with_retry(fetcher, archive.url, cfg, logger)
        write_atomic(local_path, data)

        if cfg.verify_checksum:
            if expected_checksum is None:
                expected_checksum = fetch_checksum_with_retry(fetcher, checksum_url, cfg, logger)
            actual = hash_file_sha256(local_path)
            if actual != expected_checksum:
                # The bad file stays on disk for diagnosis
                logger.warning(f"Checksum failed for downloaded archive {local_path}: expected={expected_checksum} actual={actual}")
                raise ChecksumMismatchError(local_path, expected_checksum, actual)

        logger.info(f"Archive downloaded: {archive.symbol.as_str()} {archive.kind.value} -> {local_path} ({len(data)} bytes)")
        logger.debug(f"Archive source url: {archive.url}")
        local.append(LocalArchive(archive=archive, local_path=local_path, source=LocalArchiveSource.DOWNLOADED))

    return local


def sync_archives(req: KlineLoadRequest, cfg: Optional[HistoricalKlinesConfig] = None,
                  fetcher: Optional[HttpFetcher] = None, logger: Optional[logging.Logger] = None) -> List[LocalArchive]:
    cfg = cfg or HistoricalKlinesConfig()
    logger = get_logger(logger)
    archives = plan_required_archives(req, cfg.base_url)
    logger.info(
        f"Archive sync start: symbol={req.symbol.as_str()} archives={len(archives)} verify_checksum={cfg.verify_checksum}"
    )
    if fetcher is None:
        fetcher = RequestsFetcher(cfg.http_timeout_ms)
    return sync_archives_with_fetcher(archives, cfg, fetcher, logger)


# --------------------------
# Parsing
# --------------------------

def normalize_to_millis(ts: int) -> int:
    """Archive timestamps may be microseconds; detect by magnitude and truncate toward zero."""
    magnitude = abs(ts)
    sign = -1 if ts < 0 else 1
    if magnitude >= 1_000_000_000_000_000_000:
        return sign * (magnitude // 1_000_000)
    if magnitude >= 1_000_000_000_000_000:
        return sign * (magnitude // 1_000)
    return ts


def _parse_int(fields: Sequence[str], idx: int, name: str) -> int:
    raw = fields[idx]
    if raw != raw.strip() or "_" in raw:
        raise ParseFieldError(name, raw)
    try:
        return int(raw)
    except ValueError:
        raise ParseFieldError(name, raw) from None


def _parse_float(fields: Sequence[str], idx: int, name: str) -> float:
    raw = fields[idx]
    if raw != raw.strip() or "_" in raw:
        raise ParseFieldError(name, raw)
    try:
        return float(raw)
    except ValueError:
        raise ParseFieldError(name, raw) from None


def parse_kline_record(fields: Sequence[str]) -> Kline1s:
    if len(fields) < MIN_RECORD_COLUMNS:
        raise InvalidRecordColumnsError(len(fields), MIN_RECORD_COLUMNS)

    trade_count = _parse_int(fields, 8, "trade_count")
    if trade_count < 0:
        raise ParseFieldError("trade_count", fields[8])

    return Kline1s(
        open_time_ms=normalize_to_millis(_parse_int(fields, 0, "open_time_ms")),
        open=_parse_float(fields, 1, "open"),
        high=_parse_float(fields, 2, "high"),
        low=_parse_float(fields, 3, "low"),
        close=_parse_float(fields, 4, "close"),
        volume=_parse_float(fields, 5, "volume"),
        close_time_ms=normalize_to_millis(_parse_int(fields, 6, "close_time_ms")),
        quote_asset_volume=_parse_float(fields, 7, "quote_asset_volume"),
        trade_count=trade_count,
        taker_buy_base_volume=_parse_float(fields, 9, "taker_buy_base_volume"),
        taker_buy_quote_volume=_parse_float(fields, 10, "taker_buy_quote_volume"),
    )


def _read_csv_entry(path: str) -> bytes:
    try:
        with zipfile.ZipFile(path) as zf:
            entries = zf.infolist()
            if not entries:
                raise EmptyZipArchiveError(path)
            for entry in entries:
                if entry.is_dir() or not entry.filename.lower().endswith(".csv"):
                    continue
                return zf.read(entry)
    except zipfile.BadZipFile as e:
        raise ZipArchiveError(path, str(e)) from e
    except OSError as e:
        raise ArchiveIOError(path, e) from e
    raise MissingCsvEntryError(path)


def parse_zip_archive(path: str, req: KlineLoadRequest) -> List[Kline1s]:
    """Parse the archive's CSV entry, keeping rows whose open time lies in [start, end)."""
    body = _read_csv_entry(path)
    rows: List[Kline1s] = []
    try:
        reader = csv.reader(io.StringIO(body.decode("utf-8")))
        for record in reader:
            if not record:
                continue
            row = parse_kline_record(record)
            if req.start_ts_ms_utc <= row.open_time_ms < req.end_ts_ms_utc_exclusive:
                rows.append(row)
    except (csv.Error, UnicodeDecodeError) as e:
        raise CsvFormatError(path, str(e)) from e
    return rows


# --------------------------
# Coverage
# --------------------------

def merge_and_dedupe(rows: Sequence[Kline1s]) -> Tuple[List[Kline1s], int]:
    """Stable sort by open time; later rows sharing an open time are dropped and counted."""
    deduped: List[Kline1s] = []
    removed = 0
    for row in sorted(rows, key=lambda r: r.open_time_ms):
        if deduped and deduped[-1].open_time_ms == row.open_time_ms:
            removed += 1
        else:
            deduped.append(row)
    return deduped, removed


def _gap_ranges(req: KlineLoadRequest, rows: Sequence[Kline1s]) -> Tuple[List[Tuple[int, int]], int, int]:
    if req.end_ts_ms_utc_exclusive <= req.start_ts_ms_utc:
        return [], 0, 0

    full: List[Tuple[int, int]] = []
    cursor = req.start_ts_ms_utc
    for row in rows:
        if row.open_time_ms > cursor:
            full.append((cursor, row.open_time_ms - STEP_MS))
        cursor = row.open_time_ms + STEP_MS
    if cursor < req.end_ts_ms_utc_exclusive:
        full.append((cursor, req.end_ts_ms_utc_exclusive - STEP_MS))

    missing = sum((end - start) // STEP_MS + 1 for start, end in full)
    return full[:MAX_REPORTED_GAP_RANGES], len(full), missing


def compute_coverage(req: KlineLoadRequest, rows: Sequence[Kline1s], duplicate_points_removed: int) -> KlineCoverageReport:
    """Coverage of sorted, deduplicated rows against the request window."""
    reported, total, missing = _gap_ranges(req, rows)
    return KlineCoverageReport(
        expected_points=expected_points(req.start_ts_ms_utc, req.end_ts_ms_utc_exclusive),
        actual_points=len(rows),
        missing_points=missing,
        duplicate_points_removed=duplicate_points_removed,
        total_gap_ranges=total,
        gap_ranges=reported,
    )


def load_1s_klines(req: KlineLoadRequest, cfg: Optional[HistoricalKlinesConfig] = None,
                   fetcher: Optional[HttpFetcher] = None, logger: Optional[logging.Logger] = None) -> KlineLoadResult:
    """Sync, parse, merge and measure coverage for one symbol over [start, end)."""
    cfg = cfg or HistoricalKlinesConfig()
    logger = get_logger(logger)
    validate_request(req)
    local_archives = sync_archives(req, cfg, fetcher, logger)

    all_rows: List[Kline1s] = []
    for archive in local_archives:
        all_rows.extend(parse_zip_archive(archive.local_path, req))

    rows, duplicates = merge_and_dedupe(all_rows)
    coverage = compute_coverage(req, rows, duplicates)
    sym = req.symbol.as_str()
    if coverage.missing_points > 0:
        logger.info(
            f"Gap detected for {sym}: missing={coverage.missing_points} total_gap_ranges={coverage.total_gap_ranges} "
            f"reported={len(coverage.gap_ranges)} first={ms_to_iso(coverage.gap_ranges[0][0])}"
        )
    logger.info(
        f"Load finished for {sym} {ms_to_iso(req.start_ts_ms_utc)} -> {ms_to_iso(req.end_ts_ms_utc_exclusive)}: "
        f"expected={coverage.expected_points} actual={coverage.actual_points} missing={coverage.missing_points} "
        f"dupes_removed={coverage.duplicate_points_removed}"
    )
    return KlineLoadResult(symbol=req.symbol, rows=rows, coverage=coverage)


# --------------------------
# Tabular export
# --------------------------

def klines_to_frame(rows: Sequence[Kline1s]) -> 'pd.DataFrame':
    """Loaded rows as a DataFrame with KLINE_COLUMNS order and concrete int64/float64 dtypes."""
    df = pd.DataFrame([[getattr(r, c) for c in KLINE_COLUMNS] for r in rows], columns=KLINE_COLUMNS)
    for c in KLINE_COLUMNS:
        if c in ("open_time_ms", "close_time_ms", "trade_count"):
            df[c] = df[c].astype("int64")
        else:
            df[c] = df[c].astype("float64")
    return df


def write_klines_parquet(result: KlineLoadResult, path: str, logger: Optional[logging.Logger] = None) -> str:
    logger = get_logger(logger)
    df = klines_to_frame(result.rows)
    atomic_write_parquet(df, path, metadata={
        "symbol": result.symbol.as_str(),
        "expected_points": result.coverage.expected_points,
        "missing_points": result.coverage.missing_points,
    })
    logger.info(f"Saved {len(df)} rows for {result.symbol.as_str()} -> {path}")
    return path
