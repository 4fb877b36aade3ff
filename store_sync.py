import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from binance_klines import (
    BinanceSymbol,
    HttpFetcher,
    InvalidRequestError,
    KlineLoadError,
    KlineLoadRequest,
    RequestsFetcher,
    load_1s_klines,
    validate_request,
)
from kline_store import KlineStore
from pipeline_config import (
    STEP_MS,
    HistoricalKlinesConfig,
    datetime_to_ms,
    expected_points,
    get_logger,
    ms_to_datetime,
)

DAY_MS = 86_400_000


class CompletenessError(KlineLoadError):
    def __init__(self, symbol: BinanceSymbol, expected: int, have: int):
        self.symbol = symbol
        self.expected = expected
        self.have = have
        self.missing = max(expected - have, 0)
        super().__init__(
            f"completeness assertion failed for {symbol.as_str()}: expected={expected} have={have} missing={self.missing}"
        )


@dataclass
class SymbolSyncSummary:
    symbol: BinanceSymbol
    expected: int
    have: int
    windows_loaded: int = 0

    @property
    def missing(self) -> int:
        return max(self.expected - self.have, 0)


@dataclass
class AuditTotals:
    expected: int = 0
    actual: int = 0
    missing: int = 0
    duplicates_removed: int = 0


@dataclass
class GapAuditResult:
    totals: Dict[str, AuditTotals]
    initial_missing: int
    remaining_missing: int
    # (symbol, first_missing_ms, last_missing_ms, still_missing) for ranges the refill could not close
    unresolved: List[Tuple[str, int, int, int]] = field(default_factory=list)


def _date_of(ts_ms: int) -> date:
    return ms_to_datetime(ts_ms).date()


def _date_start_ms(d: date) -> int:
    return datetime_to_ms(datetime(d.year, d.month, d.day, tzinfo=timezone.utc))


def _next_month(d: date) -> date:
    if d.month == 12:
        return date(d.year + 1, 1, 1)
    return date(d.year, d.month + 1, 1)


def day_floor_ms(ts_ms: int) -> int:
    return (ts_ms // DAY_MS) * DAY_MS


def month_windows(start_ts: int, end_ts: int) -> List[Tuple[int, int]]:
    """Calendar-month slices of [start, end), clipped to the range."""
    out: List[Tuple[int, int]] = []
    first = _date_of(start_ts)
    month = date(first.year, first.month, 1)
    while _date_start_ms(month) < end_ts:
        nxt = _next_month(month)
        window = (max(start_ts, _date_start_ms(month)), min(end_ts, _date_start_ms(nxt)))
        if window[1] > window[0]:
            out.append(window)
        month = nxt
    return out


def day_windows(start_ts: int, end_ts: int) -> List[Tuple[int, int]]:
    out: List[Tuple[int, int]] = []
    day = _date_of(start_ts)
    while _date_start_ms(day) < end_ts:
        day_start = _date_start_ms(day)
        window = (max(start_ts, day_start), min(end_ts, day_start + DAY_MS))
        if window[1] > window[0]:
            out.append(window)
        day = day + timedelta(days=1)
    return out


def _fill_window(store: KlineStore, symbol: BinanceSymbol, window: Tuple[int, int], label: str,
                 cfg: HistoricalKlinesConfig, fetcher: HttpFetcher, logger: logging.Logger) -> bool:
    start, end = window
    expected = expected_points(start, end)
    have = store.count_range(symbol, start, end)
    if have >= expected:
        return False
    req = KlineLoadRequest(symbol=symbol, start_ts_ms_utc=start, end_ts_ms_utc_exclusive=end)
    loaded = load_1s_klines(req, cfg, fetcher, logger)
    store.upsert_rows(symbol, loaded.rows)
    after = store.count_range(symbol, start, end)
    logger.info(
        f"{label} {symbol.as_str()} {_date_of(start)} -> {_date_of(end - STEP_MS)} | expected={expected} "
        f"before={have} after={after} missing_after={max(expected - after, 0)}"
    )
    return True


def sync_symbol_from_archives(store: KlineStore, symbol: BinanceSymbol, start_ts: int, end_ts: int,
                              cfg: Optional[HistoricalKlinesConfig] = None, fetcher: Optional[HttpFetcher] = None,
                              strict: bool = True, logger: Optional[logging.Logger] = None) -> SymbolSyncSummary:
    """Bring the store to full coverage of [start, end) for one symbol from historical archives.

    A month pass loads whole months that are short of points, then a day pass refills any day
    still short. With `strict`, a remaining shortfall raises CompletenessError.
    """
    cfg = cfg or HistoricalKlinesConfig()
    logger = get_logger(logger)
    validate_request(KlineLoadRequest(symbol=symbol, start_ts_ms_utc=start_ts, end_ts_ms_utc_exclusive=end_ts))
    if fetcher is None:
        fetcher = RequestsFetcher(cfg.http_timeout_ms)

    logger.info(f"Store sync start: {symbol.as_str()} {_date_of(start_ts)} -> {_date_of(end_ts - STEP_MS)} store={store.path}")
    loaded = 0
    for window in month_windows(start_ts, end_ts):
        loaded += _fill_window(store, symbol, window, "month", cfg, fetcher, logger)
    for window in day_windows(start_ts, end_ts):
        loaded += _fill_window(store, symbol, window, "day", cfg, fetcher, logger)

    summary = SymbolSyncSummary(
        symbol=symbol,
        expected=expected_points(start_ts, end_ts),
        have=store.count_range(symbol, start_ts, end_ts),
        windows_loaded=loaded,
    )
    if summary.have != summary.expected:
        if strict:
            raise CompletenessError(symbol, summary.expected, summary.have)
        logger.warning(f"INCOMPLETE {symbol.as_str()} | expected={summary.expected} have={summary.have} missing={summary.missing}")
    else:
        logger.info(f"COMPLETE {symbol.as_str()} | expected={summary.expected} have={summary.have} missing=0")
    return summary


def audit_archive_gaps(symbols: Sequence[BinanceSymbol], start_ts: int, end_ts: int,
                       cfg: Optional[HistoricalKlinesConfig] = None, fetcher: Optional[HttpFetcher] = None,
                       logger: Optional[logging.Logger] = None) -> GapAuditResult:
    """Measure archive coverage month by month, then re-load exactly each reported gap once."""
    cfg = cfg or HistoricalKlinesConfig()
    logger = get_logger(logger)
    if end_ts <= start_ts:
        raise InvalidRequestError(f"invalid audit range: start={start_ts} end={end_ts} (exclusive)")
    if fetcher is None:
        fetcher = RequestsFetcher(cfg.http_timeout_ms)

    totals: Dict[str, AuditTotals] = {s.as_str(): AuditTotals() for s in symbols}
    gaps: Dict[str, List[Tuple[int, int]]] = {s.as_str(): [] for s in symbols}

    for window_start, window_end in month_windows(start_ts, end_ts):
        logger.info(f"Audit window {_date_of(window_start)} -> {_date_of(window_end)}")
        for symbol in symbols:
            req = KlineLoadRequest(symbol=symbol, start_ts_ms_utc=window_start, end_ts_ms_utc_exclusive=window_end)
            cov = load_1s_klines(req, cfg, fetcher, logger).coverage
            t = totals[symbol.as_str()]
            t.expected += cov.expected_points
            t.actual += cov.actual_points
            t.missing += cov.missing_points
            t.duplicates_removed += cov.duplicate_points_removed
            logger.info(
                f"  {symbol.as_str()} | expected={cov.expected_points} actual={cov.actual_points} "
                f"missing={cov.missing_points} dupes_removed={cov.duplicate_points_removed}"
            )
            if cov.missing_points > 0:
                gaps[symbol.as_str()].extend(cov.gap_ranges)

    initial_missing = sum(t.missing for t in totals.values())
    result = GapAuditResult(totals=totals, initial_missing=initial_missing, remaining_missing=0)
    if initial_missing == 0:
        logger.info("Audit result: no gaps detected across all symbols in audited range")
        return result

    logger.info("Refill pass: re-loading only missing ranges per symbol")
    for symbol in symbols:
        for gap_start, gap_end in gaps[symbol.as_str()]:
            req = KlineLoadRequest(symbol=symbol, start_ts_ms_utc=gap_start, end_ts_ms_utc_exclusive=gap_end + STEP_MS)
            cov = load_1s_klines(req, cfg, fetcher, logger).coverage
            if cov.missing_points > 0:
                result.remaining_missing += cov.missing_points
                result.unresolved.append((symbol.as_str(), gap_start, gap_end, cov.missing_points))
                logger.warning(f"Refill unresolved {symbol.as_str()} | {gap_start} -> {gap_end} missing={cov.missing_points}")

    logger.info(f"Audit result: initial_missing={initial_missing} remaining_missing={result.remaining_missing}")
    return result
