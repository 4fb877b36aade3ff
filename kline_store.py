import os
import logging
import sqlite3
from typing import Iterator, Optional, Sequence, Tuple

from binance_klines import BinanceSymbol, Kline1s
from features import FEATURE_POINTS_SQL
from pipeline_config import get_logger

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS klines_1s (
        symbol_id INTEGER NOT NULL,
        open_time_ms INTEGER NOT NULL,
        open REAL NOT NULL,
        high REAL NOT NULL,
        low REAL NOT NULL,
        close REAL NOT NULL,
        volume REAL NOT NULL,
        close_time_ms INTEGER NOT NULL,
        quote_asset_volume REAL NOT NULL,
        trade_count INTEGER NOT NULL,
        taker_buy_base_volume REAL NOT NULL,
        taker_buy_quote_volume REAL NOT NULL,
        PRIMARY KEY(symbol_id, open_time_ms)
    ) WITHOUT ROWID
"""

UPSERT_SQL = """
    INSERT INTO klines_1s (
        symbol_id, open_time_ms, open, high, low, close, volume, close_time_ms,
        quote_asset_volume, trade_count, taker_buy_base_volume, taker_buy_quote_volume
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(symbol_id, open_time_ms) DO UPDATE SET
        open = excluded.open,
        high = excluded.high,
        low = excluded.low,
        close = excluded.close,
        volume = excluded.volume,
        close_time_ms = excluded.close_time_ms,
        quote_asset_volume = excluded.quote_asset_volume,
        trade_count = excluded.trade_count,
        taker_buy_base_volume = excluded.taker_buy_base_volume,
        taker_buy_quote_volume = excluded.taker_buy_quote_volume
"""

COUNT_RANGE_SQL = """
    SELECT COUNT(*) FROM klines_1s
    WHERE symbol_id = ? AND open_time_ms >= ? AND open_time_ms < ?
"""


class KlineStore:
    """SQLite store of 1s klines keyed by (symbol_id, open_time_ms).

    Writers upsert whole batches in one transaction; the feature transform reads the same
    table through `iter_feature_points`.
    """

    def __init__(self, path: str, conn: sqlite3.Connection, logger: Optional[logging.Logger] = None):
        self.path = path
        self._conn = conn
        self.logger = get_logger(logger)

    @classmethod
    def open(cls, path: str, logger: Optional[logging.Logger] = None) -> "KlineStore":
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        conn = sqlite3.connect(path, timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
            with conn:
                conn.execute(CREATE_TABLE_SQL)
        except sqlite3.Error:
            conn.close()
            raise
        return cls(path, conn, logger)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "KlineStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def upsert_rows(self, symbol: BinanceSymbol, rows: Sequence[Kline1s]) -> int:
        if not rows:
            return 0
        params = [
            (
                symbol.symbol_id, r.open_time_ms, r.open, r.high, r.low, r.close, r.volume, r.close_time_ms,
                r.quote_asset_volume, r.trade_count, r.taker_buy_base_volume, r.taker_buy_quote_volume,
            )
            for r in rows
        ]
        with self._conn:
            self._conn.executemany(UPSERT_SQL, params)
        self.logger.info(f"Store upsert {symbol.as_str()}: {len(params)} rows")
        return len(params)

    def count_range(self, symbol: BinanceSymbol, start_ts_ms: int, end_ts_ms_exclusive: int) -> int:
        row = self._conn.execute(COUNT_RANGE_SQL, (symbol.symbol_id, start_ts_ms, end_ts_ms_exclusive)).fetchone()
        return int(row[0])

    def iter_feature_points(self, start_ts_ms: int, end_ts_ms_exclusive: int) -> Iterator[Tuple[int, int, float, float, float, float]]:
        """(ts, symbol_id, high, low, close, quote_asset_volume) ordered by (ts, symbol_id)."""
        cursor = self._conn.execute(FEATURE_POINTS_SQL, (start_ts_ms, end_ts_ms_exclusive))
        for row in cursor:
            yield row
