import os
import shutil
import sqlite3
import tempfile
import unittest
import zipfile
from datetime import datetime, timezone

import binance_klines as bk
import store_sync
from kline_store import KlineStore
from pipeline_config import HistoricalKlinesConfig

START = 1_704_067_200_000  # 2024-01-01T00:00:00Z


def kline(ts, close=1.0):
    return bk.Kline1s(ts, close, close + 0.5, close - 0.5, close, 1.0, ts + 999, 10.0, 1, 1.0, 1.0)


class NoNetworkFetcher(bk.HttpFetcher):
    def get_bytes(self, url):
        raise bk.HttpRequestError(url, "network disabled in tests")


class KlineStoreTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="store_test_")
        self.path = os.path.join(self.tempdir, "nested", "klines_1s.sqlite")

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_open_creates_compact_table(self):
        with KlineStore.open(self.path):
            pass
        conn = sqlite3.connect(self.path)
        try:
            ddl = conn.execute("SELECT sql FROM sqlite_master WHERE type='table' AND name='klines_1s'").fetchone()[0]
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        self.assertIn("WITHOUT ROWID", ddl.upper())
        self.assertEqual(mode.lower(), "wal")

    def test_upsert_is_idempotent_and_updates_values(self):
        with KlineStore.open(self.path) as store:
            self.assertEqual(store.upsert_rows(bk.BinanceSymbol.BTCUSDT, [kline(START), kline(START + 1000)]), 2)
            store.upsert_rows(bk.BinanceSymbol.BTCUSDT, [kline(START + 1000, close=5.0)])
            store.upsert_rows(bk.BinanceSymbol.ETHUSDT, [kline(START)])
            self.assertEqual(store.upsert_rows(bk.BinanceSymbol.ETHUSDT, []), 0)

            self.assertEqual(store.count_range(bk.BinanceSymbol.BTCUSDT, START, START + 2000), 2)
            self.assertEqual(store.count_range(bk.BinanceSymbol.BTCUSDT, START, START + 1000), 1)
            self.assertEqual(store.count_range(bk.BinanceSymbol.SOLUSDT, START, START + 2000), 0)

            points = list(store.iter_feature_points(START, START + 2000))
        self.assertEqual([(p[0], p[1]) for p in points], [(START, 1), (START, 2), (START + 1000, 1)])
        self.assertEqual(points[2][4], 5.0)


class StoreSyncTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="store_sync_test_")
        self.cfg = HistoricalKlinesConfig(data_root=os.path.join(self.tempdir, "archives"), verify_checksum=False)
        self.store = KlineStore.open(os.path.join(self.tempdir, "klines_1s.sqlite"))
        self.end = START + 5_000

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def write_day_archive(self, symbol, seconds):
        req = bk.KlineLoadRequest(symbol, START, self.end)
        archive = bk.plan_required_archives(req, self.cfg.base_url)[0]
        path = os.path.join(self.cfg.data_root, archive.relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        body = "".join(f"{START + s * 1000},1,1,1,1,1,{START + s * 1000 + 999},1,1,1,1,0\n" for s in seconds)
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr(f"{symbol.as_str()}-1s-2024-01-01.csv", body)

    def test_sync_fills_store_and_asserts_completeness(self):
        self.write_day_archive(bk.BinanceSymbol.BTCUSDT, range(5))
        summary = store_sync.sync_symbol_from_archives(
            self.store, bk.BinanceSymbol.BTCUSDT, START, self.end, self.cfg, NoNetworkFetcher())
        self.assertEqual((summary.expected, summary.have, summary.missing), (5, 5, 0))
        self.assertEqual(summary.windows_loaded, 1)

        again = store_sync.sync_symbol_from_archives(
            self.store, bk.BinanceSymbol.BTCUSDT, START, self.end, self.cfg, NoNetworkFetcher())
        self.assertEqual(again.windows_loaded, 0)

    def test_incomplete_store_raises_when_strict(self):
        self.write_day_archive(bk.BinanceSymbol.ETHUSDT, [0, 1, 3, 4])
        with self.assertRaises(store_sync.CompletenessError) as ctx:
            store_sync.sync_symbol_from_archives(
                self.store, bk.BinanceSymbol.ETHUSDT, START, self.end, self.cfg, NoNetworkFetcher())
        self.assertEqual(ctx.exception.missing, 1)

        summary = store_sync.sync_symbol_from_archives(
            self.store, bk.BinanceSymbol.ETHUSDT, START, self.end, self.cfg, NoNetworkFetcher(), strict=False)
        self.assertEqual(summary.missing, 1)

    def test_audit_reports_unresolved_gaps(self):
        self.write_day_archive(bk.BinanceSymbol.BTCUSDT, range(5))
        self.write_day_archive(bk.BinanceSymbol.ETHUSDT, [0, 1, 4])
        symbols = [bk.BinanceSymbol.BTCUSDT, bk.BinanceSymbol.ETHUSDT]
        result = store_sync.audit_archive_gaps(symbols, START, self.end, self.cfg, NoNetworkFetcher())
        self.assertEqual(result.totals["BTCUSDT"].missing, 0)
        self.assertEqual(result.totals["ETHUSDT"].expected, 5)
        self.assertEqual(result.totals["ETHUSDT"].missing, 2)
        self.assertEqual(result.initial_missing, 2)
        self.assertEqual(result.remaining_missing, 2)
        self.assertEqual(result.unresolved, [("ETHUSDT", START + 2000, START + 3000, 2)])

    def test_audit_rejects_empty_range(self):
        with self.assertRaises(bk.InvalidRequestError):
            store_sync.audit_archive_gaps([bk.BinanceSymbol.BTCUSDT], START, START, self.cfg, NoNetworkFetcher())


class WindowHelpersTest(unittest.TestCase):
    def test_month_and_day_windows_are_clipped(self):
        start = int(datetime(2024, 1, 31, 12, tzinfo=timezone.utc).timestamp() * 1000)
        end = int(datetime(2024, 2, 2, tzinfo=timezone.utc).timestamp() * 1000)
        feb1 = int(datetime(2024, 2, 1, tzinfo=timezone.utc).timestamp() * 1000)
        self.assertEqual(store_sync.month_windows(start, end), [(start, feb1), (feb1, end)])
        self.assertEqual(store_sync.day_windows(start, end), [(start, feb1), (feb1, end)])
        self.assertEqual(store_sync.day_floor_ms(start + 5), start - 12 * 3_600_000)


if __name__ == "__main__":
    unittest.main()
