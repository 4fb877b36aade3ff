import os
import shutil
import tempfile
import unittest
import zipfile
from datetime import datetime, timezone

import binance_klines as bk
from pipeline_config import HistoricalKlinesConfig


def ts_ms(year, month, day, hour=0, minute=0, second=0):
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp() * 1000)


def kline(ts, close=1.0):
    return bk.Kline1s(ts, close, close, close, close, 1.0, ts + 999, close, 1, 1.0, 1.0)


def csv_line(ts, price):
    return f"{ts},{price},{price},{price},{price},1,{ts + 999},{price},1,1,1,0\n"


class NoNetworkFetcher(bk.HttpFetcher):
    def get_bytes(self, url):
        raise AssertionError(f"unexpected fetch of {url}")


class CoverageMathTest(unittest.TestCase):
    def test_merge_keeps_first_occurrence(self):
        a = kline(2_000, close=1.0)
        b = kline(1_000, close=2.0)
        c = kline(2_000, close=3.0)
        rows, removed = bk.merge_and_dedupe([a, b, c])
        self.assertEqual(removed, 1)
        self.assertEqual([r.open_time_ms for r in rows], [1_000, 2_000])
        self.assertEqual(rows[1].close, 1.0)

    def test_inclusive_gap_ranges_and_counts(self):
        req = bk.KlineLoadRequest(bk.BinanceSymbol.BTCUSDT, 0, 10_000)
        rows = [kline(t) for t in (2_000, 3_000, 6_000)]
        cov = bk.compute_coverage(req, rows, 0)
        self.assertEqual(cov.expected_points, 10)
        self.assertEqual(cov.actual_points, 3)
        self.assertEqual(cov.gap_ranges, [(0, 1_000), (4_000, 5_000), (7_000, 9_000)])
        self.assertEqual(cov.total_gap_ranges, 3)
        self.assertEqual(cov.missing_points, 7)
        self.assertEqual(cov.missing_points, cov.expected_points - cov.actual_points)

    def test_empty_rows_is_one_full_gap(self):
        req = bk.KlineLoadRequest(bk.BinanceSymbol.BTCUSDT, 5_000, 8_000)
        cov = bk.compute_coverage(req, [], 0)
        self.assertEqual(cov.gap_ranges, [(5_000, 7_000)])
        self.assertEqual(cov.missing_points, 3)

    def test_gap_ranges_are_capped_but_totals_are_exact(self):
        n = 300
        req = bk.KlineLoadRequest(bk.BinanceSymbol.BTCUSDT, 0, 2 * n * 1000)
        rows = [kline(t * 2_000) for t in range(n)]
        cov = bk.compute_coverage(req, rows, 0)
        self.assertEqual(len(cov.gap_ranges), 256)
        self.assertEqual(cov.total_gap_ranges, n)
        self.assertEqual(cov.missing_points, n)
        self.assertEqual(cov.gap_ranges[0], (1_000, 1_000))


class LoadKlinesTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="coverage_test_")
        self.cfg = HistoricalKlinesConfig(data_root=self.tempdir, verify_checksum=False)

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def _write_zip(self, archive, body):
        path = os.path.join(self.tempdir, archive.relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("data.csv", body)

    def test_missing_second_is_reported(self):
        start = ts_ms(2024, 1, 1)
        req = bk.KlineLoadRequest(bk.BinanceSymbol.ETHUSDT, start, start + 3_000)
        archives = bk.plan_required_archives(req)
        self.assertEqual(len(archives), 1)
        self._write_zip(archives[0], csv_line(start, 1) + csv_line(start + 2_000, 2))
        loaded = bk.load_1s_klines(req, self.cfg, NoNetworkFetcher())
        self.assertEqual(loaded.symbol, bk.BinanceSymbol.ETHUSDT)
        self.assertEqual(loaded.coverage.expected_points, 3)
        self.assertEqual(loaded.coverage.actual_points, 2)
        self.assertEqual(loaded.coverage.missing_points, 1)
        self.assertEqual(loaded.coverage.duplicate_points_removed, 0)
        self.assertEqual(loaded.coverage.gap_ranges, [(start + 1_000, start + 1_000)])

    def test_monthly_and_daily_overlap_is_deduped_and_sorted(self):
        req = bk.KlineLoadRequest(bk.BinanceSymbol.BTCUSDT, ts_ms(2024, 2, 1), ts_ms(2024, 3, 2))
        f58 = ts_ms(2024, 2, 29, 23, 59, 58)
        f59 = ts_ms(2024, 2, 29, 23, 59, 59)
        m00 = ts_ms(2024, 3, 1)
        m01 = ts_ms(2024, 3, 1, 0, 0, 1)

        archives = bk.plan_required_archives(req)
        self.assertEqual({a.kind for a in archives}, {bk.ArchiveKind.MONTHLY, bk.ArchiveKind.DAILY})
        for a in archives:
            if a.kind == bk.ArchiveKind.MONTHLY:
                self._write_zip(a, csv_line(f58, 100) + csv_line(f59, 101) + csv_line(m00, 102))
            else:
                self._write_zip(a, csv_line(m00, 200) + csv_line(m01, 201))

        loaded = bk.load_1s_klines(req, self.cfg, NoNetworkFetcher())
        self.assertEqual(loaded.coverage.actual_points, 4)
        self.assertEqual(loaded.coverage.duplicate_points_removed, 1)
        self.assertEqual([r.open_time_ms for r in loaded.rows], [f58, f59, m00, m01])
        # Monthly archive is planned first, so its row wins the duplicate
        self.assertEqual(loaded.rows[2].close, 102.0)


if __name__ == "__main__":
    unittest.main()
