import os
import shutil
import tempfile
import unittest

# Optional parquet engine
try:
    import pyarrow.parquet as pq  # type: ignore
    HAS_PARQUET = True
except Exception:
    HAS_PARQUET = False

import binance_klines as bk
import features as ft

START = 1_735_689_600_000


@unittest.skipUnless(HAS_PARQUET, "pyarrow is required for Parquet tests")
class ParquetExportTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="parquet_test_")

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_kline_frame_columns_and_dtypes(self):
        rows = [bk.Kline1s(START + i * 1000, 1.0, 2.0, 0.5, 1.5, 3.0, START + i * 1000 + 999, 4.0, 7, 1.0, 2.0) for i in range(3)]
        df = bk.klines_to_frame(rows)
        self.assertEqual(list(df.columns), bk.KLINE_COLUMNS)
        self.assertEqual(str(df["open_time_ms"].dtype), "int64")
        self.assertEqual(str(df["trade_count"].dtype), "int64")
        self.assertEqual(str(df["close"].dtype), "float64")

        result = bk.KlineLoadResult(bk.BinanceSymbol.BTCUSDT, rows, bk.compute_coverage(
            bk.KlineLoadRequest(bk.BinanceSymbol.BTCUSDT, START, START + 3000), rows, 0))
        path = os.path.join(self.tempdir, "out", "btc.parquet")
        bk.write_klines_parquet(result, path)
        self.assertTrue(os.path.exists(path))
        self.assertFalse(os.path.exists(path + ".tmp"))
        meta = pq.read_schema(path).metadata
        self.assertEqual(meta[b"symbol"], b"BTCUSDT")

    def test_feature_parquet_carries_schema_identity(self):
        cfg = ft.FeatureTransformConfig(windows_seconds=[2])
        schema = ft.build_feature_schema(cfg)
        rows = [ft.FeatureRow(START + i * 1000, [float(i)] * len(schema.columns)) for i in range(4)]
        path = os.path.join(self.tempdir, "features.parquet")
        ft.write_feature_parquet(schema, rows, path)

        loaded_schema, df = ft.read_feature_parquet(path, ft.FEATURE_SCHEMA_VERSION, schema.fingerprint)
        self.assertEqual(loaded_schema.column_names, schema.column_names)
        self.assertEqual(list(df.columns), [ft.TS_COLUMN] + schema.column_names)
        self.assertEqual(df[ft.TS_COLUMN].tolist(), [r.ts_ms_utc for r in rows])
        self.assertEqual(df["tow_cos"].tolist(), [0.0, 1.0, 2.0, 3.0])

    def test_stale_feature_file_is_rejected(self):
        schema = ft.build_feature_schema(ft.FeatureTransformConfig(windows_seconds=[2]))
        path = os.path.join(self.tempdir, "features.parquet")
        ft.write_feature_parquet(schema, [], path)
        other = ft.build_feature_schema(ft.FeatureTransformConfig(windows_seconds=[3]))
        with self.assertRaises(ft.SchemaFingerprintMismatchError):
            ft.read_feature_parquet(path, ft.FEATURE_SCHEMA_VERSION, other.fingerprint)
        with self.assertRaises(ft.SchemaVersionMismatchError):
            ft.read_feature_parquet(path, ft.FEATURE_SCHEMA_VERSION + 1, schema.fingerprint)


if __name__ == "__main__":
    unittest.main()
