import os
import shutil
import tempfile
import unittest
from unittest import mock

from fastapi.testclient import TestClient

import api
import features as ft


class ApiTest(unittest.TestCase):
    def setUp(self):
        # No context manager: the startup hook would attach file logging handlers
        self.client = TestClient(api.app)
        self.tempdir = tempfile.mkdtemp(prefix="api_test_")

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_health(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"status": "ok"})

    def test_archive_plan(self):
        r = self.client.get("/archives/plan", params={"symbol": "BTC/USDT", "start": "2024-01-30T00:00:00Z", "end": "2024-03-02T00:00:00Z"})
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual(body["count"], 4)
        self.assertEqual([a["kind"] for a in body["archives"]], ["daily", "daily", "monthly", "daily"])
        self.assertTrue(body["archives"][2]["relative_path"].endswith("BTCUSDT-1s-2024-02.zip"))

    def test_archive_plan_rejects_bad_input(self):
        r = self.client.get("/archives/plan", params={"symbol": "DOGEUSDT", "start": "2024-01-01", "end": "2024-01-02"})
        self.assertEqual(r.status_code, 400)
        r = self.client.get("/archives/plan", params={"symbol": "BTCUSDT", "start": "2024-01-02", "end": "2024-01-01"})
        self.assertEqual(r.status_code, 400)

    def test_feature_schema(self):
        r = self.client.post("/features/schema", json={"windows_seconds": [5, 15]})
        self.assertEqual(r.status_code, 200)
        body = r.json()
        expected = ft.build_feature_schema(ft.FeatureTransformConfig(windows_seconds=[5, 15]))
        self.assertEqual(body["fingerprint"], expected.fingerprint)
        self.assertEqual(len(body["columns"]), 38)
        self.assertEqual(body["columns"][0], {"name": "btc_ret_1s", "dtype": "f64"})

        r = self.client.post("/features/schema", json={"windows_seconds": [5, 5]})
        self.assertEqual(r.status_code, 400)

    def test_horizon(self):
        r = self.client.get("/horizon", params={"horizon_seconds": 600, "max_duration_seconds": 600})
        self.assertEqual(r.status_code, 200)
        self.assertAlmostEqual(r.json()["log_horizon_norm"], 1.0)
        self.assertAlmostEqual(r.json()["sqrt_horizon_norm"], 1.0)

    def test_store_sync_schedules_background_task(self):
        store_path = os.path.join(self.tempdir, "klines_1s.sqlite")
        with mock.patch.object(api, "sync_symbol_from_archives") as sync:
            r = self.client.post("/store/sync", json={
                "start": "2024-01-01", "end": "2024-01-02", "symbols": ["ETHUSDT", "sol/usdt"], "store_path": store_path,
            })
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "scheduled")
        self.assertEqual(r.json()["symbols"], ["ETHUSDT", "SOLUSDT"])
        self.assertEqual(sync.call_count, 2)
        self.assertTrue(os.path.exists(store_path))

    def test_store_sync_rejects_inverted_range(self):
        r = self.client.post("/store/sync", json={"start": "2024-01-02", "end": "2024-01-01"})
        self.assertEqual(r.status_code, 400)


if __name__ == "__main__":
    unittest.main()
