import io
import json
import unittest
from contextlib import redirect_stdout, redirect_stderr

import pipeline_tools


class PipelineToolsTest(unittest.TestCase):
    def run_main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = pipeline_tools.main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_schema_command_prints_columns(self):
        code, out, _ = self.run_main(["schema", "--windows", "5,15"])
        self.assertEqual(code, 0)
        body = json.loads(out)
        self.assertEqual(body["version"], 1)
        self.assertEqual(len(body["columns"]), 38)

    def test_plan_command_lists_archives(self):
        code, out, _ = self.run_main(["plan", "--symbol", "BTCUSDT", "--start", "2024-02-01", "--end", "2024-03-02"])
        self.assertEqual(code, 0)
        lines = out.strip().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[0].startswith("monthly"))
        self.assertTrue(lines[1].endswith("BTCUSDT-1s-2024-03-01.zip"))

    def test_invalid_config_returns_error_code(self):
        code, _, err = self.run_main(["schema", "--windows", "5,5"])
        self.assertEqual(code, 2)
        self.assertIn("unique", err)

    def test_invalid_request_returns_error_code(self):
        code, _, err = self.run_main(["plan", "--symbol", "BTCUSDT", "--start", "2024-02-02", "--end", "2024-02-01"])
        self.assertEqual(code, 2)
        self.assertIn("error:", err)


if __name__ == "__main__":
    unittest.main()
