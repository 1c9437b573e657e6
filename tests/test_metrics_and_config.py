import json
import tempfile
import threading
import time
import unittest
from unittest.mock import patch

from pdfchat import config
from pdfchat.metrics import MetricsCollector


class TestEnvHelpers(unittest.TestCase):
    def test_int_helper_clamps_and_falls_back(self):
        with patch.dict("os.environ", {"PDFCHAT_TEST_INT": "0"}):
            self.assertEqual(config._env_int("PDFCHAT_TEST_INT", 25, minimum=1), 1)
        with patch.dict("os.environ", {"PDFCHAT_TEST_INT": "many"}):
            self.assertEqual(config._env_int("PDFCHAT_TEST_INT", 25), 25)
        with patch.dict("os.environ", {"PDFCHAT_TEST_INT": "40"}):
            self.assertEqual(config._env_int("PDFCHAT_TEST_INT", 25), 40)

    def test_float_helper_allows_zero_to_disable_timeouts(self):
        with patch.dict("os.environ", {"PDFCHAT_TEST_FLOAT": "0"}):
            self.assertEqual(config._env_float("PDFCHAT_TEST_FLOAT", 30.0, minimum=0.0), 0.0)
        with patch.dict("os.environ", {"PDFCHAT_TEST_FLOAT": "-5"}):
            self.assertEqual(config._env_float("PDFCHAT_TEST_FLOAT", 30.0, minimum=1.0), 1.0)

    def test_bool_and_str_helpers(self):
        with patch.dict("os.environ", {"PDFCHAT_TEST_BOOL": "Yes", "PDFCHAT_TEST_STR": "   "}):
            self.assertTrue(config._env_bool("PDFCHAT_TEST_BOOL", False))
            self.assertEqual(config._env_str("PDFCHAT_TEST_STR", "fallback"), "fallback")

    def test_defaults_are_consistent(self):
        self.assertEqual(config.MAX_UPLOAD_BYTES, config.MAX_UPLOAD_MB * 1024 * 1024)
        self.assertGreaterEqual(config.STREAM_IDLE_TIMEOUT_S, 0.0)
        self.assertTrue(config.RAG_SERVICE_URL.startswith("http"))


class TestMetricsCollector(unittest.TestCase):
    def test_summary_aggregates_latency_cost_and_failures(self):
        with tempfile.TemporaryDirectory() as tmp:
            collector = MetricsCollector(tmp)
            collector.record_request(100.0, success=True, input_tokens=1_000_000, output_tokens=0,
                                     model="gpt-4o-mini", first_token_ms=40.0, outcome="completed")
            collector.record_request(300.0, success=False, model="gpt-4o-mini", outcome="timeout")
            collector.record_request(200.0, success=False, outcome="timeout", source="relay")

            summary = collector.get_summary()

            self.assertEqual(summary["latency"]["avg_ms"], 200.0)
            self.assertEqual(summary["latency"]["min_ms"], 100.0)
            self.assertEqual(summary["latency"]["max_ms"], 300.0)
            self.assertEqual(summary["latency"]["avg_first_token_ms"], 40.0)
            self.assertEqual(summary["cost"]["total_usd"], 0.15)
            self.assertEqual(summary["errors"]["count"], 2)
            self.assertEqual(summary["errors"]["by_outcome"], {"timeout": 2})

            collector.flush()
            entries = [json.loads(line) for line in collector.log_path.read_text(encoding="utf-8").splitlines()]
            self.assertEqual([entry["source"] for entry in entries], ["session", "session", "relay"])

    def test_unknown_model_uses_default_pricing(self):
        with tempfile.TemporaryDirectory() as tmp:
            collector = MetricsCollector(tmp)
            collector.record_request(10.0, success=True, output_tokens=1_000_000, model="some-future-model")
            self.assertEqual(collector.get_summary()["cost"]["total_usd"], 0.6)
            collector.flush()

    def test_record_request_does_not_wait_for_the_file_write(self):
        with tempfile.TemporaryDirectory() as tmp:
            collector = MetricsCollector(tmp)
            gate = threading.Event()
            write_to_disk = collector._append_entry

            def _slow_write(entry):
                gate.wait(5.0)
                write_to_disk(entry)

            with patch.object(collector, "_append_entry", _slow_write):
                started = time.perf_counter()
                collector.record_request(5.0, success=True, model="gpt-4o-mini")
                elapsed = time.perf_counter() - started

                self.assertLess(elapsed, 1.0)
                self.assertEqual(collector.get_summary()["throughput"]["total_requests"], 1)
                self.assertFalse(collector.log_path.exists())

                gate.set()
                collector.flush(timeout=5.0)

            self.assertEqual(len(collector.log_path.read_text(encoding="utf-8").splitlines()), 1)

    def test_empty_summary(self):
        with tempfile.TemporaryDirectory() as tmp:
            summary = MetricsCollector(tmp).get_summary()
        self.assertEqual(summary["throughput"]["total_requests"], 0)
        self.assertEqual(summary["errors"]["rate_percent"], 0.0)


if __name__ == "__main__":
    unittest.main()
