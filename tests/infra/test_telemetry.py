from __future__ import annotations

import unittest

from swipeq.observability.telemetry import (
    counter,
    get_latency_stats,
    reset_counters,
    reset_latencies,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_latencies()
        reset_counters()

    def test_time_block_appends_ms_suffix(self):
        metric_name = "worker.request.latency"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)
        self.assertGreaterEqual(stats["p95"], 0.0)
        self.assertEqual(get_latency_stats("worker.request.latency_ms")["count"], 1)

    def test_time_block_records_on_error(self):
        with self.assertRaises(ValueError), time_block("flush_ms"):
            raise ValueError("boom")

        self.assertEqual(get_latency_stats("flush_ms")["count"], 1)

    def test_empty_stats(self):
        self.assertEqual(get_latency_stats("never.recorded")["count"], 0)

    def test_counter_increments(self):
        before = counter("test.counter", 0)
        counter("test.counter")
        after = counter("test.counter", 0)
        self.assertEqual(after, before + 1)

    def test_reset_counters(self):
        counter("test.counter", 5)
        reset_counters()
        self.assertEqual(counter("test.counter", 0), 0)


if __name__ == "__main__":
    unittest.main()
