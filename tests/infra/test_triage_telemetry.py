from __future__ import annotations

import threading
import unittest

from triageq.observability.telemetry import (
    counter,
    get_latency_stats,
    get_p95,
    reset_counters,
    reset_latencies,
    snapshot_counters,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_latencies()
        reset_counters()

    def test_time_block_records_under_seconds_name(self):
        metric_name = "gmail.get_message.latency"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)
        self.assertEqual(get_latency_stats(f"{metric_name}_seconds")["count"], 1)
        self.assertGreaterEqual(get_p95(metric_name), 0.0)

    def test_time_block_records_on_exception(self):
        with self.assertRaises(RuntimeError), time_block("workflow.fetching.latency"):
            raise RuntimeError("boom")

        self.assertEqual(get_latency_stats("workflow.fetching.latency")["count"], 1)

    def test_empty_metric_stats(self):
        self.assertEqual(get_p95("never.recorded"), 0.0)
        self.assertEqual(get_latency_stats("never.recorded")["count"], 0)

    def test_counter_increments(self):
        before = counter("test.counter", 0)
        counter("test.counter")
        after = counter("test.counter", 0)
        self.assertEqual(after, before + 1)

    def test_counter_is_thread_safe(self):
        def bump():
            for _ in range(500):
                counter("fetch.stored")

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(snapshot_counters()["fetch.stored"], 2000)


if __name__ == "__main__":
    unittest.main()
