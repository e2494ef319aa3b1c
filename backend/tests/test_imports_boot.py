from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("stockyard")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_route_segments(self):
        for name in (
            "stockyard.segments.segment_order_fulfillment",
            "stockyard.segments.segment_order_disputes",
            "stockyard.segments.segment_admin_orders",
            "stockyard.segments.segment_payment_webhooks",
        ):
            self.assertIsNotNone(importlib.import_module(name))

    def test_import_worker_tasks(self):
        module = importlib.import_module("stockyard.tasks.order_tasks")
        self.assertTrue(hasattr(module, "run_order_sweeps_task"))
        self.assertTrue(hasattr(module, "process_stripe_webhook_task"))


if __name__ == "__main__":
    unittest.main()
