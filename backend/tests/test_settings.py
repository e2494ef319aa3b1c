from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from stockyard.settings import EngineSettings, load_engine_settings


class EngineSettingsTestCase(unittest.TestCase):
    def _load(self, **env) -> EngineSettings:
        with patch.dict(os.environ, env, clear=False):
            return load_engine_settings()

    def test_defaults(self):
        keys = (
            "STOCKYARD_ENV",
            "PAYMENTS_PROVIDER",
            "BULK_MAX_ITEMS",
            "BULK_BATCH_SIZE",
            "REMINDER_HOURS",
            "NOTIFY_DISPATCH_MODE",
            "ESCROW_DISPUTE_WINDOW_HOURS",
        )
        with patch.dict(os.environ, {}, clear=False):
            for key in keys:
                os.environ.pop(key, None)
            settings = load_engine_settings()
        self.assertEqual(settings.env, "dev")
        self.assertEqual(settings.payments_provider, "mock")
        self.assertEqual(settings.bulk_max_items, 100)
        self.assertEqual(settings.bulk_batch_size, 5)
        self.assertEqual(settings.reminder_hours, (24, 72))
        self.assertEqual(settings.notify_dispatch_mode, "thread")
        self.assertEqual(settings.escrow_dispute_window_hours, 72)

    def test_production_defaults_to_stripe(self):
        settings = self._load(STOCKYARD_ENV="production", PAYMENTS_PROVIDER="")
        self.assertTrue(settings.is_production)
        self.assertEqual(settings.payments_provider, "stripe")

    def test_numbers_are_clamped(self):
        settings = self._load(BULK_MAX_ITEMS="5000", BULK_BATCH_SIZE="0", ORDER_SWEEP_INTERVAL_SECONDS="1")
        self.assertEqual(settings.bulk_max_items, 500)
        self.assertEqual(settings.bulk_batch_size, 1)
        self.assertEqual(settings.order_sweep_interval_seconds, 30)

    def test_garbage_numbers_fall_back(self):
        self.assertEqual(self._load(BULK_MAX_ITEMS="lots").bulk_max_items, 100)

    def test_reminder_hours_parsing(self):
        self.assertEqual(self._load(REMINDER_HOURS="72, 24,x,-3,24").reminder_hours, (24, 72))
        self.assertEqual(self._load(REMINDER_HOURS="nope").reminder_hours, (24, 72))
        self.assertEqual(self._load(REMINDER_HOURS="12").reminder_hours, (12,))

    def test_unknown_dispatch_mode(self):
        self.assertEqual(self._load(NOTIFY_DISPATCH_MODE="carrier-pigeon").notify_dispatch_mode, "thread")
        self.assertEqual(self._load(NOTIFY_DISPATCH_MODE="INLINE").notify_dispatch_mode, "inline")

    def test_webhook_queue_flag(self):
        self.assertTrue(self._load(STRIPE_WEBHOOK_QUEUE="yes").stripe_webhook_queue)
        self.assertFalse(self._load(STRIPE_WEBHOOK_QUEUE="").stripe_webhook_queue)


if __name__ == "__main__":
    unittest.main()
