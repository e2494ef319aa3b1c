from __future__ import annotations

import dataclasses
import unittest
from datetime import datetime, timedelta

from order_fixtures import build_app, restore_env, seed_order, seed_parties, seed_releasable_order, seed_user

from stockyard.extensions import db
from stockyard.models import JobRun, Order, OrderTimelineEvent
from stockyard.jobs.order_sweeps import AUTO_RELEASE_STATUSES, run_auto_release, run_order_sweeps
from stockyard.services.engine_context import current_engine
from stockyard.services.order_queries import OrderFilter, find_orders
from stockyard.utils.job_runs import last_job_run


class AutoReleaseSweepTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app, cls._prev_env = build_app()

    @classmethod
    def tearDownClass(cls):
        restore_env(cls._prev_env)

    def setUp(self):
        with self.app.app_context():
            self.parties = seed_parties()

    def _protected(self, ends_in: timedelta) -> int:
        now = datetime.utcnow()
        with self.app.app_context():
            return seed_order(
                self.parties,
                status="buyer_confirmed",
                transaction_status="DELIVERED_PENDING_CONFIRMATION",
                delivered_at=now - timedelta(days=2),
                buyer_confirmed_at=now - timedelta(days=1),
                protection_days=7,
                protection_start_at=now - timedelta(days=2),
                protection_ends_at=now + ends_in,
                payout_hold_reason="protection_window",
            )

    def test_releases_eligible_orders_and_records_run(self):
        with self.app.app_context():
            order_id = seed_releasable_order(self.parties)
            result = run_auto_release(current_engine())
            self.assertTrue(result["ok"])
            self.assertGreaterEqual(result["released"], 1)

            order = db.session.get(Order, order_id)
            self.assertTrue(order.transfer_id.startswith("tr_mock_"))
            self.assertEqual(order.released_by, "system")
            event = OrderTimelineEvent.query.filter_by(order_id=order_id, event_type="PAYOUT_RELEASED").first()
            self.assertEqual(event.actor, "system")

            run = last_job_run("order_auto_release")
            self.assertIsNotNone(run)
            self.assertTrue(run.ok)

    def test_expired_protection_is_settled_then_released(self):
        order_id = self._protected(timedelta(hours=-1))
        with self.app.app_context():
            run_auto_release(current_engine())
            order = db.session.get(Order, order_id)
            self.assertIsNotNone(order.transfer_id)
            self.assertEqual(order.payout_hold_reason, "none")
            self.assertEqual(order.status, "completed")

    def test_running_protection_is_left_alone(self):
        order_id = self._protected(timedelta(days=3))
        with self.app.app_context():
            run_auto_release(current_engine())
            order = db.session.get(Order, order_id)
            self.assertIsNone(order.transfer_id)
            self.assertEqual(order.status, "buyer_confirmed")
            self.assertEqual(order.payout_hold_reason, "protection_window")

    def test_injected_clock_moves_past_the_window(self):
        order_id = self._protected(timedelta(days=3))
        with self.app.app_context():
            ctx = current_engine()
            later = datetime.utcnow() + timedelta(days=4)
            run_auto_release(dataclasses.replace(ctx, clock=lambda: later))
            self.assertIsNotNone(db.session.get(Order, order_id).transfer_id)

    def test_disabled_without_processor(self):
        with self.app.app_context():
            order_id = seed_releasable_order(self.parties)
            ctx = dataclasses.replace(current_engine(), payments_provider=None, payments_unavailable_reason="test")
            result = run_auto_release(ctx)
            self.assertFalse(result["ok"])
            self.assertTrue(result["disabled"])
            self.assertIsNone(db.session.get(Order, order_id).transfer_id)
            run = last_job_run("order_auto_release")
            self.assertFalse(run.ok)
            self.assertEqual(run.error, "payments_unavailable")

    def test_held_orders_are_skipped(self):
        with self.app.app_context():
            order_id = seed_releasable_order(self.parties, admin_hold=True, admin_hold_reason="Brand check")
            result = run_auto_release(current_engine())
            self.assertGreaterEqual(result["skipped"], 1)
            self.assertIsNone(db.session.get(Order, order_id).transfer_id)

    def test_seller_without_payout_account_counts_as_error(self):
        with self.app.app_context():
            parties = dict(self.parties, seller_id=seed_user("seller"))
            order_id = seed_releasable_order(parties)
            result = run_auto_release(current_engine())
            self.assertGreaterEqual(result["errors"], 1)
            self.assertIsNone(db.session.get(Order, order_id).transfer_id)

    def test_old_unconfirmed_orders_do_not_starve_newer_releases(self):
        now = datetime.utcnow()
        with self.app.app_context():
            waiting = [
                seed_order(
                    self.parties,
                    status="delivered",
                    transaction_status="DELIVERED_PENDING_CONFIRMATION",
                    delivered_at=now - timedelta(hours=6),
                    dispute_deadline_at=now + timedelta(days=2),
                )
                for _ in range(4)
            ]
            order_id = seed_releasable_order(self.parties)
            candidates = find_orders(OrderFilter(statuses=AUTO_RELEASE_STATUSES, without_transfer=True), limit=500)
            max_runs = len(candidates) // 2 + 2

            runs = 0
            while db.session.get(Order, order_id).transfer_id is None and runs < max_runs:
                run_auto_release(current_engine(), limit=2)
                runs += 1

            self.assertIsNotNone(db.session.get(Order, order_id).transfer_id)
            for waiting_id in waiting:
                self.assertIsNone(db.session.get(Order, waiting_id).transfer_id)
            self.assertIn("cursor", last_job_run("order_auto_release").to_dict()["counters"])


class CombinedSweepTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app, cls._prev_env = build_app()

    @classmethod
    def tearDownClass(cls):
        restore_env(cls._prev_env)

    def test_all_sweeps_record_job_runs(self):
        with self.app.app_context():
            parties = seed_parties()
            seed_releasable_order(parties)
            seed_order(parties, status="pending", paid_at=None, transaction_status="PENDING_PAYMENT", checkout_session_id="cs_expired_combined")
            result = run_order_sweeps(current_engine(), limit=100)
            self.assertEqual(result["abandoned_checkouts"]["cancelled"], 1)
            self.assertEqual(result["auto_release"]["released"], 1)
            names = {row.job_name for row in JobRun.query.all()}
        self.assertEqual(names, {"abandoned_checkout_sweep", "order_completion_policies", "order_auto_release"})

    def test_cli_command(self):
        result = self.app.test_cli_runner().invoke(args=["run-order-sweeps", "--limit", "50"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("order_sweeps_ok", result.output)
        self.assertIn("errors=0", result.output)


if __name__ == "__main__":
    unittest.main()
