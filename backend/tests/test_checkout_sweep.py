from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from order_fixtures import auth_headers, build_app, restore_env, seed_listing, seed_order, seed_parties, seed_reservation

from stockyard.extensions import db
from stockyard.models import Listing, ListingReservation, Order
from stockyard.services.checkout_sweep import cancel_abandoned_checkouts, cancel_order
from stockyard.services.engine_context import current_engine


def _actions(result: dict) -> dict[int, str]:
    return {item["order_id"]: item["action"] for item in result["results"]}


class AbandonedCheckoutSweepTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app, cls._prev_env = build_app()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        restore_env(cls._prev_env)

    def setUp(self):
        with self.app.app_context():
            self.parties = seed_parties()

    def _pending(self, session_id: str | None, **fields) -> int:
        values = {
            "status": "pending",
            "paid_at": None,
            "transaction_status": "PENDING_PAYMENT",
            "checkout_session_id": session_id,
        }
        values.update(fields)
        with self.app.app_context():
            return seed_order(self.parties, **values)

    def _sweep(self, **kwargs) -> dict:
        kwargs.setdefault("limit", 500)
        with self.app.app_context():
            return cancel_abandoned_checkouts(current_engine(), **kwargs)

    def test_expired_session_is_cancelled_and_stock_restored(self):
        with self.app.app_context():
            listing_id = seed_listing(self.parties["seller_id"], quantity_available=0, status="sold")
        order_id = self._pending(f"cs_expired_{listing_id}", listing_id=listing_id)
        with self.app.app_context():
            seed_reservation(listing_id, order_id)

        result = self._sweep()
        self.assertEqual(_actions(result)[order_id], "cancelled")
        self.assertGreaterEqual(result["cancelled"], 1)
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "cancelled")
            listing = db.session.get(Listing, listing_id)
            self.assertEqual(listing.quantity_available, 1)
            self.assertEqual(listing.status, "active")

    def _reserved_order(self, session_id: str) -> tuple[int, int]:
        with self.app.app_context():
            listing_id = seed_listing(self.parties["seller_id"], quantity_available=2)
        order_id = self._pending(session_id, listing_id=listing_id)
        with self.app.app_context():
            seed_reservation(listing_id, order_id, quantity=3)
        return order_id, listing_id

    def test_cancel_deletes_reservation_row(self):
        order_id, listing_id = self._reserved_order("cs_expired_reserved")
        with self.app.app_context():
            cancel_order(current_engine(), order_id, reason="buyer_request")
            self.assertIsNone(ListingReservation.query.filter_by(order_id=order_id).first())
            self.assertEqual(db.session.get(Listing, listing_id).quantity_available, 5)

    def test_failed_cancel_leaves_stock_and_reservation_untouched(self):
        order_id, listing_id = self._reserved_order("cs_expired_audit_down")
        with self.app.app_context():
            with patch(
                "stockyard.services.checkout_sweep.add_audit",
                side_effect=OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error")),
            ):
                with self.assertRaises(OperationalError):
                    cancel_order(current_engine(), order_id, reason="buyer_request")

            reservation = ListingReservation.query.filter_by(order_id=order_id).one()
            self.assertEqual(reservation.quantity, 3)
            self.assertEqual(db.session.get(Listing, listing_id).quantity_available, 2)
            self.assertEqual(db.session.get(Order, order_id).status, "pending")

    def test_sweep_reports_failed_cancel_as_error(self):
        order_id, listing_id = self._reserved_order("cs_expired_sweep_down")
        with patch(
            "stockyard.services.checkout_sweep.add_audit",
            side_effect=OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error")),
        ):
            result = self._sweep()
        self.assertEqual(_actions(result)[order_id], "error")
        with self.app.app_context():
            self.assertEqual(db.session.get(Listing, listing_id).quantity_available, 2)
            self.assertEqual(ListingReservation.query.filter_by(order_id=order_id).count(), 1)

    def test_open_and_missing_sessions_are_skipped(self):
        open_id = self._pending("cs_open_waiting")
        bare_id = self._pending(None)
        actions = _actions(self._sweep())
        self.assertEqual(actions[open_id], "skipped_not_expired")
        self.assertEqual(actions[bare_id], "skipped_no_session")

    def test_local_expiry_counts_when_processor_reports_open(self):
        order_id = self._pending("cs_open_stale", checkout_expires_at=datetime.utcnow() - timedelta(hours=1))
        self.assertEqual(_actions(self._sweep())[order_id], "cancelled")

    def test_dry_run_changes_nothing(self):
        order_id = self._pending("cs_expired_dry")
        result = self._sweep(dry_run=True)
        self.assertTrue(result["dry_run"])
        self.assertEqual(_actions(result)[order_id], "would_cancel")
        self.assertEqual(result["cancelled"], 0)
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, order_id).status, "pending")

    def test_force_skips_expiry_check(self):
        order_id = self._pending("cs_open_forced")
        self.assertEqual(_actions(self._sweep(force=True))[order_id], "cancelled")

    def test_paid_orders_are_never_scanned(self):
        with self.app.app_context():
            paid_id = seed_order(self.parties, checkout_session_id="cs_expired_but_paid")
        self.assertNotIn(paid_id, _actions(self._sweep(force=True)))

    def test_limit_is_clamped(self):
        self.assertEqual(self._sweep(limit=10_000, dry_run=True)["limit"], 500)
        self.assertEqual(self._sweep(limit="abc", dry_run=True)["limit"], 50)

    def test_admin_endpoint(self):
        order_id = self._pending("cs_expired_endpoint")
        admin = auth_headers(self.parties["admin_id"])
        res = self.client.post(
            "/api/admin/orders/cancel-abandoned-checkouts",
            json={"limit": 500, "dry_run": True},
            headers=admin,
        )
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertEqual(_actions(body)[order_id], "would_cancel")

    def test_cli_reports_each_order(self):
        order_id = self._pending("cs_expired_cli")
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["cancel-abandoned-checkouts", "--limit", "500", "--dry-run"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(f"order={order_id} action=would_cancel", result.output)
        self.assertIn("dry_run=True", result.output)

        result = runner.invoke(args=["cancel-abandoned-checkouts", "--limit", "500"])
        self.assertIn(f"order={order_id} action=cancelled", result.output)


if __name__ == "__main__":
    unittest.main()
