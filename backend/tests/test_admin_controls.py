from __future__ import annotations

import unittest

from order_fixtures import auth_headers, build_app, restore_env, seed_parties, seed_releasable_order

from stockyard.extensions import db
from stockyard.models import AuditLog, Order, OrderTimelineEvent


class AdminControlsTestCase(unittest.TestCase):
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
            self.order_id = seed_releasable_order(self.parties)
        self.admin = auth_headers(self.parties["admin_id"])
        self.buyer = auth_headers(self.parties["buyer_id"])

    def _admin_post(self, path: str, body: dict | None = None, headers: dict | None = None):
        return self.client.post(
            f"/api/admin/orders/{self.order_id}{path}",
            json=body if body is not None else {},
            headers=headers or self.admin,
        )

    def test_admin_routes_reject_non_admins(self):
        res = self._admin_post("/release", headers=self.buyer)
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "ADMIN_REQUIRED")

        res = self.client.get(f"/api/admin/orders/{self.order_id}/payout-debug", headers=self.buyer)
        self.assertEqual(res.status_code, 403)

    def test_hold_requires_reason(self):
        res = self._admin_post("/admin-hold", {"hold": True})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "HOLD_REASON_REQUIRED")

    def test_hold_blocks_release_until_cleared(self):
        res = self._admin_post("/admin-hold", {"hold": True, "reason": "Seller identity check"})
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertTrue(body["order"]["admin_hold"])
        self.assertEqual(body["order"]["payout_hold_reason"], "admin_hold")

        replay = self._admin_post("/admin-hold", {"hold": True, "reason": "Seller identity check"})
        self.assertEqual(replay.status_code, 200)
        self.assertTrue(replay.get_json()["already_applied"])

        res = self._admin_post("/release")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["reason"], "admin_hold")

        res = self._admin_post("/admin-hold", {"hold": False})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["payout_hold_reason"], "none")

        res = self._admin_post("/release")
        self.assertEqual(res.status_code, 200, res.get_json())

        with self.app.app_context():
            rows = AuditLog.query.filter_by(target_type="order", target_id=self.order_id).order_by(AuditLog.id).all()
            actions = [row.action for row in rows]
        self.assertEqual(actions, ["admin_hold_set", "admin_hold_cleared", "payout_released"])

    def test_repeated_hold_cycles_each_reach_the_timeline(self):
        for body in (
            {"hold": True, "reason": "Brand inspection pending"},
            {"hold": False},
            {"hold": True, "reason": "Vet certificate unreadable"},
        ):
            res = self._admin_post("/admin-hold", body)
            self.assertEqual(res.status_code, 200, res.get_json())
        self._admin_post("/payout-approval", {"approved": True})
        self._admin_post("/payout-approval", {"approved": False})
        self._admin_post("/payout-approval", {"approved": True})

        with self.app.app_context():
            entries = (
                OrderTimelineEvent.query.filter_by(order_id=self.order_id)
                .order_by(OrderTimelineEvent.id)
                .all()
            )
            placed = [entry.meta_dict().get("reason") for entry in entries if entry.event_type == "ADMIN_HOLD_PLACED"]
            approvals = [entry for entry in entries if entry.event_type == "PAYOUT_APPROVED"]
        self.assertEqual(placed, ["Brand inspection pending", "Vet certificate unreadable"])
        self.assertEqual(len(approvals), 2)

    def test_hold_after_release_is_rejected(self):
        self._admin_post("/release")
        res = self._admin_post("/admin-hold", {"hold": True, "reason": "Too late"})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "ORDER_ALREADY_RELEASED")

    def test_payout_approval_clears_sole_review_hold(self):
        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            order.compliance_hold_code = "ESA_REVIEW_REQUIRED"
            order.payout_hold_reason = "ESA_REVIEW_REQUIRED"
            db.session.commit()

        res = self._admin_post("/release")
        self.assertEqual(res.get_json()["reason"], "review_required")

        res = self._admin_post("/payout-approval", {"approved": True, "note": "Species paperwork reviewed"})
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertTrue(body["order"]["admin_payout_approval"])
        self.assertEqual(body["order"]["payout_hold_reason"], "none")

        replay = self._admin_post("/payout-approval", {"approved": True})
        self.assertTrue(replay.get_json()["already_applied"])

        res = self._admin_post("/release")
        self.assertEqual(res.status_code, 200, res.get_json())

    def test_payout_approval_keeps_document_hold(self):
        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            order.compliance_hold_code = "MISSING_TAHC_CVI"
            order.payout_hold_reason = "MISSING_TAHC_CVI"
            db.session.commit()

        res = self._admin_post("/payout-approval", {"approved": True})
        self.assertEqual(res.get_json()["order"]["payout_hold_reason"], "MISSING_TAHC_CVI")

        res = self._admin_post("/release")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["reason"], "compliance_document_required")

    def test_notes_are_admin_only(self):
        res = self._admin_post("/notes", {"note": "Called the seller about the brand inspection"})
        self.assertEqual(res.status_code, 201, res.get_json())
        notes = res.get_json()["order"]["admin_action_notes"]
        self.assertEqual(notes[-1]["kind"], "note")

        res = self._admin_post("/notes", {"note": "   "})
        self.assertEqual(res.get_json()["error"], "NOTE_REQUIRED")

        buyer_view = self.client.get(f"/api/orders/{self.order_id}", headers=self.buyer).get_json()
        self.assertNotIn("admin_action_notes", buyer_view["order"])

    def test_release_replays_with_idempotency_key(self):
        headers = dict(self.admin, **{"Idempotency-Key": "release-once-001"})
        first = self._admin_post("/release", {"note": "weekly payout"}, headers=headers)
        self.assertEqual(first.status_code, 200, first.get_json())
        second = self._admin_post("/release", {"note": "weekly payout"}, headers=headers)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.get_json(), first.get_json())

        reused = self._admin_post("/release", {"note": "different"}, headers=headers)
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

    def test_release_twice_without_key_reports_already_applied(self):
        first = self._admin_post("/release").get_json()
        second = self._admin_post("/release").get_json()
        self.assertTrue(second["already_applied"])
        self.assertEqual(second["transfer_id"], first["transfer_id"])

    def test_failed_release_frees_idempotency_key(self):
        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            order.admin_hold = True
            order.admin_hold_reason = "pending review"
            db.session.commit()

        headers = dict(self.admin, **{"Idempotency-Key": "release-retry-001"})
        res = self._admin_post("/release", headers=headers)
        self.assertEqual(res.status_code, 409)

        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            order.admin_hold = False
            db.session.commit()
        res = self._admin_post("/release", headers=headers)
        self.assertEqual(res.status_code, 200, res.get_json())

    def test_payout_debug_explains_hold(self):
        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            order.chargeback_status = "open"
            db.session.commit()

        res = self.client.get(f"/api/admin/orders/{self.order_id}/payout-debug", headers=self.admin)
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertFalse(body["eligibility"]["can_release"])
        self.assertEqual(body["eligibility"]["reason"], "chargeback")
        self.assertIn("Active chargeback", body["explanation"])
        self.assertTrue(body["payments_configured"])


if __name__ == "__main__":
    unittest.main()
