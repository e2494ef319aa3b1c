from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace

from stockyard.services.order_status import MARKETPLACE_CLEARABLE_HOLD_REASONS
from stockyard.services.release_eligibility import can_release, derive_hold_reason, hold_info, payout_explanation

NOW = datetime(2026, 6, 10, 15, 0, 0)


def _order(**fields):
    base = {
        "id": 41,
        "status": "buyer_confirmed",
        "transaction_status": "DELIVERED_PENDING_CONFIRMATION",
        "transport_option": "SELLER_TRANSPORT",
        "paid_at": NOW - timedelta(days=4),
        "delivered_at": NOW - timedelta(days=2),
        "delivery_confirmed_at": None,
        "buyer_confirmed_at": NOW - timedelta(days=1),
        "accepted_at": None,
        "transfer_id": None,
        "released_at": None,
        "admin_hold": False,
        "admin_hold_reason": None,
        "admin_payout_approval": None,
        "dispute_status": "none",
        "chargeback_status": "none",
        "payout_hold_reason": "none",
        "compliance_hold_code": None,
        "protection_ends_at": None,
        "protection_waived_at": None,
        "dispute_deadline_at": None,
        "seller_amount": 900.0,
        "currency": "usd",
        "pickup": {},
        "delivery": {},
    }
    base.update(fields)
    return SimpleNamespace(**base)


class ReleaseEligibilityTestCase(unittest.TestCase):
    def test_delivered_and_confirmed_order_is_eligible(self):
        decision = can_release(_order(), NOW)
        self.assertTrue(decision.eligible)
        self.assertIsNone(decision.reason)
        self.assertEqual(decision.blockers, [])

    def test_admin_hold_is_the_first_blocker(self):
        decision = can_release(_order(admin_hold=True, admin_hold_reason="KYC check", dispute_status="open"), NOW)
        self.assertFalse(decision.eligible)
        self.assertEqual(decision.reason, "admin_hold")
        self.assertIn("KYC check", decision.explanation)
        self.assertIn("dispute_open", decision.blockers)

    def test_released_order_reports_already_released(self):
        decision = can_release(_order(transfer_id="tr_1", status="completed"), NOW)
        self.assertFalse(decision.eligible)
        self.assertEqual(decision.reason, "already_released")

    def test_open_dispute_and_chargeback_block(self):
        self.assertEqual(can_release(_order(dispute_status="under_review"), NOW).reason, "dispute_open")
        self.assertEqual(can_release(_order(chargeback_status="open"), NOW).reason, "chargeback")

    def test_running_protection_window_reports_its_end(self):
        ends_at = NOW + timedelta(days=3)
        order = _order(protection_ends_at=ends_at, payout_hold_reason="protection_window")
        decision = can_release(order, NOW)
        self.assertFalse(decision.eligible)
        self.assertEqual(decision.reason, "protection_window")
        self.assertEqual(decision.earliest_release_at, ends_at)
        self.assertTrue(can_release(order, ends_at + timedelta(seconds=1)).eligible)

    def test_protection_window_ends_exactly_at_its_end_time(self):
        ends_at = NOW + timedelta(days=7)
        order = _order(protection_ends_at=ends_at, payout_hold_reason="protection_window")
        self.assertFalse(can_release(order, ends_at - timedelta(microseconds=1)).eligible)
        decision = can_release(order, ends_at)
        self.assertTrue(decision.eligible)
        self.assertIsNone(decision.reason)

    def test_waived_protection_no_longer_blocks(self):
        order = _order(protection_ends_at=NOW + timedelta(days=3), protection_waived_at=NOW - timedelta(hours=1))
        self.assertTrue(can_release(order, NOW).eligible)

    def test_protection_hold_without_end_time_blocks(self):
        decision = can_release(_order(payout_hold_reason="protection_window"), NOW)
        self.assertEqual(decision.reason, "protection_window")
        self.assertIsNone(decision.earliest_release_at)

    def test_marketplace_review_cleared_by_payout_approval(self):
        order = _order(compliance_hold_code="ESA_REVIEW_REQUIRED", payout_hold_reason="ESA_REVIEW_REQUIRED")
        self.assertEqual(can_release(order, NOW).reason, "review_required")
        order.admin_payout_approval = True
        self.assertTrue(can_release(order, NOW).eligible)

    def test_document_holds_survive_payout_approval(self):
        order = _order(
            compliance_hold_code="MISSING_TAHC_CVI",
            payout_hold_reason="MISSING_TAHC_CVI",
            admin_payout_approval=True,
        )
        self.assertEqual(can_release(order, NOW).reason, "compliance_document_required")

    def test_clearable_set_is_closed(self):
        self.assertEqual(
            set(MARKETPLACE_CLEARABLE_HOLD_REASONS),
            {"OTHER_EXOTIC_REVIEW_REQUIRED", "ESA_REVIEW_REQUIRED", "EXOTIC_CERVID_REVIEW_REQUIRED"},
        )
        self.assertNotIn("MISSING_TAHC_CVI", MARKETPLACE_CLEARABLE_HOLD_REASONS)

    def test_undelivered_order_blocks(self):
        order = _order(
            status="paid",
            transaction_status="DELIVERY_SCHEDULED",
            delivered_at=None,
            buyer_confirmed_at=None,
        )
        decision = can_release(order, NOW)
        self.assertEqual(decision.reason, "delivery_not_confirmed")
        self.assertIn("buyer_not_confirmed", decision.blockers)
        self.assertIn("invalid_status", decision.blockers)

    def test_unconfirmed_delivery_waits_for_buyer(self):
        order = _order(status="delivered", buyer_confirmed_at=None)
        self.assertEqual(can_release(order, NOW).reason, "buyer_not_confirmed")

    def test_dispute_deadline_skipped_once_buyer_confirmed(self):
        order = _order(dispute_deadline_at=NOW + timedelta(hours=12))
        self.assertTrue(can_release(order, NOW).eligible)

    def test_dispute_resolved_for_release_counts_as_confirmation(self):
        order = _order(status="ready_to_release", buyer_confirmed_at=None, dispute_status="resolved_release")
        self.assertTrue(can_release(order, NOW).eligible)

    def test_derive_hold_reason_precedence(self):
        ends_at = NOW + timedelta(days=2)
        self.assertEqual(derive_hold_reason(_order(admin_hold=True, dispute_status="open"), NOW), "admin_hold")
        self.assertEqual(derive_hold_reason(_order(dispute_status="open", chargeback_status="open"), NOW), "dispute_open")
        self.assertEqual(derive_hold_reason(_order(chargeback_status="open", protection_ends_at=ends_at), NOW), "chargeback")
        self.assertEqual(
            derive_hold_reason(_order(protection_ends_at=ends_at, compliance_hold_code="ESA_REVIEW_REQUIRED"), NOW),
            "protection_window",
        )
        self.assertEqual(derive_hold_reason(_order(compliance_hold_code="ESA_REVIEW_REQUIRED"), NOW), "ESA_REVIEW_REQUIRED")
        self.assertEqual(derive_hold_reason(_order(), NOW), "none")

    def test_hold_info_and_explanation(self):
        ends_at = NOW + timedelta(days=1)
        order = _order(protection_ends_at=ends_at, payout_hold_reason="protection_window")
        info = hold_info(order, NOW)
        self.assertFalse(info["can_release"])
        self.assertEqual(info["earliest_release_at"], ends_at.isoformat())
        self.assertEqual(info["effective_status"], "DELIVERED_PENDING_CONFIRMATION")
        self.assertEqual([b["code"] for b in info["blockers"]], ["protection_window"])

        text = payout_explanation(order, NOW)
        self.assertIn("Payout status: on hold", text)
        self.assertIn("Seller payout: 900.00 USD", text)
        self.assertIn("Protection window open until", text)
        self.assertIn("ready to release", payout_explanation(_order(), NOW))


if __name__ == "__main__":
    unittest.main()
