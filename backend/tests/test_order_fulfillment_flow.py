from __future__ import annotations

import unittest

from order_fixtures import auth_headers, build_app, restore_env, seed_listing, seed_order, seed_parties, window

from stockyard.extensions import db
from stockyard.models import Notification, Order, OrderTimelineEvent


class SellerDeliveryFlowTestCase(unittest.TestCase):
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
            listing_id = seed_listing(self.parties["seller_id"])
            self.order_id = seed_order(self.parties, listing_id=listing_id)
        self.buyer = auth_headers(self.parties["buyer_id"])
        self.seller = auth_headers(self.parties["seller_id"])
        self.admin = auth_headers(self.parties["admin_id"])

    def _post(self, path: str, headers: dict, body: dict | None = None):
        return self.client.post(f"/api/orders/{self.order_id}{path}", json=body or {}, headers=headers)

    def test_full_delivery_flow_to_release(self):
        res = self._post("/set-delivery-address", self.buyer, {"address": {"line1": "12 Ranch Rd", "city": "Amarillo"}})
        self.assertEqual(res.status_code, 200, res.get_json())

        res = self._post("/fulfillment/schedule-delivery", self.seller, {"windows": [window(2), window(3)], "transporter": "Panhandle Haulers"})
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effective_status"], "DELIVERY_PROPOSED")

        res = self._post("/fulfillment/agree-delivery", self.buyer, {"window_index": 1})
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effective_status"], "DELIVERY_SCHEDULED")

        res = self._post("/start-delivery-tracking", self.seller)
        self.assertEqual(res.get_json()["effective_status"], "OUT_FOR_DELIVERY")

        res = self._post("/mark-delivered", self.seller, {"signature_url": "https://files.test/sig.png"})
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effective_status"], "DELIVERED_PENDING_CONFIRMATION")

        res = self._post("/confirm-receipt", self.buyer)
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertFalse(body["already_applied"])
        # No protection snapshot was taken, so acceptance makes it releasable at once
        self.assertEqual(body["order"]["status"], "ready_to_release")

        res = self.client.post(f"/api/admin/orders/{self.order_id}/release", json={}, headers=self.admin)
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertTrue(body["transfer_id"].startswith("tr_mock_"))
        self.assertEqual(body["effective_status"], "COMPLETED")

        res = self.client.get(f"/api/orders/{self.order_id}/timeline", headers=self.buyer)
        types = [item["type"] for item in res.get_json()["items"]]
        self.assertEqual(
            types,
            [
                "DELIVERY_ADDRESS_SET",
                "DELIVERY_PROPOSED",
                "DELIVERY_SCHEDULED",
                "OUT_FOR_DELIVERY",
                "DELIVERED",
                "BUYER_CONFIRMED",
                "PAYOUT_RELEASED",
            ],
        )

        with self.app.app_context():
            events = {n.event_type for n in Notification.query.filter_by(order_id=self.order_id).all()}
        self.assertTrue({"Order.DeliveryProposed", "Order.Delivered", "Order.BuyerConfirmed", "Order.PayoutReleased"} <= events)

    def test_confirm_receipt_is_idempotent(self):
        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            order.status = "delivered"
            order.transaction_status = "DELIVERED_PENDING_CONFIRMATION"
            db.session.commit()

        first = self._post("/confirm-receipt", self.buyer)
        self.assertEqual(first.status_code, 200)
        with self.app.app_context():
            stamp = db.session.get(Order, self.order_id).updated_at

        second = self._post("/confirm-receipt", self.buyer)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.get_json()["already_applied"])
        with self.app.app_context():
            self.assertEqual(db.session.get(Order, self.order_id).updated_at, stamp)
            count = OrderTimelineEvent.query.filter_by(order_id=self.order_id, event_type="BUYER_CONFIRMED").count()
        self.assertEqual(count, 1)

    def test_agree_before_proposal_is_rejected_without_mutation(self):
        with self.app.app_context():
            before = db.session.get(Order, self.order_id).updated_at

        res = self._post("/fulfillment/agree-delivery", self.buyer, {"window_index": 0})
        body = res.get_json()
        self.assertEqual(res.status_code, 409)
        self.assertEqual(body["error"], "INVALID_TRANSITION")
        self.assertEqual(body["current_status"], "FULFILLMENT_REQUIRED")
        self.assertEqual(body["allowed_statuses"], ["DELIVERY_PROPOSED"])
        self.assertTrue(body["trace_id"])

        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            self.assertEqual(order.transaction_status, "FULFILLMENT_REQUIRED")
            self.assertEqual(order.updated_at, before)
            self.assertEqual(OrderTimelineEvent.query.filter_by(order_id=self.order_id).count(), 0)

    def test_proposal_requires_buyer_address(self):
        res = self._post("/fulfillment/schedule-delivery", self.seller, {"windows": [window(2)]})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "ADDRESS_REQUIRED")

    def test_inverted_window_is_rejected(self):
        self._post("/set-delivery-address", self.buyer, {"address": "4 Feedlot Ln"})
        bad = window(2)
        res = self._post("/fulfillment/schedule-delivery", self.seller, {"windows": [{"start": bad["end"], "end": bad["start"]}]})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_WINDOW")

    def test_single_eta_schedules_directly(self):
        res = self._post("/fulfillment/schedule-delivery", self.seller, {"eta": window(1)["start"]})
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effective_status"], "DELIVERY_SCHEDULED")

    def test_only_parties_act(self):
        res = self._post("/set-delivery-address", self.seller, {"address": "wrong side"})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "FORBIDDEN")

        outsider = auth_headers(self.parties["outsider_id"])
        res = self.client.get(f"/api/orders/{self.order_id}", headers=outsider)
        self.assertEqual(res.status_code, 403)

        res = self.client.get(f"/api/orders/{self.order_id}", headers=self.admin)
        self.assertEqual(res.status_code, 200)

    def test_stopping_tracking_twice_records_one_entry(self):
        self._post("/set-delivery-address", self.buyer, {"address": {"line1": "12 Ranch Rd", "city": "Amarillo"}})
        self._post("/fulfillment/schedule-delivery", self.seller, {"windows": [window(2)]})
        self._post("/fulfillment/agree-delivery", self.buyer, {"window_index": 0})
        self._post("/start-delivery-tracking", self.seller)
        for _ in range(2):
            res = self._post("/stop-delivery-tracking", self.seller)
            self.assertEqual(res.status_code, 200, res.get_json())
        with self.app.app_context():
            stopped = OrderTimelineEvent.query.filter_by(order_id=self.order_id, event_type="TRACKING_STOPPED").all()
        self.assertEqual([row.event_id for row in stopped], [f"TRACKING_STOPPED:{self.order_id}:1"])

    def test_transport_locked_after_fulfillment_starts(self):
        res = self._post("/transport-option", self.buyer, {"transport_option": "BUYER_TRANSPORT"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["transport_option"], "BUYER_TRANSPORT")

        self._post("/fulfillment/set-pickup-info", self.seller, {"location": "Sale barn", "windows": [window(1)]})
        res = self._post("/transport-option", self.buyer, {"transport_option": "SELLER_TRANSPORT"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "TRANSPORT_LOCKED")


class BuyerPickupFlowTestCase(unittest.TestCase):
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
            self.order_id = seed_order(self.parties, transport_option="BUYER_TRANSPORT")
        self.buyer = auth_headers(self.parties["buyer_id"])
        self.seller = auth_headers(self.parties["seller_id"])

    def _post(self, path: str, headers: dict, body: dict | None = None):
        return self.client.post(f"/api/orders/{self.order_id}/fulfillment{path}", json=body or {}, headers=headers)

    def test_pickup_flow_with_code(self):
        res = self._post("/set-pickup-info", self.seller, {"location": "Barn 4, Lubbock sale yard", "windows": [window(1), window(2)]})
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effective_status"], "READY_FOR_PICKUP")
        code = res.get_json()["order"]["pickup"]["pickup_code"]
        self.assertEqual(len(code), 6)

        buyer_view = self.client.get(f"/api/orders/{self.order_id}", headers=self.buyer).get_json()
        self.assertNotIn("pickup_code", buyer_view["order"]["pickup"])

        res = self._post("/select-pickup-window", self.buyer, {"window_index": 1})
        self.assertEqual(res.get_json()["effective_status"], "PICKUP_PROPOSED")

        res = self._post("/agree-pickup-window", self.seller)
        self.assertEqual(res.get_json()["effective_status"], "PICKUP_SCHEDULED")

        res = self._post("/confirm-pickup", self.buyer, {"pickup_code": "000000" if code != "000000" else "111111"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_PICKUP_CODE")

        res = self._post("/confirm-pickup", self.buyer, {"pickup_code": code})
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertEqual(body["effective_status"], "PICKED_UP")
        self.assertEqual(body["order"]["status"], "buyer_confirmed")
        self.assertIsNotNone(body["order"]["buyer_confirmed_at"])

    def test_repeated_pickup_info_is_recorded_once(self):
        body = {"location": "Barn 4, Lubbock sale yard", "windows": [window(1)]}
        for _ in range(3):
            res = self._post("/set-pickup-info", self.seller, body)
            self.assertEqual(res.status_code, 200, res.get_json())
        res = self._post("/set-pickup-info", self.seller, {"location": "Barn 7, Lubbock sale yard", "windows": body["windows"]})
        self.assertEqual(res.get_json()["order"]["pickup"]["location"], "Barn 7, Lubbock sale yard")
        self._post("/set-pickup-info", self.seller, body)

        with self.app.app_context():
            ids = [
                row.event_id
                for row in OrderTimelineEvent.query.filter_by(order_id=self.order_id).order_by(OrderTimelineEvent.id).all()
            ]
        self.assertEqual(
            ids,
            [
                f"READY_FOR_PICKUP:{self.order_id}",
                f"PICKUP_INFO_UPDATED:{self.order_id}:2",
                f"PICKUP_INFO_UPDATED:{self.order_id}:3",
            ],
        )

    def test_delivery_steps_rejected_for_pickup_orders(self):
        res = self.client.post(
            f"/api/orders/{self.order_id}/set-delivery-address",
            json={"address": "nowhere"},
            headers=self.buyer,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "TRANSPORT_MISMATCH")

    def test_agree_without_selection_is_invalid_transition(self):
        self._post("/set-pickup-info", self.seller, {"location": "Barn 4", "windows": [window(1)]})
        res = self._post("/agree-pickup-window", self.seller)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["current_status"], "READY_FOR_PICKUP")


if __name__ == "__main__":
    unittest.main()
