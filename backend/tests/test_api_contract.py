from __future__ import annotations

import os
import unittest
import uuid
from unittest.mock import patch

from flask import Flask
from order_fixtures import apply_env, auth_headers, build_app, restore_env, seed_order, seed_parties, seed_releasable_order

from stockyard import create_app
from stockyard.utils.observability import init_sentry


class ApiErrorContractTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app, cls._prev_env = build_app()
        cls.client = cls.app.test_client()
        with cls.app.app_context():
            cls.parties = seed_parties()
            cls.order_id = seed_order(cls.parties)

    @classmethod
    def tearDownClass(cls):
        restore_env(cls._prev_env)

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), 404)
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        rid = (res.headers.get("X-Request-ID") or "").strip()
        self.assertTrue(rid)
        uuid.UUID(rid)

    def test_echoes_request_id_when_provided(self):
        res = self.client.get("/api/health", headers={"X-Request-ID": "rid-test-123"})
        self.assertEqual(res.headers.get("X-Request-ID"), "rid-test-123")

    def test_missing_auth_includes_trace_id(self):
        res = self.client.post(f"/api/orders/{self.order_id}/confirm-receipt")
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True)
        self.assertEqual(body["status"], 401)
        self.assertEqual((body.get("trace_id") or "").strip(), (res.headers.get("X-Request-ID") or "").strip())

    def test_unknown_order(self):
        res = self.client.get("/api/orders/987654", headers=auth_headers(self.parties["buyer_id"]))
        body = res.get_json()
        self.assertEqual(res.status_code, 404)
        self.assertEqual(body["error"], "ORDER_NOT_FOUND")
        self.assertFalse(body["ok"])

    def test_non_object_body_is_rejected(self):
        res = self.client.post(
            f"/api/orders/{self.order_id}/set-delivery-address",
            json=["12 Ranch Rd"],
            headers=auth_headers(self.parties["buyer_id"]),
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_BODY")

    def test_unexpected_failure_is_json_500(self):
        with patch("stockyard.services.fulfillment_service.set_delivery_address", side_effect=RuntimeError("boom")):
            res = self.client.post(
                f"/api/orders/{self.order_id}/set-delivery-address",
                json={"address": "12 Ranch Rd"},
                headers={**auth_headers(self.parties["buyer_id"]), "X-Request-ID": "rid-boom"},
            )
        body = res.get_json()
        self.assertEqual(res.status_code, 500)
        self.assertEqual(body["error"], "InternalServerError")
        self.assertEqual(body["trace_id"], "rid-boom")
        self.assertNotIn("boom", body["message"])

    def test_health_reports_dependencies(self):
        body = self.client.get("/api/health").get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["service"], "stockyard-orders")
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["payments"]["provider"], "mock")
        self.assertEqual(body["payments"]["status"], "configured")
        self.assertTrue(body["payments"]["available"])
        self.assertEqual(body["notification_errors"], 0)

    def test_release_eligibility_for_parties(self):
        res = self.client.get(
            f"/api/orders/{self.order_id}/release-eligibility",
            headers=auth_headers(self.parties["seller_id"]),
        )
        body = res.get_json()
        self.assertEqual(res.status_code, 200, body)
        self.assertFalse(body["can_release"])
        self.assertEqual(body["effective_status"], "FULFILLMENT_REQUIRED")


class PaymentsDisabledTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app, cls._prev_env = build_app({"PAYMENTS_PROVIDER": "disabled"})
        cls.client = cls.app.test_client()
        with cls.app.app_context():
            cls.parties = seed_parties()
            cls.order_id = seed_releasable_order(cls.parties)

    @classmethod
    def tearDownClass(cls):
        restore_env(cls._prev_env)

    def test_release_answers_dependency_unavailable(self):
        res = self.client.post(
            f"/api/admin/orders/{self.order_id}/release",
            json={},
            headers=auth_headers(self.parties["admin_id"]),
        )
        body = res.get_json()
        self.assertEqual(res.status_code, 503)
        self.assertEqual(body["error"], "PAYMENTS_UNAVAILABLE")
        self.assertTrue(body["retryable"])

    def test_webhook_answers_dependency_unavailable(self):
        res = self.client.post("/api/webhooks/stripe", data=b"{}", content_type="application/json")
        self.assertEqual(res.status_code, 503)

    def test_health_shows_disabled_processor(self):
        body = self.client.get("/api/health").get_json()
        self.assertEqual(body["payments"]["status"], "disabled")
        self.assertFalse(body["payments"]["available"])


class StartupChecksTestCase(unittest.TestCase):
    def test_production_requires_strong_secret(self):
        prev = apply_env({"STOCKYARD_ENV": "production", "SECRET_KEY": "short", "PAYMENTS_PROVIDER": "disabled"})
        try:
            with self.assertRaises(RuntimeError):
                create_app()
        finally:
            restore_env(prev)

    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)


if __name__ == "__main__":
    unittest.main()
