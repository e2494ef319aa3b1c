from __future__ import annotations

from stockyard.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from stockyard.integrations.payments.base import PaymentsProvider
from stockyard.integrations.payments.mock_provider import MockPaymentsProvider
from stockyard.integrations.payments.stripe_provider import StripePaymentsProvider


def build_payments_provider(settings) -> PaymentsProvider:
    provider = (getattr(settings, "payments_provider", "mock") or "mock").strip().lower()

    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        if bool(getattr(settings, "is_production", False)):
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:mock payments in production")
        return MockPaymentsProvider()

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (getattr(settings, "stripe_secret_key", "") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")

    return StripePaymentsProvider(
        secret_key=secret_key,
        webhook_secret=(getattr(settings, "stripe_webhook_secret", "") or "").strip(),
    )


def payment_health(settings) -> dict:
    provider = (getattr(settings, "payments_provider", "mock") or "mock").strip().lower()
    missing = []
    if provider == "stripe":
        if not (getattr(settings, "stripe_secret_key", "") or "").strip():
            missing.append("STRIPE_SECRET_KEY")
        if not (getattr(settings, "stripe_webhook_secret", "") or "").strip():
            missing.append("STRIPE_WEBHOOK_SECRET")
    if provider == "disabled":
        status = "disabled"
    elif missing or provider not in ("mock", "stripe"):
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "provider": provider,
        "missing": missing,
    }
