from __future__ import annotations

import itertools
import os
import time
from datetime import datetime, timedelta

from stockyard import create_app
from stockyard.extensions import db
from stockyard.models import Listing, ListingReservation, Order, User
from stockyard.utils.jwt_utils import create_token

TEST_ENV = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "DATABASE_URL": "sqlite:///:memory:",
    "STOCKYARD_ENV": "test",
    "PAYMENTS_PROVIDER": "mock",
    "NOTIFY_DISPATCH_MODE": "inline",
    "STRIPE_WEBHOOK_QUEUE": "0",
    "SECRET_KEY": "stockyard-test-secret-key-0001",
}

_counter = itertools.count(1)


def apply_env(overrides: dict | None = None) -> dict:
    """Set the test environment; returns the previous values for ``restore_env``."""
    wanted = dict(TEST_ENV)
    wanted.update(overrides or {})
    previous = {key: os.environ.get(key) for key in wanted}
    for key, value in wanted.items():
        os.environ[key] = value
    return previous


def restore_env(previous: dict) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def build_app(overrides: dict | None = None):
    previous = apply_env(overrides)
    app = create_app()
    app.config.update(TESTING=True)
    with app.app_context():
        db.create_all()
    return app, previous


def _suffix() -> str:
    return f"{time.time_ns()}-{next(_counter)}"


def seed_user(role: str = "buyer", *, payout_account: str | None = None) -> int:
    suffix = _suffix()
    user = User(
        name=f"Test {role.title()}",
        email=f"{role}-{suffix}@stockyard.test",
        role=role,
        payout_account_id=payout_account,
        payouts_enabled=bool(payout_account),
    )
    user.set_password("Passw0rd!")
    db.session.add(user)
    db.session.commit()
    return int(user.id)


def seed_parties() -> dict[str, int]:
    return {
        "seller_id": seed_user("seller", payout_account=f"acct_test_{_suffix()}"),
        "buyer_id": seed_user("buyer"),
        "admin_id": seed_user("admin"),
        "outsider_id": seed_user("buyer"),
    }


def seed_listing(seller_id: int, **fields) -> int:
    values = {
        "title": "Registered Angus heifer",
        "category": "cattle_livestock",
        "price": 1000.0,
        "quantity_available": 1,
    }
    values.update(fields)
    listing = Listing(seller_id=int(seller_id), **values)
    db.session.add(listing)
    db.session.commit()
    return int(listing.id)


def seed_reservation(listing_id: int, order_id: int, quantity: int = 1) -> int:
    row = ListingReservation(listing_id=int(listing_id), order_id=int(order_id), quantity=int(quantity))
    db.session.add(row)
    db.session.commit()
    return int(row.id)


def seed_order(parties: dict[str, int], **fields) -> int:
    now = datetime.utcnow()
    values = {
        "buyer_id": parties["buyer_id"],
        "seller_id": parties["seller_id"],
        "amount": 1000.0,
        "platform_fee": 100.0,
        "seller_amount": 900.0,
        "currency": "usd",
        "status": "paid",
        "paid_at": now - timedelta(hours=1),
        "transaction_status": "FULFILLMENT_REQUIRED",
        "payment_intent_id": f"pi_test_{_suffix()}",
    }
    values.update(fields)
    order = Order(**values)
    db.session.add(order)
    db.session.commit()
    return int(order.id)


def seed_releasable_order(parties: dict[str, int], **fields) -> int:
    """A delivered, buyer-confirmed order with nothing holding the payout."""
    now = datetime.utcnow()
    values = {
        "status": "ready_to_release",
        "transaction_status": "DELIVERED_PENDING_CONFIRMATION",
        "paid_at": now - timedelta(days=3),
        "delivered_at": now - timedelta(days=1),
        "buyer_confirmed_at": now - timedelta(hours=2),
        "accepted_at": now - timedelta(hours=2),
    }
    values.update(fields)
    return seed_order(parties, **values)


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_token(int(user_id))}"}


def window(days_ahead: int = 2, hours: int = 3) -> dict:
    start = (datetime.utcnow() + timedelta(days=days_ahead)).replace(microsecond=0)
    return {"start": start.isoformat() + "Z", "end": (start + timedelta(hours=hours)).isoformat() + "Z"}
