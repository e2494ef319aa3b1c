from datetime import datetime
import json

from stockyard.extensions import db


def _load_json(raw, default):
    if not raw:
        return default
    try:
        data = json.loads(raw)
    except Exception:
        return default
    if isinstance(default, dict) and not isinstance(data, dict):
        return default
    if isinstance(default, list) and not isinstance(data, list):
        return default
    return data


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=True, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    # Money (gross = platform_fee + seller_amount)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    platform_fee = db.Column(db.Float, nullable=False, default=0.0)
    seller_amount = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    refunded_amount = db.Column(db.Float, nullable=True)
    refund_id = db.Column(db.String(128), nullable=True)

    # Legacy coarse status and canonical transaction status
    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    transaction_status = db.Column(db.String(48), nullable=True, index=True)
    transport_option = db.Column(db.String(24), nullable=False, default="SELLER_TRANSPORT")

    payout_hold_reason = db.Column(db.String(64), nullable=False, default="none", index=True)
    compliance_hold_code = db.Column(db.String(64), nullable=True)

    # Disputes and chargebacks
    dispute_status = db.Column(db.String(32), nullable=False, default="none", index=True)
    dispute_reason = db.Column(db.String(32), nullable=True)
    dispute_notes = db.Column(db.Text, nullable=True)
    dispute_evidence_json = db.Column(db.Text, nullable=True)
    dispute_resolution_json = db.Column(db.Text, nullable=True)
    dispute_opened_at = db.Column(db.DateTime, nullable=True)
    dispute_resolved_at = db.Column(db.DateTime, nullable=True)
    chargeback_status = db.Column(db.String(16), nullable=False, default="none")

    # Custody linkage: a transfer id is proof of release
    transfer_id = db.Column(db.String(128), nullable=True, unique=True)

    # Protection window snapshot, fixed at delivery confirmation
    protection_days = db.Column(db.Integer, nullable=True)
    protection_start_at = db.Column(db.DateTime, nullable=True)
    protection_ends_at = db.Column(db.DateTime, nullable=True, index=True)
    # Set when a dispute ruling concludes the buyer's remaining protection
    protection_waived_at = db.Column(db.DateTime, nullable=True)

    # Fulfillment sub-documents (JSON)
    pickup_json = db.Column(db.Text, nullable=True)
    delivery_json = db.Column(db.Text, nullable=True)

    # Admin controls
    admin_hold = db.Column(db.Boolean, nullable=False, default=False, index=True)
    admin_hold_reason = db.Column(db.String(240), nullable=True)
    admin_payout_approval = db.Column(db.Boolean, nullable=True)
    admin_payout_approved_by = db.Column(db.Integer, nullable=True)
    admin_payout_approved_at = db.Column(db.DateTime, nullable=True)
    admin_action_notes_json = db.Column(db.Text, nullable=True)
    admin_reviewed_at = db.Column(db.DateTime, nullable=True)

    # Transfer compliance for regulated species
    requires_transfer_compliance = db.Column(db.Boolean, nullable=False, default=False)
    compliance_buyer_confirmed_at = db.Column(db.DateTime, nullable=True)
    compliance_seller_confirmed_at = db.Column(db.DateTime, nullable=True)

    # Checkout
    payment_method = db.Column(db.String(32), nullable=True)  # card | bank_transfer | wire
    checkout_session_id = db.Column(db.String(128), nullable=True, index=True)
    payment_intent_id = db.Column(db.String(128), nullable=True, index=True)
    checkout_expires_at = db.Column(db.DateTime, nullable=True)

    # Milestones
    paid_at = db.Column(db.DateTime, nullable=True)
    in_transit_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    delivery_confirmed_at = db.Column(db.DateTime, nullable=True)
    accepted_at = db.Column(db.DateTime, nullable=True)
    buyer_confirmed_at = db.Column(db.DateTime, nullable=True)
    dispute_deadline_at = db.Column(db.DateTime, nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    released_by = db.Column(db.String(64), nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    escalated_at = db.Column(db.DateTime, nullable=True)

    last_updated_by_role = db.Column(db.String(16), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # JSON accessors always hand out copies; assign back to persist.
    @property
    def pickup(self) -> dict:
        return _load_json(self.pickup_json, {})

    @pickup.setter
    def pickup(self, value: dict | None) -> None:
        self.pickup_json = json.dumps(value) if value else None

    @property
    def delivery(self) -> dict:
        return _load_json(self.delivery_json, {})

    @delivery.setter
    def delivery(self, value: dict | None) -> None:
        self.delivery_json = json.dumps(value) if value else None

    @property
    def dispute_evidence(self) -> list:
        return _load_json(self.dispute_evidence_json, [])

    @dispute_evidence.setter
    def dispute_evidence(self, value: list | None) -> None:
        self.dispute_evidence_json = json.dumps(value) if value else None

    @property
    def dispute_resolution(self) -> dict:
        return _load_json(self.dispute_resolution_json, {})

    @dispute_resolution.setter
    def dispute_resolution(self, value: dict | None) -> None:
        self.dispute_resolution_json = json.dumps(value) if value else None

    @property
    def admin_action_notes(self) -> list:
        return _load_json(self.admin_action_notes_json, [])

    @admin_action_notes.setter
    def admin_action_notes(self, value: list | None) -> None:
        self.admin_action_notes_json = json.dumps(value) if value else None

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id) if self.listing_id is not None else None,
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "quantity": int(self.quantity or 1),
            "amount": float(self.amount or 0.0),
            "platform_fee": float(self.platform_fee or 0.0),
            "seller_amount": float(self.seller_amount or 0.0),
            "currency": self.currency or "usd",
            "refunded_amount": float(self.refunded_amount) if self.refunded_amount is not None else None,
            "status": self.status or "pending",
            "transaction_status": self.transaction_status,
            "transport_option": self.transport_option or "SELLER_TRANSPORT",
            "payout_hold_reason": self.payout_hold_reason or "none",
            "dispute_status": self.dispute_status or "none",
            "dispute_reason": self.dispute_reason,
            "dispute_evidence": self.dispute_evidence,
            "dispute_resolution": self.dispute_resolution,
            "chargeback_status": self.chargeback_status or "none",
            "transfer_id": self.transfer_id,
            "protection_days": int(self.protection_days) if self.protection_days is not None else None,
            "protection_start_at": _iso(self.protection_start_at),
            "protection_ends_at": _iso(self.protection_ends_at),
            "protection_waived_at": _iso(self.protection_waived_at),
            "pickup": self.pickup,
            "delivery": self.delivery,
            "admin_hold": bool(self.admin_hold),
            "admin_hold_reason": self.admin_hold_reason or "",
            "admin_payout_approval": self.admin_payout_approval,
            "admin_action_notes": self.admin_action_notes,
            "requires_transfer_compliance": bool(self.requires_transfer_compliance),
            "paid_at": _iso(self.paid_at),
            "in_transit_at": _iso(self.in_transit_at),
            "delivered_at": _iso(self.delivered_at),
            "delivery_confirmed_at": _iso(self.delivery_confirmed_at),
            "accepted_at": _iso(self.accepted_at),
            "buyer_confirmed_at": _iso(self.buyer_confirmed_at),
            "dispute_deadline_at": _iso(self.dispute_deadline_at),
            "dispute_opened_at": _iso(self.dispute_opened_at),
            "released_at": _iso(self.released_at),
            "released_by": self.released_by or "",
            "refunded_at": _iso(self.refunded_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
