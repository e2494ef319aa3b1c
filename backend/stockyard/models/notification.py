from datetime import datetime
import json

from stockyard.extensions import db


class Notification(db.Model):
    """Outbound order event for a single user; delivery happens elsewhere."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)

    event_type = db.Column(db.String(80), nullable=False)  # Order.DeliveryScheduled, Order.PayoutReleased, ...
    dedupe_key = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(24), nullable=False, default="queued")  # queued | sent | failed

    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    def payload_dict(self) -> dict:
        raw = (self.payload_json or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "event_type": self.event_type or "",
            "status": self.status or "queued",
            "payload": self.payload_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
