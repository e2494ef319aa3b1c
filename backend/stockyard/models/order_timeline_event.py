from datetime import datetime
import json

from stockyard.extensions import db


class OrderTimelineEvent(db.Model):
    __tablename__ = "order_timeline_events"
    __table_args__ = (
        db.UniqueConstraint("order_id", "event_id", name="uq_order_timeline_order_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False, index=True)
    event_id = db.Column(db.String(160), nullable=False)
    event_type = db.Column(db.String(64), nullable=False)
    label = db.Column(db.String(240), nullable=False, default="")
    actor = db.Column(db.String(16), nullable=False, default="system")  # buyer | seller | admin | system
    visibility = db.Column(db.String(16), nullable=False, default="both")  # buyer | seller | both | admin
    meta_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def meta_dict(self) -> dict:
        raw = self.meta_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": self.event_id,
            "order_id": int(self.order_id),
            "type": self.event_type,
            "label": self.label or "",
            "actor": self.actor or "system",
            "visibility": self.visibility or "both",
            "meta": self.meta_dict(),
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }
