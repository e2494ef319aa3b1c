from datetime import datetime
import json

from stockyard.extensions import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    action = db.Column(db.String(120), nullable=False, index=True)
    target_type = db.Column(db.String(64), nullable=False, default="order")
    target_id = db.Column(db.Integer, nullable=True, index=True)
    meta = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        try:
            meta = json.loads(self.meta) if self.meta else {}
        except Exception:
            meta = {"raw": self.meta}
        return {
            "id": int(self.id),
            "actor_user_id": self.actor_user_id,
            "action": self.action or "",
            "target_type": self.target_type or "",
            "target_id": self.target_id,
            "meta": meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
