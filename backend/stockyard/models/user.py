from datetime import datetime

from werkzeug.security import generate_password_hash, check_password_hash

from stockyard.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False, default="")

    role = db.Column(db.String(32), nullable=False, default="buyer")  # buyer | seller | admin

    # Connected payout account at the payment processor
    payout_account_id = db.Column(db.String(128), nullable=True)
    payouts_enabled = db.Column(db.Boolean, nullable=False, default=False)

    # Seller / buyer stats maintained by the order engine
    completed_sales_count = db.Column(db.Integer, nullable=False, default=0)
    claims_count = db.Column(db.Integer, nullable=False, default=0)
    fraud_count = db.Column(db.Integer, nullable=False, default=0)
    risk_score = db.Column(db.Integer, nullable=False, default=0)
    protection_eligible = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role or "buyer",
            "payouts_enabled": bool(self.payouts_enabled),
            "completed_sales_count": int(self.completed_sales_count or 0),
            "claims_count": int(self.claims_count or 0),
            "fraud_count": int(self.fraud_count or 0),
            "risk_score": int(self.risk_score or 0),
            "protection_eligible": bool(self.protection_eligible),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
