from datetime import datetime

from stockyard.extensions import db


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False)
    category = db.Column(db.String(64), nullable=False, default="cattle_livestock")
    status = db.Column(db.String(24), nullable=False, default="active", index=True)  # active | sold | removed

    price = db.Column(db.Float, nullable=False, default=0.0)
    quantity_available = db.Column(db.Integer, nullable=False, default=1)

    # Buyer protection offered by the seller (0, 7 or 14 days)
    protection_enabled = db.Column(db.Boolean, nullable=False, default=False)
    protection_days = db.Column(db.Integer, nullable=True)

    # Regulatory/marketplace review hold applied to orders on payment (e.g. ESA_REVIEW_REQUIRED)
    payout_hold_code = db.Column(db.String(64), nullable=True)
    requires_transfer_compliance = db.Column(db.Boolean, nullable=False, default=False)

    purchase_reserved_by_order_id = db.Column(db.Integer, nullable=True, index=True)
    sold_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "title": self.title or "",
            "category": self.category or "",
            "status": self.status or "active",
            "price": float(self.price or 0.0),
            "quantity_available": int(self.quantity_available or 0),
            "protection_enabled": bool(self.protection_enabled),
            "protection_days": int(self.protection_days) if self.protection_days is not None else None,
            "payout_hold_code": self.payout_hold_code or "",
            "purchase_reserved_by_order_id": (
                int(self.purchase_reserved_by_order_id) if self.purchase_reserved_by_order_id is not None else None
            ),
            "sold_at": self.sold_at.isoformat() if self.sold_at else None,
        }


class ListingReservation(db.Model):
    __tablename__ = "listing_reservations"

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, nullable=False, unique=True, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id),
            "order_id": int(self.order_id),
            "quantity": int(self.quantity or 0),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
