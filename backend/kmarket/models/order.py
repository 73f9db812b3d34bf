from datetime import datetime

from kmarket.extensions import db
from kmarket.utils.money import money_minor_to_major


def _iso(value):
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_orders_quantity_positive"),
        db.Index("ix_orders_status_delivery_person", "status", "delivery_person_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    checkout_reference = db.Column(db.String(64), nullable=True, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    deal_id = db.Column(db.Integer, db.ForeignKey("flash_deals.id"), nullable=True, index=True)

    # Pricing is snapshotted at creation and never recomputed from the catalog.
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_minor = db.Column(db.Integer, nullable=False, default=0)
    deal_price_minor = db.Column(db.Integer, nullable=True)
    total_amount_minor = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="GHS")

    delivery_address = db.Column(db.Text, nullable=False, default="")
    status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    tracking_number = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    buyer_confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    # Delivery assignment
    delivery_person_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    claimed_at = db.Column(db.DateTime, nullable=True)

    # Delivery proof
    delivery_proof_url = db.Column(db.String(1024), nullable=True)
    delivery_photo_uploaded_at = db.Column(db.DateTime, nullable=True)
    delivery_signature_name = db.Column(db.String(160), nullable=True)
    delivery_signature_data = db.Column(db.Text, nullable=True)
    delivery_proof_type = db.Column(db.String(24), nullable=True)

    # Escrow record
    escrow_status = db.Column(db.String(16), nullable=False, default="none", index=True)
    escrow_amount_minor = db.Column(db.Integer, nullable=False, default=0)
    escrow_updated_at = db.Column(db.DateTime, nullable=True)

    # Dispute
    issue_description = db.Column(db.Text, nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    dispute_resolution = db.Column(db.String(16), nullable=True)
    resolution_note = db.Column(db.String(500), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    @property
    def effective_unit_price_minor(self) -> int:
        if self.deal_price_minor is not None:
            return int(self.deal_price_minor)
        return int(self.unit_price_minor or 0)

    def to_dict(self, *, include_signature: bool = False) -> dict:
        payload = {
            "id": int(self.id),
            "order_number": self.order_number,
            "checkout_reference": self.checkout_reference or None,
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "product_id": int(self.product_id),
            "deal_id": int(self.deal_id) if self.deal_id is not None else None,
            "quantity": int(self.quantity or 0),
            "unit_price_minor": int(self.unit_price_minor or 0),
            "unit_price": money_minor_to_major(self.unit_price_minor),
            "deal_price_minor": int(self.deal_price_minor) if self.deal_price_minor is not None else None,
            "deal_price": money_minor_to_major(self.deal_price_minor) if self.deal_price_minor is not None else None,
            "total_amount_minor": int(self.total_amount_minor or 0),
            "total_amount": money_minor_to_major(self.total_amount_minor),
            "currency": self.currency or "",
            "delivery_address": self.delivery_address or "",
            "status": self.status or "pending",
            "tracking_number": self.tracking_number or None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "buyer_confirmed_at": _iso(self.buyer_confirmed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "delivery_person_id": int(self.delivery_person_id) if self.delivery_person_id is not None else None,
            "claimed_at": _iso(self.claimed_at),
            "delivery_proof_url": self.delivery_proof_url or None,
            "delivery_photo_uploaded_at": _iso(self.delivery_photo_uploaded_at),
            "delivery_signature_name": self.delivery_signature_name or None,
            "delivery_proof_type": self.delivery_proof_type or None,
            "escrow_status": self.escrow_status or "none",
            "escrow_amount_minor": int(self.escrow_amount_minor or 0),
            "issue_description": self.issue_description or None,
            "disputed_at": _iso(self.disputed_at),
            "dispute_resolution": self.dispute_resolution or None,
            "resolved_at": _iso(self.resolved_at),
        }
        if include_signature:
            payload["delivery_signature_data"] = self.delivery_signature_data or None
        return payload
