from datetime import datetime

import sqlalchemy as sa

from kmarket.extensions import db
from kmarket.utils.money import money_minor_to_major


class FlashDeal(db.Model):
    __tablename__ = "flash_deals"
    __table_args__ = (
        db.CheckConstraint("quantity_sold >= 0", name="ck_flash_deals_sold_non_negative"),
        db.CheckConstraint("quantity_sold <= quantity_available", name="ck_flash_deals_no_oversell"),
        db.CheckConstraint("deal_price_minor < original_price_minor", name="ck_flash_deals_discounted"),
        db.CheckConstraint("ends_at > starts_at", name="ck_flash_deals_window"),
        db.Index("ix_flash_deals_product_window", "product_id", "starts_at", "ends_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    original_price_minor = db.Column(db.Integer, nullable=False)
    deal_price_minor = db.Column(db.Integer, nullable=False)
    # Derived from the two prices on every write; never taken from the client.
    discount_percentage = db.Column(db.Integer, nullable=False, default=0)

    quantity_available = db.Column(db.Integer, nullable=False, default=0)
    quantity_sold = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    starts_at = db.Column(db.DateTime, nullable=False, index=True)
    ends_at = db.Column(db.DateTime, nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def quantity_remaining(self) -> int:
        return max(0, int(self.quantity_available or 0) - int(self.quantity_sold or 0))

    def is_live(self, now: datetime) -> bool:
        if not bool(self.is_active):
            return False
        if self.starts_at is None or self.ends_at is None:
            return False
        if not (self.starts_at <= now < self.ends_at):
            return False
        return int(self.quantity_sold or 0) < int(self.quantity_available or 0)

    def seconds_remaining(self, now: datetime) -> int:
        if self.ends_at is None:
            return 0
        return max(0, int((self.ends_at - now).total_seconds()))

    def seconds_until_start(self, now: datetime) -> int:
        if self.starts_at is None:
            return 0
        return max(0, int((self.starts_at - now).total_seconds()))

    def to_dict(self, now: datetime | None = None) -> dict:
        now = now or datetime.utcnow()
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "seller_id": int(self.seller_id),
            "original_price_minor": int(self.original_price_minor or 0),
            "original_price": money_minor_to_major(self.original_price_minor),
            "deal_price_minor": int(self.deal_price_minor or 0),
            "deal_price": money_minor_to_major(self.deal_price_minor),
            "discount_percentage": int(self.discount_percentage or 0),
            "quantity_available": int(self.quantity_available or 0),
            "quantity_sold": int(self.quantity_sold or 0),
            "quantity_remaining": self.quantity_remaining,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "is_active": bool(self.is_active),
            "is_live": self.is_live(now),
            "seconds_remaining": self.seconds_remaining(now),
            "seconds_until_start": self.seconds_until_start(now),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
