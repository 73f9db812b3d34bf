from datetime import datetime

import sqlalchemy as sa

from kmarket.extensions import db
from kmarket.utils.money import money_minor_to_major


class Product(db.Model):
    """Catalog snapshot consulted at order creation only."""

    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(160), nullable=False)
    price_minor = db.Column(db.Integer, nullable=False, default=0)
    stock = db.Column(db.Integer, nullable=False, default=0)
    sales = db.Column(db.Integer, nullable=False, default=0)
    is_available = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "name": self.name or "",
            "price_minor": int(self.price_minor or 0),
            "price": money_minor_to_major(self.price_minor),
            "stock": int(self.stock or 0),
            "sales": int(self.sales or 0),
            "is_available": bool(self.is_available),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
