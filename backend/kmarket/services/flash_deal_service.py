from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

import sqlalchemy as sa
from flask import current_app, has_app_context

from kmarket.extensions import db
from kmarket.models import FlashDeal, Product
from kmarket.services.errors import (
    DealUnavailable,
    ForbiddenError,
    InsufficientDealStock,
    InvalidWindow,
    NotFoundError,
    QuantityBelowSold,
    ValidationError,
)
from kmarket.services.principal import Principal, Role
from kmarket.utils.events import log_event

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = ("starts_at", "product_id", "original_price_minor", "seller_id")


def discount_percentage(original_minor: int, deal_minor: int) -> int:
    """Round-half-up percentage saved, kept inside [1, 99]."""
    original = int(original_minor)
    deal = int(deal_minor)
    if original <= 0:
        raise ValidationError("Original price must be positive")
    raw = (Decimal(original - deal) * Decimal(100) / Decimal(original)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return max(1, min(99, int(raw)))


def _ending_soon_default() -> int:
    if has_app_context():
        return int(current_app.config.get("DEAL_ENDING_SOON_SECONDS", 7200))
    return 7200


class FlashDealAllocator:
    def __init__(self, clock=None):
        self._clock = clock or datetime.utcnow

    def now(self) -> datetime:
        return self._clock()

    def is_active(self, deal: FlashDeal, now: datetime | None = None) -> bool:
        return deal.is_live(now or self.now())

    # Reservation

    def reserve(self, deal_id: int, quantity: int) -> FlashDeal:
        """Take ``quantity`` units from a running deal in the caller's transaction."""
        qty = int(quantity)
        if qty <= 0:
            raise ValidationError("Quantity must be at least 1")
        now = self.now()
        result = db.session.execute(
            sa.update(FlashDeal)
            .where(
                FlashDeal.id == int(deal_id),
                FlashDeal.is_active.is_(True),
                FlashDeal.starts_at <= now,
                FlashDeal.ends_at > now,
                FlashDeal.quantity_sold + qty <= FlashDeal.quantity_available,
            )
            .values(quantity_sold=FlashDeal.quantity_sold + qty, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        deal = db.session.get(FlashDeal, int(deal_id))
        if deal is None:
            raise NotFoundError("Flash deal not found")
        db.session.refresh(deal)
        if result.rowcount == 1:
            logger.info("deal_reserved deal=%s qty=%s sold=%s/%s", deal.id, qty, deal.quantity_sold, deal.quantity_available)
            return deal
        if deal.is_live(now) and deal.quantity_remaining < qty:
            raise InsufficientDealStock(
                f"Only {deal.quantity_remaining} deal units left",
                details={"deal_id": int(deal.id), "remaining": deal.quantity_remaining},
            )
        raise DealUnavailable(details={"deal_id": int(deal.id)})

    def get_for_product(self, deal_id: int, product_id: int) -> FlashDeal:
        deal = db.session.get(FlashDeal, int(deal_id))
        if deal is None:
            raise NotFoundError("Flash deal not found")
        if int(deal.product_id) != int(product_id):
            raise ValidationError("Flash deal is for a different product")
        return deal

    def running_deal_for_product(self, product_id: int) -> FlashDeal | None:
        """Deal whose window is open for the product, sold out or not."""
        now = self.now()
        return (
            FlashDeal.query.filter(
                FlashDeal.product_id == int(product_id),
                FlashDeal.is_active.is_(True),
                FlashDeal.starts_at <= now,
                FlashDeal.ends_at > now,
            )
            .order_by(FlashDeal.ends_at.asc(), FlashDeal.id.asc())
            .first()
        )

    # Seller management

    def create_deal(
        self,
        principal: Principal,
        product_id: int,
        deal_price_minor: int,
        quantity_available: int,
        starts_at: datetime,
        ends_at: datetime,
        original_price_minor: int | None = None,
    ) -> FlashDeal:
        principal.require(Role.SELLER)
        try:
            product = db.session.get(Product, int(product_id))
            if product is None:
                raise NotFoundError("Product not found")
            if int(product.seller_id) != int(principal.user_id):
                raise ForbiddenError("Product belongs to another seller")

            original = int(original_price_minor) if original_price_minor is not None else int(product.price_minor or 0)
            deal_price = int(deal_price_minor)
            if original <= 0:
                raise ValidationError("Original price must be positive")
            if deal_price <= 0 or deal_price >= original:
                raise ValidationError("Deal price must be above zero and below the original price")
            qty = int(quantity_available)
            if qty < 1:
                raise ValidationError("Deal quantity must be at least 1")
            if qty > int(product.stock or 0):
                raise ValidationError(
                    "Deal quantity exceeds product stock",
                    details={"stock": int(product.stock or 0)},
                )
            now = self.now()
            if starts_at is None or ends_at is None or ends_at <= starts_at:
                raise InvalidWindow("Deal must end after it starts")
            if ends_at <= now:
                raise InvalidWindow("Deal must end in the future")
            overlapping = FlashDeal.query.filter(
                FlashDeal.product_id == int(product.id),
                FlashDeal.is_active.is_(True),
                FlashDeal.starts_at < ends_at,
                FlashDeal.ends_at > starts_at,
            ).first()
            if overlapping is not None:
                raise InvalidWindow(
                    "Product already has an active deal in this window",
                    details={"deal_id": int(overlapping.id)},
                )

            deal = FlashDeal(
                product_id=int(product.id),
                seller_id=int(principal.user_id),
                original_price_minor=original,
                deal_price_minor=deal_price,
                discount_percentage=discount_percentage(original, deal_price),
                quantity_available=qty,
                quantity_sold=0,
                starts_at=starts_at,
                ends_at=ends_at,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            db.session.add(deal)
            db.session.flush()
            log_event(
                "deal_created",
                actor=principal,
                subject_type="flash_deal",
                subject_ref=deal.id,
                metadata={"product_id": deal.product_id, "discount_percentage": deal.discount_percentage},
            )
            db.session.commit()
            return deal
        except Exception:
            db.session.rollback()
            raise

    def update_deal(self, principal: Principal, deal_id: int, changes: dict) -> FlashDeal:
        """Apply seller edits. Edits may only narrow a deal."""
        principal.require(Role.SELLER, Role.ADMIN)
        changes = dict(changes or {})
        changes.pop("discount_percentage", None)
        try:
            deal = self._owned_deal(principal, deal_id)
            for field in _IMMUTABLE_FIELDS:
                if field in changes and changes[field] != getattr(deal, field):
                    raise ValidationError(f"{field} cannot be changed once a deal is created")

            now = self.now()
            values: dict = {}

            if "ends_at" in changes and changes["ends_at"] is not None:
                new_end = changes["ends_at"]
                if new_end > deal.ends_at:
                    raise InvalidWindow("Deal end can only move earlier")
                if new_end <= deal.starts_at:
                    raise InvalidWindow("Deal must end after it starts")
                values["ends_at"] = new_end

            if "is_active" in changes and changes["is_active"] is not None:
                wanted = bool(changes["is_active"])
                if wanted and not bool(deal.is_active):
                    raise ValidationError("A deactivated deal cannot be reactivated")
                values["is_active"] = wanted

            if "deal_price_minor" in changes and changes["deal_price_minor"] is not None:
                new_price = int(changes["deal_price_minor"])
                if new_price <= 0 or new_price >= int(deal.original_price_minor):
                    raise ValidationError("Deal price must be above zero and below the original price")
                values["deal_price_minor"] = new_price
                values["discount_percentage"] = discount_percentage(deal.original_price_minor, new_price)

            if "quantity_available" in changes and changes["quantity_available"] is not None:
                new_qty = int(changes["quantity_available"])
                if new_qty > int(deal.quantity_available):
                    raise ValidationError("Deal quantity can only be reduced")
                result = db.session.execute(
                    sa.update(FlashDeal)
                    .where(
                        FlashDeal.id == deal.id,
                        FlashDeal.quantity_sold <= new_qty,
                        FlashDeal.quantity_available >= new_qty,
                    )
                    .values(quantity_available=new_qty, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    db.session.refresh(deal)
                    raise QuantityBelowSold(details={"quantity_sold": int(deal.quantity_sold)})

            if values:
                values["updated_at"] = now
                db.session.execute(
                    sa.update(FlashDeal)
                    .where(FlashDeal.id == deal.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
            db.session.refresh(deal)
            log_event(
                "deal_updated",
                actor=principal,
                subject_type="flash_deal",
                subject_ref=deal.id,
                metadata={k: v for k, v in changes.items() if k in ("ends_at", "is_active", "deal_price_minor", "quantity_available")},
            )
            db.session.commit()
            return deal
        except Exception:
            db.session.rollback()
            raise

    def delete_deal(self, principal: Principal, deal_id: int) -> dict:
        """Delete an untouched deal; a deal with sales is only deactivated."""
        principal.require(Role.SELLER, Role.ADMIN)
        try:
            deal = self._owned_deal(principal, deal_id)
            deal_ref = int(deal.id)
            result = db.session.execute(
                sa.delete(FlashDeal)
                .where(FlashDeal.id == deal_ref, FlashDeal.quantity_sold == 0)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.session.expunge(deal)
                outcome = {"deleted": True, "deactivated": False, "deal_id": deal_ref}
            else:
                db.session.execute(
                    sa.update(FlashDeal)
                    .where(FlashDeal.id == deal_ref)
                    .values(is_active=False, updated_at=self.now())
                    .execution_options(synchronize_session=False)
                )
                outcome = {"deleted": False, "deactivated": True, "deal_id": deal_ref}
            log_event(
                "deal_deleted" if outcome["deleted"] else "deal_deactivated",
                actor=principal,
                subject_type="flash_deal",
                subject_ref=deal_ref,
            )
            db.session.commit()
            return outcome
        except Exception:
            db.session.rollback()
            raise

    def _owned_deal(self, principal: Principal, deal_id: int) -> FlashDeal:
        deal = db.session.get(FlashDeal, int(deal_id))
        if deal is None:
            raise NotFoundError("Flash deal not found")
        if not principal.is_admin and int(deal.seller_id) != int(principal.user_id):
            raise ForbiddenError("Flash deal belongs to another seller")
        return deal

    # Queries

    def _live_query(self, now: datetime):
        return FlashDeal.query.filter(
            FlashDeal.is_active.is_(True),
            FlashDeal.starts_at <= now,
            FlashDeal.ends_at > now,
            FlashDeal.quantity_sold < FlashDeal.quantity_available,
        )

    def active_deals(self, page: int = 1, limit: int = 12) -> tuple[list[FlashDeal], int]:
        page = max(1, int(page or 1))
        limit = max(1, min(int(limit or 12), 50))
        q = self._live_query(self.now())
        total = q.count()
        rows = (
            q.order_by(FlashDeal.discount_percentage.desc(), FlashDeal.ends_at.asc(), FlashDeal.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def ending_soon(self, window_seconds: int | None = None, limit: int = 6) -> list[FlashDeal]:
        now = self.now()
        window = int(window_seconds or _ending_soon_default())
        return (
            self._live_query(now)
            .filter(FlashDeal.ends_at <= now + timedelta(seconds=window))
            .order_by(FlashDeal.ends_at.asc())
            .limit(max(1, int(limit)))
            .all()
        )

    def top_deals(self, limit: int = 8) -> list[FlashDeal]:
        return (
            self._live_query(self.now())
            .order_by(FlashDeal.discount_percentage.desc(), FlashDeal.id.asc())
            .limit(max(1, min(int(limit or 8), 50)))
            .all()
        )

    def upcoming(self, limit: int = 6) -> list[FlashDeal]:
        now = self.now()
        return (
            FlashDeal.query.filter(FlashDeal.is_active.is_(True), FlashDeal.starts_at > now)
            .order_by(FlashDeal.starts_at.asc())
            .limit(max(1, int(limit)))
            .all()
        )

    def deal_for_product(self, product_id: int) -> FlashDeal | None:
        return (
            self._live_query(self.now())
            .filter(FlashDeal.product_id == int(product_id))
            .order_by(FlashDeal.ends_at.asc())
            .first()
        )

    def seller_deals(self, principal: Principal) -> list[FlashDeal]:
        principal.require(Role.SELLER)
        return (
            FlashDeal.query.filter_by(seller_id=int(principal.user_id))
            .order_by(FlashDeal.created_at.desc(), FlashDeal.id.desc())
            .all()
        )

    def serialize(self, deals: list[FlashDeal]) -> list[dict]:
        now = self.now()
        ids = {int(d.product_id) for d in deals}
        products = {}
        if ids:
            products = {p.id: p for p in Product.query.filter(Product.id.in_(ids)).all()}
        out = []
        for deal in deals:
            row = deal.to_dict(now)
            product = products.get(int(deal.product_id))
            row["product"] = product.to_dict() if product else None
            out.append(row)
        return out
