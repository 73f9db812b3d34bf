from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime

import sqlalchemy as sa
from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from kmarket.extensions import db
from kmarket.models import Order, OrderEvent, Product, User
from kmarket.services.errors import (
    AlreadyClaimed,
    DealUnavailable,
    ForbiddenError,
    InvalidState,
    InvalidTransition,
    NotClaimable,
    NotFoundError,
    OutOfStock,
    ValidationError,
)
from kmarket.services.escrow_service import EscrowLedger, EscrowStatus, ReleaseVia
from kmarket.services.flash_deal_service import FlashDealAllocator
from kmarket.services.principal import Principal, Role
from kmarket.utils.events import log_event

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

    ALL = (PENDING, PROCESSING, SHIPPED, DELIVERED, COMPLETED, CANCELLED, DISPUTED)
    TERMINAL = (COMPLETED, CANCELLED)

    # Moves a seller may make; completed, cancelled and disputed are not keys.
    SELLER_MOVES = {
        PENDING: {PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED},
        PROCESSING: {PROCESSING, SHIPPED, DELIVERED, CANCELLED},
        SHIPPED: {SHIPPED, DELIVERED},
        DELIVERED: {DELIVERED},
    }
    CLAIMABLE = (SHIPPED,)
    CONFIRMABLE = (SHIPPED, DELIVERED)
    DISPUTABLE = (PENDING, PROCESSING, SHIPPED, DELIVERED)


class DisputeOutcome:
    RELEASE = "release"
    REFUND = "refund"

    ALL = (RELEASE, REFUND)


def _config(name: str, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def _new_order_number() -> str:
    return f"KM-{uuid.uuid4().hex[:8].upper()}"


class OrderLifecycle:
    """Order state machine.

    Public operations own their transaction: they commit on success and roll
    the session back before re-raising. ``complete_delivery``,
    ``open_dispute`` and ``resolve`` are building blocks for the delivery and
    dispute services and leave the commit to their caller.
    """

    def __init__(self, clock=None, escrow: EscrowLedger | None = None, deals: FlashDealAllocator | None = None):
        self._clock = clock or datetime.utcnow
        self.escrow = escrow or EscrowLedger(clock=self._clock)
        self.deals = deals or FlashDealAllocator(clock=self._clock)

    def now(self) -> datetime:
        return self._clock()

    def create(
        self,
        principal: Principal,
        seller_id: int,
        product_id: int,
        quantity: int,
        delivery_address: str,
        deal_id: int | None = None,
        fallback_to_full_price: bool = False,
        checkout_reference: str | None = None,
    ) -> Order:
        principal.require(Role.BUYER)
        try:
            qty = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("Quantity must be a whole number")
        max_qty = int(_config("MAX_ORDER_QUANTITY", 20))
        if qty < 1 or qty > max_qty:
            raise ValidationError(f"Quantity must be between 1 and {max_qty}")
        address = (delivery_address or "").strip()
        if not address:
            raise ValidationError("Delivery address is required")

        try:
            seller = db.session.get(User, int(seller_id))
            if seller is None or (seller.role or "") != Role.SELLER:
                raise NotFoundError("Seller not found")
            product = db.session.get(Product, int(product_id))
            if product is None:
                raise NotFoundError("Product not found")
            if int(product.seller_id) != int(seller.id):
                raise ValidationError("Product does not belong to this seller")
            if not bool(product.is_available):
                raise OutOfStock("Product is not available")

            deal = None
            if deal_id is not None:
                deal = self.deals.get_for_product(int(deal_id), int(product.id))
            else:
                deal = self.deals.running_deal_for_product(int(product.id))

            deal_price = None
            if deal is not None:
                try:
                    deal = self.deals.reserve(int(deal.id), qty)
                    deal_price = int(deal.deal_price_minor)
                except DealUnavailable:
                    if not fallback_to_full_price:
                        raise
                    logger.info("deal_fallback_full_price deal=%s product=%s", deal.id, product.id)
                    deal = None

            result = db.session.execute(
                sa.update(Product)
                .where(
                    Product.id == product.id,
                    Product.is_available.is_(True),
                    Product.stock >= qty,
                )
                .values(stock=Product.stock - qty, sales=Product.sales + qty)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.session.refresh(product)
                raise OutOfStock(
                    f"Only {int(product.stock or 0)} left in stock",
                    details={"stock": int(product.stock or 0)},
                )

            unit_price = int(product.price_minor or 0)
            total = qty * (deal_price if deal_price is not None else unit_price)
            now = self.now()
            order = Order(
                order_number=_new_order_number(),
                checkout_reference=checkout_reference,
                buyer_id=int(principal.user_id),
                seller_id=int(seller.id),
                product_id=int(product.id),
                deal_id=int(deal.id) if deal is not None else None,
                quantity=qty,
                unit_price_minor=unit_price,
                deal_price_minor=deal_price,
                total_amount_minor=total,
                currency=str(_config("ESCROW_CURRENCY", "GHS")),
                delivery_address=address,
                status=OrderStatus.PENDING,
                escrow_status=EscrowStatus.NONE,
                created_at=now,
                updated_at=now,
            )
            db.session.add(order)
            db.session.flush()
            self.escrow.hold(order, total, actor=principal)
            self.add_event(order, principal, "order_created", f"total_minor={total}")
            log_event(
                "order_created",
                actor=principal,
                subject_type="order",
                subject_ref=order.order_number,
                metadata={"deal_id": order.deal_id, "quantity": qty, "total_minor": total},
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    def update_status(
        self,
        principal: Principal,
        order_number: str,
        new_status: str,
        tracking_number: str | None = None,
    ) -> Order:
        principal.require(Role.SELLER)
        target = (new_status or "").strip().lower()
        if target not in OrderStatus.ALL:
            raise ValidationError(f"Unknown order status: {new_status}")
        try:
            order = self.find(order_number)
            if int(order.seller_id) != int(principal.user_id):
                raise ForbiddenError("Order belongs to another seller")
            current = order.status
            if target not in OrderStatus.SELLER_MOVES.get(current, set()):
                raise InvalidTransition(
                    f"Cannot move order from {current} to {target}",
                    details={"from": current, "to": target},
                )
            tracking = (tracking_number or "").strip()[:120] or None
            if target == current and (tracking is None or tracking == order.tracking_number):
                return order

            now = self.now()
            values = {"status": target, "updated_at": now}
            if tracking is not None:
                values["tracking_number"] = tracking
            if target in (OrderStatus.SHIPPED, OrderStatus.DELIVERED) and order.shipped_at is None:
                values["shipped_at"] = now
            if target == OrderStatus.DELIVERED and order.delivered_at is None:
                values["delivered_at"] = now
            if target == OrderStatus.CANCELLED:
                values["cancelled_at"] = now

            result = db.session.execute(
                sa.update(Order)
                .where(Order.id == order.id, Order.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.session.refresh(order)
            if result.rowcount != 1:
                raise InvalidTransition(
                    f"Order moved to {order.status} before this update",
                    details={"from": order.status, "to": target},
                )
            if target == OrderStatus.CANCELLED:
                self.escrow.refund(order, actor=principal, reason="seller_cancelled")
            if target != current:
                self.add_event(order, principal, f"status_{target}", tracking or "")
                log_event(
                    "order_status_changed",
                    actor=principal,
                    subject_type="order",
                    subject_ref=order.order_number,
                    metadata={"from": current, "to": target},
                )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    def claim(self, principal: Principal, order_number: str) -> Order:
        principal.require(Role.DELIVERY)
        try:
            order = self.find(order_number)
            now = self.now()
            result = db.session.execute(
                sa.update(Order)
                .where(
                    Order.id == order.id,
                    Order.delivery_person_id.is_(None),
                    Order.status.in_(OrderStatus.CLAIMABLE),
                )
                .values(delivery_person_id=int(principal.user_id), claimed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.session.refresh(order)
            if result.rowcount != 1:
                if order.delivery_person_id is not None and int(order.delivery_person_id) == int(principal.user_id):
                    db.session.rollback()
                    return order
                if order.delivery_person_id is not None:
                    raise AlreadyClaimed()
                raise NotClaimable(
                    f"Order is {order.status}; only shipped orders can be claimed",
                    details={"status": order.status},
                )
            self.add_event(order, principal, "claimed")
            log_event(
                "order_claimed",
                actor=principal,
                subject_type="order",
                subject_ref=order.order_number,
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    def complete_delivery(self, order: Order, principal: Principal, signer_name: str, signature_data: str) -> Order:
        now = self.now()
        result = db.session.execute(
            sa.update(Order)
            .where(
                Order.id == order.id,
                Order.status.in_(OrderStatus.CONFIRMABLE),
                Order.buyer_confirmed_at.is_(None),
            )
            .values(
                status=OrderStatus.COMPLETED,
                buyer_confirmed_at=now,
                delivered_at=sa.func.coalesce(Order.delivered_at, now),
                delivery_signature_name=signer_name[:160],
                delivery_signature_data=signature_data,
                delivery_proof_type=sa.case(
                    (Order.delivery_proof_url.is_not(None), "photo+signature"),
                    else_="signature",
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(order)
        if result.rowcount != 1:
            raise InvalidState(
                f"Order is {order.status}; delivery can only be confirmed once for shipped or delivered orders",
                details={"status": order.status},
            )
        self.escrow.release(order, ReleaseVia.BUYER_CONFIRMATION, actor=principal)
        self.add_event(order, principal, "buyer_confirmed", f"signed_by={signer_name[:80]}")
        return order

    def open_dispute(self, order: Order, principal: Principal, description: str) -> Order:
        now = self.now()
        result = db.session.execute(
            sa.update(Order)
            .where(
                Order.id == order.id,
                Order.status.in_(OrderStatus.DISPUTABLE),
                Order.escrow_status == EscrowStatus.HELD,
            )
            .values(
                status=OrderStatus.DISPUTED,
                issue_description=description,
                disputed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(order)
        if result.rowcount != 1:
            raise InvalidState(
                f"Order is {order.status}; an issue cannot be reported",
                details={"status": order.status, "escrow_status": order.escrow_status},
            )
        self.escrow.freeze(order, actor=principal, reason="buyer_reported_issue")
        self.add_event(order, principal, "disputed", description[:240])
        return order

    def resolve(self, order: Order, principal: Principal, outcome: str, note: str = "") -> bool:
        """Close a dispute. Returns False when the order was not disputed."""
        target = OrderStatus.COMPLETED if outcome == DisputeOutcome.RELEASE else OrderStatus.CANCELLED
        now = self.now()
        values = {
            "status": target,
            "dispute_resolution": outcome,
            "resolution_note": (note or "")[:500] or None,
            "resolved_at": now,
            "updated_at": now,
        }
        if target == OrderStatus.CANCELLED:
            values["cancelled_at"] = now
        result = db.session.execute(
            sa.update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.DISPUTED)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(order)
        if result.rowcount != 1:
            return False
        if outcome == DisputeOutcome.RELEASE:
            self.escrow.release(order, ReleaseVia.ADMIN_RESOLUTION, actor=principal)
        else:
            self.escrow.refund(order, actor=principal, reason="admin_resolution")
        self.add_event(order, principal, f"dispute_{outcome}", note or "")
        return True

    # Queries

    def get_for(self, principal: Principal, order_number: str) -> Order:
        order = self.find(order_number)
        if principal.is_admin:
            return order
        participants = {int(order.buyer_id), int(order.seller_id)}
        if order.delivery_person_id is not None:
            participants.add(int(order.delivery_person_id))
        if int(principal.user_id) not in participants:
            raise ForbiddenError("Not a participant of this order")
        return order

    def list_for_buyer(self, principal: Principal, status: str | None = None) -> list[Order]:
        principal.require(Role.BUYER)
        q = Order.query.filter_by(buyer_id=int(principal.user_id))
        if status:
            q = q.filter_by(status=status)
        return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(200).all()

    def list_for_seller(self, principal: Principal, status: str | None = None) -> list[Order]:
        principal.require(Role.SELLER)
        q = Order.query.filter_by(seller_id=int(principal.user_id))
        if status:
            q = q.filter_by(status=status)
        return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(200).all()

    def list_for_agent(self, principal: Principal) -> list[Order]:
        principal.require(Role.DELIVERY)
        return (
            Order.query.filter_by(delivery_person_id=int(principal.user_id))
            .order_by(Order.claimed_at.desc(), Order.id.desc())
            .limit(200)
            .all()
        )

    def list_claimable(self, principal: Principal, limit: int = 50) -> list[Order]:
        principal.require(Role.DELIVERY)
        return (
            Order.query.filter(
                Order.delivery_person_id.is_(None),
                Order.status.in_(OrderStatus.CLAIMABLE),
            )
            .order_by(Order.created_at.asc(), Order.id.asc())
            .limit(max(1, min(int(limit or 50), 200)))
            .all()
        )

    def timeline(self, order: Order) -> list[OrderEvent]:
        return (
            OrderEvent.query.filter_by(order_id=int(order.id))
            .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
            .all()
        )

    def find(self, order_number: str) -> Order:
        number = (order_number or "").strip().upper()
        order = Order.query.filter_by(order_number=number).first() if number else None
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def add_event(
        self,
        order: Order,
        principal: Principal | None,
        event: str,
        note: str = "",
        discriminator: str | None = None,
    ) -> bool:
        """Append a timeline entry once per (order, event, actor, discriminator).

        Repeatable events pass a ``discriminator`` so each occurrence is kept.
        Returns False when the entry was already recorded.
        """
        actor_id = int(principal.user_id) if principal is not None else None
        key = f"order:{int(order.id)}:{event}:{actor_id if actor_id is not None else 'system'}"
        if discriminator:
            key = f"{key}:{hashlib.sha256(discriminator.encode('utf-8')).hexdigest()[:16]}"
        try:
            with db.session.begin_nested():
                db.session.add(
                    OrderEvent(
                        order_id=int(order.id),
                        actor_user_id=actor_id,
                        event=event,
                        note=(note or "")[:240],
                        idempotency_key=key[:160],
                        created_at=self.now(),
                    )
                )
        except IntegrityError:
            logger.info("order_event_duplicate key=%s", key)
            return False
        return True
