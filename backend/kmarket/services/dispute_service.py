from __future__ import annotations

import logging

from kmarket.extensions import db
from kmarket.models import Order
from kmarket.services.errors import ForbiddenError, InvalidState, ValidationError
from kmarket.services.order_service import DisputeOutcome, OrderLifecycle, OrderStatus
from kmarket.services.principal import Principal, Role
from kmarket.utils.events import log_event

logger = logging.getLogger(__name__)


class DisputeHandler:
    def __init__(self, lifecycle: OrderLifecycle | None = None):
        self.lifecycle = lifecycle or OrderLifecycle()

    def report_issue(self, principal: Principal, order_number: str, description: str) -> Order:
        """Buyer reports a problem; the order goes to ``disputed`` and escrow is frozen."""
        principal.require(Role.BUYER)
        text = (description or "").strip()
        if not text:
            raise ValidationError("Issue description is required")
        try:
            order = self.lifecycle.find(order_number)
            if int(order.buyer_id) != int(principal.user_id):
                raise ForbiddenError("Only the buyer can report an issue on this order")
            self.lifecycle.open_dispute(order, principal, text[:4000])
            log_event(
                "order_disputed",
                actor=principal,
                subject_type="order",
                subject_ref=order.order_number,
                severity="WARN",
                metadata={"escrow_amount_minor": order.escrow_amount_minor},
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    def resolve_dispute(self, principal: Principal, order_number: str, outcome: str, note: str = "") -> Order:
        """Admin closes a dispute by releasing funds to the seller or refunding the buyer.

        Repeating the outcome already applied is a no-op; a different outcome
        after resolution is rejected.
        """
        principal.require(Role.ADMIN)
        chosen = (outcome or "").strip().lower()
        if chosen not in DisputeOutcome.ALL:
            raise ValidationError("Outcome must be release or refund")
        try:
            order = self.lifecycle.find(order_number)
            if self.lifecycle.resolve(order, principal, chosen, note):
                log_event(
                    "dispute_resolved",
                    actor=principal,
                    subject_type="order",
                    subject_ref=order.order_number,
                    metadata={"outcome": chosen, "escrow_status": order.escrow_status},
                )
                db.session.commit()
                return order

            db.session.rollback()
            if order.dispute_resolution == chosen:
                return order
            if order.dispute_resolution:
                raise InvalidState(
                    f"Dispute was already resolved with {order.dispute_resolution}",
                    details={"resolution": order.dispute_resolution},
                )
            raise InvalidState("Order is not disputed", details={"status": order.status})
        except Exception:
            db.session.rollback()
            raise

    def list_open_disputes(self, principal: Principal) -> list[Order]:
        principal.require(Role.ADMIN)
        return (
            Order.query.filter_by(status=OrderStatus.DISPUTED)
            .order_by(Order.disputed_at.asc(), Order.id.asc())
            .all()
        )
