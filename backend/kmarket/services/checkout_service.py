from __future__ import annotations

import logging
import uuid
from collections import OrderedDict

from kmarket.extensions import db
from kmarket.models import Product
from kmarket.services.errors import DomainError, NotFoundError, ValidationError
from kmarket.services.order_service import OrderLifecycle
from kmarket.services.principal import Principal, Role
from kmarket.utils.events import log_event
from kmarket.utils.money import money_minor_to_major

logger = logging.getLogger(__name__)

MAX_CHECKOUT_LINES = 50


def _parse_line(raw) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("Each cart line must be an object")
    try:
        product_id = int(raw.get("product_id"))
        quantity = int(raw.get("quantity") or 1)
        deal_id = int(raw["deal_id"]) if raw.get("deal_id") is not None else None
    except (TypeError, ValueError):
        raise ValidationError("Cart line has a malformed product_id, quantity or deal_id")
    return {"product_id": product_id, "quantity": quantity, "deal_id": deal_id}


def _rejected(line: dict, err: DomainError) -> dict:
    return {
        "product_id": line["product_id"],
        "quantity": line["quantity"],
        "deal_id": line["deal_id"],
        "error": err.code,
        "message": err.message,
    }


class CheckoutOrchestrator:
    """Turns a multi-seller cart into orders, one per line, grouped by seller.

    Each line is its own transaction so a sold-out deal on one line never
    blocks or re-prices the others.
    """

    def __init__(self, lifecycle: OrderLifecycle | None = None):
        self.lifecycle = lifecycle or OrderLifecycle()

    def checkout(
        self,
        principal: Principal,
        lines,
        delivery_address: str,
        fallback_to_full_price: bool = False,
    ) -> dict:
        principal.require(Role.BUYER)
        if not isinstance(lines, list) or not lines:
            raise ValidationError("Cart is empty")
        if len(lines) > MAX_CHECKOUT_LINES:
            raise ValidationError(f"A checkout can hold at most {MAX_CHECKOUT_LINES} lines")
        if not (delivery_address or "").strip():
            raise ValidationError("Delivery address is required")
        parsed = [_parse_line(raw) for raw in lines]

        product_ids = {line["product_id"] for line in parsed}
        products = {p.id: p for p in Product.query.filter(Product.id.in_(product_ids)).all()}

        groups: "OrderedDict[int, list[dict]]" = OrderedDict()
        unknown = []
        for line in parsed:
            product = products.get(line["product_id"])
            if product is None:
                unknown.append(_rejected(line, NotFoundError("Product not found")))
                continue
            groups.setdefault(int(product.seller_id), []).append(line)

        result_groups = []
        grand_total = 0
        for seller_id, seller_lines in groups.items():
            reference = f"CHK-{uuid.uuid4().hex[:12].upper()}"
            placed = []
            rejected = []
            for line in seller_lines:
                try:
                    order = self.lifecycle.create(
                        principal,
                        seller_id=seller_id,
                        product_id=line["product_id"],
                        quantity=line["quantity"],
                        delivery_address=delivery_address,
                        deal_id=line["deal_id"],
                        fallback_to_full_price=fallback_to_full_price,
                        checkout_reference=reference,
                    )
                except DomainError as e:
                    logger.info("checkout_line_rejected product=%s code=%s", line["product_id"], e.code)
                    rejected.append(_rejected(line, e))
                    continue
                placed.append(order.to_dict())
            group_total = sum(int(o["total_amount_minor"]) for o in placed)
            grand_total += group_total
            result_groups.append(
                {
                    "seller_id": seller_id,
                    "checkout_reference": reference if placed else None,
                    "orders": placed,
                    "rejected": rejected,
                    "total_amount_minor": group_total,
                    "total_amount": money_minor_to_major(group_total),
                }
            )

        placed_count = sum(len(g["orders"]) for g in result_groups)
        log_event(
            "checkout_completed",
            actor=principal,
            subject_type="checkout",
            subject_ref=",".join(g["checkout_reference"] for g in result_groups if g["checkout_reference"]) or None,
            severity="INFO" if placed_count else "WARN",
            metadata={"orders": placed_count, "lines": len(parsed), "total_minor": grand_total},
        )
        db.session.commit()
        return {
            "groups": result_groups,
            "rejected": unknown,
            "orders_placed": placed_count,
            "total_amount_minor": grand_total,
            "total_amount": money_minor_to_major(grand_total),
        }
