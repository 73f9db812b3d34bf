from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from kmarket.services.errors import ValidationError
from kmarket.services.flash_deal_service import FlashDealAllocator
from kmarket.utils.auth import current_principal, unauthorized
from kmarket.utils.money import money_major_to_minor

deals_bp = Blueprint("deals_bp", __name__, url_prefix="/api/deals")
seller_deals_bp = Blueprint("seller_deals_bp", __name__, url_prefix="/api/seller/deals")


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _arg_int(name: str, default: int) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _parse_dt(value, name: str) -> datetime:
    """ISO-8601 to naive UTC, the form every timestamp column stores."""
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            raise ValidationError(f"{name} is required")
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError(f"{name} must be an ISO-8601 timestamp")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _minor(value, name: str) -> int:
    try:
        return money_major_to_minor(value)
    except ValueError:
        raise ValidationError(f"{name} must be a valid amount")


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


@deals_bp.get("")
def list_active_deals():
    allocator = FlashDealAllocator()
    page = max(1, _arg_int("page", 1))
    limit = max(1, min(_arg_int("limit", 12), 50))
    rows, total = allocator.active_deals(page=page, limit=limit)
    return jsonify({
        "ok": True,
        "deals": allocator.serialize(rows),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    })


@deals_bp.get("/product/<int:product_id>")
def deal_for_product(product_id: int):
    allocator = FlashDealAllocator()
    deal = allocator.deal_for_product(product_id)
    return jsonify({"ok": True, "deal": allocator.serialize([deal])[0] if deal else None})


@deals_bp.get("/ending-soon")
def ending_soon():
    allocator = FlashDealAllocator()
    return jsonify({"ok": True, "deals": allocator.serialize(allocator.ending_soon())})


@deals_bp.get("/top")
def top_deals():
    allocator = FlashDealAllocator()
    return jsonify({"ok": True, "deals": allocator.serialize(allocator.top_deals(limit=_arg_int("limit", 8)))})


@deals_bp.get("/upcoming")
def upcoming_deals():
    allocator = FlashDealAllocator()
    return jsonify({"ok": True, "deals": allocator.serialize(allocator.upcoming())})


@seller_deals_bp.get("")
def seller_list_deals():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    allocator = FlashDealAllocator()
    return jsonify({"ok": True, "deals": allocator.serialize(allocator.seller_deals(principal))})


@seller_deals_bp.post("")
def seller_create_deal():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()
    allocator = FlashDealAllocator()
    original = payload.get("original_price")
    deal = allocator.create_deal(
        principal,
        product_id=_int(payload.get("product_id"), "product_id"),
        deal_price_minor=_minor(payload.get("deal_price"), "deal_price"),
        quantity_available=_int(payload.get("quantity_available"), "quantity_available"),
        starts_at=_parse_dt(payload.get("starts_at"), "starts_at"),
        ends_at=_parse_dt(payload.get("ends_at"), "ends_at"),
        original_price_minor=_minor(original, "original_price") if original is not None else None,
    )
    return jsonify({"ok": True, "deal": allocator.serialize([deal])[0]}), 201


@seller_deals_bp.put("/<int:deal_id>")
def seller_update_deal(deal_id: int):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()
    changes: dict = {}
    if payload.get("deal_price") is not None:
        changes["deal_price_minor"] = _minor(payload.get("deal_price"), "deal_price")
    if payload.get("original_price") is not None:
        changes["original_price_minor"] = _minor(payload.get("original_price"), "original_price")
    if payload.get("quantity_available") is not None:
        changes["quantity_available"] = _int(payload.get("quantity_available"), "quantity_available")
    if payload.get("product_id") is not None:
        changes["product_id"] = _int(payload.get("product_id"), "product_id")
    for key in ("starts_at", "ends_at"):
        if payload.get(key) is not None:
            changes[key] = _parse_dt(payload.get(key), key)
    if "is_active" in payload:
        changes["is_active"] = _as_bool(payload.get("is_active"))
    allocator = FlashDealAllocator()
    deal = allocator.update_deal(principal, deal_id, changes)
    return jsonify({"ok": True, "deal": allocator.serialize([deal])[0]})


@seller_deals_bp.delete("/<int:deal_id>")
def seller_delete_deal(deal_id: int):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    outcome = FlashDealAllocator().delete_deal(principal, deal_id)
    message = "Flash deal deleted" if outcome["deleted"] else "Flash deal has sales; it was deactivated instead"
    return jsonify({"ok": True, "message": message, **outcome})
