from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, send_from_directory

from kmarket.extensions import db
from kmarket.models import Order, Product
from kmarket.services.checkout_service import CheckoutOrchestrator
from kmarket.services.delivery_service import DeliveryConfirmationService
from kmarket.services.dispute_service import DisputeHandler
from kmarket.services.errors import NotFoundError, ValidationError
from kmarket.services.order_service import OrderLifecycle
from kmarket.utils.auth import current_principal, unauthorized
from kmarket.utils.idempotency import lookup_response, release_key, store_response
from kmarket.utils.rate_limit import rate_limit

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _lifecycle() -> OrderLifecycle:
    return OrderLifecycle()


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _as_int(value, name: str, *, required: bool = True) -> int | None:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _idempotent(principal, scope: str, payload: dict, run):
    """Run ``run()`` at most once per Idempotency-Key and replay its response."""
    lookup = lookup_response(principal.user_id, scope, payload)
    if lookup is not None and lookup[0] != "miss":
        _kind, body, status = lookup
        return jsonify(body), status
    row = lookup[1] if lookup is not None else None
    try:
        body, status = run()
    except Exception:
        if row is not None:
            release_key(row)
        raise
    if row is not None:
        store_response(row, body, status)
    return jsonify(body), status


@orders_bp.post("/orders")
@rate_limit("orders:create", 60, 30)
def create_order():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()

    def _run():
        product_id = _as_int(payload.get("product_id"), "product_id")
        seller_id = _as_int(payload.get("seller_id"), "seller_id", required=False)
        if seller_id is None:
            product = db.session.get(Product, product_id)
            if product is None:
                raise NotFoundError("Product not found")
            seller_id = int(product.seller_id)
        order = _lifecycle().create(
            principal,
            seller_id=seller_id,
            product_id=product_id,
            quantity=_as_int(payload.get("quantity", 1), "quantity"),
            delivery_address=str(payload.get("delivery_address") or ""),
            deal_id=_as_int(payload.get("deal_id"), "deal_id", required=False),
            fallback_to_full_price=_as_bool(payload.get("fallback_to_full_price")),
        )
        return {"ok": True, "order": order.to_dict()}, 201

    return _idempotent(principal, "orders:create", payload, _run)


@orders_bp.post("/checkout")
@rate_limit("orders:checkout", 60, 10)
def checkout():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()

    def _run():
        result = CheckoutOrchestrator(_lifecycle()).checkout(
            principal,
            payload.get("items") if payload.get("items") is not None else payload.get("lines"),
            delivery_address=str(payload.get("delivery_address") or ""),
            fallback_to_full_price=_as_bool(payload.get("fallback_to_full_price")),
        )
        status = 201 if result["orders_placed"] else 409
        return {"ok": bool(result["orders_placed"]), **result}, status

    return _idempotent(principal, "orders:checkout", payload, _run)


@orders_bp.get("/orders/<order_number>")
def get_order(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    order = _lifecycle().get_for(principal, order_number)
    include_signature = principal.is_admin or int(order.buyer_id) == int(principal.user_id)
    return jsonify({"ok": True, "order": order.to_dict(include_signature=include_signature)})


@orders_bp.get("/orders/<order_number>/timeline")
def order_timeline(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    lifecycle = _lifecycle()
    order = lifecycle.get_for(principal, order_number)
    return jsonify({
        "ok": True,
        "order_number": order.order_number,
        "items": [e.to_dict() for e in lifecycle.timeline(order)],
    })


@orders_bp.get("/orders/<order_number>/escrow")
def order_escrow(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    lifecycle = _lifecycle()
    order = lifecycle.get_for(principal, order_number)
    return jsonify({
        "ok": True,
        "escrow": lifecycle.escrow.record(order).to_dict(),
        "transitions": [t.to_dict() for t in lifecycle.escrow.history(order)],
    })


@orders_bp.get("/buyer/orders")
def buyer_orders():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    rows = _lifecycle().list_for_buyer(principal, status=(request.args.get("status") or "").strip() or None)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]})


@orders_bp.post("/buyer/orders/<order_number>/confirm-received")
def confirm_received(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()
    order = DeliveryConfirmationService(_lifecycle()).confirm_received(
        principal,
        order_number,
        signer_name=payload.get("signature_name") or payload.get("signer_name"),
        signature_image=payload.get("signature_data") or payload.get("signature_image"),
    )
    return jsonify({
        "ok": True,
        "message": "Order confirmed and payment released to seller",
        "order": order.to_dict(),
    })


@orders_bp.post("/buyer/orders/<order_number>/report-issue")
def report_issue(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()
    order = DisputeHandler(_lifecycle()).report_issue(
        principal,
        order_number,
        str(payload.get("issue_description") or payload.get("description") or ""),
    )
    return jsonify({
        "ok": True,
        "message": "Issue reported. Payment is on hold until the dispute is resolved.",
        "order": order.to_dict(),
    })


@orders_bp.get("/seller/orders")
def seller_orders():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    rows = _lifecycle().list_for_seller(principal, status=(request.args.get("status") or "").strip() or None)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]})


@orders_bp.route("/seller/orders/<order_number>/status", methods=["PATCH", "PUT"])
def update_order_status(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = _payload()
    order = _lifecycle().update_status(
        principal,
        order_number,
        str(payload.get("status") or ""),
        tracking_number=payload.get("tracking_number"),
    )
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.get("/delivery/orders")
def agent_orders():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    rows = _lifecycle().list_for_agent(principal)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]})


@orders_bp.get("/delivery/available-orders")
def available_orders():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    rows = _lifecycle().list_claimable(principal, limit=_as_int(request.args.get("limit"), "limit", required=False) or 50)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]})


@orders_bp.post("/delivery/orders/<order_number>/claim")
@rate_limit("orders:claim", 60, 30)
def claim_order(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    order = _lifecycle().claim(principal, order_number)
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.post("/delivery/orders/<order_number>/delivery-proof/photo")
def upload_delivery_proof(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    upload = request.files.get("photo")
    photo_bytes = None
    filename = None
    photo_url = None
    if upload is not None:
        photo_bytes = upload.read()
        filename = upload.filename
    else:
        photo_url = _payload().get("photo_url") or request.form.get("photo_url")
    order = DeliveryConfirmationService(_lifecycle()).upload_delivery_proof(
        principal,
        order_number,
        photo_url=photo_url,
        photo_bytes=photo_bytes,
        filename=filename,
    )
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_bp.get("/delivery-proofs/<name>")
def delivery_proof_file(name: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    order = Order.query.filter_by(delivery_proof_url=f"/api/delivery-proofs/{name}").first()
    if order is None:
        raise NotFoundError("Delivery proof not found")
    _lifecycle().get_for(principal, order.order_number)
    return send_from_directory(current_app.config["DELIVERY_PROOF_DIR"], name)
