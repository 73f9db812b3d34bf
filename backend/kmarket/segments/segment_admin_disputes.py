from __future__ import annotations

from flask import Blueprint, jsonify, request

from kmarket.models import PlatformEvent
from kmarket.services.dispute_service import DisputeHandler
from kmarket.services.order_service import OrderLifecycle
from kmarket.services.principal import Role
from kmarket.utils.auth import current_principal, unauthorized

admin_disputes_bp = Blueprint("admin_disputes_bp", __name__, url_prefix="/api/admin")


@admin_disputes_bp.get("/disputes")
def open_disputes():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    rows = DisputeHandler(OrderLifecycle()).list_open_disputes(principal)
    return jsonify({"ok": True, "items": [o.to_dict(include_signature=True) for o in rows]})


@admin_disputes_bp.post("/orders/<order_number>/resolve-dispute")
def resolve_dispute(order_number: str):
    principal = current_principal()
    if principal is None:
        return unauthorized()
    payload = request.get_json(silent=True) or {}
    order = DisputeHandler(OrderLifecycle()).resolve_dispute(
        principal,
        order_number,
        str(payload.get("outcome") or ""),
        note=str(payload.get("note") or ""),
    )
    return jsonify({"ok": True, "order": order.to_dict(include_signature=True)})


@admin_disputes_bp.get("/events")
def platform_events():
    principal = current_principal()
    if principal is None:
        return unauthorized()
    principal.require(Role.ADMIN)
    q = PlatformEvent.query
    subject_ref = (request.args.get("subject_ref") or "").strip()
    if subject_ref:
        q = q.filter_by(subject_ref=subject_ref)
    event_type = (request.args.get("event_type") or "").strip()
    if event_type:
        q = q.filter_by(event_type=event_type)
    rows = q.order_by(PlatformEvent.id.desc()).limit(200).all()
    return jsonify({"ok": True, "items": [e.to_dict() for e in rows]})
