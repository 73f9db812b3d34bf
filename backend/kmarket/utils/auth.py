from __future__ import annotations

from flask import g, jsonify

from kmarket.services.principal import Principal


def current_principal() -> Principal | None:
    """Principal for the bearer token resolved by the app's auth hook."""
    uid = getattr(g, "auth_user_id", None)
    role = getattr(g, "auth_role", None)
    if uid is None or not role:
        return None
    return Principal(user_id=int(uid), role=role)


def unauthorized():
    payload = {"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401}
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), 401
