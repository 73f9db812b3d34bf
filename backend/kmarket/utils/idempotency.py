from __future__ import annotations

import hashlib
import json
import os
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from kmarket.extensions import db
from kmarket.models import IdempotencyKey


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def idempotency_enforced() -> bool:
    return _env_bool("ENABLE_IDEMPOTENCY_ENFORCEMENT", False)


def _canonical_json(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except Exception:
        return str(payload)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _error(code: str, message: str, status: int) -> tuple[str, dict, int]:
    return (
        code.lower(),
        {"ok": False, "error": code, "message": message, "status": status},
        status,
    )


def lookup_response(user_id: int | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Resolve an incoming request against stored Idempotency-Key responses.

    Returns ``None`` when the request carries no key, ``("miss", row, 0)`` when
    the caller should run the operation and then call :func:`store_response`,
    and ``(kind, body, status)`` when a response must be returned as-is.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        if idempotency_enforced():
            return _error("IDEMPOTENCY_KEY_REQUIRED", f"Idempotency-Key header is required for {scope}.", 400)
        return None

    req_hash = _hash_request(scope=scope, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, user_id=user_id, key=k).first()
    if row is None:
        row = IdempotencyKey(key=k, scope=scope, user_id=user_id, request_hash=req_hash)
        db.session.add(row)
        try:
            db.session.commit()
            return ("miss", row, 0)
        except IntegrityError:
            # A concurrent retry inserted the key first.
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(scope=scope, user_id=user_id, key=k).first()
            if row is None:
                raise

    if (row.request_hash or "") != req_hash:
        return _error("IDEMPOTENCY_KEY_REUSE", "This Idempotency-Key was already used with a different request payload.", 409)
    if not row.completed:
        return _error("IDEMPOTENCY_IN_FLIGHT", "A request with this Idempotency-Key is still being processed.", 409)
    try:
        body = json.loads(row.response_body_json or "{}")
    except ValueError:
        body = {"ok": True}
    return ("hit", body, int(row.response_code))


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_body_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.response_code = int(status_code or 200)
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a key whose operation failed so the client may retry it."""
    db.session.rollback()
    stale = db.session.get(IdempotencyKey, row.id)
    if stale is not None and not stale.completed:
        db.session.delete(stale)
        db.session.commit()
