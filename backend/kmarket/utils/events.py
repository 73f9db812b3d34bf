from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from kmarket.extensions import db
from kmarket.models import PlatformEvent
from kmarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def log_event(
    event_type: str,
    *,
    actor=None,
    subject_type: str | None = None,
    subject_ref: int | str | None = None,
    severity: str = "INFO",
    metadata: dict | None = None,
) -> PlatformEvent:
    """Stage an audit event in the caller's unit of work.

    The row is committed (or rolled back) together with the state change it
    describes, so an event never outlives a failed transition.
    """
    actor_id = getattr(actor, "user_id", None)
    actor_role = getattr(actor, "role", None)
    event = PlatformEvent(
        event_type=(event_type or "unknown").strip()[:80],
        actor_user_id=int(actor_id) if actor_id else None,
        actor_role=(actor_role or "")[:32] or None,
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_ref=str(subject_ref)[:120] if subject_ref is not None else None,
        request_id=(get_request_id() or "")[:80] or None,
        severity=(severity or "INFO").strip().upper()[:16] or "INFO",
        metadata_json=_safe_json(metadata or {}),
    )
    db.session.add(event)
    logger.info(
        "platform_event type=%s subject=%s:%s actor=%s",
        event.event_type,
        event.subject_type or "",
        event.subject_ref or "",
        actor_id if actor_id is not None else "system",
    )
    return event
