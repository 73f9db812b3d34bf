from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

import sqlalchemy as sa

from kmarket.extensions import db
from kmarket.models import EscrowTransition, Order
from kmarket.services.errors import EscrowStateConflict, ValidationError

logger = logging.getLogger(__name__)


class EscrowStatus:
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"

    ALLOWED = {
        NONE: {HELD},
        HELD: {RELEASED, REFUNDED, DISPUTED},
        RELEASED: set(),
        REFUNDED: set(),
        DISPUTED: {RELEASED, REFUNDED},
    }
    TERMINAL = {RELEASED, REFUNDED}


class ReleaseVia:
    BUYER_CONFIRMATION = "buyer_confirmation"
    ADMIN_RESOLUTION = "admin_resolution"


# Release is only reachable from one source per trigger.
_RELEASE_SOURCE = {
    ReleaseVia.BUYER_CONFIRMATION: EscrowStatus.HELD,
    ReleaseVia.ADMIN_RESOLUTION: EscrowStatus.DISPUTED,
}


@dataclass(frozen=True)
class EscrowRecord:
    order_id: int
    amount_minor: int
    currency: str
    state: str

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "amount_minor": self.amount_minor,
            "amount": round(self.amount_minor / 100.0, 2),
            "currency": self.currency,
            "state": self.state,
        }


def _parse_actor(actor) -> tuple[str, int | None]:
    if actor is None:
        return "system", None
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return str(getattr(actor, "role", "system") or "system"), getattr(actor, "user_id", None)


class EscrowLedger:
    """Per-order fund state.

    Every method runs inside the caller's transaction: it flushes but never
    commits, so the escrow move lands or vanishes together with the order
    change that triggered it.
    """

    def __init__(self, clock=None):
        self._clock = clock or datetime.utcnow

    def hold(self, order: Order, amount_minor: int, actor=None) -> EscrowRecord:
        amount = int(amount_minor)
        if amount <= 0:
            raise ValidationError("Escrow amount must be positive")
        current, changed = self._apply(
            order,
            {EscrowStatus.NONE},
            EscrowStatus.HELD,
            actor=actor,
            reason="order_created",
            amount_minor=amount,
        )
        if not changed:
            if current == EscrowStatus.HELD and int(order.escrow_amount_minor or 0) == amount:
                return self.record(order)
            raise EscrowStateConflict(
                f"Cannot hold escrow in state {current}",
                details={"escrow_status": current},
            )
        return self.record(order)

    def release(self, order: Order, via: str, actor=None) -> EscrowRecord:
        source = _RELEASE_SOURCE.get(via)
        if source is None:
            raise ValidationError(f"Unknown release trigger: {via}")
        current, changed = self._apply(
            order,
            {source},
            EscrowStatus.RELEASED,
            actor=actor,
            reason=via,
        )
        if not changed and current != EscrowStatus.RELEASED:
            raise EscrowStateConflict(
                f"Cannot release escrow from {current} via {via}",
                details={"escrow_status": current, "via": via},
            )
        return self.record(order)

    def refund(self, order: Order, actor=None, reason: str = "") -> EscrowRecord:
        current, changed = self._apply(
            order,
            {EscrowStatus.HELD, EscrowStatus.DISPUTED},
            EscrowStatus.REFUNDED,
            actor=actor,
            reason=reason or "refund",
        )
        if not changed and current != EscrowStatus.REFUNDED:
            raise EscrowStateConflict(
                f"Cannot refund escrow in state {current}",
                details={"escrow_status": current},
            )
        return self.record(order)

    def freeze(self, order: Order, actor=None, reason: str = "") -> EscrowRecord:
        current, changed = self._apply(
            order,
            {EscrowStatus.HELD},
            EscrowStatus.DISPUTED,
            actor=actor,
            reason=reason or "dispute",
        )
        if not changed and current != EscrowStatus.DISPUTED:
            raise EscrowStateConflict(
                f"Cannot freeze escrow in state {current}",
                details={"escrow_status": current},
            )
        return self.record(order)

    def record(self, order: Order) -> EscrowRecord:
        return EscrowRecord(
            order_id=int(order.id),
            amount_minor=int(order.escrow_amount_minor or 0),
            currency=order.currency or "",
            state=order.escrow_status or EscrowStatus.NONE,
        )

    def history(self, order: Order) -> list[EscrowTransition]:
        return (
            EscrowTransition.query.filter_by(order_id=int(order.id))
            .order_by(EscrowTransition.id.asc())
            .all()
        )

    def _read_state(self, order: Order) -> str:
        value = db.session.execute(
            sa.select(Order.escrow_status).where(Order.id == order.id)
        ).scalar_one()
        return value or EscrowStatus.NONE

    def _apply(self, order, sources, target, *, actor, reason, amount_minor=None):
        """Move ``order`` to ``target`` if its stored state is in ``sources``.

        Returns (observed_state, changed). The write is guarded on the exact
        state that was read, so a concurrent move makes it a no-op.
        """
        current = self._read_state(order)
        if current not in sources or target not in EscrowStatus.ALLOWED.get(current, set()):
            db.session.refresh(order)
            return current, False

        now = self._clock()
        values = {"escrow_status": target, "escrow_updated_at": now}
        if amount_minor is not None:
            values["escrow_amount_minor"] = int(amount_minor)
        result = db.session.execute(
            sa.update(Order)
            .where(Order.id == order.id, Order.escrow_status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.refresh(order)
            return order.escrow_status or EscrowStatus.NONE, False

        db.session.refresh(order)
        actor_type, actor_id = _parse_actor(actor)
        db.session.add(
            EscrowTransition(
                escrow_id=f"order:{int(order.id)}",
                order_id=int(order.id),
                from_status=current,
                to_status=target,
                amount_minor=int(order.escrow_amount_minor or 0),
                currency=order.currency or "",
                actor_type=actor_type[:32],
                actor_id=actor_id,
                idempotency_key=f"escrow:{int(order.id)}:{target}",
                reason=(reason or "")[:240],
                metadata_json=json.dumps({"order_number": order.order_number}),
                created_at=now,
            )
        )
        db.session.flush()
        logger.info(
            "escrow_transition order=%s %s->%s amount_minor=%s",
            order.order_number,
            current,
            target,
            order.escrow_amount_minor,
        )
        return current, True
