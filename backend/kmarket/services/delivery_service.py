from __future__ import annotations

import logging
import os

import sqlalchemy as sa
from flask import current_app, has_app_context

from kmarket.extensions import db
from kmarket.models import Order
from kmarket.services.errors import (
    ForbiddenError,
    InvalidState,
    MissingSignature,
    ValidationError,
)
from kmarket.services.order_service import OrderLifecycle, OrderStatus
from kmarket.services.principal import Principal, Role
from kmarket.utils.events import log_event
from kmarket.utils.media import InvalidImage, parse_data_uri, save_image

logger = logging.getLogger(__name__)


def _config(name: str, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def _discard_proof(directory: str, name: str) -> None:
    try:
        os.remove(os.path.join(directory, name))
    except OSError as e:
        logger.warning("delivery_photo_cleanup_failed file=%s err=%s", name, e)


class DeliveryConfirmationService:
    """Delivery evidence.

    The buyer's signature is the only event that releases escrow. Photo proof
    from the delivery agent is recorded for disputes and never moves status
    or money.
    """

    def __init__(self, lifecycle: OrderLifecycle | None = None):
        self.lifecycle = lifecycle or OrderLifecycle()

    def upload_delivery_proof(
        self,
        principal: Principal,
        order_number: str,
        photo_url: str | None = None,
        photo_bytes: bytes | None = None,
        filename: str | None = None,
    ) -> Order:
        principal.require(Role.DELIVERY)
        url = (photo_url or "").strip()
        if not photo_bytes and not url:
            raise ValidationError("A delivery photo or photo_url is required")
        if photo_bytes and url:
            raise ValidationError("Send either a photo upload or a photo_url, not both")
        if url and not url.lower().startswith(("http://", "https://")):
            raise ValidationError("photo_url must be an http(s) URL")
        if photo_bytes and len(photo_bytes) > int(_config("MAX_PROOF_BYTES", 5 * 1024 * 1024)):
            raise ValidationError("Delivery photo is too large")

        proof_dir = str(_config("DELIVERY_PROOF_DIR", "delivery_proofs"))
        stored = None
        try:
            order = self.lifecycle.find(order_number)
            if order.delivery_person_id is None or int(order.delivery_person_id) != int(principal.user_id):
                raise ForbiddenError("Only the delivery account that claimed this order can upload proof")
            if order.status == OrderStatus.CANCELLED:
                raise InvalidState("Order was cancelled", details={"status": order.status})

            if photo_bytes:
                try:
                    stored = save_image(
                        photo_bytes,
                        proof_dir,
                        prefix=order.order_number.lower(),
                    )
                except InvalidImage as e:
                    raise ValidationError("Delivery photo is not a readable image", details={"reason": str(e)})
                url = f"/api/delivery-proofs/{stored}"
                logger.info("delivery_photo_stored order=%s file=%s original=%s", order.order_number, stored, (filename or "")[:80])

            now = self.lifecycle.now()
            result = db.session.execute(
                sa.update(Order)
                .where(
                    Order.id == order.id,
                    Order.delivery_person_id == int(principal.user_id),
                    Order.status != OrderStatus.CANCELLED,
                )
                .values(
                    delivery_proof_url=url[:1024],
                    delivery_photo_uploaded_at=now,
                    delivery_proof_type=sa.case(
                        (Order.delivery_signature_name.is_not(None), "photo+signature"),
                        else_="photo",
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.session.refresh(order)
            if result.rowcount != 1:
                raise InvalidState("Order changed while the proof was uploading", details={"status": order.status})
            self.lifecycle.add_event(order, principal, "delivery_photo_uploaded", discriminator=url)
            log_event(
                "delivery_proof_uploaded",
                actor=principal,
                subject_type="order",
                subject_ref=order.order_number,
                metadata={"source": "upload" if photo_bytes else "url"},
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            if stored:
                _discard_proof(proof_dir, stored)
            raise

    def confirm_received(
        self,
        principal: Principal,
        order_number: str,
        signer_name: str | None,
        signature_image: str | None,
    ) -> Order:
        principal.require(Role.BUYER)
        name = (signer_name or "").strip()
        image = (signature_image or "").strip()
        if not name or not image:
            raise MissingSignature()
        if image.startswith("data:"):
            try:
                mime, payload = parse_data_uri(image)
            except InvalidImage:
                raise MissingSignature("Signature image could not be decoded")
            if not mime.startswith("image/") or not payload:
                raise MissingSignature("Signature must be a non-empty image")
            if len(payload) > int(_config("MAX_SIGNATURE_BYTES", 2 * 1024 * 1024)):
                raise ValidationError("Signature image is too large")

        try:
            order = self.lifecycle.find(order_number)
            if int(order.buyer_id) != int(principal.user_id):
                raise ForbiddenError("Only the buyer can confirm this order")
            self.lifecycle.complete_delivery(order, principal, name, image)
            log_event(
                "order_confirmed_received",
                actor=principal,
                subject_type="order",
                subject_ref=order.order_number,
                metadata={"proof_type": order.delivery_proof_type, "escrow_status": order.escrow_status},
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise
