from __future__ import annotations

import unittest

from _factories import AppTestCase

from kmarket.extensions import db
from kmarket.models import EscrowTransition, Order
from kmarket.services.errors import EscrowStateConflict, ValidationError
from kmarket.services.escrow_service import EscrowLedger, EscrowStatus, ReleaseVia


class EscrowLedgerTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.ledger = EscrowLedger()
        self.buyer = self.make_user("buyer")
        self.seller = self.make_user("seller")
        self.admin = self.make_user("admin")
        product = self.make_product(self.seller)
        self.order = Order(
            order_number="KM-ESCROW01",
            buyer_id=self.buyer.id,
            seller_id=self.seller.id,
            product_id=product.id,
            quantity=1,
            unit_price_minor=10000,
            total_amount_minor=10000,
            currency="GHS",
            delivery_address="12 Oxford St, Accra",
        )
        db.session.add(self.order)
        db.session.commit()

    def _transitions(self):
        return EscrowTransition.query.filter_by(order_id=self.order.id).order_by(EscrowTransition.id.asc()).all()

    def test_hold_then_release_by_buyer_confirmation(self):
        record = self.ledger.hold(self.order, 10000, actor=self.principal(self.buyer))
        self.assertEqual(record.state, EscrowStatus.HELD)
        self.assertEqual(record.amount_minor, 10000)
        self.assertEqual(record.currency, "GHS")

        record = self.ledger.release(self.order, ReleaseVia.BUYER_CONFIRMATION, actor=self.principal(self.buyer))
        db.session.commit()
        self.assertEqual(record.state, EscrowStatus.RELEASED)
        self.assertEqual(
            [(t.from_status, t.to_status) for t in self._transitions()],
            [("none", "held"), ("held", "released")],
        )

    def test_hold_is_idempotent_for_same_amount_only(self):
        self.ledger.hold(self.order, 10000)
        self.ledger.hold(self.order, 10000)
        self.assertEqual(len(self._transitions()), 1)
        with self.assertRaises(EscrowStateConflict):
            self.ledger.hold(self.order, 12000)

    def test_hold_rejects_non_positive_amount(self):
        with self.assertRaises(ValidationError):
            self.ledger.hold(self.order, 0)

    def test_release_retry_has_no_second_effect(self):
        self.ledger.hold(self.order, 10000)
        self.ledger.release(self.order, ReleaseVia.BUYER_CONFIRMATION)
        record = self.ledger.release(self.order, ReleaseVia.BUYER_CONFIRMATION)
        self.assertEqual(record.state, EscrowStatus.RELEASED)
        self.assertEqual(len(self._transitions()), 2)

    def test_admin_resolution_cannot_release_undisputed_funds(self):
        self.ledger.hold(self.order, 10000)
        with self.assertRaises(EscrowStateConflict):
            self.ledger.release(self.order, ReleaseVia.ADMIN_RESOLUTION)

    def test_buyer_confirmation_cannot_release_disputed_funds(self):
        self.ledger.hold(self.order, 10000)
        self.ledger.freeze(self.order, reason="damaged")
        with self.assertRaises(EscrowStateConflict):
            self.ledger.release(self.order, ReleaseVia.BUYER_CONFIRMATION)
        record = self.ledger.release(self.order, ReleaseVia.ADMIN_RESOLUTION, actor=self.principal(self.admin))
        self.assertEqual(record.state, EscrowStatus.RELEASED)

    def test_unknown_release_trigger_is_rejected(self):
        self.ledger.hold(self.order, 10000)
        with self.assertRaises(ValidationError):
            self.ledger.release(self.order, "timeout")

    def test_refund_from_dispute_and_retry(self):
        self.ledger.hold(self.order, 10000)
        self.ledger.freeze(self.order)
        self.ledger.freeze(self.order)
        self.ledger.refund(self.order, reason="admin_resolution")
        record = self.ledger.refund(self.order)
        self.assertEqual(record.state, EscrowStatus.REFUNDED)
        self.assertEqual(
            [t.to_status for t in self._transitions()],
            ["held", "disputed", "refunded"],
        )

    def test_terminal_states_never_cross(self):
        self.ledger.hold(self.order, 10000)
        self.ledger.release(self.order, ReleaseVia.BUYER_CONFIRMATION)
        with self.assertRaises(EscrowStateConflict):
            self.ledger.refund(self.order)
        with self.assertRaises(EscrowStateConflict):
            self.ledger.freeze(self.order)

    def test_refund_before_hold_conflicts(self):
        with self.assertRaises(EscrowStateConflict):
            self.ledger.refund(self.order)

    def test_history_records_actor_and_amount(self):
        self.ledger.hold(self.order, 10000, actor=self.principal(self.buyer))
        db.session.commit()
        rows = self.ledger.history(self.order)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].actor_type, "buyer")
        self.assertEqual(rows[0].actor_id, self.buyer.id)
        self.assertEqual(rows[0].amount_minor, 10000)
        self.assertEqual(rows[0].idempotency_key, f"escrow:{self.order.id}:held")


if __name__ == "__main__":
    unittest.main()
