from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from _factories import AppTestCase

from kmarket.extensions import db
from kmarket.models import FlashDeal, PlatformEvent
from kmarket.services.errors import (
    DealUnavailable,
    ForbiddenError,
    InsufficientDealStock,
    InvalidWindow,
    NotFoundError,
    QuantityBelowSold,
    ValidationError,
)
from kmarket.services.flash_deal_service import FlashDealAllocator, discount_percentage


class DiscountPercentageTestCase(unittest.TestCase):
    def test_rounds_half_up(self):
        self.assertEqual(discount_percentage(10000, 7000), 30)
        self.assertEqual(discount_percentage(300, 199), 34)
        # 12.5% rounds up
        self.assertEqual(discount_percentage(800, 700), 13)

    def test_clamped_to_sensible_range(self):
        self.assertEqual(discount_percentage(100000, 99999), 1)
        self.assertEqual(discount_percentage(100000, 1), 99)

    def test_rejects_non_positive_original(self):
        with self.assertRaises(ValidationError):
            discount_percentage(0, 0)


class FlashDealAllocatorTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.allocator = FlashDealAllocator()
        self.seller = self.make_user("seller")
        self.other_seller = self.make_user("seller")
        self.product = self.make_product(self.seller, price_minor=10000, stock=5)

    def _create(self, **overrides):
        now = datetime.utcnow()
        kwargs = dict(
            product_id=self.product.id,
            deal_price_minor=7000,
            quantity_available=3,
            starts_at=now - timedelta(minutes=1),
            ends_at=now + timedelta(hours=2),
        )
        kwargs.update(overrides)
        return self.allocator.create_deal(self.principal(self.seller), **kwargs)

    def test_create_derives_discount_and_ignores_nothing_else(self):
        deal = self._create()
        self.assertEqual(deal.discount_percentage, 30)
        self.assertEqual(deal.original_price_minor, 10000)
        self.assertTrue(self.allocator.is_active(deal))
        self.assertEqual(PlatformEvent.query.filter_by(event_type="deal_created").count(), 1)

    def test_create_validations(self):
        with self.assertRaises(ValidationError):
            self._create(deal_price_minor=10000)
        with self.assertRaises(ValidationError):
            self._create(deal_price_minor=0)
        with self.assertRaises(ValidationError):
            self._create(quantity_available=6)
        with self.assertRaises(ValidationError):
            self._create(quantity_available=0)
        now = datetime.utcnow()
        with self.assertRaises(InvalidWindow):
            self._create(starts_at=now, ends_at=now - timedelta(minutes=1))
        with self.assertRaises(InvalidWindow):
            self._create(starts_at=now - timedelta(hours=3), ends_at=now - timedelta(hours=1))

    def test_create_rejects_foreign_product_and_overlap(self):
        with self.assertRaises(ForbiddenError):
            self.allocator.create_deal(
                self.principal(self.other_seller),
                product_id=self.product.id,
                deal_price_minor=7000,
                quantity_available=1,
                starts_at=datetime.utcnow(),
                ends_at=datetime.utcnow() + timedelta(hours=1),
            )
        self._create()
        with self.assertRaises(InvalidWindow):
            self._create(starts_at=datetime.utcnow() + timedelta(hours=1), ends_at=datetime.utcnow() + timedelta(hours=5))

    def test_reserve_until_sold_out(self):
        deal = self._create()
        self.allocator.reserve(deal.id, 2)
        with self.assertRaises(InsufficientDealStock):
            self.allocator.reserve(deal.id, 2)
        deal = self.allocator.reserve(deal.id, 1)
        db.session.commit()
        self.assertEqual(deal.quantity_sold, 3)
        self.assertFalse(self.allocator.is_active(deal))
        with self.assertRaises(DealUnavailable) as ctx:
            self.allocator.reserve(deal.id, 1)
        self.assertNotIsInstance(ctx.exception, InsufficientDealStock)

    def test_reserve_outside_window_or_inactive(self):
        upcoming = self.make_deal(self.product, starts_in=timedelta(hours=1))
        with self.assertRaises(DealUnavailable):
            self.allocator.reserve(upcoming.id, 1)
        other = self.make_product(self.seller, stock=5)
        inactive = self.make_deal(other, is_active=False)
        with self.assertRaises(DealUnavailable):
            self.allocator.reserve(inactive.id, 1)
        with self.assertRaises(NotFoundError):
            self.allocator.reserve(999999, 1)

    def test_clock_drives_expiry(self):
        deal = self._create()
        later = FlashDealAllocator(clock=lambda: deal.ends_at)
        with self.assertRaises(DealUnavailable):
            later.reserve(deal.id, 1)
        self.assertEqual(deal.seconds_remaining(deal.ends_at), 0)

    def test_update_narrows_only(self):
        deal = self._create()
        principal = self.principal(self.seller)
        with self.assertRaises(InvalidWindow):
            self.allocator.update_deal(principal, deal.id, {"ends_at": deal.ends_at + timedelta(hours=1)})
        with self.assertRaises(ValidationError):
            self.allocator.update_deal(principal, deal.id, {"quantity_available": 4})
        with self.assertRaises(ValidationError):
            self.allocator.update_deal(principal, deal.id, {"starts_at": deal.starts_at - timedelta(hours=1)})

        earlier = deal.ends_at - timedelta(minutes=30)
        updated = self.allocator.update_deal(
            principal,
            deal.id,
            {"ends_at": earlier, "deal_price_minor": 6000, "discount_percentage": 90},
        )
        self.assertEqual(updated.ends_at, earlier)
        self.assertEqual(updated.discount_percentage, 40)

    def test_quantity_cannot_drop_below_sold(self):
        deal = self._create()
        self.allocator.reserve(deal.id, 2)
        db.session.commit()
        with self.assertRaises(QuantityBelowSold):
            self.allocator.update_deal(self.principal(self.seller), deal.id, {"quantity_available": 1})
        updated = self.allocator.update_deal(self.principal(self.seller), deal.id, {"quantity_available": 2})
        self.assertEqual(updated.quantity_available, 2)
        self.assertEqual(updated.quantity_remaining, 0)

    def test_deactivated_deal_stays_off(self):
        deal = self._create()
        principal = self.principal(self.seller)
        self.allocator.update_deal(principal, deal.id, {"is_active": False})
        with self.assertRaises(ValidationError):
            self.allocator.update_deal(principal, deal.id, {"is_active": True})

    def test_delete_untouched_deal_removes_it(self):
        deal = self._create()
        outcome = self.allocator.delete_deal(self.principal(self.seller), deal.id)
        self.assertTrue(outcome["deleted"])
        self.assertIsNone(db.session.get(FlashDeal, outcome["deal_id"]))

    def test_delete_deal_with_sales_deactivates(self):
        deal = self._create()
        self.allocator.reserve(deal.id, 1)
        db.session.commit()
        outcome = self.allocator.delete_deal(self.principal(self.seller), deal.id)
        self.assertFalse(outcome["deleted"])
        self.assertTrue(outcome["deactivated"])
        db.session.refresh(deal)
        self.assertFalse(deal.is_active)

    def test_other_seller_cannot_touch_deal(self):
        deal = self._create()
        with self.assertRaises(ForbiddenError):
            self.allocator.delete_deal(self.principal(self.other_seller), deal.id)

    def test_queries(self):
        live = self._create()
        second = self.make_product(self.seller, stock=5)
        ending = self.make_deal(second, deal_price_minor=5000, lasts=timedelta(minutes=30))
        third = self.make_product(self.seller, stock=5)
        future = self.make_deal(third, starts_in=timedelta(hours=1))

        rows, total = self.allocator.active_deals(page=1, limit=10)
        self.assertEqual(total, 2)
        self.assertEqual([d.id for d in rows], [ending.id, live.id])
        self.assertEqual([d.id for d in self.allocator.ending_soon(window_seconds=3600)], [ending.id])
        self.assertEqual([d.id for d in self.allocator.upcoming()], [future.id])
        self.assertEqual(self.allocator.deal_for_product(self.product.id).id, live.id)
        self.assertIsNone(self.allocator.deal_for_product(third.id))
        self.assertEqual(len(self.allocator.seller_deals(self.principal(self.seller))), 3)

        serialized = self.allocator.serialize([future])[0]
        self.assertGreater(serialized["seconds_until_start"], 0)
        self.assertEqual(serialized["product"]["id"], third.id)


if __name__ == "__main__":
    unittest.main()
