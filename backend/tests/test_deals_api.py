from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from _factories import AppTestCase


class DealsApiTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_user("seller")
        self.buyer = self.make_user("buyer")
        self.product = self.make_product(self.seller, price_minor=20000, stock=8)

    def _create_deal(self, **overrides):
        now = datetime.utcnow()
        body = {
            "product_id": self.product.id,
            "deal_price": "150.00",
            "quantity_available": 4,
            "starts_at": (now - timedelta(minutes=1)).isoformat() + "Z",
            "ends_at": (now + timedelta(hours=1)).isoformat() + "Z",
            "discount_percentage": 95,
        }
        body.update(overrides)
        return self.client.post("/api/seller/deals", json=body, headers=self.auth(self.seller))

    def test_seller_creates_deal_with_server_side_discount(self):
        res = self._create_deal()
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        deal = res.get_json()["deal"]
        self.assertEqual(deal["discount_percentage"], 25)
        self.assertEqual(deal["deal_price"], 150.0)
        self.assertTrue(deal["is_live"])
        self.assertGreater(deal["seconds_remaining"], 3000)

        res = self.client.get("/api/deals")
        body = res.get_json()
        self.assertEqual(body["pagination"]["total"], 1)
        self.assertEqual(body["deals"][0]["product"]["id"], self.product.id)

        res = self.client.get(f"/api/deals/product/{self.product.id}")
        self.assertEqual(res.get_json()["deal"]["id"], deal["id"])
        self.assertEqual(len(self.client.get("/api/deals/ending-soon").get_json()["deals"]), 1)
        self.assertEqual(len(self.client.get("/api/deals/top?limit=3").get_json()["deals"]), 1)
        self.assertEqual(self.client.get("/api/deals/upcoming").get_json()["deals"], [])

    def test_buyer_cannot_create_deal(self):
        res = self.client.post("/api/seller/deals", json={"product_id": self.product.id}, headers=self.auth(self.buyer))
        self.assertEqual(res.status_code, 403)

    def test_invalid_window_and_timestamp(self):
        now = datetime.utcnow()
        res = self._create_deal(ends_at=(now - timedelta(hours=2)).isoformat())
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_WINDOW")
        res = self._create_deal(starts_at="yesterday")
        self.assertEqual(res.status_code, 400)
        res = self._create_deal(deal_price="free")
        self.assertEqual(res.status_code, 400)

    def test_update_and_delete(self):
        deal_id = self._create_deal().get_json()["deal"]["id"]
        res = self.client.put(
            f"/api/seller/deals/{deal_id}",
            json={"deal_price": "100.00", "quantity_available": 2},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 200)
        deal = res.get_json()["deal"]
        self.assertEqual(deal["discount_percentage"], 50)
        self.assertEqual(deal["quantity_available"], 2)

        res = self.client.put(
            f"/api/seller/deals/{deal_id}",
            json={"quantity_available": 9},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 400)

        res = self.client.get("/api/seller/deals", headers=self.auth(self.seller))
        self.assertEqual(len(res.get_json()["deals"]), 1)

        res = self.client.delete(f"/api/seller/deals/{deal_id}", headers=self.auth(self.seller))
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["deleted"])
        self.assertEqual(self.client.get("/api/deals").get_json()["deals"], [])

    def test_is_active_accepts_string_flags(self):
        deal_id = self._create_deal().get_json()["deal"]["id"]
        url = f"/api/seller/deals/{deal_id}"
        res = self.client.put(url, json={"is_active": "false"}, headers=self.auth(self.seller))
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["deal"]["is_active"])
        res = self.client.put(url, json={"is_active": "false"}, headers=self.auth(self.seller))
        self.assertEqual(res.status_code, 200)
        res = self.client.put(url, json={"is_active": "true"}, headers=self.auth(self.seller))
        self.assertEqual(res.status_code, 400)

    def test_deal_with_sales_is_deactivated_on_delete(self):
        deal_id = self._create_deal().get_json()["deal"]["id"]
        res = self.client.post(
            "/api/orders",
            json={"product_id": self.product.id, "quantity": 1, "delivery_address": "Accra"},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.get_json()["order"]["deal_id"], deal_id)
        self.assertEqual(res.get_json()["order"]["total_amount_minor"], 15000)

        res = self.client.put(
            f"/api/seller/deals/{deal_id}",
            json={"quantity_available": 0},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "QUANTITY_BELOW_SOLD")

        res = self.client.delete(f"/api/seller/deals/{deal_id}", headers=self.auth(self.seller))
        body = res.get_json()
        self.assertFalse(body["deleted"])
        self.assertTrue(body["deactivated"])


if __name__ == "__main__":
    unittest.main()
