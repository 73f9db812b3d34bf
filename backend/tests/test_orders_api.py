from __future__ import annotations

import io
import unittest

from _factories import AppTestCase, png_bytes, signature_data_uri


class OrdersApiTestCase(AppTestCase):
    def setUp(self):
        super().setUp()
        self.buyer = self.make_user("buyer")
        self.seller = self.make_user("seller")
        self.agent = self.make_user("delivery")
        self.admin = self.make_user("admin")
        self.product = self.make_product(self.seller, price_minor=12000, stock=5)

    def _create_order(self, **payload):
        body = {"product_id": self.product.id, "quantity": 1, "delivery_address": "Labone, Accra"}
        body.update(payload)
        res = self.client.post("/api/orders", json=body, headers=self.auth(self.buyer))
        return res, res.get_json(force=True) or {}

    def test_create_requires_auth(self):
        res = self.client.post("/api/orders", json={"product_id": self.product.id})
        self.assertEqual(res.status_code, 401)
        self.assertFalse(res.get_json()["ok"])

    def test_full_happy_path(self):
        res, body = self._create_order(quantity=2)
        self.assertEqual(res.status_code, 201)
        order = body["order"]
        number = order["order_number"]
        self.assertEqual(order["total_amount"], 240.0)
        self.assertEqual(order["seller_id"], self.seller.id)
        self.assertEqual(order["escrow_status"], "held")

        res = self.client.patch(
            f"/api/seller/orders/{number}/status",
            json={"status": "shipped", "tracking_number": "TRK-77"},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "shipped")

        res = self.client.get("/api/delivery/available-orders", headers=self.auth(self.agent))
        self.assertEqual([o["order_number"] for o in res.get_json()["items"]], [number])
        res = self.client.post(f"/api/delivery/orders/{number}/claim", headers=self.auth(self.agent))
        self.assertEqual(res.status_code, 200)

        res = self.client.post(
            f"/api/delivery/orders/{number}/delivery-proof/photo",
            data={"photo": (io.BytesIO(png_bytes()), "door.png")},
            content_type="multipart/form-data",
            headers=self.auth(self.agent),
        )
        self.assertEqual(res.status_code, 200, res.get_data(as_text=True))
        proof_url = res.get_json()["order"]["delivery_proof_url"]
        self.assertEqual(self.client.get(proof_url, headers=self.auth(self.buyer)).status_code, 200)

        res = self.client.post(
            f"/api/buyer/orders/{number}/confirm-received",
            json={"signature_name": "Esi Owusu", "signature_data": signature_data_uri()},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 200)
        confirmed = res.get_json()["order"]
        self.assertEqual(confirmed["status"], "completed")
        self.assertEqual(confirmed["escrow_status"], "released")
        self.assertEqual(confirmed["delivery_proof_type"], "photo+signature")
        self.assertNotIn("delivery_signature_data", confirmed)

        res = self.client.get(f"/api/orders/{number}/escrow", headers=self.auth(self.buyer))
        escrow = res.get_json()
        self.assertEqual(escrow["escrow"]["state"], "released")
        self.assertEqual([t["to_status"] for t in escrow["transitions"]], ["held", "released"])

        res = self.client.get(f"/api/orders/{number}/timeline", headers=self.auth(self.seller))
        events = [e["event"] for e in res.get_json()["items"]]
        self.assertEqual(events[0], "order_created")
        self.assertIn("claimed", events)
        self.assertEqual(events[-1], "buyer_confirmed")

        res = self.client.patch(
            f"/api/seller/orders/{number}/status",
            json={"status": "delivered"},
            headers=self.auth(self.seller),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "INVALID_TRANSITION")

    def test_signature_missing_is_400(self):
        _res, body = self._create_order()
        number = body["order"]["order_number"]
        self.client.patch(f"/api/seller/orders/{number}/status", json={"status": "shipped"}, headers=self.auth(self.seller))
        res = self.client.post(
            f"/api/buyer/orders/{number}/confirm-received",
            json={"signature_name": "Esi"},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "MISSING_SIGNATURE")

    def test_dispute_and_admin_resolution(self):
        _res, body = self._create_order()
        number = body["order"]["order_number"]
        self.client.patch(f"/api/seller/orders/{number}/status", json={"status": "shipped"}, headers=self.auth(self.seller))

        res = self.client.post(
            f"/api/buyer/orders/{number}/report-issue",
            json={"issue_description": "Wrong colour"},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["status"], "disputed")

        res = self.client.post(
            f"/api/buyer/orders/{number}/confirm-received",
            json={"signature_name": "Esi", "signature_data": signature_data_uri()},
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "INVALID_STATE")

        res = self.client.get("/api/admin/disputes", headers=self.auth(self.admin))
        self.assertEqual([o["order_number"] for o in res.get_json()["items"]], [number])
        res = self.client.get("/api/admin/disputes", headers=self.auth(self.buyer))
        self.assertEqual(res.status_code, 403)

        res = self.client.post(
            f"/api/admin/orders/{number}/resolve-dispute",
            json={"outcome": "refund", "note": "Seller agreed"},
            headers=self.auth(self.admin),
        )
        self.assertEqual(res.status_code, 200)
        resolved = res.get_json()["order"]
        self.assertEqual(resolved["status"], "cancelled")
        self.assertEqual(resolved["escrow_status"], "refunded")

        res = self.client.get(f"/api/admin/events?subject_ref={number}", headers=self.auth(self.admin))
        types = {e["event_type"] for e in res.get_json()["items"]}
        self.assertTrue({"order_created", "order_disputed", "dispute_resolved"} <= types)

    def test_second_agent_claim_conflicts(self):
        _res, body = self._create_order()
        number = body["order"]["order_number"]
        self.client.patch(f"/api/seller/orders/{number}/status", json={"status": "shipped"}, headers=self.auth(self.seller))
        other = self.make_user("delivery")
        self.assertEqual(self.client.post(f"/api/delivery/orders/{number}/claim", headers=self.auth(self.agent)).status_code, 200)
        res = self.client.post(f"/api/delivery/orders/{number}/claim", headers=self.auth(other))
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "ALREADY_CLAIMED")
        res = self.client.get("/api/delivery/orders", headers=self.auth(self.agent))
        self.assertEqual([o["order_number"] for o in res.get_json()["items"]], [number])

    def test_outsider_cannot_read_order(self):
        _res, body = self._create_order()
        number = body["order"]["order_number"]
        outsider = self.make_user("buyer")
        res = self.client.get(f"/api/orders/{number}", headers=self.auth(outsider))
        self.assertEqual(res.status_code, 403)
        res = self.client.get(f"/api/orders/{number}", headers=self.auth(self.admin))
        self.assertEqual(res.status_code, 200)
        res = self.client.get("/api/orders/KM-00000000", headers=self.auth(self.admin))
        self.assertEqual(res.status_code, 404)

    def test_buyer_and_seller_listings(self):
        self._create_order()
        res = self.client.get("/api/buyer/orders", headers=self.auth(self.buyer))
        self.assertEqual(len(res.get_json()["items"]), 1)
        res = self.client.get("/api/seller/orders?status=pending", headers=self.auth(self.seller))
        self.assertEqual(len(res.get_json()["items"]), 1)
        res = self.client.get("/api/seller/orders", headers=self.auth(self.buyer))
        self.assertEqual(res.status_code, 403)

    def test_checkout_endpoint(self):
        other_seller = self.make_user("seller")
        other = self.make_product(other_seller, price_minor=3000, stock=2)
        res = self.client.post(
            "/api/checkout",
            json={
                "items": [
                    {"product_id": self.product.id, "quantity": 1},
                    {"product_id": other.id, "quantity": 5},
                ],
                "delivery_address": "Cape Coast",
            },
            headers=self.auth(self.buyer),
        )
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertEqual(body["orders_placed"], 1)
        self.assertEqual(body["total_amount_minor"], 12000)

    def test_invalid_quantity_is_400(self):
        res, body = self._create_order(quantity="lots")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(body["error"], "VALIDATION_ERROR")


if __name__ == "__main__":
    unittest.main()
