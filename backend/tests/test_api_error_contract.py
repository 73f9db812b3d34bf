from __future__ import annotations

import unittest

from flask import Blueprint

from _factories import AppTestCase


class ApiErrorContractTestCase(AppTestCase):
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        boom = Blueprint("boom_bp", __name__)

        @boom.get("/api/_boom")
        def _boom():
            raise RuntimeError("exploded")

        cls.app.register_blueprint(boom)

    def _assert_contract(self, res, status: int):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        self._assert_contract(self.client.get("/api/does-not-exist"), 404)

    def test_domain_error_carries_code(self):
        buyer = self.make_user("buyer")
        body = self._assert_contract(self.client.get("/api/orders/KM-DEADBEEF", headers=self.auth(buyer)), 404)
        self.assertEqual(body["error"], "NOT_FOUND")

    def test_missing_token_is_json_401(self):
        self._assert_contract(self.client.get("/api/buyer/orders"), 401)

    def test_unhandled_exception_is_json_500(self):
        body = self._assert_contract(self.client.get("/api/_boom"), 500)
        self.assertEqual(body["message"], "Internal server error")
        self.assertNotIn("exploded", str(body))


if __name__ == "__main__":
    unittest.main()
