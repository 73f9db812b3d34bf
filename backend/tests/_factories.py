from __future__ import annotations

import base64
import io
import os
import shutil
import tempfile
import time
import unittest
from datetime import datetime, timedelta

from PIL import Image

from kmarket import create_app
from kmarket.extensions import db
from kmarket.models import FlashDeal, Product, User
from kmarket.services.flash_deal_service import discount_percentage
from kmarket.services.principal import Principal
from kmarket.utils.jwt_utils import create_token

_ENV_KEYS = ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "DELIVERY_PROOF_DIR")


class AppTestCase(unittest.TestCase):
    """Fresh schema per test on an in-memory SQLite database."""

    @classmethod
    def database_uri(cls, tmpdir: str) -> str:
        return "sqlite:///:memory:"

    @classmethod
    def setUpClass(cls):
        cls._prev_env = {k: os.getenv(k) for k in _ENV_KEYS}
        cls._tmpdir = tempfile.mkdtemp(prefix="kmarket-test-")
        db_uri = cls.database_uri(cls._tmpdir)
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["DELIVERY_PROOF_DIR"] = os.path.join(cls._tmpdir, "proofs")
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.session.remove()
            db.engine.dispose()
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        shutil.rmtree(cls._tmpdir, ignore_errors=True)

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.drop_all()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    # Seeding

    @staticmethod
    def _detach(obj):
        # Request teardown removes the shared scoped session; keep seeded rows usable.
        db.session.refresh(obj)
        db.session.expunge(obj)
        return obj

    def make_user(self, role: str, name: str | None = None) -> User:
        suffix = time.time_ns()
        user = User(name=name or f"{role} {suffix % 10000}", email=f"{role}-{suffix}@kmarket.test", role=role)
        db.session.add(user)
        db.session.commit()
        return self._detach(user)

    def make_product(self, seller: User, *, price_minor: int = 10000, stock: int = 10, name: str = "Kente cloth") -> Product:
        product = Product(seller_id=int(seller.id), name=name, price_minor=price_minor, stock=stock)
        db.session.add(product)
        db.session.commit()
        return self._detach(product)

    def make_deal(
        self,
        product: Product,
        *,
        deal_price_minor: int = 7000,
        quantity: int = 3,
        starts_in: timedelta = timedelta(minutes=-5),
        lasts: timedelta = timedelta(hours=4),
        is_active: bool = True,
    ) -> FlashDeal:
        now = datetime.utcnow()
        deal = FlashDeal(
            product_id=int(product.id),
            seller_id=int(product.seller_id),
            original_price_minor=int(product.price_minor),
            deal_price_minor=deal_price_minor,
            discount_percentage=discount_percentage(int(product.price_minor), deal_price_minor),
            quantity_available=quantity,
            quantity_sold=0,
            starts_at=now + starts_in,
            ends_at=now + starts_in + lasts,
            is_active=is_active,
        )
        db.session.add(deal)
        db.session.commit()
        return deal

    @staticmethod
    def principal(user: User) -> Principal:
        return Principal(user_id=int(user.id), role=user.role)

    @staticmethod
    def auth(user: User) -> dict:
        return {"Authorization": f"Bearer {create_token(int(user.id))}"}


def png_bytes(color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="PNG")
    return buf.getvalue()


def signature_data_uri() -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes((0, 0, 0))).decode("ascii")
