from kmarket.models.user import User
from kmarket.models.product import Product
from kmarket.models.flash_deal import FlashDeal
from kmarket.models.order import Order
from kmarket.models.order_event import OrderEvent
from kmarket.models.escrow_transition import EscrowTransition
from kmarket.models.platform_event import PlatformEvent
from kmarket.models.idempotency_key import IdempotencyKey

__all__ = [
    "User",
    "Product",
    "FlashDeal",
    "Order",
    "OrderEvent",
    "EscrowTransition",
    "PlatformEvent",
    "IdempotencyKey",
]
