from __future__ import annotations


class DomainError(Exception):
    """Base for every error the order/escrow core raises on purpose.

    ``code`` is the stable machine-readable identifier rendered to API
    clients; ``http_status`` is the status the HTTP layer maps it to.
    """

    code = "DOMAIN_ERROR"
    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str = "", *, details: dict | None = None):
        self.message = (message or self.default_message).strip()
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "Invalid request"


class MissingSignature(ValidationError):
    code = "MISSING_SIGNATURE"
    default_message = "Buyer signature is required to confirm delivery"


class InvalidWindow(ValidationError):
    code = "INVALID_WINDOW"
    default_message = "Deal window is invalid"


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    http_status = 404
    default_message = "Not found"


class ForbiddenError(DomainError):
    code = "FORBIDDEN"
    http_status = 403
    default_message = "Forbidden"


class StateConflict(DomainError):
    code = "STATE_CONFLICT"
    http_status = 409
    default_message = "Request conflicts with the current state"


class InvalidTransition(StateConflict):
    code = "INVALID_TRANSITION"
    default_message = "Order status transition is not allowed"


class InvalidState(StateConflict):
    code = "INVALID_STATE"
    default_message = "Order is not in a state that allows this action"


class OutOfStock(StateConflict):
    code = "OUT_OF_STOCK"
    default_message = "Insufficient stock"


class DealUnavailable(StateConflict):
    code = "DEAL_UNAVAILABLE"
    default_message = "Flash deal is sold out or no longer running"


class InsufficientDealStock(DealUnavailable):
    code = "INSUFFICIENT_DEAL_STOCK"
    default_message = "Flash deal does not have enough units left"


class AlreadyClaimed(StateConflict):
    code = "ALREADY_CLAIMED"
    default_message = "Order already assigned to another delivery account"


class NotClaimable(StateConflict):
    code = "NOT_CLAIMABLE"
    default_message = "Order is not ready for delivery"


class EscrowStateConflict(StateConflict):
    code = "ESCROW_STATE_CONFLICT"
    default_message = "Escrow transition is not allowed"


class QuantityBelowSold(StateConflict):
    code = "QUANTITY_BELOW_SOLD"
    default_message = "Quantity available cannot be lower than quantity already sold"
