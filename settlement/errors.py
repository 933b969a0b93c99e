from __future__ import annotations


class SettlementError(Exception):
    """Base class for every error raised by settlement operations."""

    code = "settlement_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(SettlementError):
    code = "not_found"


class ForbiddenError(SettlementError):
    code = "forbidden"


class InvalidStateError(SettlementError):
    """Operation is not allowed in the entity's current state."""

    code = "invalid_state"


ConflictError = InvalidStateError


class PaymentForfeitedError(InvalidStateError):
    code = "payment_forfeited"


class RefundNotEligibleError(InvalidStateError):
    code = "refund_not_eligible"


class ValidationError(SettlementError):
    code = "validation_error"


class GatewayError(SettlementError):
    """Payment gateway call failed or timed out."""

    code = "gateway_error"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
