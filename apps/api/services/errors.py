"""Settlement error taxonomy.

Every error carries an HTTP status and a JSON-safe ``detail`` so routers and the
application-level handler can surface it verbatim.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base class for all settlement engine failures."""

    status_code = 500
    code = "settlement_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: _json_safe(value) for key, value in context.items()}

    @property
    def detail(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        payload.update(self.context)
        return payload


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


# Validation errors: rejected synchronously, never retried.


class SettlementValidationError(SettlementError):
    status_code = 422
    code = "validation_error"


class InvalidAmount(SettlementValidationError):
    code = "invalid_amount"


class LedgerValidationError(SettlementValidationError):
    code = "invalid_ledger_operation"


class InvalidAuthorization(SettlementValidationError):
    code = "invalid_authorization"


class PaymentMismatch(SettlementValidationError):
    code = "payment_mismatch"


class BookingNotFound(SettlementValidationError):
    status_code = 404
    code = "booking_not_found"


class ServiceNotFound(SettlementValidationError):
    status_code = 404
    code = "service_not_found"


class UserNotFound(SettlementValidationError):
    status_code = 404
    code = "user_not_found"


class WalletNotFound(SettlementValidationError):
    code = "wallet_not_found"


# Business-rule failures: expected and user-facing.


class BusinessRuleError(SettlementError):
    status_code = 400
    code = "business_rule_violation"


class InsufficientBalance(BusinessRuleError):
    code = "insufficient_balance"

    def __init__(
        self,
        required: Decimal,
        usdc_available: Decimal,
        points_available: int,
        shortfall: Optional[Decimal] = None,
    ) -> None:
        super().__init__(
            f"Insufficient balance. Required: {required} USDC, available: {usdc_available} USDC.",
            required=required,
            usdc_available=usdc_available,
            points_available=points_available,
            shortfall=shortfall if shortfall is not None else max(required - usdc_available, Decimal("0")),
        )


class InsufficientPoints(BusinessRuleError):
    code = "insufficient_points"

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient points. Required: {required}, available: {available}.",
            required=required,
            available=available,
        )


class InvalidBookingState(BusinessRuleError):
    status_code = 409
    code = "invalid_booking_state"


class AuthorizationExpired(BusinessRuleError):
    code = "authorization_expired"


class AuthorizationReplayed(BusinessRuleError):
    status_code = 409
    code = "authorization_replayed"


class InvalidSignature(BusinessRuleError):
    code = "invalid_signature"


# Transient infrastructure failures: retried at the boundary owning the resource.


class TransientError(SettlementError):
    status_code = 503
    code = "temporarily_unavailable"


class LedgerUnavailable(TransientError):
    code = "ledger_unavailable"


class ChainUnavailable(TransientError):
    code = "chain_unavailable"


# Fatal configuration errors: abort, never degrade to an unsigned path.


class FatalConfigurationError(SettlementError):
    status_code = 503
    code = "configuration_error"


class SigningUnavailable(FatalConfigurationError):
    code = "signing_unavailable"
