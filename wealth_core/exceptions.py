"""
Error taxonomy for ledger and settlement operations.

Every error is recoverable at the caller: the operation that raised it did
not commit anything. The base class derives from ValueError so callers that
only care about "bad request" can keep catching ValueError.
"""

from typing import Any, Dict, Optional


class WealthCoreError(ValueError):
    """Base class for all domain errors raised by the core"""

    code = "wealth_core_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class InvalidAmount(WealthCoreError):
    """Amount or quantity is zero, negative or not a number"""
    code = "invalid_amount"


class InsufficientFunds(WealthCoreError):
    """Withdrawal, transfer or purchase exceeds the account balance"""
    code = "insufficient_funds"


class InsufficientPosition(WealthCoreError):
    """Sell quantity exceeds the quantity held"""
    code = "insufficient_position"


class BelowMinimumInvestment(WealthCoreError):
    """Fixed-income purchase under the asset's minimum investment"""
    code = "below_minimum_investment"


class InvalidAccount(WealthCoreError):
    """Unknown account id, or an account of the wrong kind or owner"""
    code = "invalid_account"


class AssetNotFound(WealthCoreError):
    """Market data has no asset with the requested id"""
    code = "asset_not_found"


def error_code(error: Optional[BaseException]) -> Optional[str]:
    """Stable code for a domain error, or None for anything else"""
    if isinstance(error, WealthCoreError):
        return error.code
    return None
