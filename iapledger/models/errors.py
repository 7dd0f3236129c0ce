"""
Error codes and the StoreError result value.

Adapter operations return a StoreError (or None on success) rather than
raising, so callers inspect the result.
"""

from dataclasses import dataclass
from enum import Enum

ERROR_CODES_BASE = 6777000


class ErrorCode(int, Enum):
    """Error codes shared by every platform."""

    SETUP = ERROR_CODES_BASE + 1
    LOAD = ERROR_CODES_BASE + 2
    PURCHASE = ERROR_CODES_BASE + 3
    LOAD_RECEIPTS = ERROR_CODES_BASE + 4
    CLIENT_INVALID = ERROR_CODES_BASE + 5
    PAYMENT_CANCELLED = ERROR_CODES_BASE + 6
    PAYMENT_INVALID = ERROR_CODES_BASE + 7
    PAYMENT_NOT_ALLOWED = ERROR_CODES_BASE + 8
    UNKNOWN = ERROR_CODES_BASE + 10
    REFRESH_RECEIPTS = ERROR_CODES_BASE + 11
    INVALID_PRODUCT_ID = ERROR_CODES_BASE + 12
    FINISH = ERROR_CODES_BASE + 13
    COMMUNICATION = ERROR_CODES_BASE + 14
    SUBSCRIPTIONS_NOT_AVAILABLE = ERROR_CODES_BASE + 15
    MISSING_TOKEN = ERROR_CODES_BASE + 16
    VERIFICATION_FAILED = ERROR_CODES_BASE + 17
    BAD_RESPONSE = ERROR_CODES_BASE + 18
    REFRESH = ERROR_CODES_BASE + 19
    PAYMENT_EXPIRED = ERROR_CODES_BASE + 20
    DOWNLOAD = ERROR_CODES_BASE + 21
    SUBSCRIPTION_UPDATE_NOT_AVAILABLE = ERROR_CODES_BASE + 22
    PRODUCT_NOT_AVAILABLE = ERROR_CODES_BASE + 23
    UNSUPPORTED = ERROR_CODES_BASE + 33


@dataclass(frozen=True)
class StoreError:
    """Failure result of an adapter operation."""

    code: ErrorCode
    message: str
    platform: str | None = None
    product_id: str | None = None

    def __post_init__(self) -> None:
        """Validate error fields."""
        if not self.message:
            raise ValueError("Error message cannot be empty")

    def __str__(self) -> str:
        return f"{self.code.name} ({int(self.code)}): {self.message}"


def store_error(
    code: ErrorCode,
    message: str,
    platform: str | None = None,
    product_id: str | None = None,
) -> StoreError:
    """Shorthand used by adapters to build an error result."""
    return StoreError(code=code, message=message, platform=platform, product_id=product_id)


def as_error_code(code: int | None, default: ErrorCode = ErrorCode.UNKNOWN) -> ErrorCode:
    """Map a code reported by a native bridge, falling back to ``default``."""
    if code is None:
        return default
    try:
        return ErrorCode(code)
    except ValueError:
        return default
