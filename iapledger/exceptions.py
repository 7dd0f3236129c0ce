"""
Exception Classes - Strongly typed exception hierarchy.

These are raised and caught inside the package. Adapter operations report
failures to callers as StoreError values instead (see models.errors).
"""


class PurchaseError(Exception):
    """Base exception for all purchase errors."""

    pass


class ValidatorTransportError(PurchaseError):
    """Raised when the receipt validator cannot be reached or answers with an HTTP error."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"Error {status}: {message}")


class AdapterNotFoundError(PurchaseError):
    """Raised when no adapter is registered for a platform."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(f"No adapter registered for platform {platform}")
