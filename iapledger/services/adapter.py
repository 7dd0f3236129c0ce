"""
Adapter Protocol - Backend-agnostic interface to a purchase platform.

The Validator and the Store only ever hold this interface. Platform modules
under iapledger.platforms implement it on top of a native bridge.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol, runtime_checkable

from iapledger.exceptions import AdapterNotFoundError
from iapledger.models.errors import StoreError
from iapledger.models.product import Offer, Product, RegisteredProduct
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import Transaction
from iapledger.models.validation import ValidationPayload, ValidationRequestBody
from iapledger.services.events import ProductEvents


class Platform(str, Enum):
    """Purchase platforms."""

    APPLE_APPSTORE = "ios-appstore"
    GOOGLE_PLAY = "android-playstore"
    WINDOWS_STORE = "windows-store-transaction"
    TEST = "test"


PlatformFunctionality = Literal["order", "requestPayment", "manageSubscriptions", "manageBilling"]


@dataclass(frozen=True)
class PaymentRequest:
    """A one-off payment for a basket of products (payment-request style platforms)."""

    product_ids: tuple[str, ...]
    amount_micros: int
    currency: str
    description: str | None = None

    def __post_init__(self) -> None:
        """Validate payment constraints."""
        if self.amount_micros <= 0:
            raise ValueError(f"Payment amount must be positive: {self.amount_micros}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class AdditionalData:
    """Extra data passed along with an order."""

    application_username: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class Adapter(Protocol):
    """
    Purchase platform adapter.

    Operations that can fail return a StoreError (None on success) instead
    of raising.
    """

    id: str
    name: str
    ready: bool

    @property
    def products(self) -> list[Product]: ...

    @property
    def receipts(self) -> list[Receipt]: ...

    @property
    def is_supported(self) -> bool: ...

    async def initialize(self) -> StoreError | None: ...

    async def load(self, products: list[RegisteredProduct]) -> list[Product | StoreError]: ...

    async def order(self, offer: Offer, additional_data: AdditionalData) -> StoreError | None: ...

    async def finish(self, transaction: Transaction) -> StoreError | None: ...

    async def receipt_validation_body(self, receipt: Receipt) -> ValidationRequestBody | None:
        """
        Build the validator request for a receipt.

        Returns:
            The request body, or None to skip validating this receipt
        """
        ...

    async def handle_receipt_validation_response(
        self, receipt: Receipt, payload: ValidationPayload
    ) -> None:
        """Fold server-confirmed data back into the adapter's own transactions."""
        ...

    async def request_payment(
        self, payment: PaymentRequest, additional_data: AdditionalData
    ) -> Transaction | StoreError | None: ...

    async def manage_subscriptions(self) -> StoreError | None: ...

    def check_support(self, functionality: PlatformFunctionality) -> bool: ...

    async def restore_purchases(self) -> None: ...

    async def close(self) -> None:
        """Stop timers and background tasks."""
        ...


@runtime_checkable
class LocallyVerifyingAdapter(Protocol):
    """An adapter that verifies its receipts itself, with no validator involved."""

    async def verify_receipt(self, receipt: Receipt) -> ValidationPayload: ...


class AdapterListener(Protocol):
    """Notifications adapters send back to the store session."""

    def receipts_updated(self, platform: str, receipts: list[Receipt]) -> None: ...

    def products_updated(self, platform: str, products: list[Product]) -> None: ...

    def error(self, error: StoreError) -> None: ...


class AdapterContext(AdapterListener, Protocol):
    """What an adapter receives from the store session that owns it."""

    product_events: ProductEvents

    def get_application_username(self) -> str | None: ...


class Adapters:
    """Adapters registered in a store session, by platform."""

    def __init__(self, adapters: Iterable[Adapter] = ()) -> None:
        self._adapters: dict[str, Adapter] = {}
        for adapter in adapters:
            self.add(adapter)

    def __iter__(self) -> Iterator[Adapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    def add(self, adapter: Adapter) -> None:
        if adapter.id in self._adapters:
            raise ValueError(f"Adapter already registered for platform {adapter.id}")
        self._adapters[adapter.id] = adapter

    def find(self, platform: str) -> Adapter | None:
        return self._adapters.get(platform)

    def get(self, platform: str) -> Adapter:
        adapter = self.find(platform)
        if adapter is None:
            raise AdapterNotFoundError(platform)
        return adapter
