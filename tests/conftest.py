"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Settings with timers shrunk for fast tests
- Fake clock, fake validator transport
- A scriptable platform adapter
- Fake Google Play and App Store native bridges
- Store sessions wired with the fakes
"""

import os
from collections.abc import Callable
from typing import Any

import pytest

# Set environment defaults BEFORE importing iapledger modules
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("METRICS_ENABLED", "true")

from iapledger.config import Settings
from iapledger.exceptions import ValidatorTransportError
from iapledger.models.errors import StoreError
from iapledger.models.product import Offer, PricingPhase, Product, ProductType, RegisteredProduct
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import Transaction, TransactionProduct, TransactionState
from iapledger.models.validation import (
    OfferBody,
    RequestTransaction,
    ValidationPayload,
    ValidationRequestBody,
)
from iapledger.platforms.app_store import ApplicationReceiptData, ValidProduct
from iapledger.services.adapter import AdditionalData, PaymentRequest, PlatformFunctionality
from iapledger.services.store import Store
from iapledger.services.transport import ValidatorTarget
from iapledger.services.validator import ValidationCache

FAKE_PLATFORM = "ios-appstore"


# ============================================================================
# Settings / Clock
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every delay shrunk so tests run fast."""
    return Settings(
        validator_timeout=5.0,
        validation_cache_ttl=120.0,
        local_verification_delay=0.0,
        validation_debounce=0.0,
        bridge_timeout=0.05,
        receipts_debounce=0.0,
        google_play_auto_refresh=0.0,
    )


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock, test_settings: Settings) -> ValidationCache:
    return ValidationCache(ttl=test_settings.validation_cache_ttl, clock=clock)


# ============================================================================
# Validator transport
# ============================================================================


class FakeTransport:
    """ValidationTransport returning queued responses and recording requests."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses: list[Any] = list(responses or [])
        self.requests: list[tuple[ValidatorTarget, dict[str, Any]]] = []

    async def post(self, target: ValidatorTarget, body: dict[str, Any]) -> object:
        self.requests.append((target, body))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, ValidatorTransportError):
            raise response
        return response


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport([success_response("sku1")])


def success_response(product_id: str = "sku1", **data: Any) -> dict[str, Any]:
    """A validator success payload as it comes over the wire."""
    return {
        "ok": True,
        "data": {
            "id": product_id,
            "latest_receipt": True,
            "transaction": {"type": FAKE_PLATFORM},
            "collection": [{"id": product_id, "purchaseDate": 1_700_000_000_000}],
            **data,
        },
    }


# ============================================================================
# Adapter
# ============================================================================


class FakeAdapter:
    """
    Scriptable adapter: builds a fixed validation body per receipt and
    records every call the Validator and the Store make.
    """

    def __init__(self, platform: str = FAKE_PLATFORM) -> None:
        self.id = platform
        self.name = "Fake"
        self.ready = False
        self.calls: list[str] = []
        self.handled: list[tuple[Receipt, ValidationPayload]] = []
        self.finished: list[Transaction] = []
        self.body_factory: Callable[[Receipt], ValidationRequestBody | None] = default_body
        self.handle_error: Exception | None = None
        self.finish_error: StoreError | None = None
        self.orders: list[tuple[Offer, AdditionalData]] = []
        self._products: list[Product] = []
        self._receipts: list[Receipt] = []

    @property
    def products(self) -> list[Product]:
        return self._products

    @property
    def receipts(self) -> list[Receipt]:
        return self._receipts

    @property
    def is_supported(self) -> bool:
        return True

    async def initialize(self) -> StoreError | None:
        self.calls.append("initialize")
        return None

    async def load(self, products: list[RegisteredProduct]) -> list[Product | StoreError]:
        self.calls.append("load")
        return []

    async def order(self, offer: Offer, additional_data: AdditionalData) -> StoreError | None:
        self.calls.append("order")
        self.orders.append((offer, additional_data))
        return None

    async def finish(self, transaction: Transaction) -> StoreError | None:
        self.calls.append("finish")
        if self.finish_error is not None:
            return self.finish_error
        self.finished.append(transaction)
        transaction.state = TransactionState.FINISHED
        return None

    async def receipt_validation_body(self, receipt: Receipt) -> ValidationRequestBody | None:
        self.calls.append("receipt_validation_body")
        return self.body_factory(receipt)

    async def handle_receipt_validation_response(
        self, receipt: Receipt, payload: ValidationPayload
    ) -> None:
        self.calls.append("handle_receipt_validation_response")
        if self.handle_error is not None:
            raise self.handle_error
        self.handled.append((receipt, payload))

    async def request_payment(
        self, payment: PaymentRequest, additional_data: AdditionalData
    ) -> Transaction | StoreError | None:
        return None

    async def manage_subscriptions(self) -> StoreError | None:
        return None

    def check_support(self, functionality: PlatformFunctionality) -> bool:
        return functionality == "order"

    async def restore_purchases(self) -> None:
        self.calls.append("restore_purchases")

    async def close(self) -> None:
        self.calls.append("close")


def default_body(receipt: Receipt) -> ValidationRequestBody:
    """Body keyed on the receipt's latest transaction id."""
    latest = receipt.latest_transaction
    return ValidationRequestBody(
        id=latest.product_id if latest and latest.product_id else "sku1",
        type=ProductType.CONSUMABLE.value,
        transaction=RequestTransaction(
            type=receipt.platform,
            id=latest.transaction_id if latest else None,
        ),
    )


def priced_body(phases: list[tuple[str, int, str]]) -> Callable[[Receipt], ValidationRequestBody]:
    """Body factory with a single offer made of the given (price, micros, currency) phases."""

    def factory(receipt: Receipt) -> ValidationRequestBody:
        body = default_body(receipt)
        body.offers = [
            OfferBody(
                id="sku1-offer",
                pricing_phases=[
                    {"price": price, "priceMicros": micros, "currency": currency}
                    for price, micros, currency in phases
                ],
            )
        ]
        return body

    return factory


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


def make_receipt(platform: str = FAKE_PLATFORM, *transaction_ids: str) -> Receipt:
    """Receipt holding approved transactions for product sku1."""
    receipt = Receipt(platform)
    for transaction_id in transaction_ids or ("1000000001",):
        receipt.add_transaction(
            Transaction(
                platform=platform,
                parent_receipt=receipt,
                transaction_id=transaction_id,
                state=TransactionState.APPROVED,
                products=[TransactionProduct(id="sku1")],
            )
        )
    return receipt


@pytest.fixture
def receipt() -> Receipt:
    return make_receipt()


def make_offer(
    product_id: str = "sku1",
    platform: str = FAKE_PLATFORM,
    product_type: ProductType = ProductType.CONSUMABLE,
) -> Offer:
    return Offer(
        id=f"{product_id}-offer",
        product_id=product_id,
        platform=platform,
        product_type=product_type,
        pricing_phases=(PricingPhase(price="$0.99", price_micros=990_000, currency="USD"),),
    )


# ============================================================================
# Store sessions
# ============================================================================


@pytest.fixture
def store_factory(test_settings: Settings, cache: ValidationCache):
    """Factory for Store sessions wired with fakes."""

    def _create_store(
        validator: Any = None,
        transport: FakeTransport | None = None,
        adapters: list[Any] | None = None,
        application_username: str | None = None,
    ) -> Store:
        store = Store(
            validator=validator,
            application_username=application_username,
            transport=transport or FakeTransport([success_response()]),
            cache=cache,
            settings=test_settings,
        )
        for item in adapters or []:
            store.add_adapter(item)
        return store

    return _create_store


@pytest.fixture
def store(store_factory, adapter: FakeAdapter) -> Store:
    """Store with the fake adapter and no validator configured."""
    return store_factory(adapters=[adapter])


class Recorder:
    """Callable collecting every value it is called with."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def __call__(self, value: Any) -> None:
        self.values.append(value)

    def __len__(self) -> int:
        return len(self.values)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


# ============================================================================
# Native bridges
# ============================================================================


class FakeGooglePlayBridge:
    """Google Play bridge answering synchronously with scripted results."""

    def __init__(self) -> None:
        self.listeners: Any = None
        self.init_error: str | None = None
        self.available: list[Any] = []
        self.load_error: str | None = None
        self.order_error: tuple[str, int | None] | None = None
        self.finish_error: tuple[str, int | None] | None = None
        self.purchases: list[Any] = []
        self.calls: list[tuple[str, Any]] = []

    def init(self, success, failure, listeners) -> None:
        self.calls.append(("init", None))
        self.listeners = listeners
        if self.init_error:
            failure(self.init_error)
        else:
            success()

    def get_available_products(self, in_app_skus, subs_skus, success, failure) -> None:
        self.calls.append(("get_available_products", (in_app_skus, subs_skus)))
        if self.load_error:
            failure(self.load_error)
        else:
            success(self.available)

    def get_purchases(self, success, failure) -> None:
        self.calls.append(("get_purchases", None))
        if self.listeners is not None:
            self.listeners.on_set_purchases(list(self.purchases))
        success()

    def buy(self, success, failure, product_id, additional_data) -> None:
        self.calls.append(("buy", product_id))
        if self.order_error:
            failure(*self.order_error)
        else:
            success()

    def subscribe(self, success, failure, offer_id, additional_data) -> None:
        self.calls.append(("subscribe", offer_id))
        if self.order_error:
            failure(*self.order_error)
        else:
            success()

    def consume_purchase(self, success, failure, purchase_token) -> None:
        self.calls.append(("consume_purchase", purchase_token))
        if self.finish_error:
            failure(*self.finish_error)
        else:
            success()

    def acknowledge_purchase(self, success, failure, purchase_token) -> None:
        self.calls.append(("acknowledge_purchase", purchase_token))
        if self.finish_error:
            failure(*self.finish_error)
        else:
            success()

    def manage_subscriptions(self) -> None:
        self.calls.append(("manage_subscriptions", None))


@pytest.fixture
def google_bridge() -> FakeGooglePlayBridge:
    return FakeGooglePlayBridge()


APP_RECEIPT = ApplicationReceiptData(
    app_store_receipt="MIIT...base64",
    bundle_identifier="com.example.app",
    bundle_short_version="1.0",
)


class FakeAppStoreBridge:
    """App Store bridge; set ``answer_receipts`` to False to simulate a hung receipt load."""

    def __init__(self) -> None:
        self.app_store_receipt: ApplicationReceiptData | None = None
        self.emit: Callable[..., None] | None = None
        self.answer_receipts = True
        self.receipt = APP_RECEIPT
        self.valid: list[ValidProduct] = []
        self.invalid: list[str] = []
        self.purchase_ok = True
        self.finish_error: str | None = None
        self.calls: list[tuple[str, Any]] = []

    def init(self, emit, success, failure) -> None:
        self.emit = emit
        success()

    def load(self, product_ids, success, failure) -> None:
        self.calls.append(("load", product_ids))
        success(self.valid, self.invalid)

    def purchase(
        self, product_id, quantity, application_username, discount_id, success, failure
    ) -> None:
        self.calls.append(("purchase", (product_id, application_username, discount_id)))
        if self.purchase_ok:
            success()
        else:
            failure(6777003, "Purchase failed")

    def finish(self, transaction_id, success, failure) -> None:
        self.calls.append(("finish", transaction_id))
        if self.finish_error:
            failure(self.finish_error)
        else:
            success()

    def load_receipts(self, success, failure) -> None:
        self.calls.append(("load_receipts", None))
        if self.answer_receipts:
            success(self.receipt)

    def refresh_receipts(self, success, failure) -> None:
        self.calls.append(("refresh_receipts", None))
        success(self.receipt)

    def restore(self) -> None:
        self.calls.append(("restore", None))

    def manage_subscriptions(self) -> None:
        self.calls.append(("manage_subscriptions", None))

    def manage_billing(self) -> None:
        self.calls.append(("manage_billing", None))


@pytest.fixture
def app_store_bridge() -> FakeAppStoreBridge:
    return FakeAppStoreBridge()


def registered(
    product_id: str,
    platform: str,
    product_type: ProductType = ProductType.CONSUMABLE,
    alias: str | None = None,
) -> RegisteredProduct:
    return RegisteredProduct(id=product_id, type=product_type, platform=platform, alias=alias)


# ============================================================================
# Factory fixtures
# ============================================================================


@pytest.fixture
def receipt_factory():
    """Factory for receipts of approved sku1 transactions."""
    return make_receipt


@pytest.fixture
def offer_factory():
    return make_offer


@pytest.fixture
def registered_factory():
    return registered


@pytest.fixture
def success_payload():
    """Factory for validator success payloads."""
    return success_response


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def adapter_factory():
    """Factory for scriptable adapters on any platform."""
    return FakeAdapter


@pytest.fixture
def priced_body_factory():
    return priced_body
