"""
Google Play Adapter.

Google Play reports one purchase per purchase token, so every purchase gets
its own receipt holding a single transaction. The native billing library is
reached through a callback-style GooglePlayBridge; purchase updates may
arrive on another thread and are moved onto the event loop before they
touch any receipt.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from structlog import get_logger

from iapledger.config import Settings, get_settings
from iapledger.models.errors import ErrorCode, StoreError, as_error_code, store_error
from iapledger.models.product import (
    Offer,
    PricingPhase,
    Product,
    ProductState,
    ProductType,
    RegisteredProduct,
)
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import (
    RenewalIntent,
    Transaction,
    TransactionProduct,
    TransactionState,
)
from iapledger.models.validation import (
    OfferBody,
    RequestTransaction,
    ValidationPayload,
    ValidationRequestBody,
)
from iapledger.services.adapter import (
    AdapterContext,
    AdditionalData,
    PaymentRequest,
    Platform,
    PlatformFunctionality,
)
from iapledger.services.timing import BackgroundTasks, bridge_call

logger = get_logger(__name__)

PLATFORM = Platform.GOOGLE_PLAY.value


class PurchaseState(int, Enum):
    """Purchase states reported by the billing library."""

    UNSPECIFIED_STATE = 0
    PURCHASED = 1
    PENDING = 2


@dataclass(frozen=True)
class NativePurchase:
    """A purchase as reported by the billing library."""

    purchase_token: str
    product_ids: tuple[str, ...]
    purchase_state: PurchaseState
    order_id: str | None = None
    purchase_time: int | None = None  # epoch milliseconds
    acknowledged: bool | None = None
    auto_renewing: bool | None = None
    signature: str = ""
    receipt: str = ""  # original purchase JSON


@dataclass(frozen=True)
class NativeOffer:
    """A subscription offer: its token and pricing phases."""

    token: str
    pricing_phases: tuple[PricingPhase, ...]


@dataclass(frozen=True)
class NativeProduct:
    """Product details returned by the billing library."""

    product_id: str
    title: str
    description: str
    pricing_phases: tuple[PricingPhase, ...] = ()
    offers: tuple[NativeOffer, ...] = ()  # subscriptions only


@dataclass(frozen=True)
class BridgeListeners:
    """Purchase notifications the bridge sends after init."""

    on_set_purchases: Callable[[list[NativePurchase]], None]
    on_purchases_updated: Callable[[list[NativePurchase]], None]
    on_purchase_consumed: Callable[[NativePurchase], None]


class GooglePlayBridge(Protocol):
    """
    Callback-style interface to the native billing library.

    Every call takes ``success`` and ``failure`` callbacks; failures are
    called with ``(message, code=None)``.
    """

    def init(
        self, success: Callable[..., None], failure: Callable[..., None], listeners: BridgeListeners
    ) -> None: ...

    def get_available_products(
        self,
        in_app_skus: list[str],
        subs_skus: list[str],
        success: Callable[..., None],
        failure: Callable[..., None],
    ) -> None:
        """Succeeds with a list of NativeProduct."""
        ...

    def get_purchases(self, success: Callable[..., None], failure: Callable[..., None]) -> None:
        """Purchases come back through the on_set_purchases listener."""
        ...

    def buy(
        self,
        success: Callable[..., None],
        failure: Callable[..., None],
        product_id: str,
        additional_data: AdditionalData,
    ) -> None: ...

    def subscribe(
        self,
        success: Callable[..., None],
        failure: Callable[..., None],
        offer_id: str,
        additional_data: AdditionalData,
    ) -> None: ...

    def consume_purchase(
        self, success: Callable[..., None], failure: Callable[..., None], purchase_token: str
    ) -> None: ...

    def acknowledge_purchase(
        self, success: Callable[..., None], failure: Callable[..., None], purchase_token: str
    ) -> None: ...

    def manage_subscriptions(self) -> None: ...


def transaction_state(state: PurchaseState) -> TransactionState:
    """Map a native purchase state. Acknowledged purchases stay APPROVED so they get validated."""
    if state == PurchaseState.PENDING:
        return TransactionState.INITIATED
    if state == PurchaseState.PURCHASED:
        return TransactionState.APPROVED
    return TransactionState.UNKNOWN_STATE


def _failure_error(result: Any, fallback: ErrorCode, context: str) -> StoreError:
    if result is None:
        return store_error(fallback, f"{context}: no response from billing library", PLATFORM)
    message = str(result.args[0]) if result.args else context
    code = result.args[1] if len(result.args) > 1 else None
    return store_error(as_error_code(code, fallback), message or context, PLATFORM)


class GooglePlayTransaction(Transaction):
    """Transaction backed by a native purchase."""

    native_purchase: NativePurchase

    def refresh(self, purchase: NativePurchase) -> None:
        """Update from a native purchase update."""
        self.native_purchase = purchase
        self.transaction_id = purchase.order_id or purchase.purchase_token
        self.purchase_id = purchase.purchase_token
        self.products = [TransactionProduct(id=product_id) for product_id in purchase.product_ids]
        if purchase.purchase_time:
            self.purchase_date = datetime.fromtimestamp(purchase.purchase_time / 1000, UTC)
        self.is_pending = purchase.purchase_state == PurchaseState.PENDING
        if purchase.acknowledged is not None:
            self.is_acknowledged = purchase.acknowledged
        if purchase.auto_renewing is not None:
            self.renewal_intent = (
                RenewalIntent.RENEW if purchase.auto_renewing else RenewalIntent.LAPSE
            )
        state = transaction_state(purchase.purchase_state)
        # Acknowledged or consumed purchases stay finished across refreshes
        if (
            self.state == TransactionState.FINISHED
            and state == TransactionState.APPROVED
            and (self.is_acknowledged or self.is_consumed)
        ):
            return
        self.state = state


class GooglePlayReceipt(Receipt):
    """Receipt of a single purchase token."""

    def __init__(self, purchase: NativePurchase) -> None:
        super().__init__(PLATFORM)
        self.purchase_token = purchase.purchase_token
        self.order_id = purchase.order_id
        transaction = GooglePlayTransaction(platform=PLATFORM, parent_receipt=self)
        transaction.refresh(purchase)
        self.add_transaction(transaction)

    @property
    def key(self) -> str | None:
        return self.purchase_token

    def refresh_purchase(self, purchase: NativePurchase) -> None:
        transaction = self.transactions[0] if self.transactions else None
        if isinstance(transaction, GooglePlayTransaction):
            transaction.refresh(purchase)
        self.order_id = purchase.order_id


class GooglePlayAdapter:
    """Adapter for Google Play Billing."""

    id = PLATFORM
    name = "GooglePlay"

    def __init__(
        self,
        context: AdapterContext,
        bridge: GooglePlayBridge,
        settings: Settings | None = None,
    ) -> None:
        self.ready = False
        self.context = context
        self.bridge = bridge
        self.settings = settings or get_settings()
        self.auto_refresh_interval = self.settings.google_play_auto_refresh
        self._products: list[Product] = []
        self._receipts: list[GooglePlayReceipt] = []
        self._initialization: asyncio.Future[StoreError | None] | None = None
        self._tasks = BackgroundTasks("google_play")
        self._refresh = BackgroundTasks("google_play_refresh")

    @property
    def products(self) -> list[Product]:
        return self._products

    @property
    def receipts(self) -> list[Receipt]:
        return list(self._receipts)

    @property
    def is_supported(self) -> bool:
        return True

    def get_product(self, product_id: str) -> Product | None:
        return next((p for p in self._products if p.id == product_id), None)

    async def initialize(self) -> StoreError | None:
        logger.info("google_play_initializing")
        if self._initialization is None:
            self._initialization = asyncio.ensure_future(self._initialize())
        error = await self._initialization
        if error is not None:
            self._initialization = None
        return error

    async def _initialize(self) -> StoreError | None:
        loop = asyncio.get_running_loop()

        def threadsafe(handler: Callable[..., None]) -> Callable[..., None]:
            return lambda *args: loop.call_soon_threadsafe(handler, *args)

        listeners = BridgeListeners(
            on_set_purchases=threadsafe(self.on_set_purchases),
            on_purchases_updated=threadsafe(self.on_purchases_updated),
            on_purchase_consumed=threadsafe(self.on_purchase_consumed),
        )
        result = await bridge_call(
            lambda ok, fail: self.bridge.init(ok, fail, listeners),
            timeout=None,
            name="google_play_init",
        )

        error: StoreError | None = None
        if result is None or not result.ok:
            failure = _failure_error(result, ErrorCode.SETUP, "Init failed")
            error = store_error(ErrorCode.SETUP, f"Init failed - {failure.message}", PLATFORM)
        else:
            logger.debug("google_play_ready")
            if self.auto_refresh_interval > 0:
                self._refresh.spawn(self._auto_refresh())

        return error

    @staticmethod
    def skus_of(products: list[RegisteredProduct]) -> tuple[list[str], list[str]]:
        """Split product ids into (in-app, subscription) lists."""
        in_app: list[str] = []
        subs: list[str] = []
        for product in products:
            if product.type == ProductType.PAID_SUBSCRIPTION:
                subs.append(product.id)
            else:
                in_app.append(product.id)
        return in_app, subs

    async def load(self, products: list[RegisteredProduct]) -> list[Product | StoreError]:
        in_app, subs = self.skus_of(products)
        logger.debug("google_play_loading", in_app=in_app, subs=subs)
        result = await bridge_call(
            lambda ok, fail: self.bridge.get_available_products(in_app, subs, ok, fail),
            timeout=None,
            name="google_play_load",
        )
        if result is None or not result.ok:
            failure = _failure_error(result, ErrorCode.LOAD, "Loading product info failed")
            return [
                store_error(
                    ErrorCode.LOAD,
                    f"Loading product info failed - {failure.message}",
                    PLATFORM,
                    p.id,
                )
                for p in products
            ]

        native_products: list[NativeProduct] = list(result.value or [])
        loaded: list[Product | StoreError] = []
        for registered in products:
            native = next((n for n in native_products if n.product_id == registered.id), None)
            if native is None:
                loaded.append(
                    store_error(
                        ErrorCode.INVALID_PRODUCT_ID,
                        f"Product with id {registered.id} not found.",
                        PLATFORM,
                        registered.id,
                    )
                )
            else:
                loaded.append(self._add_product(registered, native))

        self._tasks.spawn(self.get_purchases())
        return loaded

    async def order(self, offer: Offer, additional_data: AdditionalData) -> StoreError | None:
        logger.info("google_play_order", offer_id=offer.id, product_id=offer.product_id)
        if offer.product_type == ProductType.PAID_SUBSCRIPTION:
            # Subscription offer ids are "<productId>@<offerToken>"
            result = await bridge_call(
                lambda ok, fail: self.bridge.subscribe(ok, fail, offer.id, additional_data),
                timeout=None,
                name="google_play_subscribe",
            )
        else:
            result = await bridge_call(
                lambda ok, fail: self.bridge.buy(ok, fail, offer.product_id, additional_data),
                timeout=None,
                name="google_play_buy",
            )
        if result is not None and result.ok:
            return None
        error = _failure_error(result, ErrorCode.UNKNOWN, "Order failed")
        logger.warning("google_play_order_failed", code=error.code.name, error=error.message)
        return error

    async def finish(self, transaction: Transaction) -> StoreError | None:
        product_id = transaction.product_id
        if product_id is None:
            return store_error(
                ErrorCode.FINISH, "Cannot finish a transaction with no product", PLATFORM
            )
        product = self.get_product(product_id)
        if product is None:
            return store_error(
                ErrorCode.FINISH,
                f"Cannot finish transaction, unknown product {product_id}",
                PLATFORM,
            )
        receipt = next((r for r in self._receipts if r.has_transaction(transaction)), None)
        if receipt is None:
            return store_error(
                ErrorCode.FINISH, "Cannot finish transaction, linked receipt not found.", PLATFORM
            )
        if not receipt.purchase_token:
            return store_error(
                ErrorCode.FINISH,
                "Cannot finish transaction, linked receipt contains no purchaseToken.",
                PLATFORM,
            )

        token = receipt.purchase_token
        if product.type in (ProductType.NON_RENEWING_SUBSCRIPTION, ProductType.CONSUMABLE):
            if not transaction.is_consumed:
                result = await bridge_call(
                    lambda ok, fail: self.bridge.consume_purchase(ok, fail, token),
                    timeout=None,
                    name="google_play_consume",
                )
                if result is None or not result.ok:
                    return _failure_error(result, ErrorCode.UNKNOWN, "Finish failed")
                transaction.is_consumed = True
        elif not transaction.is_acknowledged:
            result = await bridge_call(
                lambda ok, fail: self.bridge.acknowledge_purchase(ok, fail, token),
                timeout=None,
                name="google_play_acknowledge",
            )
            if result is None or not result.ok:
                return _failure_error(result, ErrorCode.UNKNOWN, "Finish failed")
            transaction.is_acknowledged = True

        transaction.state = TransactionState.FINISHED
        self.context.receipts_updated(PLATFORM, [receipt])
        return None

    def on_purchase_consumed(self, purchase: NativePurchase) -> None:
        logger.debug("google_play_purchase_consumed", order_id=purchase.order_id)

    def on_purchases_updated(self, purchases: list[NativePurchase]) -> None:
        logger.debug("google_play_purchases_updated", orders=[p.order_id for p in purchases])
        for purchase in purchases:
            existing = next(
                (r for r in self._receipts if r.purchase_token == purchase.purchase_token), None
            )
            if existing is not None:
                existing.refresh_purchase(purchase)
                self.context.receipts_updated(PLATFORM, [existing])
            else:
                receipt = GooglePlayReceipt(purchase)
                self._receipts.append(receipt)
                self.context.receipts_updated(PLATFORM, [receipt])

    def on_set_purchases(self, purchases: list[NativePurchase]) -> None:
        self.on_purchases_updated(purchases)

    async def get_purchases(self) -> StoreError | None:
        """Ask the billing library to report every current purchase again."""
        result = await bridge_call(
            lambda ok, fail: self.bridge.get_purchases(ok, fail),
            timeout=None,
            name="google_play_get_purchases",
        )
        if result is not None and result.ok:
            return None
        error = _failure_error(result, ErrorCode.UNKNOWN, "getPurchases failed")
        logger.warning(
            "google_play_get_purchases_failed", code=error.code.name, error=error.message
        )
        return error

    async def receipt_validation_body(self, receipt: Receipt) -> ValidationRequestBody | None:
        transaction = receipt.transactions[0] if receipt.transactions else None
        if not isinstance(transaction, GooglePlayTransaction):
            return None
        product_id = transaction.product_id
        if product_id is None:
            return None
        product = self.get_product(product_id)
        if product is None:
            return None

        purchase = transaction.native_purchase
        return ValidationRequestBody(
            id=product_id,
            type=product.type.value,
            offers=[OfferBody.from_offer(offer) for offer in product.offers],
            products=[p.to_wire() for p in self._products],
            transaction=RequestTransaction(
                type=PLATFORM,
                id=transaction.transaction_id,
                purchaseToken=purchase.purchase_token,
                signature=purchase.signature,
                receipt=purchase.receipt,
            ),
        )

    async def handle_receipt_validation_response(
        self, receipt: Receipt, payload: ValidationPayload
    ) -> None:
        if payload.ok and payload.data.transaction.type == PLATFORM:
            extra = payload.data.transaction.model_extra or {}
            logger.debug("google_play_validation_response", kind=extra.get("kind"))

    async def request_payment(
        self, payment: PaymentRequest, additional_data: AdditionalData
    ) -> Transaction | StoreError | None:
        return store_error(ErrorCode.UNKNOWN, "requestPayment not supported", PLATFORM)

    async def manage_subscriptions(self) -> StoreError | None:
        self.bridge.manage_subscriptions()
        return None

    def check_support(self, functionality: PlatformFunctionality) -> bool:
        return functionality in ("order", "manageSubscriptions")

    async def restore_purchases(self) -> None:
        await self.get_purchases()

    async def drain(self) -> None:
        await self._tasks.drain()

    async def close(self) -> None:
        self._tasks.cancel()
        self._refresh.cancel()

    def _add_product(self, registered: RegisteredProduct, native: NativeProduct) -> Product:
        if registered.type == ProductType.PAID_SUBSCRIPTION:
            offers = [
                Offer(
                    id=f"{native.product_id}@{native_offer.token}",
                    product_id=native.product_id,
                    platform=PLATFORM,
                    product_type=registered.type,
                    pricing_phases=native_offer.pricing_phases,
                )
                for native_offer in native.offers
            ]
        else:
            offers = [
                Offer(
                    id=native.product_id,
                    product_id=native.product_id,
                    platform=PLATFORM,
                    product_type=registered.type,
                    pricing_phases=native.pricing_phases,
                )
            ]

        first_phase = offers[0].pricing_phases[0] if offers and offers[0].pricing_phases else None
        fields = {
            "title": native.title,
            "description": native.description,
            "localized_title": native.title,
            "localized_description": native.description,
            "localized_price": first_phase.price if first_phase else None,
            "price": first_phase.price if first_phase else None,
            "currency": first_phase.currency if first_phase else None,
            "offers": offers,
        }

        product = self.get_product(native.product_id)
        if product is not None:
            product.set(fields)
        else:
            product = Product(
                id=native.product_id,
                platform=PLATFORM,
                type=registered.type,
                alias=registered.alias,
                group=registered.group,
                events=self.context.product_events,
                **fields,
            )
            self._products.append(product)
        if not product.loaded or product.state == ProductState.INVALID:
            product.set_state(ProductState.VALID)
        self.context.products_updated(PLATFORM, [product])
        return product

    async def _auto_refresh(self) -> None:
        while True:
            await asyncio.sleep(self.auto_refresh_interval)
            await self.get_purchases()
