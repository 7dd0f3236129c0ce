"""
Apple App Store Adapter (StoreKit 1 style bridge).

Two receipts are kept:

- the application receipt, holding every transaction StoreKit reported
  with a real identifier, plus a virtual transaction for the app itself
- a pseudo receipt, holding purchases in flight as virtual transactions
  ("virtual.<productId>") until StoreKit assigns an identifier

Only the application receipt is ever sent for validation. Bridge events
arrive through ``emit`` (thread-safe) or can be awaited directly through
the matching handler methods.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
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
    Transaction,
    TransactionProduct,
    TransactionState,
    virtual_transaction_id,
)
from iapledger.models.validation import (
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
from iapledger.services.timing import BackgroundTasks, Debouncer, bridge_call

logger = get_logger(__name__)

PLATFORM = Platform.APPLE_APPSTORE.value

APPLICATION_VIRTUAL_TRANSACTION_ID = "appstore.application"
DEFAULT_OFFER_ID = "$"
ALREADY_FINISHED = "already finished"


@dataclass(frozen=True)
class ApplicationReceiptData:
    """The application receipt as loaded from the device."""

    app_store_receipt: str
    bundle_identifier: str
    bundle_short_version: str | None = None
    bundle_numeric_version: int | None = None
    bundle_signature: str | None = None


@dataclass(frozen=True)
class ValidProduct:
    """Product details returned by StoreKit."""

    id: str
    title: str
    description: str
    price: str
    price_micros: int
    currency: str
    billing_period: str | None = None


class AppStoreBridge(Protocol):
    """
    Callback-style interface to StoreKit.

    ``init`` receives an ``emit(event, *args)`` callable used to report
    transaction updates for the lifetime of the session.
    """

    app_store_receipt: ApplicationReceiptData | None

    def init(
        self,
        emit: Callable[..., None],
        success: Callable[..., None],
        failure: Callable[..., None],
    ) -> None: ...

    def load(
        self,
        product_ids: list[str],
        success: Callable[..., None],
        failure: Callable[..., None],
    ) -> None:
        """Succeeds with (valid: list[ValidProduct], invalid_ids: list[str])."""
        ...

    def purchase(
        self,
        product_id: str,
        quantity: int,
        application_username: str | None,
        discount_id: str | None,
        success: Callable[..., None],
        failure: Callable[..., None],
    ) -> None: ...

    def finish(
        self, transaction_id: str, success: Callable[..., None], failure: Callable[..., None]
    ) -> None: ...

    def load_receipts(self, success: Callable[..., None], failure: Callable[..., None]) -> None:
        """Succeeds with an ApplicationReceiptData."""
        ...

    def refresh_receipts(
        self, success: Callable[..., None], failure: Callable[..., None]
    ) -> None: ...

    def restore(self) -> None: ...

    def manage_subscriptions(self) -> None: ...

    def manage_billing(self) -> None: ...


class AppStoreTransaction(Transaction):
    """Transaction reported by StoreKit."""

    original_transaction_id: str | None = None

    def refresh(
        self,
        product_id: str,
        original_transaction_id: str | None = None,
        transaction_date: str | None = None,
        discount_id: str | None = None,
    ) -> None:
        self.products = [TransactionProduct(id=product_id, offer_id=discount_id)]
        if original_transaction_id:
            self.original_transaction_id = original_transaction_id
        if transaction_date:
            self.purchase_date = datetime.fromtimestamp(int(transaction_date) / 1000, UTC)


class ApplicationReceipt(Receipt):
    """The application receipt and the transactions StoreKit reported in it."""

    def __init__(self, native_data: ApplicationReceiptData, need_app_receipt: bool) -> None:
        super().__init__(PLATFORM)
        self.native_data = native_data
        application = AppStoreTransaction(
            platform=PLATFORM,
            parent_receipt=self,
            transaction_id=APPLICATION_VIRTUAL_TRANSACTION_ID,
            state=TransactionState.APPROVED if need_app_receipt else TransactionState.FINISHED,
        )
        application.refresh(native_data.bundle_identifier)
        self.add_transaction(application)

    @property
    def key(self) -> str | None:
        return self.native_data.bundle_identifier

    def refresh(self, native_data: ApplicationReceiptData) -> None:
        self.native_data = native_data


class AppStoreAdapter:
    """Adapter for the Apple App Store."""

    id = PLATFORM
    name = "AppStore"

    def __init__(
        self,
        context: AdapterContext,
        bridge: AppStoreBridge,
        settings: Settings | None = None,
        need_app_receipt: bool = True,
    ) -> None:
        self.ready = False
        self.context = context
        self.bridge = bridge
        self.settings = settings or get_settings()
        self.need_app_receipt = need_app_receipt
        # Set when ordering or restoring: the cached receipt may be another user's
        self.force_receipt_reload = False
        self.pseudo_receipt = Receipt(PLATFORM)
        self._receipt: ApplicationReceipt | None = None
        self._products: list[Product] = []
        self._valid_products: dict[str, tuple[ValidProduct, RegisteredProduct]] = {}
        self._tasks = BackgroundTasks("app_store")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._receipts_updated = Debouncer(
            self.settings.receipts_debounce, self._notify_receipts, name="app_store_receipts"
        )
        self._handlers: dict[str, Callable[..., Any]] = {
            "error": self.bridge_error,
            "purchasing": self.purchasing,
            "purchase_enqueued": self.purchase_enqueued,
            "deferred": self.deferred,
            "purchase_failed": self.purchase_failed,
            "purchased": self.purchased,
            "finished": self.finished,
            "restored": self.restored,
            "receipts_refreshed": self.receipts_refreshed,
        }

    @property
    def products(self) -> list[Product]:
        return self._products

    @property
    def receipts(self) -> list[Receipt]:
        receipts: list[Receipt] = [self._receipt] if self._receipt else []
        return receipts + [self.pseudo_receipt]

    @property
    def application_receipt(self) -> ApplicationReceipt | None:
        return self._receipt

    @property
    def is_supported(self) -> bool:
        return True

    def get_product(self, product_id: str) -> Product | None:
        return next((p for p in self._products if p.id == product_id), None)

    # ------------------------------------------------------------------
    # Bridge events
    # ------------------------------------------------------------------

    def emit(self, event: str, *args: Any) -> None:
        """Entry point handed to the bridge. Safe to call from any thread."""
        if self._loop is None:
            logger.warning("app_store_event_before_init", event_name=event)
            return
        self._loop.call_soon_threadsafe(self._dispatch, event, args)

    def _dispatch(self, event: str, args: tuple[Any, ...]) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("app_store_unknown_event", event_name=event)
            return
        result = handler(*args)
        if asyncio.iscoroutine(result):
            self._tasks.spawn(result)

    def bridge_error(self, code: int, message: str, product_id: str | None = None) -> None:
        logger.error("app_store_error", code=code, error=message, product_id=product_id)
        if code == ErrorCode.PAYMENT_CANCELLED:
            # The user closed the payment sheet
            return
        self.context.error(store_error(as_error_code(code), message, PLATFORM, product_id))

    async def purchasing(self, product_id: str) -> None:
        """Purchase requested; StoreKit has no identifier for it yet."""
        logger.info("app_store_purchasing", product_id=product_id)
        self._upsert_in_progress(product_id, TransactionState.INITIATED)
        self.context.receipts_updated(PLATFORM, [self.pseudo_receipt])

    async def purchase_enqueued(self, product_id: str, quantity: int = 1) -> None:
        logger.info("app_store_purchase_enqueued", product_id=product_id, quantity=quantity)
        self._upsert_in_progress(product_id, TransactionState.INITIATED)
        self.context.receipts_updated(PLATFORM, [self.pseudo_receipt])

    async def deferred(self, product_id: str) -> None:
        logger.info("app_store_deferred", product_id=product_id)
        self._upsert_in_progress(product_id, TransactionState.PENDING)
        self.context.receipts_updated(PLATFORM, [self.pseudo_receipt])

    async def purchase_failed(self, product_id: str, code: int, message: str) -> None:
        logger.info("app_store_purchase_failed", product_id=product_id, code=code, error=message)
        self.pseudo_receipt.remove_virtual_transaction(product_id)
        self.context.receipts_updated(PLATFORM, [self.pseudo_receipt])

    async def purchased(
        self,
        transaction_id: str,
        product_id: str,
        original_transaction_id: str | None = None,
        transaction_date: str | None = None,
        discount_id: str | None = None,
    ) -> None:
        """StoreKit assigned an identifier: move the purchase into the application receipt."""
        logger.info(
            "app_store_purchased",
            transaction_id=transaction_id,
            product_id=product_id,
            original_transaction_id=original_transaction_id,
        )
        transaction = await self._upsert_transaction(
            product_id, transaction_id, TransactionState.APPROVED
        )
        if transaction is None:
            return
        transaction.refresh(product_id, original_transaction_id, transaction_date, discount_id)
        self.pseudo_receipt.remove_virtual_transaction(product_id)
        self._receipts_updated.trigger()

    async def finished(self, transaction_id: str, product_id: str) -> None:
        logger.info("app_store_finished", transaction_id=transaction_id, product_id=product_id)
        self.pseudo_receipt.remove_virtual_transaction(product_id)
        await self._upsert_transaction(product_id, transaction_id, TransactionState.FINISHED)
        self._receipts_updated.trigger()

    async def restored(self, transaction_id: str, product_id: str) -> None:
        logger.info("app_store_restored", transaction_id=transaction_id, product_id=product_id)
        await self._upsert_transaction(product_id, transaction_id, TransactionState.APPROVED)
        self._receipts_updated.trigger()

    def receipts_refreshed(self, native_data: ApplicationReceiptData) -> None:
        logger.info("app_store_receipts_refreshed")
        if self._receipt is not None:
            self._receipt.refresh(native_data)

    # ------------------------------------------------------------------
    # Adapter operations
    # ------------------------------------------------------------------

    async def initialize(self) -> StoreError | None:
        logger.info("app_store_initializing")
        self._loop = asyncio.get_running_loop()
        result = await bridge_call(
            lambda ok, fail: self.bridge.init(self.emit, ok, fail),
            timeout=None,
            name="app_store_init",
        )
        if result is None or not result.ok:
            code = result.args[0] if result and result.args else None
            message = str(result.args[1]) if result and len(result.args) > 1 else "Init failed"
            logger.warning("app_store_init_failed", code=code, error=message)
            return store_error(as_error_code(code, ErrorCode.SETUP), message, PLATFORM)

        self._tasks.spawn(self._initial_receipt())
        return None

    async def load(self, products: list[RegisteredProduct]) -> list[Product | StoreError]:
        result = await bridge_call(
            lambda ok, fail: self.bridge.load([p.id for p in products], ok, fail),
            timeout=None,
            name="app_store_load",
        )
        if result is None or not result.ok:
            code = result.args[0] if result and result.args else None
            message = str(result.args[1]) if result and len(result.args) > 1 else "Load failed"
            return [
                store_error(as_error_code(code, ErrorCode.LOAD), message, PLATFORM, p.id)
                for p in products
            ]

        valid_products: list[ValidProduct] = list(result.args[0] or [])
        invalid_ids: list[str] = list(result.args[1] or []) if len(result.args) > 1 else []
        logger.info("app_store_loaded", valid=len(valid_products), invalid=invalid_ids)

        loaded: list[Product | StoreError] = []
        for registered in products:
            valid = next((v for v in valid_products if v.id == registered.id), None)
            if registered.id in invalid_ids:
                loaded.append(
                    store_error(
                        ErrorCode.INVALID_PRODUCT_ID,
                        "Product not found in AppStore. #400",
                        PLATFORM,
                        registered.id,
                    )
                )
            elif valid is None:
                loaded.append(
                    store_error(
                        ErrorCode.INVALID_PRODUCT_ID,
                        "Product not found in AppStore. #404",
                        PLATFORM,
                        registered.id,
                    )
                )
            else:
                self._valid_products[valid.id] = (valid, registered)
                loaded.append(self._add_product(valid, registered))
        return loaded

    async def order(self, offer: Offer, additional_data: AdditionalData) -> StoreError | None:
        logger.info("app_store_order", offer_id=offer.id, product_id=offer.product_id)
        discount_id = offer.id if offer.id != DEFAULT_OFFER_ID else None
        username = additional_data.application_username or self.context.get_application_username()
        self.force_receipt_reload = True
        result = await bridge_call(
            lambda ok, fail: self.bridge.purchase(
                offer.product_id, 1, username, discount_id, ok, fail
            ),
            timeout=None,
            name="app_store_purchase",
        )
        if result is None or not result.ok:
            return store_error(
                ErrorCode.PURCHASE, "Failed to place order", PLATFORM, offer.product_id
            )
        return None

    async def finish(self, transaction: Transaction) -> StoreError | None:
        logger.info("app_store_finish", transaction_id=transaction.transaction_id)
        product_id = transaction.product_id or ""
        if transaction.transaction_id in (
            APPLICATION_VIRTUAL_TRANSACTION_ID,
            virtual_transaction_id(product_id),
        ):
            # Nothing to tell StoreKit about
            transaction.state = TransactionState.FINISHED
            self.context.receipts_updated(PLATFORM, [transaction.parent_receipt])
            return None

        result = await bridge_call(
            lambda ok, fail: self.bridge.finish(transaction.transaction_id, ok, fail),
            timeout=None,
            name="app_store_finish",
        )
        failed = result is None or not result.ok
        if failed and result is not None and ALREADY_FINISHED in str(result.value).lower():
            failed = False
        if failed:
            return store_error(
                ErrorCode.FINISH, "Failed to finish transaction", PLATFORM, transaction.product_id
            )

        transaction.state = TransactionState.FINISHED
        self.context.receipts_updated(PLATFORM, [transaction.parent_receipt])
        return None

    async def refresh_receipt(self) -> ApplicationReceiptData | StoreError:
        result = await bridge_call(
            lambda ok, fail: self.bridge.refresh_receipts(ok, fail),
            timeout=None,
            name="app_store_refresh_receipts",
        )
        if result is not None and result.ok and result.value is not None:
            return result.value
        code = result.args[0] if result and result.args else None
        message = str(result.args[1]) if result and len(result.args) > 1 else "Refresh failed"
        return store_error(as_error_code(code, ErrorCode.REFRESH), message, PLATFORM)

    async def receipt_validation_body(self, receipt: Receipt) -> ValidationRequestBody | None:
        if receipt.platform != PLATFORM:
            return None
        if self._receipt is None or receipt is not self._receipt:
            # The pseudo receipt is never validated
            return None

        native = self._receipt.native_data
        if self.force_receipt_reload:
            self.force_receipt_reload = False
            reloaded = await self._load_app_store_receipt()
            if reloaded is not None:
                native = reloaded
                self._receipt.refresh(reloaded)

        if not native.app_store_receipt:
            logger.info("app_store_receipt_missing_refreshing")
            refreshed = await self.refresh_receipt()
            if isinstance(refreshed, StoreError):
                logger.warning("app_store_receipt_refresh_failed", error=refreshed.message)
                return None
            native = refreshed
            self._receipt.refresh(refreshed)

        transaction = self._receipt.latest_transaction
        return ValidationRequestBody(
            id=native.bundle_identifier,
            type=ProductType.APPLICATION.value,
            products=[
                self._product_wire(valid, registered)
                for valid, registered in self._valid_products.values()
            ],
            transaction=RequestTransaction(
                type=PLATFORM,
                id=transaction.transaction_id if transaction else None,
                appStoreReceipt=native.app_store_receipt,
            ),
        )

    async def handle_receipt_validation_response(
        self, receipt: Receipt, payload: ValidationPayload
    ) -> None:
        """Copy the original app purchase date into the application transaction."""
        if not payload.ok:
            return
        verified = payload.data.transaction
        extra = verified.model_extra or {}
        if verified.type != PLATFORM or "original_application_version" not in extra:
            return

        original_purchase_ms = extra.get("original_purchase_date_ms")
        if not original_purchase_ms or self._receipt is None:
            return
        updated = False
        for transaction in self._receipt.transactions:
            if transaction.transaction_id == APPLICATION_VIRTUAL_TRANSACTION_ID:
                transaction.purchase_date = datetime.fromtimestamp(
                    int(original_purchase_ms) / 1000, UTC
                )
                updated = True
        if updated:
            self.context.receipts_updated(PLATFORM, [receipt])

    async def request_payment(
        self, payment: PaymentRequest, additional_data: AdditionalData
    ) -> Transaction | StoreError | None:
        return store_error(ErrorCode.UNKNOWN, "requestPayment not supported", PLATFORM)

    async def manage_subscriptions(self) -> StoreError | None:
        self.bridge.manage_subscriptions()
        return None

    async def manage_billing(self) -> StoreError | None:
        self.bridge.manage_billing()
        return None

    def check_support(self, functionality: PlatformFunctionality) -> bool:
        return functionality in ("order", "manageBilling", "manageSubscriptions")

    async def restore_purchases(self) -> None:
        self.force_receipt_reload = True
        self.bridge.restore()
        await bridge_call(
            lambda ok, fail: self.bridge.refresh_receipts(ok, fail),
            timeout=None,
            name="app_store_restore",
        )

    async def drain(self) -> None:
        """Wait for pending event handlers, then flush debounced receipt updates."""
        await self._tasks.drain()
        await self._receipts_updated.flush()

    async def close(self) -> None:
        self._receipts_updated.cancel()
        self._tasks.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify_receipts(self) -> None:
        self.context.receipts_updated(PLATFORM, self.receipts)

    def _upsert_in_progress(self, product_id: str, state: TransactionState) -> Transaction:
        transaction_id = virtual_transaction_id(product_id)
        existing = self.pseudo_receipt.find_transaction(transaction_id)
        if isinstance(existing, AppStoreTransaction):
            existing.state = state
            existing.refresh(product_id)
            return existing
        transaction = AppStoreTransaction(
            platform=PLATFORM,
            parent_receipt=self.pseudo_receipt,
            transaction_id=transaction_id,
            state=state,
        )
        transaction.refresh(product_id)
        self.pseudo_receipt.add_transaction(transaction)
        return transaction

    async def _upsert_transaction(
        self, product_id: str, transaction_id: str, state: TransactionState
    ) -> AppStoreTransaction | None:
        receipt = await self._initialize_app_receipt()
        if receipt is None:
            logger.warning(
                "app_store_receipt_unavailable",
                transaction_id=transaction_id,
                product_id=product_id,
            )
            return None
        existing = receipt.find_transaction(transaction_id)
        if isinstance(existing, AppStoreTransaction):
            existing.state = state
            existing.refresh(product_id)
            return existing
        transaction = AppStoreTransaction(
            platform=PLATFORM,
            parent_receipt=receipt,
            transaction_id=transaction_id,
            state=state,
        )
        transaction.refresh(product_id)
        receipt.add_transaction(transaction)
        return transaction

    async def _initialize_app_receipt(self) -> ApplicationReceipt | None:
        if self._receipt is not None:
            return self._receipt
        native = await self._load_app_store_receipt()
        if native is None or not native.app_store_receipt:
            logger.warning("app_store_no_receipt")
            return None
        if self._receipt is None:
            self._receipt = ApplicationReceipt(native, self.need_app_receipt)
        return self._receipt

    async def _load_app_store_receipt(self) -> ApplicationReceiptData | None:
        """Load the receipt from the device; None if the bridge fails or never answers."""
        cached = self.bridge.app_store_receipt
        if cached is not None and cached.app_store_receipt:
            return cached
        result = await bridge_call(
            lambda ok, fail: self.bridge.load_receipts(ok, fail),
            timeout=self.settings.bridge_timeout,
            name="app_store_load_receipts",
        )
        if result is None or not result.ok:
            logger.warning("app_store_receipt_load_failed", timed_out=result is None)
            return None
        return result.value

    async def _initial_receipt(self) -> None:
        await asyncio.sleep(self.settings.receipts_debounce)
        await self._initialize_app_receipt()
        self._receipts_updated.trigger()

    def _add_product(self, valid: ValidProduct, registered: RegisteredProduct) -> Product:
        offer = Offer(
            id=DEFAULT_OFFER_ID,
            product_id=valid.id,
            platform=PLATFORM,
            product_type=registered.type,
            pricing_phases=(
                PricingPhase(
                    price=valid.price,
                    price_micros=valid.price_micros,
                    currency=valid.currency,
                    billing_period=valid.billing_period,
                ),
            ),
        )
        fields = {
            "title": valid.title,
            "description": valid.description,
            "localized_title": valid.title,
            "localized_description": valid.description,
            "localized_price": valid.price,
            "price": valid.price,
            "currency": valid.currency,
            "offers": [offer],
        }
        product = self.get_product(valid.id)
        if product is not None:
            logger.debug("app_store_product_refreshed", product_id=valid.id)
            product.set(fields)
        else:
            product = Product(
                id=valid.id,
                platform=PLATFORM,
                type=registered.type,
                alias=registered.alias,
                group=registered.group,
                events=self.context.product_events,
                **fields,
            )
            self._products.append(product)
        if not product.loaded:
            product.set_state(ProductState.VALID)
        return product

    @staticmethod
    def _product_wire(valid: ValidProduct, registered: RegisteredProduct) -> dict[str, Any]:
        return {
            "id": valid.id,
            "type": registered.type.value,
            "offers": [DEFAULT_OFFER_ID],
            "title": valid.title,
            "description": valid.description,
        }
