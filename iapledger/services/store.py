"""
Store Session - the context object adapters, the Validator and the
application share.

One Store owns:
- the registered products and the adapters that load them
- product state events and the transaction/receipt callbacks
- the Validator, its configuration and the application username

Adapters report back through receipts_updated / products_updated / error.
The store turns transaction state changes into "approved", "pending" and
"finished" callbacks and keeps product states in step with them.
"""

import weakref
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

from structlog import get_logger

from iapledger.config import Settings, get_settings
from iapledger.models.errors import ErrorCode, StoreError, store_error
from iapledger.models.product import (
    Offer,
    Product,
    ProductState,
    ProductType,
    RegisteredProduct,
)
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import Transaction, TransactionState
from iapledger.models.validation import UnverifiedReceipt, VerifiedReceipt
from iapledger.services.adapter import (
    AdditionalData,
    Adapter,
    Adapters,
    PaymentRequest,
    PlatformFunctionality,
)
from iapledger.services.events import Callbacks, ProductEvents
from iapledger.services.timing import Debouncer
from iapledger.services.transport import ValidationTransport, ValidatorConfig
from iapledger.services.validator import ValidationCache, Validator

logger = get_logger(__name__)

_PRODUCT_STATE_FOR: dict[TransactionState, ProductState] = {
    TransactionState.INITIATED: ProductState.INITIATED,
    TransactionState.PENDING: ProductState.INITIATED,
    TransactionState.APPROVED: ProductState.APPROVED,
    TransactionState.FINISHED: ProductState.FINISHED,
}


class When:
    """Chainable listener registration: ``store.when().approved(f).verified(g)``."""

    def __init__(self, store: "Store") -> None:
        self._store = store

    def approved(self, callback: Callable[[Transaction], Any]) -> "When":
        self._store.approved_callbacks.push(callback)
        return self

    def pending(self, callback: Callable[[Transaction], Any]) -> "When":
        self._store.pending_callbacks.push(callback)
        return self

    def finished(self, callback: Callable[[Transaction], Any]) -> "When":
        self._store.finished_callbacks.push(callback)
        return self

    def verified(self, callback: Callable[[VerifiedReceipt], Any]) -> "When":
        self._store.verified_callbacks.push(callback)
        return self

    def unverified(self, callback: Callable[[UnverifiedReceipt], Any]) -> "When":
        self._store.unverified_callbacks.push(callback)
        return self

    def receipt_updated(self, callback: Callable[[Receipt], Any]) -> "When":
        self._store.receipt_updated_callbacks.push(callback)
        return self

    def product_updated(self, callback: Callable[[Product], Any]) -> "When":
        self._store.product_updated_callbacks.push(callback)
        return self


class Store:
    """
    A purchase session.

    Usage:
        store = Store(validator="https://validator.example.com/v1/validate")
        store.add_adapter(GooglePlayAdapter(store, bridge))
        store.register(RegisteredProduct("sku1", ProductType.CONSUMABLE, "android-playstore"))
        store.when().approved(store.verify).verified(lambda r: r.finish())
        await store.initialize()
    """

    def __init__(
        self,
        validator: ValidatorConfig = None,
        application_username: str | Callable[[], str | None] | None = None,
        transport: ValidationTransport | None = None,
        cache: ValidationCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.validator: ValidatorConfig = validator or self.settings.validator_url
        self.application_username = application_username

        self.adapters = Adapters()
        self.product_events = ProductEvents()
        self.registered_products: list[RegisteredProduct] = []

        self.verified_callbacks: Callbacks[VerifiedReceipt] = Callbacks("verified")
        self.unverified_callbacks: Callbacks[UnverifiedReceipt] = Callbacks("unverified")
        self.receipt_updated_callbacks: Callbacks[Receipt] = Callbacks("receipt_updated")
        self.product_updated_callbacks: Callbacks[Product] = Callbacks("product_updated")
        self.approved_callbacks: Callbacks[Transaction] = Callbacks("approved")
        self.pending_callbacks: Callbacks[Transaction] = Callbacks("pending")
        self.finished_callbacks: Callbacks[Transaction] = Callbacks("finished")
        self.error_callbacks: Callbacks[StoreError] = Callbacks("error")

        self._validator = Validator(self, transport=transport, cache=cache, settings=self.settings)
        self._validation = Debouncer(
            self.settings.validation_debounce, self._validator.run, name="validation"
        )
        self._last_states: weakref.WeakKeyDictionary[Transaction, TransactionState] = (
            weakref.WeakKeyDictionary()
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def add_adapter(self, adapter: Adapter) -> None:
        self.adapters.add(adapter)
        logger.debug("adapter_added", platform=adapter.id, adapter=adapter.name)

    def register(self, products: RegisteredProduct | Iterable[RegisteredProduct]) -> None:
        """Declare products to load on initialize()."""
        if isinstance(products, RegisteredProduct):
            products = [products]
        for product in products:
            if any(
                p.id == product.id and p.platform == product.platform
                for p in self.registered_products
            ):
                continue
            self.registered_products.append(product)

    async def initialize(self, platforms: Iterable[str] | None = None) -> list[StoreError]:
        """
        Initialize adapters and load their registered products.

        Args:
            platforms: Limit to these platforms (default: every added adapter)

        Returns:
            Errors reported along the way, also sent to the error callbacks
        """
        wanted = set(platforms) if platforms is not None else None
        errors: list[StoreError] = []

        for adapter in self.adapters:
            if wanted is not None and adapter.id not in wanted:
                continue

            logger.info("adapter_initializing", platform=adapter.id)
            error = await adapter.initialize()
            if error is not None:
                errors.append(error)
                self.error(error)
                continue
            adapter.ready = True

            registered = [p for p in self.registered_products if p.platform == adapter.id]
            if not registered:
                continue
            for result in await adapter.load(registered):
                if isinstance(result, StoreError):
                    errors.append(result)
                    self.error(result)

        logger.info("store_initialized", errors=len(errors))
        return errors

    def get_application_username(self) -> str | None:
        if callable(self.application_username):
            return self.application_username()
        return self.application_username

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def products(self) -> list[Product]:
        return [p for adapter in self.adapters for p in adapter.products]

    @property
    def local_receipts(self) -> list[Receipt]:
        return [r for adapter in self.adapters for r in adapter.receipts]

    @property
    def verified_receipts(self) -> list[VerifiedReceipt]:
        return self._validator.verified_receipts

    def get(self, product_id: str, platform: str | None = None) -> Product | None:
        """Find a loaded product by id or alias."""
        for product in self.products:
            if platform is not None and product.platform != platform:
                continue
            if product_id in (product.id, product.alias):
                return product
        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def order(
        self, offer: Offer, additional_data: AdditionalData | None = None
    ) -> StoreError | None:
        """Start a purchase. Progress comes back through the transaction callbacks."""
        adapter = self.adapters.find(offer.platform)
        if adapter is None:
            return store_error(
                ErrorCode.PURCHASE,
                f"No adapter for platform {offer.platform}",
                platform=offer.platform,
                product_id=offer.product_id,
            )

        data = additional_data or AdditionalData()
        if data.application_username is None:
            data = replace(data, application_username=self.get_application_username())

        product = self.get(offer.product_id, offer.platform)
        if product is not None and product.can_purchase:
            product.set_state(ProductState.REQUESTED)

        logger.info("order_placed", platform=offer.platform, product_id=offer.product_id)
        error = await adapter.order(offer, data)
        if error is not None:
            logger.warning(
                "order_failed",
                platform=offer.platform,
                product_id=offer.product_id,
                code=error.code.name,
                error=error.message,
            )
            if product is not None and product.state == ProductState.REQUESTED:
                product.set_state(ProductState.VALID)
        return error

    async def finish(self, target: Receipt | Transaction | VerifiedReceipt) -> None:
        """Finish a transaction, or every transaction of a (verified) receipt."""
        if isinstance(target, VerifiedReceipt):
            transactions = list(target.source_receipt.transactions)
        elif isinstance(target, Receipt):
            transactions = list(target.transactions)
        else:
            transactions = [target]

        for transaction in transactions:
            adapter = self.adapters.find(transaction.platform)
            if adapter is None:
                continue
            error = await adapter.finish(transaction)
            if error is not None:
                self.error(error)

    def verify(self, target: Receipt | Transaction) -> None:
        """Queue for validation; the validator runs shortly after the last call."""
        self._validator.add(target)
        self._validation.trigger()

    async def run_validation(self) -> None:
        """Run any scheduled validation now and wait for it."""
        await self._validation.flush()

    async def request_payment(
        self,
        payment: PaymentRequest,
        platform: str,
        additional_data: AdditionalData | None = None,
    ) -> Transaction | StoreError | None:
        adapter = self.adapters.find(platform)
        if adapter is None or not adapter.check_support("requestPayment"):
            return store_error(
                ErrorCode.PAYMENT_NOT_ALLOWED,
                f"Payment requests are not supported on {platform}",
                platform=platform,
            )
        data = additional_data or AdditionalData(
            application_username=self.get_application_username()
        )
        return await adapter.request_payment(payment, data)

    async def manage_subscriptions(self, platform: str | None = None) -> StoreError | None:
        adapter = self._adapter_supporting("manageSubscriptions", platform)
        if adapter is None:
            return store_error(ErrorCode.UNSUPPORTED, "Subscription management is not available")
        return await adapter.manage_subscriptions()

    async def restore_purchases(self) -> None:
        for adapter in self.adapters:
            if adapter.ready:
                await adapter.restore_purchases()

    async def close(self) -> None:
        """Cancel pending validation and stop adapter timers."""
        self._validation.cancel()
        for adapter in self.adapters:
            await adapter.close()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def when(self) -> When:
        return When(self)

    def on(
        self, product: str, event: ProductState | str, callback: Callable[[Product], Any]
    ) -> None:
        """Listen to a product state event by product id, alias, or "product" for all."""
        self.product_events.register(product, ProductState(event).value, callback)

    def once(
        self, product: str, event: ProductState | str, callback: Callable[[Product], Any]
    ) -> None:
        self.product_events.register(product, ProductState(event).value, callback, once=True)

    def off(self, callback: Callable[..., Any]) -> None:
        self.product_events.unregister(callback)
        for callbacks in (
            self.verified_callbacks,
            self.unverified_callbacks,
            self.receipt_updated_callbacks,
            self.product_updated_callbacks,
            self.approved_callbacks,
            self.pending_callbacks,
            self.finished_callbacks,
            self.error_callbacks,
        ):
            callbacks.remove(callback)

    def on_error(self, callback: Callable[[StoreError], Any]) -> None:
        self.error_callbacks.push(callback)

    # ------------------------------------------------------------------
    # Adapter listener
    # ------------------------------------------------------------------

    def receipts_updated(self, platform: str, receipts: list[Receipt]) -> None:
        logger.debug("receipts_updated", platform=platform, receipts=len(receipts))
        for receipt in receipts:
            for transaction in receipt.transactions:
                self._transaction_updated(transaction)
            self.receipt_updated_callbacks.trigger(receipt)

    def products_updated(self, platform: str, products: list[Product]) -> None:
        logger.debug("products_updated", platform=platform, products=len(products))
        for product in products:
            self.product_updated_callbacks.trigger(product)

    def error(self, error: StoreError) -> None:
        logger.warning(
            "store_error",
            code=error.code.name,
            platform=error.platform,
            product_id=error.product_id,
            error=error.message,
        )
        self.error_callbacks.trigger(error)

    def _transaction_updated(self, transaction: Transaction) -> None:
        if self._last_states.get(transaction) == transaction.state:
            return
        self._last_states[transaction] = transaction.state
        logger.debug(
            "transaction_state_changed",
            platform=transaction.platform,
            transaction_id=transaction.transaction_id,
            state=transaction.state.value,
        )

        if transaction.state == TransactionState.APPROVED:
            self.approved_callbacks.trigger(transaction)
        elif transaction.state == TransactionState.PENDING:
            self.pending_callbacks.trigger(transaction)
        elif transaction.state == TransactionState.FINISHED:
            self.finished_callbacks.trigger(transaction)

        self._sync_products(transaction)

    def _sync_products(self, transaction: Transaction) -> None:
        target = _PRODUCT_STATE_FOR.get(transaction.state)
        if target is None:
            return
        for item in transaction.products:
            product = self.get(item.id, transaction.platform)
            if product is None:
                continue
            product.set_state(target)
            if target == ProductState.FINISHED:
                # Consumables can be bought again
                if product.type == ProductType.CONSUMABLE:
                    product.set_state(ProductState.VALID)
                else:
                    product.set_state(ProductState.OWNED)

    def _adapter_supporting(
        self, functionality: PlatformFunctionality, platform: str | None
    ) -> Adapter | None:
        for adapter in self.adapters:
            if platform is not None and adapter.id != platform:
                continue
            if adapter.ready and adapter.check_support(functionality):
                return adapter
        return None
