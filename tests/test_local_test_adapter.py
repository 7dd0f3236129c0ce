"""
Tests for the local test platform.
"""

import pytest

from iapledger.models.errors import ErrorCode, StoreError
from iapledger.models.product import ProductState, ProductType
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import RenewalIntent, TransactionState
from iapledger.platforms.local_test import (
    ACTIVE_SUBSCRIPTION,
    RENEWS_EVERY,
    LocalTestAdapter,
)
from iapledger.services.adapter import AdditionalData, PaymentRequest

PLATFORM = "test"


@pytest.fixture
def make_adapter(store_factory, test_settings):
    """Factory for a local test adapter answering prompts with ``answer``."""

    def _create(answer="Y"):
        store = store_factory()
        adapter = LocalTestAdapter(store, prompt=lambda message: answer, settings=test_settings)
        store.add_adapter(adapter)
        return store, adapter

    return _create


async def _loaded(adapter, registered_factory, product_id, product_type):
    [product] = await adapter.load([registered_factory(product_id, PLATFORM, product_type)])
    return product


async def _consumable(adapter, registered_factory):
    return await _loaded(adapter, registered_factory, "test-consumable", ProductType.CONSUMABLE)


class TestLoad:
    """Tests for the mock catalogue."""

    @pytest.mark.asyncio
    async def test_known_product(self, make_adapter, registered_factory):
        _, adapter = make_adapter()

        product = await _consumable(adapter, registered_factory)

        assert product.state == ProductState.VALID
        assert product.price == "$4.99"
        assert product.get_offer().id == "test-consumable-offer"

    @pytest.mark.asyncio
    async def test_type_mismatch_is_not_available(self, make_adapter, registered_factory):
        _, adapter = make_adapter()

        result = await _loaded(
            adapter, registered_factory, "test-consumable", ProductType.NON_CONSUMABLE
        )

        assert isinstance(result, StoreError)
        assert result.code == ErrorCode.PRODUCT_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_loading_twice_keeps_one_product(self, make_adapter, registered_factory):
        _, adapter = make_adapter()

        first = await _consumable(adapter, registered_factory)
        second = await _consumable(adapter, registered_factory)

        assert first is second
        assert adapter.products == [first]

    @pytest.mark.asyncio
    async def test_subscription_offer_recurs(self, make_adapter, registered_factory):
        _, adapter = make_adapter()

        product = await _loaded(
            adapter, registered_factory, "test-subscription", ProductType.PAID_SUBSCRIPTION
        )

        assert product.pricing.billing_period == "P1M"


class TestOrder:
    """Tests for the purchase prompt."""

    @pytest.mark.asyncio
    async def test_confirmed_order_creates_approved_receipt(
        self, make_adapter, registered_factory
    ):
        _, adapter = make_adapter("y")
        product = await _consumable(adapter, registered_factory)

        assert await adapter.order(product.get_offer(), AdditionalData()) is None

        [receipt] = adapter.receipts
        transaction = receipt.transactions[0]
        assert transaction.state == TransactionState.APPROVED
        assert transaction.product_id == "test-consumable"
        assert transaction.transaction_id.startswith("test-consumable-")
        assert [p.id for p in adapter.verified_purchases] == ["test-consumable"]

    @pytest.mark.asyncio
    async def test_error_answer(self, make_adapter, registered_factory):
        _, adapter = make_adapter("E")
        product = await _consumable(adapter, registered_factory)

        error = await adapter.order(product.get_offer(), AdditionalData())

        assert error.code == ErrorCode.PURCHASE
        assert adapter.receipts == []

    @pytest.mark.asyncio
    async def test_other_answer_cancels(self, make_adapter, registered_factory):
        _, adapter = make_adapter(None)
        product = await _consumable(adapter, registered_factory)

        error = await adapter.order(product.get_offer(), AdditionalData())

        assert error.code == ErrorCode.PAYMENT_CANCELLED

    @pytest.mark.asyncio
    async def test_async_prompt(self, store_factory, test_settings, registered_factory):
        async def prompt(message):
            return "Y"

        adapter = LocalTestAdapter(store_factory(), prompt=prompt, settings=test_settings)
        product = await _consumable(adapter, registered_factory)

        assert await adapter.order(product.get_offer(), AdditionalData()) is None

    @pytest.mark.asyncio
    async def test_failing_product(self, make_adapter, registered_factory):
        _, adapter = make_adapter()
        product = await _loaded(
            adapter, registered_factory, "test-consumable-fail", ProductType.CONSUMABLE
        )

        error = await adapter.order(product.get_offer(), AdditionalData())

        assert error.code == ErrorCode.PURCHASE
        assert error.message == "Purchase failed."


class TestFinishAndVerify:
    """Tests for finishing and local verification."""

    @pytest.mark.asyncio
    async def test_finish_consumes_consumables(self, make_adapter, registered_factory):
        _, adapter = make_adapter()
        product = await _consumable(adapter, registered_factory)
        await adapter.order(product.get_offer(), AdditionalData())
        transaction = adapter.receipts[0].transactions[0]

        assert await adapter.finish(transaction) is None

        assert transaction.state == TransactionState.FINISHED
        assert transaction.is_acknowledged is True
        assert transaction.is_consumed is True

    @pytest.mark.asyncio
    async def test_verify_receipt_returns_session_purchases(
        self, make_adapter, registered_factory
    ):
        _, adapter = make_adapter()
        product = await _consumable(adapter, registered_factory)
        await adapter.order(product.get_offer(), AdditionalData())

        payload = await adapter.verify_receipt(adapter.receipts[0])

        assert payload.ok is True
        assert payload.data.id == "test-consumable"
        assert payload.data.transaction.type == PLATFORM
        assert [p.id for p in payload.data.collection] == ["test-consumable"]

    @pytest.mark.asyncio
    async def test_verify_empty_receipt_fails(self, make_adapter):
        _, adapter = make_adapter()

        payload = await adapter.verify_receipt(Receipt(PLATFORM))

        assert payload.ok is False
        assert payload.code == ErrorCode.VERIFICATION_FAILED


class TestActiveSubscription:
    """Tests for the already-owned, auto-renewing subscription."""

    def test_reported_once(self, make_adapter, recorder):
        store, adapter = make_adapter()
        store.when().approved(recorder)

        receipt = adapter.report_active_subscription()

        assert receipt is not None
        assert adapter.report_active_subscription() is None
        transaction = receipt.transactions[0]
        assert transaction.transaction_id == "test-active-subscription-transaction-1"
        assert transaction.product_id == ACTIVE_SUBSCRIPTION.id
        assert transaction.renewal_intent == RenewalIntent.RENEW
        assert transaction.is_acknowledged is True
        assert recorder.values == [transaction]

    def test_renewal_extends_expiry(self, make_adapter):
        _, adapter = make_adapter()
        receipt = adapter.report_active_subscription()
        first = receipt.transactions[0]

        renewal = adapter.renew_active_subscription(receipt)

        assert renewal.transaction_id == "test-active-subscription-transaction-2"
        assert renewal.is_acknowledged is False
        assert renewal.purchase_date == first.purchase_date
        assert renewal.last_renewal_date == first.purchase_date + RENEWS_EVERY
        assert renewal.expiration_date == first.purchase_date + RENEWS_EVERY * 2
        assert receipt.latest_transaction is renewal
        [purchase] = adapter.verified_purchases
        assert purchase.expiry_date == int(renewal.expiration_date.timestamp() * 1000)


class TestPayments:
    """Tests for mock payment requests."""

    @pytest.mark.asyncio
    async def test_declined_payment_returns_nothing(self, make_adapter):
        _, adapter = make_adapter("no")
        payment = PaymentRequest(product_ids=("item",), amount_micros=1_000_000, currency="USD")

        assert await adapter.request_payment(payment, AdditionalData()) is None
        assert adapter.receipts == []

    @pytest.mark.asyncio
    async def test_error_answer(self, make_adapter):
        _, adapter = make_adapter("E")
        payment = PaymentRequest(product_ids=("item",), amount_micros=1_000_000, currency="USD")

        error = await adapter.request_payment(payment, AdditionalData())

        assert error.code == ErrorCode.PAYMENT_NOT_ALLOWED
