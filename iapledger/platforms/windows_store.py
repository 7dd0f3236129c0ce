"""
Windows Store Adapter - placeholder, the platform is not supported yet.

Every operation reports an error so applications registering Windows
products get a clear answer instead of silence.
"""

from iapledger.models.errors import ErrorCode, StoreError, store_error
from iapledger.models.product import Offer, Product, RegisteredProduct
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import Transaction
from iapledger.models.validation import ValidationPayload, ValidationRequestBody
from iapledger.services.adapter import (
    AdditionalData,
    PaymentRequest,
    Platform,
    PlatformFunctionality,
)

PLATFORM = Platform.WINDOWS_STORE.value


class WindowsStoreAdapter:
    id = PLATFORM
    name = "WindowsStore"

    def __init__(self) -> None:
        self.ready = False

    @property
    def products(self) -> list[Product]:
        return []

    @property
    def receipts(self) -> list[Receipt]:
        return []

    @property
    def is_supported(self) -> bool:
        return False

    async def initialize(self) -> StoreError | None:
        return None

    async def load(self, products: list[RegisteredProduct]) -> list[Product | StoreError]:
        return [
            store_error(
                ErrorCode.PRODUCT_NOT_AVAILABLE,
                "Windows Store products are not supported",
                PLATFORM,
                p.id,
            )
            for p in products
        ]

    async def order(self, offer: Offer, additional_data: AdditionalData) -> StoreError | None:
        return store_error(ErrorCode.UNSUPPORTED, "order not supported", PLATFORM, offer.product_id)

    async def finish(self, transaction: Transaction) -> StoreError | None:
        return store_error(ErrorCode.UNSUPPORTED, "finish not supported", PLATFORM)

    async def receipt_validation_body(self, receipt: Receipt) -> ValidationRequestBody | None:
        return None

    async def handle_receipt_validation_response(
        self, receipt: Receipt, payload: ValidationPayload
    ) -> None:
        return None

    async def request_payment(
        self, payment: PaymentRequest, additional_data: AdditionalData
    ) -> Transaction | StoreError | None:
        return store_error(ErrorCode.UNSUPPORTED, "requestPayment not supported", PLATFORM)

    async def manage_subscriptions(self) -> StoreError | None:
        return store_error(ErrorCode.UNSUPPORTED, "manageSubscriptions not supported", PLATFORM)

    def check_support(self, functionality: PlatformFunctionality) -> bool:
        return False

    async def restore_purchases(self) -> None:
        return None

    async def close(self) -> None:
        return None
