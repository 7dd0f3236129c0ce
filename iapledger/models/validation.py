"""
Validation Models - wire shapes exchanged with the receipt validator, and the
verified view built from its answers.

Request bodies and response payloads are pydantic models serialized with
their camelCase aliases. VerifiedReceipt is only ever created or updated by
the Validator.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from iapledger.models.errors import ErrorCode
from iapledger.models.product import Offer
from iapledger.models.receipt import Receipt

if TYPE_CHECKING:
    from iapledger.services.store import Store


class WireModel(BaseModel):
    """Base for wire models: accepts both field names and aliases."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict using aliases, with unset optional fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# Request
# ============================================================================


class PricingPhaseBody(WireModel):
    """Pricing phase as sent to the validator."""

    price: str | None = None
    price_micros: int = Field(..., alias="priceMicros")
    currency: str


class OfferBody(WireModel):
    """Offer as sent to the validator."""

    id: str
    pricing_phases: list[PricingPhaseBody] = Field(default_factory=list, alias="pricingPhases")

    @classmethod
    def from_offer(cls, offer: Offer) -> "OfferBody":
        return cls(
            id=offer.id,
            pricing_phases=[
                PricingPhaseBody(price=p.price, price_micros=p.price_micros, currency=p.currency)
                for p in offer.pricing_phases
            ],
        )


class RequestTransaction(WireModel):
    """Platform-specific transaction data; only ``type`` and ``id`` are common."""

    type: str
    id: str | None = None


class RequestAdditionalData(WireModel):
    application_username: str | None = Field(None, alias="applicationUsername")


class ValidationRequestBody(WireModel):
    """POST body sent to the receipt validator."""

    id: str
    type: str
    products: list[dict[str, Any]] = Field(default_factory=list)
    offers: list[OfferBody] | None = None
    transaction: RequestTransaction
    additional_data: RequestAdditionalData | None = Field(None, alias="additionalData")
    device: dict[str, Any] | None = None
    currency: str | None = None
    price_micros: int | None = Field(None, alias="priceMicros")
    intro_price_micros: int | None = Field(None, alias="introPriceMicros")


# ============================================================================
# Response
# ============================================================================


class VerifiedPurchase(WireModel):
    """Server-confirmed state of one purchased product. Dates are epoch milliseconds."""

    id: str
    purchase_date: int | None = Field(None, alias="purchaseDate")
    expiry_date: int | None = Field(None, alias="expiryDate")
    is_expired: bool | None = Field(None, alias="isExpired")
    renewal_intent: str | None = Field(None, alias="renewalIntent")
    renewal_intent_change_date: int | None = Field(None, alias="renewalIntentChangeDate")
    last_renewal_date: int | None = Field(None, alias="lastRenewalDate")
    cancelation_reason: str | None = Field(None, alias="cancelationReason")
    is_billing_retry_period: bool | None = Field(None, alias="isBillingRetryPeriod")
    is_trial_period: bool | None = Field(None, alias="isTrialPeriod")
    is_intro_period: bool | None = Field(None, alias="isIntroPeriod")


class VerifiedTransaction(WireModel):
    """Native transaction echoed back by the validator; ``type`` names the platform."""

    type: str


class SuccessData(WireModel):
    id: str
    latest_receipt: bool
    transaction: VerifiedTransaction
    collection: list[VerifiedPurchase] | None = None
    warning: str | None = None


class SuccessPayload(WireModel):
    ok: Literal[True]
    data: SuccessData


class ErrorPayload(WireModel):
    ok: Literal[False]
    code: int | None = None
    message: str = ""
    data: dict[str, Any] | None = None


ValidationPayload = SuccessPayload | ErrorPayload

_payload_adapter: TypeAdapter[ValidationPayload] = TypeAdapter(ValidationPayload)


def parse_payload(raw: object) -> ValidationPayload:
    """
    Check the validator response envelope and parse it.

    ``ok`` must be a real boolean; anything else (or a body whose data does
    not match the envelope) raises ValueError.
    """
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, dict) or not isinstance(raw.get("ok"), bool):
        raise ValueError("Validator response has no boolean 'ok' field")
    return _payload_adapter.validate_python(raw)


def bad_response_payload(raw: object) -> ErrorPayload:
    """Error payload standing in for a response that failed the envelope check."""
    latest_receipt = None
    if isinstance(raw, dict) and isinstance(raw.get("data"), dict):
        latest_receipt = raw["data"].get("latest_receipt")
    return ErrorPayload(
        ok=False,
        code=ErrorCode.BAD_RESPONSE,
        message="Validator responded with invalid data",
        data={"latest_receipt": latest_receipt},
    )


# ============================================================================
# Verified / unverified receipts
# ============================================================================


class VerifiedReceipt:
    """
    Server-confirmed projection of a product, keyed by (platform, id).

    Only ``set`` mutates it; calling ``set`` again with the same receipt and
    data leaves it untouched.
    """

    def __init__(self, receipt: Receipt, data: SuccessData, store: "Store | None" = None) -> None:
        self.platform = receipt.platform
        self.id = data.id
        self._store = store
        self._data: SuccessData | None = None
        self.source_receipt = receipt
        self.collection: list[VerifiedPurchase] = []
        self.latest_receipt = False
        self.native_transactions: list[VerifiedTransaction] = []
        self.warning: str | None = None
        self.validation_date = datetime.now(UTC)
        self.set(receipt, data)

    def __repr__(self) -> str:
        return f"VerifiedReceipt(platform={self.platform!r}, id={self.id!r})"

    def set(self, receipt: Receipt, data: SuccessData) -> None:
        """Update from a new validation response."""
        if receipt is self.source_receipt and data == self._data:
            return
        self._data = data
        self.source_receipt = receipt
        self.collection = list(data.collection or [])
        self.latest_receipt = data.latest_receipt
        self.native_transactions = [data.transaction]
        self.warning = data.warning
        self.validation_date = datetime.now(UTC)

    @property
    def last_purchase(self) -> VerifiedPurchase | None:
        """Most recent purchase in the collection."""
        dated = [p for p in self.collection if p.purchase_date is not None]
        if not dated:
            return self.collection[0] if self.collection else None
        return max(dated, key=lambda p: p.purchase_date or 0)

    def is_expired(self, product_id: str) -> bool:
        """True when the collection reports the product as expired."""
        for purchase in self.collection:
            if purchase.id != product_id:
                continue
            if purchase.is_expired is not None:
                return purchase.is_expired
            if purchase.expiry_date is not None:
                return purchase.expiry_date < datetime.now(UTC).timestamp() * 1000
        return False

    async def finish(self) -> None:
        """Finish every transaction of the source receipt."""
        if self._store is None:
            raise RuntimeError("Verified receipt is not attached to a store session")
        await self._store.finish(self)


@dataclass(frozen=True)
class UnverifiedReceipt:
    """A receipt the validator refused, with the reason."""

    receipt: Receipt
    payload: ErrorPayload
