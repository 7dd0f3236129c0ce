"""
Product domain model - a sellable item and its lifecycle.

Lifecycle:

    REGISTERED +--> INVALID
               |
               +--> VALID +--> REQUESTED +--> INITIATED +-+
                                                          |
                    ^      +------------------------------+
                    |      |
                    |      +--> APPROVED +--> FINISHED +--> OWNED
                    |                                  |
                    +----------------------------------+

A consumable goes back to VALID once finished. The object accepts any
assignment; adapters are expected to follow the diagram.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from iapledger.services.events import ProductEvents


class ProductState(str, Enum):
    """Product lifecycle states. The value doubles as the event name."""

    REGISTERED = "registered"
    INVALID = "invalid"
    VALID = "valid"
    REQUESTED = "requested"
    INITIATED = "initiated"
    APPROVED = "approved"
    FINISHED = "finished"
    OWNED = "owned"


class ProductType(str, Enum):
    """Product type enumeration."""

    CONSUMABLE = "consumable"
    NON_CONSUMABLE = "non consumable"
    PAID_SUBSCRIPTION = "paid subscription"
    NON_RENEWING_SUBSCRIPTION = "non renewing subscription"
    FREE_SUBSCRIPTION = "free subscription"
    APPLICATION = "application"


class RecurrenceMode(str, Enum):
    """How often a pricing phase repeats."""

    NON_RECURRING = "NON_RECURRING"
    FINITE_RECURRING = "FINITE_RECURRING"
    INFINITE_RECURRING = "INFINITE_RECURRING"


@dataclass(frozen=True)
class PricingPhase:
    """One pricing phase of an offer (e.g. a free trial, then the regular price)."""

    price: str  # Localized, e.g. "$4.99"
    price_micros: int
    currency: str
    billing_period: str | None = None  # ISO 8601 duration, e.g. "P1M"
    billing_cycles: int | None = None
    recurrence_mode: RecurrenceMode | None = None
    payment_mode: str | None = None

    def __post_init__(self) -> None:
        """Validate pricing phase fields."""
        if self.price_micros < 0:
            raise ValueError(f"Price cannot be negative: {self.price_micros}")

    def to_wire(self) -> dict[str, Any]:
        """Serialize using the validator's camelCase keys, omitting unset fields."""
        data: dict[str, Any] = {
            "price": self.price,
            "priceMicros": self.price_micros,
            "currency": self.currency,
            "billingPeriod": self.billing_period,
            "billingCycles": self.billing_cycles,
            "recurrenceMode": self.recurrence_mode.value if self.recurrence_mode else None,
            "paymentMode": self.payment_mode,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class Offer:
    """A purchasable pricing option for a product."""

    id: str
    product_id: str
    platform: str
    product_type: ProductType
    pricing_phases: tuple[PricingPhase, ...] = ()

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "productId": self.product_id,
            "platform": self.platform,
            "productType": self.product_type.value,
            "pricingPhases": [p.to_wire() for p in self.pricing_phases],
        }


_DERIVED_FLAGS = ("valid", "loaded", "can_purchase")


class Product:
    """
    A sellable item.

    The derived flags ``valid``, ``loaded`` and ``can_purchase`` are computed
    from ``state`` and cannot be assigned. ``state`` itself only changes
    through ``set_state`` (or ``set("state", ...)``), which emits an event
    named after the new state.
    """

    def __init__(
        self,
        id: str,
        platform: str,
        type: ProductType = ProductType.CONSUMABLE,
        alias: str | None = None,
        title: str | None = None,
        description: str | None = None,
        localized_title: str | None = None,
        localized_description: str | None = None,
        localized_price: str | None = None,
        price: str | None = None,
        currency: str | None = None,
        group: str | None = None,
        offers: list[Offer] | None = None,
        state: ProductState | str = "",
        events: "ProductEvents | None" = None,
    ) -> None:
        if not id:
            raise ValueError("Product id cannot be empty")
        self.id = id
        self.platform = platform
        self.type = type
        self.alias = alias or id
        self.title = title or localized_title
        self.description = description or localized_description
        self.localized_title = localized_title or title
        self.localized_description = localized_description or description
        self.localized_price = localized_price
        self.price = price
        self.currency = currency
        self.group = group
        self.offers: list[Offer] = list(offers or [])
        self._events = events
        self._state: ProductState | str = ""
        self.set_state(state)

    def __repr__(self) -> str:
        return f"Product(id={self.id!r}, platform={self.platform!r}, state={self._state!r})"

    # ------------------------------------------------------------------
    # State and derived flags
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProductState | str:
        return self._state

    @property
    def valid(self) -> bool | None:
        """None until the backend answered, then False only for INVALID."""
        if not self._state or self._state == ProductState.REGISTERED:
            return None
        return self._state != ProductState.INVALID

    @property
    def loaded(self) -> bool:
        return bool(self._state) and self._state != ProductState.REGISTERED

    @property
    def can_purchase(self) -> bool:
        return self._state == ProductState.VALID

    def set_state(self, new_state: ProductState | str) -> None:
        """Move to ``new_state`` and notify listeners of that state's event."""
        if new_state:
            new_state = ProductState(new_state)
        self._state = new_state or ""
        if self._state and self._events is not None:
            self._events.trigger(self, self._state.value)

    def set(self, fields_or_key: Mapping[str, Any] | str, value: Any = None) -> None:
        """Set one field, or every field of a mapping."""
        if isinstance(fields_or_key, str):
            if fields_or_key == "state":
                self.set_state(value)
            elif fields_or_key in _DERIVED_FLAGS:
                raise AttributeError(f"{fields_or_key} is derived from state and cannot be set")
            else:
                setattr(self, fields_or_key, value)
            return
        for key, item in fields_or_key.items():
            self.set(key, item)

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def get_offer(self, offer_id: str | None = None) -> Offer | None:
        """Find an offer by id, or the first offer when no id is given."""
        if offer_id is None:
            return self.offers[0] if self.offers else None
        return next((o for o in self.offers if o.id == offer_id), None)

    @property
    def pricing(self) -> PricingPhase | None:
        """First pricing phase of the first offer."""
        offer = self.get_offer()
        if offer is None or not offer.pricing_phases:
            return None
        return offer.pricing_phases[0]

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "offers": [o.id for o in self.offers],
            "title": self.title,
            "description": self.description,
        }

    # ------------------------------------------------------------------
    # Event shortcuts
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Callable[["Product"], Any]) -> None:
        self._require_events().register(self.id, event, callback)

    def once(self, event: str, callback: Callable[["Product"], Any]) -> None:
        self._require_events().register(self.id, event, callback, once=True)

    def off(self, callback: Callable[["Product"], Any]) -> None:
        self._require_events().unregister(callback)

    def _require_events(self) -> "ProductEvents":
        if self._events is None:
            raise RuntimeError(f"Product {self.id} is not attached to a store session")
        return self._events


@dataclass(frozen=True)
class RegisteredProduct:
    """A product declared by the application before the backend loads it."""

    id: str
    type: ProductType
    platform: str
    alias: str | None = None
    group: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate registration fields."""
        if not self.id:
            raise ValueError("Product id required")
        if not self.platform:
            raise ValueError("Platform required")
