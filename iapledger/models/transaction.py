"""
Transaction domain model - one purchase attempt, whatever backend produced it.

States: INITIATED -> (PENDING) -> APPROVED -> FINISHED. UNKNOWN_STATE is
kept verbatim when a backend reports something this package cannot map.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from iapledger.models.receipt import Receipt

VIRTUAL_TRANSACTION_PREFIX = "virtual."


def virtual_transaction_id(product_id: str) -> str:
    """Placeholder id used until the backend assigns a real one."""
    return f"{VIRTUAL_TRANSACTION_PREFIX}{product_id}"


class TransactionState(str, Enum):
    """Transaction state enumeration."""

    INITIATED = "initiated"
    PENDING = "pending"
    APPROVED = "approved"
    FINISHED = "finished"
    UNKNOWN_STATE = ""


class RenewalIntent(str, Enum):
    """Whether a subscription is set to renew."""

    RENEW = "Renew"
    LAPSE = "Lapse"


@dataclass(frozen=True)
class TransactionProduct:
    """A product (and optional offer) covered by a transaction."""

    id: str
    offer_id: str | None = None


@dataclass(eq=False)
class Transaction:
    """
    A purchase record inside a receipt.

    Equality is identity: two objects describing the same backend
    transaction are still two transactions until an adapter merges them.
    """

    platform: str
    parent_receipt: "Receipt"
    transaction_id: str = ""
    state: TransactionState = TransactionState.UNKNOWN_STATE
    products: list[TransactionProduct] = field(default_factory=list)
    purchase_id: str | None = None
    purchase_date: datetime | None = None
    expiration_date: datetime | None = None
    last_renewal_date: datetime | None = None
    renewal_intent: RenewalIntent | None = None
    renewal_intent_change_date: datetime | None = None
    is_acknowledged: bool | None = None
    is_consumed: bool | None = None
    is_pending: bool | None = None
    amount_micros: int | None = None
    currency: str | None = None

    def __repr__(self) -> str:
        return (
            f"Transaction(platform={self.platform!r}, transaction_id={self.transaction_id!r}, "
            f"state={self.state.value!r})"
        )

    @property
    def is_virtual(self) -> bool:
        return self.transaction_id.startswith(VIRTUAL_TRANSACTION_PREFIX)

    @property
    def product_id(self) -> str | None:
        """Id of the first product, which is the one most backends report."""
        return self.products[0].id if self.products else None
