"""
IAP Ledger - in-app purchase receipt validation and reconciliation.
"""

from iapledger.models.errors import ErrorCode, StoreError
from iapledger.models.product import Product, ProductState, ProductType, RegisteredProduct
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import Transaction, TransactionState
from iapledger.models.validation import UnverifiedReceipt, VerifiedReceipt
from iapledger.observability.logging import setup_logging
from iapledger.services.adapter import Platform
from iapledger.services.store import Store
from iapledger.services.transport import ValidatorTarget
from iapledger.services.validator import Validator

__version__ = "0.1.0"

__all__ = [
    "ErrorCode",
    "Platform",
    "Product",
    "ProductState",
    "ProductType",
    "Receipt",
    "RegisteredProduct",
    "Store",
    "StoreError",
    "Transaction",
    "TransactionState",
    "UnverifiedReceipt",
    "Validator",
    "ValidatorTarget",
    "VerifiedReceipt",
    "setup_logging",
]
