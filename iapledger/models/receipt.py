"""
Receipt aggregate - the ordered transactions of one backend session.
"""

from iapledger.models.transaction import Transaction, virtual_transaction_id


class Receipt:
    """
    Ordered collection of transactions from one backend.

    Insertion order matters: the latest transaction is the last one.
    Receipts compare and hash by identity, which is what the validation
    queue relies on.
    """

    def __init__(self, platform: str, transactions: list[Transaction] | None = None) -> None:
        self.platform = platform
        self.transactions: list[Transaction] = list(transactions or [])

    def __repr__(self) -> str:
        ids = [t.transaction_id for t in self.transactions]
        return f"{type(self).__name__}(platform={self.platform!r}, transactions={ids!r})"

    @property
    def key(self) -> str | None:
        """Backend-specific identifier, overridden by platform receipts."""
        return None

    @property
    def latest_transaction(self) -> Transaction | None:
        return self.transactions[-1] if self.transactions else None

    def has_transaction(self, transaction: Transaction) -> bool:
        return any(t is transaction for t in self.transactions)

    def find_transaction(self, transaction_id: str) -> Transaction | None:
        return next((t for t in self.transactions if t.transaction_id == transaction_id), None)

    def add_transaction(self, transaction: Transaction) -> None:
        if transaction.parent_receipt is not self:
            raise ValueError("Transaction belongs to another receipt")
        if not self.has_transaction(transaction):
            self.transactions.append(transaction)

    def remove_transaction(self, transaction_id: str) -> None:
        self.transactions = [t for t in self.transactions if t.transaction_id != transaction_id]

    def remove_virtual_transaction(self, product_id: str) -> bool:
        """Drop the placeholder transaction of a product. Returns True if one was removed."""
        before = len(self.transactions)
        self.remove_transaction(virtual_transaction_id(product_id))
        return len(self.transactions) != before
