"""
Append-only transaction ledger.

Reads are ordered newest first by the `timestamp` field at read time;
entries with equal timestamps have no defined relative order.
"""
from decimal import Decimal
from typing import List, Optional

import structlog

from repositories import Repository
from schemas import RevenueSummary, Transaction

logger = structlog.get_logger(__name__)


def _newest_first(transactions: List[Transaction]) -> List[Transaction]:
    return sorted(transactions, key=lambda t: t.timestamp, reverse=True)


class Ledger:
    def __init__(self, store: Repository[Transaction]):
        self.store = store

    def append(self, transaction: Transaction) -> Transaction:
        self.store.put(transaction)
        logger.info(
            "ledger_entry_appended",
            transaction_id=transaction.id,
            type=transaction.type.value,
            amount=str(transaction.amount),
            currency=transaction.currency,
        )
        return transaction

    def list_for(self, identity_id: str) -> List[Transaction]:
        return _newest_first(
            self.store.scan(
                lambda t: identity_id in (t.vendorId, t.userId, t.customerId)
            )
        )

    def list_all(self) -> List[Transaction]:
        return _newest_first(self.store.scan())

    def aggregate_revenue(self, vendor_id: Optional[str] = None) -> RevenueSummary:
        entries = self.store.scan(
            None if vendor_id is None else (lambda t: t.vendorId == vendor_id)
        )
        zero = Decimal("0.00")
        summary = RevenueSummary()
        for t in entries:
            summary.count += 1
            summary.grossTotal += t.amount
            # entries recorded before the fee model carry no split
            summary.vendorNetTotal += t.vendorAmount if t.vendorAmount is not None else zero
            summary.platformFeeTotal += t.platformFee if t.platformFee is not None else zero
        return summary
