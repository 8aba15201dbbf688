"""
LEDGER CORE - AGGREGATION CALCULATOR

Folds every transaction of one owner (client or employee) into the summary
stored on the owner record.

LOCKED RULES:
- total_pcs / total_net_wt / total_inch_ibr / total_gold = SUM(total.*)
- total_gold_bar_weight / total_gold_bar_amount = SUM(gold_bar.*)
- closing_gold_balance / closing_cash_balance = closing_balance of the LAST
  transaction in chronological order (not summed)
- last_transaction_date = date of the last transaction, None when empty
- Missing fields count as zero

The fold only accepts ChronologicalTransactions, so "last" always means
"most recent" (date, then time, then creation instant).
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from pydantic import BaseModel

from core.ledger_precision import (
    to_decimal, to_int, safe_add,
    round_weight, weight_to_float, amount_to_float,
    WEIGHT_QUANTIZE
)

SUMMARY_FIELDS = (
    "total_pcs",
    "total_net_wt",
    "total_inch_ibr",
    "total_gold",
    "total_gold_bar_weight",
    "total_gold_bar_amount",
    "closing_gold_balance",
    "closing_cash_balance",
    "last_transaction_date",
)

TOTAL_FIELDS = ("pcs", "net_wt", "inch_ibr", "gold")


class OrderingError(ValueError):
    """Raised when transactions are not in chronological order"""
    pass


def chronological_key(txn: Dict[str, Any]) -> Tuple[str, str, datetime, str]:
    """Sort key: date, time, created_at, then storage id as a tie-breaker."""
    return (
        txn.get("date") or "",
        txn.get("time") or "",
        txn.get("created_at") or datetime.min,
        str(txn.get("_id", "")),
    )


class ChronologicalTransactions(Sequence):
    """
    Immutable sequence of transaction documents, oldest first.

    Construction verifies the ordering; use from_unsorted() when the input
    comes straight from an unordered fetch.
    """

    def __init__(self, transactions: Iterable[Dict[str, Any]] = ()):
        items = tuple(transactions)
        keys = [chronological_key(t) for t in items]
        for position in range(1, len(keys)):
            if keys[position] < keys[position - 1]:
                raise OrderingError(
                    f"Transaction at position {position} "
                    f"({items[position].get('transaction_id')}) is older than its predecessor"
                )
        self._items = items

    @classmethod
    def from_sorted(cls, transactions: Iterable[Dict[str, Any]]) -> "ChronologicalTransactions":
        return cls(transactions)

    @classmethod
    def from_unsorted(cls, transactions: Iterable[Dict[str, Any]]) -> "ChronologicalTransactions":
        return cls(sorted(transactions, key=chronological_key))

    def __getitem__(self, index):
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"ChronologicalTransactions({len(self._items)} transactions)"


class OwnerSummary(BaseModel):
    """Derived ledger fields stored on a client/employee record"""
    total_pcs: int = 0
    total_net_wt: float = 0.0
    total_inch_ibr: float = 0.0
    total_gold: float = 0.0
    total_gold_bar_weight: float = 0.0
    total_gold_bar_amount: float = 0.0
    closing_gold_balance: float = 0.0
    closing_cash_balance: float = 0.0
    last_transaction_date: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return self.dict()

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "OwnerSummary":
        """Read the stored summary subset off an owner record."""
        stored = {field: doc[field] for field in SUMMARY_FIELDS if doc.get(field) is not None}
        return cls(**stored)


def aggregate(transactions: ChronologicalTransactions) -> OwnerSummary:
    """
    Reduce an owner's transactions into an OwnerSummary.

    Pure and deterministic. Sums are order-independent; closing balances
    and last_transaction_date come from the last element.
    """
    if not isinstance(transactions, ChronologicalTransactions):
        raise TypeError(
            "aggregate() requires ChronologicalTransactions; "
            "wrap the input with ChronologicalTransactions.from_unsorted()"
        )

    if not transactions:
        return OwnerSummary()

    total_pcs = 0
    total_net_wt = Decimal('0')
    total_inch_ibr = Decimal('0')
    total_gold = Decimal('0')
    gold_bar_weight = Decimal('0')
    gold_bar_amount = Decimal('0')
    closing_gold = Decimal('0')
    closing_cash = Decimal('0')

    for txn in transactions:
        total = txn.get("total") or {}
        total_pcs += to_int(total.get("pcs"))
        total_net_wt += to_decimal(total.get("net_wt"))
        total_inch_ibr += to_decimal(total.get("inch_ibr"))
        total_gold += to_decimal(total.get("gold"))

        gold_bar = txn.get("gold_bar") or {}
        gold_bar_weight += to_decimal(gold_bar.get("weight"))
        gold_bar_amount += to_decimal(gold_bar.get("amount"))

        # An absent balance carries the previous one forward; 0 is a real balance.
        closing = txn.get("closing_balance") or {}
        if closing.get("gold") is not None:
            closing_gold = to_decimal(closing["gold"])
        if closing.get("cash") is not None:
            closing_cash = to_decimal(closing["cash"])

    return OwnerSummary(
        total_pcs=total_pcs,
        total_net_wt=weight_to_float(total_net_wt),
        total_inch_ibr=weight_to_float(total_inch_ibr),
        total_gold=weight_to_float(total_gold),
        total_gold_bar_weight=weight_to_float(gold_bar_weight),
        total_gold_bar_amount=amount_to_float(gold_bar_amount),
        closing_gold_balance=weight_to_float(closing_gold),
        closing_cash_balance=amount_to_float(closing_cash),
        last_transaction_date=transactions[-1].get("date"),
    )


def fold_items(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Compute a transaction's denormalized total from its item lines."""
    return {
        "pcs": sum(to_int(item.get("pcs")) for item in items),
        "net_wt": weight_to_float(safe_add(*(item.get("net_wt") for item in items))),
        "inch_ibr": weight_to_float(safe_add(*(item.get("inch_ibr") for item in items))),
        "gold": weight_to_float(safe_add(*(item.get("gold") for item in items))),
    }


def totals_match(supplied: Dict[str, Any], derived: Dict[str, Any]) -> bool:
    """True when a caller-supplied total agrees with the item fold."""
    if to_int(supplied.get("pcs")) != derived["pcs"]:
        return False
    for field in ("net_wt", "inch_ibr", "gold"):
        diff = abs(round_weight(supplied.get(field)) - to_decimal(derived[field]))
        if diff > WEIGHT_QUANTIZE:
            return False
    return True
