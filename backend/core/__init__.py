"""
Ledger Core Engine Modules
"""
from .ledger_precision import (
    to_decimal,
    to_int,
    round_weight,
    round_amount,
    weight_to_float,
    amount_to_float,
    safe_add,
    LedgerPrecisionError
)

from .atomic_numbering import (
    TransactionIdGenerator,
    SequenceCollisionError,
    SequenceOverflowError,
    current_date,
    current_time
)

from .aggregation import (
    ChronologicalTransactions,
    OwnerSummary,
    OrderingError,
    aggregate,
    fold_items
)

from .recalculation_queue import (
    RecalculationRetryQueue,
    RetryStatus
)

from .ledger_integrity_job import LedgerIntegrityJob

__all__ = [
    # Ledger Precision
    'to_decimal',
    'to_int',
    'round_weight',
    'round_amount',
    'weight_to_float',
    'amount_to_float',
    'safe_add',
    'LedgerPrecisionError',
    # Atomic Numbering
    'TransactionIdGenerator',
    'SequenceCollisionError',
    'SequenceOverflowError',
    'current_date',
    'current_time',
    # Aggregation
    'ChronologicalTransactions',
    'OwnerSummary',
    'OrderingError',
    'aggregate',
    'fold_items',
    # Retry queue / integrity
    'RecalculationRetryQueue',
    'RetryStatus',
    'LedgerIntegrityJob',
]
