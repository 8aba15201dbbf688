from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional
import asyncio
import logging

from core.aggregation import ChronologicalTransactions, OrderingError, OwnerSummary, aggregate
from core.ledger_precision import LedgerPrecisionError
from owner_service import OwnerRepository, canonical_owner_id

logger = logging.getLogger(__name__)

CHRONOLOGICAL_SORT = [
    ("date", ASCENDING),
    ("time", ASCENDING),
    ("created_at", ASCENDING),
    ("_id", ASCENDING),
]

# Storage errors, plus fold errors from malformed documents (non-numeric
# quantities, created_at values of mixed types)
RECALCULATION_FAILURES = (PyMongoError, LedgerPrecisionError, OrderingError, TypeError)


class RecalculationError(Exception):
    """
    Raised when an owner summary could not be rebuilt.

    The transaction mutation that triggered the recalculation has already been
    committed; only the derived summary may be stale.
    """
    def __init__(self, owner_ids: List[str], cause: Optional[BaseException] = None):
        self.owner_ids = list(owner_ids)
        self.cause = cause
        super().__init__(
            f"Ledger recalculation failed for owner(s) {', '.join(self.owner_ids)}: {cause}"
        )


class LedgerRecalculationEngine:
    """
    Rebuilds owner summaries from the full transaction set.

    RULES:
    - Always a full refold, never a delta (naturally idempotent)
    - Transactions are read in chronological order
    - One recalculation per owner at a time within this process
    - Storage and fold errors surface as RecalculationError
    """

    def __init__(self, db: AsyncIOMotorDatabase, owners: Optional[OwnerRepository] = None):
        self.db = db
        self.owners = owners or OwnerRepository(db)
        # owner_id -> [lock, holders and waiters]; entries go away when unused
        self._owner_locks: Dict[str, list] = {}

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str):
        entry = self._owner_locks.get(owner_id)
        if entry is None:
            entry = self._owner_locks[owner_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._owner_locks[owner_id]

    async def fetch_transactions(self, owner_id: str, session=None) -> ChronologicalTransactions:
        cursor = self.db.transactions.find(
            {"owner_id": owner_id},
            session=session
        ).sort(CHRONOLOGICAL_SORT)

        transactions = await cursor.to_list(length=None)
        # The store's ordering of mixed/missing fields is not trusted for the fold.
        return ChronologicalTransactions.from_unsorted(transactions)

    async def compute_summary(self, owner_id: str, session=None) -> OwnerSummary:
        """Aggregate without writing anything back"""
        transactions = await self.fetch_transactions(owner_id, session)
        return aggregate(transactions)

    async def recalculate(self, owner_id: str, session=None) -> OwnerSummary:
        """
        Recalculate and persist the summary of one owner.

        Steps:
        - Fetch every transaction currently attributed to owner_id
        - Fold them with the aggregation calculator
        - Write the summary fields onto the owner record
        """
        owner_id = canonical_owner_id(owner_id) or str(owner_id)
        async with self._owner_lock(owner_id):
            try:
                summary = await self.compute_summary(owner_id, session)
                written = await self.owners.patch_summary(owner_id, summary, session)
            except RECALCULATION_FAILURES as e:
                logger.error(f"[LEDGER] Recalculation failed for owner:{owner_id}: {str(e)}")
                raise RecalculationError([owner_id], e) from e

        if written:
            logger.info(
                f"[LEDGER] Summary recalculated for owner:{owner_id} "
                f"(gold={summary.total_gold}, last={summary.last_transaction_date})"
            )
        return summary

    async def recalculate_many(self, owner_ids: Iterable[str], session=None) -> Dict[str, OwnerSummary]:
        """
        Recalculate several owners independently.

        Every owner is attempted even if an earlier one fails; failures are
        reported together afterwards.
        """
        summaries: Dict[str, OwnerSummary] = {}
        failed: List[str] = []
        last_error: Optional[BaseException] = None

        for owner_id in dict.fromkeys(canonical_owner_id(o) or str(o) for o in owner_ids if o):
            try:
                summaries[owner_id] = await self.recalculate(owner_id, session)
            except RecalculationError as e:
                failed.append(owner_id)
                last_error = e.cause

        if failed:
            raise RecalculationError(failed, last_error)
        return summaries
