from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Dict, Any, List
import logging

from models import TransactionCreate, TransactionUpdate
from audit_service import AuditService
from owner_service import OwnerRepository, canonical_owner_id, parse_object_id
from ledger_service import LedgerRecalculationEngine, RecalculationError
from core.aggregation import OwnerSummary, fold_items, totals_match
from core.atomic_numbering import TransactionIdGenerator, current_date, current_time
from core.recalculation_queue import RecalculationRetryQueue

logger = logging.getLogger(__name__)


class InvalidInputError(Exception):
    """Raised when required transaction fields are missing or inconsistent"""
    pass


class NotFoundError(Exception):
    """Raised when the referenced owner or transaction does not exist"""
    pass


class StorageFailureError(Exception):
    """Raised when the primary write could not be performed; nothing was saved"""
    pass


@dataclass
class MutationResult:
    """Outcome of a committed transaction mutation"""
    id: str
    transaction_id: Optional[str] = None
    stale_owner_ids: List[str] = field(default_factory=list)

    @property
    def ledger_stale(self) -> bool:
        return bool(self.stale_owner_ids)

    @property
    def ledger_status(self) -> str:
        return "stale" if self.ledger_stale else "current"


class TransactionMutationService:
    """
    Single entry point for creating, editing and deleting transactions.

    RULES:
    - Validation and existence checks happen before any write
    - Storage mutation first, owner recalculation second
    - A failed recalculation never rolls back the mutation; the result is
      flagged stale and the owner is queued for retry
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        engine: Optional[LedgerRecalculationEngine] = None,
        id_generator: Optional[TransactionIdGenerator] = None,
        audit_service: Optional[AuditService] = None,
        retry_queue: Optional[RecalculationRetryQueue] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.clock = clock or datetime.now
        self.owners = OwnerRepository(db)
        self.engine = engine or LedgerRecalculationEngine(db, self.owners)
        self.id_generator = id_generator or TransactionIdGenerator(db, self.clock)
        self.audit_service = audit_service or AuditService(db)
        self.retry_queue = retry_queue or RecalculationRetryQueue(db, self.engine)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, data: TransactionCreate, user_id: Optional[str] = None) -> MutationResult:
        """
        Create a transaction and refresh its owner's summary.

        Assigns transaction_id, date and time; derives total from items.
        """
        if not data.owner_id or not data.items:
            raise InvalidInputError("Missing required fields: owner_id and items are required")

        items = [item.dict() for item in data.items]
        total = self._resolve_total(items, data.total.dict() if data.total else None)

        owner_id = canonical_owner_id(data.owner_id)
        owner = await self._load_owner(data.owner_id)

        now = self.clock()
        try:
            transaction_id = await self.id_generator.generate_transaction_id(now.date())
        except PyMongoError as e:
            raise StorageFailureError(f"Could not allocate transaction id: {str(e)}") from e

        txn_doc = {
            "transaction_id": transaction_id,
            "date": current_date(now),
            "time": current_time(now),
            "owner_id": owner_id,
            "owner_name": data.owner_name or owner.get("name"),
            "items": items,
            "total": total,
            "gold_bar": data.gold_bar.dict() if data.gold_bar else None,
            "closing_balance": data.closing_balance.dict() if data.closing_balance else None,
            "notes": data.notes or "",
            "created_by": data.created_by or user_id,
            "created_by_name": data.created_by_name,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        }

        try:
            result = await self.db.transactions.insert_one(txn_doc)
        except PyMongoError as e:
            logger.error(f"[TXN] Insert failed for {transaction_id}: {str(e)}")
            raise StorageFailureError(f"Transaction was not saved: {str(e)}") from e

        txn_id = str(result.inserted_id)
        logger.info(f"[TXN] Created {transaction_id} ({txn_id}) for owner:{owner_id}")

        await self.audit_service.record_transaction_change(
            "CREATE", txn_id, user_id,
            after={"transaction_id": transaction_id, "owner_id": owner_id, "total": total}
        )

        stale = await self._recalculate([owner_id])
        return MutationResult(id=txn_id, transaction_id=transaction_id, stale_owner_ids=stale)

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update(
        self,
        txn_id: str,
        patch: TransactionUpdate,
        user_id: Optional[str] = None
    ) -> MutationResult:
        """
        Apply a patch and refresh the previous and (if reassigned) new owner.

        transaction_id, date, time and created_at are never patched.
        """
        oid = parse_object_id(txn_id)
        if oid is None:
            raise InvalidInputError(f"Invalid transaction id: {txn_id}")

        changes = patch.dict(exclude_unset=True, exclude_none=True)
        if not changes:
            raise InvalidInputError("No fields to update")

        old_txn = await self._find_transaction(oid)
        old_owner_id = old_txn.get("owner_id")

        if "items" in changes:
            if not changes["items"]:
                raise InvalidInputError("A transaction needs at least one item")
            changes["total"] = self._resolve_total(changes["items"], changes.get("total"))
        elif "total" in changes:
            changes["total"] = self._resolve_total(old_txn.get("items") or [], changes["total"])

        new_owner_id = old_owner_id
        if "owner_id" in changes:
            new_owner = await self._load_owner(changes["owner_id"])
            new_owner_id = changes["owner_id"] = canonical_owner_id(changes["owner_id"])
            if new_owner_id != canonical_owner_id(old_owner_id):
                changes.setdefault("owner_name", new_owner.get("name"))

        try:
            result = await self.db.transactions.update_one(
                {"_id": oid},
                {"$set": {**changes, "updated_at": datetime.utcnow()}}
            )
        except PyMongoError as e:
            logger.error(f"[TXN] Update failed for {txn_id}: {str(e)}")
            raise StorageFailureError(f"Transaction was not updated: {str(e)}") from e

        if result.matched_count == 0:
            raise NotFoundError("Transaction not found")

        logger.info(f"[TXN] Updated {old_txn.get('transaction_id')} fields={sorted(changes)}")

        await self.audit_service.record_transaction_change(
            "UPDATE", str(oid), user_id,
            before={k: old_txn.get(k) for k in changes},
            after=changes
        )

        stale = await self._recalculate([old_owner_id, new_owner_id])
        return MutationResult(
            id=str(oid),
            transaction_id=old_txn.get("transaction_id"),
            stale_owner_ids=stale
        )

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete(self, txn_id: str, user_id: Optional[str] = None) -> MutationResult:
        """Delete a transaction and refold its owner's remaining transactions"""
        oid = parse_object_id(txn_id)
        if oid is None:
            raise InvalidInputError(f"Invalid transaction id: {txn_id}")

        txn = await self._find_transaction(oid)

        try:
            result = await self.db.transactions.delete_one({"_id": oid})
        except PyMongoError as e:
            logger.error(f"[TXN] Delete failed for {txn_id}: {str(e)}")
            raise StorageFailureError(f"Transaction was not deleted: {str(e)}") from e

        if result.deleted_count == 0:
            raise NotFoundError("Transaction not found")

        logger.info(f"[TXN] Deleted {txn.get('transaction_id')} ({txn_id})")

        await self.audit_service.record_transaction_change("DELETE", str(oid), user_id, before=txn)

        stale = await self._recalculate([txn.get("owner_id")])
        return MutationResult(id=str(oid), transaction_id=txn.get("transaction_id"), stale_owner_ids=stale)

    # =========================================================================
    # RECALCULATION RETRY
    # =========================================================================

    async def retry_recalculation(self, owner_id: str) -> OwnerSummary:
        """
        Rebuild one owner's summary without resubmitting any transaction.

        Raises RecalculationError if the store is still failing.
        """
        await self._load_owner(owner_id)
        return await self.engine.recalculate(owner_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _resolve_total(
        self,
        items: List[Dict[str, Any]],
        supplied: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        derived = fold_items(items)
        if supplied is not None and not totals_match(supplied, derived):
            raise InvalidInputError(
                f"Transaction total {supplied} does not match its items {derived}"
            )
        return derived

    async def _load_owner(self, owner_id: str) -> Dict[str, Any]:
        try:
            owner = await self.owners.get(owner_id)
        except PyMongoError as e:
            raise StorageFailureError(f"Could not read owner {owner_id}: {str(e)}") from e
        if not owner:
            raise NotFoundError(f"Owner not found: {owner_id}")
        return owner

    async def _find_transaction(self, oid) -> Dict[str, Any]:
        try:
            txn = await self.db.transactions.find_one({"_id": oid})
        except PyMongoError as e:
            raise StorageFailureError(f"Could not read transaction {oid}: {str(e)}") from e
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    async def _recalculate(self, owner_ids: List[Optional[str]]) -> List[str]:
        """
        Refresh owner summaries after a committed mutation.

        Returns the owners whose summaries are now stale (queued for retry).
        """
        try:
            await self.engine.recalculate_many(owner_ids)
            return []
        except RecalculationError as e:
            logger.warning(f"[TXN] Mutation saved but ledger is stale: {str(e)}")
            for owner_id in e.owner_ids:
                try:
                    await self.retry_queue.enqueue(owner_id, str(e.cause))
                except PyMongoError as queue_error:
                    logger.error(f"[TXN] Could not queue owner {owner_id} for retry: {str(queue_error)}")
            return e.owner_ids
