from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from datetime import date
from typing import Optional, Dict, Any, List
import logging
import re

from owner_service import OwnerRepository, canonical_owner_id, parse_object_id
from ledger_service import CHRONOLOGICAL_SORT
from core.aggregation import ChronologicalTransactions, OwnerSummary
from core.ledger_precision import safe_add, weight_to_float

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
RECENT_LIMIT = 10
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


class LedgerReportService:
    """Read-only views over transactions and owner summaries"""

    def __init__(self, db: AsyncIOMotorDatabase, owners: Optional[OwnerRepository] = None):
        self.db = db
        self.owners = owners or OwnerRepository(db)

    async def list_transactions(
        self,
        search: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Dict[str, Any]]:
        """Newest first; date range is inclusive on both ends"""
        query: Dict[str, Any] = {}

        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [
                {"transaction_id": pattern},
                {"owner_name": pattern},
            ]

        if start_date or end_date:
            query["date"] = {}
            if start_date:
                query["date"]["$gte"] = start_date
            if end_date:
                query["date"]["$lte"] = end_date

        if owner_id:
            query["owner_id"] = canonical_owner_id(owner_id) or owner_id

        cursor = self.db.transactions.find(query).sort(NEWEST_FIRST).limit(limit)
        return await cursor.to_list(length=limit)

    async def get_transaction(self, txn_id: str) -> Optional[Dict[str, Any]]:
        oid = parse_object_id(txn_id)
        if oid is None:
            return None
        return await self.db.transactions.find_one({"_id": oid})

    async def owner_statement(self, owner_id: str) -> Optional[Dict[str, Any]]:
        """Owner record, its stored summary and its transactions oldest first"""
        owner = await self.owners.get(owner_id)
        if owner is None:
            return None

        cursor = self.db.transactions.find(
            {"owner_id": canonical_owner_id(owner_id)}
        ).sort(CHRONOLOGICAL_SORT)
        transactions = ChronologicalTransactions.from_unsorted(await cursor.to_list(length=None))

        return {
            "owner": owner,
            "summary": OwnerSummary.from_document(owner).to_document(),
            "transactions": list(transactions)
        }

    async def dashboard_stats(self, today: Optional[date] = None) -> Dict[str, Any]:
        today_str = (today or date.today()).strftime("%Y-%m-%d")

        total_transactions = await self.db.transactions.count_documents({})
        today_transactions = await self.db.transactions.count_documents({"date": today_str})

        total_gold = []
        async for txn in self.db.transactions.find({}, {"total.gold": 1}):
            total_gold.append((txn.get("total") or {}).get("gold"))

        recent = await self.db.transactions.find({}).sort(
            NEWEST_FIRST
        ).limit(RECENT_LIMIT).to_list(length=RECENT_LIMIT)

        return {
            "total_transactions": total_transactions,
            "total_clients": await self.owners.count("clients"),
            "total_employees": await self.owners.count("employees"),
            "today_transactions": today_transactions,
            "total_gold": f"{weight_to_float(safe_add(*total_gold)):.3f}",
            "recent_transactions": recent
        }
