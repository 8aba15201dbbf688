from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
import logging

from core.aggregation import OwnerSummary

logger = logging.getLogger(__name__)

# Transactions may be attributed to either kind of owner. ObjectIds are unique
# across collections, so an owner_id alone identifies the record.
OWNER_COLLECTIONS = ("employees", "clients")


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for valid ids, None for anything else"""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def canonical_owner_id(value: Any) -> Optional[str]:
    """
    The form owner ids are stored and queried under (lowercase hex).

    ObjectId accepts uppercase hex, so two spellings can name one owner;
    transactions must always carry this one.
    """
    oid = parse_object_id(value)
    return str(oid) if oid is not None else None


class OwnerRepository:
    """
    Access to client/employee records for the ledger.

    RULES:
    - patch_summary() writes ONLY the derived summary fields
    - Name, contact and permission fields are never touched here
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _locate(self, owner_id: Any, session=None) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        oid = parse_object_id(owner_id)
        if oid is None:
            return None, None

        for collection_name in OWNER_COLLECTIONS:
            doc = await self.db[collection_name].find_one({"_id": oid}, session=session)
            if doc:
                return collection_name, doc
        return None, None

    async def exists(self, owner_id: Any, session=None) -> bool:
        collection_name, _ = await self._locate(owner_id, session)
        return collection_name is not None

    async def get(self, owner_id: Any, session=None) -> Optional[Dict[str, Any]]:
        collection_name, doc = await self._locate(owner_id, session)
        if doc is not None:
            doc["owner_kind"] = collection_name
        return doc

    async def patch_summary(
        self,
        owner_id: Any,
        summary: OwnerSummary,
        session=None
    ) -> bool:
        """
        Overwrite the summary fields of an owner record.

        Returns False when the owner no longer exists.
        """
        collection_name, _ = await self._locate(owner_id, session)
        if collection_name is None:
            logger.warning(f"[LEDGER] Owner {owner_id} not found; summary not written")
            return False

        now = datetime.utcnow()
        await self.db[collection_name].update_one(
            {"_id": parse_object_id(owner_id)},
            {
                "$set": {
                    **summary.to_document(),
                    "summary_recalculated_at": now,
                    "updated_at": now
                },
                "$inc": {"summary_version": 1}
            },
            session=session
        )
        return True

    async def create(self, kind: str, data: Dict[str, Any]) -> str:
        """Insert a client or employee with a zeroed summary"""
        if kind not in OWNER_COLLECTIONS:
            raise ValueError(f"Unknown owner kind: {kind}")

        owner_doc = {
            **data,
            **OwnerSummary().to_document(),
            "summary_version": 0,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        }
        result = await self.db[kind].insert_one(owner_doc)
        owner_id = str(result.inserted_id)
        logger.info(f"Owner created: {kind}:{owner_id}")
        return owner_id

    async def list_ids(self) -> List[str]:
        """All owner ids across clients and employees"""
        owner_ids = []
        for collection_name in OWNER_COLLECTIONS:
            cursor = self.db[collection_name].find({}, {"_id": 1})
            async for doc in cursor:
                owner_ids.append(str(doc["_id"]))
        return owner_ids

    async def count(self, kind: str) -> int:
        return await self.db[kind].count_documents({})
