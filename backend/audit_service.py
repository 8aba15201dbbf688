from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

LEDGER_MODULE = "LEDGER"
TRANSACTION_ENTITY = "TRANSACTION"
TRANSACTION_ACTIONS = ("CREATE", "UPDATE", "DELETE")

# Bookkeeping fields that say nothing about what the user changed
UNAUDITED_FIELDS = {"_id", "created_at", "updated_at"}


def audit_snapshot(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a transaction fragment that is safe to store in an audit entry"""
    if values is None:
        return None
    snapshot = {}
    for key, value in values.items():
        if key in UNAUDITED_FIELDS:
            continue
        snapshot[key] = str(value) if isinstance(value, ObjectId) else value
    return snapshot


class AuditService:
    """
    Insert-only trail of ledger mutations.

    An audit write that fails is logged and dropped; the mutation it
    describes has already been committed and stays committed.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    async def log_action(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        try:
            await self.collection.insert_one({
                "module_name": module_name,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action_type": action_type,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "user_id": user_id,
                "timestamp": datetime.utcnow()
            })
            logger.info(f"[AUDIT] {action_type} {entity_type}:{entity_id} by user:{user_id}")
        except PyMongoError as e:
            logger.error(f"[AUDIT] Could not record {action_type} {entity_type}:{entity_id}: {str(e)}")

    async def record_transaction_change(
        self,
        action_type: str,
        txn_id: str,
        user_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None
    ):
        if action_type not in TRANSACTION_ACTIONS:
            raise ValueError(f"Unknown transaction action: {action_type}")
        await self.log_action(
            module_name=LEDGER_MODULE,
            entity_type=TRANSACTION_ENTITY,
            entity_id=txn_id,
            action_type=action_type,
            user_id=user_id,
            old_value=audit_snapshot(before),
            new_value=audit_snapshot(after)
        )

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Newest first"""
        query = {}
        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id

        cursor = self.collection.find(query).sort(
            [("timestamp", DESCENDING), ("_id", DESCENDING)]
        ).limit(limit)
        return [self._with_audit_id(log) for log in await cursor.to_list(length=limit)]

    async def transaction_history(self, txn_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Every recorded change to one transaction, oldest first"""
        cursor = self.collection.find(
            {"entity_type": TRANSACTION_ENTITY, "entity_id": txn_id}
        ).sort([("timestamp", ASCENDING), ("_id", ASCENDING)]).limit(limit)
        return [self._with_audit_id(log) for log in await cursor.to_list(length=limit)]

    @staticmethod
    def _with_audit_id(log: Dict[str, Any]) -> Dict[str, Any]:
        log["audit_id"] = str(log.pop("_id"))
        return log
