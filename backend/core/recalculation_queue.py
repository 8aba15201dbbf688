"""
LEDGER CORE - RECALCULATION RETRY QUEUE

A transaction write and the owner-summary refold are two separate store
operations. When the refold fails after the write committed, the owner is
parked here and retried with exponential backoff until the summary is
current again.

RULES:
- One open entry per owner (re-enqueueing an open owner only updates it)
- Retries are plain recalculations (idempotent)
- All actions logged
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


class RetryStatus:
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


OPEN_STATUSES = [RetryStatus.PENDING, RetryStatus.RETRYING]


class RecalculationRetryQueue:
    """
    Store-backed retry queue for stale owner summaries.

    `engine` is anything with an async `recalculate(owner_id)` that raises on
    failure (the ledger recalculation engine).
    """

    MAX_RETRY_ATTEMPTS = 5
    BASE_RETRY_DELAY = 30  # seconds

    def __init__(self, db: AsyncIOMotorDatabase, engine):
        self.db = db
        self.engine = engine

    async def enqueue(self, owner_id: str, error: Optional[str] = None) -> None:
        """Park an owner whose summary could not be rebuilt"""
        now = datetime.utcnow()
        await self.db.pending_recalculations.update_one(
            {"owner_id": str(owner_id), "status": {"$in": OPEN_STATUSES}},
            {
                "$set": {
                    "last_error": error,
                    "updated_at": now
                },
                "$setOnInsert": {
                    "owner_id": str(owner_id),
                    "status": RetryStatus.PENDING,
                    "attempts": 0,
                    "run_at": now,
                    "created_at": now
                }
            },
            upsert=True
        )
        logger.warning(f"[RETRY] Owner {owner_id} queued for recalculation: {error}")

    async def pending(self) -> List[Dict[str, Any]]:
        cursor = self.db.pending_recalculations.find(
            {"status": {"$in": OPEN_STATUSES}}
        ).sort("run_at", ASCENDING)
        return await cursor.to_list(length=None)

    async def process_due(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Retry every entry whose run_at has passed.

        Returns:
            Report with counts of recovered, rescheduled and abandoned owners
        """
        now = now or datetime.utcnow()
        report = {
            "job_name": "RecalculationRetry",
            "started_at": now.isoformat(),
            "recovered": [],
            "rescheduled": [],
            "failed": []
        }

        cursor = self.db.pending_recalculations.find(
            {"status": {"$in": OPEN_STATUSES}, "run_at": {"$lte": now}}
        ).sort("run_at", ASCENDING)

        for entry in await cursor.to_list(length=None):
            owner_id = entry["owner_id"]
            try:
                await self.engine.recalculate(owner_id)
            except Exception as e:
                await self._reschedule(entry, str(e), now, report)
                continue

            await self.db.pending_recalculations.update_one(
                {"_id": entry["_id"]},
                {
                    "$set": {
                        "status": RetryStatus.COMPLETED,
                        "completed_at": datetime.utcnow(),
                        "updated_at": datetime.utcnow()
                    }
                }
            )
            report["recovered"].append(owner_id)
            logger.info(f"[RETRY] Owner {owner_id} summary recovered")

        report["completed_at"] = datetime.utcnow().isoformat()
        return report

    async def _reschedule(
        self,
        entry: Dict[str, Any],
        error_msg: str,
        now: datetime,
        report: Dict[str, Any]
    ) -> None:
        owner_id = entry["owner_id"]
        attempts = entry.get("attempts", 0) + 1

        if attempts >= self.MAX_RETRY_ATTEMPTS:
            await self.db.pending_recalculations.update_one(
                {"_id": entry["_id"]},
                {
                    "$set": {
                        "status": RetryStatus.FAILED,
                        "attempts": attempts,
                        "last_error": error_msg,
                        "completed_at": datetime.utcnow(),
                        "updated_at": datetime.utcnow()
                    }
                }
            )
            report["failed"].append(owner_id)
            logger.error(f"[RETRY] Giving up on owner {owner_id} after {attempts} attempts: {error_msg}")
            return

        delay = self.BASE_RETRY_DELAY * (2 ** attempts)
        await self.db.pending_recalculations.update_one(
            {"_id": entry["_id"]},
            {
                "$set": {
                    "status": RetryStatus.RETRYING,
                    "attempts": attempts,
                    "last_error": error_msg,
                    "run_at": now + timedelta(seconds=delay),
                    "updated_at": datetime.utcnow()
                }
            }
        )
        report["rescheduled"].append(owner_id)
        logger.info(f"[RETRY] Owner {owner_id} retry {attempts} scheduled in {delay}s")
