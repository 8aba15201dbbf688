"""
LEDGER CORE - ATOMIC TRANSACTION NUMBERING

Provides:
1. Per-day atomic sequence (findOneAndUpdate + $inc, upsert keyed by date)
2. Identifier format TXN-<YYYYMMDD>-<NNN>, reset every calendar day
3. Unique transaction_id constraint
4. Collision retry mechanism
5. Loud failure on sequence overflow (> 999 per day)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument, DESCENDING
from pymongo.errors import PyMongoError
from datetime import datetime, date
from typing import Callable, Optional
import logging
import asyncio

logger = logging.getLogger(__name__)

TRANSACTION_ID_PREFIX = "TXN"
SEQUENCE_WIDTH = 3
MAX_SEQUENCE = 10 ** SEQUENCE_WIDTH - 1


class SequenceCollisionError(Exception):
    """Raised when sequence collision occurs after max retries"""
    pass


class SequenceOverflowError(Exception):
    """Raised when a day runs out of fixed-width sequence numbers"""
    def __init__(self, date_key: str, sequence: int):
        self.date_key = date_key
        self.sequence = sequence
        super().__init__(
            f"Transaction sequence for {date_key} exhausted: {sequence} > {MAX_SEQUENCE}"
        )


def current_date(now: Optional[datetime] = None) -> str:
    """Local calendar date as YYYY-MM-DD"""
    return (now or datetime.now()).strftime("%Y-%m-%d")


def current_time(now: Optional[datetime] = None) -> str:
    """Local wall-clock time as HH:MM:SS"""
    return (now or datetime.now()).strftime("%H:%M:%S")


def date_key_for(day: date) -> str:
    return day.strftime("%Y%m%d")


def format_transaction_id(date_key: str, sequence: int) -> str:
    if sequence < 1 or sequence > MAX_SEQUENCE:
        raise SequenceOverflowError(date_key, sequence)
    return f"{TRANSACTION_ID_PREFIX}-{date_key}-{sequence:0{SEQUENCE_WIDTH}d}"


def parse_sequence(transaction_id: str) -> int:
    """Extract the sequence segment of TXN-YYYYMMDD-NNN."""
    parts = transaction_id.split("-")
    if len(parts) != 3 or parts[0] != TRANSACTION_ID_PREFIX or not parts[2].isdigit():
        raise ValueError(f"Malformed transaction id: {transaction_id!r}")
    return int(parts[2])


class TransactionIdGenerator:
    """
    Atomic transaction identifier generator with collision protection.

    Uses findOneAndUpdate with $inc on a per-day counter document, so two
    concurrent creations can never observe the same sequence number.
    The counter lives in the store, not in process memory, so it is correct
    across restarts and across multiple API processes.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 100  # Base delay in milliseconds

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.clock = clock or datetime.now

    async def get_next_sequence(self, date_key: str, session=None) -> int:
        """
        Get next atomic sequence number for a day.

        Returns the NEW sequence number after increment.
        """
        result = await self.db.transaction_sequences.find_one_and_update(
            {"date_key": date_key},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )

        return result["current_sequence"]

    async def generate_transaction_id(
        self,
        today: Optional[date] = None,
        session=None
    ) -> str:
        """
        Generate a unique transaction identifier with retry on collision.

        Raises:
            SequenceOverflowError: If the day's sequence passes 999
            SequenceCollisionError: If max retries exceeded
        """
        date_key = date_key_for(today or self.clock().date())

        for attempt in range(self.MAX_RETRIES):
            try:
                sequence = await self.get_next_sequence(date_key, session)
                transaction_id = format_transaction_id(date_key, sequence)

                # Identifiers written before the counter existed may still occupy
                # this slot; skip past them.
                existing = await self.db.transactions.find_one(
                    {"transaction_id": transaction_id},
                    session=session
                )

                if existing:
                    logger.warning(f"[SEQUENCE] Collision: {transaction_id}, retry {attempt + 1}")
                    await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)
                    continue

                logger.info(f"[SEQUENCE] Generated transaction id: {transaction_id}")
                return transaction_id

            except SequenceOverflowError:
                logger.error(f"[SEQUENCE] Overflow for {date_key}")
                raise
            except PyMongoError as e:
                logger.error(f"[SEQUENCE] Generation error: {str(e)}")
                if attempt == self.MAX_RETRIES - 1:
                    raise
                await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise SequenceCollisionError(
            f"Failed to generate unique transaction id after {self.MAX_RETRIES} attempts"
        )

    async def latest_sequence_for(self, date_key: str, session=None) -> int:
        """
        Highest sequence already stored in transactions for a day (0 if none).

        Read-only scan; lexicographic max works because the sequence segment
        is fixed-width. Never used to allocate identifiers.
        """
        cursor = self.db.transactions.find(
            {"transaction_id": {"$regex": f"^{TRANSACTION_ID_PREFIX}-{date_key}-"}},
            session=session
        ).sort("transaction_id", DESCENDING).limit(1)

        latest = await cursor.to_list(length=1)
        if not latest:
            return 0
        return parse_sequence(latest[0]["transaction_id"])

    async def seed_from_existing(self, date_key: str, session=None) -> int:
        """
        Raise the day's counter to at least the highest stored identifier.
        $max keeps this safe to run while the API is serving requests.
        """
        latest = await self.latest_sequence_for(date_key, session)
        if latest == 0:
            return 0

        await self.db.transaction_sequences.update_one(
            {"date_key": date_key},
            {
                "$max": {"current_sequence": latest},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            session=session
        )
        logger.info(f"[SEQUENCE] Seeded {date_key} to {latest}")
        return latest

    async def seed_all_from_existing(self, session=None) -> dict:
        """Seed the counter of every day that already has transactions"""
        seeded = {}
        dates = await self.db.transactions.distinct("date", session=session)
        for day in sorted(d for d in dates if d):
            date_key = day.replace("-", "")
            latest = await self.seed_from_existing(date_key, session)
            if latest:
                seeded[date_key] = latest
        return seeded

    async def create_unique_constraints(self):
        """
        Create unique indexes on transaction identifiers and day counters.
        """
        try:
            await self.db.transactions.create_index(
                [("transaction_id", 1)],
                unique=True,
                name="unique_transaction_id"
            )

            await self.db.transaction_sequences.create_index(
                [("date_key", 1)],
                unique=True,
                name="unique_sequence_date_key"
            )

            logger.info("Created unique transaction id constraints")
        except PyMongoError as e:
            logger.warning(f"Index creation result: {str(e)}")
