"""
Transaction identifier tests: format, daily reset, atomicity under concurrency
"""
import asyncio
from datetime import date, datetime

import pytest

from core.atomic_numbering import (
    TransactionIdGenerator, SequenceOverflowError,
    format_transaction_id, parse_sequence, date_key_for
)

DAY = date(2026, 3, 14)


async def naive_generate(generator, db, day):
    """Read the latest stored identifier, add one, insert."""
    date_key = date_key_for(day)
    latest = await generator.latest_sequence_for(date_key)
    transaction_id = format_transaction_id(date_key, latest + 1)
    await db.transactions.insert_one({"transaction_id": transaction_id})
    return transaction_id


async def assert_unique_under_concurrency(generate, count=2):
    ids = await asyncio.gather(*(generate() for _ in range(count)))
    assert len(set(ids)) == len(ids), f"duplicate identifiers issued: {sorted(ids)}"
    return ids


class TestFormat:

    def test_format_and_parse(self):
        assert format_transaction_id("20260314", 7) == "TXN-20260314-007"
        assert parse_sequence("TXN-20260314-042") == 42

    def test_parse_rejects_malformed_ids(self):
        with pytest.raises(ValueError):
            parse_sequence("INV-20260314-001")
        with pytest.raises(ValueError):
            parse_sequence("TXN-20260314")


class TestSequentialGeneration:

    async def test_sequence_runs_without_gaps(self, id_generator):
        ids = [await id_generator.generate_transaction_id(DAY) for _ in range(5)]

        assert ids == [f"TXN-20260314-00{n}" for n in range(1, 6)]

    async def test_sequence_resets_next_day(self, id_generator):
        for _ in range(3):
            await id_generator.generate_transaction_id(DAY)

        next_day = await id_generator.generate_transaction_id(date(2026, 3, 15))

        assert next_day == "TXN-20260315-001"
        assert await id_generator.generate_transaction_id(DAY) == "TXN-20260314-004"

    async def test_uses_clock_when_no_day_given(self, db):
        generator = TransactionIdGenerator(db, clock=lambda: datetime(2026, 12, 31, 23, 59, 0))

        assert await generator.generate_transaction_id() == "TXN-20261231-001"

    async def test_counter_survives_a_new_generator(self, db, id_generator):
        await id_generator.generate_transaction_id(DAY)
        await id_generator.generate_transaction_id(DAY)

        restarted = TransactionIdGenerator(db)

        assert await restarted.generate_transaction_id(DAY) == "TXN-20260314-003"


class TestConcurrency:

    async def test_atomic_counter_is_unique_under_concurrency(self, id_generator):
        ids = await assert_unique_under_concurrency(
            lambda: id_generator.generate_transaction_id(DAY), count=20
        )

        assert sorted(ids) == [format_transaction_id("20260314", n) for n in range(1, 21)]

    async def test_read_then_increment_issues_duplicates(self, db, id_generator):
        # Both callers read the same "latest" identifier before either inserts.
        with pytest.raises(AssertionError, match="duplicate identifiers"):
            await assert_unique_under_concurrency(lambda: naive_generate(id_generator, db, DAY))


class TestLegacyData:

    async def test_skips_identifiers_already_stored(self, db, id_generator):
        await db.transactions.insert_one({"transaction_id": "TXN-20260314-001"})

        assert await id_generator.generate_transaction_id(DAY) == "TXN-20260314-002"

    async def test_latest_sequence_reads_highest_stored_id(self, db, id_generator):
        for seq in (3, 1, 12):
            await db.transactions.insert_one({"transaction_id": format_transaction_id("20260314", seq)})
        await db.transactions.insert_one({"transaction_id": "TXN-20260315-050"})

        assert await id_generator.latest_sequence_for("20260314") == 12
        assert await id_generator.latest_sequence_for("20260313") == 0

    async def test_seed_all_from_existing(self, db, id_generator):
        for seq in (1, 2, 3):
            await db.transactions.insert_one({
                "transaction_id": format_transaction_id("20260314", seq),
                "date": "2026-03-14"
            })

        seeded = await id_generator.seed_all_from_existing()

        assert seeded == {"20260314": 3}
        assert await id_generator.generate_transaction_id(DAY) == "TXN-20260314-004"

    async def test_seeding_never_lowers_a_counter(self, db, id_generator):
        for _ in range(5):
            await id_generator.generate_transaction_id(DAY)
        await db.transactions.insert_one({"transaction_id": "TXN-20260314-002", "date": "2026-03-14"})

        await id_generator.seed_from_existing("20260314")

        assert await id_generator.generate_transaction_id(DAY) == "TXN-20260314-006"


class TestOverflow:

    async def test_overflow_past_999_fails_loudly(self, db, id_generator):
        await db.transaction_sequences.insert_one({"date_key": "20260314", "current_sequence": 999})

        with pytest.raises(SequenceOverflowError):
            await id_generator.generate_transaction_id(DAY)

    async def test_999_is_still_issued(self, db, id_generator):
        await db.transaction_sequences.insert_one({"date_key": "20260314", "current_sequence": 998})

        assert await id_generator.generate_transaction_id(DAY) == "TXN-20260314-999"


class TestIndexes:

    async def test_unique_index_rejects_duplicate_ids(self, db, id_generator):
        from pymongo.errors import DuplicateKeyError

        await id_generator.create_unique_constraints()
        await db.transactions.insert_one({"transaction_id": "TXN-20260314-001"})

        with pytest.raises(DuplicateKeyError):
            await db.transactions.insert_one({"transaction_id": "TXN-20260314-001"})
