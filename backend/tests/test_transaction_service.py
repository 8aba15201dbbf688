"""
Transaction mutation service tests: create/update/delete and ledger upkeep
"""
import asyncio

import pytest

from models import TransactionCreate, TransactionItem, TransactionTotal, TransactionUpdate
from transaction_service import InvalidInputError, NotFoundError, StorageFailureError
from core.ledger_integrity_job import LedgerIntegrityJob
from core.recalculation_queue import RecalculationRetryQueue, RetryStatus
from tests.factories import make_create

UNKNOWN_ID = "64b7f0c2a1b2c3d4e5f60718"


class TestCreate:

    async def test_create_assigns_identity_and_updates_owner(self, db, service, owners, employee_id):
        result = await service.create(make_create(
            employee_id, pcs=5, net_wt=2.5, gold=2.0,
            gold_bar={"weight": 1.0, "amount": 6000.0},
            closing={"gold": 2.0, "cash": -6000.0}
        ))

        assert result.transaction_id == "TXN-20260314-001"
        assert result.ledger_status == "current"

        stored = await db.transactions.find_one({"transaction_id": result.transaction_id})
        assert str(stored["_id"]) == result.id
        assert stored["date"] == "2026-03-14"
        assert stored["time"] == "10:00:00"
        assert stored["owner_name"] == "Ravi Karigar"
        assert stored["total"] == {"pcs": 5, "net_wt": 2.5, "inch_ibr": 0.0, "gold": 2.0}

        owner = await owners.get(employee_id)
        assert owner["total_pcs"] == 5
        assert owner["total_net_wt"] == 2.5
        assert owner["total_gold"] == 2.0
        assert owner["total_gold_bar_weight"] == 1.0
        assert owner["closing_cash_balance"] == -6000.0
        assert owner["last_transaction_date"] == "2026-03-14"

    async def test_identifiers_follow_creation_order(self, service, employee_id):
        results = [await service.create(make_create(employee_id)) for _ in range(3)]

        assert [r.transaction_id for r in results] == [
            "TXN-20260314-001", "TXN-20260314-002", "TXN-20260314-003"
        ]

    async def test_supplied_total_must_match_items(self, db, service, employee_id):
        data = TransactionCreate(
            owner_id=employee_id,
            items=[TransactionItem(pcs=2, net_wt=1.0, gold=1.0)],
            total=TransactionTotal(pcs=2, net_wt=1.0, gold=9.0)
        )

        with pytest.raises(InvalidInputError):
            await service.create(data)
        assert db.transactions.documents == []

    async def test_matching_total_is_accepted(self, service, employee_id):
        data = TransactionCreate(
            owner_id=employee_id,
            items=[TransactionItem(pcs=2, net_wt=1.0, gold=1.0), TransactionItem(pcs=1, net_wt=0.5, gold=0.25)],
            total=TransactionTotal(pcs=3, net_wt=1.5, gold=1.25)
        )

        result = await service.create(data)

        assert result.transaction_id

    async def test_missing_owner_id_is_invalid_input(self, db, service):
        with pytest.raises(InvalidInputError):
            await service.create(TransactionCreate(items=[TransactionItem(gold=1.0)]))
        assert db.transaction_sequences.documents == []

    async def test_missing_items_is_invalid_input(self, service, employee_id):
        with pytest.raises(InvalidInputError):
            await service.create(TransactionCreate(owner_id=employee_id, items=[]))

    async def test_unknown_owner_is_not_found(self, db, service):
        with pytest.raises(NotFoundError):
            await service.create(make_create(UNKNOWN_ID))
        assert db.transactions.documents == []
        assert db.transaction_sequences.documents == []

    async def test_insert_failure_is_storage_failure(self, db, service, owners, employee_id):
        db.transactions.fail_on("insert_one")

        with pytest.raises(StorageFailureError):
            await service.create(make_create(employee_id, gold=5.0))

        assert db.transactions.documents == []
        assert (await owners.get(employee_id))["total_gold"] == 0.0

    async def test_mutation_is_audited(self, db, service, employee_id):
        result = await service.create(make_create(employee_id))

        logs = await service.audit_service.get_audit_logs(entity_type="TRANSACTION", entity_id=result.id)
        assert [log["action_type"] for log in logs] == ["CREATE"]

    async def test_concurrent_creates_for_one_owner_keep_every_contribution(self, service, owners, employee_id):
        results = await asyncio.gather(*(
            service.create(make_create(employee_id, gold=float(n))) for n in range(1, 6)
        ))

        assert len({r.transaction_id for r in results}) == 5
        assert (await owners.get(employee_id))["total_gold"] == 15.0


class TestUpdate:

    async def test_reassignment_recalculates_both_owners(self, service, owners, owners_pair):
        owner_a, owner_b = owners_pair
        created = [await service.create(make_create(owner_a, gold=g)) for g in (10.0, 20.0, 30.0)]
        assert (await owners.get(owner_a))["total_gold"] == 60.0

        result = await service.update(created[1].id, TransactionUpdate(owner_id=owner_b))

        assert result.ledger_status == "current"
        a = await owners.get(owner_a)
        b = await owners.get(owner_b)
        assert a["total_gold"] == 40.0
        assert a["total_pcs"] == 2
        assert b["total_gold"] == 20.0
        assert b["total_pcs"] == 1
        assert b["last_transaction_date"] == "2026-03-14"

    async def test_reassignment_takes_new_owner_name(self, db, service, owners_pair):
        owner_a, owner_b = owners_pair
        created = await service.create(make_create(owner_a))

        await service.update(created.id, TransactionUpdate(owner_id=owner_b))

        stored = await db.transactions.find_one({"transaction_id": created.transaction_id})
        assert stored["owner_name"] == "Meera Jewellers"

    async def test_item_change_rederives_total_and_summary(self, db, service, owners, employee_id):
        created = await service.create(make_create(employee_id, pcs=1, gold=1.0))

        await service.update(created.id, TransactionUpdate(items=[
            TransactionItem(description="Chain", pcs=2, net_wt=4.0, gold=3.5),
            TransactionItem(description="Stud", pcs=2, net_wt=1.0, gold=0.5),
        ]))

        stored = await db.transactions.find_one({"transaction_id": created.transaction_id})
        assert stored["total"] == {"pcs": 4, "net_wt": 5.0, "inch_ibr": 0.0, "gold": 4.0}
        owner = await owners.get(employee_id)
        assert owner["total_pcs"] == 4
        assert owner["total_gold"] == 4.0

    async def test_closing_balance_edit_moves_owner_balance(self, service, owners, employee_id):
        await service.create(make_create(employee_id, closing={"gold": 1.0, "cash": 10.0}))
        latest = await service.create(make_create(employee_id, closing={"gold": 2.0, "cash": 20.0}))

        await service.update(latest.id, TransactionUpdate(closing_balance={"gold": 7.5, "cash": -5.0}))

        owner = await owners.get(employee_id)
        assert owner["closing_gold_balance"] == 7.5
        assert owner["closing_cash_balance"] == -5.0

    async def test_identity_fields_are_not_patchable(self, db, service, employee_id):
        created = await service.create(make_create(employee_id))

        await service.update(created.id, TransactionUpdate(notes="polished"))

        stored = await db.transactions.find_one({"transaction_id": created.transaction_id})
        assert stored["notes"] == "polished"
        assert stored["date"] == "2026-03-14"

    async def test_unknown_transaction_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.update(UNKNOWN_ID, TransactionUpdate(notes="x"))

    async def test_reassignment_to_unknown_owner_is_not_found(self, db, service, employee_id):
        created = await service.create(make_create(employee_id))

        with pytest.raises(NotFoundError):
            await service.update(created.id, TransactionUpdate(owner_id=UNKNOWN_ID))

        stored = await db.transactions.find_one({"transaction_id": created.transaction_id})
        assert stored["owner_id"] == employee_id

    async def test_empty_patch_is_invalid(self, service, employee_id):
        created = await service.create(make_create(employee_id))

        with pytest.raises(InvalidInputError):
            await service.update(created.id, TransactionUpdate())

    async def test_malformed_id_is_invalid(self, service):
        with pytest.raises(InvalidInputError):
            await service.update("not-an-id", TransactionUpdate(notes="x"))


class TestDelete:

    async def test_delete_last_transaction_resets_summary(self, db, service, owners, employee_id):
        created = await service.create(make_create(employee_id, pcs=5, net_wt=2.5, gold=2.0))

        result = await service.delete(created.id)

        assert result.ledger_status == "current"
        assert db.transactions.documents == []
        owner = await owners.get(employee_id)
        assert owner["total_pcs"] == 0
        assert owner["total_net_wt"] == 0
        assert owner["total_gold"] == 0
        assert owner["total_gold_bar_weight"] == 0
        assert owner["closing_gold_balance"] == 0
        assert owner["closing_cash_balance"] == 0
        assert owner["last_transaction_date"] is None

    async def test_delete_refolds_remaining_transactions(self, service, owners, employee_id):
        first = await service.create(make_create(employee_id, gold=1.0, closing={"gold": 1.0, "cash": 0.0}))
        second = await service.create(make_create(employee_id, gold=2.0, closing={"gold": 3.0, "cash": 0.0}))

        await service.delete(second.id)

        owner = await owners.get(employee_id)
        assert owner["total_gold"] == 1.0
        assert owner["closing_gold_balance"] == 1.0
        assert first.transaction_id

    async def test_unknown_transaction_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.delete(UNKNOWN_ID)

    async def test_delete_failure_is_storage_failure(self, db, service, employee_id):
        created = await service.create(make_create(employee_id))
        db.transactions.fail_on("delete_one")

        with pytest.raises(StorageFailureError):
            await service.delete(created.id)
        assert len(db.transactions.documents) == 1


class TestStaleLedger:

    async def test_recalculation_failure_keeps_the_write_and_queues_owner(self, db, service, owners, employee_id):
        db.employees.fail_on("update_one")

        result = await service.create(make_create(employee_id, gold=4.0))

        assert result.ledger_stale
        assert result.ledger_status == "stale"
        assert result.stale_owner_ids == [employee_id]
        assert len(db.transactions.documents) == 1
        assert (await owners.get(employee_id))["total_gold"] == 0.0

        queue = RecalculationRetryQueue(db, service.engine)
        pending = await queue.pending()
        assert [(e["owner_id"], e["status"]) for e in pending] == [(employee_id, RetryStatus.PENDING)]

        db.employees.clear_failures()
        report = await queue.process_due()

        assert report["recovered"] == [employee_id]
        assert (await owners.get(employee_id))["total_gold"] == 4.0
        assert await queue.pending() == []

    async def test_retry_recalculation_repairs_summary(self, db, service, owners, employee_id):
        db.employees.fail_on("update_one", times=1)
        await service.create(make_create(employee_id, gold=6.0))
        assert (await owners.get(employee_id))["total_gold"] == 0.0

        summary = await service.retry_recalculation(employee_id)

        assert summary.total_gold == 6.0
        assert (await owners.get(employee_id))["total_gold"] == 6.0

    async def test_retry_recalculation_for_unknown_owner(self, service):
        with pytest.raises(NotFoundError):
            await service.retry_recalculation(UNKNOWN_ID)

    async def test_partial_reassignment_failure_reports_stale_owner(self, db, service, owners, owners_pair):
        owner_a, owner_b = owners_pair
        created = await service.create(make_create(owner_a, gold=20.0))
        db.clients.fail_on("update_one")

        result = await service.update(created.id, TransactionUpdate(owner_id=owner_b))

        assert result.stale_owner_ids == [owner_b]
        assert (await owners.get(owner_a))["total_gold"] == 0.0
        assert (await owners.get(owner_b))["total_gold"] == 0.0

        db.clients.clear_failures()
        await service.retry_recalculation(owner_b)
        assert (await owners.get(owner_b))["total_gold"] == 20.0


    async def test_malformed_legacy_transaction_marks_ledger_stale(self, db, service, employee_id):
        await db.transactions.insert_one({
            "transaction_id": "TXN-20260301-001", "date": "2026-03-01", "time": "09:00:00",
            "owner_id": employee_id, "total": {"gold": "12,5"}
        })

        result = await service.create(make_create(employee_id, gold=1.0))

        assert result.stale_owner_ids == [employee_id]
        assert len(db.transactions.documents) == 2
        pending = await RecalculationRetryQueue(db, service.engine).pending()
        assert [e["owner_id"] for e in pending] == [employee_id]


class TestOwnerIdSpelling:

    async def test_uppercase_owner_id_is_stored_canonically(self, db, service, owners, employee_id):
        result = await service.create(make_create(employee_id.upper(), gold=7.0))

        stored = await db.transactions.find_one({"transaction_id": result.transaction_id})
        assert stored["owner_id"] == employee_id
        assert (await owners.get(employee_id))["total_gold"] == 7.0

    async def test_integrity_repair_keeps_totals_of_uppercase_entries(self, db, service, owners, engine, employee_id):
        await service.create(make_create(employee_id.upper(), gold=7.0))

        report = await LedgerIntegrityJob(owners, engine).run(repair=True)

        assert report["mismatches_found"] == 0
        assert (await owners.get(employee_id))["total_gold"] == 7.0

    async def test_same_owner_in_other_case_is_not_a_reassignment(self, db, service, owners, employee_id):
        created = await service.create(make_create(employee_id, gold=5.0))

        result = await service.update(created.id, TransactionUpdate(owner_id=employee_id.upper(), notes="recut"))

        assert result.ledger_status == "current"
        stored = await db.transactions.find_one({"transaction_id": created.transaction_id})
        assert stored["owner_id"] == employee_id
        assert stored["owner_name"] == "Ravi Karigar"
        assert (await owners.get(employee_id))["total_gold"] == 5.0

    async def test_reassignment_with_uppercase_id_moves_totals(self, service, owners, owners_pair):
        owner_a, owner_b = owners_pair
        created = await service.create(make_create(owner_a, gold=20.0))

        await service.update(created.id, TransactionUpdate(owner_id=owner_b.upper()))

        assert (await owners.get(owner_a))["total_gold"] == 0.0
        assert (await owners.get(owner_b))["total_gold"] == 20.0


@pytest.fixture
def owners_pair(employee_id, client_id):
    return employee_id, client_id
