"""
Shared fixtures for the ledger tests.

All tests run against the in-memory FakeDatabase; no MongoDB server needed.
"""
from datetime import datetime, timedelta

import pytest

from tests.fake_mongo import FakeDatabase
from owner_service import OwnerRepository
from ledger_service import LedgerRecalculationEngine
from transaction_service import TransactionMutationService
from core.atomic_numbering import TransactionIdGenerator


class FakeClock:
    """Callable clock that moves forward a fixed step on every reading"""

    def __init__(self, start: datetime, step: timedelta = timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def jump_to(self, moment: datetime):
        self.now = moment


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 14, 10, 0, 0))


@pytest.fixture
def owners(db):
    return OwnerRepository(db)


@pytest.fixture
def engine(db, owners):
    return LedgerRecalculationEngine(db, owners)


@pytest.fixture
def id_generator(db, clock):
    generator = TransactionIdGenerator(db, clock)
    generator.RETRY_DELAY_MS = 0
    return generator


@pytest.fixture
def service(db, engine, id_generator, clock):
    return TransactionMutationService(db, engine=engine, id_generator=id_generator, clock=clock)


@pytest.fixture
async def employee_id(owners):
    return await owners.create("employees", {"name": "Ravi Karigar", "phone": "9800000001"})


@pytest.fixture
async def client_id(owners):
    return await owners.create("clients", {"name": "Meera Jewellers", "phone": "9800000002"})

