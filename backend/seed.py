"""
Seed script for the Jewelry Ledger.

Creates:
- 1 Employee (Ravi Karigar) and 1 Client (Meera Jewellers)
- 2 sample transactions for the employee through the mutation service,
  so identifiers, totals and the employee summary are produced exactly as
  the API would produce them
- Indexes
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
import os
from pathlib import Path
from dotenv import load_dotenv
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

from models import OwnerCreate, TransactionCreate, TransactionItem, GoldBar, ClosingBalance
from server import LedgerServices

# Load environment
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'jewelry_ledger')


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]
    services = LedgerServices(db)

    print("🌱 Starting database seeding...")

    try:
        # ============================================
        # 1. CREATE OWNERS
        # ============================================
        print("👤 Creating owners...")

        existing_employee = await db.employees.find_one({"phone": "9800000001"})
        if existing_employee:
            print("   ⚠️  Employee already exists. Skipping...")
            employee_id = str(existing_employee["_id"])
        else:
            employee = OwnerCreate(name="Ravi Karigar", phone="9800000001", email="ravi@example.com")
            employee_id = await services.owners.create("employees", employee.dict(exclude_none=True))
            print(f"   ✅ Employee created: {employee_id}")

        existing_client = await db.clients.find_one({"phone": "9800000002"})
        if existing_client:
            print("   ⚠️  Client already exists. Skipping...")
        else:
            jeweller = OwnerCreate(name="Meera Jewellers", phone="9800000002", address="Zaveri Bazaar, Mumbai")
            client_id = await services.owners.create("clients", jeweller.dict(exclude_none=True))
            print(f"   ✅ Client created: {client_id}")

        # ============================================
        # 2. CREATE SAMPLE TRANSACTIONS
        # ============================================
        print("🧾 Creating sample transactions...")

        if await db.transactions.count_documents({"owner_id": employee_id}) > 0:
            print("   ⚠️  Employee already has transactions. Skipping...")
        else:
            samples = [
                TransactionCreate(
                    owner_id=employee_id,
                    items=[
                        TransactionItem(description="Bangle", pcs=4, net_wt=40.250, add_wt=0.500, inch_ibr=2.0, gold=36.225),
                        TransactionItem(description="Ring", pcs=6, net_wt=18.000, add_wt=0.120, inch_ibr=0.0, gold=16.200),
                    ],
                    gold_bar=GoldBar(weight=10.0, amount=62000.0),
                    closing_balance=ClosingBalance(gold=42.425, cash=-62000.0),
                    notes="Opening work"
                ),
                TransactionCreate(
                    owner_id=employee_id,
                    items=[
                        TransactionItem(description="Chain", pcs=1, net_wt=22.500, add_wt=0.0, inch_ibr=18.0, gold=20.250),
                    ],
                    closing_balance=ClosingBalance(gold=22.175, cash=-62000.0)
                ),
            ]
            for sample in samples:
                result = await services.mutations.create(sample)
                print(f"   ✅ Transaction created: {result.transaction_id} (ledger {result.ledger_status})")

        # ============================================
        # 3. CREATE INDEXES
        # ============================================
        print("📇 Creating database indexes...")
        await services.create_indexes()
        await db.employees.create_index("phone")
        await db.clients.create_index("phone")
        print("   ✅ Indexes created")

        # ============================================
        # SUMMARY
        # ============================================
        employee = await services.owners.get(employee_id)
        print("\n" + "="*60)
        print("✨ DATABASE SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n👤 Employee ID: {employee_id}")
        print(f"🪙 Total gold: {employee.get('total_gold')}")
        print(f"⚖️  Closing gold balance: {employee.get('closing_gold_balance')}")
        print(f"📅 Last transaction: {employee.get('last_transaction_date')}")
        print("\n📖 API Documentation: http://localhost:8001/docs")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
