from fastapi import FastAPI, APIRouter, HTTPException, status, Depends, Query
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from bson import ObjectId, Decimal128
import os
import logging
from pathlib import Path
from typing import List, Optional, Dict, Any
from datetime import datetime

# Import custom modules
from models import (
    Transaction, TransactionCreate, TransactionUpdate,
    OwnerSummaryResponse, AuditLog
)
from audit_service import AuditService
from owner_service import OwnerRepository
from ledger_service import LedgerRecalculationEngine, RecalculationError, RECALCULATION_FAILURES
from report_service import LedgerReportService, DEFAULT_LIST_LIMIT
from transaction_service import (
    TransactionMutationService, MutationResult,
    InvalidInputError, NotFoundError, StorageFailureError
)
from core.atomic_numbering import (
    TransactionIdGenerator, SequenceCollisionError, SequenceOverflowError
)
from core.recalculation_queue import RecalculationRetryQueue
from core.ledger_integrity_job import LedgerIntegrityJob


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, Decimal128):
            result[key] = float(value.to_decimal())
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else float(item.to_decimal()) if isinstance(item, Decimal128)
                else str(item) if isinstance(item, ObjectId)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'jewelry_ledger')
client = AsyncIOMotorClient(mongo_url)
db = client[db_name]


class LedgerServices:
    """Services sharing one database handle (and one set of per-owner locks)"""

    def __init__(self, database: AsyncIOMotorDatabase):
        self.db = database
        self.owners = OwnerRepository(database)
        self.engine = LedgerRecalculationEngine(database, self.owners)
        self.id_generator = TransactionIdGenerator(database)
        self.audit_service = AuditService(database)
        self.retry_queue = RecalculationRetryQueue(database, self.engine)
        self.mutations = TransactionMutationService(
            database,
            engine=self.engine,
            id_generator=self.id_generator,
            audit_service=self.audit_service,
            retry_queue=self.retry_queue
        )
        self.reports = LedgerReportService(database, self.owners)

    async def create_indexes(self):
        await self.id_generator.create_unique_constraints()
        await self.db.transactions.create_index([("owner_id", 1), ("date", 1), ("time", 1)])
        await self.db.transactions.create_index([("date", 1)])
        await self.db.pending_recalculations.create_index([("owner_id", 1), ("status", 1)])
        await self.db.audit_logs.create_index([("entity_type", 1), ("entity_id", 1), ("timestamp", 1)])


services = LedgerServices(db)


def get_services() -> LedgerServices:
    return services


# Create the main app
app = FastAPI(
    title="Jewelry Ledger",
    version="1.0.0",
    description="Transactions, owner ledgers and running gold/cash balances"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


def mutation_response(result: MutationResult, message: str, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    """
    A stale ledger is answered with 202: the change is saved, the owner
    totals will catch up after a recalculation retry.
    """
    body = {
        "message": message,
        "id": result.id,
        "transaction_id": result.transaction_id,
        "ledger_status": result.ledger_status
    }
    if result.ledger_stale:
        body["stale_owner_ids"] = result.stale_owner_ids
        body["detail"] = "Transaction saved; owner totals may be out of date until recalculation is retried"
        status_code = status.HTTP_202_ACCEPTED
    return JSONResponse(status_code=status_code, content=body)


def raise_http_error(e: Exception):
    if isinstance(e, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, SequenceOverflowError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


MUTATION_ERRORS = (
    InvalidInputError,
    NotFoundError,
    StorageFailureError,
    SequenceCollisionError,
    SequenceOverflowError,
)

# ============================================
# TRANSACTION ENDPOINTS
# ============================================

@api_router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    txn_data: TransactionCreate,
    svc: LedgerServices = Depends(get_services)
):
    """
    Create a transaction.
    Assigns TXN-YYYYMMDD-NNN, date and time, then refreshes the owner's totals.
    """
    try:
        result = await svc.mutations.create(txn_data, user_id=txn_data.created_by)
    except MUTATION_ERRORS as e:
        raise_http_error(e)

    return mutation_response(result, "Transaction created successfully", status.HTTP_201_CREATED)


@api_router.get("/transactions")
async def list_transactions(
    search: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    owner_id: Optional[str] = None,
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=500),
    svc: LedgerServices = Depends(get_services)
):
    transactions = await svc.reports.list_transactions(
        search=search,
        start_date=start_date,
        end_date=end_date,
        owner_id=owner_id,
        limit=limit
    )
    return {"transactions": [serialize_doc(t) for t in transactions]}


@api_router.get("/transactions/{txn_id}", response_model=Transaction)
async def get_transaction(txn_id: str, svc: LedgerServices = Depends(get_services)):
    txn = await svc.reports.get_transaction(txn_id)
    if not txn:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return Transaction(**serialize_doc(txn))


@api_router.get("/transactions/{txn_id}/history", response_model=List[AuditLog])
async def get_transaction_history(txn_id: str, svc: LedgerServices = Depends(get_services)):
    logs = await svc.audit_service.transaction_history(txn_id)
    return [AuditLog(**serialize_doc(log)) for log in logs]


@api_router.put("/transactions/{txn_id}")
async def update_transaction(
    txn_id: str,
    patch: TransactionUpdate,
    svc: LedgerServices = Depends(get_services)
):
    """
    Update a transaction.
    Refreshes the previous owner and, when reassigned, the new owner.
    """
    try:
        result = await svc.mutations.update(txn_id, patch)
    except MUTATION_ERRORS as e:
        raise_http_error(e)

    return mutation_response(result, "Transaction updated successfully")


@api_router.delete("/transactions/{txn_id}")
async def delete_transaction(txn_id: str, svc: LedgerServices = Depends(get_services)):
    try:
        result = await svc.mutations.delete(txn_id)
    except MUTATION_ERRORS as e:
        raise_http_error(e)

    return mutation_response(result, "Transaction deleted successfully")

# ============================================
# OWNER LEDGER ENDPOINTS
# ============================================

@api_router.post("/owners/{owner_id}/recalculate", response_model=OwnerSummaryResponse)
async def recalculate_owner(owner_id: str, svc: LedgerServices = Depends(get_services)):
    """Retry the summary recalculation for one owner"""
    try:
        summary = await svc.mutations.retry_recalculation(owner_id)
    except (NotFoundError, StorageFailureError) as e:
        raise_http_error(e)
    except RecalculationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Recalculation failed, ledger may be stale: {str(e)}"
        )

    return OwnerSummaryResponse(owner_id=owner_id, **summary.to_document())


@api_router.get("/owners/{owner_id}/statement")
async def get_owner_statement(owner_id: str, svc: LedgerServices = Depends(get_services)):
    statement = await svc.reports.owner_statement(owner_id)
    if statement is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Owner not found")
    return {
        "owner": serialize_doc(statement["owner"]),
        "summary": statement["summary"],
        "transactions": [serialize_doc(t) for t in statement["transactions"]]
    }


@api_router.get("/dashboard")
async def get_dashboard(svc: LedgerServices = Depends(get_services)):
    stats = await svc.reports.dashboard_stats()
    stats["recent_transactions"] = [serialize_doc(t) for t in stats["recent_transactions"]]
    return {"stats": stats}

# ============================================
# MAINTENANCE JOBS
# ============================================

@api_router.post("/jobs/recalculation-retry")
async def run_recalculation_retry(svc: LedgerServices = Depends(get_services)):
    return await svc.retry_queue.process_due()


@api_router.post("/jobs/ledger-integrity")
async def run_ledger_integrity(repair: bool = False, svc: LedgerServices = Depends(get_services)):
    job = LedgerIntegrityJob(svc.owners, svc.engine)
    try:
        return await job.run(repair=repair)
    except (RecalculationError, *RECALCULATION_FAILURES) as e:
        logger.error(f"[INTEGRITY] Job failed: {str(e)}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@api_router.get("/health")
async def health():
    return {"status": "healthy", "service": "jewelry-ledger"}


app.include_router(api_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def create_indexes():
    try:
        await services.create_indexes()
    except PyMongoError as e:
        logger.warning(f"Index creation skipped: {str(e)}")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
