"""
LEDGER CORE - LEDGER INTEGRITY JOB

Background job that verifies owner summaries match the transactions.

For each client/employee:
1. Recompute the summary from the owner's transactions
2. Compare with the summary fields stored on the owner record
3. Log mismatches
4. Optionally repair by running a full recalculation

Catches drift from lost updates between concurrent writers and from
recalculations that never ran.

Usage:
    job = LedgerIntegrityJob(owners, engine)
    report = await job.run(repair=True)
"""

from decimal import Decimal
from datetime import datetime
from typing import Dict, Any, List
import logging

from core.aggregation import OwnerSummary
from core.ledger_precision import to_decimal

logger = logging.getLogger(__name__)

WEIGHT_FIELDS = (
    "total_net_wt",
    "total_inch_ibr",
    "total_gold",
    "total_gold_bar_weight",
    "closing_gold_balance",
)
AMOUNT_FIELDS = ("total_gold_bar_amount", "closing_cash_balance")
EXACT_FIELDS = ("total_pcs", "last_transaction_date")


class LedgerIntegrityJob:
    """
    Compares stored owner summaries against a fresh aggregation.

    Reports mismatches; repairs them only when asked.
    """

    WEIGHT_TOLERANCE = Decimal('0.001')
    AMOUNT_TOLERANCE = Decimal('0.01')

    def __init__(self, owners, engine):
        self.owners = owners
        self.engine = engine
        self.mismatches: List[Dict[str, Any]] = []
        self.checked_count = 0
        self.repaired_count = 0

    async def run(self, repair: bool = False) -> Dict[str, Any]:
        start_time = datetime.utcnow()
        self.mismatches = []
        self.checked_count = 0
        self.repaired_count = 0

        logger.info("[INTEGRITY] Starting ledger integrity check...")

        for owner_id in await self.owners.list_ids():
            await self._check_owner(owner_id, repair)

        end_time = datetime.utcnow()
        duration_ms = (end_time - start_time).total_seconds() * 1000

        report = {
            "job_name": "LedgerIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round(duration_ms, 2),
            "owners_checked": self.checked_count,
            "mismatches_found": len(self.mismatches),
            "owners_repaired": self.repaired_count,
            "mismatches": self.mismatches
        }

        if self.mismatches:
            logger.warning(
                f"[INTEGRITY] Completed with {len(self.mismatches)} mismatches "
                f"out of {self.checked_count} owners"
            )
        else:
            logger.info(f"[INTEGRITY] All {self.checked_count} owner summaries verified.")

        return report

    async def _check_owner(self, owner_id: str, repair: bool):
        owner = await self.owners.get(owner_id)
        if owner is None:
            return
        self.checked_count += 1

        calculated = await self.engine.compute_summary(owner_id)
        discrepancies = self.compare(OwnerSummary.from_document(owner), calculated)
        if not discrepancies:
            return

        self.mismatches.append({
            "owner_id": owner_id,
            "owner_kind": owner.get("owner_kind"),
            "checked_at": datetime.utcnow().isoformat(),
            "discrepancies": discrepancies
        })
        logger.warning(f"[INTEGRITY] MISMATCH owner={owner_id}, fields={len(discrepancies)}")
        for d in discrepancies:
            logger.warning(f"  - {d['field']}: stored={d['stored']}, calculated={d['calculated']}")

        if repair:
            await self.engine.recalculate(owner_id)
            self.repaired_count += 1

    def compare(self, stored: OwnerSummary, calculated: OwnerSummary) -> List[Dict[str, Any]]:
        """
        Returns:
            List of discrepancy records (empty if all match)
        """
        discrepancies = []
        checks = (
            [(f, self.WEIGHT_TOLERANCE) for f in WEIGHT_FIELDS]
            + [(f, self.AMOUNT_TOLERANCE) for f in AMOUNT_FIELDS]
        )

        for field, tolerance in checks:
            stored_value = getattr(stored, field)
            calc_value = getattr(calculated, field)
            if abs(to_decimal(stored_value) - to_decimal(calc_value)) > tolerance:
                discrepancies.append({
                    "field": field,
                    "stored": stored_value,
                    "calculated": calc_value
                })

        for field in EXACT_FIELDS:
            if getattr(stored, field) != getattr(calculated, field):
                discrepancies.append({
                    "field": field,
                    "stored": getattr(stored, field),
                    "calculated": getattr(calculated, field)
                })

        return discrepancies
