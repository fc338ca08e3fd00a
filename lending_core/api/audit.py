"""
Audit trail endpoints
"""

from fastapi import APIRouter, Depends

from ..models import record_dict
from .system import LendingSystem, get_lending_system


router = APIRouter()


@router.get("/loans/{loan_id}")
async def get_audit_by_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Audit entries referencing a loan, newest first"""
    entries = await system.loans.get_audit_logs_by_loan(loan_id)
    return {"entries": [record_dict(e) for e in entries]}


@router.get("/transactions/{transaction_id}")
async def get_audit_by_transaction(
    transaction_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Audit entries for a transaction id, oldest first"""
    entries = await system.audit_trail.get_by_transaction(transaction_id)
    return {"entries": [record_dict(e) for e in entries]}


@router.get("/integrity")
async def verify_audit_integrity(system: LendingSystem = Depends(get_lending_system)):
    """Walk the audit hash chain"""
    return await system.audit_trail.verify_integrity()
