"""
Disbursement endpoints
"""

from fastapi import APIRouter, Depends, status

from ..errors import LendingError
from ..models import record_dict
from ..schemas import CreateDisbursementRequest, RollbackRequest
from .system import LendingSystem, get_lending_system, http_error


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_disbursement(
    request: CreateDisbursementRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse an approved loan"""
    try:
        return await system.disbursements.create_disbursement(request)
    except LendingError as e:
        raise http_error(e)


@router.get("/{disbursement_id}")
async def get_disbursement(
    disbursement_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a disbursement with its loan, schedule and payments"""
    try:
        return await system.disbursements.get_disbursement(disbursement_id)
    except LendingError as e:
        raise http_error(e)


@router.post("/{disbursement_id}/rollback")
async def rollback_disbursement(
    disbursement_id: str,
    request: RollbackRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Roll back a completed disbursement"""
    try:
        return await system.disbursements.rollback_disbursement(
            disbursement_id, reason=request.reason, performed_by=request.performed_by
        )
    except LendingError as e:
        raise http_error(e)


@router.get("/{disbursement_id}/audit")
async def get_disbursement_audit(
    disbursement_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Audit trail of a disbursement, oldest first"""
    entries = await system.disbursements.get_disbursement_audit_trail(disbursement_id)
    return {"entries": [record_dict(e) for e in entries]}
