"""
Repayment endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, status

from ..errors import LendingError
from ..models import record_dict
from ..schemas import CreateRepaymentRequest, RollbackRequest
from .system import LendingSystem, get_lending_system, http_error


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_repayment(
    request: CreateRepaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a repayment"""
    try:
        return await system.repayments.record_repayment(request)
    except LendingError as e:
        raise http_error(e)


@router.post("/{payment_id}/rollback")
async def rollback_repayment(
    payment_id: str,
    request: RollbackRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse a repayment"""
    try:
        return await system.repayments.rollback_repayment(
            payment_id, reason=request.reason, performed_by=request.performed_by
        )
    except LendingError as e:
        raise http_error(e)


@router.get("/{loan_id}/history")
async def get_payment_history(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        payments = await system.repayments.get_payment_history(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {"payments": [record_dict(p) for p in payments]}


@router.get("/{loan_id}/schedule")
async def get_repayment_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    try:
        entries = await system.repayments.get_repayment_schedule(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {"schedule": [record_dict(e) for e in entries]}


@router.get("/{loan_id}/due-now")
async def get_due_now(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Overdue installments, projected late fees and the next installment"""
    try:
        return await system.repayments.calculate_due_now(loan_id, as_of=as_of)
    except LendingError as e:
        raise http_error(e)
