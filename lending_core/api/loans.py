"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..errors import LendingError
from .system import LendingSystem, get_lending_system, http_error


router = APIRouter()


@router.get("")
async def list_loans(
    q: Optional[str] = None,
    borrower_id: Optional[str] = Query(None, alias="borrowerId"),
    page: int = 1,
    per_page: Optional[int] = Query(None, alias="perPage"),
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, newest first"""
    try:
        loans, total = await system.loans.list_loans(
            q=q, borrower_id=borrower_id, page=page, per_page=per_page
        )
    except LendingError as e:
        raise http_error(e)
    return {"data": loans, "total": total, "page": page}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get a loan with its disbursement, schedule and payments"""
    try:
        return await system.loans.get_loan(loan_id)
    except LendingError as e:
        raise http_error(e)
