"""
Loan read service: loan lookups, paginated listing and audit by loan.
"""

from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditTrail
from .config import get_config
from .errors import NotFoundError, ValidationError
from .models import AuditLogEntry, record_dict
from .unit_of_work import UnitOfWork


class LoanService:

    def __init__(self, uow: UnitOfWork, audit: AuditTrail):
        self.uow = uow
        self.audit = audit

    async def get_loan(self, loan_id: str) -> Dict[str, Any]:
        """Loan with its disbursements, schedule and payments"""
        reader = self.uow.reader()
        loan = await reader.loans.get(loan_id)
        if not loan:
            raise NotFoundError("Loan not found")

        disbursements = await reader.disbursements.for_loan(loan_id)
        live = [d for d in disbursements if not d.is_rolled_back]

        result = record_dict(loan)
        result["disbursement"] = record_dict(live[-1]) if live else None
        result["disbursements"] = [record_dict(d) for d in disbursements]
        result["schedules"] = [record_dict(e) for e in await reader.schedules.for_loan(loan_id)]
        result["payments"] = [record_dict(p) for p in await reader.payments.for_loan(loan_id)]
        return result

    async def list_loans(
        self,
        q: Optional[str] = None,
        borrower_id: Optional[str] = None,
        page: int = 1,
        per_page: Optional[int] = None
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        List loans newest first

        Args:
            q: Case-insensitive match on loan id, borrower id or status
            borrower_id: Exact borrower filter
            page: 1-based page number
            per_page: Page size (configured default when omitted)

        Returns:
            (loans on the page, total matching loans)
        """
        cfg = get_config()
        per_page = per_page or cfg.default_page_size
        if page < 1:
            raise ValidationError("page must be at least 1")
        if per_page < 1 or per_page > cfg.max_page_size:
            raise ValidationError(f"per_page must be between 1 and {cfg.max_page_size}")

        loans, total = await self.uow.reader().loans.search(
            q=q, borrower_id=borrower_id, limit=per_page, offset=(page - 1) * per_page
        )
        return [record_dict(loan) for loan in loans], total

    async def get_audit_logs_by_loan(self, loan_id: str) -> List[AuditLogEntry]:
        return await self.audit.get_by_loan(loan_id)
