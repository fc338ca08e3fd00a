"""
Shared fixtures for the lending core test suite
"""

from datetime import date, datetime, timezone
from decimal import Decimal
import uuid

import pytest

from lending_core.api.system import LendingSystem
from lending_core.config import get_config
from lending_core.models import Loan, LoanStatus
from lending_core.schemas import CreateDisbursementRequest


LOAN_CREATED_AT = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def system():
    """Lending system over a fresh in-memory store"""
    return LendingSystem()


@pytest.fixture
def funded_platform(monkeypatch):
    """Opening platform balance large enough for any test disbursement"""
    monkeypatch.setattr(get_config(), "platform_opening_balance", "1000000.00")


@pytest.fixture
def make_loan():
    """Factory inserting a loan straight into the store"""

    async def _make_loan(
        system: LendingSystem,
        amount: str = "10000.00",
        interest_rate: str = "12",
        tenor: int = 12,
        status: LoanStatus = LoanStatus.APPROVED,
        borrower_id: str = None,
        created_at: datetime = LOAN_CREATED_AT
    ) -> Loan:
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=created_at,
            updated_at=created_at,
            borrower_id=borrower_id or str(uuid.uuid4()),
            amount=Decimal(amount),
            interest_rate=Decimal(interest_rate),
            tenor=tenor,
            status=status,
            currency="USD",
        )
        await system.uow.reader().loans.insert(loan)
        return loan

    return _make_loan


def disbursement_request(loan: Loan, **overrides) -> CreateDisbursementRequest:
    """Disbursement payload matching the loan's terms"""
    payload = {
        "loanId": loan.id,
        "borrowerId": loan.borrower_id,
        "amount": str(loan.amount),
        "currency": "USD",
        "disbursementDate": date(2024, 1, 1),
        "firstPaymentDate": date(2024, 2, 1),
        "tenor": loan.tenor,
        "interestRate": str(loan.interest_rate),
    }
    payload.update(overrides)
    return CreateDisbursementRequest(**payload)


@pytest.fixture
def disbursement_payload():
    """Builder for disbursement payloads"""
    return disbursement_request
