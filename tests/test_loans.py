"""
Tests for loan reads: lookup, paginated listing and audit by loan
"""

import pytest
from datetime import datetime, timedelta, timezone

from lending_core.errors import NotFoundError, ValidationError
from lending_core.models import LoanStatus


pytestmark = pytest.mark.usefixtures("funded_platform")


class TestGetLoan:
    """Test single loan lookup"""

    @pytest.mark.asyncio
    async def test_undisbursed_loan(self, system, make_loan):
        loan = await make_loan(system)

        result = await system.loans.get_loan(loan.id)

        assert result["id"] == loan.id
        assert result["status"] == "APPROVED"
        assert result["amount"] == "10000.00"
        assert result["disbursement"] is None
        assert result["disbursements"] == []
        assert result["schedules"] == []
        assert result["payments"] == []

    @pytest.mark.asyncio
    async def test_disbursed_loan(self, system, make_loan, disbursement_payload):
        loan = await make_loan(system)
        created = await system.disbursements.create_disbursement(disbursement_payload(loan))

        result = await system.loans.get_loan(loan.id)

        assert result["status"] == "ACTIVE"
        assert result["disbursement"]["id"] == created["id"]
        assert len(result["schedules"]) == 12
        assert result["schedules"][0]["installment_number"] == 1

    @pytest.mark.asyncio
    async def test_rolled_back_disbursement_is_not_live(self, system, make_loan, disbursement_payload):
        loan = await make_loan(system)
        created = await system.disbursements.create_disbursement(disbursement_payload(loan))
        await system.disbursements.rollback_disbursement(created["id"], reason="Wrong account")

        result = await system.loans.get_loan(loan.id)

        assert result["disbursement"] is None
        assert [d["id"] for d in result["disbursements"]] == [created["id"]]
        assert result["disbursements"][0]["status"] == "rolled_back"

    @pytest.mark.asyncio
    async def test_missing_loan(self, system):
        with pytest.raises(NotFoundError):
            await system.loans.get_loan("missing")


class TestListLoans:
    """Test loan listing"""

    async def _seed(self, system, make_loan):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        loans = []
        for i in range(5):
            loans.append(await make_loan(
                system,
                borrower_id="borrower-a" if i % 2 == 0 else "borrower-b",
                status=LoanStatus.PENDING if i == 4 else LoanStatus.APPROVED,
                created_at=base + timedelta(days=i),
            ))
        return loans

    @pytest.mark.asyncio
    async def test_newest_first(self, system, make_loan):
        loans = await self._seed(system, make_loan)

        data, total = await system.loans.list_loans()

        assert total == 5
        assert [d["id"] for d in data] == [l.id for l in reversed(loans)]

    @pytest.mark.asyncio
    async def test_borrower_filter(self, system, make_loan):
        await self._seed(system, make_loan)

        data, total = await system.loans.list_loans(borrower_id="borrower-b")

        assert total == 2
        assert {d["borrower_id"] for d in data} == {"borrower-b"}

    @pytest.mark.asyncio
    async def test_free_text_search(self, system, make_loan):
        loans = await self._seed(system, make_loan)

        data, total = await system.loans.list_loans(q="pending")
        assert total == 1
        assert data[0]["id"] == loans[4].id

        data, total = await system.loans.list_loans(q=loans[1].id[:8].upper())
        assert loans[1].id in [d["id"] for d in data]

    @pytest.mark.asyncio
    async def test_pagination(self, system, make_loan):
        loans = await self._seed(system, make_loan)

        first, total = await system.loans.list_loans(page=1, per_page=2)
        third, _ = await system.loans.list_loans(page=3, per_page=2)
        beyond, _ = await system.loans.list_loans(page=4, per_page=2)

        assert total == 5
        assert [d["id"] for d in first] == [loans[4].id, loans[3].id]
        assert [d["id"] for d in third] == [loans[0].id]
        assert beyond == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,per_page", [(0, 10), (-1, 10), (1, 101)])
    async def test_invalid_paging(self, system, page, per_page):
        with pytest.raises(ValidationError):
            await system.loans.list_loans(page=page, per_page=per_page)


class TestAuditByLoan:
    """Test audit entries scoped to a loan"""

    @pytest.mark.asyncio
    async def test_entries_newest_first(self, system, make_loan, disbursement_payload):
        loan = await make_loan(system)
        other = await make_loan(system)
        created = await system.disbursements.create_disbursement(disbursement_payload(loan))
        await system.disbursements.create_disbursement(disbursement_payload(other))
        await system.disbursements.rollback_disbursement(created["id"], reason="Duplicate")

        entries = await system.loans.get_audit_logs_by_loan(loan.id)

        assert [e.operation for e in entries] == ["DISBURSEMENT_ROLLBACK", "LOAN_DISBURSEMENT"]
        assert all(e.metadata["loanId"] == loan.id for e in entries)

    @pytest.mark.asyncio
    async def test_unknown_loan_has_no_entries(self, system):
        assert await system.loans.get_audit_logs_by_loan("missing") == []
