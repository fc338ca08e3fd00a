"""
Tests for the repayment processor

Recording payments (interest accrual, days late, tiered fee, waterfall and
schedule status), due-now projections, and repayment reads.
"""

import pytest
import pytest_asyncio
from datetime import date
from decimal import Decimal

from lending_core.calculations import project_late_fee
from lending_core.errors import (
    IntegrityViolation, InvalidStateError, NotFoundError, PaymentInsufficientError,
    ValidationError,
)
from lending_core.models import PaymentStatus, ScheduleStatus
from lending_core.schemas import CreateRepaymentRequest
from lending_core.unit_of_work import PAYMENTS_TABLE, PaymentRepository


pytestmark = pytest.mark.usefixtures("funded_platform")


@pytest_asyncio.fixture
async def disbursed_loan(system, make_loan, disbursement_payload, funded_platform):
    """10000 at 12% over 12 months, created 2024-01-01, first due 2024-02-01"""
    loan = await make_loan(system)
    await system.disbursements.create_disbursement(disbursement_payload(loan))
    return loan


def repayment(loan, amount, **extra) -> CreateRepaymentRequest:
    return CreateRepaymentRequest(loanId=loan.id, amount=amount, **extra)


class TestRecordRepayment:
    """Test recording repayments"""

    @pytest.mark.asyncio
    async def test_on_time_installment(self, system, disbursed_loan):
        """Interest accrued for 31 days, no fee, rest to principal, installment paid"""
        result = await system.repayments.record_repayment(
            repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1))
        )

        assert result["status"] == PaymentStatus.POSTED.value
        assert result["amount"] == "888.49"
        assert result["interest_paid"] == "101.92"
        assert result["late_fee_paid"] == "0.00"
        assert result["principal_paid"] == "786.57"
        assert result["days_late"] == 0

        schedule = await system.repayments.get_repayment_schedule(disbursed_loan.id)
        assert schedule[0].status == ScheduleStatus.PAID
        assert schedule[0].paid_date == date(2024, 2, 1)
        assert schedule[1].status == ScheduleStatus.PENDING

    @pytest.mark.asyncio
    async def test_partial_payment(self, system, disbursed_loan):
        await system.repayments.record_repayment(
            repayment(disbursed_loan, "300.00", paymentDate=date(2024, 2, 1))
        )

        schedule = await system.repayments.get_repayment_schedule(disbursed_loan.id)
        assert schedule[0].status == ScheduleStatus.PARTIALLY_PAID
        assert schedule[0].paid_date is None

    @pytest.mark.asyncio
    async def test_interest_accrues_from_last_payment(self, system, disbursed_loan):
        await system.repayments.record_repayment(
            repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1))
        )

        second = await system.repayments.record_repayment(
            repayment(disbursed_loan, "888.49", paymentDate=date(2024, 3, 1))
        )

        # 29 days on 10000 - 786.57 = 9213.43 at 12%
        assert second["interest_paid"] == "87.84"
        entries = await system.audit_trail.get_by_transaction(second["id"])
        assert entries[0].metadata["elapsedDays"] == 29
        assert entries[0].metadata["principalBeforePayment"] == "9213.43"

    @pytest.mark.asyncio
    async def test_same_day_accrues_one_day(self, system, disbursed_loan):
        result = await system.repayments.record_repayment(
            repayment(disbursed_loan, "100.00", paymentDate=date(2024, 1, 1))
        )

        # 10000 * 12% / 365, one day minimum
        assert result["interest_paid"] == "3.29"

    @pytest.mark.asyncio
    async def test_late_payment_uses_grace_and_tier(self, system, disbursed_loan):
        """38 days after the due date: 35 days late after grace, flat 50 fee"""
        result = await system.repayments.record_repayment(
            repayment(disbursed_loan, "1000.00", paymentDate=date(2024, 3, 10))
        )

        assert result["days_late"] == 35
        assert result["late_fee_paid"] == "50.00"
        assert result["interest_paid"] == "226.85"
        assert result["principal_paid"] == "723.15"

    @pytest.mark.asyncio
    async def test_supplied_days_late_without_fee(self, system, disbursed_loan):
        """daysLate=35 with no lateFeePaid gives the 50 tier"""
        result = await system.repayments.record_repayment(
            repayment(disbursed_loan, "100.00", paymentDate=date(2024, 2, 1),
                      daysLate=35, interestPaid="0")
        )

        assert result["days_late"] == 35
        assert result["late_fee_paid"] == "50.00"
        assert result["interest_paid"] == "0.00"
        assert result["principal_paid"] == "50.00"

    @pytest.mark.asyncio
    async def test_supplied_principal_caps_allocation(self, system, disbursed_loan):
        result = await system.repayments.record_repayment(
            repayment(disbursed_loan, "500.00", paymentDate=date(2024, 2, 1),
                      interestPaid="100.00", lateFeePaid="0", principalPaid="200.00")
        )

        assert result["interest_paid"] == "100.00"
        assert result["principal_paid"] == "200.00"
        entries = await system.audit_trail.get_by_transaction(result["id"])
        assert entries[0].metadata["unallocatedAmount"] == "200.00"

    @pytest.mark.asyncio
    async def test_insufficient_payment_rejected(self, system, disbursed_loan):
        with pytest.raises(PaymentInsufficientError) as exc_info:
            await system.repayments.record_repayment(
                repayment(disbursed_loan, "100.00", paymentDate=date(2024, 3, 10))
            )
        assert isinstance(exc_info.value, InvalidStateError)

        assert await system.repayments.get_payment_history(disbursed_loan.id) == []
        audit = await system.audit_trail.get_by_loan(disbursed_loan.id)
        assert [e.operation for e in audit] == ["LOAN_DISBURSEMENT"]

    @pytest.mark.asyncio
    async def test_audit_breakdown(self, system, disbursed_loan):
        result = await system.repayments.record_repayment(
            repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1)),
            performed_by="teller-7",
        )

        entries = await system.audit_trail.get_by_transaction(result["id"])
        assert len(entries) == 1
        entry = entries[0]
        assert entry.operation == "REPAYMENT_CREATE"
        assert entry.user_id == "teller-7"
        assert entry.metadata["loanId"] == disbursed_loan.id
        assert entry.metadata["accruedInterest"] == "101.92"
        assert entry.metadata["daysLate"] == 0
        assert entry.metadata["principalBeforePayment"] == "10000.00"
        assert entry.metadata["principalAfterPayment"] == "9213.43"
        assert entry.metadata["breakdown"] == {
            "interestPaid": "101.92", "lateFeePaid": "0.00", "principalPaid": "786.57",
        }
        assert entry.metadata["performedBy"] == "teller-7"

    @pytest.mark.asyncio
    async def test_unknown_loan(self, system):
        request = CreateRepaymentRequest(loanId="00000000-0000-4000-8000-000000000000", amount="10")
        with pytest.raises(NotFoundError):
            await system.repayments.record_repayment(request)

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, system, disbursed_loan):
        with pytest.raises(ValidationError):
            await system.repayments.record_repayment(
                repayment(disbursed_loan, "888.49", status="BOUNCED")
            )

    @pytest.mark.asyncio
    async def test_loan_without_schedule(self, system, make_loan):
        """No open installment: no days late, no schedule update"""
        loan = await make_loan(system)

        result = await system.repayments.record_repayment(
            repayment(loan, "50.00", paymentDate=date(2024, 1, 11))
        )
        assert result["days_late"] == 0
        assert result["interest_paid"] == "32.88"


class TestRepaymentStoreFailures:
    """Test how store constraint failures surface to callers"""

    @staticmethod
    def reject_payment_inserts(monkeypatch, kind, fields):
        async def insert(self, record):
            raise IntegrityViolation(kind, PAYMENTS_TABLE, fields)

        monkeypatch.setattr(PaymentRepository, "insert", insert)

    @pytest.mark.asyncio
    async def test_foreign_key_failure_is_invalid_reference(self, system, disbursed_loan, monkeypatch):
        self.reject_payment_inserts(monkeypatch, IntegrityViolation.FOREIGN_KEY, ("loan_id",))

        with pytest.raises(ValidationError) as exc_info:
            await system.repayments.record_repayment(
                repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1))
            )

        assert "Invalid loan reference" in str(exc_info.value)
        assert await system.uow.reader().payments.for_loan(disbursed_loan.id) == []

    @pytest.mark.asyncio
    async def test_unique_failure_is_duplicate_payment(self, system, disbursed_loan, monkeypatch):
        self.reject_payment_inserts(monkeypatch, IntegrityViolation.UNIQUE, ("id",))

        with pytest.raises(InvalidStateError) as exc_info:
            await system.repayments.record_repayment(
                repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1))
            )

        assert "Duplicate payment" in str(exc_info.value)
        reader = system.uow.reader()
        assert await reader.payments.for_loan(disbursed_loan.id) == []
        schedule = await reader.schedules.for_loan(disbursed_loan.id)
        assert schedule[0].status == ScheduleStatus.PENDING

    @pytest.mark.asyncio
    async def test_loan_removed_before_transaction(self, system, monkeypatch):
        """A loan that vanishes after the pre-check is still reported as missing"""
        async def passes(loan_id):
            return None

        monkeypatch.setattr(system.repayments, "_ensure_loan", passes)
        request = CreateRepaymentRequest(loanId="00000000-0000-4000-8000-000000000000", amount="10")

        with pytest.raises(NotFoundError) as exc_info:
            await system.repayments.record_repayment(request)
        assert "Loan not found" in str(exc_info.value)


class TestDueNow:
    """Test the due-now summary"""

    @pytest.mark.asyncio
    async def test_overdue_installments(self, system, disbursed_loan):
        result = await system.repayments.calculate_due_now(disbursed_loan.id, as_of=date(2024, 3, 5))

        schedule = await system.repayments.get_repayment_schedule(disbursed_loan.id)
        first, second, third = schedule[0], schedule[1], schedule[2]

        assert result["loan_id"] == disbursed_loan.id
        assert result["borrower_id"] == disbursed_loan.borrower_id
        assert result["loan_status"] == "ACTIVE"
        assert result["as_of_date"] == "2024-03-05"

        summary = result["summary"]
        assert summary["overdue_installments"] == 2
        assert Decimal(summary["principal_due"]) == first.principal_amount + second.principal_amount
        assert Decimal(summary["interest_due"]) == first.interest_amount + second.interest_amount
        assert Decimal(summary["total_due"]) == first.total_due + second.total_due
        assert summary["total_paid_late_fees"] == "0.00"

        projections = result["late_fee_calculations"]
        assert [p["installment_number"] for p in projections] == [1, 2]
        assert [p["days_late"] for p in projections] == [33, 4]
        # 33 days hits the 10% cap
        assert projections[0]["calculated_late_fee"] == "88.85"
        assert Decimal(projections[1]["calculated_late_fee"]) == project_late_fee(second.total_due, 4)
        assert Decimal(summary["total_calculated_late_fees"]) == (
            Decimal(projections[0]["calculated_late_fee"]) + Decimal(projections[1]["calculated_late_fee"])
        )

        assert result["next_installment"]["installment_number"] == 3
        assert result["next_installment"]["due_date"] == third.due_date.isoformat()

    @pytest.mark.asyncio
    async def test_payments_reduce_amount_due(self, system, disbursed_loan):
        await system.repayments.record_repayment(
            repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1))
        )

        result = await system.repayments.calculate_due_now(disbursed_loan.id, as_of=date(2024, 2, 15))

        # Installment 1 is paid, nothing else is due yet
        assert result["summary"]["overdue_installments"] == 0
        assert result["summary"]["total_due"] == "0.00"
        assert result["installments_due"] == []
        assert result["next_installment"]["installment_number"] == 2

    @pytest.mark.asyncio
    async def test_nothing_due_before_first_installment(self, system, disbursed_loan):
        result = await system.repayments.calculate_due_now(disbursed_loan.id, as_of=date(2024, 1, 15))

        assert result["summary"]["overdue_installments"] == 0
        assert result["summary"]["total_calculated_late_fees"] == "0.00"
        assert result["next_installment"]["installment_number"] == 1

    @pytest.mark.asyncio
    async def test_calculation_is_audited(self, system, disbursed_loan):
        await system.repayments.calculate_due_now(disbursed_loan.id, as_of=date(2024, 3, 5))

        entries = await system.audit_trail.get_by_transaction(disbursed_loan.id)
        assert [e.operation for e in entries] == ["REPAYMENT_CALCULATION"]
        assert entries[0].metadata["loanId"] == disbursed_loan.id
        assert entries[0].metadata["overdue_installments"] == 2

    @pytest.mark.asyncio
    async def test_unknown_loan(self, system):
        with pytest.raises(NotFoundError):
            await system.repayments.calculate_due_now("missing")


class TestRepaymentReads:
    """Test payment history and schedule reads"""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, system, disbursed_loan):
        await system.repayments.record_repayment(repayment(disbursed_loan, "888.49", paymentDate=date(2024, 2, 1)))
        await system.repayments.record_repayment(repayment(disbursed_loan, "888.49", paymentDate=date(2024, 3, 1)))

        history = await system.repayments.get_payment_history(disbursed_loan.id)
        assert [p.payment_date for p in history] == [date(2024, 3, 1), date(2024, 2, 1)]

    @pytest.mark.asyncio
    async def test_schedule_in_installment_order(self, system, disbursed_loan):
        schedule = await system.repayments.get_repayment_schedule(disbursed_loan.id)
        assert [e.installment_number for e in schedule] == list(range(1, 13))

    @pytest.mark.asyncio
    async def test_reads_require_loan(self, system):
        with pytest.raises(NotFoundError):
            await system.repayments.get_payment_history("missing")
        with pytest.raises(NotFoundError):
            await system.repayments.get_repayment_schedule("missing")
