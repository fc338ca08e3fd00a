"""
Repayment Module

Records repayments against a disbursed loan and answers what is due now.

Recording a repayment accrues simple daily interest on the outstanding
principal since the later of the last posted payment and loan creation,
works out days late against the earliest open installment, applies the
flat tiered late fee, runs the interest -> late fee -> principal waterfall,
and posts the payment, schedule status change and audit entry in one atomic
transaction.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail
from .calculations import (
    allocate_payment, apply_grace_period, calculate_daily_interest,
    calculate_late_fee, project_late_fee,
)
from .config import get_config
from .errors import (
    IntegrityViolation, InvalidStateError, LendingError, NotFoundError,
    PaymentInsufficientError, UnknownFailureError, ValidationError,
)
from .logging_config import get_logger, log_action
from .models import (
    AuditOperation, Loan, Payment, PaymentStatus, RepaymentScheduleEntry,
    ScheduleStatus,
)
from .money import ZERO, money_str, optional_decimal, round_money, to_decimal
from .rollbacks import RollbackEngine
from .schemas import CreateRepaymentRequest
from .unit_of_work import TransactionContext, UnitOfWork, utcnow

DEFAULT_ROLLBACK_REASON = "MANUAL_ROLLBACK"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class RepaymentProcessor:
    """
    Repayment recording, due-now projection and repayment reads
    """

    def __init__(
        self,
        uow: UnitOfWork,
        audit: AuditTrail,
        rollbacks: RollbackEngine,
        logger: Optional[logging.Logger] = None
    ):
        self.uow = uow
        self.audit = audit
        self.rollbacks = rollbacks
        self.logger = logger or get_logger("lending.repayments")

    async def _ensure_loan(self, loan_id: str) -> Loan:
        loan = await self.uow.reader().loans.get(loan_id)
        if not loan:
            raise NotFoundError("Loan not found")
        return loan

    async def record_repayment(
        self,
        request: CreateRepaymentRequest,
        performed_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a repayment against a loan

        Args:
            request: Validated repayment payload
            performed_by: Identity recorded on the audit entry

        Returns:
            The posted payment
        """
        loan_id = str(request.loan_id)
        await self._ensure_loan(loan_id)

        amount = round_money(to_decimal(request.amount))
        payment_date = request.payment_date or utcnow().date()
        performer = performed_by or get_config().system_actor

        supplied_principal = optional_decimal(request.principal_paid, "principal_paid")
        supplied_interest = optional_decimal(request.interest_paid, "interest_paid")
        supplied_late_fee = optional_decimal(request.late_fee_paid, "late_fee_paid")

        if request.status is not None:
            try:
                status = PaymentStatus(request.status)
            except ValueError:
                raise ValidationError(f"Unsupported payment status: {request.status}")
        else:
            status = PaymentStatus.POSTED

        async def body(ctx: TransactionContext) -> Payment:
            loan = await ctx.loans.get(loan_id)
            if not loan:
                raise NotFoundError("Loan not found")

            # Interest accrues from the later of the last posted payment and loan creation
            since = loan.created_at.date()
            last = await ctx.payments.last_posted(loan_id)
            if last and last.payment_date and last.payment_date > since:
                since = last.payment_date
            elapsed_days = max(1, (payment_date - since).days)

            principal_paid_so_far = await ctx.payments.total("principal_paid", loan_id)
            principal_remaining = max(loan.amount - principal_paid_so_far, ZERO)
            accrued_interest = calculate_daily_interest(
                principal_remaining, loan.interest_rate, elapsed_days
            )

            open_entry = await ctx.schedules.first_open(loan_id)
            if request.days_late is not None:
                days_late = request.days_late
            elif open_entry is not None:
                days_late = apply_grace_period((payment_date - open_entry.due_date).days)
            else:
                days_late = 0

            late_fee = supplied_late_fee if supplied_late_fee is not None else calculate_late_fee(days_late)
            interest_due = supplied_interest if supplied_interest is not None else accrued_interest

            if amount < interest_due + late_fee:
                raise PaymentInsufficientError(
                    "Payment must cover interest and fees before principal: "
                    f"amount {money_str(amount)}, interest {money_str(interest_due)}, "
                    f"late fee {money_str(late_fee)}"
                )

            principal_cap = principal_remaining
            if supplied_principal is not None:
                principal_cap = min(principal_remaining, supplied_principal)

            allocation = allocate_payment(amount, interest_due, late_fee, principal_cap)
            if allocation.unallocated > ZERO:
                self.logger.warning(
                    f"Payment on loan {loan_id} exceeds what is owed; "
                    f"{money_str(allocation.unallocated)} left unallocated"
                )

            now = utcnow()
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=amount,
                payment_date=payment_date,
                principal_paid=allocation.principal_paid,
                interest_paid=allocation.interest_paid,
                late_fee_paid=allocation.late_fee_paid,
                days_late=days_late,
                status=status,
            )
            await ctx.payments.insert(payment)

            if open_entry is not None:
                await self._apply_to_installment(ctx, open_entry, allocation.principal_paid,
                                                 allocation.interest_paid, payment_date)

            await self.audit.record(
                ctx, payment.id, AuditOperation.REPAYMENT_CREATE,
                {
                    "loanId": loan_id,
                    "amount": money_str(amount),
                    "paymentDate": payment_date,
                    "breakdown": {
                        "interestPaid": money_str(allocation.interest_paid),
                        "lateFeePaid": money_str(allocation.late_fee_paid),
                        "principalPaid": money_str(allocation.principal_paid),
                    },
                    "accruedInterest": money_str(accrued_interest),
                    "daysLate": days_late,
                    "elapsedDays": elapsed_days,
                    "principalBeforePayment": money_str(principal_remaining),
                    "principalAfterPayment": money_str(principal_remaining - allocation.principal_paid),
                    "unallocatedAmount": money_str(allocation.unallocated),
                    "installmentNumber": open_entry.installment_number if open_entry else None,
                    "performedBy": performer,
                },
                user_id=performer,
            )
            return payment

        try:
            payment = await self.uow.with_transaction(body)
        except LendingError:
            self.logger.error(f"Repayment failed for loan {loan_id}", exc_info=True)
            raise
        except IntegrityViolation as e:
            self.logger.error(f"Repayment failed for loan {loan_id}", exc_info=True)
            if e.kind == IntegrityViolation.FOREIGN_KEY:
                raise ValidationError("Invalid loan reference") from e
            raise InvalidStateError("Duplicate payment") from e
        except Exception as e:
            self.logger.error(f"Repayment failed for loan {loan_id}", exc_info=True)
            loan_exists = await self.uow.reader().loans.get(loan_id) is not None
            raise UnknownFailureError(
                "Failed to record repayment",
                {"loanId": loan_id, "loanIdValid": _is_uuid(loan_id), "loanExists": loan_exists},
            ) from e

        log_action(
            self.logger, "info", f"Recorded repayment of {money_str(amount)} for loan {loan_id}",
            user_id=performer, action="repayment", resource=payment.id, loan_id=loan_id,
        )
        return payment.to_dict()

    async def _apply_to_installment(
        self,
        ctx: TransactionContext,
        entry: RepaymentScheduleEntry,
        principal_paid: Decimal,
        interest_paid: Decimal,
        payment_date: date
    ) -> None:
        if entry.total_due - (principal_paid + interest_paid) <= ZERO:
            await ctx.schedules.update(entry.id, status=ScheduleStatus.PAID, paid_date=payment_date)
        else:
            await ctx.schedules.update(entry.id, status=ScheduleStatus.PARTIALLY_PAID)

    async def calculate_due_now(
        self,
        loan_id: str,
        as_of: Optional[date] = None,
        performed_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Summarise what is owed on a loan today

        Overdue installments are open schedule entries due on or before the
        as-of date. Amounts already paid (net of compensations) are
        subtracted from their principal and interest. Late fees shown here
        are projections (a daily percentage of each installment, capped),
        not the flat fee applied when a payment is recorded.

        Args:
            loan_id: Loan to summarise
            as_of: Date to evaluate at (today when omitted)
            performed_by: Identity recorded on the audit entry

        Returns:
            Dictionary with summary, installments_due, late_fee_calculations
            and next_installment
        """
        loan = await self._ensure_loan(loan_id)
        as_of = as_of or utcnow().date()
        performer = performed_by or get_config().system_actor

        reader = self.uow.reader()
        due_entries = await reader.schedules.open_due_by(loan_id, as_of)
        next_entry = await reader.schedules.next_upcoming(loan_id, as_of)
        paid_principal = await reader.payments.total("principal_paid", loan_id)
        paid_interest = await reader.payments.total("interest_paid", loan_id)
        paid_late_fees = await reader.payments.total("late_fee_paid", loan_id)

        due_principal = sum((e.principal_amount for e in due_entries), ZERO)
        due_interest = sum((e.interest_amount for e in due_entries), ZERO)
        outstanding_principal = max(due_principal - paid_principal, ZERO)
        outstanding_interest = max(due_interest - paid_interest, ZERO)

        fee_projections = []
        for entry in due_entries:
            days_late = (as_of - entry.due_date).days
            fee_projections.append({
                "installment_number": entry.installment_number,
                "due_date": entry.due_date.isoformat(),
                "days_late": days_late,
                "calculated_late_fee": money_str(project_late_fee(entry.total_due, days_late)),
            })
        projected_total = sum((Decimal(p["calculated_late_fee"]) for p in fee_projections), ZERO)

        summary = {
            "overdue_installments": len(due_entries),
            "principal_due": money_str(outstanding_principal),
            "interest_due": money_str(outstanding_interest),
            "total_due": money_str(outstanding_principal + outstanding_interest),
            "total_paid_late_fees": money_str(paid_late_fees),
            "total_calculated_late_fees": money_str(projected_total),
        }

        await self.audit.record_standalone(
            loan_id, AuditOperation.REPAYMENT_CALCULATION,
            {"loanId": loan_id, "asOfDate": as_of, **summary},
            user_id=performer,
        )

        return {
            "loan_id": loan.id,
            "borrower_id": loan.borrower_id,
            "loan_status": loan.status.value,
            "as_of_date": as_of.isoformat(),
            "summary": summary,
            "installments_due": [
                {
                    "installment_number": e.installment_number,
                    "due_date": e.due_date.isoformat(),
                    "principal_due": money_str(e.principal_amount),
                    "interest_due": money_str(e.interest_amount),
                    "status": e.status.value,
                }
                for e in due_entries
            ],
            "late_fee_calculations": fee_projections,
            "next_installment": {
                "installment_number": next_entry.installment_number,
                "due_date": next_entry.due_date.isoformat(),
                "principal_due": money_str(next_entry.principal_amount),
                "interest_due": money_str(next_entry.interest_amount),
            } if next_entry else None,
        }

    async def get_payment_history(self, loan_id: str) -> List[Payment]:
        """Payments for a loan, most recent payment date first"""
        await self._ensure_loan(loan_id)
        return await self.uow.reader().payments.for_loan(loan_id)

    async def get_repayment_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Schedule entries for a loan in installment order"""
        await self._ensure_loan(loan_id)
        return await self.uow.reader().schedules.for_loan(loan_id)

    async def rollback_repayment(
        self,
        payment_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """Reverse a payment with a negated compensating entry"""
        if not await self.uow.reader().payments.get(payment_id):
            raise NotFoundError("Payment not found")
        return await self.rollbacks.rollback_transaction(
            payment_id, reason or DEFAULT_ROLLBACK_REASON, performed_by
        )
