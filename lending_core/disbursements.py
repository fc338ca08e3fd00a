"""
Disbursement Module

Releases an approved loan's principal: checks eligibility, guards platform
liquidity, generates the amortization schedule and writes the disbursement,
schedule and audit entry in one atomic transaction. A failed attempt leaves
nothing behind except a forensic RollbackRecord written afterwards.
"""

from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail
from .config import get_config
from .errors import (
    IntegrityViolation, InvalidStateError, LendingError, NotFoundError,
    PersistenceConflictError, UnknownFailureError,
)
from .liquidity import ensure_platform_funds
from .logging_config import get_logger, log_action
from .models import (
    ActionStatus, AuditLogEntry, AuditOperation, CompensatingAction,
    CompensatingActionType, Disbursement, DisbursementStatus, Loan, LoanStatus,
    RepaymentScheduleEntry, RollbackOperation, RollbackRecord, ScheduleStatus,
    record_dict,
)
from .money import Currency, money_str, round_money
from .rollbacks import RollbackEngine
from .schedule import build_amortization_schedule
from .schemas import CreateDisbursementRequest
from .unit_of_work import DISBURSEMENTS_TABLE, TransactionContext, UnitOfWork, utcnow

DEFAULT_ROLLBACK_REASON = "MANUAL_ROLLBACK"


class DisbursementOrchestrator:
    """
    Creates, reads and rolls back loan disbursements
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
        self.logger = logger or get_logger("lending.disbursements")

    async def create_disbursement(
        self,
        request: CreateDisbursementRequest,
        performed_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Disburse an approved loan

        Args:
            request: Validated disbursement payload
            performed_by: Identity recorded on the audit entry

        Returns:
            The completed disbursement with its loan joined
        """
        loan_id = str(request.loan_id)
        currency = Currency.from_code(request.currency)
        amount = round_money(request.amount, currency.precision)
        performer = performed_by or get_config().system_actor

        reader = self.uow.reader()
        loan = await reader.loans.get(loan_id)
        if not loan:
            raise NotFoundError("Loan not found")
        if loan.status != LoanStatus.APPROVED:
            raise InvalidStateError("Only approved loans can be disbursed")
        if await reader.disbursements.live_for_loan(loan_id):
            raise InvalidStateError("This loan has already been disbursed")

        schedule = build_amortization_schedule(
            amount, request.interest_rate, request.tenor, request.first_payment_date
        )

        # Generated up front so a failed attempt can still be recorded against it
        disbursement_id = str(uuid.uuid4())

        async def body(ctx: TransactionContext) -> Disbursement:
            await ensure_platform_funds(ctx, amount)

            now = utcnow()
            await ctx.disbursements.insert(Disbursement(
                id=disbursement_id,
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=amount,
                disbursement_date=request.disbursement_date,
                status=request.status or DisbursementStatus.PENDING,
                currency=currency.code,
                tenor=request.tenor,
                interest_rate=request.interest_rate,
                first_payment_date=request.first_payment_date,
                live_loan_id=loan_id,
            ))

            await ctx.schedules.insert_many([
                RepaymentScheduleEntry(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    installment_number=entry.installment_number,
                    due_date=entry.due_date,
                    principal_amount=entry.principal_amount,
                    interest_amount=entry.interest_amount,
                    status=ScheduleStatus.PENDING,
                )
                for entry in schedule
            ])

            await self.audit.record(
                ctx, disbursement_id, AuditOperation.LOAN_DISBURSEMENT,
                {
                    "loanId": loan_id,
                    "borrowerId": str(request.borrower_id),
                    "amount": money_str(amount),
                    "currency": currency.code,
                    "tenor": request.tenor,
                    "performedBy": performer,
                },
                user_id=performer,
            )

            completed = await ctx.disbursements.update(disbursement_id, status=DisbursementStatus.COMPLETED)
            await ctx.loans.set_status(loan_id, LoanStatus.ACTIVE)
            return completed

        try:
            completed = await self.uow.with_transaction(body)
        except LendingError as error:
            self.logger.error(f"Disbursement failed for loan {loan_id}: {error}", exc_info=True)
            await self._record_failed_attempt(disbursement_id, loan_id, amount, error, performer)
            raise
        except Exception as error:
            self.logger.error(f"Disbursement failed for loan {loan_id}", exc_info=True)
            await self._record_failed_attempt(disbursement_id, loan_id, amount, error, performer)
            raise self._translate_failure(error, loan_id, amount) from error

        log_action(
            self.logger, "info", f"Disbursed {money_str(amount)} {currency.code} for loan {loan_id}",
            user_id=performer, action="disburse", resource=disbursement_id, loan_id=loan_id,
        )
        loan = await self.uow.reader().loans.get(loan_id)
        return self._view(completed, loan)

    @staticmethod
    def _translate_failure(error: Exception, loan_id: str, amount) -> LendingError:
        """Map a non-domain failure to the error surfaced to the caller"""
        if isinstance(error, IntegrityViolation):
            if error.kind == IntegrityViolation.UNIQUE and error.table == DISBURSEMENTS_TABLE:
                return InvalidStateError("This loan has already been disbursed")
            return PersistenceConflictError(str(error))
        return UnknownFailureError(
            "Failed to create disbursement",
            {"loanId": loan_id, "attemptedAmount": money_str(amount)},
        )

    async def _record_failed_attempt(
        self,
        disbursement_id: str,
        loan_id: str,
        amount,
        error: Exception,
        performer: str
    ) -> None:
        """Best-effort forensic note about a disbursement whose transaction was discarded"""
        now = utcnow()
        record = RollbackRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=disbursement_id,
            original_operation=RollbackOperation.DISBURSEMENT,
            rollback_reason=str(error) or "UNKNOWN_ERROR",
            compensating_actions=[CompensatingAction(
                type=CompensatingActionType.RECORD_FAILED_DISBURSEMENT,
                description="Recorded failed disbursement attempt",
                status=ActionStatus.FAILED,
                metadata={
                    "loanId": loan_id,
                    "attemptedAmount": money_str(amount),
                    "errorType": type(error).__name__,
                },
                timestamp=now,
            )],
            rolled_back_by=performer,
        )
        try:
            await self.uow.reader().rollbacks.insert(record)
        except Exception:
            self.logger.error(
                f"Could not record failed disbursement attempt {disbursement_id}", exc_info=True
            )

    async def get_disbursement(self, disbursement_id: str) -> Dict[str, Any]:
        """Disbursement with its loan, schedule and payments"""
        reader = self.uow.reader()
        disbursement = await reader.disbursements.get(disbursement_id)
        if not disbursement:
            raise NotFoundError("Disbursement not found")

        loan = await reader.loans.get(disbursement.loan_id)
        result = self._view(disbursement, loan)
        if result["loan"] is not None:
            result["loan"]["schedules"] = [
                record_dict(e) for e in await reader.schedules.for_loan(disbursement.loan_id)
            ]
            result["loan"]["payments"] = [
                record_dict(p) for p in await reader.payments.for_loan(disbursement.loan_id)
            ]
        return result

    async def rollback_disbursement(
        self,
        disbursement_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Roll back a completed disbursement

        Args:
            disbursement_id: Disbursement to reverse
            reason: Rollback reason (MANUAL_ROLLBACK when omitted)
            performed_by: Identity recorded on the rollback

        Returns:
            The disbursement as it stands after the rollback, with the rollback snapshot
        """
        if not await self.uow.reader().disbursements.get(disbursement_id):
            raise NotFoundError("Disbursement not found")

        if not await self.rollbacks.can_rollback(disbursement_id):
            raise InvalidStateError("Disbursement is not eligible for rollback")

        snapshot = await self.rollbacks.rollback_transaction(
            disbursement_id, reason or DEFAULT_ROLLBACK_REASON, performed_by
        )

        result = await self.get_disbursement(disbursement_id)
        result["rollback"] = snapshot
        return result

    async def get_disbursement_audit_trail(self, disbursement_id: str) -> List[AuditLogEntry]:
        return await self.rollbacks.get_audit_trail(disbursement_id)

    @staticmethod
    def _view(disbursement: Disbursement, loan: Optional[Loan]) -> Dict[str, Any]:
        result = record_dict(disbursement)
        result["loan"] = record_dict(loan) if loan else None
        return result
