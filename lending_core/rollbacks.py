"""
Rollback / Compensation Engine

Reverses a completed disbursement or a posted repayment by applying
compensating actions inside one atomic transaction. Each transaction id can
be rolled back at most once: the RollbackRecord written alongside the
compensation closes eligibility for good.

Disbursement rollback removes the generated schedule and flags the
disbursement. Repayment rollback flags the payment and inserts a negated
compensating payment; amounts on the original are never changed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import logging
import uuid

from .audit import AuditTrail
from .config import get_config
from .errors import (
    IntegrityViolation, InvalidStateError, LendingError, NotFoundError,
    UnknownFailureError, ValidationError,
)
from .logging_config import get_logger, log_action
from .models import (
    ActionStatus, AuditLogEntry, AuditOperation, CompensatingAction,
    CompensatingActionType, Disbursement, DisbursementStatus, LoanStatus,
    Payment, PaymentStatus, RollbackOperation, RollbackRecord,
)
from .unit_of_work import ROLLBACKS_TABLE, TransactionContext, UnitOfWork, utcnow


@dataclass
class ResolvedTransaction:
    """A transaction id resolved to the entity it refers to"""
    operation: RollbackOperation
    entity: Union[Disbursement, Payment]


class RollbackEngine:
    """
    Compensating-transaction engine for disbursements and repayments
    """

    def __init__(
        self,
        uow: UnitOfWork,
        audit: AuditTrail,
        logger: Optional[logging.Logger] = None
    ):
        self.uow = uow
        self.audit = audit
        self.logger = logger or get_logger("lending.rollbacks")

    async def resolve(self, transaction_id: str, ctx: Optional[TransactionContext] = None) -> Optional[ResolvedTransaction]:
        """Look the id up as a disbursement first, then as a payment"""
        ctx = ctx or self.uow.reader()

        disbursement = await ctx.disbursements.get(transaction_id)
        if disbursement:
            return ResolvedTransaction(RollbackOperation.DISBURSEMENT, disbursement)

        payment = await ctx.payments.get(transaction_id)
        if payment:
            return ResolvedTransaction(RollbackOperation.REPAYMENT, payment)

        return None

    async def _eligible(self, ctx: TransactionContext, resolved: Optional[ResolvedTransaction]) -> bool:
        if resolved is None:
            return False

        if await ctx.rollbacks.for_transaction(resolved.entity.id):
            return False

        entity = resolved.entity
        if resolved.operation == RollbackOperation.DISBURSEMENT:
            return entity.status == DisbursementStatus.COMPLETED and entity.rolled_back_at is None
        return entity.status != PaymentStatus.ROLLED_BACK and entity.rolled_back_at is None

    async def can_rollback(self, transaction_id: str) -> bool:
        """
        Check whether a transaction may be rolled back

        True only when the id resolves, no rollback record exists for it, and
        the entity is in a reversible state (completed disbursement, or a
        payment not already rolled back).
        """
        ctx = self.uow.reader()
        return await self._eligible(ctx, await self.resolve(transaction_id, ctx))

    async def get_audit_trail(self, transaction_id: str) -> List[AuditLogEntry]:
        """Audit entries for a transaction id, oldest first"""
        return await self.audit.get_by_transaction(transaction_id)

    async def get_rollback_record(self, transaction_id: str) -> Optional[RollbackRecord]:
        return await self.uow.reader().rollbacks.for_transaction(transaction_id)

    async def rollback_transaction(
        self,
        transaction_id: str,
        reason: str,
        performed_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Roll back a disbursement or repayment

        Args:
            transaction_id: Disbursement or payment id
            reason: Why the transaction is being reversed (required)
            performed_by: Identity recorded on the audit entry and rollback record

        Returns:
            Snapshot of the RollbackRecord that was written
        """
        if not transaction_id:
            raise ValidationError("transaction_id is required")
        if not reason or not reason.strip():
            raise ValidationError("Rollback reason is required")
        reason = reason.strip()
        performer = performed_by or get_config().system_actor

        resolved = await self.resolve(transaction_id)
        if resolved is None:
            raise NotFoundError(f"No disbursement or repayment found for transaction {transaction_id}")

        if not await self.can_rollback(transaction_id):
            raise InvalidStateError("Transaction is not eligible for rollback")

        async def body(ctx: TransactionContext) -> RollbackRecord:
            # Re-check against the transaction's own view of the data
            current = await self.resolve(transaction_id, ctx)
            if not await self._eligible(ctx, current):
                raise InvalidStateError("Transaction is not eligible for rollback")
            if current.operation == RollbackOperation.DISBURSEMENT:
                return await self._rollback_disbursement(ctx, current.entity, reason, performer)
            return await self._rollback_repayment(ctx, current.entity, reason, performer)

        try:
            record = await self.uow.with_transaction(body)
        except LendingError:
            self.logger.error(f"Rollback failed for transaction {transaction_id}", exc_info=True)
            raise
        except IntegrityViolation as e:
            self.logger.error(f"Rollback failed for transaction {transaction_id}", exc_info=True)
            if e.kind == IntegrityViolation.UNIQUE and e.table == ROLLBACKS_TABLE:
                raise InvalidStateError("Transaction has already been rolled back")
            raise UnknownFailureError(
                "Unable to rollback transaction",
                {"transactionId": transaction_id, "operation": resolved.operation.value},
            ) from e
        except Exception as e:
            self.logger.error(f"Rollback failed for transaction {transaction_id}", exc_info=True)
            raise UnknownFailureError(
                f"Unable to rollback transaction: {e}",
                {"transactionId": transaction_id, "operation": resolved.operation.value},
            ) from e

        log_action(
            self.logger, "info", f"Rolled back {record.original_operation.value} {transaction_id}",
            user_id=performer, action="rollback", resource=transaction_id,
            loan_id=resolved.entity.loan_id,
            extra={"reason": reason},
        )
        return record.snapshot()

    async def _rollback_disbursement(
        self,
        ctx: TransactionContext,
        disbursement: Disbursement,
        reason: str,
        performer: str
    ) -> RollbackRecord:
        now = utcnow()
        actions = []

        removed = await ctx.schedules.delete_for_loan(disbursement.loan_id)
        actions.append(CompensatingAction(
            type=CompensatingActionType.REVERT_REPAYMENT_SCHEDULE,
            description="Removed generated repayment schedules for loan",
            status=ActionStatus.COMPLETED,
            metadata={"loanId": disbursement.loan_id, "removedCount": removed},
            timestamp=now,
        ))

        await ctx.disbursements.update(
            disbursement.id,
            status=DisbursementStatus.ROLLED_BACK,
            rolled_back_at=now,
            live_loan_id=None,
        )
        loan = await ctx.loans.get(disbursement.loan_id)
        previous_loan_status = loan.status if loan else None
        loan_status = previous_loan_status
        if previous_loan_status == LoanStatus.ACTIVE:
            await ctx.loans.set_status(loan.id, LoanStatus.APPROVED)
            loan_status = LoanStatus.APPROVED

        actions.append(CompensatingAction(
            type=CompensatingActionType.MARK_DISBURSEMENT_ROLLED_BACK,
            description="Flagged disbursement as rolled back",
            status=ActionStatus.COMPLETED,
            metadata={
                "disbursementId": disbursement.id,
                "previousStatus": disbursement.status,
                "previousLoanStatus": previous_loan_status,
                "loanStatus": loan_status,
            },
            timestamp=now,
        ))

        await self.audit.record(
            ctx, disbursement.id, AuditOperation.DISBURSEMENT_ROLLBACK,
            {
                "loanId": disbursement.loan_id,
                "reason": reason,
                "rolledBackAt": now,
                "rolledBackBy": performer,
            },
            user_id=performer,
        )

        return await self._write_record(ctx, disbursement.id, RollbackOperation.DISBURSEMENT,
                                        reason, actions, performer, now)

    async def _rollback_repayment(
        self,
        ctx: TransactionContext,
        payment: Payment,
        reason: str,
        performer: str
    ) -> RollbackRecord:
        now = utcnow()
        actions = []

        await ctx.payments.update(payment.id, status=PaymentStatus.ROLLED_BACK, rolled_back_at=now)
        actions.append(CompensatingAction(
            type=CompensatingActionType.MARK_PAYMENT_ROLLED_BACK,
            description="Flagged repayment record as rolled back",
            status=ActionStatus.COMPLETED,
            metadata={"paymentId": payment.id, "loanId": payment.loan_id},
            timestamp=now,
        ))

        compensation = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=payment.loan_id,
            amount=-payment.amount,
            payment_date=now.date(),
            principal_paid=-payment.principal_paid,
            interest_paid=-payment.interest_paid,
            late_fee_paid=-payment.late_fee_paid,
            days_late=payment.days_late,
            status=PaymentStatus.ROLLBACK_COMPENSATION,
        )
        await ctx.payments.insert(compensation)
        actions.append(CompensatingAction(
            type=CompensatingActionType.CREATE_COMPENSATING_PAYMENT,
            description="Inserted reversing payment entry",
            status=ActionStatus.COMPLETED,
            metadata={
                "compensationId": compensation.id,
                "loanId": payment.loan_id,
                "amount": payment.amount,
            },
            timestamp=now,
        ))

        await self.audit.record(
            ctx, payment.id, AuditOperation.REPAYMENT_ROLLBACK,
            {
                "loanId": payment.loan_id,
                "reason": reason,
                "rolledBackAt": now,
                "rolledBackBy": performer,
                "compensationPaymentId": compensation.id,
            },
            user_id=performer,
        )

        return await self._write_record(ctx, payment.id, RollbackOperation.REPAYMENT,
                                        reason, actions, performer, now)

    async def _write_record(
        self,
        ctx: TransactionContext,
        transaction_id: str,
        operation: RollbackOperation,
        reason: str,
        actions: List[CompensatingAction],
        performer: str,
        now: datetime
    ) -> RollbackRecord:
        record = RollbackRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=transaction_id,
            original_operation=operation,
            rollback_reason=reason,
            compensating_actions=actions,
            rolled_back_by=performer,
        )
        await ctx.rollbacks.insert(record)
        return record
