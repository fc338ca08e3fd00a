"""
Unit of Work Module

Typed repositories over the transactional store and the ``with_transaction``
entry point every multi-step mutation goes through. Callers receive a
TransactionContext exposing one repository per table and never touch the
underlying storage handle.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .models import (
    AuditLogEntry, Disbursement, Loan, LoanStatus, Payment,
    PaymentStatus, RepaymentScheduleEntry, RollbackRecord, ScheduleStatus,
    to_json_safe,
)
from .storage import (
    AsyncInMemoryStorage, AsyncStorageInterface, ForeignKey, UniqueConstraint,
)

T = TypeVar("T")

LOANS_TABLE = "loans"
DISBURSEMENTS_TABLE = "disbursements"
SCHEDULES_TABLE = "repayment_schedules"
PAYMENTS_TABLE = "payments"
ROLLBACKS_TABLE = "rollback_records"
AUDIT_TABLE = "audit_logs"

UNIQUE_CONSTRAINTS = (
    UniqueConstraint(DISBURSEMENTS_TABLE, ("live_loan_id",)),
    UniqueConstraint(SCHEDULES_TABLE, ("loan_id", "installment_number")),
    UniqueConstraint(ROLLBACKS_TABLE, ("transaction_id",)),
    UniqueConstraint(AUDIT_TABLE, ("sequence",)),
)

FOREIGN_KEYS = (
    ForeignKey(DISBURSEMENTS_TABLE, "loan_id", LOANS_TABLE),
    ForeignKey(SCHEDULES_TABLE, "loan_id", LOANS_TABLE),
    ForeignKey(PAYMENTS_TABLE, "loan_id", LOANS_TABLE),
)

OPEN_SCHEDULE_STATUSES = [ScheduleStatus.PENDING.value, ScheduleStatus.PARTIALLY_PAID.value]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_storage() -> AsyncStorageInterface:
    """In-memory store carrying the lending schema's constraints"""
    return AsyncInMemoryStorage(UNIQUE_CONSTRAINTS, FOREIGN_KEYS)


class _Repository:
    table: str = ""
    record_type: type = None

    def __init__(self, db: AsyncStorageInterface):
        self._db = db

    def _wrap(self, data: Optional[Dict[str, Any]]):
        return self.record_type.from_dict(data) if data else None

    async def get(self, record_id: str):
        return self._wrap(await self._db.load(self.table, record_id))

    async def insert(self, record) -> None:
        await self._db.insert(self.table, record.id, record.to_dict())

    async def update(self, record_id: str, **changes):
        changes.setdefault("updated_at", utcnow())
        return self._wrap(await self._db.update(self.table, record_id, to_json_safe(changes)))


class LoanRepository(_Repository):
    table = LOANS_TABLE
    record_type = Loan

    @staticmethod
    def _list_filters(borrower_id: Optional[str]) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if borrower_id:
            filters["borrower_id"] = borrower_id
        return filters

    async def search(
        self,
        q: Optional[str] = None,
        borrower_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[List[Loan], int]:
        """Loans filtered by borrower and free text, newest first, with the total count"""
        rows = await self._db.find(
            self.table, self._list_filters(borrower_id),
            order_by=("created_at",), descending=True,
        )
        if q:
            needle = q.lower()
            rows = [
                r for r in rows
                if needle in r["id"].lower()
                or needle in str(r.get("borrower_id", "")).lower()
                or needle in str(r.get("status", "")).lower()
            ]
        total = len(rows)
        page = rows[offset:]
        if limit is not None:
            page = page[:limit]
        return [Loan.from_dict(r) for r in page], total

    async def set_status(self, loan_id: str, status: LoanStatus) -> Optional[Loan]:
        return await self.update(loan_id, status=status)


class DisbursementRepository(_Repository):
    table = DISBURSEMENTS_TABLE
    record_type = Disbursement

    async def live_for_loan(self, loan_id: str) -> Optional[Disbursement]:
        rows = await self._db.find(self.table, {"live_loan_id": loan_id}, limit=1)
        return self._wrap(rows[0]) if rows else None

    async def for_loan(self, loan_id: str) -> List[Disbursement]:
        rows = await self._db.find(self.table, {"loan_id": loan_id}, order_by=("created_at",))
        return [Disbursement.from_dict(r) for r in rows]

    async def total(self) -> Decimal:
        """Sum of every disbursement ever written, rolled back or not"""
        total = await self._db.sum(self.table, "amount")
        return total if total is not None else Decimal('0')


class ScheduleRepository(_Repository):
    table = SCHEDULES_TABLE
    record_type = RepaymentScheduleEntry

    async def insert_many(self, entries: List[RepaymentScheduleEntry]) -> int:
        return await self._db.insert_many(self.table, [(e.id, e.to_dict()) for e in entries])

    async def for_loan(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        rows = await self._db.find(self.table, {"loan_id": loan_id}, order_by=("installment_number",))
        return [RepaymentScheduleEntry.from_dict(r) for r in rows]

    async def first_open(self, loan_id: str) -> Optional[RepaymentScheduleEntry]:
        """Earliest installment that is not fully paid"""
        rows = await self._db.find(
            self.table,
            {"loan_id": loan_id, "status__in": OPEN_SCHEDULE_STATUSES},
            order_by=("installment_number",), limit=1,
        )
        return self._wrap(rows[0]) if rows else None

    async def open_due_by(self, loan_id: str, as_of: date) -> List[RepaymentScheduleEntry]:
        rows = await self._db.find(
            self.table,
            {
                "loan_id": loan_id,
                "due_date__lte": as_of.isoformat(),
                "status__in": OPEN_SCHEDULE_STATUSES,
            },
            order_by=("installment_number",),
        )
        return [RepaymentScheduleEntry.from_dict(r) for r in rows]

    async def next_upcoming(self, loan_id: str, as_of: date) -> Optional[RepaymentScheduleEntry]:
        rows = await self._db.find(
            self.table,
            {
                "loan_id": loan_id,
                "due_date__gt": as_of.isoformat(),
                "status": ScheduleStatus.PENDING.value,
            },
            order_by=("due_date",), limit=1,
        )
        return self._wrap(rows[0]) if rows else None

    async def delete_for_loan(self, loan_id: str) -> int:
        return await self._db.delete_where(self.table, {"loan_id": loan_id})


class PaymentRepository(_Repository):
    table = PAYMENTS_TABLE
    record_type = Payment

    async def for_loan(self, loan_id: str) -> List[Payment]:
        """Payment history, most recent payment date first"""
        rows = await self._db.find(
            self.table, {"loan_id": loan_id},
            order_by=("payment_date", "created_at"), descending=True,
        )
        return [Payment.from_dict(r) for r in rows]

    async def last_posted(self, loan_id: str) -> Optional[Payment]:
        rows = await self._db.find(
            self.table,
            {"loan_id": loan_id, "status": PaymentStatus.POSTED.value},
            order_by=("payment_date", "created_at"), descending=True, limit=1,
        )
        return self._wrap(rows[0]) if rows else None

    async def total(self, column: str = "amount", loan_id: Optional[str] = None) -> Decimal:
        """Sum of a monetary column, treating an empty result as zero"""
        filters = {"loan_id": loan_id} if loan_id else None
        value = await self._db.sum(self.table, column, filters)
        return value if value is not None else Decimal('0')


class RollbackRepository(_Repository):
    table = ROLLBACKS_TABLE
    record_type = RollbackRecord

    async def for_transaction(self, transaction_id: str) -> Optional[RollbackRecord]:
        rows = await self._db.find(self.table, {"transaction_id": transaction_id}, limit=1)
        return self._wrap(rows[0]) if rows else None


class AuditRepository(_Repository):
    table = AUDIT_TABLE
    record_type = AuditLogEntry

    async def latest(self) -> Optional[AuditLogEntry]:
        rows = await self._db.find(self.table, order_by=("sequence",), descending=True, limit=1)
        return self._wrap(rows[0]) if rows else None

    async def all(self) -> List[AuditLogEntry]:
        rows = await self._db.find(self.table, order_by=("sequence",))
        return [AuditLogEntry.from_dict(r) for r in rows]

    async def for_transaction(self, transaction_id: str) -> List[AuditLogEntry]:
        rows = await self._db.find(self.table, {"transaction_id": transaction_id}, order_by=("sequence",))
        return [AuditLogEntry.from_dict(r) for r in rows]

    async def for_loan(self, loan_id: str) -> List[AuditLogEntry]:
        """Entries whose metadata references the loan, newest first"""
        rows = await self._db.find(self.table, order_by=("sequence",), descending=True)
        return [
            AuditLogEntry.from_dict(r) for r in rows
            if (r.get("metadata") or {}).get("loanId") == loan_id
        ]


class TransactionContext:
    """Repositories bound to one storage handle (a transaction or the base store)"""

    def __init__(self, db: AsyncStorageInterface):
        self.loans = LoanRepository(db)
        self.disbursements = DisbursementRepository(db)
        self.schedules = ScheduleRepository(db)
        self.payments = PaymentRepository(db)
        self.rollbacks = RollbackRepository(db)
        self.audit = AuditRepository(db)


class UnitOfWork:
    """Entry point for reads and all-or-nothing writes against the store"""

    def __init__(self, storage: Optional[AsyncStorageInterface] = None):
        self.storage = storage or create_storage()

    def reader(self) -> TransactionContext:
        """Repositories outside any transaction (each write commits on its own)"""
        return TransactionContext(self.storage)

    async def with_transaction(self, fn: Callable[[TransactionContext], Awaitable[T]]) -> T:
        """
        Run fn inside one atomic transaction.

        Args:
            fn: Coroutine function receiving a TransactionContext

        Returns:
            Whatever fn returns, after the transaction committed
        """
        async with self.storage.atomic() as session:
            return await fn(TransactionContext(session))
