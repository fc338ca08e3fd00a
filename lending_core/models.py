"""
Domain Records

Dataclasses for every entity the lending core reads or writes, plus the
enums for their lifecycle states. Records convert to and from plain dicts
for storage: Decimal as strings, dates and datetimes as ISO strings, enums
as their values.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from .errors import ValidationError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class DisbursementStatus(Enum):
    """Disbursement states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ScheduleStatus(Enum):
    """Repayment schedule entry states"""
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"


class PaymentStatus(Enum):
    """Payment states"""
    POSTED = "POSTED"
    ROLLBACK_COMPENSATION = "ROLLBACK_COMPENSATION"
    ROLLED_BACK = "rolled_back"


class RollbackOperation(Enum):
    """Kind of transaction a rollback record refers to"""
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"


class CompensatingActionType(Enum):
    """Closed set of compensating actions the engine may record"""
    REVERT_REPAYMENT_SCHEDULE = "revert_repayment_schedule"
    MARK_DISBURSEMENT_ROLLED_BACK = "mark_disbursement_rolled_back"
    MARK_PAYMENT_ROLLED_BACK = "mark_payment_rolled_back"
    CREATE_COMPENSATING_PAYMENT = "create_compensating_payment"
    RECORD_FAILED_DISBURSEMENT = "record_failed_disbursement"


class ActionStatus(Enum):
    """Outcome of a compensating action"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AuditOperation(Enum):
    """Operation tags written to the audit trail"""
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    DISBURSEMENT_ROLLBACK = "DISBURSEMENT_ROLLBACK"
    REPAYMENT_CREATE = "REPAYMENT_CREATE"
    REPAYMENT_ROLLBACK = "REPAYMENT_ROLLBACK"
    REPAYMENT_CALCULATION = "REPAYMENT_CALCULATION"


def _encode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


def to_json_safe(value: Any) -> Any:
    """Convert Decimal/date/datetime/Enum values (recursively) to JSON-safe ones"""
    return _encode_value(value)


@dataclass
class StorageRecord:
    """
    Base class for all stored records

    Subclasses list which fields need conversion; everything else is stored as-is.
    """
    id: str
    created_at: datetime
    updated_at: datetime

    _decimal_fields: ClassVar[tuple] = ()
    _date_fields: ClassVar[tuple] = ()
    _datetime_fields: ClassVar[tuple] = ('created_at', 'updated_at')
    _enum_fields: ClassVar[Dict[str, type]] = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _encode_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from a stored dictionary"""
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            raw = data[f.name]
            if raw is None:
                values[f.name] = None
            elif f.name in cls._decimal_fields:
                values[f.name] = Decimal(str(raw))
            elif f.name in cls._datetime_fields:
                values[f.name] = raw if isinstance(raw, datetime) else datetime.fromisoformat(raw)
            elif f.name in cls._date_fields:
                values[f.name] = raw if isinstance(raw, date) else date.fromisoformat(raw)
            elif f.name in cls._enum_fields:
                values[f.name] = cls._enum_fields[f.name](raw)
            else:
                values[f.name] = raw
        return cls(**values)


@dataclass
class Loan(StorageRecord):
    """Loan created upstream; this core only moves it between APPROVED and ACTIVE"""
    borrower_id: str = ""
    amount: Decimal = Decimal('0')
    interest_rate: Decimal = Decimal('0')     # annual, percent (12 means 12%)
    tenor: int = 1                            # months
    status: LoanStatus = LoanStatus.PENDING
    currency: str = "USD"

    _decimal_fields: ClassVar[tuple] = ('amount', 'interest_rate')
    _enum_fields: ClassVar[Dict[str, type]] = {'status': LoanStatus}


@dataclass
class Disbursement(StorageRecord):
    """Release of a loan's principal to the borrower"""
    loan_id: str = ""
    amount: Decimal = Decimal('0')
    disbursement_date: Optional[date] = None
    status: DisbursementStatus = DisbursementStatus.PENDING
    currency: str = "USD"
    tenor: int = 1
    interest_rate: Decimal = Decimal('0')
    first_payment_date: Optional[date] = None
    rolled_back_at: Optional[datetime] = None
    # Mirrors loan_id while the disbursement is live; cleared on rollback so the
    # store's unique constraint allows only one live disbursement per loan.
    live_loan_id: Optional[str] = None

    _decimal_fields: ClassVar[tuple] = ('amount', 'interest_rate')
    _date_fields: ClassVar[tuple] = ('disbursement_date', 'first_payment_date')
    _datetime_fields: ClassVar[tuple] = ('created_at', 'updated_at', 'rolled_back_at')
    _enum_fields: ClassVar[Dict[str, type]] = {'status': DisbursementStatus}

    @property
    def is_rolled_back(self) -> bool:
        return self.status == DisbursementStatus.ROLLED_BACK or self.rolled_back_at is not None


@dataclass
class RepaymentScheduleEntry(StorageRecord):
    """Single installment of an amortization schedule"""
    loan_id: str = ""
    installment_number: int = 1
    due_date: Optional[date] = None
    principal_amount: Decimal = Decimal('0')
    interest_amount: Decimal = Decimal('0')
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_date: Optional[date] = None

    _decimal_fields: ClassVar[tuple] = ('principal_amount', 'interest_amount')
    _date_fields: ClassVar[tuple] = ('due_date', 'paid_date')
    _enum_fields: ClassVar[Dict[str, type]] = {'status': ScheduleStatus}

    @property
    def total_due(self) -> Decimal:
        return self.principal_amount + self.interest_amount


@dataclass
class Payment(StorageRecord):
    """Repayment posted against a loan; reversed only by a negated compensation row"""
    loan_id: str = ""
    amount: Decimal = Decimal('0')
    payment_date: Optional[date] = None
    principal_paid: Decimal = Decimal('0')
    interest_paid: Decimal = Decimal('0')
    late_fee_paid: Decimal = Decimal('0')
    days_late: int = 0
    status: PaymentStatus = PaymentStatus.POSTED
    rolled_back_at: Optional[datetime] = None

    _decimal_fields: ClassVar[tuple] = ('amount', 'principal_paid', 'interest_paid', 'late_fee_paid')
    _date_fields: ClassVar[tuple] = ('payment_date',)
    _datetime_fields: ClassVar[tuple] = ('created_at', 'updated_at', 'rolled_back_at')
    _enum_fields: ClassVar[Dict[str, type]] = {'status': PaymentStatus}

    @property
    def is_rolled_back(self) -> bool:
        return self.status == PaymentStatus.ROLLED_BACK or self.rolled_back_at is not None


@dataclass(frozen=True)
class CompensatingAction:
    """One step taken (or attempted) while compensating a transaction"""
    type: CompensatingActionType
    description: str
    status: ActionStatus
    metadata: Dict[str, Any]
    timestamp: datetime


def encode_actions(actions: List[CompensatingAction]) -> List[Dict[str, Any]]:
    """Serialize compensating actions for storage"""
    return [
        {
            'type': action.type.value,
            'description': action.description,
            'status': action.status.value,
            'metadata': _encode_value(action.metadata),
            'timestamp': action.timestamp.isoformat(),
        }
        for action in actions
    ]


def decode_actions(value: Any) -> List[CompensatingAction]:
    """Deserialize compensating actions written by encode_actions"""
    if not isinstance(value, list):
        return []

    actions = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        try:
            action_type = CompensatingActionType(entry.get('type'))
        except ValueError:
            raise ValidationError(f"Unknown compensating action type: {entry.get('type')!r}")
        timestamp = entry.get('timestamp')
        actions.append(CompensatingAction(
            type=action_type,
            description=entry.get('description') or "",
            status=ActionStatus(entry.get('status', ActionStatus.COMPLETED.value)),
            metadata=dict(entry.get('metadata') or {}),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.min,
        ))
    return actions


@dataclass
class RollbackRecord(StorageRecord):
    """At most one per transaction id; its existence closes rollback eligibility"""
    transaction_id: str = ""
    original_operation: RollbackOperation = RollbackOperation.DISBURSEMENT
    rollback_reason: str = ""
    compensating_actions: List[CompensatingAction] = field(default_factory=list)
    rolled_back_by: str = "system"

    _enum_fields: ClassVar[Dict[str, type]] = {'original_operation': RollbackOperation}

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['compensating_actions'] = encode_actions(self.compensating_actions)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RollbackRecord':
        data = dict(data)
        actions = decode_actions(data.pop('compensating_actions', []))
        record = super().from_dict(data)
        record.compensating_actions = actions
        return record

    def snapshot(self) -> Dict[str, Any]:
        """Caller-facing view of the rollback"""
        return {
            'transaction_id': self.transaction_id,
            'original_operation': self.original_operation.value,
            'rollback_reason': self.rollback_reason,
            'rollback_timestamp': self.created_at.isoformat(),
            'compensating_actions': encode_actions(self.compensating_actions),
            'rolled_back_by': self.rolled_back_by,
        }


@dataclass
class AuditLogEntry(StorageRecord):
    """Append-only audit entry, hash-chained to its predecessor"""
    transaction_id: str = ""
    operation: str = ""
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    previous_hash: str = ""
    current_hash: str = ""


def record_dict(record: StorageRecord) -> Dict[str, Any]:
    """JSON-safe dict of a record (for API responses)"""
    if isinstance(record, RollbackRecord):
        return record.to_dict()
    return _encode_value(asdict(record))
