"""
Lending system wiring and request-layer error mapping
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from ..audit import AuditTrail
from ..disbursements import DisbursementOrchestrator
from ..errors import (
    InvalidStateError, InvariantViolationError, LendingError, NotFoundError,
    PersistenceConflictError, UnknownFailureError, ValidationError,
)
from ..loans import LoanService
from ..repayments import RepaymentProcessor
from ..rollbacks import RollbackEngine
from ..storage import AsyncStorageInterface
from ..unit_of_work import UnitOfWork


class LendingSystem:
    """Lending core with all components initialized over one store"""

    def __init__(self, storage: Optional[AsyncStorageInterface] = None):
        self.uow = UnitOfWork(storage)
        self.audit_trail = AuditTrail(self.uow)
        self.rollback_engine = RollbackEngine(self.uow, self.audit_trail)
        self.disbursements = DisbursementOrchestrator(self.uow, self.audit_trail, self.rollback_engine)
        self.repayments = RepaymentProcessor(self.uow, self.audit_trail, self.rollback_engine)
        self.loans = LoanService(self.uow, self.audit_trail)

    @property
    def storage(self) -> AsyncStorageInterface:
        return self.uow.storage


def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.lending_system


_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (InvariantViolationError, status.HTTP_409_CONFLICT),
    (PersistenceConflictError, status.HTTP_409_CONFLICT),
)


def http_error(error: LendingError) -> HTTPException:
    """Convert a domain error into the HTTPException the routes raise"""
    if isinstance(error, UnknownFailureError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(error), "context": error.context},
        )
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
