"""
Pydantic schemas for lending operation payloads

Field names are snake_case; the camelCase names used on the wire are
accepted as aliases.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import DisbursementStatus
from .money import Currency


class CreateDisbursementRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    loan_id: UUID = Field(..., alias="loanId")
    borrower_id: UUID = Field(..., alias="borrowerId")
    amount: Decimal = Field(..., ge=1, description="Amount to disburse")
    currency: str = Field(..., description="Currency code (USD, EUR, EGP)")
    disbursement_date: date = Field(..., alias="disbursementDate")
    first_payment_date: date = Field(..., alias="firstPaymentDate")
    tenor: int = Field(..., ge=1, description="Number of monthly installments")
    interest_rate: Decimal = Field(..., ge=0, alias="interestRate", description="Annual rate in percent")
    status: Optional[DisbursementStatus] = None

    @model_validator(mode="after")
    def _check_currency_and_dates(self) -> "CreateDisbursementRequest":
        if self.currency not in Currency.__members__:
            raise ValueError(f"currency must be one of {', '.join(Currency.__members__)}")
        if self.first_payment_date < self.disbursement_date:
            raise ValueError("firstPaymentDate must not be before disbursementDate")
        return self


class CreateRepaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    loan_id: UUID = Field(..., alias="loanId")
    amount: Decimal = Field(..., ge=Decimal("0.01"))
    payment_date: Optional[date] = Field(None, alias="paymentDate")
    principal_paid: Optional[Decimal] = Field(None, ge=0, alias="principalPaid")
    interest_paid: Optional[Decimal] = Field(None, ge=0, alias="interestPaid")
    late_fee_paid: Optional[Decimal] = Field(None, ge=0, alias="lateFeePaid")
    days_late: Optional[int] = Field(None, ge=0, alias="daysLate")
    status: Optional[str] = None


class RollbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: Optional[str] = None
    performed_by: Optional[str] = Field(None, alias="performedBy")
