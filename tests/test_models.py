"""
Tests for domain records and money helpers
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from lending_core.errors import ValidationError
from lending_core.models import (
    ActionStatus, CompensatingAction, CompensatingActionType, Payment,
    PaymentStatus, RollbackOperation, RollbackRecord, decode_actions,
    encode_actions, record_dict, to_json_safe,
)
from lending_core.money import Currency, money_str, round_money, to_decimal


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCurrency:
    """Test currency lookup"""

    def test_from_code(self):
        assert Currency.from_code("usd") == Currency.USD
        assert Currency.from_code("EGP").precision == 2
        assert Currency.EUR.code == "EUR"

    def test_unsupported(self):
        with pytest.raises(ValidationError):
            Currency.from_code("GBP")
        with pytest.raises(ValidationError):
            Currency.from_code(None)


class TestMoneyHelpers:
    """Test Decimal conversion and rounding"""

    def test_float_without_drift(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            to_decimal("abc")
        with pytest.raises(ValidationError):
            to_decimal(None)
        with pytest.raises(ValidationError):
            to_decimal("Infinity")

    def test_round_half_up(self):
        assert round_money(Decimal("2.345")) == Decimal("2.35")
        assert round_money(Decimal("-2.345")) == Decimal("-2.35")
        assert money_str(Decimal("10")) == "10.00"


class TestRecords:
    """Test record conversion"""

    def test_payment_round_trip(self):
        payment = Payment(
            id="p1", created_at=NOW, updated_at=NOW, loan_id="L1",
            amount=Decimal("888.49"), payment_date=date(2024, 2, 1),
            principal_paid=Decimal("786.57"), interest_paid=Decimal("101.92"),
        )

        stored = payment.to_dict()
        assert stored["amount"] == "888.49"
        assert stored["payment_date"] == "2024-02-01"
        assert stored["status"] == "POSTED"

        loaded = Payment.from_dict(stored)
        assert loaded == payment
        assert loaded.status == PaymentStatus.POSTED

    def test_rollback_record_keeps_actions(self):
        record = RollbackRecord(
            id="r1", created_at=NOW, updated_at=NOW, transaction_id="p1",
            original_operation=RollbackOperation.REPAYMENT, rollback_reason="Bounced",
            compensating_actions=[CompensatingAction(
                type=CompensatingActionType.MARK_PAYMENT_ROLLED_BACK,
                description="Flagged repayment record as rolled back",
                status=ActionStatus.COMPLETED,
                metadata={"paymentId": "p1"},
                timestamp=NOW,
            )],
            rolled_back_by="ops-1",
        )

        loaded = RollbackRecord.from_dict(record.to_dict())

        assert loaded.original_operation == RollbackOperation.REPAYMENT
        assert loaded.compensating_actions == record.compensating_actions
        assert record_dict(record)["compensating_actions"][0]["type"] == "mark_payment_rolled_back"

        snapshot = record.snapshot()
        assert snapshot["original_operation"] == "repayment"
        assert snapshot["rollback_timestamp"] == NOW.isoformat()

    def test_unknown_action_type_rejected(self):
        with pytest.raises(ValidationError):
            decode_actions([{"type": "delete_everything", "status": "completed"}])

    def test_decode_ignores_malformed_entries(self):
        assert decode_actions(None) == []
        actions = encode_actions([CompensatingAction(
            type=CompensatingActionType.RECORD_FAILED_DISBURSEMENT,
            description="", status=ActionStatus.FAILED, metadata={}, timestamp=NOW,
        )])
        assert len(decode_actions(actions + ["junk"])) == 1

    def test_to_json_safe(self):
        value = to_json_safe({
            "amount": Decimal("1.50"),
            "when": date(2024, 1, 1),
            "status": PaymentStatus.ROLLED_BACK,
            "items": (Decimal("1"), NOW),
        })
        assert value == {
            "amount": "1.50",
            "when": "2024-01-01",
            "status": "rolled_back",
            "items": ["1", NOW.isoformat()],
        }
