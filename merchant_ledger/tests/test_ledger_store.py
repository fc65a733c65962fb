"""
Unit Tests for the Ledger Store

Tests cover:
1. Delta application and log chaining
2. Balance == sum of logged deltas
3. Overdraft rejection
4. Rounding to two decimals
5. History ordering
6. Order income credited once per order
"""

import pytest
from decimal import Decimal

from merchant_ledger.errors import (
    InsufficientBalanceError,
    InvalidOrderStateError,
    LedgerServiceError,
    MerchantNotFoundError,
    PersistenceFailure,
)
from merchant_ledger.models import MovementType, OrderStatus


MERCHANT_ID = 1001


class TestApplyDelta:
    """Tests for apply_delta."""

    def test_credit_and_debit_chain(self, services, open_merchant):
        """Each entry's before_balance is the previous entry's after_balance."""
        open_merchant(MERCHANT_ID)

        with services.database.atomic() as session:
            first = services.ledger.apply_delta(
                session, MERCHANT_ID, Decimal("100.00"), MovementType.INCOME, "T1", "Order income"
            )
            second = services.ledger.apply_delta(
                session, MERCHANT_ID, Decimal("-30.25"), MovementType.WITHDRAW, "S1"
            )

        assert first.before_balance == Decimal("0.00")
        assert first.after_balance == Decimal("100.00")
        assert second.before_balance == first.after_balance
        assert second.after_balance == Decimal("69.75")
        assert second.movement_type == MovementType.WITHDRAW
        assert second.correlation_id == "S1"
        assert services.balance(MERCHANT_ID).balance == Decimal("69.75")

    def test_debit_below_zero_rejected(self, services, open_merchant):
        """A debit larger than the balance fails and writes nothing."""
        open_merchant(MERCHANT_ID, "10.00")

        with pytest.raises(InsufficientBalanceError):
            with services.database.atomic() as session:
                services.ledger.apply_delta(
                    session, MERCHANT_ID, Decimal("-10.01"), MovementType.WITHDRAW, "S1"
                )

        assert services.balance(MERCHANT_ID).balance == Decimal("10.00")
        assert services.history(MERCHANT_ID).total_count == 1

    def test_debit_to_exactly_zero_allowed(self, services, open_merchant):
        """Draining the balance to zero is not an overdraft."""
        open_merchant(MERCHANT_ID, "10.00")

        with services.database.atomic() as session:
            entry = services.ledger.apply_delta(
                session, MERCHANT_ID, Decimal("-10.00"), MovementType.WITHDRAW, "S1"
            )

        assert entry.after_balance == Decimal("0.00")

    def test_amounts_rounded_half_up(self, services, open_merchant):
        """Deltas are quantized to cents before being applied."""
        open_merchant(MERCHANT_ID)

        with services.database.atomic() as session:
            entry = services.ledger.apply_delta(
                session, MERCHANT_ID, Decimal("1.005"), MovementType.ADJUST, None
            )

        assert entry.amount == Decimal("1.01")
        assert services.balance(MERCHANT_ID).balance == Decimal("1.01")

    def test_unknown_merchant(self, services):
        """Applying a delta to a missing account raises MerchantNotFoundError."""
        with pytest.raises(MerchantNotFoundError):
            with services.database.atomic() as session:
                services.ledger.apply_delta(session, 9999, Decimal("1.00"), MovementType.ADJUST, None)

    def test_rollback_discards_delta(self, services, open_merchant):
        """A failure later in the same transaction rolls the delta back."""
        open_merchant(MERCHANT_ID, "50.00")

        with pytest.raises(RuntimeError):
            with services.database.atomic() as session:
                services.ledger.apply_delta(session, MERCHANT_ID, Decimal("-20.00"), MovementType.WITHDRAW, "S1")
                raise RuntimeError("boom")

        assert services.balance(MERCHANT_ID).balance == Decimal("50.00")
        assert services.audit(MERCHANT_ID).consistent


class TestAudit:
    """Tests for the balance/ledger consistency audit."""

    def test_balance_matches_sum_of_deltas(self, services, open_merchant):
        """After a mix of movements the audit is consistent."""
        open_merchant(MERCHANT_ID, "200.00")

        movements = [
            (Decimal("35.10"), MovementType.INCOME),
            (Decimal("-80.00"), MovementType.WITHDRAW),
            (Decimal("80.00"), MovementType.WITHDRAW_REJECT),
            (Decimal("-12.34"), MovementType.REFUND_DEDUCT),
        ]
        for delta, movement_type in movements:
            with services.database.atomic() as session:
                services.ledger.apply_delta(session, MERCHANT_ID, delta, movement_type, None)

        audit = services.audit(MERCHANT_ID)

        assert audit.entry_count == 5
        assert audit.balance == Decimal("222.76")
        assert audit.ledger_sum == audit.balance
        assert audit.contiguous
        assert audit.consistent

    def test_audit_detects_tampered_balance(self, services, open_merchant):
        """Changing the balance outside apply_delta is reported."""
        open_merchant(MERCHANT_ID, "10.00")
        with services.database.atomic() as session:
            account = services.ledger.lock_account(session, MERCHANT_ID)
            account.balance = Decimal("99.00")

        audit = services.audit(MERCHANT_ID)

        assert not audit.consistent


class TestHistory:
    """Tests for ledger history."""

    def test_newest_first(self, services, open_merchant):
        """History lists entries newest first with the current balance."""
        open_merchant(MERCHANT_ID, "5.00")
        with services.database.atomic() as session:
            services.ledger.apply_delta(session, MERCHANT_ID, Decimal("7.00"), MovementType.INCOME, "T2")

        history = services.history(MERCHANT_ID, limit=10)

        assert history.total_count == 2
        assert history.current_balance == Decimal("12.00")
        assert [e.correlation_id for e in history.entries] == ["T2", None]

    def test_open_account_twice_rejected(self, services, open_merchant):
        """A merchant can only have one balance account."""
        open_merchant(MERCHANT_ID)

        with pytest.raises(LedgerServiceError) as exc:
            open_merchant(MERCHANT_ID)

        assert not isinstance(exc.value, PersistenceFailure)


class TestOrderIncome:
    """Tests for crediting paid orders."""

    def test_credits_net_income(self, services, open_merchant, add_order):
        """A paid order credits its settled amount less the fee, tagged with the trade number."""
        open_merchant(MERCHANT_ID)
        add_order("T600", "100.00", fee="3.00", real_money="98.00")

        entry = services.credit_order_income("T600")

        assert entry.movement_type == MovementType.INCOME
        assert entry.amount == Decimal("95.00")
        assert entry.correlation_id == "T600"
        assert services.balance(MERCHANT_ID).balance == Decimal("95.00")
        assert services.audit(MERCHANT_ID).consistent

    def test_second_credit_returns_first_entry(self, services, open_merchant, add_order):
        """Crediting the same order again returns the original entry and leaves the balance alone."""
        open_merchant(MERCHANT_ID)
        add_order("T601", "50.00", fee="1.00")
        first = services.credit_order_income("T601")

        again = services.credit_order_income("T601")

        assert again.id == first.id

        assert services.balance(MERCHANT_ID).balance == Decimal("49.00")
        assert services.history(MERCHANT_ID).total_count == 1

    def test_unpaid_order_not_credited(self, services, open_merchant, add_order):
        """Only paid orders carry income."""
        open_merchant(MERCHANT_ID)
        add_order("T602", "50.00", status=OrderStatus.UNPAID)

        with pytest.raises(InvalidOrderStateError):
            services.credit_order_income("T602")
