"""
Concurrency Tests

Parallel requests against one merchant must never overdraw the balance or
break the ledger chain.
"""

import threading
from decimal import Decimal

from merchant_ledger.errors import ExceedsCapError, InsufficientBalanceError
from merchant_ledger.models import MovementType, Order, SettlementQuery
from merchant_ledger.tables import OrderRow


MERCHANT_ID = 1001


def run_concurrently(count, target):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        try:
            results[index] = target(index)
        except Exception as e:
            results[index] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


class TestConcurrentWithdrawals:
    """Tests for parallel withdrawal requests."""

    def test_no_double_spend(self, services, open_merchant, add_settlement_account, set_options):
        """Two 60.00 requests against 100.00: exactly one succeeds."""
        set_options()
        open_merchant(MERCHANT_ID, "100.00")
        account_id = add_settlement_account(MERCHANT_ID)

        results = run_concurrently(2, lambda i: services.withdrawals.apply(MERCHANT_ID, "60.00", account_id))

        errors = [r for r in results if isinstance(r, Exception)]
        receipts = [r for r in results if not isinstance(r, Exception)]
        assert len(receipts) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientBalanceError)
        assert services.balance(MERCHANT_ID).balance == Decimal("40.00")
        assert services.withdrawals.list_records(SettlementQuery(merchant_id=MERCHANT_ID)).total == 1
        assert services.audit(MERCHANT_ID).consistent

    def test_many_small_debits(self, services, open_merchant):
        """Ten parallel 10.00 debits against 50.00 leave exactly zero."""
        open_merchant(MERCHANT_ID, "50.00")

        def debit(i):
            with services.database.atomic() as session:
                return services.ledger.apply_delta(
                    session, MERCHANT_ID, Decimal("-10.00"), MovementType.WITHDRAW, f"S{i}"
                )

        results = run_concurrently(10, debit)

        assert sum(1 for r in results if not isinstance(r, Exception)) == 5
        assert all(isinstance(r, InsufficientBalanceError) for r in results if isinstance(r, Exception))
        assert services.balance(MERCHANT_ID).balance == Decimal("0.00")

        audit = services.audit(MERCHANT_ID)
        assert audit.entry_count == 6
        assert audit.consistent

    def test_cancel_and_approve_race(self, services, open_merchant, add_settlement_account, set_options):
        """A racing cancel and approve settle the record exactly once."""
        set_options()
        open_merchant(MERCHANT_ID, "100.00")
        receipt = services.withdrawals.apply(MERCHANT_ID, "30.00", add_settlement_account(MERCHANT_ID))

        def act(i):
            if i == 0:
                return services.withdrawals.cancel(MERCHANT_ID, receipt.record_id)
            return services.withdrawals.approve(receipt.record_id, "admin-7")

        results = run_concurrently(2, act)

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        balance = services.balance(MERCHANT_ID).balance
        assert balance in (Decimal("70.00"), Decimal("100.00"))
        assert services.audit(MERCHANT_ID).consistent


class TestConcurrentRefunds:
    """Tests for parallel refunds of one order."""

    def test_refunds_cannot_exceed_order(self, services, open_merchant, add_order, refund_plugin):
        """Two 60.00 refunds of a 100.00 order: one reaches the channel, the other exceeds the cap."""
        open_merchant(MERCHANT_ID, "200.00")
        add_order("T700", "100.00", fee="5.00")
        refund_plugin.delay = 0.1

        results = run_concurrently(2, lambda i: services.refunds.refund(MERCHANT_ID, "T700", "60.00"))

        errors = [r for r in results if isinstance(r, Exception)]
        refunds = [r for r in results if not isinstance(r, Exception)]
        assert len(refunds) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], ExceedsCapError)
        assert len(refund_plugin.calls) == 1

        with services.database.session() as session:
            order = Order.model_validate(session.query(OrderRow).filter_by(trade_no="T700").one())
        assert order.refund_money == Decimal("60.00")
        assert order.refund_hold == Decimal("0.00")
        assert services.balance(MERCHANT_ID).balance == Decimal("143.00")
        assert services.audit(MERCHANT_ID).consistent
