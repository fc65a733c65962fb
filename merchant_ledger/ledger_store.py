"""
Ledger Store

The merchant balance row plus an append-only log of every balance delta.
A balance only ever changes through ``apply_delta``, which must be called
inside an open transaction: it locks the merchant row, writes the new
balance and appends exactly one log entry, so the two commit or roll back
together.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import InsufficientBalanceError, LedgerServiceError, MerchantNotFoundError
from .models import (
    LedgerAudit,
    LedgerEntry,
    LedgerHistoryResponse,
    MerchantBalance,
    MovementType,
)
from .money import ZERO, to_money
from .tables import BalanceLogRow, MerchantAccountRow

logger = logging.getLogger(__name__)


class LedgerStore:
    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def open_account(
        self,
        session: Session,
        merchant_id: int,
        opening_balance: Decimal = ZERO,
        remark: str = "Opening balance",
    ) -> MerchantAccountRow:
        """Create a zero-balance account and book any opening amount through the log."""
        existing = session.execute(
            select(MerchantAccountRow).where(MerchantAccountRow.merchant_id == merchant_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise LedgerServiceError(f"Merchant {merchant_id} already has an account")

        now = self.clock()
        account = MerchantAccountRow(merchant_id=merchant_id, balance=ZERO, created_at=now, updated_at=now)
        session.add(account)
        session.flush()

        if to_money(opening_balance) != ZERO:
            self.apply_delta(session, merchant_id, opening_balance, MovementType.ADJUST, None, remark)
        return account

    def lock_account(self, session: Session, merchant_id: int) -> MerchantAccountRow:
        account = session.execute(
            select(MerchantAccountRow)
            .where(MerchantAccountRow.merchant_id == merchant_id)
            .with_for_update()
        ).scalar_one_or_none()
        if account is None:
            raise MerchantNotFoundError(f"Merchant {merchant_id} does not exist")
        return account

    def apply_delta(
        self,
        session: Session,
        merchant_id: int,
        delta: Decimal,
        movement_type: MovementType,
        correlation_id: Optional[str],
        remark: Optional[str] = None,
    ) -> LedgerEntry:
        delta = to_money(delta)
        account = self.lock_account(session, merchant_id)

        before = to_money(account.balance)
        after = to_money(before + delta)
        if delta < 0 and after < 0:
            raise InsufficientBalanceError(
                f"Insufficient balance: {before:.2f} available, {-delta:.2f} required"
            )

        now = self.clock()
        account.balance = after
        account.updated_at = now
        row = BalanceLogRow(
            merchant_id=merchant_id,
            type=MovementType(movement_type).value,
            amount=delta,
            before_balance=before,
            after_balance=after,
            related_no=correlation_id,
            remark=remark,
            created_at=now,
        )
        session.add(row)
        session.flush()

        logger.info(
            f"Ledger {row.type} merchant={merchant_id} delta={delta:.2f} "
            f"balance {before:.2f} -> {after:.2f} ref={correlation_id}"
        )
        return LedgerEntry.from_row(row)

    def get_balance(self, session: Session, merchant_id: int) -> MerchantBalance:
        account = session.execute(
            select(MerchantAccountRow).where(MerchantAccountRow.merchant_id == merchant_id)
        ).scalar_one_or_none()
        if account is None:
            raise MerchantNotFoundError(f"Merchant {merchant_id} does not exist")
        return MerchantBalance(merchant_id=merchant_id, balance=to_money(account.balance))

    def history(
        self, session: Session, merchant_id: int, limit: int = 50, offset: int = 0
    ) -> LedgerHistoryResponse:
        balance = self.get_balance(session, merchant_id)
        total = session.execute(
            select(func.count()).select_from(BalanceLogRow).where(BalanceLogRow.merchant_id == merchant_id)
        ).scalar_one()
        rows = session.execute(
            select(BalanceLogRow)
            .where(BalanceLogRow.merchant_id == merchant_id)
            .order_by(BalanceLogRow.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()

        return LedgerHistoryResponse(
            merchant_id=merchant_id,
            entries=[LedgerEntry.from_row(r) for r in rows],
            total_count=total,
            current_balance=balance.balance,
        )

    def audit(self, session: Session, merchant_id: int) -> LedgerAudit:
        """Check balance == sum of deltas and that before/after chain without gaps."""
        balance = self.get_balance(session, merchant_id)
        rows = session.execute(
            select(BalanceLogRow)
            .where(BalanceLogRow.merchant_id == merchant_id)
            .order_by(BalanceLogRow.id)
        ).scalars().all()

        contiguous = True
        expected_before = ZERO
        total = ZERO
        for row in rows:
            amount = to_money(row.amount)
            before = to_money(row.before_balance)
            after = to_money(row.after_balance)
            if before != expected_before or to_money(before + amount) != after:
                contiguous = False
            expected_before = after
            total += amount

        audit = LedgerAudit(
            merchant_id=merchant_id,
            balance=balance.balance,
            ledger_sum=to_money(total),
            entry_count=len(rows),
            contiguous=contiguous,
        )
        if not audit.consistent:
            logger.error(
                f"Ledger audit failed for merchant {merchant_id}: balance={audit.balance} "
                f"sum={audit.ledger_sum} contiguous={contiguous}"
            )
        return audit
