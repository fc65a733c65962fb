"""
Withdrawal Engine

Withdrawals reserve funds on apply: the requested amount is debited in the
same transaction that creates the pending settlement record, and is only
credited back if the record is later rejected or cancelled.

Availability is checked twice. The first check runs without locks and only
rejects obviously invalid requests early; the second runs under the merchant
row lock inside the reserving transaction and is the one that counts.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .accounts import SettlementAccountService
from .database import Database
from .errors import (
    BelowMinimumError,
    EmptyBatchError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerServiceError,
    PersistenceFailure,
    RemarkRequiredError,
)
from .ledger_store import LedgerStore
from .models import (
    BatchApproveResult,
    MovementType,
    OrderStatus,
    SettleCycle,
    SettlementOptions,
    SettlementQuery,
    SettlementRecord,
    SettlementRecordPage,
    SettlementStatus,
    WithdrawableInfo,
    WithdrawalReceipt,
)
from .money import ZERO, new_reference, parse_amount, to_money
from .notifier import Notifier, signed
from .state_machine import MoneyMovementStateMachine
from .tables import OrderRow, SettlementOptionsRow, SettlementRecordRow

logger = logging.getLogger(__name__)

FROZEN_CYCLES = frozenset({SettleCycle.SAME_DAY, SettleCycle.NEXT_DAY})


def compute_fee(amount: Decimal, options: SettlementOptions) -> Decimal:
    """Percentage fee, clamped to the configured bounds when they are non-zero."""
    rate = Decimal(options.settle_rate)
    if rate <= 0:
        return ZERO
    fee = to_money(amount * rate / 100)
    if options.settle_fee_min > 0 and fee < options.settle_fee_min:
        fee = to_money(options.settle_fee_min)
    if options.settle_fee_max > 0 and fee > options.settle_fee_max:
        fee = to_money(options.settle_fee_max)
    return fee


def settlement_filters(query: SettlementQuery) -> list:
    clauses = []
    if query.merchant_id is not None:
        clauses.append(SettlementRecordRow.merchant_id == query.merchant_id)
    if query.status is not None:
        clauses.append(SettlementRecordRow.status == query.status.value)
    if query.settle_type is not None:
        clauses.append(SettlementRecordRow.settle_type == query.settle_type.value)
    return clauses


class WithdrawalService:
    def __init__(
        self,
        database: Database,
        ledger: LedgerStore,
        state_machine: MoneyMovementStateMachine,
        accounts: SettlementAccountService,
        notifier: Optional[Notifier] = None,
        notify_url: Optional[str] = None,
        notify_key: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.database = database
        self.ledger = ledger
        self.state_machine = state_machine
        self.accounts = accounts
        self.notifier = notifier
        self.notify_url = notify_url
        self.notify_key = notify_key
        self.clock = clock

    # -- fee configuration ----------------------------------------------------

    def get_options(self) -> SettlementOptions:
        with self.database.session() as session:
            return self._options(session)

    def save_options(self, options: SettlementOptions) -> SettlementOptions:
        with self.database.atomic() as session:
            row = session.execute(select(SettlementOptionsRow).limit(1)).scalar_one_or_none()
            if row is None:
                row = SettlementOptionsRow()
                session.add(row)
            row.settle_rate = options.settle_rate
            row.settle_fee_min = options.settle_fee_min
            row.settle_fee_max = options.settle_fee_max
            row.min_settle_amount = options.min_settle_amount
            row.settle_cycle = int(options.settle_cycle)
            row.auto_settle = options.auto_settle
            row.auto_settle_cycle = options.auto_settle_cycle
            row.auto_settle_amount = options.auto_settle_amount
            row.auto_settle_type = options.auto_settle_type
        logger.info(f"Settlement options updated: {options.model_dump()}")
        return options

    def _options(self, session: Session) -> SettlementOptions:
        row = session.execute(select(SettlementOptionsRow).limit(1)).scalar_one_or_none()
        if row is None:
            return SettlementOptions()
        return SettlementOptions.model_validate(row)

    # -- balance availability -------------------------------------------------

    def _frozen_amount(self, session: Session, merchant_id: int, options: SettlementOptions) -> Decimal:
        """Net income of orders paid since midnight, held back under D+0 / D+1 settlement."""
        if options.settle_cycle not in FROZEN_CYCLES:
            return ZERO
        day_start = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        frozen = session.execute(
            select(func.coalesce(func.sum(func.coalesce(OrderRow.real_money, OrderRow.money) - OrderRow.fee_money), 0))
            .where(
                OrderRow.merchant_id == merchant_id,
                OrderRow.status == int(OrderStatus.PAID),
                OrderRow.paid_at >= day_start,
            )
        ).scalar_one()
        return to_money(frozen)

    def _pending_amount(self, session: Session, merchant_id: int) -> Decimal:
        pending = session.execute(
            select(func.coalesce(func.sum(SettlementRecordRow.amount), 0)).where(
                SettlementRecordRow.merchant_id == merchant_id,
                SettlementRecordRow.status == SettlementStatus.PENDING.value,
            )
        ).scalar_one()
        return to_money(pending)

    def get_withdrawable_info(self, merchant_id: int) -> WithdrawableInfo:
        with self.database.session() as session:
            balance = self.ledger.get_balance(session, merchant_id).balance
            options = self._options(session)
            frozen = self._frozen_amount(session, merchant_id, options)
            # pending withdrawals were already debited from the balance, shown for reference only
            pending = self._pending_amount(session, merchant_id)
            settlements = self.accounts.list_in(session, merchant_id)

        return WithdrawableInfo(
            balance=balance,
            frozen_amount=frozen,
            available_balance=max(ZERO, to_money(balance - frozen)),
            pending_amount=pending,
            settle_rate=options.settle_rate,
            settle_fee_min=options.settle_fee_min,
            settle_fee_max=options.settle_fee_max,
            min_settle_amount=options.min_settle_amount,
            settle_cycle=options.settle_cycle,
            settlements=settlements,
        )

    # -- lifecycle ------------------------------------------------------------

    def apply(self, merchant_id: int, amount, settlement_account_id: int) -> WithdrawalReceipt:
        amount = parse_amount(amount)

        with self.database.session() as session:
            account = self.accounts.get_owned(session, merchant_id, settlement_account_id)
            destination = {
                "settle_type": account.settle_type,
                "account_name": account.account_name,
                "account_no": account.account_no,
                "bank_name": account.bank_name,
                "bank_branch": account.bank_branch,
                "crypto_network": account.crypto_network,
                "crypto_address": account.crypto_address,
            }
            balance = self.ledger.get_balance(session, merchant_id).balance
            options = self._options(session)
            if amount < options.min_settle_amount:
                raise BelowMinimumError(f"Minimum withdrawal amount is {options.min_settle_amount:.2f}")
            if amount > balance - self._frozen_amount(session, merchant_id, options):
                raise InsufficientBalanceError("Insufficient withdrawable balance")

        fee = compute_fee(amount, options)
        if fee >= amount:
            raise InvalidAmountError(f"Amount does not cover the withdrawal fee of {fee:.2f}")
        real_amount = to_money(amount - fee)
        settle_no = new_reference("S")

        with self.database.atomic() as session:
            locked = self.ledger.lock_account(session, merchant_id)
            frozen = self._frozen_amount(session, merchant_id, options)
            if amount > to_money(locked.balance) - frozen:
                raise InsufficientBalanceError("Insufficient withdrawable balance")

            self.ledger.apply_delta(
                session, merchant_id, -amount, MovementType.WITHDRAW, settle_no, "Withdrawal request"
            )
            row = SettlementRecordRow(
                settle_no=settle_no,
                merchant_id=merchant_id,
                amount=amount,
                fee=fee,
                real_amount=real_amount,
                status=SettlementStatus.PENDING.value,
                created_at=self.clock(),
                **destination,
            )
            session.add(row)
            session.flush()
            record = SettlementRecord.model_validate(row)

        logger.info(f"Withdrawal {settle_no} applied by merchant {merchant_id}: amount={amount:.2f} fee={fee:.2f}")
        self._notify_new_request(record)

        return WithdrawalReceipt(
            record_id=record.id,
            settle_no=settle_no,
            amount=amount,
            fee=fee,
            real_amount=real_amount,
        )

    def cancel(self, merchant_id: int, record_id: int) -> SettlementRecord:
        with self.database.atomic() as session:
            return self.state_machine.transition(
                session,
                record_id,
                SettlementStatus.CANCELLED,
                actor=f"merchant:{merchant_id}",
                remark="Cancelled by merchant",
                owner_id=merchant_id,
            )

    def approve(self, record_id: int, actor: str, remark: Optional[str] = None) -> SettlementRecord:
        with self.database.atomic() as session:
            return self.state_machine.transition(
                session, record_id, SettlementStatus.APPROVED, actor=actor, remark=remark or "Approved"
            )

    def reject(self, record_id: int, actor: str, remark: Optional[str]) -> SettlementRecord:
        remark = (remark or "").strip()
        if not remark:
            raise RemarkRequiredError()
        with self.database.atomic() as session:
            return self.state_machine.transition(
                session, record_id, SettlementStatus.REJECTED, actor=actor, remark=remark
            )

    def batch_approve(self, record_ids: Iterable[int], actor: str) -> BatchApproveResult:
        """Approve each id in its own transaction; one failure never stops the rest."""
        record_ids = list(record_ids or [])
        if not record_ids:
            raise EmptyBatchError()

        result = BatchApproveResult()
        for record_id in record_ids:
            try:
                self.approve(record_id, actor, "Batch approved")
                result.success += 1
            except PersistenceFailure as e:
                logger.error(f"Batch approve of record {record_id} failed: {e}")
                result.fail += 1
                result.failures[record_id] = e.message
            except LedgerServiceError as e:
                result.fail += 1
                result.failures[record_id] = e.message
        return result

    # -- queries --------------------------------------------------------------

    def list_records(self, query: SettlementQuery) -> SettlementRecordPage:
        clauses = settlement_filters(query)
        with self.database.session() as session:
            total = session.execute(
                select(func.count()).select_from(SettlementRecordRow).where(*clauses)
            ).scalar_one()
            rows = session.execute(
                select(SettlementRecordRow)
                .where(*clauses)
                .order_by(SettlementRecordRow.created_at.desc(), SettlementRecordRow.id.desc())
                .limit(query.page_size)
                .offset(query.offset)
            ).scalars().all()

            pending_clauses = [SettlementRecordRow.status == SettlementStatus.PENDING.value]
            if query.merchant_id is not None:
                pending_clauses.append(SettlementRecordRow.merchant_id == query.merchant_id)
            pending_count, pending_amount = session.execute(
                select(func.count(), func.coalesce(func.sum(SettlementRecordRow.amount), 0))
                .select_from(SettlementRecordRow)
                .where(*pending_clauses)
            ).one()

            return SettlementRecordPage(
                records=[SettlementRecord.model_validate(r) for r in rows],
                total=total,
                pending_count=pending_count,
                pending_amount=to_money(pending_amount),
            )

    # -- notifications --------------------------------------------------------

    def _notify_new_request(self, record: SettlementRecord) -> None:
        if self.notifier is None or not self.notify_url:
            logger.debug(f"No admin notification target configured, skipping {record.settle_no}")
            return
        params = signed(
            {
                "event": "withdraw_apply",
                "settle_no": record.settle_no,
                "merchant_id": record.merchant_id,
                "amount": f"{record.amount:.2f}",
                "fee": f"{record.fee:.2f}",
                "real_amount": f"{record.real_amount:.2f}",
                "settle_type": record.settle_type,
                "account_info": record.account_name or record.crypto_address or "",
            },
            self.notify_key,
        )
        try:
            delivered = self.notifier.deliver(self.notify_url, params)
        except Exception as e:
            logger.warning(f"Admin notification for {record.settle_no} failed: {e}")
            return
        if not delivered:
            logger.warning(f"Admin notification for {record.settle_no} was not delivered")
