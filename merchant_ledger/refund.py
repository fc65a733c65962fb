"""
Refund Orchestrator

Refunds go back through the channel the order was paid with. Before the
upstream call a short transaction locks the order row, re-checks the
refundable amount and places a hold for the amount in flight, so parallel
refunds of one order can never exceed what was paid. The upstream call
itself runs outside any transaction. When the channel confirms, a second
short transaction turns the hold into a recorded refund and debits the
merchant's clawback; when it fails, the hold is released.

A crash between the upstream call and the local commit leaves an upstream
refund with a hold but no local record, which is logged for manual
reconciliation.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import USER_REFUND_FLAG, ConfigProvider
from .database import Database
from .errors import (
    ChannelNotFoundError,
    ExceedsCapError,
    FeatureDisabledError,
    FullyRefundedError,
    InsufficientBalanceError,
    InvalidOrderStateError,
    LedgerServiceError,
    NoUpstreamReferenceError,
    OrderNotFoundError,
    PersistenceFailure,
    RefundUnsupportedError,
    UpstreamFailure,
)
from .ledger_store import LedgerStore
from .models import MovementType, Order, OrderStatus, RefundQuote, RefundResult
from .money import ZERO, new_reference, parse_amount, to_money
from .plugins import PluginRegistry, UpstreamRefundRequest, channel_config, supports_refund
from .tables import ChannelRow, OrderRow

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.FROZEN})

DEFAULT_REASON = "Merchant-initiated refund"


def remaining_refundable(order: Order) -> Decimal:
    """Settled amount less recorded refunds and refunds still in flight."""
    settled = to_money(order.settled_money)
    refunded = to_money(order.refund_money) if order.status == OrderStatus.PARTIALLY_REFUNDED else ZERO
    return max(ZERO, to_money(settled - refunded - to_money(order.refund_hold)))


def compute_clawback(order: Order, refund_amount: Decimal) -> Decimal:
    """Amount to take back from the merchant's balance for a refund.

    The merchant received ``money - fee_money`` for the order. A full refund
    takes all of that back, a partial refund takes the same proportion, and a
    frozen order takes nothing because its income was never released.
    """
    if order.status == OrderStatus.FROZEN:
        return ZERO
    gross = to_money(order.money)
    received = to_money(gross - to_money(order.fee_money))
    if refund_amount >= gross:
        return received
    return to_money(refund_amount * received / gross)


class RefundService:
    def __init__(
        self,
        database: Database,
        ledger: LedgerStore,
        plugins: PluginRegistry,
        config: ConfigProvider,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.database = database
        self.ledger = ledger
        self.plugins = plugins
        self.config = config
        self.clock = clock

    def quote(self, merchant_id: int, trade_no: str) -> RefundQuote:
        self._check_enabled()
        with self.database.session() as session:
            order = self._load_order(session, merchant_id, trade_no)
            self._check_status(order)
            self._check_upstream_reference(order)
            self._resolve_plugin(session, order)

        return RefundQuote(
            trade_no=order.trade_no,
            money=to_money(order.settled_money),
            refunded_money=to_money(order.refund_money),
            max_refund=remaining_refundable(order),
        )

    def refund(
        self, merchant_id: int, trade_no: str, amount, reason: Optional[str] = None
    ) -> RefundResult:
        self._check_enabled()

        # unlocked pre-check, rejects bad requests before anything is held
        with self.database.session() as session:
            order = self._load_order(session, merchant_id, trade_no)
            self._check_status(order)
            refund_amount = self._check_amount(order, amount)
            self._check_upstream_reference(order)
            channel, plugin = self._resolve_plugin(session, order)
            config = channel_config(channel)
            clawback = compute_clawback(order, refund_amount)
            if clawback > 0:
                self._check_clawback(self.ledger.get_balance(session, merchant_id).balance, clawback)

        refund_no = new_reference("R")
        with self.database.atomic() as session:
            order, clawback = self._reserve(session, order.id, refund_amount, refund_no)

        try:
            self.plugins.refund(
                plugin,
                config,
                UpstreamRefundRequest(
                    trade_no=order.trade_no,
                    upstream_trade_no=order.api_trade_no,
                    refund_no=refund_no,
                    refund_amount=refund_amount,
                    total_amount=to_money(order.settled_money),
                ),
            )
        except UpstreamFailure:
            self._release_hold(order.id, refund_amount, refund_no)
            raise
        logger.info(f"Upstream refund {refund_no} accepted for {trade_no} amount={refund_amount:.2f}")

        try:
            with self.database.atomic() as session:
                entry = self._commit_refund(session, order, refund_no, refund_amount, clawback, reason)
        except LedgerServiceError as e:
            logger.error(
                f"Refund {refund_no} for {trade_no} succeeded upstream but local commit failed: {e}. "
                f"Hold of {refund_amount:.2f} kept; manual reconciliation required (clawback {clawback:.2f})"
            )
            if isinstance(e, PersistenceFailure):
                raise
            raise PersistenceFailure(f"Refund {refund_no} completed upstream but was not recorded: {e.message}") from e

        return RefundResult(
            trade_no=order.trade_no,
            refund_no=refund_no,
            refund_money=refund_amount,
            reduce_money=clawback,
            ledger_entry=entry,
        )

    def _reserve(self, session: Session, order_id: int, refund_amount: Decimal, refund_no: str):
        """Re-validate under the order lock and hold the amount for the upstream call."""
        row = self._lock_order(session, order_id)
        order = Order.model_validate(row)
        self._check_status(order)
        self._check_amount(order, refund_amount)

        clawback = compute_clawback(order, refund_amount)
        if clawback > 0:
            self._check_clawback(to_money(self.ledger.lock_account(session, order.merchant_id).balance), clawback)

        row.refund_hold = to_money(to_money(row.refund_hold) + refund_amount)
        session.flush()
        logger.info(f"Refund {refund_no} holds {refund_amount:.2f} on order {order.trade_no}")
        return order, clawback

    def _release_hold(self, order_id: int, refund_amount: Decimal, refund_no: str) -> None:
        try:
            with self.database.atomic() as session:
                row = self._lock_order(session, order_id)
                row.refund_hold = max(ZERO, to_money(to_money(row.refund_hold) - refund_amount))
        except PersistenceFailure:
            logger.error(f"Refund {refund_no} failed upstream and its hold of {refund_amount:.2f} could not be released")
            raise
        logger.info(f"Refund {refund_no} failed upstream, hold of {refund_amount:.2f} released")

    def _commit_refund(
        self,
        session: Session,
        order: Order,
        refund_no: str,
        refund_amount: Decimal,
        clawback: Decimal,
        reason: Optional[str],
    ):
        row = self._lock_order(session, order.id)

        entry = None
        if clawback > 0:
            entry = self.ledger.apply_delta(
                session,
                order.merchant_id,
                -clawback,
                MovementType.REFUND_DEDUCT,
                refund_no,
                f"Refund of order {order.trade_no}",
            )

        row.refund_hold = max(ZERO, to_money(to_money(row.refund_hold) - refund_amount))
        row.status = int(OrderStatus.PARTIALLY_REFUNDED)
        row.refund_status = 1
        row.refund_no = refund_no
        row.refund_money = to_money(to_money(row.refund_money) + refund_amount)
        row.refund_reason = reason or DEFAULT_REASON
        row.refund_at = self.clock()
        session.flush()
        return entry

    def _check_enabled(self) -> None:
        if self.config.get_config(USER_REFUND_FLAG, "0") != "1":
            raise FeatureDisabledError()

    def _load_order(self, session: Session, merchant_id: int, trade_no: str) -> Order:
        row = session.execute(
            select(OrderRow).where(OrderRow.trade_no == trade_no, OrderRow.merchant_id == merchant_id)
        ).scalar_one_or_none()
        if row is None:
            raise OrderNotFoundError()
        return Order.model_validate(row)

    def _lock_order(self, session: Session, order_id: int) -> OrderRow:
        return session.execute(
            select(OrderRow).where(OrderRow.id == order_id).with_for_update()
        ).scalar_one()

    def _check_status(self, order: Order) -> None:
        if order.status not in REFUNDABLE_STATUSES:
            raise InvalidOrderStateError()

    def _check_amount(self, order: Order, amount) -> Decimal:
        if order.status == OrderStatus.PARTIALLY_REFUNDED:
            refunded = to_money(order.refund_money)
            if refunded <= 0 or to_money(order.settled_money) - refunded <= 0:
                raise FullyRefundedError()

        refund_amount = parse_amount(amount)
        remaining = remaining_refundable(order)
        if refund_amount > remaining:
            raise ExceedsCapError(f"Refund amount cannot exceed {remaining:.2f}")
        return refund_amount

    def _check_clawback(self, balance: Decimal, clawback: Decimal) -> None:
        if balance < clawback:
            raise InsufficientBalanceError(f"Insufficient merchant balance (requires {clawback:.2f})")

    def _check_upstream_reference(self, order: Order) -> None:
        if not order.api_trade_no:
            raise NoUpstreamReferenceError()

    def _resolve_plugin(self, session: Session, order: Order):
        channel = session.get(ChannelRow, order.channel_id) if order.channel_id is not None else None
        if channel is None:
            raise ChannelNotFoundError()
        plugin = self.plugins.get(channel.plugin_name)
        if plugin is None:
            raise ChannelNotFoundError(f"Payment plugin {channel.plugin_name} does not exist")
        if not supports_refund(plugin):
            raise RefundUnsupportedError()
        return channel, plugin
