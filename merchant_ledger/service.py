import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select

from .accounts import SettlementAccountService
from .config import ConfigProvider, DatabaseConfigProvider, Settings
from .database import Database
from .errors import InvalidOrderStateError, OrderNotFoundError
from .ledger_store import LedgerStore
from .models import LedgerAudit, LedgerEntry, LedgerHistoryResponse, MerchantBalance, MovementType, OrderStatus
from .money import to_money
from .notifier import HttpNotifier, Notifier
from .plugins import PluginRegistry
from .refund import RefundService
from .state_machine import settlement_state_machine
from .tables import BalanceLogRow, OrderRow
from .withdrawal import WithdrawalService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    database: Database
    ledger: LedgerStore
    accounts: SettlementAccountService
    refunds: RefundService
    withdrawals: WithdrawalService
    config: ConfigProvider
    plugins: PluginRegistry

    def balance(self, merchant_id: int) -> MerchantBalance:
        with self.database.session() as session:
            return self.ledger.get_balance(session, merchant_id)

    def history(self, merchant_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.database.session() as session:
            return self.ledger.history(session, merchant_id, limit, offset)

    def audit(self, merchant_id: int) -> LedgerAudit:
        with self.database.session() as session:
            return self.ledger.audit(session, merchant_id)

    def credit_order_income(self, trade_no: str) -> LedgerEntry:
        """Credit a paid order's net income to its merchant. Repeat calls return the first entry."""
        with self.database.atomic() as session:
            order = session.execute(
                select(OrderRow).where(OrderRow.trade_no == trade_no).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                raise OrderNotFoundError()
            if order.status != OrderStatus.PAID:
                raise InvalidOrderStateError("Only paid orders can be credited")

            existing = session.execute(
                select(BalanceLogRow).where(
                    BalanceLogRow.related_no == trade_no,
                    BalanceLogRow.type == MovementType.INCOME.value,
                )
            ).scalars().first()
            if existing is not None:
                logger.info(f"Income for order {trade_no} already credited, returning entry {existing.id}")
                return LedgerEntry.from_row(existing)

            settled = order.real_money if order.real_money else order.money
            income = to_money(to_money(settled) - to_money(order.fee_money))
            return self.ledger.apply_delta(
                session, order.merchant_id, income, MovementType.INCOME, trade_no, f"Income from order {trade_no}"
            )

    def close(self) -> None:
        self.plugins.shutdown()
        self.database.dispose()
        logger.info("Services closed")


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    plugins: Optional[PluginRegistry] = None,
    notifier: Optional[Notifier] = None,
    config: Optional[ConfigProvider] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Services:
    database = database or Database(settings.database_url, settings.db_lock_timeout)
    database.create_all()

    ledger = LedgerStore(clock=clock)
    accounts = SettlementAccountService(database)
    config = config or DatabaseConfigProvider(database)
    plugins = plugins or PluginRegistry(timeout=settings.plugin_timeout_seconds)
    notifier = notifier or HttpNotifier(timeout=settings.notify_timeout_seconds)

    return Services(
        database=database,
        ledger=ledger,
        accounts=accounts,
        refunds=RefundService(database, ledger, plugins, config, clock=clock),
        withdrawals=WithdrawalService(
            database,
            ledger,
            settlement_state_machine(ledger, clock=clock),
            accounts,
            notifier=notifier,
            notify_url=settings.admin_notify_url,
            notify_key=settings.admin_notify_key,
            clock=clock,
        ),
        config=config,
        plugins=plugins,
    )
