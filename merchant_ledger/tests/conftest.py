"""
Shared fixtures: a temporary SQLite file database, a fixed clock, fake
payment plugins and a recording notifier.
"""

import time
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from merchant_ledger.api import create_app
from merchant_ledger.config import USER_REFUND_FLAG, Settings, StaticConfigProvider
from merchant_ledger.database import Database
from merchant_ledger.models import (
    OrderStatus,
    SaveSettlementAccountRequest,
    SettleCycle,
    SettlementOptions,
    SettleType,
)
from merchant_ledger.plugins import PluginRegistry
from merchant_ledger.service import build_services
from merchant_ledger.tables import ChannelRow, OrderRow

DEFAULT_MERCHANT = 1001

# 23:59:30 local time, so "today" started at 2025-10-17 00:00:00
FIXED_NOW = datetime(2025, 10, 17, 23, 59, 30)


class FakeRefundPlugin:
    def __init__(self, code: int = 0, msg: Optional[str] = None, delay: float = 0.0):
        self.code = code
        self.msg = msg
        self.delay = delay
        self.calls = []

    def refund(self, config, request):
        self.calls.append((config, request))
        if self.delay:
            time.sleep(self.delay)
        return {"code": self.code, "msg": self.msg}


class PayOnlyPlugin:
    def submit(self, config, order):
        return {"code": 0}


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def deliver(self, url, params):
        self.sent.append((url, dict(params)))
        if self.fail:
            raise RuntimeError("notifier down")
        return True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        plugin_timeout_seconds=0.3,
        admin_notify_url="http://admin.example/notify",
        admin_notify_key="secret",
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    yield db
    db.dispose()


@pytest.fixture
def refund_plugin():
    return FakeRefundPlugin()


@pytest.fixture
def plugins(settings, refund_plugin):
    registry = PluginRegistry(timeout=settings.plugin_timeout_seconds)
    registry.register("alipay", refund_plugin)
    registry.register("qrpay", PayOnlyPlugin())
    yield registry
    registry.shutdown()


@pytest.fixture
def flags():
    return StaticConfigProvider({USER_REFUND_FLAG: "1"})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def services(settings, database, plugins, notifier, flags, clock):
    return build_services(settings, database=database, plugins=plugins, notifier=notifier, config=flags, clock=clock)


@pytest.fixture
def client(settings, database, plugins, notifier, flags, clock, services):
    app = create_app(settings, database=database, plugins=plugins, notifier=notifier, config=flags, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def open_merchant(services):
    def _open(merchant_id: int = DEFAULT_MERCHANT, balance: str = "0.00"):
        with services.database.atomic() as session:
            services.ledger.open_account(session, merchant_id, Decimal(balance))
        return merchant_id

    return _open


@pytest.fixture
def add_channel(services):
    def _add(plugin_name: str = "alipay", config: Optional[str] = '{"gateway": "https://pay.example"}') -> int:
        with services.database.atomic() as session:
            channel = ChannelRow(plugin_name=plugin_name, config=config, app_id="app-1", app_key="key-1")
            session.add(channel)
            session.flush()
            return channel.id

    return _add


@pytest.fixture
def add_order(services, add_channel):
    def _add(
        trade_no: str,
        money: str,
        fee: str = "0.00",
        status: OrderStatus = OrderStatus.PAID,
        refund_money: str = "0.00",
        api_trade_no: Optional[str] = "UP-0001",
        channel_id: Optional[int] = -1,
        paid_at: Optional[datetime] = None,
        merchant_id: int = DEFAULT_MERCHANT,
        real_money: Optional[str] = None,
        refund_hold: str = "0.00",
    ) -> str:
        if channel_id == -1:
            channel_id = add_channel()
        with services.database.atomic() as session:
            session.add(OrderRow(
                trade_no=trade_no,
                merchant_id=merchant_id,
                money=Decimal(money),
                fee_money=Decimal(fee),
                real_money=Decimal(real_money) if real_money else Decimal(money),
                api_trade_no=api_trade_no,
                channel_id=channel_id,
                status=int(status),
                refund_money=Decimal(refund_money),
                refund_hold=Decimal(refund_hold),
                paid_at=paid_at or datetime(2025, 10, 1, 12, 0, 0),
            ))
        return trade_no

    return _add


@pytest.fixture
def add_settlement_account(services):
    def _add(merchant_id: int = DEFAULT_MERCHANT, settle_type: SettleType = SettleType.BANK) -> int:
        account = services.accounts.save_account(
            merchant_id,
            SaveSettlementAccountRequest(
                settle_type=settle_type,
                account_name="Test Merchant Ltd",
                account_no="6222000011112222",
                bank_name="Test Bank",
            ),
        )
        return account.id

    return _add


@pytest.fixture
def set_options(services):
    def _set(
        settle_cycle: SettleCycle = SettleCycle.REALTIME,
        settle_rate: str = "0",
        settle_fee_min: str = "0",
        settle_fee_max: str = "0",
        min_settle_amount: str = "10.00",
    ):
        return services.withdrawals.save_options(SettlementOptions(
            settle_rate=Decimal(settle_rate),
            settle_fee_min=Decimal(settle_fee_min),
            settle_fee_max=Decimal(settle_fee_max),
            min_settle_amount=Decimal(min_settle_amount),
            settle_cycle=settle_cycle,
        ))

    return _set
