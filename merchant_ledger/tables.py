from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

MONEY = Numeric(14, 2)


class MerchantAccountRow(Base):
    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, unique=True, nullable=False, index=True)
    balance = Column(MONEY, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class BalanceLogRow(Base):
    __tablename__ = "merchant_balance_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    type = Column(String(32), nullable=False)
    amount = Column(MONEY, nullable=False)  # +credit / -debit
    before_balance = Column(MONEY, nullable=False)
    after_balance = Column(MONEY, nullable=False)
    related_no = Column(String(64), index=True)
    remark = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class SettlementRecordRow(Base):
    __tablename__ = "settle_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    settle_no = Column(String(64), unique=True, nullable=False)
    merchant_id = Column(Integer, nullable=False, index=True)
    settle_type = Column(String(16), nullable=False)
    amount = Column(MONEY, nullable=False)
    fee = Column(MONEY, nullable=False, default=0)
    real_amount = Column(MONEY, nullable=False)
    account_name = Column(String(128))
    account_no = Column(String(128))
    bank_name = Column(String(128))
    bank_branch = Column(String(128))
    crypto_network = Column(String(32))
    crypto_address = Column(String(255))
    status = Column(String(16), nullable=False, default="pending", index=True)
    terminated_by = Column(String(8))  # admin | self
    remark = Column(String(255))
    processed_by = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    processed_at = Column(DateTime)


class SettlementAccountRow(Base):
    __tablename__ = "merchant_settlements"
    __table_args__ = (UniqueConstraint("merchant_id", "settle_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    settle_type = Column(String(16), nullable=False)
    account_name = Column(String(128))
    account_no = Column(String(128))
    bank_name = Column(String(128))
    bank_branch = Column(String(128))
    crypto_network = Column(String(32))
    crypto_address = Column(String(255))
    is_default = Column(Boolean, nullable=False, default=False)


class SettlementOptionsRow(Base):
    __tablename__ = "settlement_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    settle_rate = Column(Numeric(6, 2), nullable=False, default=0)  # percent
    settle_fee_min = Column(MONEY, nullable=False, default=0)
    settle_fee_max = Column(MONEY, nullable=False, default=0)
    min_settle_amount = Column(MONEY, nullable=False, default=10)
    settle_cycle = Column(SmallInteger, nullable=False, default=1)
    auto_settle = Column(Boolean, nullable=False, default=False)
    auto_settle_cycle = Column(SmallInteger, nullable=False, default=0)
    auto_settle_amount = Column(MONEY, nullable=False, default=0)
    auto_settle_type = Column(String(16), nullable=False, default="")
    alipay_enabled = Column(Boolean, nullable=False, default=True)
    wxpay_enabled = Column(Boolean, nullable=False, default=True)
    bank_enabled = Column(Boolean, nullable=False, default=True)
    crypto_enabled = Column(Boolean, nullable=False, default=False)
    crypto_networks = Column(Text)  # JSON list


class OrderRow(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_no = Column(String(64), unique=True, nullable=False)
    out_trade_no = Column(String(64))
    merchant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255))
    money = Column(MONEY, nullable=False)
    fee_money = Column(MONEY, nullable=False, default=0)
    real_money = Column(MONEY)
    api_trade_no = Column(String(128))
    channel_id = Column(Integer)
    status = Column(SmallInteger, nullable=False, default=0)
    refund_status = Column(SmallInteger, nullable=False, default=0)
    refund_no = Column(String(64))
    refund_money = Column(MONEY, nullable=False, default=0)
    refund_hold = Column(MONEY, nullable=False, default=0)  # in-flight upstream refunds
    refund_reason = Column(String(255))
    refund_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    paid_at = Column(DateTime, index=True)


class ChannelRow(Base):
    __tablename__ = "provider_channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plugin_name = Column(String(64), nullable=False)
    config = Column(Text)
    app_id = Column(String(128))
    app_mch_id = Column(String(128))
    app_key = Column(Text)
    app_secret = Column(Text)


class SystemConfigRow(Base):
    __tablename__ = "system_config"

    config_key = Column(String(64), primary_key=True)
    config_value = Column(Text)
