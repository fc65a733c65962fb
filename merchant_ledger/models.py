from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, computed_field
from pydantic.alias_generators import to_camel

from .money import format_money

Money = Annotated[Decimal, PlainSerializer(format_money, return_type=str, when_used="json")]


class MovementType(str, Enum):
    INCOME = "income"
    WITHDRAW = "withdraw"
    WITHDRAW_CANCEL = "withdraw_cancel"
    WITHDRAW_REJECT = "withdraw_reject"
    REFUND_DEDUCT = "refund_deduct"
    ADJUST = "adjust"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def legacy_code(self) -> int:
        # rejected and cancelled share code 3 in the legacy schema
        return {"pending": 0, "approved": 1, "rejected": 3, "cancelled": 3}[self.value]


class TerminatedBy(str, Enum):
    ADMIN = "admin"
    SELF = "self"


class OrderStatus(IntEnum):
    UNPAID = 0
    PAID = 1
    PARTIALLY_REFUNDED = 2
    FROZEN = 3


class SettleCycle(IntEnum):
    REALTIME = -1
    SAME_DAY = 0
    NEXT_DAY = 1


class SettleType(str, Enum):
    ALIPAY = "alipay"
    WXPAY = "wxpay"
    BANK = "bank"
    CRYPTO = "crypto"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# -- requests -----------------------------------------------------------------

class RefundRequest(ApiModel):
    trade_no: str = Field(..., min_length=1)
    money: Decimal
    reason: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(json_schema_extra={
        "example": {"tradeNo": "2025101712000012345", "money": "50.00", "reason": "Customer request"}
    })


class RefundQueryRequest(ApiModel):
    trade_no: str = Field(..., min_length=1)


class WithdrawApplyRequest(ApiModel):
    amount: Decimal
    settlement_id: int

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": "100.00", "settlement_id": 1}
    })


class RecordActionRequest(ApiModel):
    id: int
    remark: Optional[str] = Field(default=None, max_length=255)


class BatchApproveRequest(ApiModel):
    ids: list[int] = Field(default_factory=list)


class SaveSettlementAccountRequest(ApiModel):
    settle_type: SettleType
    account_name: Optional[str] = None
    account_no: Optional[str] = None
    bank_name: Optional[str] = None
    bank_branch: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_address: Optional[str] = None
    is_default: bool = False


class AdminSaveSettlementAccountRequest(SaveSettlementAccountRequest):
    merchant_id: int


class DeleteSettlementAccountRequest(ApiModel):
    id: int


class AdminDeleteSettlementAccountRequest(ApiModel):
    id: int
    merchant_id: int


class SystemConfigRequest(ApiModel):
    key: str = Field(..., min_length=1, max_length=64)
    value: str


class SettlementQuery(ApiModel):
    """Criteria for listing settlement records. Unset fields do not filter."""

    merchant_id: Optional[int] = None
    status: Optional[SettlementStatus] = None
    settle_type: Optional[SettleType] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


# -- domain views -------------------------------------------------------------

class LedgerEntry(ApiModel):
    id: int
    merchant_id: int
    movement_type: MovementType
    amount: Money
    before_balance: Money
    after_balance: Money
    correlation_id: Optional[str] = None
    remark: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "LedgerEntry":
        return cls(
            id=row.id,
            merchant_id=row.merchant_id,
            movement_type=MovementType(row.type),
            amount=row.amount,
            before_balance=row.before_balance,
            after_balance=row.after_balance,
            correlation_id=row.related_no,
            remark=row.remark,
            created_at=row.created_at,
        )


class MerchantBalance(ApiModel):
    merchant_id: int
    balance: Money


class LedgerHistoryResponse(ApiModel):
    merchant_id: int
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Money


class LedgerAudit(ApiModel):
    merchant_id: int
    balance: Money
    ledger_sum: Money
    entry_count: int
    contiguous: bool

    @computed_field
    @property
    def consistent(self) -> bool:
        return self.contiguous and self.balance == self.ledger_sum


class SettlementRecord(ApiModel):
    id: int
    settle_no: str
    merchant_id: int
    settle_type: str
    amount: Money
    fee: Money
    real_amount: Money
    account_name: Optional[str] = None
    account_no: Optional[str] = None
    bank_name: Optional[str] = None
    bank_branch: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_address: Optional[str] = None
    status: SettlementStatus
    terminated_by: Optional[TerminatedBy] = None
    remark: Optional[str] = None
    processed_by: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    @computed_field
    @property
    def legacy_status(self) -> int:
        return self.status.legacy_code


class SettlementRecordPage(ApiModel):
    records: list[SettlementRecord]
    total: int
    pending_count: int = 0
    pending_amount: Money = Decimal("0.00")


class SettlementAccount(ApiModel):
    id: int
    merchant_id: int
    settle_type: str
    account_name: Optional[str] = None
    account_no: Optional[str] = None
    bank_name: Optional[str] = None
    bank_branch: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_address: Optional[str] = None
    is_default: bool = False


class SettlementOptions(ApiModel):
    settle_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    settle_fee_min: Money = Field(default=Decimal("0.00"), ge=0)
    settle_fee_max: Money = Field(default=Decimal("0.00"), ge=0)
    min_settle_amount: Money = Field(default=Decimal("10.00"), ge=0)
    settle_cycle: SettleCycle = SettleCycle.NEXT_DAY
    auto_settle: bool = False
    auto_settle_cycle: int = Field(default=0, ge=0)
    auto_settle_amount: Money = Field(default=Decimal("0.00"), ge=0)
    auto_settle_type: str = ""


class SettlementMethods(ApiModel):
    """Withdrawal destinations the platform currently accepts."""

    alipay_enabled: bool = True
    wxpay_enabled: bool = True
    bank_enabled: bool = True
    crypto_enabled: bool = False
    crypto_networks: list[str] = Field(default_factory=list)

    def enabled(self, settle_type: SettleType) -> bool:
        return getattr(self, f"{settle_type.value}_enabled")


class WithdrawableInfo(ApiModel):
    balance: Money
    frozen_amount: Money
    available_balance: Money
    pending_amount: Money
    settle_rate: Decimal
    settle_fee_min: Money
    settle_fee_max: Money
    min_settle_amount: Money
    settle_cycle: SettleCycle
    settlements: list[SettlementAccount] = Field(default_factory=list)


class WithdrawalReceipt(ApiModel):
    record_id: int
    settle_no: str
    amount: Money
    fee: Money
    real_amount: Money


class MerchantSettlementInfo(ApiModel):
    merchant_id: int
    balance: Money
    settlements: list[SettlementAccount] = Field(default_factory=list)


class BatchApproveResult(ApiModel):
    success: int = 0
    fail: int = 0
    failures: dict[int, str] = Field(default_factory=dict)


class Order(ApiModel):
    """Fields of an externally owned order that refunds depend on."""

    id: int
    trade_no: str
    merchant_id: int
    money: Decimal
    fee_money: Decimal = Decimal("0")
    real_money: Optional[Decimal] = None
    api_trade_no: Optional[str] = None
    channel_id: Optional[int] = None
    status: int
    refund_money: Decimal = Decimal("0")
    refund_hold: Decimal = Decimal("0")

    @property
    def settled_money(self) -> Decimal:
        return self.real_money if self.real_money else self.money


class RefundQuote(ApiModel):
    trade_no: str
    money: Money
    refunded_money: Money
    max_refund: Money


class RefundResult(ApiModel):
    trade_no: str
    refund_no: str
    refund_money: Money
    reduce_money: Money
    ledger_entry: Optional[LedgerEntry] = None
