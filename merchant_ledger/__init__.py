"""
Merchant Balance Ledger & Settlement Engine

This package provides:
- A merchant balance with an append-only, audited ledger of every delta
- Row-locked, atomic balance mutation
- Withdrawal lifecycle: pending → approved / rejected / cancelled
- In-place refunds with proportional balance clawback
- A FastAPI surface returning the {code, msg, data} envelope
"""

from .errors import (
    AlreadyProcessedError,
    InsufficientBalanceError,
    LedgerServiceError,
    PersistenceFailure,
    UpstreamFailure,
)
from .ledger_store import LedgerStore
from .models import (
    LedgerEntry,
    MovementType,
    OrderStatus,
    SettleCycle,
    SettlementRecord,
    SettlementStatus,
    TerminatedBy,
)
from .refund import RefundService, compute_clawback
from .service import Services, build_services
from .withdrawal import WithdrawalService, compute_fee

__all__ = [
    "AlreadyProcessedError",
    "InsufficientBalanceError",
    "LedgerServiceError",
    "PersistenceFailure",
    "UpstreamFailure",
    "LedgerStore",
    "LedgerEntry",
    "MovementType",
    "OrderStatus",
    "SettleCycle",
    "SettlementRecord",
    "SettlementStatus",
    "TerminatedBy",
    "RefundService",
    "compute_clawback",
    "Services",
    "build_services",
    "WithdrawalService",
    "compute_fee",
]
