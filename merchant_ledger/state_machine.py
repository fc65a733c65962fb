"""
Money-Movement State Machine

Records that reserve balance (withdrawal requests) move exactly once from
``pending`` to a terminal state. Terminal states that give the reservation
back do so with a compensating ledger credit written in the same
transaction as the status change.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import (
    AlreadyProcessedError,
    AlreadyRejectedError,
    InvalidStateTransitionError,
    RecordNotFoundError,
)
from .ledger_store import LedgerStore
from .models import MovementType, SettlementRecord, SettlementStatus, TerminatedBy
from .money import to_money
from .tables import SettlementRecordRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Compensation:
    movement_type: MovementType
    terminated_by: TerminatedBy
    ledger_remark: str


SETTLEMENT_TRANSITIONS: Mapping[SettlementStatus, frozenset] = {
    SettlementStatus.PENDING: frozenset(
        {SettlementStatus.APPROVED, SettlementStatus.REJECTED, SettlementStatus.CANCELLED}
    ),
}

SETTLEMENT_COMPENSATIONS: Mapping[SettlementStatus, Compensation] = {
    SettlementStatus.REJECTED: Compensation(
        MovementType.WITHDRAW_REJECT, TerminatedBy.ADMIN, "Withdrawal rejected, balance returned"
    ),
    SettlementStatus.CANCELLED: Compensation(
        MovementType.WITHDRAW_CANCEL, TerminatedBy.SELF, "Withdrawal cancelled"
    ),
}


class MoneyMovementStateMachine:
    def __init__(
        self,
        ledger: LedgerStore,
        model,
        transitions: Mapping,
        compensations: Mapping,
        reference_attr: str,
        view: Callable,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.model = model
        self.transitions = transitions
        self.compensations = compensations
        self.reference_attr = reference_attr
        self.view = view
        self.clock = clock

    def lock_record(self, session: Session, record_id: int, owner_id: Optional[int] = None):
        stmt = select(self.model).where(self.model.id == record_id).with_for_update()
        if owner_id is not None:
            stmt = stmt.where(self.model.merchant_id == owner_id)
        record = session.execute(stmt).scalar_one_or_none()
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} does not exist")
        return record

    def transition(
        self,
        session: Session,
        record_id: int,
        target,
        actor: Optional[str],
        remark: Optional[str] = None,
        owner_id: Optional[int] = None,
    ):
        record = self.lock_record(session, record_id, owner_id)
        current = type(target)(record.status)

        if target not in self.transitions.get(current, ()):
            if current not in self.transitions:
                if current == SettlementStatus.REJECTED:
                    raise AlreadyRejectedError()
                raise AlreadyProcessedError()
            raise InvalidStateTransitionError(f"Cannot move record {record_id} from {current.value} to {target.value}")

        reference = getattr(record, self.reference_attr)
        compensation = self.compensations.get(target)
        if compensation is not None:
            ledger_remark = compensation.ledger_remark
            if remark:
                ledger_remark = f"{ledger_remark}: {remark}"
            self.ledger.apply_delta(
                session,
                record.merchant_id,
                to_money(record.amount),
                compensation.movement_type,
                reference,
                ledger_remark,
            )
            record.terminated_by = compensation.terminated_by.value

        record.status = target.value
        record.remark = remark
        record.processed_by = actor
        record.processed_at = self.clock()
        session.flush()

        logger.info(f"Record {reference} {current.value} -> {target.value} by {actor}")
        return self.view(record)


def settlement_state_machine(ledger: LedgerStore, clock: Callable[[], datetime] = datetime.now) -> MoneyMovementStateMachine:
    return MoneyMovementStateMachine(
        ledger=ledger,
        model=SettlementRecordRow,
        transitions=SETTLEMENT_TRANSITIONS,
        compensations=SETTLEMENT_COMPENSATIONS,
        reference_attr="settle_no",
        view=SettlementRecord.model_validate,
        clock=clock,
    )
