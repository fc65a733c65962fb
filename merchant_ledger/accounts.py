import json
import logging
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .database import Database
from .errors import MerchantNotFoundError, SettlementAccountNotFoundError, SettleMethodDisabledError
from .models import (
    MerchantSettlementInfo,
    SaveSettlementAccountRequest,
    SettlementAccount,
    SettlementMethods,
    SettleType,
)
from .tables import MerchantAccountRow, SettlementAccountRow, SettlementOptionsRow

logger = logging.getLogger(__name__)


def parse_networks(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    try:
        networks = json.loads(raw)
    except ValueError:
        logger.warning("Stored crypto networks are not valid JSON, ignoring them")
        return []
    if not isinstance(networks, list):
        return []
    return [str(n) for n in networks]


class SettlementAccountService:
    """Withdrawal destinations owned by a merchant (bank card, wallet, crypto address)."""

    def __init__(self, database: Database):
        self.database = database

    # -- accepted methods -----------------------------------------------------

    def get_methods(self) -> SettlementMethods:
        with self.database.session() as session:
            return self._methods(session)

    def save_methods(self, methods: SettlementMethods) -> SettlementMethods:
        with self.database.atomic() as session:
            row = session.execute(select(SettlementOptionsRow).limit(1)).scalar_one_or_none()
            if row is None:
                row = SettlementOptionsRow()
                session.add(row)
            row.alipay_enabled = methods.alipay_enabled
            row.wxpay_enabled = methods.wxpay_enabled
            row.bank_enabled = methods.bank_enabled
            row.crypto_enabled = methods.crypto_enabled
            row.crypto_networks = json.dumps(methods.crypto_networks) if methods.crypto_networks else None
        logger.info(f"Settlement methods updated: {methods.model_dump()}")
        return methods

    def _methods(self, session: Session) -> SettlementMethods:
        row = session.execute(select(SettlementOptionsRow).limit(1)).scalar_one_or_none()
        if row is None:
            return SettlementMethods()
        return SettlementMethods(
            alipay_enabled=bool(row.alipay_enabled),
            wxpay_enabled=bool(row.wxpay_enabled),
            bank_enabled=bool(row.bank_enabled),
            crypto_enabled=bool(row.crypto_enabled),
            crypto_networks=parse_networks(row.crypto_networks),
        )

    # -- merchant accounts ----------------------------------------------------

    def list_accounts(self, merchant_id: int) -> list[SettlementAccount]:
        with self.database.session() as session:
            return self.list_in(session, merchant_id)

    def list_in(self, session: Session, merchant_id: int) -> list[SettlementAccount]:
        rows = session.execute(
            select(SettlementAccountRow)
            .where(SettlementAccountRow.merchant_id == merchant_id)
            .order_by(SettlementAccountRow.id)
        ).scalars().all()
        return [SettlementAccount.model_validate(r) for r in rows]

    def get_owned(self, session: Session, merchant_id: int, account_id: int) -> SettlementAccountRow:
        row = session.execute(
            select(SettlementAccountRow).where(
                SettlementAccountRow.id == account_id,
                SettlementAccountRow.merchant_id == merchant_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise SettlementAccountNotFoundError()
        return row

    def save_account(self, merchant_id: int, request: SaveSettlementAccountRequest) -> SettlementAccount:
        """Create or update the merchant's account of this settle type.

        The settle type must be enabled platform-wide. The first account a
        merchant saves becomes the default; saving one as default clears the
        flag on the others.
        """
        with self.database.atomic() as session:
            self._check_method(session, request)
            saved = self._save(session, merchant_id, request, first_is_default=True)
        logger.info(f"Settlement account {saved.id} ({saved.settle_type}) saved for merchant {merchant_id}")
        return saved

    def delete_account(self, merchant_id: int, account_id: int) -> None:
        with self.database.atomic() as session:
            row = self.get_owned(session, merchant_id, account_id)
            session.delete(row)
        logger.info(f"Settlement account {account_id} deleted for merchant {merchant_id}")

    # -- admin ----------------------------------------------------------------

    def list_merchants(self) -> list[MerchantSettlementInfo]:
        """Every merchant, newest first, with its settlement accounts."""
        with self.database.session() as session:
            merchants = session.execute(
                select(MerchantAccountRow).order_by(MerchantAccountRow.id.desc())
            ).scalars().all()
            return [
                MerchantSettlementInfo(
                    merchant_id=m.merchant_id,
                    balance=m.balance,
                    settlements=self.list_in(session, m.merchant_id),
                )
                for m in merchants
            ]

    def admin_save_account(self, merchant_id: int, request: SaveSettlementAccountRequest) -> SettlementAccount:
        """Administrator override: any settle type, and the default flag is taken as given."""
        with self.database.atomic() as session:
            saved = self._save(session, merchant_id, request, first_is_default=False)
        logger.info(f"Settlement account {saved.id} ({saved.settle_type}) saved by admin for merchant {merchant_id}")
        return saved

    def admin_delete_account(self, merchant_id: int, account_id: int) -> None:
        with self.database.atomic() as session:
            session.execute(
                delete(SettlementAccountRow).where(
                    SettlementAccountRow.id == account_id,
                    SettlementAccountRow.merchant_id == merchant_id,
                )
            )
        logger.info(f"Settlement account {account_id} of merchant {merchant_id} deleted by admin")

    def _check_method(self, session: Session, request: SaveSettlementAccountRequest) -> None:
        methods = self._methods(session)
        if not methods.enabled(request.settle_type):
            raise SettleMethodDisabledError(f"Settlement method {request.settle_type.value} is not enabled")
        if (
            request.settle_type == SettleType.CRYPTO
            and methods.crypto_networks
            and request.crypto_network not in methods.crypto_networks
        ):
            raise SettleMethodDisabledError(f"Crypto network {request.crypto_network} is not supported")

    def _save(
        self,
        session: Session,
        merchant_id: int,
        request: SaveSettlementAccountRequest,
        first_is_default: bool,
    ) -> SettlementAccount:
        merchant = session.execute(
            select(MerchantAccountRow.id).where(MerchantAccountRow.merchant_id == merchant_id)
        ).scalar_one_or_none()
        if merchant is None:
            raise MerchantNotFoundError()

        make_default = request.is_default
        if first_is_default and not make_default:
            existing_ids = session.execute(
                select(SettlementAccountRow.id).where(SettlementAccountRow.merchant_id == merchant_id)
            ).scalars().all()
            make_default = not existing_ids
        if make_default:
            session.execute(
                update(SettlementAccountRow)
                .where(SettlementAccountRow.merchant_id == merchant_id)
                .values(is_default=False)
            )

        settle_type = request.settle_type.value
        row = session.execute(
            select(SettlementAccountRow).where(
                SettlementAccountRow.merchant_id == merchant_id,
                SettlementAccountRow.settle_type == settle_type,
            )
        ).scalar_one_or_none()
        if row is None:
            row = SettlementAccountRow(merchant_id=merchant_id, settle_type=settle_type)
            session.add(row)

        row.account_name = request.account_name
        row.account_no = request.account_no
        row.bank_name = request.bank_name
        row.bank_branch = request.bank_branch
        row.crypto_network = request.crypto_network
        row.crypto_address = request.crypto_address
        if make_default:
            row.is_default = True
        elif not first_is_default or row.is_default is None:
            row.is_default = False
        session.flush()
        return SettlementAccount.model_validate(row)
