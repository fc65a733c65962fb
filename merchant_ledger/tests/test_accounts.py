"""
Unit Tests for Settlement Accounts
"""

from decimal import Decimal

import pytest

from merchant_ledger.errors import MerchantNotFoundError, SettlementAccountNotFoundError, SettleMethodDisabledError
from merchant_ledger.models import SaveSettlementAccountRequest, SettlementMethods, SettleType
from merchant_ledger.tables import SettlementOptionsRow


MERCHANT_ID = 1001
OTHER_MERCHANT_ID = 1002


def save(services, settle_type, merchant_id=MERCHANT_ID, **fields):
    return services.accounts.save_account(
        merchant_id, SaveSettlementAccountRequest(settle_type=settle_type, **fields)
    )


class TestSettlementAccounts:
    """Tests for saving, listing and deleting destinations."""

    def test_first_account_becomes_default(self, services, open_merchant):
        """The first saved account is the default even if not requested."""
        open_merchant(MERCHANT_ID)

        account = save(services, SettleType.ALIPAY, account_no="alice@example.com")

        assert account.is_default

    def test_new_default_clears_others(self, services, open_merchant):
        """Marking an account as default clears the flag elsewhere."""
        open_merchant(MERCHANT_ID)
        services.accounts.save_methods(SettlementMethods(crypto_enabled=True))
        first = save(services, SettleType.ALIPAY, account_no="alice@example.com")
        second = save(services, SettleType.CRYPTO, crypto_network="TRC20", crypto_address="TXyz", is_default=True)

        accounts = {a.id: a for a in services.accounts.list_accounts(MERCHANT_ID)}

        assert accounts[second.id].is_default
        assert not accounts[first.id].is_default

    def test_save_same_type_updates(self, services, open_merchant):
        """Saving a settle type the merchant already has updates it in place."""
        open_merchant(MERCHANT_ID)
        first = save(services, SettleType.BANK, account_no="111")
        updated = save(services, SettleType.BANK, account_no="222")

        assert updated.id == first.id
        assert updated.account_no == "222"
        assert updated.is_default
        assert len(services.accounts.list_accounts(MERCHANT_ID)) == 1

    def test_unknown_merchant(self, services):
        """Accounts can only be saved for existing merchants."""
        with pytest.raises(MerchantNotFoundError):
            save(services, SettleType.BANK, merchant_id=4040)

    def test_delete_only_own(self, services, open_merchant):
        """Deleting another merchant's account reports it as not found."""
        open_merchant(MERCHANT_ID)
        open_merchant(OTHER_MERCHANT_ID)
        account = save(services, SettleType.BANK, account_no="111")

        with pytest.raises(SettlementAccountNotFoundError):
            services.accounts.delete_account(OTHER_MERCHANT_ID, account.id)

        services.accounts.delete_account(MERCHANT_ID, account.id)
        assert services.accounts.list_accounts(MERCHANT_ID) == []


class TestSettlementMethods:
    """Tests for the platform-wide list of accepted methods."""

    def test_defaults(self, services):
        """Without stored options every method but crypto is accepted."""
        methods = services.accounts.get_methods()

        assert methods.alipay_enabled and methods.wxpay_enabled and methods.bank_enabled
        assert not methods.crypto_enabled
        assert methods.crypto_networks == []

    def test_round_trip(self, services):
        """Saved methods are read back, networks included."""
        services.accounts.save_methods(SettlementMethods(wxpay_enabled=False, crypto_enabled=True,
                                                         crypto_networks=["TRC20", "ERC20"]))

        methods = services.accounts.get_methods()

        assert not methods.wxpay_enabled
        assert methods.crypto_enabled
        assert methods.crypto_networks == ["TRC20", "ERC20"]

    def test_methods_keep_fee_options(self, services, set_options):
        """Saving methods leaves the fee configuration alone."""
        set_options(settle_rate="0.6")

        services.accounts.save_methods(SettlementMethods(bank_enabled=False))

        assert services.withdrawals.get_options().settle_rate == Decimal("0.6")

    def test_malformed_networks(self, services):
        """Unreadable stored networks are treated as an empty list."""
        services.accounts.save_methods(SettlementMethods(crypto_enabled=True))
        with services.database.atomic() as session:
            row = session.query(SettlementOptionsRow).one()
            row.crypto_networks = "not json"

        assert services.accounts.get_methods().crypto_networks == []

    def test_disabled_method_rejected(self, services, open_merchant):
        """Merchants cannot save an account for a method that is switched off."""
        open_merchant(MERCHANT_ID)

        with pytest.raises(SettleMethodDisabledError):
            save(services, SettleType.CRYPTO, crypto_network="TRC20", crypto_address="TXyz")

        assert services.accounts.list_accounts(MERCHANT_ID) == []

    def test_unlisted_network_rejected(self, services, open_merchant):
        """With a network list configured, other networks are refused."""
        open_merchant(MERCHANT_ID)
        services.accounts.save_methods(SettlementMethods(crypto_enabled=True, crypto_networks=["TRC20"]))

        with pytest.raises(SettleMethodDisabledError):
            save(services, SettleType.CRYPTO, crypto_network="ERC20", crypto_address="0xabc")

        account = save(services, SettleType.CRYPTO, crypto_network="TRC20", crypto_address="TXyz")
        assert account.crypto_network == "TRC20"


class TestAdminAccounts:
    """Tests for administrator account management."""

    def test_list_merchants(self, services, open_merchant):
        """Merchants are listed newest first, each with balance and accounts."""
        open_merchant(MERCHANT_ID, "12.00")
        open_merchant(OTHER_MERCHANT_ID)
        save(services, SettleType.BANK, account_no="111")

        merchants = services.accounts.list_merchants()

        assert [m.merchant_id for m in merchants] == [OTHER_MERCHANT_ID, MERCHANT_ID]
        assert merchants[1].balance == Decimal("12.00")
        assert [a.account_no for a in merchants[1].settlements] == ["111"]
        assert merchants[0].settlements == []

    def test_admin_save_ignores_methods_and_first_default(self, services, open_merchant):
        """Admin saves bypass the method switch and take the default flag as given."""
        open_merchant(MERCHANT_ID)

        account = services.accounts.admin_save_account(
            MERCHANT_ID, SaveSettlementAccountRequest(settle_type=SettleType.CRYPTO, crypto_address="TXyz")
        )

        assert account.settle_type == "crypto"
        assert not account.is_default

    def test_admin_save_clears_default(self, services, open_merchant):
        """Saving as default through the admin path un-defaults the merchant's other accounts."""
        open_merchant(MERCHANT_ID)
        first = save(services, SettleType.BANK, account_no="111")

        services.accounts.admin_save_account(
            MERCHANT_ID, SaveSettlementAccountRequest(settle_type=SettleType.ALIPAY, account_no="a@b.c", is_default=True)
        )

        accounts = {a.settle_type: a for a in services.accounts.list_accounts(MERCHANT_ID)}
        assert accounts["alipay"].is_default
        assert not accounts["bank"].is_default
        assert accounts["bank"].id == first.id

    def test_admin_delete(self, services, open_merchant):
        """Admin delete is scoped by merchant and silent when nothing matches."""
        open_merchant(MERCHANT_ID)
        account = save(services, SettleType.BANK, account_no="111")

        services.accounts.admin_delete_account(OTHER_MERCHANT_ID, account.id)
        assert len(services.accounts.list_accounts(MERCHANT_ID)) == 1

        services.accounts.admin_delete_account(MERCHANT_ID, account.id)
        assert services.accounts.list_accounts(MERCHANT_ID) == []
