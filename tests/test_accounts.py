"""
Test suite for accounts module
"""

import pytest
from decimal import Decimal

from wealth_core.currency import Money, Currency
from wealth_core.storage import InMemoryStorage
from wealth_core.audit import AuditTrail, AuditEventType
from wealth_core.accounts import Account, AccountKind, AccountManager
from wealth_core.exceptions import InvalidAccount


class TestAccountManager:
    """Test account opening and lookup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.account_manager = AccountManager(self.storage, self.audit_trail)

    def test_open_account_starts_at_zero(self):
        account = self.account_manager.open_account("alice", AccountKind.CURRENT)

        assert account.owner_id == "alice"
        assert account.kind == AccountKind.CURRENT
        assert account.currency == Currency.BRL
        assert account.balance == Money.zero(Currency.BRL)
        assert not account.is_investment

    def test_open_account_is_persisted_and_audited(self):
        account = self.account_manager.open_account("alice", AccountKind.INVESTMENT)

        loaded = self.account_manager.get_account(account.id)
        assert loaded == account
        assert loaded.is_investment

        events = self.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_OPENED)
        assert [e.entity_id for e in events] == [account.id]

    def test_one_account_of_each_kind_per_owner(self):
        self.account_manager.open_account("alice", AccountKind.CURRENT)
        self.account_manager.open_account("alice", AccountKind.INVESTMENT)

        with pytest.raises(InvalidAccount, match="already has a current account"):
            self.account_manager.open_account("alice", AccountKind.CURRENT)

        assert len(self.account_manager.get_owner_accounts("alice")) == 2

    def test_owner_is_required(self):
        with pytest.raises(InvalidAccount):
            self.account_manager.open_account("", AccountKind.CURRENT)

    def test_explicit_currency(self):
        account = self.account_manager.open_account("bob", AccountKind.CURRENT, Currency.USD)
        assert account.balance.currency == Currency.USD

    def test_require_account(self):
        account = self.account_manager.open_account("alice", AccountKind.CURRENT)

        assert self.account_manager.require_account(account.id).id == account.id
        with pytest.raises(InvalidAccount, match="not found"):
            self.account_manager.require_account("missing")
        with pytest.raises(InvalidAccount, match="investment required"):
            self.account_manager.require_account(account.id, AccountKind.INVESTMENT)

    def test_find_owner_account(self):
        investment = self.account_manager.open_account("alice", AccountKind.INVESTMENT)

        found = self.account_manager.find_owner_account("alice", AccountKind.INVESTMENT)
        assert found.id == investment.id
        assert self.account_manager.find_owner_account("alice", AccountKind.CURRENT) is None

    def test_balance_survives_round_trip(self):
        account = self.account_manager.open_account("alice", AccountKind.CURRENT)
        account.balance = Money(Decimal('1234.56'), Currency.BRL)
        self.account_manager.save_account(account)

        assert self.account_manager.get_account(account.id).balance.amount == Decimal('1234.56')

    def test_balance_currency_must_match(self):
        account = self.account_manager.open_account("alice", AccountKind.CURRENT)
        with pytest.raises(ValueError, match="currency"):
            Account(
                id="x",
                created_at=account.created_at,
                updated_at=account.updated_at,
                owner_id="alice",
                kind=AccountKind.CURRENT,
                currency=Currency.BRL,
                balance=Money.zero(Currency.USD)
            )
