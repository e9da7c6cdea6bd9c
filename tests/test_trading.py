"""
Test suite for trading engine

Tests order settlement, fee and tax application, validation order, rejection
bookkeeping and compensation when the ledger leg fails.
"""

import pytest
from unittest.mock import patch
from decimal import Decimal
from datetime import date

from wealth_core.currency import Money, Currency
from wealth_core.storage import InMemoryStorage, SQLiteStorage
from wealth_core.audit import AuditTrail, AuditEventType
from wealth_core.accounts import AccountKind, AccountManager
from wealth_core.ledger import Ledger, TransactionKind, TransactionFilter
from wealth_core.positions import PositionTracker
from wealth_core.fees import FeeSchedule, FeeTaxCalculator
from wealth_core.market_data import Asset, AssetKind, InMemoryMarketData
from wealth_core.trading import TradingEngine, OrderSide, OrderState
from wealth_core.exceptions import (
    InvalidAmount, InsufficientFunds, InsufficientPosition, BelowMinimumInvestment,
    InvalidAccount, AssetNotFound
)


def brl(value) -> Money:
    return Money(Decimal(value), Currency.BRL)


STOCK = Asset(
    id="PETR4", symbol="PETR4", name="Petrobras PN", kind=AssetKind.STOCK,
    current_price=Decimal('100'), previous_price=Decimal('98')
)

CDB = Asset(
    id="CDB-XP", symbol="CDB XP", name="CDB XP 120% CDI", kind=AssetKind.FIXED_INCOME,
    current_price=Decimal('1000'), previous_price=Decimal('1000'),
    interest_rate=Decimal('12.5'), min_investment=Decimal('5000'),
    maturity_date=date(2027, 1, 15)
)


class TradingTestCase:
    """Shared wiring over a given storage backend"""

    def build(self, storage):
        self.storage = storage
        self.audit_trail = AuditTrail(self.storage)
        self.account_manager = AccountManager(self.storage, self.audit_trail)
        self.ledger = Ledger(self.storage, self.account_manager, self.audit_trail)
        self.positions = PositionTracker(self.storage, self.audit_trail, self.ledger.locks)
        self.market_data = InMemoryMarketData([STOCK, CDB])
        self.engine = TradingEngine(
            self.storage, self.account_manager, self.ledger, self.positions,
            FeeTaxCalculator(FeeSchedule()), self.market_data, self.audit_trail
        )

        self.current = self.account_manager.open_account("alice", AccountKind.CURRENT)
        self.account = self.account_manager.open_account("alice", AccountKind.INVESTMENT)
        self.ledger.deposit(self.account.id, Decimal('10000'))

    def state(self):
        """Everything a rejected order must leave untouched"""
        return (
            self.ledger.get_balance(self.account.id),
            self.positions.list_positions(self.account.id, include_closed=True),
            self.storage.count(self.ledger.table_name),
            self.audit_trail.count_events()
        )


class TestBuy(TradingTestCase):

    def setup_method(self):
        self.build(InMemoryStorage())

    def test_buy_stock_scenario(self):
        order = self.engine.buy(self.account.id, "PETR4", Decimal('10'))

        assert order.state == OrderState.SETTLED
        assert order.gross_value == brl("1000.00")
        assert order.fee == brl("10.00")
        assert order.net_value == brl("1010.00")
        assert self.ledger.get_balance(self.account.id) == brl("8990.00")

        position = self.positions.get_position(self.account.id, "PETR4")
        assert position.quantity == Decimal('10')
        assert position.average_cost == Decimal('100')

    def test_buy_posts_buy_transaction_with_metadata(self):
        order = self.engine.buy(self.account.id, "PETR4", Decimal('10'))

        transaction = self.ledger.get_transaction(order.transaction_id)
        assert transaction.kind == TransactionKind.BUY
        assert transaction.amount == brl("1010.00")
        assert transaction.asset_id == "PETR4"
        assert transaction.quantity == Decimal('10')
        assert transaction.metadata["order_id"] == order.id
        assert transaction.metadata["asset_kind"] == "stock"
        assert transaction.metadata_decimal("gross_value") == Decimal('1000.00')
        assert transaction.metadata_decimal("fee") == Decimal('10.00')
        assert transaction.metadata_decimal("average_cost") == Decimal('100')

    def test_second_buy_reaverages(self):
        self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        self.market_data.set_price("PETR4", "120")
        self.engine.buy(self.account.id, "PETR4", Decimal('30'))

        assert self.positions.get_position(self.account.id, "PETR4").average_cost == Decimal('115')

    def test_fixed_income_has_no_fee(self):
        order = self.engine.buy(self.account.id, "CDB-XP", Decimal('5'))

        assert order.fee.is_zero()
        assert order.net_value == brl("5000.00")
        assert self.ledger.get_balance(self.account.id) == brl("5000.00")

    def test_below_minimum_investment_rejected(self):
        before = self.state()

        with pytest.raises(BelowMinimumInvestment):
            self.engine.buy(self.account.id, "CDB-XP", Decimal('3'))

        assert self.state() == before
        [order] = self.engine.list_orders(self.account.id)
        assert order.state == OrderState.REJECTED
        assert order.rejection_code == "below_minimum_investment"

    def test_insufficient_funds_rejected(self):
        before = self.state()

        with pytest.raises(InsufficientFunds):
            self.engine.buy(self.account.id, "PETR4", Decimal('100'))

        assert self.state() == before

    def test_total_cost_including_fee_must_fit(self):
        self.ledger.withdraw(self.account.id, Decimal('8990.01'))

        with pytest.raises(InsufficientFunds):
            self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        self.ledger.deposit(self.account.id, Decimal('0.01'))
        assert self.engine.buy(self.account.id, "PETR4", Decimal('10')).is_settled

    @pytest.mark.parametrize("quantity", [Decimal('0'), Decimal('-1'), "ten"])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(InvalidAmount):
            self.engine.buy(self.account.id, "PETR4", quantity)

    def test_unknown_asset(self):
        with pytest.raises(AssetNotFound):
            self.engine.buy(self.account.id, "XXXX3", Decimal('1'))

    def test_current_account_cannot_trade(self):
        self.ledger.deposit(self.current.id, Decimal('1000'))

        with pytest.raises(InvalidAccount):
            self.engine.buy(self.current.id, "PETR4", Decimal('1'))

    def test_validation_order(self):
        # Account first, then quantity, then asset
        with pytest.raises(InvalidAccount):
            self.engine.buy(self.current.id, "XXXX3", Decimal('0'))
        with pytest.raises(InvalidAmount):
            self.engine.buy(self.account.id, "XXXX3", Decimal('0'))
        with pytest.raises(AssetNotFound):
            self.engine.buy(self.account.id, "XXXX3", Decimal('999999'))
        with pytest.raises(BelowMinimumInvestment):
            self.engine.buy(self.account.id, "CDB-XP", Decimal('1'))

    def test_ledger_failure_restores_position(self):
        self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        before = self.state()

        with patch.object(self.ledger, "debit_for_trade", side_effect=RuntimeError("ledger down")):
            with pytest.raises(RuntimeError, match="ledger down"):
                self.engine.buy(self.account.id, "PETR4", Decimal('5'))

        assert self.state() == before
        position = self.positions.get_position(self.account.id, "PETR4")
        assert position.quantity == Decimal('10')

    def test_ledger_failure_calls_restore(self):
        with patch.object(self.ledger, "debit_for_trade", side_effect=RuntimeError("ledger down")):
            with patch.object(self.positions, "restore", wraps=self.positions.restore) as restore:
                with pytest.raises(RuntimeError):
                    self.engine.buy(self.account.id, "PETR4", Decimal('5'))

        restore.assert_called_once()
        assert self.positions.get_position(self.account.id, "PETR4") is None

    def test_settlement_is_audited(self):
        order = self.engine.buy(self.account.id, "PETR4", Decimal('1'))

        events = self.audit_trail.get_events_for_entity("order", order.id)
        assert [e.event_type for e in events] == [AuditEventType.ORDER_SETTLED]
        assert self.audit_trail.verify_integrity()["valid"]


class TestSell(TradingTestCase):

    def setup_method(self):
        self.build(InMemoryStorage())
        self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        self.market_data.set_price("PETR4", "150")

    def test_sell_scenario(self):
        order = self.engine.sell(self.account.id, "PETR4", Decimal('10'))

        assert order.gross_value == brl("1500.00")
        assert order.realized_gain == brl("500.00")
        assert order.fee == brl("15.00")
        assert order.tax == brl("75.00")
        assert order.net_value == brl("1410.00")
        assert self.ledger.get_balance(self.account.id) == brl("10400.00")

        position = self.positions.get_position(self.account.id, "PETR4")
        assert position.quantity == Decimal('0')
        assert position.average_cost == Decimal('100')

    def test_sell_records_realized_gain(self):
        order = self.engine.sell(self.account.id, "PETR4", Decimal('4'))

        transaction = self.ledger.get_transaction(order.transaction_id)
        assert transaction.kind == TransactionKind.SELL
        assert transaction.metadata_decimal("realized_gain") == Decimal('200.00')
        assert transaction.metadata_decimal("tax") == Decimal('30.00')
        assert transaction.metadata_decimal("gross_value") == Decimal('600.00')

    def test_sell_at_a_loss_pays_no_tax(self):
        self.market_data.set_price("PETR4", "80")
        order = self.engine.sell(self.account.id, "PETR4", Decimal('10'))

        assert order.realized_gain == brl("-200.00")
        assert order.tax.is_zero()
        assert order.net_value == brl("792.00")

    def test_oversell_rejected(self):
        before = self.state()

        with pytest.raises(InsufficientPosition):
            self.engine.sell(self.account.id, "PETR4", Decimal('11'))

        assert self.state() == before
        rejected = self.engine.list_orders(self.account.id, OrderState.REJECTED)
        assert rejected[0].rejection_code == "insufficient_position"

    def test_sell_unheld_asset(self):
        with pytest.raises(InsufficientPosition):
            self.engine.sell(self.account.id, "CDB-XP", Decimal('1'))

    def test_ledger_failure_restores_position(self):
        before = self.state()

        with patch.object(self.ledger, "credit_for_trade", side_effect=RuntimeError("ledger down")):
            with pytest.raises(RuntimeError):
                self.engine.sell(self.account.id, "PETR4", Decimal('5'))

        assert self.state() == before

    def test_orders_listed_newest_first(self):
        self.engine.sell(self.account.id, "PETR4", Decimal('1'))
        orders = self.engine.list_orders(self.account.id)

        assert [o.side for o in orders] == [OrderSide.SELL, OrderSide.BUY]
        assert self.engine.get_order(orders[0].id).realized_gain == brl("50.00")


class TestPreview(TradingTestCase):

    def setup_method(self):
        self.build(InMemoryStorage())

    def test_preview_buy_has_no_side_effects(self):
        before = self.state()

        preview = self.engine.preview_buy(self.account.id, "PETR4", Decimal('10'))

        assert preview.quote.total_cost == brl("1010.00")
        assert preview.balance_after == brl("8990.00")
        assert preview.average_cost == Decimal('100')
        assert self.state() == before
        assert self.engine.list_orders(self.account.id) == []

    def test_preview_sell(self):
        self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        self.market_data.set_price("PETR4", "150")

        preview = self.engine.preview_sell(self.account.id, "PETR4", Decimal('10'))

        assert preview.realized_gain == brl("500.00")
        assert preview.tax == brl("75.00")
        assert preview.cash_amount == brl("1410.00")

    def test_preview_runs_validations(self):
        with pytest.raises(BelowMinimumInvestment):
            self.engine.preview_buy(self.account.id, "CDB-XP", Decimal('3'))
        assert self.engine.list_orders(self.account.id) == []


class LiveQuotes(InMemoryMarketData):
    """Asset records stay at their listed price; quotes come from a live feed"""

    def __init__(self, assets, quotes):
        super().__init__(assets)
        self.quotes = quotes

    def current_price(self, asset_id: str) -> Decimal:
        return self.quotes[asset_id]


class TestLivePrices(TradingTestCase):

    def setup_method(self):
        self.build(InMemoryStorage())
        self.market_data = LiveQuotes([STOCK, CDB], {"PETR4": Decimal('200'), "CDB-XP": Decimal('1000')})
        self.engine = TradingEngine(
            self.storage, self.account_manager, self.ledger, self.positions,
            FeeTaxCalculator(FeeSchedule()), self.market_data, self.audit_trail
        )

    def test_buy_settles_at_quoted_price(self):
        order = self.engine.buy(self.account.id, "PETR4", Decimal('10'))

        assert order.unit_price == Decimal('200')
        assert order.gross_value == brl("2000.00")
        assert self.positions.get_position(self.account.id, "PETR4").average_cost == Decimal('200')
        assert self.ledger.get_balance(self.account.id) == brl("7980.00")

    def test_sell_gain_uses_quoted_price(self):
        self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        self.market_data.quotes["PETR4"] = Decimal('250')

        preview = self.engine.preview_sell(self.account.id, "PETR4", Decimal('4'))
        assert preview.unit_price == Decimal('250')
        assert preview.realized_gain == brl("200.00")


class TestTradingOnSQLite(TradingTestCase):

    def setup_method(self):
        self.build(SQLiteStorage(":memory:"))

    def teardown_method(self):
        self.storage.close()

    def test_round_trip(self):
        self.engine.buy(self.account.id, "PETR4", Decimal('10'))
        self.market_data.set_price("PETR4", "150")
        self.engine.sell(self.account.id, "PETR4", Decimal('10'))

        assert self.ledger.get_balance(self.account.id) == brl("10400.00")
        assert self.ledger.verify_balance(self.account.id)
        trades = self.ledger.get_transactions(self.account.id, TransactionFilter(
            kinds=[TransactionKind.BUY, TransactionKind.SELL]
        )).count()
        assert trades == 2

    def test_ledger_failure_restores_position(self):
        before = self.state()

        with patch.object(self.ledger, "debit_for_trade", side_effect=RuntimeError("ledger down")):
            with pytest.raises(RuntimeError):
                self.engine.buy(self.account.id, "PETR4", Decimal('5'))

        assert self.state() == before
