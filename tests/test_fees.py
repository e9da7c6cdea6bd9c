"""
Test suite for fee and tax calculation
"""

from decimal import Decimal

from wealth_core.config import WealthConfig
from wealth_core.currency import Money, Currency
from wealth_core.fees import FeeSchedule, FeeTaxCalculator
from wealth_core.market_data import AssetKind


def brl(value) -> Money:
    return Money(Decimal(value), Currency.BRL)


class TestFeeTaxCalculator:

    def setup_method(self):
        self.calculator = FeeTaxCalculator(FeeSchedule())

    def test_stock_fee_is_one_percent(self):
        assert self.calculator.fee(AssetKind.STOCK, brl("1000")) == brl("10.00")

    def test_fixed_income_has_no_fee(self):
        assert self.calculator.fee(AssetKind.FIXED_INCOME, brl("1000")).is_zero()

    def test_tax_rates(self):
        assert self.calculator.tax(AssetKind.STOCK, brl("500")) == brl("75.00")
        assert self.calculator.tax(AssetKind.FIXED_INCOME, brl("500")) == brl("110.00")

    def test_no_tax_without_gain(self):
        assert self.calculator.tax(AssetKind.STOCK, brl("0")).is_zero()
        assert self.calculator.tax(AssetKind.STOCK, brl("-100")).is_zero()

    def test_quote_buy(self):
        quote = self.calculator.quote_buy(AssetKind.STOCK, brl("1000"))

        assert quote.gross_value == brl("1000.00")
        assert quote.fee == brl("10.00")
        assert quote.total_cost == brl("1010.00")

    def test_quote_sell(self):
        quote = self.calculator.quote_sell(AssetKind.STOCK, brl("1500"), brl("500"))

        assert quote.fee == brl("15.00")
        assert quote.tax == brl("75.00")
        assert quote.net_value == brl("1410.00")

    def test_quote_sell_at_a_loss(self):
        quote = self.calculator.quote_sell(AssetKind.FIXED_INCOME, brl("900"), brl("-100"))

        assert quote.tax.is_zero()
        assert quote.net_value == brl("900.00")

    def test_rounding_half_up(self):
        assert self.calculator.fee(AssetKind.STOCK, brl("0.50")) == brl("0.01")
        assert self.calculator.tax(AssetKind.STOCK, brl("0.10")) == brl("0.02")


class TestFeeSchedule:

    def test_from_config(self):
        config = WealthConfig(
            stock_brokerage_fee_rate=Decimal('0.005'),
            fixed_income_capital_gains_tax_rate=Decimal('0.175')
        )
        schedule = FeeSchedule.from_config(config)

        assert schedule.fee_rate(AssetKind.STOCK) == Decimal('0.005')
        assert schedule.tax_rate(AssetKind.FIXED_INCOME) == Decimal('0.175')
        assert schedule.tax_rate(AssetKind.STOCK) == Decimal('0.15')
