"""
Brokerage fee and capital-gains tax calculation.

Pure functions of asset kind, gross value and gain. Rates come from a
FeeSchedule, which defaults to the configured values.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .currency import Money, to_decimal
from .config import WealthConfig, get_config
from .market_data import AssetKind


@dataclass(frozen=True)
class FeeSchedule:
    """Fee and tax rates per asset kind, as fractions"""
    stock_fee_rate: Decimal = Decimal("0.01")
    fixed_income_fee_rate: Decimal = Decimal("0")
    stock_tax_rate: Decimal = Decimal("0.15")
    fixed_income_tax_rate: Decimal = Decimal("0.22")

    @classmethod
    def from_config(cls, config: Optional[WealthConfig] = None) -> 'FeeSchedule':
        config = config or get_config()
        return cls(
            stock_fee_rate=to_decimal(config.stock_brokerage_fee_rate),
            fixed_income_fee_rate=to_decimal(config.fixed_income_brokerage_fee_rate),
            stock_tax_rate=to_decimal(config.stock_capital_gains_tax_rate),
            fixed_income_tax_rate=to_decimal(config.fixed_income_capital_gains_tax_rate),
        )

    def fee_rate(self, kind: AssetKind) -> Decimal:
        if kind == AssetKind.STOCK:
            return self.stock_fee_rate
        return self.fixed_income_fee_rate

    def tax_rate(self, kind: AssetKind) -> Decimal:
        if kind == AssetKind.STOCK:
            return self.stock_tax_rate
        return self.fixed_income_tax_rate


@dataclass(frozen=True)
class BuyQuote:
    gross_value: Money
    fee: Money
    total_cost: Money


@dataclass(frozen=True)
class SellQuote:
    gross_value: Money
    gain_amount: Money
    fee: Money
    tax: Money
    net_value: Money


class FeeTaxCalculator:
    """Computes fees and taxes for trades"""

    def __init__(self, schedule: Optional[FeeSchedule] = None):
        self.schedule = schedule or FeeSchedule.from_config()

    def fee(self, kind: AssetKind, gross_value: Money) -> Money:
        """Brokerage fee on the gross trade value"""
        return gross_value * self.schedule.fee_rate(kind)

    def tax(self, kind: AssetKind, gain_amount: Money) -> Money:
        """Capital-gains tax; losses and break-even are not taxed"""
        if not gain_amount.is_positive():
            return Money.zero(gain_amount.currency)
        return gain_amount * self.schedule.tax_rate(kind)

    def quote_buy(self, kind: AssetKind, gross_value: Money) -> BuyQuote:
        fee = self.fee(kind, gross_value)
        return BuyQuote(gross_value=gross_value, fee=fee, total_cost=gross_value + fee)

    def quote_sell(self, kind: AssetKind, gross_value: Money, gain_amount: Money) -> SellQuote:
        fee = self.fee(kind, gross_value)
        tax = self.tax(kind, gain_amount)
        return SellQuote(
            gross_value=gross_value,
            gain_amount=gain_amount,
            fee=fee,
            tax=tax,
            net_value=gross_value - fee - tax
        )
