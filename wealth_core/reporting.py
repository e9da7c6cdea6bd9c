"""
Reporting Module

Read-only views over ledger, position and market state: account
statements, portfolio valuation and the yearly capital-gains report.
Reports never write anything, so identical state yields identical reports.
"""

import csv
import io
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from .currency import Money, Currency, percent_of
from .accounts import AccountManager
from .ledger import Ledger, Transaction, TransactionFilter, TransactionKind, as_utc
from .positions import PositionTracker
from .fees import FeeTaxCalculator
from .market_data import AssetKind, MarketDataProvider

PERCENT_QUANTUM = Decimal('0.01')


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    return percent_of(part, whole).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class StatementPeriod:
    """Inclusive time window; a None bound is open"""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    label: str = "custom"

    def __post_init__(self):
        if self.start is not None:
            object.__setattr__(self, 'start', as_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, 'end', as_utc(self.end))
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("Statement period start must not be after its end")

    @classmethod
    def custom(cls, start: datetime, end: datetime) -> 'StatementPeriod':
        return cls(start=start, end=end, label="custom")

    @classmethod
    def all_time(cls) -> 'StatementPeriod':
        return cls(label="all_time")

    @classmethod
    def current_month(cls, now: datetime) -> 'StatementPeriod':
        """From the first instant of now's month up to now"""
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return cls(start=start, end=now, label="current_month")

    @classmethod
    def last_month(cls, now: datetime) -> 'StatementPeriod':
        """The whole calendar month before now's month"""
        first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = first_of_month - timedelta(microseconds=1)
        start = end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return cls(start=start, end=end, label="last_month")

    @classmethod
    def calendar_year(cls, year: int, tz=timezone.utc) -> 'StatementPeriod':
        start = datetime(year, 1, 1, tzinfo=tz)
        end = datetime(year, 12, monthrange(year, 12)[1], 23, 59, 59, 999999, tzinfo=tz)
        return cls(start=start, end=end, label=str(year))

    def contains(self, moment: datetime) -> bool:
        moment = as_utc(moment)
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True


@dataclass
class Statement:
    """Account activity over a period, newest transaction first"""
    account_id: str
    period: StatementPeriod
    currency: Currency
    transactions: List[Transaction]
    opening_balance: Money
    closing_balance: Money
    total_deposits: Money
    total_withdrawals: Money
    transfer_count: int
    total_transfers_in: Money
    total_transfers_out: Money
    total_buys: Money
    total_sells: Money

    @property
    def net_change(self) -> Money:
        return self.closing_balance - self.opening_balance

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)


@dataclass
class PositionValuation:
    """One open position marked to the current price"""
    asset_id: str
    symbol: str
    name: str
    kind: AssetKind
    quantity: Decimal
    average_cost: Decimal
    current_price: Decimal
    daily_variation: Decimal
    invested_value: Money
    current_value: Money

    @property
    def gain_loss(self) -> Money:
        return self.current_value - self.invested_value

    @property
    def gain_loss_percent(self) -> Decimal:
        return _percent(self.gain_loss.amount, self.invested_value.amount)


@dataclass
class KindSummary:
    """Totals for one asset kind within a portfolio"""
    kind: AssetKind
    position_count: int
    invested_value: Money
    current_value: Money
    allocation_percent: Decimal = Decimal('0')

    @property
    def gain_loss(self) -> Money:
        return self.current_value - self.invested_value

    @property
    def gain_loss_percent(self) -> Decimal:
        return _percent(self.gain_loss.amount, self.invested_value.amount)


@dataclass
class PortfolioSummary:
    account_id: str
    currency: Currency
    cash_balance: Money
    positions: List[PositionValuation]
    by_kind: Dict[AssetKind, KindSummary]
    total_invested: Money
    total_current_value: Money

    @property
    def total_gain_loss(self) -> Money:
        return self.total_current_value - self.total_invested

    @property
    def total_gain_loss_percent(self) -> Decimal:
        return _percent(self.total_gain_loss.amount, self.total_invested.amount)

    @property
    def position_count(self) -> int:
        return len(self.positions)


@dataclass
class TaxKindSummary:
    """Realized and unrealized results for one asset kind"""
    kind: AssetKind
    sales_count: int
    gross_sales: Money
    realized_gain: Money
    tax_withheld: Money
    unrealized_gain: Money
    estimated_tax: Money


@dataclass
class TaxReport:
    """Capital gains for one calendar year, as recorded at settlement"""
    account_id: str
    year: int
    currency: Currency
    by_kind: Dict[AssetKind, TaxKindSummary] = field(default_factory=dict)

    @property
    def sales_count(self) -> int:
        return sum(s.sales_count for s in self.by_kind.values())

    def _total(self, attribute: str) -> Money:
        total = Money.zero(self.currency)
        for summary in self.by_kind.values():
            total = total + getattr(summary, attribute)
        return total

    @property
    def total_realized_gain(self) -> Money:
        return self._total('realized_gain')

    @property
    def total_tax_withheld(self) -> Money:
        return self._total('tax_withheld')

    @property
    def total_unrealized_gain(self) -> Money:
        return self._total('unrealized_gain')

    @property
    def total_estimated_tax(self) -> Money:
        return self._total('estimated_tax')


class ReportAggregator:
    """Builds statements, portfolio summaries and tax reports"""

    def __init__(
        self,
        account_manager: AccountManager,
        ledger: Ledger,
        positions: PositionTracker,
        market_data: MarketDataProvider,
        calculator: FeeTaxCalculator,
        tz: tzinfo = timezone.utc
    ):
        self.account_manager = account_manager
        self.ledger = ledger
        self.positions = positions
        self.market_data = market_data
        self.calculator = calculator
        # Local time of the account holder; decides which year a sale falls in
        self.tz = tz

    def statement(self, account_id: str, period: Optional[StatementPeriod] = None) -> Statement:
        """
        Transactions of an account within the period, with totals

        The opening balance is the sum of everything before the period
        start; the closing balance adds the period's net change.
        """
        period = period or StatementPeriod.all_time()
        account = self.account_manager.require_account(account_id)
        currency = account.currency
        zero = Money.zero(currency)

        opening = zero
        if period.start is not None:
            for txn in self.ledger.get_transactions(account_id, TransactionFilter(end=period.start)):
                if txn.timestamp < period.start:
                    opening = opening + txn.signed_amount

        transactions = self.ledger.get_transactions(
            account_id, TransactionFilter(start=period.start, end=period.end)
        ).to_list()

        totals = {kind: zero for kind in TransactionKind}
        transfers_in = zero
        transfers_out = zero
        transfer_count = 0
        net = zero

        for txn in transactions:
            net = net + txn.signed_amount
            totals[txn.kind] = totals[txn.kind] + txn.amount
            if txn.kind == TransactionKind.TRANSFER:
                transfer_count += 1
                if txn.is_credit:
                    transfers_in = transfers_in + txn.amount
                else:
                    transfers_out = transfers_out + txn.amount

        return Statement(
            account_id=account_id,
            period=period,
            currency=currency,
            transactions=transactions,
            opening_balance=opening,
            closing_balance=opening + net,
            total_deposits=totals[TransactionKind.DEPOSIT],
            total_withdrawals=totals[TransactionKind.WITHDRAW],
            transfer_count=transfer_count,
            total_transfers_in=transfers_in,
            total_transfers_out=transfers_out,
            total_buys=totals[TransactionKind.BUY],
            total_sells=totals[TransactionKind.SELL]
        )

    def portfolio_summary(self, account_id: str) -> PortfolioSummary:
        """Open positions marked to market, with totals per asset kind"""
        account = self.account_manager.require_account(account_id)
        currency = account.currency
        zero = Money.zero(currency)

        valuations = []
        for position in self.positions.list_positions(account_id):
            asset = self.market_data.get_asset(position.asset_id)
            price = self.market_data.current_price(asset.id)
            valuations.append(PositionValuation(
                asset_id=asset.id,
                symbol=asset.symbol,
                name=asset.name,
                kind=asset.kind,
                quantity=position.quantity,
                average_cost=position.average_cost,
                current_price=price,
                daily_variation=asset.daily_variation.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP),
                invested_value=Money(position.invested_value, currency),
                current_value=Money(position.market_value(price), currency)
            ))

        by_kind: Dict[AssetKind, KindSummary] = {}
        for kind in AssetKind:
            in_kind = [v for v in valuations if v.kind == kind]
            by_kind[kind] = KindSummary(
                kind=kind,
                position_count=len(in_kind),
                invested_value=sum((v.invested_value for v in in_kind), zero),
                current_value=sum((v.current_value for v in in_kind), zero)
            )

        total_invested = sum((s.invested_value for s in by_kind.values()), zero)
        total_current = sum((s.current_value for s in by_kind.values()), zero)
        for summary in by_kind.values():
            summary.allocation_percent = _percent(summary.current_value.amount, total_current.amount)

        return PortfolioSummary(
            account_id=account_id,
            currency=currency,
            cash_balance=account.balance,
            positions=valuations,
            by_kind=by_kind,
            total_invested=total_invested,
            total_current_value=total_current
        )

    def tax_report(self, account_id: str, year: int, tz: Optional[tzinfo] = None) -> TaxReport:
        """
        Realized gains and tax withheld on sales settled in the year

        Values come from the metadata recorded on each sell transaction.
        Unrealized gains on open positions are included for information,
        with the tax their net gain per asset kind would incur at the
        configured rates. Losses in a kind offset its gains; a net loss
        estimates no tax.

        The year runs from January 1 to December 31 in ``tz``, falling back
        to the aggregator's own timezone.
        """
        account = self.account_manager.require_account(account_id)
        currency = account.currency
        zero = Money.zero(currency)
        period = StatementPeriod.calendar_year(year, tz or self.tz)

        sales = self.ledger.get_transactions(account_id, TransactionFilter(
            kinds=[TransactionKind.SELL], start=period.start, end=period.end, ascending=True
        ))

        realized = {kind: zero for kind in AssetKind}
        withheld = {kind: zero for kind in AssetKind}
        gross = {kind: zero for kind in AssetKind}
        counts = {kind: 0 for kind in AssetKind}
        for txn in sales:
            kind = AssetKind(txn.metadata['asset_kind'])
            counts[kind] += 1
            realized[kind] = realized[kind] + Money(txn.metadata_decimal('realized_gain') or 0, currency)
            withheld[kind] = withheld[kind] + Money(txn.metadata_decimal('tax') or 0, currency)
            gross[kind] = gross[kind] + Money(txn.metadata_decimal('gross_value') or 0, currency)

        unrealized = {kind: zero for kind in AssetKind}
        for valuation in self.portfolio_summary(account_id).positions:
            unrealized[valuation.kind] = unrealized[valuation.kind] + valuation.gain_loss

        report = TaxReport(account_id=account_id, year=year, currency=currency)
        for kind in AssetKind:
            report.by_kind[kind] = TaxKindSummary(
                kind=kind,
                sales_count=counts[kind],
                gross_sales=gross[kind],
                realized_gain=realized[kind],
                tax_withheld=withheld[kind],
                unrealized_gain=unrealized[kind],
                estimated_tax=self.calculator.tax(kind, unrealized[kind])
            )
        return report


STATEMENT_CSV_FIELDS = [
    'date', 'kind', 'direction', 'description', 'asset_id', 'quantity',
    'amount', 'currency', 'counterparty_account_id', 'transaction_id'
]


def export_statement_csv(statement: Statement) -> str:
    """Statement rows as CSV text, one line per transaction with a signed amount"""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=STATEMENT_CSV_FIELDS)
    writer.writeheader()

    for txn in statement.transactions:
        writer.writerow({
            'date': txn.timestamp.isoformat(),
            'kind': txn.kind.value,
            'direction': txn.direction.value,
            'description': txn.description,
            'asset_id': txn.asset_id or '',
            'quantity': str(txn.quantity) if txn.quantity is not None else '',
            'amount': str(txn.signed_amount.amount),
            'currency': txn.amount.currency.code,
            'counterparty_account_id': txn.counterparty_account_id or '',
            'transaction_id': txn.id
        })

    csv_content = output.getvalue()
    output.close()
    return csv_content
