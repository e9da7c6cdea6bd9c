"""
Wealth core system context.

Wires storage, audit trail, accounts, ledger, positions, fees, trading and
reports together and exposes the caller-facing operations. Every operation
takes the opaque caller id supplied by the identity layer and only touches
accounts that caller owns.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .config import WealthConfig, get_config
from .currency import Money, Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .locking import AccountLockManager
from .accounts import Account, AccountKind, AccountManager
from .ledger import Ledger, Transaction, TransactionFilter, TransactionHistory
from .positions import Position, PositionTracker
from .fees import FeeSchedule, FeeTaxCalculator
from .market_data import MarketDataProvider, InMemoryMarketData
from .trading import Order, TradePreview, TradingEngine
from .reporting import (
    PortfolioSummary, ReportAggregator, Statement, StatementPeriod, TaxReport,
    export_statement_csv
)
from .exceptions import InvalidAccount
from .logging_config import setup_logging


class WealthCore:
    """Personal banking and investment core with all components initialized"""

    def __init__(
        self,
        config: Optional[WealthConfig] = None,
        storage: Optional[StorageInterface] = None,
        market_data: Optional[MarketDataProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()

        if configure_logging:
            setup_logging(
                level=self.config.log_level,
                log_format=self.config.log_format,
                log_file=self.config.log_file
            )

        self.storage = storage or create_storage(self.config.database_url)
        self.market_data = market_data or InMemoryMarketData()
        self.locks = AccountLockManager()

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.account_manager = AccountManager(
            self.storage, self.audit_trail, Currency[self.config.default_currency.upper()]
        )
        self.ledger = Ledger(self.storage, self.account_manager, self.audit_trail, self.locks, clock)
        self.positions = PositionTracker(self.storage, self.audit_trail, self.locks)
        self.calculator = FeeTaxCalculator(FeeSchedule.from_config(self.config))
        self.trading = TradingEngine(
            self.storage, self.account_manager, self.ledger, self.positions,
            self.calculator, self.market_data, self.audit_trail, self.locks
        )
        self.reports = ReportAggregator(
            self.account_manager, self.ledger, self.positions,
            self.market_data, self.calculator, self.config.report_tzinfo
        )

    def _owned_account(self, caller_id: str, account_id: str) -> Account:
        account = self.account_manager.require_account(account_id)
        if account.owner_id != caller_id:
            # Reported exactly like an unknown id
            raise InvalidAccount(f"Account {account_id} not found", account_id=account_id)
        return account

    # Accounts

    def open_account(self, caller_id: str, kind: AccountKind,
                     currency: Optional[Currency] = None) -> Account:
        return self.account_manager.open_account(caller_id, kind, currency)

    def list_accounts(self, caller_id: str) -> List[Account]:
        return self.account_manager.get_owner_accounts(caller_id)

    # Ledger

    def deposit(self, caller_id: str, account_id: str, amount,
                description: Optional[str] = None) -> Transaction:
        self._owned_account(caller_id, account_id)
        return self.ledger.deposit(account_id, amount, description)

    def withdraw(self, caller_id: str, account_id: str, amount,
                 description: Optional[str] = None) -> Transaction:
        self._owned_account(caller_id, account_id)
        return self.ledger.withdraw(account_id, amount, description)

    def transfer(self, caller_id: str, from_account_id: str, to_account_id: str, amount,
                 description: Optional[str] = None) -> Tuple[Transaction, Transaction]:
        """The caller must own the source account; the destination may belong to anyone"""
        self._owned_account(caller_id, from_account_id)
        return self.ledger.transfer(from_account_id, to_account_id, amount, description)

    def get_balance(self, caller_id: str, account_id: str) -> Money:
        return self._owned_account(caller_id, account_id).balance

    def get_transactions(self, caller_id: str, account_id: str,
                         filter: Optional[TransactionFilter] = None) -> TransactionHistory:
        self._owned_account(caller_id, account_id)
        return self.ledger.get_transactions(account_id, filter)

    # Trading

    def buy(self, caller_id: str, account_id: str, asset_id: str, quantity) -> Order:
        self._owned_account(caller_id, account_id)
        return self.trading.buy(account_id, asset_id, quantity)

    def sell(self, caller_id: str, account_id: str, asset_id: str, quantity) -> Order:
        self._owned_account(caller_id, account_id)
        return self.trading.sell(account_id, asset_id, quantity)

    def preview_buy(self, caller_id: str, account_id: str, asset_id: str, quantity) -> TradePreview:
        self._owned_account(caller_id, account_id)
        return self.trading.preview_buy(account_id, asset_id, quantity)

    def preview_sell(self, caller_id: str, account_id: str, asset_id: str, quantity) -> TradePreview:
        self._owned_account(caller_id, account_id)
        return self.trading.preview_sell(account_id, asset_id, quantity)

    def list_orders(self, caller_id: str, account_id: str) -> List[Order]:
        self._owned_account(caller_id, account_id)
        return self.trading.list_orders(account_id)

    def list_positions(self, caller_id: str, account_id: str,
                       include_closed: bool = False) -> List[Position]:
        self._owned_account(caller_id, account_id)
        return self.positions.list_positions(account_id, include_closed)

    # Reports

    def statement(self, caller_id: str, account_id: str,
                  period: Optional[StatementPeriod] = None) -> Statement:
        self._owned_account(caller_id, account_id)
        return self.reports.statement(account_id, period)

    def export_statement(self, caller_id: str, account_id: str,
                         period: Optional[StatementPeriod] = None) -> str:
        return export_statement_csv(self.statement(caller_id, account_id, period))

    def portfolio_summary(self, caller_id: str, account_id: str) -> PortfolioSummary:
        self._owned_account(caller_id, account_id)
        return self.reports.portfolio_summary(account_id)

    def tax_report(self, caller_id: str, account_id: str, year: int) -> TaxReport:
        self._owned_account(caller_id, account_id)
        return self.reports.tax_report(account_id, year)

    def close(self) -> None:
        self.storage.close()
